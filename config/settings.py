"""
Rapport Configuration Settings
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Paths (use RAPPORT_ prefix)
    db_path: Path = Field(
        default=Path("./data/rapport.db"),
        alias="RAPPORT_DB_PATH",
        description="SQLite database holding entities, relationships and interactions"
    )

    # Server
    port: int = Field(default=8000, alias="RAPPORT_PORT")
    host: str = Field(default="0.0.0.0", alias="RAPPORT_HOST")
    log_level: str = Field(default="INFO", alias="RAPPORT_LOG_LEVEL")

    # Relationship health
    default_health_threshold_days: int = Field(
        default=30,
        ge=1,
        le=365,
        alias="RAPPORT_DEFAULT_THRESHOLD_DAYS",
        description="Threshold used when a relationship has none configured"
    )
    attention_default_limit: int = Field(default=20, alias="RAPPORT_ATTENTION_LIMIT")
    digest_attention_limit: int = Field(default=10, alias="RAPPORT_DIGEST_ATTENTION_LIMIT")

    # Smart group cache
    cache_backend: str = Field(
        default="memory",
        alias="RAPPORT_CACHE_BACKEND",
        description="Smart group cache backend: 'memory' or 'redis'"
    )
    redis_url: str = Field(default="redis://localhost:6379/0", alias="RAPPORT_REDIS_URL")
    cache_ttl_seconds: int = Field(default=300, alias="RAPPORT_CACHE_TTL")
    # Keep this short: a slow cache must fall back to computing, not stall requests
    cache_timeout_seconds: float = Field(default=0.5, alias="RAPPORT_CACHE_TIMEOUT")

    @property
    def use_redis_cache(self) -> bool:
        """Check if the shared Redis cache backend is selected."""
        return self.cache_backend.strip().lower() == "redis"


settings = Settings()
