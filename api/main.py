"""
Rapport - Relationship Health & Smart Groups
FastAPI Application Entry Point

Run with:

    uvicorn api.main:app --host 0.0.0.0 --port 8000
"""
# Load environment variables from .env file first, before any imports
from dotenv import load_dotenv
load_dotenv()

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from api.routes import entities, groups, health
from api.services.errors import ConfigurationError, DataAccessError, NotFoundError
from config.settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Rapport",
    description="Relationship health scoring and smart group membership",
    version="0.1.0",
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router)
app.include_router(entities.router)
app.include_router(groups.router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert validation errors to 400 with clear messages."""
    # Sanitize errors for JSON serialization (bytes input, exception objects in ctx)
    sanitized_errors = []
    for error in exc.errors():
        sanitized = dict(error)
        if "input" in sanitized and isinstance(sanitized["input"], bytes):
            sanitized["input"] = sanitized["input"].decode("utf-8", errors="replace")
        if "ctx" in sanitized:
            sanitized["ctx"] = {key: str(value) for key, value in sanitized["ctx"].items()}
        sanitized_errors.append(sanitized)

    for error in sanitized_errors:
        if "x-user-id" in [str(part).lower() for part in error.get("loc", [])]:
            return JSONResponse(
                status_code=400,
                content={"error": "X-User-Id header is required", "detail": sanitized_errors}
            )
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "detail": sanitized_errors}
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    """Invalid smart group rules: empty result, flagged as an error."""
    logger.warning(f"Configuration error on {request.url.path}: {exc}")
    return JSONResponse(status_code=422, content=exc.to_dict())


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=404,
        content={"error": "not_found", "detail": str(exc), "kind": exc.kind, "id": exc.object_id}
    )


@app.exception_handler(DataAccessError)
async def data_access_error_handler(request: Request, exc: DataAccessError):
    """Store or cache failures are transient from the caller's point of view."""
    logger.error(f"Data access failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"error": "data_unavailable", "detail": str(exc), "retryable": True}
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=422,
        content={"error": "invalid_value", "detail": str(exc)}
    )


@app.get("/health")
async def health_check():
    """Liveness check reporting the smart group cache backend."""
    from api.services.cache import RedisCache, get_cache

    cache = get_cache()
    if isinstance(cache, RedisCache):
        cache_ok = cache.ping()
        backend = "redis"
    else:
        cache_ok = True
        backend = "memory"

    checks = {
        "cache_backend": backend,
        "cache_reachable": cache_ok,
    }

    return {
        # An unreachable cache only slows smart groups down, it never breaks them
        "status": "healthy" if cache_ok else "degraded",
        "service": "rapport",
        "checks": checks,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
