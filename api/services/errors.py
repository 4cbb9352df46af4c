"""
Error types raised by the health and smart group services.

Routes translate these into HTTP responses in api/main.py.
"""
from typing import Optional


class RapportError(Exception):
    """Base class for service errors."""


class ConfigurationError(RapportError):
    """A smart group's rules are missing or malformed."""

    def __init__(self, message: str, group_id: Optional[str] = None, problems: Optional[list[str]] = None):
        super().__init__(message)
        self.group_id = group_id
        self.problems = problems or [message]

    def to_dict(self) -> dict:
        return {
            "error": "configuration_error",
            "message": str(self),
            "group_id": self.group_id,
            "problems": self.problems,
            # Empty but flagged: callers must not read this as "rules match nothing"
            "entity_ids": [],
        }


class DataAccessError(RapportError):
    """The underlying store or cache failed. Safe to retry."""


class CacheUnavailableError(DataAccessError):
    """The smart group cache backend could not be reached."""


class NotFoundError(RapportError):
    """A referenced entity, group or relationship does not exist."""

    def __init__(self, kind: str, object_id: str):
        super().__init__(f"{kind} not found: {object_id}")
        self.kind = kind
        self.object_id = object_id
