"""Error taxonomy for the platform object model.

Every error carries a stable ``kind`` and a human-readable ``message``.
Storage-layer details are logged where they happen and never copied into
the message, so callers can return ``to_dict()`` as-is.
"""
from typing import Any, Optional

from pydantic import ValidationError


class PlatformError(Exception):
    """Base class for every error raised by the repositories."""

    kind = "PlatformError"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class NotFound(PlatformError):
    """Unknown id or type, or an id owned by another organization."""

    kind = "NotFound"


class SchemaViolation(PlatformError):
    """Unknown, mistyped, or otherwise invalid property or input."""

    kind = "SchemaViolation"


class RequiredPropertyMissing(SchemaViolation):
    kind = "RequiredPropertyMissing"


class CardinalityViolation(PlatformError):
    kind = "CardinalityViolation"


class InvalidTransition(PlatformError):
    kind = "InvalidTransition"


class DuplicateDefinition(PlatformError):
    kind = "DuplicateDefinition"


class PermissionDenied(PlatformError):
    kind = "PermissionDenied"


class StorageError(PlatformError):
    """Opaque infrastructure failure (driver error, timeout)."""

    kind = "StorageError"


class RequestCancelled(PlatformError):
    kind = "RequestCancelled"


def from_validation_error(exc: ValidationError, prefix: str = "Invalid input") -> SchemaViolation:
    """Convert a pydantic ValidationError into a SchemaViolation."""
    problems = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        problems.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return SchemaViolation(f"{prefix}: " + "; ".join(problems), {"errors": problems})
