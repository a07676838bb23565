"""
Domain exceptions for the catalog.

Services raise these; the HTTP layer maps each class to a status code.
Every error carries the full list of offending ids/slugs so callers can
fix a whole submission at once.
"""

from typing import Any, Iterable, List, Optional


class CatalogError(Exception):
    """
    Base class for caller-visible catalog failures.

    Provides the offending identifiers alongside the message for
    structured error responses.
    """

    status_code: int = 400
    error_code: str = "CatalogError"

    def __init__(self, message: str, ids: Optional[Iterable[Any]] = None):
        self.message = message
        self.ids: List[str] = [str(i) for i in ids] if ids is not None else []
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"error": self.error_code, "message": self.message}
        if self.ids:
            payload["ids"] = self.ids
        return payload


class CatalogValidationError(CatalogError):
    """Caller-correctable input: unknown references, non-leaf targets, inapplicable attributes."""

    status_code = 400
    error_code = "ValidationError"


class NotFoundError(CatalogError):
    """The addressed record does not exist."""

    status_code = 404
    error_code = "NotFound"


class ConflictError(CatalogError):
    """Duplicate slug/name, or a delete blocked by dependent rows."""

    status_code = 409
    error_code = "Conflict"


def describe_ids(label: str, ids: Iterable[Any]) -> str:
    """Format '<label>: a, b, c' for error messages."""
    return f"{label}: {', '.join(str(i) for i in ids)}"
