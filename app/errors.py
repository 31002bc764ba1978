"""Exception types surfaced to API callers."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(eq=False)
class GymDeskError(Exception):
    """Base error carrying a user-facing message and an HTTP status."""

    message: str
    status_code: int = 400

    def __str__(self) -> str:  # pragma: no cover - dataclass convenience
        return self.message


@dataclass(eq=False)
class ValidationError(GymDeskError):
    status_code: int = 400


@dataclass(eq=False)
class AuthError(GymDeskError):
    """Raised when the caller cannot be authenticated."""

    status_code: int = 401


@dataclass(eq=False)
class PermissionDenied(GymDeskError):
    status_code: int = 403


@dataclass(eq=False)
class NotFoundError(GymDeskError):
    status_code: int = 404


@dataclass(eq=False)
class UpstreamError(GymDeskError):
    """A hosted service (database, LLM, e-mail) failed."""

    status_code: int = 502


@dataclass(eq=False)
class ConfigurationError(GymDeskError):
    status_code: int = 503


@dataclass(eq=False)
class ConflictError(GymDeskError):
    """The request clashes with current state (full class, duplicate booking)."""

    status_code: int = 409
