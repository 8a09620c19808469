from __future__ import annotations

from typing import Any


class ReservationError(Exception):
    """Base class for errors surfaced to the caller of the reservation engine."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(ReservationError):
    pass


class NotFoundError(ReservationError):
    pass


class ForbiddenError(ReservationError):
    pass


class ConflictError(ReservationError):
    pass


class InvalidStateTransition(ReservationError):
    pass
