"""Admission rules for a prospective reservation.

The checks run in a fixed order and the first failure wins. Only ``approved``
reservations block a slot: pending requests for the same slot are advisory,
and the administrator resolves them when approving one of them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable

from .errors import ConflictError, NotFoundError, ReservationError, ValidationError
from .models import ReservationRecord, ReservationRequest, ReservationStatus
from .rooms import RoomYamlRegistry
from .timeslots import (
    MIN_DURATION_MINUTES,
    OFFICE_END_MINUTES,
    OFFICE_START_MINUTES,
    find_overlapping,
    format_clock,
    parse_clock,
    parse_day,
)


@dataclass(frozen=True)
class RejectionReason:
    error_type: type[ReservationError]
    message: str
    detail: dict[str, Any] = field(default_factory=dict)

    def to_error(self) -> ReservationError:
        return self.error_type(self.message, self.detail)


class AdmissionValidator:
    def __init__(self, registry: RoomYamlRegistry) -> None:
        self._registry = registry

    def validate(
        self,
        request: ReservationRequest,
        approved: Iterable[ReservationRecord],
        exclude_id: str | None = None,
        now: datetime | None = None,
    ) -> RejectionReason | None:
        try:
            start = parse_clock(request.start_time)
            end = parse_clock(request.end_time)
        except ValidationError as error:
            return RejectionReason(ValidationError, error.message)

        if start < OFFICE_START_MINUTES or end > OFFICE_END_MINUTES:
            return RejectionReason(
                ValidationError,
                f"Office hours: {format_clock(OFFICE_START_MINUTES)}–{format_clock(OFFICE_END_MINUTES)} only.",
            )
        if start >= end:
            return RejectionReason(ValidationError, "End must be after start.")
        if end - start < MIN_DURATION_MINUTES:
            return RejectionReason(ValidationError, f"Minimum {MIN_DURATION_MINUTES} minutes.")

        try:
            day = parse_day(request.date)
        except ValidationError as error:
            return RejectionReason(ValidationError, error.message)
        today = (now or datetime.now()).date()
        if day < today:
            return RejectionReason(ValidationError, "Cannot book in the past.")

        room = self._registry.get_room(request.room_id)
        if room is None:
            return RejectionReason(NotFoundError, "Room not found.", {"room_id": request.room_id})
        if room.blocked:
            return RejectionReason(ValidationError, "Room is currently blocked.", {"room_id": room.room_id})
        if end - start > room.max_duration:
            return RejectionReason(
                ValidationError,
                f"Exceeds max {describe_minutes(room.max_duration)} for this room.",
                {"max_duration": room.max_duration},
            )
        if request.persons is not None and request.persons > room.capacity:
            return RejectionReason(
                ValidationError,
                f"Exceeds room capacity ({room.capacity}).",
                {"capacity": room.capacity},
            )

        return self.check_conflict(start, end, approved, exclude_id, day)

    def check_conflict(
        self,
        start: int,
        end: int,
        approved: Iterable[ReservationRecord],
        exclude_id: str | None = None,
        day: date | None = None,
    ) -> RejectionReason | None:
        """Return a conflict when [start, end) overlaps an approved reservation in the snapshot."""
        binding = [
            (record.start_minutes, record.end_minutes)
            for record in approved
            if record.status is ReservationStatus.APPROVED
            and record.reservation_id != exclude_id
            and (day is None or record.date == day.isoformat())
        ]
        conflict = find_overlapping(start, end, binding)
        if conflict is None:
            return None

        conflict_start, conflict_end = (format_clock(value) for value in conflict)
        return RejectionReason(
            ConflictError,
            f"Conflicts with an approved booking ({conflict_start}–{conflict_end}).",
            {"start_time": conflict_start, "end_time": conflict_end},
        )

    def ensure_admissible(
        self,
        request: ReservationRequest,
        approved: Iterable[ReservationRecord],
        exclude_id: str | None = None,
        now: datetime | None = None,
    ) -> None:
        reason = self.validate(request, approved, exclude_id=exclude_id, now=now)
        if reason is not None:
            raise reason.to_error()


def describe_minutes(minutes: int) -> str:
    hours, remainder = divmod(minutes, 60)
    if not hours:
        return f"{remainder}m"
    if not remainder:
        return f"{hours}h"
    return f"{hours}h{remainder}m"
