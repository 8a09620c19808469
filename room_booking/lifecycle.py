from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Protocol
from uuid import uuid4
import logging

from .errors import ForbiddenError, InvalidStateTransition, NotFoundError, ValidationError
from .models import (
    Actor,
    ApprovalResult,
    MeetingType,
    NotificationType,
    ReservationRecord,
    ReservationRequest,
    ReservationStatus,
)
from .notifications import NotificationYamlSink
from .rooms import RoomYamlRegistry
from .timeslots import format_clock, parse_clock, parse_day, has_time_overlap
from .users import UserYamlDirectory
from .validation import AdmissionValidator
from .yaml_store import ReservationStorageError, ReservationYamlRepository, YamlEventLog

logger = logging.getLogger(__name__)

AUTO_REJECT_REASON = "Slot was taken by another approved booking for the same time."

ALLOWED_TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.PENDING: frozenset(
        {ReservationStatus.APPROVED, ReservationStatus.REJECTED, ReservationStatus.CANCELLED}
    ),
    ReservationStatus.APPROVED: frozenset({ReservationStatus.CANCELLED}),
    ReservationStatus.REJECTED: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
}


class NotificationSink(Protocol):
    def notify(self, user_id: str, title: str, message: str, type: NotificationType = ...) -> Any:
        ...


def ensure_transition(record: ReservationRecord, target: ReservationStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[record.status]:
        raise InvalidStateTransition(
            f"Cannot move a {record.status.value} booking to {target.value}.",
            {"reservation_id": record.reservation_id, "status": record.status.value, "target": target.value},
        )


class ReservationLifecycle:
    """Creates reservations and drives them through the approval state machine.

    Every mutation re-reads the reservation and the approved set inside the
    store's lock for that (room_id, date), so concurrent handlers cannot both
    confirm overlapping slots.
    """

    def __init__(
        self,
        repository: ReservationYamlRepository,
        rooms: RoomYamlRegistry,
        users: UserYamlDirectory,
        notifications: NotificationSink,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.rooms = rooms
        self.users = users
        self.notifications = notifications
        self.validator = AdmissionValidator(rooms)
        self._clock: Callable[[], datetime] = now_provider or datetime.now

    @classmethod
    def from_data_dir(
        cls,
        data_dir: str | Path = "data",
        now_provider: Callable[[], datetime] | None = None,
    ) -> "ReservationLifecycle":
        event_log = YamlEventLog(Path(data_dir) / "reservation_events.yaml")
        return cls(
            repository=ReservationYamlRepository(data_dir, event_log),
            rooms=RoomYamlRegistry(data_dir, event_log),
            users=UserYamlDirectory(data_dir, event_log),
            notifications=NotificationYamlSink(data_dir, event_log),
            now_provider=now_provider,
        )

    def create(self, actor: Actor, request: ReservationRequest) -> ReservationRecord:
        if request.meeting_type is MeetingType.EXTERNAL and request.food and not request.veg_nonveg:
            raise ValidationError("Food preference (veg_nonveg) required when food is requested")

        now = self._clock()
        # Rules that need no lock run first, in their fixed order; a bad date
        # surfaces only after the time checks pass.
        self.validator.ensure_admissible(request, (), now=now)
        day = parse_day(request.date).isoformat()
        request = replace(request, date=day)

        with self.repository.slot_lock(request.room_id, day):
            approved = self.repository.find_by_slot(request.room_id, day, ReservationStatus.APPROVED)
            self.validator.ensure_admissible(request, approved, now=now)

            internal = request.meeting_type is MeetingType.INTERNAL
            record = ReservationRecord(
                reservation_id=str(uuid4()),
                user_id=actor.user_id,
                room_id=request.room_id,
                date=day,
                start_time=format_clock(parse_clock(request.start_time)),
                end_time=format_clock(parse_clock(request.end_time)),
                meeting_type=request.meeting_type,
                purpose=request.purpose,
                persons=request.persons,
                food=request.food,
                veg_nonveg=request.veg_nonveg,
                remarks=request.remarks,
                status=ReservationStatus.APPROVED if internal else ReservationStatus.PENDING,
                approved_at=now if internal else None,
                created_at=now,
                updated_at=now,
            )
            self.repository.insert(record, now)

        room = self.rooms.get_room(record.room_id)
        requester = self.users.get_user(actor.user_id)
        requester_name = requester.name if requester else actor.user_id
        room_name = room.name if room else record.room_id
        for admin in self.users.list_active_admins():
            self._notify(
                admin.user_id,
                "New Booking",
                f"{requester_name} booked {room_name} on {record.date}",
                NotificationType.INFO,
            )
        return record

    def cancel(self, actor: Actor, reservation_id: str) -> ReservationRecord:
        current = self._require(reservation_id)
        with self.repository.slot_lock(current.room_id, current.date):
            current = self._require(reservation_id)
            if not actor.is_admin and current.user_id != actor.user_id:
                raise ForbiddenError("You can only cancel your own bookings.")
            ensure_transition(current, ReservationStatus.CANCELLED)

            now = self._clock()
            if not actor.is_admin and now >= current.starts_at():
                raise ForbiddenError("Meeting already started.", {"start_time": current.start_time})

            cancelled = replace(current, status=ReservationStatus.CANCELLED, updated_at=now)
            self.repository.commit_transitions([("RESERVATION_CANCELLED", cancelled)], now)
        return cancelled

    def approve(self, actor: Actor, reservation_id: str) -> ApprovalResult:
        _require_admin(actor)
        current = self._require(reservation_id)
        with self.repository.slot_lock(current.room_id, current.date):
            current = self._require(reservation_id)
            ensure_transition(current, ReservationStatus.APPROVED)

            approved = self.repository.find_by_slot(
                current.room_id, current.date, ReservationStatus.APPROVED, exclude_id=reservation_id
            )
            start, end = current.start_minutes, current.end_minutes
            conflict = self.validator.check_conflict(start, end, approved, exclude_id=reservation_id)
            if conflict is not None:
                raise conflict.to_error()

            now = self._clock()
            winner = replace(current, status=ReservationStatus.APPROVED, approved_at=now, updated_at=now)
            competitors = self.repository.find_by_slot(
                current.room_id, current.date, ReservationStatus.PENDING, exclude_id=reservation_id
            )
            losers = [
                replace(
                    competitor,
                    status=ReservationStatus.REJECTED,
                    rejection_reason=AUTO_REJECT_REASON,
                    updated_at=now,
                )
                for competitor in competitors
                if has_time_overlap(competitor.start_minutes, competitor.end_minutes, start, end)
            ]
            self.repository.commit_transitions(
                [("RESERVATION_APPROVED", winner)] + [("RESERVATION_AUTO_REJECTED", loser) for loser in losers],
                now,
            )

        self._notify(
            winner.user_id,
            "Booking Approved",
            f"Your booking for {winner.date} has been approved.",
            NotificationType.SUCCESS,
        )
        for loser in losers:
            self._notify(
                loser.user_id,
                "Booking Auto-Rejected",
                f"Another booking was approved for the same time slot on {winner.date}. Please choose a different time.",
                NotificationType.ERROR,
            )
        logger.info("Approved %s; auto-rejected %d competing request(s)", reservation_id, len(losers))
        return ApprovalResult(reservation=winner, auto_rejected=losers)

    def reject(self, actor: Actor, reservation_id: str, reason: str) -> ReservationRecord:
        _require_admin(actor)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rejection reason required")

        current = self._require(reservation_id)
        with self.repository.slot_lock(current.room_id, current.date):
            current = self._require(reservation_id)
            ensure_transition(current, ReservationStatus.REJECTED)

            now = self._clock()
            rejected = replace(
                current,
                status=ReservationStatus.REJECTED,
                rejection_reason=reason,
                updated_at=now,
            )
            self.repository.commit_transitions([("RESERVATION_REJECTED", rejected)], now)

        self._notify(rejected.user_id, "Booking Rejected", f"Reason: {reason}", NotificationType.ERROR)
        return rejected

    def get_reservation(self, actor: Actor, reservation_id: str) -> ReservationRecord:
        record = self._require(reservation_id)
        if not actor.is_admin and record.user_id != actor.user_id:
            raise ForbiddenError("Forbidden")
        return record

    def list_reservations(
        self,
        actor: Actor,
        *,
        room_id: str | None = None,
        status: ReservationStatus | str | None = None,
        meeting_type: MeetingType | str | None = None,
        date: str | None = None,
        q: str | None = None,
    ) -> list[ReservationRecord]:
        status_filter = _coerce_enum(ReservationStatus, status, "status")
        type_filter = _coerce_enum(MeetingType, meeting_type, "meeting_type")
        day_filter = parse_day(date).isoformat() if date else None
        needle = (q or "").strip().lower()
        users = {user.user_id: user for user in self.users.list_users()} if needle else {}

        selected: list[ReservationRecord] = []
        for record in self.repository.list_all():
            if not actor.is_admin and record.user_id != actor.user_id:
                continue
            if room_id and record.room_id != room_id:
                continue
            if status_filter is not None and record.status is not status_filter:
                continue
            if type_filter is not None and record.meeting_type is not type_filter:
                continue
            if day_filter and record.date != day_filter:
                continue
            if needle:
                requester = users.get(record.user_id)
                haystack = [record.purpose]
                if requester is not None:
                    haystack.extend([requester.name, requester.email])
                if not any(needle in value.lower() for value in haystack):
                    continue
            selected.append(record)

        return sorted(selected, key=lambda record: (record.date, record.start_time), reverse=True)

    def room_schedule(self, room_id: str, day: str) -> list[ReservationRecord]:
        """Approved and pending reservations for one room and day, earliest first."""
        if self.rooms.get_room(room_id) is None:
            raise NotFoundError("Room not found.", {"room_id": room_id})
        day = parse_day(day).isoformat()
        return [
            record
            for record in self.repository.find_by_slot(room_id, day)
            if record.status in (ReservationStatus.APPROVED, ReservationStatus.PENDING)
        ]

    def pending_count(self, actor: Actor) -> int:
        _require_admin(actor)
        return self.repository.count_by_status(ReservationStatus.PENDING)

    def describe(self, record: ReservationRecord) -> dict[str, Any]:
        """Serialize a reservation with its requester and room details for display."""
        payload = record.to_dict()
        requester = self.users.get_user(record.user_id)
        room = self.rooms.get_room(record.room_id)
        payload.update(
            {
                "user_name": requester.name if requester else None,
                "user_email": requester.email if requester else None,
                "room_name": room.name if room else None,
                "room_color": room.color if room else None,
                "room_floor": room.floor if room else None,
            }
        )
        return payload

    def _require(self, reservation_id: str) -> ReservationRecord:
        record = self.repository.get(reservation_id)
        if record is None:
            raise NotFoundError("Booking not found.", {"reservation_id": reservation_id})
        return record

    def _notify(self, user_id: str, title: str, message: str, type: NotificationType) -> None:
        # Delivery failures never undo a committed transition.
        try:
            self.notifications.notify(user_id, title, message, type)
        except Exception:
            logger.exception("Failed to notify %s (%s)", user_id, title)
            try:
                self.repository.log_event(
                    "NOTIFICATION_FAILED",
                    {"user_id": user_id, "title": title},
                    self._clock(),
                )
            except ReservationStorageError:
                logger.exception("Failed to record notification failure for %s", user_id)


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise ForbiddenError("Admin only.")


def _coerce_enum(enum_type: Any, value: Any, name: str) -> Any:
    if value in (None, ""):
        return None
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(str(value).strip().lower())
    except ValueError as error:
        raise ValidationError(f"Unknown {name}: {value!r}") from error
