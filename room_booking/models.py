from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from .errors import ValidationError
from .timeslots import format_clock, parse_clock


class ReservationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class MeetingType(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


class Role(str, Enum):
    EMPLOYEE = "employee"
    ADMIN = "admin"


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


@dataclass(frozen=True)
class Room:
    room_id: str
    name: str
    capacity: int
    max_duration: int
    blocked: bool = False
    floor: str = ""
    color: str = "#3d6ce7"
    amenities: tuple[str, ...] = ()
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError("Room capacity must be at least 1.")
        if self.max_duration <= 0:
            raise ValueError("Room max_duration must be greater than zero.")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "room_id": self.room_id,
            "name": self.name,
            "capacity": self.capacity,
            "max_duration": self.max_duration,
            "blocked": self.blocked,
            "floor": self.floor,
            "color": self.color,
            "amenities": list(self.amenities),
        }
        if self.created_at is not None:
            payload["created_at"] = self.created_at.isoformat(timespec="seconds")
        return payload

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Room":
        return Room(
            room_id=str(data["room_id"]),
            name=str(data["name"]),
            capacity=int(data["capacity"]),
            max_duration=int(data["max_duration"]),
            blocked=bool(data.get("blocked", False)),
            floor=str(data.get("floor") or ""),
            color=str(data.get("color") or "#3d6ce7"),
            amenities=tuple(str(item) for item in data.get("amenities") or []),
            created_at=_optional_datetime(data.get("created_at")),
        )


@dataclass(frozen=True)
class User:
    user_id: str
    name: str
    email: str
    role: Role = Role.EMPLOYEE
    active: bool = True
    dept: str = ""

    def as_actor(self) -> Actor:
        return Actor(user_id=self.user_id, role=self.role)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "active": self.active,
            "dept": self.dept,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "User":
        return User(
            user_id=str(data["user_id"]),
            name=str(data["name"]),
            email=str(data["email"]),
            role=Role(str(data.get("role", Role.EMPLOYEE.value))),
            active=bool(data.get("active", True)),
            dept=str(data.get("dept") or ""),
        )


@dataclass(frozen=True)
class ReservationRequest:
    """A prospective reservation, as submitted by a requester."""

    room_id: str
    date: str
    start_time: str
    end_time: str
    meeting_type: MeetingType = MeetingType.INTERNAL
    purpose: str = ""
    persons: int | None = None
    food: bool = False
    veg_nonveg: str = ""
    remarks: str = ""

    @staticmethod
    def from_payload(payload: dict[str, Any]) -> "ReservationRequest":
        missing = [name for name in REQUIRED_REQUEST_FIELDS if not str(payload.get(name) or "").strip()]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                {"missing": missing},
            )

        meeting_type_text = str(payload["meeting_type"]).strip().lower()
        try:
            meeting_type = MeetingType(meeting_type_text)
        except ValueError as error:
            raise ValidationError(f"Unknown meeting_type: {meeting_type_text!r}") from error

        persons_value = payload.get("persons")
        persons: int | None = None
        if persons_value not in (None, ""):
            try:
                persons = int(persons_value)
            except (TypeError, ValueError) as error:
                raise ValidationError("persons must be a whole number.") from error
            if persons < 1:
                raise ValidationError("persons must be at least 1.")

        return ReservationRequest(
            room_id=str(payload["room_id"]).strip(),
            date=str(payload["date"]).strip(),
            start_time=str(payload["start_time"]).strip(),
            end_time=str(payload["end_time"]).strip(),
            meeting_type=meeting_type,
            purpose=str(payload["purpose"]).strip(),
            persons=persons,
            food=_as_bool(payload.get("food", False)),
            veg_nonveg=str(payload.get("veg_nonveg") or "").strip(),
            remarks=str(payload.get("remarks") or "").strip(),
        )


REQUIRED_REQUEST_FIELDS = ("room_id", "date", "start_time", "end_time", "meeting_type", "purpose")


@dataclass(frozen=True)
class ReservationRecord:
    reservation_id: str
    user_id: str
    room_id: str
    date: str
    start_time: str
    end_time: str
    meeting_type: MeetingType
    purpose: str
    status: ReservationStatus
    created_at: datetime
    updated_at: datetime
    persons: int | None = None
    food: bool = False
    veg_nonveg: str = ""
    remarks: str = ""
    rejection_reason: str = ""
    approved_at: datetime | None = None

    @property
    def start_minutes(self) -> int:
        return parse_clock(self.start_time)

    @property
    def end_minutes(self) -> int:
        return parse_clock(self.end_time)

    @property
    def slot(self) -> tuple[str, str]:
        return self.room_id, self.date

    def starts_at(self) -> datetime:
        day = date.fromisoformat(self.date)
        minutes = self.start_minutes
        return datetime(day.year, day.month, day.day, minutes // 60, minutes % 60)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "reservation_id": self.reservation_id,
            "user_id": self.user_id,
            "room_id": self.room_id,
            "date": self.date,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "meeting_type": self.meeting_type.value,
            "purpose": self.purpose,
            "persons": self.persons,
            "food": self.food,
            "veg_nonveg": self.veg_nonveg,
            "remarks": self.remarks,
            "status": self.status.value,
            "rejection_reason": self.rejection_reason,
            "approved_at": self.approved_at.isoformat(timespec="seconds") if self.approved_at else None,
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "updated_at": self.updated_at.isoformat(timespec="seconds"),
        }
        return payload

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ReservationRecord":
        persons = data.get("persons")
        return ReservationRecord(
            reservation_id=str(data["reservation_id"]),
            user_id=str(data["user_id"]),
            room_id=str(data["room_id"]),
            date=date.fromisoformat(str(data["date"])).isoformat(),
            start_time=_clock_text(data["start_time"]),
            end_time=_clock_text(data["end_time"]),
            meeting_type=MeetingType(str(data["meeting_type"])),
            purpose=str(data.get("purpose") or ""),
            status=ReservationStatus(str(data["status"])),
            created_at=datetime.fromisoformat(str(data["created_at"])),
            updated_at=datetime.fromisoformat(str(data.get("updated_at") or data["created_at"])),
            persons=int(persons) if persons not in (None, "") else None,
            food=bool(data.get("food", False)),
            veg_nonveg=str(data.get("veg_nonveg") or ""),
            remarks=str(data.get("remarks") or ""),
            rejection_reason=str(data.get("rejection_reason") or ""),
            approved_at=_optional_datetime(data.get("approved_at")),
        )


@dataclass(frozen=True)
class Notification:
    notification_id: str
    user_id: str
    title: str
    message: str
    type: NotificationType
    created_at: datetime
    is_read: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "type": self.type.value,
            "is_read": self.is_read,
            "created_at": self.created_at.isoformat(timespec="seconds"),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Notification":
        return Notification(
            notification_id=str(data["notification_id"]),
            user_id=str(data["user_id"]),
            title=str(data["title"]),
            message=str(data["message"]),
            type=NotificationType(str(data.get("type", NotificationType.INFO.value))),
            created_at=datetime.fromisoformat(str(data["created_at"])),
            is_read=bool(data.get("is_read", False)),
        )


@dataclass(frozen=True)
class ApprovalResult:
    reservation: ReservationRecord
    auto_rejected: list[ReservationRecord] = field(default_factory=list)

    @property
    def auto_rejected_count(self) -> int:
        return len(self.auto_rejected)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _optional_datetime(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _clock_text(value: Any) -> str:
    # An unquoted 10:00 in hand-edited YAML loads as the base-60 integer 600.
    if isinstance(value, int) and not isinstance(value, bool):
        text = format_clock(value)
    else:
        text = str(value)
    try:
        return format_clock(parse_clock(text))
    except ValidationError as error:
        raise ValueError(error.message) from error
