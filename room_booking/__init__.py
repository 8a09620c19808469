from .errors import (
	ConflictError,
	ForbiddenError,
	InvalidStateTransition,
	NotFoundError,
	ReservationError,
	ValidationError,
)
from .lifecycle import AUTO_REJECT_REASON, ReservationLifecycle
from .models import (
	Actor,
	ApprovalResult,
	MeetingType,
	Notification,
	NotificationType,
	ReservationRecord,
	ReservationRequest,
	ReservationStatus,
	Role,
	Room,
	User,
)
from .notifications import NotificationYamlSink
from .rooms import RoomYamlRegistry
from .settings_store import SettingsYamlStore
from .timeslots import format_clock, has_time_overlap, parse_clock
from .users import UserYamlDirectory
from .validation import AdmissionValidator, RejectionReason
from .yaml_store import ReservationStorageError, ReservationYamlRepository, YamlEventLog

__all__ = [
	"ConflictError",
	"ForbiddenError",
	"InvalidStateTransition",
	"NotFoundError",
	"ReservationError",
	"ValidationError",
	"AUTO_REJECT_REASON",
	"ReservationLifecycle",
	"Actor",
	"ApprovalResult",
	"MeetingType",
	"Notification",
	"NotificationType",
	"ReservationRecord",
	"ReservationRequest",
	"ReservationStatus",
	"Role",
	"Room",
	"User",
	"NotificationYamlSink",
	"RoomYamlRegistry",
	"SettingsYamlStore",
	"format_clock",
	"has_time_overlap",
	"parse_clock",
	"UserYamlDirectory",
	"AdmissionValidator",
	"RejectionReason",
	"ReservationStorageError",
	"ReservationYamlRepository",
	"YamlEventLog",
]
