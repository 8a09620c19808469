from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from .errors import NotFoundError
from .models import Notification, NotificationType
from .yaml_store import YamlEventLog, YamlListFile


class NotificationYamlSink:
    def __init__(self, base_dir: str | Path = "data", event_log: YamlEventLog | None = None) -> None:
        self.base_dir = Path(base_dir)
        self._file = YamlListFile(self.base_dir / "notifications.yaml", event_log)

    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        now: datetime | None = None,
    ) -> Notification:
        notification = Notification(
            notification_id=str(uuid4()),
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            created_at=now or datetime.now(),
        )
        self._file.append_row(notification.to_dict())
        return notification

    def _load(self) -> list[Notification]:
        notifications: list[Notification] = []
        for index, row in enumerate(self._file.read_rows()):
            try:
                notifications.append(Notification.from_dict(row))
            except (KeyError, TypeError, ValueError) as error:
                self._file.report_skipped_row(index, f"invalid notification row: {error}")
        return notifications

    def list_for_user(self, user_id: str, unread_only: bool = False) -> list[Notification]:
        owned = [item for item in self._load() if item.user_id == user_id and not (unread_only and item.is_read)]
        return sorted(owned, key=lambda item: item.created_at, reverse=True)

    def unread_count(self, user_id: str) -> int:
        return len(self.list_for_user(user_id, unread_only=True))

    def mark_read(self, user_id: str, notification_id: str) -> Notification:
        with self._file.lock:
            notifications = self._load()
            for index, item in enumerate(notifications):
                if item.notification_id == notification_id and item.user_id == user_id:
                    notifications[index] = replace(item, is_read=True)
                    self._file.write_rows([row.to_dict() for row in notifications])
                    return notifications[index]
        raise NotFoundError("Notification not found.")

    def mark_all_read(self, user_id: str) -> int:
        with self._file.lock:
            notifications = self._load()
            changed = 0
            for index, item in enumerate(notifications):
                if item.user_id == user_id and not item.is_read:
                    notifications[index] = replace(item, is_read=True)
                    changed += 1
            if changed:
                self._file.write_rows([row.to_dict() for row in notifications])
        return changed
