from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from .models import Room
from .yaml_store import YamlEventLog, YamlListFile

DEFAULT_ROOMS = [
    {"name": "Conference Room", "capacity": 20, "color": "#3d6ce7", "max_duration": 480, "floor": "2nd Floor", "amenities": ["Projector", "Video Call", "Whiteboard"]},
    {"name": "Meeting Room 1", "capacity": 10, "color": "#16a34a", "max_duration": 240, "floor": "1st Floor", "amenities": ["TV Screen", "Whiteboard"]},
    {"name": "Meeting Room 2", "capacity": 8, "color": "#7c3aed", "max_duration": 240, "floor": "1st Floor", "amenities": ["TV Screen"]},
    {"name": "Board Room", "capacity": 15, "color": "#dc2626", "max_duration": 480, "floor": "3rd Floor", "amenities": ["Projector", "Video Call", "Catering"]},
]


class RoomYamlRegistry:
    """Room definitions. The reservation engine only reads from it."""

    def __init__(self, base_dir: str | Path = "data", event_log: YamlEventLog | None = None) -> None:
        self.base_dir = Path(base_dir)
        self.event_log = event_log
        self._file = YamlListFile(self.base_dir / "rooms.yaml", event_log)

    def list_rooms(self) -> list[Room]:
        rooms: list[Room] = []
        for index, row in enumerate(self._file.read_rows()):
            try:
                rooms.append(Room.from_dict(row))
            except (KeyError, TypeError, ValueError) as error:
                self._file.report_skipped_row(index, f"invalid room row: {error}")
        return sorted(rooms, key=lambda room: room.name)

    def get_room(self, room_id: str) -> Room | None:
        for room in self.list_rooms():
            if room.room_id == room_id:
                return room
        return None

    def add_room(
        self,
        name: str,
        capacity: int,
        max_duration: int = 240,
        *,
        floor: str = "",
        color: str = "#3d6ce7",
        amenities: list[str] | None = None,
        room_id: str | None = None,
        now: datetime | None = None,
    ) -> Room:
        name = name.strip()
        if not name:
            raise ValueError("room name must not be empty")

        room = Room(
            room_id=room_id or str(uuid4()),
            name=name,
            capacity=capacity,
            max_duration=max_duration,
            floor=floor,
            color=color,
            amenities=tuple(amenities or ()),
            created_at=now or datetime.now(),
        )
        with self._file.lock:
            if self.get_room(room.room_id) is not None:
                raise ValueError("room_id already exists")
            self._file.append_row(room.to_dict())
        self._log("ROOM_CREATED", {"room_id": room.room_id, "name": room.name}, now)
        return room

    def set_blocked(self, room_id: str, blocked: bool, now: datetime | None = None) -> Room:
        with self._file.lock:
            rooms = {room.room_id: room for room in self.list_rooms()}
            if room_id not in rooms:
                raise ValueError("room_id not found")
            rooms[room_id] = replace(rooms[room_id], blocked=blocked)
            self._file.write_rows([room.to_dict() for room in rooms.values()])
        self._log("ROOM_BLOCKED" if blocked else "ROOM_UNBLOCKED", {"room_id": room_id}, now)
        return rooms[room_id]

    def seed_default_rooms(self, now: datetime | None = None) -> list[Room]:
        with self._file.lock:
            if self.list_rooms():
                return []
            return [self.add_room(now=now, **definition) for definition in DEFAULT_ROOMS]

    def _log(self, event_type: str, payload: dict, now: datetime | None) -> None:
        if self.event_log is not None:
            self.event_log.record(event_type, payload, now)
