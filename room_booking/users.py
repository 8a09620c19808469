from __future__ import annotations

from pathlib import Path
from uuid import uuid4

from .models import Role, User
from .yaml_store import YamlEventLog, YamlListFile


class UserYamlDirectory:
    """Users known to the system. Identities are trusted as given; there is no login here."""

    def __init__(self, base_dir: str | Path = "data", event_log: YamlEventLog | None = None) -> None:
        self.base_dir = Path(base_dir)
        self._file = YamlListFile(self.base_dir / "users.yaml", event_log)

    def list_users(self) -> list[User]:
        users: list[User] = []
        for index, row in enumerate(self._file.read_rows()):
            try:
                users.append(User.from_dict(row))
            except (KeyError, TypeError, ValueError) as error:
                self._file.report_skipped_row(index, f"invalid user row: {error}")
        return users

    def get_user(self, user_id: str) -> User | None:
        for user in self.list_users():
            if user.user_id == user_id:
                return user
        return None

    def find_by_email(self, email: str) -> User | None:
        normalized = email.strip().lower()
        for user in self.list_users():
            if user.email.lower() == normalized:
                return user
        return None

    def list_active_admins(self) -> list[User]:
        return [user for user in self.list_users() if user.active and user.role is Role.ADMIN]

    def add_user(
        self,
        name: str,
        email: str,
        role: Role = Role.EMPLOYEE,
        *,
        dept: str = "",
        active: bool = True,
        user_id: str | None = None,
    ) -> User:
        if not name.strip() or not email.strip():
            raise ValueError("name and email must not be empty")

        user = User(
            user_id=user_id or str(uuid4()),
            name=name.strip(),
            email=email.strip(),
            role=role,
            active=active,
            dept=dept,
        )
        with self._file.lock:
            if self.find_by_email(user.email) is not None:
                raise ValueError("email already registered")
            self._file.append_row(user.to_dict())
        return user

    def seed_default_admin(self, name: str = "Admin", email: str = "admin@company.com") -> User | None:
        with self._file.lock:
            if self.find_by_email(email) is not None:
                return None
            return self.add_user(name, email, Role.ADMIN)
