from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator
import logging
import os
import shutil
import tempfile
import threading

from filelock import FileLock, Timeout as FileLockTimeout
import yaml

from .models import ReservationRecord, ReservationStatus

logger = logging.getLogger(__name__)


LOCK_TIMEOUT_SECONDS = 30


class ReservationStorageError(RuntimeError):
    pass


class SharedFileLock:
    """Reentrant lock held against other threads and other processes.

    The thread lock keeps this process's threads in line; the ``.lock`` file
    beside the data file excludes other processes and other store instances
    opened on the same data directory.
    """

    def __init__(self, lock_path: str | Path, timeout: float = LOCK_TIMEOUT_SECONDS) -> None:
        self.lock_path = Path(lock_path)
        self._thread_lock = threading.RLock()
        self._file_lock = FileLock(str(self.lock_path), timeout=timeout)

    def __enter__(self) -> "SharedFileLock":
        self._thread_lock.acquire()
        try:
            self._file_lock.acquire()
        except FileLockTimeout as error:
            self._thread_lock.release()
            raise ReservationStorageError(f"Timed out waiting for lock: {self.lock_path}") from error
        except BaseException:
            self._thread_lock.release()
            raise
        return self

    def __exit__(self, *exc_info: Any) -> None:
        try:
            self._file_lock.release()
        finally:
            self._thread_lock.release()


class YamlListFile:
    """A YAML file holding a top-level list of mappings.

    Writes go through a uniquely named temp file and an atomic replace, so
    readers never see a half-written list. Read-modify-write callers hold
    :attr:`lock`, which also excludes other processes. Corrupted files are
    backed up and reset to ``[]``.
    """

    def __init__(self, path: str | Path, event_log: "YamlEventLog | None" = None) -> None:
        self.path = Path(path)
        self.event_log = event_log
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock = SharedFileLock(self.path.with_name(self.path.name + ".lock"))
        with self.lock:
            self._ensure_file()

    def _ensure_file(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text("[]\n", encoding="utf-8")

    def signature(self) -> tuple[int, int, int] | None:
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return None
        return stat.st_mtime_ns, stat.st_ino, stat.st_size

    def read_rows(self) -> list[dict[str, Any]]:
        with self.lock:
            try:
                payload = yaml.safe_load(self.path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                self.path.write_text("[]\n", encoding="utf-8")
                return []
            except (UnicodeDecodeError, yaml.YAMLError) as error:
                self._recover_corrupted_yaml(error)
                return []
            except OSError as error:
                raise ReservationStorageError(f"Failed to read YAML file: {self.path}") from error

            if payload is None:
                return []
            if not isinstance(payload, list):
                self._recover_corrupted_yaml(ValueError("top-level YAML is not a list"))
                return []

            sanitized: list[dict[str, Any]] = []
            for index, row in enumerate(payload):
                if isinstance(row, dict):
                    sanitized.append(row)
                else:
                    self.report_skipped_row(index, "row is not a mapping")
            return sanitized

    def write_rows(self, rows: list[dict[str, Any]]) -> None:
        with self.lock:
            temp_path: Path | None = None
            try:
                with tempfile.NamedTemporaryFile(
                    "w",
                    encoding="utf-8",
                    dir=self.path.parent,
                    prefix=f".{self.path.name}.",
                    suffix=".tmp",
                    delete=False,
                ) as handle:
                    temp_path = Path(handle.name)
                    yaml.safe_dump(rows, handle, allow_unicode=True, sort_keys=False)
                os.replace(temp_path, self.path)
            except OSError as error:
                raise ReservationStorageError(f"Failed to write YAML file: {self.path}") from error
            finally:
                if temp_path is not None and temp_path.exists():
                    temp_path.unlink(missing_ok=True)

    def append_row(self, row: dict[str, Any]) -> None:
        with self.lock:
            rows = self.read_rows()
            rows.append(row)
            self.write_rows(rows)

    def report_skipped_row(self, index: int, reason: str) -> None:
        logger.warning("Skipping row %s of %s: %s", index, self.path.name, reason)
        if self.event_log is not None:
            self.event_log.record(
                "YAML_ROW_SKIPPED",
                {
                    "file": str(self.path.name),
                    "index": index,
                    "reason": reason,
                },
            )

    def _recover_corrupted_yaml(self, error: Exception) -> None:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        backup_path = self.path.with_name(f"{self.path.stem}.corrupt.{timestamp}{self.path.suffix}")
        try:
            if self.path.exists():
                shutil.copy2(self.path, backup_path)
        except OSError:
            logger.warning("Could not back up corrupted file %s", self.path, exc_info=True)

        self.path.write_text("[]\n", encoding="utf-8")
        logger.error("Recovered corrupted YAML file %s: %s", self.path, error)
        if self.event_log is not None:
            self.event_log.record(
                "YAML_RECOVERED",
                {
                    "file": str(self.path.name),
                    "backup": str(backup_path.name),
                    "reason": str(error),
                },
            )


class YamlEventLog:
    """Append-only audit trail of state changes, shared by every store in a data dir."""

    def __init__(self, path: str | Path) -> None:
        self._file = YamlListFile(path)

    @property
    def path(self) -> Path:
        return self._file.path

    def record(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        timestamp = (event_time or datetime.now()).isoformat(timespec="seconds")
        self._file.append_row({"event_time": timestamp, "event_type": event_type, "payload": payload})

    def events(self) -> list[dict[str, Any]]:
        return self._file.read_rows()


class ReservationYamlRepository:
    """Reservation records keyed by id, indexed by (room_id, date).

    Callers that read the approved set and then write must do both inside
    :meth:`slot_lock` for the affected (room_id, date).
    """

    def __init__(self, base_dir: str | Path = "data", event_log: YamlEventLog | None = None) -> None:
        self.base_dir = Path(base_dir)
        self.event_log = event_log or YamlEventLog(self.base_dir / "reservation_events.yaml")
        self._file = YamlListFile(self.base_dir / "reservations.yaml", self.event_log)
        self._records: dict[str, ReservationRecord] = {}
        self._slot_index: dict[tuple[str, str], list[str]] = {}
        self._unreadable_rows: list[dict[str, Any]] = []
        self._loaded_signature: tuple[int, int, int] | None = None

    @contextmanager
    def slot_lock(self, room_id: str, day: str) -> Iterator[None]:
        """Hold the store lock while reading the (room_id, day) slot and writing back.

        Each write replaces the whole file, so the file lock shared with other
        threads, instances and processes is the lock for every slot. The cache
        is reloaded on entry so the caller decides on what is on disk.
        """
        with self._file.lock:
            self._refresh(force=True)
            logger.debug("Locked slot %s on %s", room_id, day)
            yield

    def log_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        self.event_log.record(event_type, payload, event_time)

    def _audit(self, event_type: str, payload: dict[str, Any], event_time: datetime | None) -> None:
        # Runs after the records are persisted; the write stands even if the audit append fails.
        try:
            self.log_event(event_type, payload, event_time)
        except ReservationStorageError:
            logger.exception("Failed to record %s for %s", event_type, payload.get("reservation_id"))

    def _refresh(self, force: bool = False) -> None:
        with self._file.lock:
            if not force and self._loaded_signature == self._file.signature():
                return

            records: dict[str, ReservationRecord] = {}
            unreadable: list[dict[str, Any]] = []
            for index, row in enumerate(self._file.read_rows()):
                try:
                    record = ReservationRecord.from_dict(row)
                except (KeyError, TypeError, ValueError) as error:
                    self._file.report_skipped_row(index, f"invalid reservation row: {error}")
                    unreadable.append(row)
                    continue
                records[record.reservation_id] = record

            self._records = records
            self._unreadable_rows = unreadable
            self._rebuild_index()
            self._loaded_signature = self._file.signature()

    def _rebuild_index(self) -> None:
        index: dict[tuple[str, str], list[str]] = {}
        for record in self._records.values():
            index.setdefault(record.slot, []).append(record.reservation_id)
        self._slot_index = index

    def _persist(self, records: dict[str, ReservationRecord]) -> None:
        # Rows that failed to load are written back untouched for manual repair.
        self._file.write_rows([record.to_dict() for record in records.values()] + self._unreadable_rows)
        self._records = records
        self._rebuild_index()
        self._loaded_signature = self._file.signature()

    def get(self, reservation_id: str) -> ReservationRecord | None:
        with self._file.lock:
            self._refresh()
            return self._records.get(reservation_id)

    def list_all(self) -> list[ReservationRecord]:
        with self._file.lock:
            self._refresh()
            return list(self._records.values())

    def find_by_slot(
        self,
        room_id: str,
        day: str,
        status: ReservationStatus | None = None,
        exclude_id: str | None = None,
    ) -> list[ReservationRecord]:
        with self._file.lock:
            self._refresh()
            ids = self._slot_index.get((room_id, day), [])
            found = [self._records[reservation_id] for reservation_id in ids if reservation_id != exclude_id]
        if status is not None:
            found = [record for record in found if record.status is status]
        return sorted(found, key=lambda record: (record.start_time, record.created_at))

    def count_by_status(self, status: ReservationStatus) -> int:
        return sum(1 for record in self.list_all() if record.status is status)

    def insert(self, record: ReservationRecord, now: datetime | None = None) -> ReservationRecord:
        with self._file.lock:
            self._refresh(force=True)
            if record.reservation_id in self._records:
                raise ValueError("reservation_id already exists")

            records = dict(self._records)
            records[record.reservation_id] = record
            self._persist(records)

        self._audit(
            "RESERVATION_CREATED",
            {
                "reservation_id": record.reservation_id,
                "user_id": record.user_id,
                "room_id": record.room_id,
                "date": record.date,
                "start_time": record.start_time,
                "end_time": record.end_time,
                "status": record.status.value,
            },
            now or record.created_at,
        )
        return record

    def commit_transitions(
        self,
        transitions: Iterable[tuple[str, ReservationRecord]],
        now: datetime | None = None,
    ) -> list[ReservationRecord]:
        """Persist a batch of updated records in a single file replacement.

        Each entry pairs the audit event type with the updated record. Either
        every record is written or none is.
        """
        transitions = list(transitions)
        with self._file.lock:
            self._refresh(force=True)
            records = dict(self._records)
            for _, record in transitions:
                if record.reservation_id not in records:
                    raise ValueError(f"reservation_id not found: {record.reservation_id}")
                records[record.reservation_id] = record
            self._persist(records)

        for event_type, record in transitions:
            payload: dict[str, Any] = {
                "reservation_id": record.reservation_id,
                "room_id": record.room_id,
                "date": record.date,
                "status": record.status.value,
            }
            if record.rejection_reason:
                payload["rejection_reason"] = record.rejection_reason
            self._audit(event_type, payload, now)
        return [record for _, record in transitions]
