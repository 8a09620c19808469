from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

from .errors import ValidationError
from .yaml_store import YamlEventLog, YamlListFile


class SettingsYamlStore:
    """App-wide key/value settings edited by administrators.

    Values are kept as text. :meth:`update` upserts a whole batch in one file
    replacement, so a rejected batch leaves every key untouched.
    """

    def __init__(self, base_dir: str | Path = "data", event_log: YamlEventLog | None = None) -> None:
        self.base_dir = Path(base_dir)
        self.event_log = event_log
        self._file = YamlListFile(self.base_dir / "settings.yaml", event_log)

    def get_all(self) -> dict[str, str]:
        values: dict[str, str] = {}
        for index, row in enumerate(self._file.read_rows()):
            key = row.get("key")
            if not isinstance(key, str) or not key.strip():
                self._file.report_skipped_row(index, "setting row has no key")
                continue
            values[key] = _as_text(row.get("value"))
        return values

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.get_all().get(key, default)

    def update(self, values: Mapping[str, Any], now: datetime | None = None) -> dict[str, str]:
        if not isinstance(values, Mapping):
            raise ValidationError("Settings must be a JSON object.")
        cleaned: dict[str, str] = {}
        for key, value in values.items():
            if not isinstance(key, str) or not key.strip():
                raise ValidationError("Setting keys must be non-empty strings.")
            if isinstance(value, (dict, list)):
                raise ValidationError(f"Setting {key!r} must be a scalar value.", {"key": key})
            cleaned[key.strip()] = _as_text(value)

        with self._file.lock:
            merged = self.get_all()
            merged.update(cleaned)
            self._file.write_rows([{"key": key, "value": value} for key, value in merged.items()])

        if cleaned and self.event_log is not None:
            self.event_log.record("SETTINGS_UPDATED", {"keys": sorted(cleaned)}, now)
        return merged


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
