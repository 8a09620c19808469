import re
from datetime import date, datetime
from typing import Iterable

from .errors import ValidationError

OFFICE_START_MINUTES = 9 * 60
OFFICE_END_MINUTES = 20 * 60
MIN_DURATION_MINUTES = 15

_CLOCK_RE = re.compile(r"^(?P<hour>\d{1,2}):(?P<minute>\d{2})$")


def parse_clock(text: str | None) -> int:
    """Return minutes since midnight for an ``HH:MM`` wall-clock string.

    Unparsable text is rejected instead of being read as midnight.
    """
    match = _CLOCK_RE.match((text or "").strip())
    if not match:
        raise ValidationError(f"Invalid time: {text!r}. Expected format: HH:MM")

    hour = int(match.group("hour"))
    minute = int(match.group("minute"))
    if hour > 23 or minute > 59:
        raise ValidationError(f"Invalid time: {text!r}. Expected format: HH:MM")
    return hour * 60 + minute


def format_clock(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def parse_day(text: str | None) -> date:
    try:
        return datetime.strptime((text or "").strip(), "%Y-%m-%d").date()
    except ValueError as error:
        raise ValidationError(f"Invalid date: {text!r}. Expected format: YYYY-MM-DD") from error


def has_time_overlap(new_start: int, new_end: int, exist_start: int, exist_end: int) -> bool:
    """Return True when two minute intervals overlap by even one minute.

    Intervals are treated as half-open ranges: [start, end)
    so touching boundaries (e.g. 10:00-11:00 and 11:00-12:00) do not overlap.
    """
    return new_start < exist_end and new_end > exist_start


def find_overlapping(new_start: int, new_end: int, intervals: Iterable[tuple[int, int]]) -> tuple[int, int] | None:
    """Return the first interval overlapping [new_start, new_end), if any."""
    for exist_start, exist_end in intervals:
        if has_time_overlap(new_start, new_end, exist_start, exist_end):
            return exist_start, exist_end
    return None
