"""Per-day execution windows."""

from datetime import datetime
from typing import Optional, Tuple

from ilm_kernel.errors import ScheduleConfigError
from ilm_kernel.models.schedule import WINDOW_PATTERN, Schedule


def parse_window(window: str) -> Tuple[int, int]:
    """'HH:MM-HH:MM' -> (start, end) in minutes since midnight."""
    if not WINDOW_PATTERN.match(window or ""):
        raise ScheduleConfigError(f"Malformed window {window!r}, expected HH:MM-HH:MM")
    start, end = window.split("-")
    return _to_minutes(start, window), _to_minutes(end, window)


def _to_minutes(hhmm: str, window: str) -> int:
    hours, minutes = int(hhmm[:2]), int(hhmm[3:])
    if hours > 23 or minutes > 59:
        raise ScheduleConfigError(f"Window {window!r} has an invalid time {hhmm}")
    return hours * 60 + minutes


def window_for(schedule: Schedule, when: datetime) -> Optional[str]:
    return schedule.hours_for(when)


def is_in_window(schedule: Schedule, now: datetime) -> bool:
    """
    True iff today's window is set and `now` falls in [start, end).
    A window with start > end crosses midnight.
    """
    window = window_for(schedule, now)
    if window is None:
        return False
    start, end = parse_window(window)
    current = now.hour * 60 + now.minute
    if start > end:
        return current >= start or current < end
    return start <= current < end
