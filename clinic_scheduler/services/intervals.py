# clinic_scheduler/services/intervals.py
"""Half-open time interval helpers.

All windows are ``[start, end)`` wall-clock times on a single calendar day.
Touching endpoints never overlap.
"""
from datetime import date, datetime, time, timedelta
from typing import Iterator, Tuple

Window = Tuple[time, time]


def intervals_overlap(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    return a_start < b_end and b_start < a_end


def add_minutes(start: time, minutes: int) -> time:
    """Wall-clock time ``minutes`` after ``start``.

    Raises ValueError when the result would fall on the following day.
    """
    moved = datetime.combine(date.min, start) + timedelta(minutes=minutes)
    if moved.date() != date.min:
        raise ValueError("window crosses midnight")
    return moved.time()


def generate_candidate_slots(
    window_start: time,
    window_end: time,
    duration_minutes: int,
    step_minutes: int = 30,
) -> Iterator[Window]:
    """Yield every ``duration_minutes`` window starting on a ``step_minutes`` grid.

    Starts from ``window_start`` and stops once a window would end after
    ``window_end``. Each call returns a fresh generator.
    """
    if duration_minutes <= 0 or step_minutes <= 0:
        raise ValueError("duration and step must be positive")

    day = date.min
    cursor = datetime.combine(day, window_start)
    limit = datetime.combine(day, window_end)
    length = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=step_minutes)

    while cursor + length <= limit:
        yield cursor.time(), (cursor + length).time()
        cursor += step


def day_of_week(on_date: date) -> int:
    """0=Sunday ... 6=Saturday."""
    return (on_date.weekday() + 1) % 7
