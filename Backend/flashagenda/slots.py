"""
Slot generation.

Turns an agenda's weekly availability windows, its optional lunch break and
the intervals already taken on a date into the ordered list of start times a
guest may book for a given duration.

All arithmetic happens in integer minutes past midnight. Times are parsed once
on the way in (`parse_time`) and formatted once on the way out
(`format_minutes`), so zero-padding or seconds in the stored values never
matter to the comparisons.

The cursor inside a window advances by the requested duration, not by a fixed
grid: a 60 minute service walking 09:00-12:00 is offered 09:00, 10:00 and
11:00 only.
"""

from dataclasses import dataclass
from datetime import date, time
from typing import Iterable, Optional, Sequence, Union

from .errors import InvalidDuration, InvalidWindow

MINUTES_PER_DAY = 24 * 60

TimeLike = Union[str, time, int]


def parse_time(value: TimeLike) -> int:
    """Convert "HH:MM", "HH:MM:SS" or a `time` to minutes past midnight."""
    if isinstance(value, bool):
        raise ValueError("Time must be HH:MM or HH:MM:SS")
    if isinstance(value, int):
        minutes = value
    elif isinstance(value, time):
        minutes = value.hour * 60 + value.minute
    else:
        parts = value.strip().split(":")
        if len(parts) not in (2, 3) or not all(part.isdigit() for part in parts):
            raise ValueError("Time must be HH:MM or HH:MM:SS")
        hour, minute = int(parts[0]), int(parts[1])
        second = int(parts[2]) if len(parts) == 3 else 0
        if not (0 <= hour <= 23 and 0 <= minute <= 59 and 0 <= second <= 59):
            raise ValueError("Time must be HH:MM or HH:MM:SS")
        minutes = hour * 60 + minute
    if not 0 <= minutes <= MINUTES_PER_DAY:
        raise ValueError("Time must fall within a single day")
    return minutes


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def minutes_to_time(minutes: int) -> time:
    return time(minutes // 60, minutes % 60)


def day_of_week(value: date) -> int:
    """Day of week with Sunday=0 .. Saturday=6."""
    return (value.weekday() + 1) % 7


@dataclass(frozen=True)
class Window:
    """A weekly availability window in minutes past midnight."""
    day_of_week: int
    start: int
    end: int

    @classmethod
    def of(cls, day: int, start: TimeLike, end: TimeLike) -> "Window":
        return cls(day, parse_time(start), parse_time(end))


@dataclass(frozen=True)
class Interval:
    """A [start, end) range in minutes past midnight."""
    start: int
    end: int

    @classmethod
    def of(cls, start: TimeLike, end: TimeLike) -> "Interval":
        return cls(parse_time(start), parse_time(end))

    def overlaps(self, start: int, end: int) -> bool:
        return start < self.end and end > self.start


def compute_slots(
    windows: Iterable[Window],
    lunch_break: Optional[Interval],
    on_date: date,
    duration_minutes: int,
    existing_bookings: Sequence[Interval],
) -> list[int]:
    """
    Compute the bookable start times for `on_date`.

    Args:
        windows: Availability windows; only those for the date's weekday are used.
        lunch_break: Agenda-wide daily break, or None.
        on_date: The calendar date being booked.
        duration_minutes: Total length of the requested service(s).
        existing_bookings: Intervals already occupied on that date. Callers pass
            pending and confirmed bookings only.

    Returns:
        Strictly ascending start times in minutes past midnight. Empty when the
        day is closed or fully booked.

    Raises:
        InvalidDuration: duration_minutes is not positive.
        InvalidWindow: a window with start >= end reached the generator.
    """
    if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) or duration_minutes <= 0:
        raise InvalidDuration(details={"duration_minutes": duration_minutes})

    weekday = day_of_week(on_date)
    starts: set[int] = set()

    for window in windows:
        if window.day_of_week != weekday:
            continue
        if window.start >= window.end:
            raise InvalidWindow(
                details={"start": format_minutes(window.start), "end": format_minutes(window.end)}
            )

        cursor = window.start
        while cursor + duration_minutes <= window.end:
            slot_end = cursor + duration_minutes
            blocked = (lunch_break is not None and lunch_break.overlaps(cursor, slot_end)) or any(
                booking.overlaps(cursor, slot_end) for booking in existing_bookings
            )
            if not blocked:
                starts.add(cursor)
            cursor += duration_minutes

    return sorted(starts)
