from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator
from zoneinfo import ZoneInfo


@dataclass(frozen=True, order=True)
class StayRange:
    """Half-open calendar range ``[start, end)``; ``end`` is the checkout day."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError("end must be after start")

    @property
    def nights(self) -> int:
        return (self.end - self.start).days

    def overlaps(self, other: "StayRange") -> bool:
        return self.start < other.end and other.start < self.end

    def covers(self, night: date) -> bool:
        return self.start <= night < self.end

    def iter_nights(self) -> Iterator[date]:
        current = self.start
        while current < self.end:
            yield current
            current += timedelta(days=1)

    def as_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def normalize_datetime(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def local_checkin_at(check_in: date, check_in_time: time, tz_name: str) -> datetime:
    local = datetime.combine(check_in, check_in_time, tzinfo=ZoneInfo(tz_name))
    return local.astimezone(timezone.utc)


def hours_between(earlier: datetime, later: datetime) -> float:
    return (normalize_datetime(later) - normalize_datetime(earlier)).total_seconds() / 3600
