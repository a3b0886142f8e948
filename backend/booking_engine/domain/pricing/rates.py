from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable

from booking_engine.domain.errors import InvariantViolation


@dataclass(frozen=True)
class SeasonalWindow:
    rate_id: int
    start: date
    end: date
    rate_cents: int

    def covers(self, night: date) -> bool:
        return self.start <= night < self.end


@dataclass(frozen=True)
class ResolvedRate:
    cents: int
    mode: str
    seasonal_rate_id: int | None = None


class RateResolver:
    """Nightly rate lookup: the covering seasonal window, else the base rate."""

    def __init__(self, base_rate_cents: int, pricing_mode: str, windows: Iterable[SeasonalWindow] = ()) -> None:
        self.base_rate_cents = base_rate_cents
        self.pricing_mode = pricing_mode
        self.windows = sorted(windows, key=lambda window: window.start)
        for earlier, later in zip(self.windows, self.windows[1:]):
            if later.start < earlier.end:
                raise InvariantViolation(
                    detail="Overlapping seasonal rates found for unit",
                    errors=[{"field": "seasonal_rates", "message": f"{earlier.rate_id} overlaps {later.rate_id}"}],
                )

    def rate_for(self, night: date) -> ResolvedRate:
        for window in self.windows:
            if window.covers(night):
                return ResolvedRate(window.rate_cents, self.pricing_mode, window.rate_id)
            if window.start > night:
                break
        return ResolvedRate(self.base_rate_cents, self.pricing_mode)
