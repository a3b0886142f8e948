from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time
from typing import Iterable, Protocol

from booking_engine.domain import money
from booking_engine.domain.cancellation.policy import Tier, tier_for
from booking_engine.domain.dates import hours_between, local_checkin_at


class RefundableBooking(Protocol):
    check_in: object
    total_cents: int


@dataclass(frozen=True)
class RefundOutcome:
    checkin_at: datetime
    hours_until_checkin: float
    refund_percent: int
    amount_paid_cents: int
    calculated_cents: int
    outstanding_balance_cents: int

    def as_dict(self) -> dict:
        return {
            "checkin_at": self.checkin_at.isoformat(),
            "hours_until_checkin": round(self.hours_until_checkin, 2),
            "refund_percent": self.refund_percent,
            "amount_paid_cents": self.amount_paid_cents,
            "calculated_cents": self.calculated_cents,
            "outstanding_balance_cents": self.outstanding_balance_cents,
        }


def calculate(
    booking: RefundableBooking,
    amount_paid_cents: int,
    now: datetime,
    *,
    tiers: Iterable[Tier],
    check_in_time: time = time(hour=15),
    tz_name: str = "UTC",
) -> RefundOutcome:
    """Policy refund for ``amount_paid_cents`` if the booking is cancelled at ``now``.

    ``outstanding_balance_cents`` is the booking total minus the refund. It is
    reported for display only and never implies the guest owes more.
    """
    money.require_cents(amount_paid_cents, "amount_paid_cents")
    if amount_paid_cents < 0:
        raise ValueError("amount_paid_cents must not be negative")
    checkin_at = local_checkin_at(booking.check_in, check_in_time, tz_name)
    hours = hours_between(now, checkin_at)
    percent = tier_for(tiers, hours)
    calculated = money.clamp(money.percent_of(amount_paid_cents, percent), ceiling=amount_paid_cents)
    return RefundOutcome(
        checkin_at=checkin_at,
        hours_until_checkin=hours,
        refund_percent=percent,
        amount_paid_cents=amount_paid_cents,
        calculated_cents=calculated,
        outstanding_balance_cents=booking.total_cents - calculated,
    )
