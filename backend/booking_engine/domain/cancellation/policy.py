from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from booking_engine.domain.units.db_models import CancellationPolicy


@dataclass(frozen=True)
class Tier:
    min_hours_before_checkin: int
    refund_percent: int


def tiers_from_policy(policy: CancellationPolicy | None) -> list[Tier]:
    if policy is None:
        return []
    return [Tier(tier.min_hours_before_checkin, tier.refund_percent) for tier in policy.tiers]


def tier_for(tiers: Iterable[Tier], hours_until_checkin: float) -> int:
    """Refund percentage for a cancellation ``hours_until_checkin`` hours out.

    The tier with the largest threshold not above the remaining hours wins. When
    two tiers share a threshold the more generous one applies. No matching tier
    (including check-in already passed) means no refund.
    """
    best: Tier | None = None
    for tier in tiers:
        if tier.min_hours_before_checkin > hours_until_checkin:
            continue
        if (
            best is None
            or tier.min_hours_before_checkin > best.min_hours_before_checkin
            or (
                tier.min_hours_before_checkin == best.min_hours_before_checkin
                and tier.refund_percent > best.refund_percent
            )
        ):
            best = tier
    return best.refund_percent if best is not None else 0
