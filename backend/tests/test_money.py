from decimal import Decimal

import pytest

from booking_engine.domain import money


@pytest.mark.parametrize(
    "amount, percent, expected",
    [
        (30000, 15, 4500),
        (33333, 15, 5000),
        (1, 50, 1),
        (3, 50, 2),
        (34950, 50, 17475),
        (999, Decimal("8.25"), 82),
    ],
)
def test_percent_of_rounds_half_up(amount, percent, expected):
    assert money.percent_of(amount, percent) == expected


def test_round_half_up_never_uses_bankers_rounding():
    assert money.round_half_up(Decimal("2.5")) == 3
    assert money.round_half_up(Decimal("3.5")) == 4
    assert money.round_half_up("0.49") == 0


def test_clamp_bounds_amounts():
    assert money.clamp(-10) == 0
    assert money.clamp(500, ceiling=300) == 300
    assert money.clamp(200, ceiling=300) == 200


def test_require_cents_rejects_non_integers():
    assert money.require_cents(100) == 100
    with pytest.raises(TypeError):
        money.require_cents(10.5)
    with pytest.raises(TypeError):
        money.require_cents(True)


def test_format_cents():
    assert money.format_cents(34950, "usd") == "USD 349.50"
    assert money.format_cents(-5, "EUR") == "-EUR 0.05"
