"""Money arithmetic shared by the toll engine and the webhook.

Tolls are configured as ``Decimal`` dollar amounts; Stripe works in integer
cents. Top-up checkout sessions are grossed up so that the amount left after
Stripe's card fee (2.9% + 30 cents) still covers the toll.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

FEE_RATE = Decimal("0.029")
FEE_FIXED_CENTS = 30
DEFAULT_TOP_UP_FLOOR = Decimal("1.00")

_CENT = Decimal("0.01")


def to_minor_units(amount: Decimal) -> int:
    """Dollars to cents, rounding to the nearest cent (half up)."""
    return int((Decimal(amount).quantize(_CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(_CENT)


def processing_fee_cents(gross_cents: int) -> int:
    """Fee Stripe keeps on a card charge of ``gross_cents``."""
    return int((Decimal(gross_cents) * FEE_RATE).to_integral_value(rounding=ROUND_HALF_UP)) + FEE_FIXED_CENTS


def net_after_fee_cents(gross_cents: int) -> int:
    return gross_cents - processing_fee_cents(gross_cents)


def top_up_net_target_cents(toll_amount: Decimal, floor: Decimal = DEFAULT_TOP_UP_FLOOR) -> int:
    """Smallest net credit a top-up should produce: max(toll, floor)."""
    return to_minor_units(max(Decimal(toll_amount), Decimal(floor)))


def top_up_gross_cents(toll_amount: Decimal, floor: Decimal = DEFAULT_TOP_UP_FLOOR) -> int:
    """Charge amount whose net after fees is at least the top-up target."""
    net = top_up_net_target_cents(toll_amount, floor)
    gross = ((Decimal(net) + FEE_FIXED_CENTS) / (1 - FEE_RATE)).to_integral_value(rounding=ROUND_CEILING)
    return int(gross)
