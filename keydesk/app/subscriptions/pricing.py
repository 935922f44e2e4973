"""Unit price resolution and purchase cost computation."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

_CENTS = Decimal("0.01")
MISSING_CREDITS = "—"


@dataclass(frozen=True)
class PricingResult:
    """Outcome of :func:`compute_pricing`.

    Three shapes are possible:

    * waived: ``requires_debit`` is ``False`` and ``total_cost`` is zero;
    * misconfigured: ``requires_debit`` is ``True`` but ``unit_price`` is
      ``None``. Provisioning must be refused;
    * priced: ``requires_debit`` is ``True`` and
      ``total_cost == unit_price * quantity``.
    """

    unit_price: Optional[Decimal]
    total_cost: Decimal
    requires_debit: bool

    @property
    def is_misconfigured(self) -> bool:
        return self.requires_debit and self.unit_price is None


def resolve_unit_price(raw_price: Any) -> Optional[Decimal]:
    """Coerce a stored price to a finite ``Decimal`` or ``None``."""

    if isinstance(raw_price, bool):
        return None
    if isinstance(raw_price, (int, float, Decimal)):
        candidate = str(raw_price)
    elif isinstance(raw_price, str):
        candidate = raw_price.strip()
        if not candidate:
            return None
    else:
        return None
    try:
        value = Decimal(candidate)
    except (InvalidOperation, ValueError):
        return None
    return value if value.is_finite() else None


def compute_pricing(raw_price: Any, quantity: int, bypass_credits: bool) -> PricingResult:
    """Resolve unit price and total cost for a purchase of ``quantity`` units."""

    safe_quantity = quantity if isinstance(quantity, int) and quantity > 0 else 0
    unit_price = resolve_unit_price(raw_price)
    if bypass_credits:
        return PricingResult(unit_price=unit_price, total_cost=Decimal("0"), requires_debit=False)
    if unit_price is None or unit_price < 0:
        return PricingResult(unit_price=None, total_cost=Decimal("0"), requires_debit=True)
    return PricingResult(unit_price=unit_price, total_cost=unit_price * safe_quantity, requires_debit=True)


def format_credits(value: Any) -> str:
    """Render a credit balance with two decimals, or an em dash when unknown."""

    if value is None or isinstance(value, bool):
        return MISSING_CREDITS
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return MISSING_CREDITS
    if not amount.is_finite():
        return MISSING_CREDITS
    return f"{amount.quantize(_CENTS, rounding=ROUND_HALF_UP):,.2f}"


__all__ = ["MISSING_CREDITS", "PricingResult", "compute_pricing", "format_credits", "resolve_unit_price"]
