"""Totals engine: cart snapshot + address + promo codes -> money totals.

Pure; amounts are integer minor units.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from orderflow.db.models import ItemKind
from orderflow.schemas import Address, CartLine, PromoCode, Totals

TAX_RATES: dict[str, dict[str, float]] = {
    "US": {"CA": 7.25, "NY": 4.0, "TX": 6.25, "FL": 6.0, "default": 5.0},
    "GB": {"default": 20.0},
    "DE": {"default": 19.0},
    "RU": {"default": 20.0},
    "AE": {"default": 5.0},
}

DOMESTIC_COUNTRIES = {"US", "RU", "AE", "GB"}
INTERNATIONAL_MULTIPLIER = Decimal("2.5")


def _round(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def tax_rate(address: Address) -> tuple[float, str]:
    rates = TAX_RATES.get(address.country, {})
    if address.state:
        rate = rates.get(address.state) or rates.get("default", 0.0)
        return rate, f"{address.country}-{address.state}"
    return rates.get("default", 0.0), address.country


def shipping_cents(items: list[CartLine], address: Address, currency: str) -> int:
    quantity = sum(i.qty for i in items if i.kind == ItemKind.PHYSICAL)
    if quantity == 0:
        return 0
    base, per_item = (500, 100) if currency == "USD" else (400, 80)
    multiplier = Decimal(1) if address.country in DOMESTIC_COUNTRIES else INTERNATIONAL_MULTIPLIER
    return _round((base + (quantity - 1) * per_item) * multiplier)


def promo_discount(subtotal: int, promo: PromoCode) -> int:
    if promo.minimum_purchase_cents and subtotal < promo.minimum_purchase_cents:
        return 0
    if promo.discount_type == "percentage":
        amount = _round(Decimal(subtotal) * promo.discount_value / 100)
    else:
        amount = promo.discount_value
    if promo.maximum_discount_cents:
        amount = min(amount, promo.maximum_discount_cents)
    return max(0, min(amount, subtotal))


def compute_totals(
    items: Iterable[CartLine],
    address: Optional[Address] = None,
    promo_codes: Optional[Iterable[PromoCode]] = None,
    currency: str = "USD",
) -> Totals:
    lines = list(items)
    subtotal = sum(line.line_total_cents for line in lines)

    rate, jurisdiction = tax_rate(address) if address else (0.0, "N/A")
    tax = _round(Decimal(subtotal) * Decimal(str(rate)) / 100)
    shipping = shipping_cents(lines, address, currency) if address else 0
    discount = min(sum(promo_discount(subtotal, p) for p in promo_codes or ()), subtotal)

    return Totals(
        subtotal_cents=subtotal,
        tax_cents=tax,
        shipping_cents=shipping,
        discount_cents=discount,
        total_cents=max(0, subtotal + tax + shipping - discount),
        currency=currency,
        tax_rate=rate,
        tax_jurisdiction=jurisdiction,
    )
