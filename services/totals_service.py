"""
Money / tax / discount calculator.

Order of operations (fixed; swapping it changes totals):
  1. subtotal = sum(quantity * rate)
  2. tax      = subtotal * taxRate / 100          (on the pre-discount subtotal)
  3. discount = subtotal * discount / 100          (PERCENTAGE, on the pre-tax subtotal)
              | discount                           (FIXED, currency amount)
  4. total    = subtotal + tax - discount, clamped at 0 (Totals.clamped is set)

All arithmetic is exact Decimal arithmetic; nothing is rounded here.
Rounding to currency minor units happens only at presentation/gateway edges.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Optional

from reqResVal_models.billing_models import DiscountType, InvoiceItem, Totals, ZERO
from services.errors import BillingValidationError

HUNDRED = Decimal("100")


def to_decimal(value, field: str = "amount") -> Decimal:
    """Convert user input to Decimal without going through binary floats."""
    if isinstance(value, Decimal):
        return value
    if value is None:
        return ZERO
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise BillingValidationError(f"Invalid {field}: {value!r}")


def to_minor_units(amount: Decimal) -> int:
    """Exact amount -> integer minor units (cents), half-up."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    return Decimal(int(value)) / HUNDRED


def compute_totals(
    items: Optional[Iterable[InvoiceItem]],
    tax_rate=ZERO,
    discount=ZERO,
    discount_type: DiscountType = DiscountType.FIXED,
) -> Totals:
    tax_rate = to_decimal(tax_rate, "taxRate")
    discount = to_decimal(discount, "discount")

    if tax_rate < 0 or tax_rate > HUNDRED:
        raise BillingValidationError("taxRate must be between 0 and 100")
    if discount < 0:
        raise BillingValidationError("discount must not be negative")
    if discount_type == DiscountType.PERCENTAGE and discount > HUNDRED:
        raise BillingValidationError("percentage discount must not exceed 100")

    subtotal = ZERO
    for index, item in enumerate(items or []):
        if item.quantity <= 0:
            raise BillingValidationError(f"Item {index + 1}: quantity must be greater than 0")
        if item.rate < 0:
            raise BillingValidationError(f"Item {index + 1}: rate must not be negative")
        subtotal += item.quantity * item.rate

    tax_amount = subtotal * tax_rate / HUNDRED
    if discount_type == DiscountType.PERCENTAGE:
        discount_amount = subtotal * discount / HUNDRED
    else:
        discount_amount = discount

    total = subtotal + tax_amount - discount_amount
    clamped = total < 0
    if clamped:
        total = ZERO

    return Totals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        total=total,
        clamped=clamped,
    )
