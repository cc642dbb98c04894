"""Quotation computation engine.

Amounts are `decimal.Decimal` values evaluated in `PRICING_CONTEXT`
(34 significant digits, half-even rounding) with no intermediate rounding.
Charges and the discount are both derived from the raw subtotal; tax is
applied to the post-charge, post-discount amount.

Once every amount is derived, a single settlement step quantizes the
individual parts (line totals, charge amounts, discount, tax) to
`MONEY_PLACES` decimals, the scale of the stored columns, and rebuilds the
sums from the settled parts. The breakdown therefore reconciles exactly,
`total == subtotal + charges_total - discount_amount + tax_amount`, both as
returned and after a round trip through storage. Inputs carrying more than
`MONEY_PLACES` decimals are rejected so the stored inputs are the ones priced.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Context, Decimal, InvalidOperation, ROUND_HALF_EVEN, localcontext

from app.pipeline.errors import InvalidQuotationInput


FIXED = "FIXED"
PERCENTAGE = "PERCENTAGE"
ADJUSTMENT_KINDS = frozenset({FIXED, PERCENTAGE})

PRICING_CONTEXT = Context(prec=34, rounding=ROUND_HALF_EVEN)
MONEY_PLACES = 6

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")
_MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_PLACES)


@dataclass(frozen=True, slots=True)
class LineInput:
    quantity: Decimal
    unit_price: Decimal


@dataclass(frozen=True, slots=True)
class ChargeInput:
    kind: str
    value: Decimal
    title: str = ""


@dataclass(frozen=True, slots=True)
class DiscountInput:
    kind: str
    value: Decimal


@dataclass(frozen=True, slots=True)
class TaxInput:
    percentage: Decimal
    kind: str = "GST"


@dataclass(frozen=True, slots=True)
class QuotationBreakdown:
    line_totals: tuple[Decimal, ...]
    subtotal: Decimal
    charge_amounts: tuple[Decimal, ...]
    charges_total: Decimal
    discount_amount: Decimal
    amount_before_tax: Decimal
    tax_amount: Decimal
    total_amount: Decimal


def settle(value: Decimal) -> Decimal:
    """Quantize an amount to the stored scale."""
    return value.quantize(_MONEY_QUANTUM, context=PRICING_CONTEXT)


def _decimal(value: object, field: str) -> Decimal:
    if isinstance(value, bool):
        raise InvalidQuotationInput(field, "must be a number")
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidQuotationInput(field, "must be a number") from None
    if not number.is_finite():
        raise InvalidQuotationInput(field, "must be a finite number")
    try:
        settled = settle(number)
    except InvalidOperation:
        raise InvalidQuotationInput(field, "is out of range") from None
    if number != settled:
        raise InvalidQuotationInput(field, f"must have at most {MONEY_PLACES} decimal places")
    return number


def _kind(value: str, field: str) -> str:
    kind = str(value).upper()
    if kind not in ADJUSTMENT_KINDS:
        raise InvalidQuotationInput(field, f"must be one of {', '.join(sorted(ADJUSTMENT_KINDS))}")
    return kind


def _percentage(value: Decimal, field: str) -> Decimal:
    if value < _ZERO or value > _HUNDRED:
        raise InvalidQuotationInput(field, "percentage must be between 0 and 100")
    return value


def _amount(kind: str, value: Decimal, subtotal: Decimal) -> Decimal:
    if kind == FIXED:
        return value
    return subtotal * value / _HUNDRED


def compute_quotation(
    lines: Sequence[LineInput],
    charges: Sequence[ChargeInput] = (),
    discount: DiscountInput | None = None,
    tax: TaxInput | None = None,
) -> QuotationBreakdown:
    if not lines:
        raise InvalidQuotationInput("items", "at least one item is required")

    with localcontext(PRICING_CONTEXT):
        line_totals: list[Decimal] = []
        for index, line in enumerate(lines):
            quantity = _decimal(line.quantity, f"items[{index}].quantity")
            unit_price = _decimal(line.unit_price, f"items[{index}].unit_price")
            if quantity < _ZERO:
                raise InvalidQuotationInput(f"items[{index}].quantity", "must not be negative")
            if unit_price < _ZERO:
                raise InvalidQuotationInput(f"items[{index}].unit_price", "must not be negative")
            line_totals.append(quantity * unit_price)
        subtotal = sum(line_totals, start=_ZERO)

        charge_amounts: list[Decimal] = []
        for index, charge in enumerate(charges):
            kind = _kind(charge.kind, f"charges[{index}].kind")
            value = _decimal(charge.value, f"charges[{index}].value")
            if value < _ZERO:
                raise InvalidQuotationInput(f"charges[{index}].value", "must not be negative")
            charge_amounts.append(_amount(kind, value, subtotal))
        charges_total = sum(charge_amounts, start=_ZERO)

        discount_amount = _ZERO
        if discount is not None:
            kind = _kind(discount.kind, "discount.kind")
            value = _decimal(discount.value, "discount.value")
            if value < _ZERO:
                raise InvalidQuotationInput("discount.value", "must not be negative")
            if kind == PERCENTAGE:
                _percentage(value, "discount.value")
            discount_amount = _amount(kind, value, subtotal)

        amount_before_tax = subtotal + charges_total - discount_amount
        if amount_before_tax < _ZERO:
            raise InvalidQuotationInput("discount.value", "discount exceeds the quoted amount")

        tax_amount = _ZERO
        if tax is not None:
            percentage = _percentage(_decimal(tax.percentage, "tax.percentage"), "tax.percentage")
            tax_amount = amount_before_tax * percentage / _HUNDRED

        # Settlement: parts are quantized once, sums are rebuilt from the parts.
        settled_lines = tuple(settle(total) for total in line_totals)
        settled_charges = tuple(settle(amount) for amount in charge_amounts)
        settled_subtotal = sum(settled_lines, start=_ZERO)
        settled_charges_total = sum(settled_charges, start=_ZERO)
        settled_discount = settle(discount_amount)
        settled_before_tax = settled_subtotal + settled_charges_total - settled_discount
        if settled_before_tax < _ZERO:
            raise InvalidQuotationInput("discount.value", "discount exceeds the quoted amount")
        settled_tax = settle(tax_amount)
        total_amount = settled_before_tax + settled_tax

    return QuotationBreakdown(
        line_totals=settled_lines,
        subtotal=settled_subtotal,
        charge_amounts=settled_charges,
        charges_total=settled_charges_total,
        discount_amount=settled_discount,
        amount_before_tax=settled_before_tax,
        tax_amount=settled_tax,
        total_amount=total_amount,
    )
