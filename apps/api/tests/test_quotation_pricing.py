from __future__ import annotations

from decimal import Decimal

import pytest

from app.pipeline.errors import InvalidQuotationInput
from app.pipeline.pricing import ChargeInput, DiscountInput, LineInput, TaxInput, compute_quotation


def _lines() -> list[LineInput]:
    return [
        LineInput(quantity=Decimal("2"), unit_price=Decimal("100")),
        LineInput(quantity=Decimal("1"), unit_price=Decimal("50")),
    ]


def test_discount_then_tax_breakdown() -> None:
    breakdown = compute_quotation(
        _lines(),
        discount=DiscountInput(kind="PERCENTAGE", value=Decimal("10")),
        tax=TaxInput(percentage=Decimal("18")),
    )

    assert breakdown.line_totals == (Decimal("200"), Decimal("50"))
    assert breakdown.subtotal == Decimal("250")
    assert breakdown.charges_total == Decimal("0")
    assert breakdown.discount_amount == Decimal("25")
    assert breakdown.amount_before_tax == Decimal("225")
    assert breakdown.tax_amount == Decimal("40.50")
    assert breakdown.total_amount == Decimal("265.50")


def test_charges_and_discount_are_both_based_on_subtotal() -> None:
    breakdown = compute_quotation(
        _lines(),
        charges=[
            ChargeInput(kind="PERCENTAGE", value=Decimal("4"), title="Freight"),
            ChargeInput(kind="fixed", value=Decimal("15"), title="Packing"),
        ],
        discount=DiscountInput(kind="PERCENTAGE", value=Decimal("10")),
        tax=TaxInput(percentage=Decimal("10")),
    )

    assert breakdown.charge_amounts == (Decimal("10"), Decimal("15"))
    assert breakdown.charges_total == Decimal("25")
    assert breakdown.discount_amount == Decimal("25")
    assert breakdown.amount_before_tax == Decimal("250")
    assert breakdown.tax_amount == Decimal("25")
    assert breakdown.total_amount == Decimal("275")


def test_fixed_discount_and_no_tax() -> None:
    breakdown = compute_quotation(_lines(), discount=DiscountInput(kind="FIXED", value=Decimal("30.25")))

    assert breakdown.discount_amount == Decimal("30.25")
    assert breakdown.tax_amount == Decimal("0")
    assert breakdown.total_amount == Decimal("219.75")


def test_no_intermediate_rounding() -> None:
    breakdown = compute_quotation(
        [LineInput(quantity=Decimal("3"), unit_price=Decimal("0.333"))],
        tax=TaxInput(percentage=Decimal("12.5")),
    )

    assert breakdown.subtotal == Decimal("0.999")
    assert breakdown.tax_amount == Decimal("0.124875")
    assert breakdown.total_amount == Decimal("1.123875")


def test_amounts_are_settled_to_six_places_and_reconcile() -> None:
    breakdown = compute_quotation(
        [LineInput(quantity=Decimal("1"), unit_price=Decimal("1.00"))],
        charges=[ChargeInput(kind="PERCENTAGE", value=Decimal("44.44444"))],
        tax=TaxInput(percentage=Decimal("50")),
    )

    assert breakdown.charge_amounts == (Decimal("0.444444"),)
    assert breakdown.amount_before_tax == Decimal("1.444444")
    assert breakdown.tax_amount == Decimal("0.722222")
    assert breakdown.total_amount == Decimal("2.166666")
    assert breakdown.total_amount == (
        breakdown.subtotal + breakdown.charges_total - breakdown.discount_amount + breakdown.tax_amount
    )
    assert all(-amount.as_tuple().exponent <= 6 for amount in (*breakdown.line_totals, breakdown.total_amount))


def test_line_totals_settle_before_summing() -> None:
    breakdown = compute_quotation(
        [
            LineInput(quantity=Decimal("0.333333"), unit_price=Decimal("0.5")),
            LineInput(quantity=Decimal("0.333333"), unit_price=Decimal("0.5")),
        ]
    )

    assert breakdown.line_totals == (Decimal("0.166666"), Decimal("0.166666"))
    assert breakdown.subtotal == sum(breakdown.line_totals) == Decimal("0.333332")


def test_zero_quantity_line_is_allowed() -> None:
    breakdown = compute_quotation([LineInput(quantity=Decimal("0"), unit_price=Decimal("99"))])
    assert breakdown.total_amount == Decimal("0")


@pytest.mark.parametrize(
    ("kwargs", "field"),
    [
        ({"lines": []}, "items"),
        ({"lines": [LineInput(quantity=Decimal("-1"), unit_price=Decimal("1"))]}, "items[0].quantity"),
        (
            {"lines": [LineInput(quantity=Decimal("1"), unit_price=Decimal("1")), LineInput(quantity=Decimal("1"), unit_price=Decimal("-5"))]},
            "items[1].unit_price",
        ),
        ({"charges": [ChargeInput(kind="FLAT", value=Decimal("1"))]}, "charges[0].kind"),
        ({"charges": [ChargeInput(kind="FIXED", value=Decimal("-1"))]}, "charges[0].value"),
        ({"discount": DiscountInput(kind="PERCENTAGE", value=Decimal("101"))}, "discount.value"),
        ({"discount": DiscountInput(kind="FIXED", value=Decimal("251"))}, "discount.value"),
        ({"discount": DiscountInput(kind="BOGO", value=Decimal("1"))}, "discount.kind"),
        ({"tax": TaxInput(percentage=Decimal("-1"))}, "tax.percentage"),
        ({"tax": TaxInput(percentage=Decimal("NaN"))}, "tax.percentage"),
        ({"tax": TaxInput(percentage=Decimal("12.1234567"))}, "tax.percentage"),
        ({"lines": [LineInput(quantity=Decimal("1.0000001"), unit_price=Decimal("1"))]}, "items[0].quantity"),
    ],
)
def test_invalid_input_names_the_field(kwargs: dict, field: str) -> None:
    arguments = {"lines": _lines(), **kwargs}
    with pytest.raises(InvalidQuotationInput) as exc_info:
        compute_quotation(**arguments)
    assert exc_info.value.field == field
    assert exc_info.value.details == {"field": field}
