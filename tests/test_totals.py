from decimal import Decimal

import pytest

from conftest import item
from reqResVal_models.billing_models import DiscountType
from services.errors import BillingValidationError
from services.totals_service import compute_totals, from_minor_units, to_decimal, to_minor_units


class TestComputeTotals:

    def test_fixed_discount_after_tax(self):
        """2 x 50.00, 10% tax, 20 off -> 100 / 10 / 90"""
        totals = compute_totals([item("2", "50.00")], Decimal("10"), Decimal("20"), DiscountType.FIXED)
        assert totals.subtotal == Decimal("100.00")
        assert totals.tax_amount == Decimal("10.00")
        assert totals.discount_amount == Decimal("20")
        assert totals.total == Decimal("90.00")
        assert totals.clamped is False

    def test_percentage_discount_on_pre_tax_subtotal(self):
        totals = compute_totals([item("2", "50.00")], Decimal("10"), Decimal("10"), DiscountType.PERCENTAGE)
        assert totals.discount_amount == Decimal("10.00")
        assert totals.total == Decimal("100.00")

    def test_absent_items_give_zero_totals(self):
        for items in (None, []):
            totals = compute_totals(items, Decimal("10"))
            assert totals.subtotal == 0
            assert totals.tax_amount == 0
            assert totals.total == 0

    def test_negative_total_is_clamped_and_flagged(self):
        totals = compute_totals([item("1", "10.00")], discount=Decimal("25"))
        assert totals.total == 0
        assert totals.clamped is True

    def test_no_binary_float_drift(self):
        """0.1 + 0.2 style inputs stay exact"""
        items = [item("1", "0.10"), item("1", "0.20"), item("3", "0.10")]
        totals = compute_totals(items)
        assert totals.subtotal == Decimal("0.60")
        assert str(totals.subtotal) == "0.60"

    def test_fractional_quantity(self):
        totals = compute_totals([item("1.5", "33.33")])
        assert totals.subtotal == Decimal("49.995")

    def test_recomputing_is_identical(self):
        items = [item("3", "19.99"), item("0.25", "120.00")]
        first = compute_totals(items, Decimal("7.5"), Decimal("5"), DiscountType.PERCENTAGE)
        second = compute_totals(items, Decimal("7.5"), Decimal("5"), DiscountType.PERCENTAGE)
        assert first == second
        assert str(first.total) == str(second.total)

    @pytest.mark.parametrize("tax_rate", [Decimal("-1"), Decimal("100.01")])
    def test_tax_rate_out_of_range(self, tax_rate):
        with pytest.raises(BillingValidationError):
            compute_totals([item()], tax_rate)

    def test_negative_discount_rejected(self):
        with pytest.raises(BillingValidationError):
            compute_totals([item()], discount=Decimal("-5"))

    def test_percentage_discount_over_100_rejected(self):
        with pytest.raises(BillingValidationError):
            compute_totals([item()], discount=Decimal("150"), discount_type=DiscountType.PERCENTAGE)

    def test_invalid_item_rejected(self):
        bad = item()
        bad.quantity = Decimal("-1")
        with pytest.raises(BillingValidationError, match="Item 1"):
            compute_totals([bad])


class TestMoneyHelpers:

    def test_to_decimal_goes_through_str(self):
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal("12.50") == Decimal("12.50")
        assert to_decimal(None) == 0

    def test_to_decimal_rejects_garbage(self):
        with pytest.raises(BillingValidationError):
            to_decimal("twelve", "amount")

    def test_minor_units(self):
        assert to_minor_units(Decimal("90.00")) == 9000
        assert to_minor_units(Decimal("49.995")) == 5000
        assert from_minor_units(9050) == Decimal("90.50")
