"""
Tests for order request validation and totals arithmetic.
"""
from decimal import Decimal

import pytest

from orderflow.core.errors import OrderValidationError
from orderflow.core.validation import LineItem, calculate_totals, validate_order_request

from tests.helpers import make_address, make_order_request


def _fields(exc: OrderValidationError) -> set:
    return {error["field"] for error in exc.field_errors}


class TestValidateOrderRequest:
    """Test suite for checkout parameter validation."""

    @pytest.mark.unit
    def test_valid_request_passes(self) -> None:
        validate_order_request(make_order_request())
        validate_order_request(make_order_request("cash", tax_rate=Decimal("0.2")))

    @pytest.mark.unit
    def test_unknown_payment_method(self) -> None:
        with pytest.raises(OrderValidationError) as exc_info:
            validate_order_request(make_order_request("bitcoin"))
        assert _fields(exc_info.value) == {"payment_method"}

    @pytest.mark.unit
    def test_all_field_errors_are_reported(self) -> None:
        """Every offending field appears in one error."""
        request = make_order_request(
            shipping_address=make_address(first_name=" ", zip_code="!", country="USA"),
            tax_rate=Decimal("1.5"),
            shipping_cents=-1,
            discount_cents=-5,
            currency="EURO",
        )

        with pytest.raises(OrderValidationError) as exc_info:
            validate_order_request(request)

        assert _fields(exc_info.value) == {
            "shipping_address.first_name",
            "shipping_address.zip_code",
            "shipping_address.country",
            "tax_rate",
            "shipping_cents",
            "discount_cents",
            "currency",
        }
        body = exc_info.value.to_dict()
        assert body["error"] == "validation_error"
        assert len(body["fields"]) == 7

    @pytest.mark.unit
    def test_billing_address_is_validated_separately(self) -> None:
        request = make_order_request(billing_address=make_address(city="", phone="12ab"))

        with pytest.raises(OrderValidationError) as exc_info:
            validate_order_request(request)

        assert _fields(exc_info.value) == {"billing_address.city", "billing_address.phone"}

    @pytest.mark.unit
    def test_field_length_limits(self) -> None:
        request = make_order_request(
            shipping_address=make_address(address1="x" * 101, company="c" * 101)
        )

        with pytest.raises(OrderValidationError) as exc_info:
            validate_order_request(request)

        assert _fields(exc_info.value) == {"shipping_address.address1", "shipping_address.company"}

    @pytest.mark.unit
    @pytest.mark.parametrize("zip_code", ["SW1Y 4JH", "10115", "22201-1234"])
    def test_accepted_zip_codes(self, zip_code: str) -> None:
        validate_order_request(
            make_order_request(shipping_address=make_address(zip_code=zip_code))
        )

    @pytest.mark.unit
    @pytest.mark.parametrize("zip_code", ["123\t45", "12\n345", "10115!", "12345678901"])
    def test_rejected_zip_codes(self, zip_code: str) -> None:
        with pytest.raises(OrderValidationError) as exc_info:
            validate_order_request(
                make_order_request(shipping_address=make_address(zip_code=zip_code))
            )

        assert _fields(exc_info.value) == {"shipping_address.zip_code"}

    @pytest.mark.unit
    def test_address_snapshot_is_normalized(self) -> None:
        snapshot = make_address(city="  Arlington ", country="us", address2="  ").as_snapshot()

        assert snapshot["city"] == "Arlington"
        assert snapshot["country"] == "US"
        assert snapshot["address2"] is None


class TestCalculateTotals:
    """Test suite for order totals."""

    @pytest.mark.unit
    def test_totals_identity(self) -> None:
        totals = calculate_totals(
            [LineItem(1999, 2), LineItem(500, 1)],
            Decimal("0.0825"),
            shipping_cents=700,
            discount_cents=250,
        )

        assert totals.subtotal_cents == 4498
        # 4498 * 0.0825 = 371.085
        assert totals.tax_cents == 371
        assert totals.total_cents == 4498 + 371 + 700 - 250
        assert totals.is_consistent()

    @pytest.mark.unit
    def test_tax_rounds_half_up(self) -> None:
        totals = calculate_totals([LineItem(10, 1)], "0.05", 0, 0)
        assert totals.tax_cents == 1

    @pytest.mark.unit
    def test_discount_is_clamped_to_total(self) -> None:
        totals = calculate_totals([LineItem(1000, 1)], 0, shipping_cents=100, discount_cents=5000)

        assert totals.discount_cents == 1100
        assert totals.total_cents == 0
        assert totals.is_consistent()

    @pytest.mark.unit
    def test_empty_lines(self) -> None:
        totals = calculate_totals([], Decimal("0.1"), 0, 0)
        assert totals.total_cents == 0
