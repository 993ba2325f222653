"""
Order request validation and totals arithmetic.

Amounts are integer minor units (cents) so the totals identity holds exactly.
"""
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional

from orderflow.core.errors import OrderValidationError
from orderflow.core.state_machine import PaymentMethod

ZIP_PATTERN = re.compile(r"[A-Za-z0-9 \-]{3,10}")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
COUNTRY_PATTERN = re.compile(r"^[A-Za-z]{2}$")

ALLOWED_PAYMENT_METHODS = frozenset(method.value for method in PaymentMethod)


def _optional(value: Optional[str]) -> Optional[str]:
    return (value or "").strip() or None


@dataclass
class AddressInput:
    """Address as submitted by the customer."""

    first_name: str
    last_name: str
    address1: str
    city: str
    state: str
    zip_code: str
    country: str
    address2: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None

    def as_snapshot(self) -> Dict[str, Optional[str]]:
        return {
            "first_name": self.first_name.strip(),
            "last_name": self.last_name.strip(),
            "company": _optional(self.company),
            "address1": self.address1.strip(),
            "address2": _optional(self.address2),
            "city": self.city.strip(),
            "state": self.state.strip(),
            "zip_code": self.zip_code.strip(),
            "country": self.country.strip().upper(),
            "phone": _optional(self.phone),
        }


@dataclass
class OrderRequest:
    """Checkout parameters supplied alongside the user's cart."""

    shipping_address: AddressInput
    payment_method: str
    billing_address: Optional[AddressInput] = None
    tax_rate: Decimal = Decimal("0")
    shipping_cents: int = 0
    discount_cents: int = 0
    currency: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class LineItem:
    """Priced cart line used for totals."""

    unit_price_cents: int
    quantity: int

    @property
    def total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass
class OrderTotals:
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    discount_cents: int
    total_cents: int

    def is_consistent(self) -> bool:
        return self.total_cents == (
            self.subtotal_cents + self.tax_cents + self.shipping_cents - self.discount_cents
        )


@dataclass
class _Errors:
    items: List[Dict[str, str]] = field(default_factory=list)

    def add(self, field_name: str, message: str) -> None:
        self.items.append({"field": field_name, "message": message})


def _check_text(
    errors: _Errors,
    prefix: str,
    name: str,
    value: Optional[str],
    max_length: int,
    required: bool = True,
) -> None:
    text = (value or "").strip()
    if required and not text:
        errors.add(f"{prefix}.{name}", "is required")
    elif len(text) > max_length:
        errors.add(f"{prefix}.{name}", f"must be at most {max_length} characters")


def _validate_address(errors: _Errors, prefix: str, address: AddressInput) -> None:
    _check_text(errors, prefix, "first_name", address.first_name, 50)
    _check_text(errors, prefix, "last_name", address.last_name, 50)
    _check_text(errors, prefix, "company", address.company, 100, required=False)
    _check_text(errors, prefix, "address1", address.address1, 100)
    _check_text(errors, prefix, "address2", address.address2, 100, required=False)
    _check_text(errors, prefix, "city", address.city, 50)
    _check_text(errors, prefix, "state", address.state, 50)

    zip_code = (address.zip_code or "").strip()
    if not zip_code:
        errors.add(f"{prefix}.zip_code", "is required")
    elif not ZIP_PATTERN.fullmatch(zip_code):
        errors.add(f"{prefix}.zip_code", "must be 3-10 letters, digits, spaces or hyphens")

    if not COUNTRY_PATTERN.match((address.country or "").strip()):
        errors.add(f"{prefix}.country", "must be a 2-letter country code")

    if address.phone:
        phone = address.phone.strip()
        if len(phone) > 20 or not PHONE_PATTERN.match(phone):
            errors.add(f"{prefix}.phone", "must be an E.164 phone number")


def validate_order_request(request: OrderRequest) -> None:
    """
    Validate checkout parameters before anything is written.

    Args:
        request: Checkout parameters

    Raises:
        OrderValidationError: Listing every offending field
    """
    errors = _Errors()

    if request.shipping_address is None:
        errors.add("shipping_address", "is required")
    else:
        _validate_address(errors, "shipping_address", request.shipping_address)
    if request.billing_address is not None:
        _validate_address(errors, "billing_address", request.billing_address)

    if request.payment_method not in ALLOWED_PAYMENT_METHODS:
        errors.add("payment_method", f"must be one of {sorted(ALLOWED_PAYMENT_METHODS)}")

    tax_rate = Decimal(str(request.tax_rate))
    if tax_rate < 0 or tax_rate > 1:
        errors.add("tax_rate", "must be between 0 and 1")
    if request.shipping_cents < 0:
        errors.add("shipping_cents", "must not be negative")
    if request.discount_cents < 0:
        errors.add("discount_cents", "must not be negative")
    if request.currency is not None and len(request.currency) != 3:
        errors.add("currency", "must be a 3-letter code")

    if errors.items:
        raise OrderValidationError("Invalid order request", errors.items)


def calculate_totals(
    lines: Iterable[LineItem],
    tax_rate: Decimal | float | str,
    shipping_cents: int,
    discount_cents: int,
) -> OrderTotals:
    """
    Compute order totals deterministically.

    Tax is rounded half-up to the cent. The discount is clamped so the total
    never drops below zero.
    """
    subtotal = sum(line.total_cents for line in lines)
    tax = int(
        (Decimal(subtotal) * Decimal(str(tax_rate))).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )
    discount = min(discount_cents, subtotal + tax + shipping_cents)
    total = subtotal + tax + shipping_cents - discount
    return OrderTotals(
        subtotal_cents=subtotal,
        tax_cents=tax,
        shipping_cents=shipping_cents,
        discount_cents=discount,
        total_cents=total,
    )
