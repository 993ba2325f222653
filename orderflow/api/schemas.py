"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from orderflow.core.validation import AddressInput, OrderRequest


class AddressSchema(BaseModel):
    """Shipping or billing address."""

    first_name: str
    last_name: str
    company: Optional[str] = None
    address1: str
    address2: Optional[str] = None
    city: str
    state: str
    zip_code: str = Field(..., description="3-10 letters, digits, spaces or hyphens")
    country: str = Field(..., description="ISO 3166-1 alpha-2 code")
    phone: Optional[str] = None

    def to_input(self) -> AddressInput:
        return AddressInput(**self.model_dump())


class AddressResponse(AddressSchema):
    model_config = ConfigDict(from_attributes=True)

    kind: str


class CreateOrderRequest(BaseModel):
    """Request schema for turning the caller's cart into an order."""

    shipping_address: AddressSchema
    billing_address: Optional[AddressSchema] = Field(
        default=None, description="Defaults to the shipping address"
    )
    payment_method: str = Field(..., description="credit_card, paypal, cash, ...")
    tax_rate: Decimal = Field(default=Decimal("0"), description="Tax rate between 0 and 1")
    shipping_cents: int = Field(default=0, description="Shipping cost in cents")
    discount_cents: int = Field(default=0, description="Discount in cents")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    notes: Optional[str] = Field(default=None, max_length=2000)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "shipping_address": {
                        "first_name": "Ada",
                        "last_name": "Lovelace",
                        "address1": "12 St James's Square",
                        "city": "London",
                        "state": "London",
                        "zip_code": "SW1Y 4JH",
                        "country": "GB",
                    },
                    "payment_method": "credit_card",
                    "tax_rate": "0.08",
                    "shipping_cents": 500,
                }
            ]
        }
    }

    def to_order_request(self) -> OrderRequest:
        return OrderRequest(
            shipping_address=self.shipping_address.to_input(),
            billing_address=self.billing_address.to_input() if self.billing_address else None,
            payment_method=self.payment_method,
            tax_rate=self.tax_rate,
            shipping_cents=self.shipping_cents,
            discount_cents=self.discount_cents,
            currency=self.currency.upper() if self.currency else None,
            notes=self.notes,
        )


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: UUID
    product_name: str
    product_sku: str
    unit_price_cents: int
    quantity: int
    total_price_cents: int


class PaymentSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    amount_cents: int
    currency: str
    method: str
    gateway: str
    status: str
    refund_amount_cents: int
    processed_at: Optional[datetime] = None


class OrderResponse(BaseModel):
    """Response schema for an order."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    user_id: UUID
    status: str
    payment_status: str
    fulfillment_status: str
    payment_method: str
    currency: str
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    discount_cents: int
    total_cents: int
    inventory_reserved: bool
    reserved_until: Optional[datetime] = None
    payment_timeout_at: Optional[datetime] = None
    customer_notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    shipping_method: Optional[str] = None
    tracking_url: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse] = Field(default_factory=list)
    addresses: List[AddressResponse] = Field(default_factory=list)
    payments: List[PaymentSummary] = Field(default_factory=list)


class AdminOrderResponse(OrderResponse):
    admin_notes: Optional[str] = None


class OrderListResponse(BaseModel):
    items: List[OrderResponse]
    total: int
    limit: int
    offset: int


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class UpdateStatusRequest(BaseModel):
    status: str = Field(..., description="Target order status")
    note: Optional[str] = Field(default=None, max_length=2000)


class ShippingInfoRequest(BaseModel):
    tracking_number: str = Field(..., min_length=1, max_length=100)
    carrier: str = Field(..., min_length=1, max_length=100)
    shipping_method: Optional[str] = Field(default=None, max_length=100)
    tracking_url: Optional[str] = Field(default=None, max_length=500)
    estimated_delivery: Optional[datetime] = None


class DeliveryStatusRequest(BaseModel):
    status: str = Field(..., description="out_for_delivery or delivered")


class AddNoteRequest(BaseModel):
    note: str = Field(..., min_length=1, max_length=2000)
    is_public: bool = Field(default=False, description="Visible to the customer")


class OrderEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_type: str
    title: str
    description: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    is_public: bool
    created_at: datetime


class CheckoutSessionRequest(BaseModel):
    order_id: UUID
    customer_email: Optional[str] = Field(default=None, max_length=255)


class CheckoutSessionResponse(BaseModel):
    session_id: str = Field(..., description="Gateway checkout session ID")
    url: Optional[str] = Field(default=None, description="Hosted checkout URL")
    payment_id: str


class ConfirmPaymentRequest(BaseModel):
    order_id: UUID
    session_id: str = Field(..., min_length=1)


class PaymentResultResponse(BaseModel):
    status: str
    payment_id: str
    order_id: Optional[str] = None


class RefundRequest(BaseModel):
    """Request schema for refunding a payment."""

    amount_cents: Optional[int] = Field(
        default=None, gt=0, description="Partial refund amount (full refund if not specified)"
    )
    reason: Optional[str] = Field(default=None, max_length=500)


class RefundResponse(BaseModel):
    status: str
    payment_id: str
    refunded_cents: int
    payment_status: str
    order_status: str


class StockResponse(BaseModel):
    product_id: UUID
    on_hand: int
    reserved: int
    available: int


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_id: Optional[str] = Field(default=None, description="Gateway event ID")
    event_type: Optional[str] = Field(default=None, description="Event type")


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")

