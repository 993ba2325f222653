"""
API routes for orders, payments, inventory and webhooks.

Domain errors propagate to the exception handlers registered in ``main``,
which map them to status codes.
"""
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from orderflow.core.orders import OrderFilter, ShippingInfo
from orderflow.database.models import Order
from orderflow.services import ServiceContainer

from .dependencies import get_current_user_id, get_services, is_admin, require_admin
from .schemas import (
    AddNoteRequest,
    AdminOrderResponse,
    CancelOrderRequest,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    ConfirmPaymentRequest,
    CreateOrderRequest,
    DeliveryStatusRequest,
    HealthCheckResponse,
    OrderEventResponse,
    OrderListResponse,
    OrderResponse,
    PaymentResultResponse,
    RefundRequest,
    RefundResponse,
    ShippingInfoRequest,
    StockResponse,
    UpdateStatusRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
inventory_router = APIRouter(prefix="/inventory", tags=["inventory"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


def _order_view(order: Order, admin: bool) -> AdminOrderResponse:
    view = AdminOrderResponse.model_validate(order)
    if not admin:
        view.admin_notes = None
    return view


# Orders


@order_router.post(
    "",
    response_model=AdminOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Turn the caller's active cart into an order and reserve its stock",
)
async def create_order(
    request: CreateOrderRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> AdminOrderResponse:
    start_time = time.time()
    logger.info("api_create_order_request", user_id=str(user_id), payment_method=request.payment_method)

    order = await services.orders.create_order(user_id, request.to_order_request())

    logger.info(
        "api_create_order_success",
        order_id=str(order.id),
        order_number=order.order_number,
        duration_seconds=time.time() - start_time,
    )
    return _order_view(order, admin=False)


@order_router.get(
    "",
    response_model=OrderListResponse,
    summary="List orders",
    description="Customers see their own orders; admins may list any user's orders",
)
async def list_orders(
    request: Request,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    payment_status: Optional[str] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    limit: int = 20,
    offset: int = 0,
    user_id: Optional[uuid.UUID] = Query(default=None, description="Admin only"),
    admin: bool = Depends(is_admin),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    if not admin:
        user_id = get_current_user_id(request.headers.get("X-User-ID"))

    page = await services.orders.list_orders(
        OrderFilter(
            user_id=user_id,
            status=status_filter,
            payment_status=payment_status,
            created_from=created_from,
            created_to=created_to,
            sort_by=sort_by,
            sort_order=sort_order.lower(),
            limit=limit,
            offset=offset,
        )
    )
    return {
        "items": [OrderResponse.model_validate(order) for order in page.items],
        "total": page.total,
        "limit": page.limit,
        "offset": page.offset,
    }


@order_router.get(
    "/by-session/{session_id}",
    response_model=AdminOrderResponse,
    summary="Find order by checkout session",
)
async def get_order_by_session(
    session_id: str,
    user_id: uuid.UUID = Depends(get_current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> AdminOrderResponse:
    order = await services.orders.get_order_by_session_id(session_id, user_id=user_id)
    return _order_view(order, admin=False)


@order_router.get("/{order_id}", response_model=AdminOrderResponse, summary="Get an order")
async def get_order(
    order_id: uuid.UUID,
    request: Request,
    admin: bool = Depends(is_admin),
    services: ServiceContainer = Depends(get_services),
) -> AdminOrderResponse:
    user_id = None if admin else get_current_user_id(request.headers.get("X-User-ID"))
    order = await services.orders.get_order(order_id, user_id=user_id)
    return _order_view(order, admin)


@order_router.post(
    "/{order_id}/cancel",
    response_model=AdminOrderResponse,
    summary="Cancel an order",
    description="Owners may cancel their own orders; admins may cancel any order",
)
async def cancel_order(
    order_id: uuid.UUID,
    request: Request,
    body: Optional[CancelOrderRequest] = None,
    admin: bool = Depends(is_admin),
    services: ServiceContainer = Depends(get_services),
) -> AdminOrderResponse:
    header = request.headers.get("X-User-ID")
    actor_id = get_current_user_id(header) if header or not admin else None
    order = await services.orders.cancel_order(
        order_id,
        reason=body.reason if body else None,
        actor_id=actor_id,
        user_id=None if admin else actor_id,
    )
    return _order_view(order, admin)


@order_router.patch(
    "/{order_id}/status",
    response_model=AdminOrderResponse,
    summary="Change order status (admin)",
)
async def update_order_status(
    order_id: uuid.UUID,
    body: UpdateStatusRequest,
    actor_id: Optional[uuid.UUID] = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
) -> AdminOrderResponse:
    order = await services.orders.update_order_status(
        order_id, body.status, actor_id=actor_id, note=body.note
    )
    return _order_view(order, admin=True)


@order_router.put(
    "/{order_id}/shipping",
    response_model=AdminOrderResponse,
    summary="Record shipment (admin)",
)
async def update_shipping_info(
    order_id: uuid.UUID,
    body: ShippingInfoRequest,
    actor_id: Optional[uuid.UUID] = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
) -> AdminOrderResponse:
    order = await services.orders.update_shipping_info(
        order_id, ShippingInfo(**body.model_dump()), actor_id=actor_id
    )
    return _order_view(order, admin=True)


@order_router.patch(
    "/{order_id}/delivery",
    response_model=AdminOrderResponse,
    summary="Update delivery status (admin)",
)
async def update_delivery_status(
    order_id: uuid.UUID,
    body: DeliveryStatusRequest,
    actor_id: Optional[uuid.UUID] = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
) -> AdminOrderResponse:
    order = await services.orders.update_delivery_status(order_id, body.status, actor_id=actor_id)
    return _order_view(order, admin=True)


@order_router.post(
    "/{order_id}/notes",
    response_model=AdminOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a note (admin)",
)
async def add_note(
    order_id: uuid.UUID,
    body: AddNoteRequest,
    actor_id: Optional[uuid.UUID] = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
) -> AdminOrderResponse:
    order = await services.orders.add_note(order_id, body.note, body.is_public, actor_id=actor_id)
    return _order_view(order, admin=True)


@order_router.get(
    "/{order_id}/events",
    response_model=List[OrderEventResponse],
    summary="Order timeline",
    description="Customers see public entries of their own orders; admins see everything",
)
async def get_order_events(
    order_id: uuid.UUID,
    request: Request,
    admin: bool = Depends(is_admin),
    services: ServiceContainer = Depends(get_services),
) -> List[OrderEventResponse]:
    user_id = None if admin else get_current_user_id(request.headers.get("X-User-ID"))
    events = await services.orders.get_events(order_id, user_id=user_id, public_only=not admin)
    return [OrderEventResponse.model_validate(event) for event in events]


# Payments


@payment_router.post(
    "/checkout-session",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a hosted checkout session",
)
async def create_checkout_session(
    body: CheckoutSessionRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    logger.info("api_checkout_session_request", order_id=str(body.order_id), user_id=str(user_id))
    return await services.payments.create_checkout_session(
        body.order_id, user_id, customer_email=body.customer_email
    )


@payment_router.post(
    "/confirm",
    response_model=PaymentResultResponse,
    summary="Confirm payment after checkout redirect",
    description="Fallback for a delayed webhook; the gateway is asked whether the session was paid",
)
async def confirm_payment(
    body: ConfirmPaymentRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    return await services.payments.confirm_payment_success(body.order_id, user_id, body.session_id)


@payment_router.post(
    "/{payment_id}/refund",
    response_model=RefundResponse,
    summary="Refund a payment (admin)",
    description="Create a full or partial refund for a payment",
)
async def refund_payment(
    payment_id: uuid.UUID,
    body: RefundRequest,
    actor_id: Optional[uuid.UUID] = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    logger.info(
        "api_refund_payment_request",
        payment_id=str(payment_id),
        amount_cents=body.amount_cents,
        reason=body.reason,
    )
    return await services.payments.refund_payment(
        payment_id, amount_cents=body.amount_cents, reason=body.reason, actor_id=actor_id
    )


# Inventory


@inventory_router.get("/{product_id}", response_model=StockResponse, summary="Stock level")
async def get_stock(
    product_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    async with services.session_factory() as db:
        level = await services.reservations.get_available_stock(db, product_id)
    return level.as_dict()


# Webhooks


@webhook_router.post(
    "/{provider}",
    response_model=WebhookResponse,
    summary="Gateway webhook endpoint",
    description="Verify and process a signed gateway event",
)
async def receive_webhook(
    provider: str,
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    body = await request.body()
    result = await services.payments.handle_webhook(
        provider, body, request.headers.get("Stripe-Signature")
    )
    logger.info("api_webhook_handled", provider=provider, status=result["status"])
    return result


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
