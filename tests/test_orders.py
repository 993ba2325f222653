"""
Tests for the order orchestrator: creation, cancellation, status workflows
and expired order cleanup.
"""
import re
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import func, select

from orderflow.core.errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    OrderValidationError,
    ProductUnavailableError,
)
from orderflow.core.orders import OrderFilter, ShippingInfo
from orderflow.database.models import Cart, Order, StockReservation, utcnow

from tests.helpers import make_address, make_order_request

ORDER_NUMBER = re.compile(r"^ORD-\d{8}-\d{6}-\d{4}$")


async def _event_types(services: Any, order_id: uuid.UUID, public_only: bool = False) -> list:
    events = await services.orders.get_events(order_id, public_only=public_only)
    return [event.event_type for event in events]


async def _pay_online(services: Any, order: Any) -> None:
    await services.payments.create_checkout_session(order.id, order.user_id)
    result = await services.payments.confirm_payment_success(order.id, order.user_id, "cs_test_123")
    assert result["status"] == "confirmed"


class TestCreateOrder:
    """Test suite for turning carts into orders."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_order_reserves_stock(
        self, services: Any, make_product: Any, make_cart: Any, stock_of: Any, session_factory: Any
    ) -> None:
        user_id = uuid.uuid4()
        widget = await make_product(price_cents=1250, on_hand=10)
        gadget = await make_product(price_cents=400, on_hand=5, name="Gadget")
        cart = await make_cart(user_id, [(widget, 2), (gadget, 3)])

        order = await services.orders.create_order(
            user_id,
            make_order_request(
                tax_rate=Decimal("0.1"), shipping_cents=500, discount_cents=100, notes="Leave at door"
            ),
        )

        assert ORDER_NUMBER.match(order.order_number)
        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.fulfillment_status == "pending"
        assert order.inventory_reserved is True
        assert order.subtotal_cents == 2 * 1250 + 3 * 400
        assert order.tax_cents == 370
        assert order.total_cents == 3700 + 370 + 500 - 100
        assert order.customer_notes == "Leave at door"
        assert order.currency == "USD"
        assert order.payment_timeout_at is not None
        assert order.payments == []
        assert {item.product_name for item in order.items} == {"Widget", "Gadget"}
        assert {address.kind for address in order.addresses} == {"shipping", "billing"}
        assert order.address("billing").city == order.address("shipping").city

        assert (await stock_of(widget.id)).reserved == 2
        assert (await stock_of(gadget.id)).reserved == 3

        async with session_factory() as db:
            stored_cart = await db.get(Cart, cart.id)
            assert stored_cart.status == "converted"
            assert stored_cart.converted_order_id == order.id
            assert stored_cart.items == []

        assert await _event_types(services, order.id) == ["created", "inventory_reserved"]
        assert await _event_types(services, order.id, public_only=True) == ["created"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_item_snapshot_ignores_later_price_changes(
        self, services: Any, place_order: Any, session_factory: Any
    ) -> None:
        order, product = await place_order(quantity=1, price_cents=999)

        async with session_factory() as db:
            async with db.begin():
                stored = await db.get(type(product), product.id)
                stored.price_cents = 5000

        reloaded = await services.orders.get_order(order.id)
        assert reloaded.items[0].unit_price_cents == 999
        assert reloaded.total_cents == 999

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cash_order_gets_pending_cash_payment(self, services: Any, place_order: Any) -> None:
        order, _ = await place_order(payment_method="cash")

        assert order.payment_status == "awaiting_payment"
        assert order.payment_timeout_at is None
        assert len(order.payments) == 1
        payment = order.payments[0]
        assert payment.method == "cash"
        assert payment.status == "awaiting_payment"
        assert payment.amount_cents == order.total_cents

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_separate_billing_address(
        self, services: Any, make_product: Any, make_cart: Any
    ) -> None:
        user_id = uuid.uuid4()
        product = await make_product()
        await make_cart(user_id, [(product, 1)])

        order = await services.orders.create_order(
            user_id, make_order_request(billing_address=make_address(city="Boston", state="MA"))
        )

        assert order.address("billing").city == "Boston"
        assert order.address("shipping").city == "Arlington"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_cart_is_rejected(self, services: Any) -> None:
        with pytest.raises(EmptyCartError) as exc_info:
            await services.orders.create_order(uuid.uuid4(), make_order_request())
        assert exc_info.value.code == "empty_cart"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inactive_product_is_rejected(
        self, services: Any, make_product: Any, make_cart: Any
    ) -> None:
        user_id = uuid.uuid4()
        product = await make_product(is_active=False)
        await make_cart(user_id, [(product, 1)])

        with pytest.raises(ProductUnavailableError) as exc_info:
            await services.orders.create_order(user_id, make_order_request())
        assert exc_info.value.field_errors[0]["field"] == f"items.{product.id}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_insufficient_stock_leaves_nothing_behind(
        self, services: Any, make_product: Any, make_cart: Any, stock_of: Any, session_factory: Any
    ) -> None:
        user_id = uuid.uuid4()
        plenty = await make_product(on_hand=10)
        scarce = await make_product(on_hand=1)
        cart = await make_cart(user_id, [(plenty, 2), (scarce, 2)])

        with pytest.raises(InsufficientStockError) as exc_info:
            await services.orders.create_order(user_id, make_order_request())

        assert exc_info.value.product_id == scarce.id
        assert (await stock_of(plenty.id)).reserved == 0
        async with session_factory() as db:
            assert await db.scalar(select(func.count(Order.id))) == 0
            assert (await db.get(Cart, cart.id)).status == "active"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_request_is_rejected_before_writes(
        self, services: Any, make_product: Any, make_cart: Any, stock_of: Any
    ) -> None:
        user_id = uuid.uuid4()
        product = await make_product(on_hand=10)
        await make_cart(user_id, [(product, 1)])

        with pytest.raises(OrderValidationError):
            await services.orders.create_order(user_id, make_order_request("barter"))

        assert (await stock_of(product.id)).reserved == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_creation_notifies_customer(
        self, services: Any, place_order: Any, mocker: Any
    ) -> None:
        spy = mocker.spy(services.notifier, "notify_order_created")

        order, _ = await place_order()

        spy.assert_called_once()
        assert spy.call_args.args[0].id == order.id


class TestQueries:
    """Test suite for order lookups and listings."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_users_orders_are_not_found(self, services: Any, place_order: Any) -> None:
        order, _ = await place_order()

        assert (await services.orders.get_order(order.id, user_id=order.user_id)).id == order.id
        with pytest.raises(OrderNotFoundError):
            await services.orders.get_order(order.id, user_id=uuid.uuid4())
        with pytest.raises(OrderNotFoundError):
            await services.orders.get_order(uuid.uuid4())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_orders_filters_and_pages(self, services: Any, place_order: Any) -> None:
        user_id = uuid.uuid4()
        first, _ = await place_order(user_id=user_id)
        second, _ = await place_order(user_id=user_id, payment_method="cash")
        await place_order()
        await services.orders.cancel_order(first.id)

        page = await services.orders.list_orders(OrderFilter(user_id=user_id))
        assert page.total == 2
        assert {o.id for o in page.items} == {first.id, second.id}

        cancelled = await services.orders.list_orders(OrderFilter(user_id=user_id, status="cancelled"))
        assert [o.id for o in cancelled.items] == [first.id]

        awaiting = await services.orders.list_orders(OrderFilter(payment_status="awaiting_payment"))
        assert [o.id for o in awaiting.items] == [second.id]

        paged = await services.orders.list_orders(
            OrderFilter(user_id=user_id, sort_by="total", sort_order="asc", limit=1, offset=1)
        )
        assert paged.total == 2
        assert len(paged.items) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_filter(self, services: Any) -> None:
        with pytest.raises(OrderValidationError) as exc_info:
            await services.orders.list_orders(
                OrderFilter(sort_by="colour", sort_order="up", limit=0, status="lost")
            )
        fields = {error["field"] for error in exc_info.value.field_errors}
        assert fields == {"sort_by", "sort_order", "limit", "status"}


class TestCancelOrder:
    """Test suite for cancellation and its stock effect."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_pending_order_releases_holds(
        self, services: Any, place_order: Any, stock_of: Any
    ) -> None:
        order, product = await place_order(quantity=3, on_hand=10)

        cancelled = await services.orders.cancel_order(
            order.id, reason="changed my mind", actor_id=order.user_id, user_id=order.user_id
        )

        assert cancelled.status == "cancelled"
        assert cancelled.fulfillment_status == "cancelled"
        assert cancelled.cancellation_reason == "changed my mind"
        assert cancelled.cancelled_at is not None
        assert cancelled.inventory_reserved is False
        level = await stock_of(product.id)
        assert (level.on_hand, level.reserved) == (10, 0)
        assert await _event_types(services, order.id) == [
            "created",
            "inventory_reserved",
            "cancelled",
            "inventory_released",
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_confirmed_cash_order_restores_stock(
        self, services: Any, place_order: Any, stock_of: Any
    ) -> None:
        order, product = await place_order(quantity=2, on_hand=10, payment_method="cash")
        await services.orders.update_order_status(order.id, "confirmed")
        assert (await stock_of(product.id)).on_hand == 8

        await services.orders.cancel_order(order.id, reason="customer request")

        level = await stock_of(product.id)
        assert (level.on_hand, level.reserved) == (10, 0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_after_holds_expired_has_no_stock_effect(
        self, services: Any, place_order: Any, stock_of: Any, session_factory: Any
    ) -> None:
        order, product = await place_order(quantity=2, on_hand=10)
        async with session_factory() as db:
            async with db.begin():
                await services.reservations.expire_stale(db, now=utcnow() + timedelta(days=1))

        await services.orders.cancel_order(order.id)

        level = await stock_of(product.id)
        assert (level.on_hand, level.reserved) == (10, 0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_paid_online_order_restores_deducted_stock(
        self, services: Any, place_order: Any, stock_of: Any
    ) -> None:
        order, product = await place_order(quantity=3, on_hand=10)
        await _pay_online(services, order)
        level = await stock_of(product.id)
        assert (level.on_hand, level.reserved) == (7, 0)

        cancelled = await services.orders.cancel_order(order.id, reason="out of delivery area")

        assert cancelled.status == "cancelled"
        assert cancelled.payment_status == "paid"
        level = await stock_of(product.id)
        assert (level.on_hand, level.reserved) == (10, 0)
        events = await services.orders.get_events(order.id)
        assert "cancelled" in [e.event_type for e in events]
        (released,) = [e for e in events if e.event_type == "inventory_released"]
        assert released.payload["items"] == [
            {"product_id": str(product.id), "quantity": 3, "action": "restored"}
        ]

        # the money goes back through the refund path; stock is not restored twice
        payment_id = (await services.orders.get_order(order.id)).payments[0].id
        refund = await services.payments.refund_payment(payment_id, reason="order cancelled")

        assert refund["status"] == "refunded"
        assert refund["payment_status"] == "refunded"
        assert refund["order_status"] == "cancelled"
        level = await stock_of(product.id)
        assert (level.on_hand, level.reserved) == (10, 0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refunded_order_cannot_be_cancelled(
        self, services: Any, place_order: Any, stock_of: Any
    ) -> None:
        order, product = await place_order(quantity=2, on_hand=10)
        await _pay_online(services, order)
        payment_id = (await services.orders.get_order(order.id)).payments[0].id
        await services.payments.refund_payment(payment_id)
        assert (await services.orders.get_order(order.id)).status == "refunded"

        with pytest.raises(InvalidStateTransitionError):
            await services.orders.cancel_order(order.id)

        level = await stock_of(product.id)
        assert (level.on_hand, level.reserved) == (10, 0)
        assert (await services.orders.get_order(order.id)).status == "refunded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_twice_is_rejected(self, services: Any, place_order: Any) -> None:
        order, _ = await place_order()
        await services.orders.cancel_order(order.id)

        with pytest.raises(InvalidStateTransitionError):
            await services.orders.cancel_order(order.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_customer_cannot_cancel_someone_elses_order(
        self, services: Any, place_order: Any
    ) -> None:
        order, _ = await place_order()

        with pytest.raises(OrderNotFoundError):
            await services.orders.cancel_order(order.id, user_id=uuid.uuid4())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shipped_order_cannot_be_cancelled(self, services: Any, place_order: Any) -> None:
        order, _ = await place_order(payment_method="cash")
        await services.orders.update_order_status(order.id, "confirmed")
        await services.orders.update_shipping_info(order.id, ShippingInfo("1Z999", "UPS"))

        with pytest.raises(InvalidStateTransitionError):
            await services.orders.cancel_order(order.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_update_to_cancelled_uses_cancel_path(
        self, services: Any, place_order: Any, stock_of: Any
    ) -> None:
        order, product = await place_order(quantity=4, on_hand=4)

        cancelled = await services.orders.update_order_status(order.id, "cancelled", note="fraud check")

        assert cancelled.status == "cancelled"
        assert cancelled.cancellation_reason == "fraud check"
        assert (await stock_of(product.id)).available == 4


class TestStatusWorkflows:
    """Test suite for administrative status, shipping and delivery updates."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unpaid_online_order_cannot_be_confirmed(
        self, services: Any, place_order: Any
    ) -> None:
        order, _ = await place_order()

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await services.orders.update_order_status(order.id, "confirmed")
        assert "payment" in str(exc_info.value)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_cash_order_deducts_stock(
        self, services: Any, place_order: Any, stock_of: Any
    ) -> None:
        order, product = await place_order(quantity=3, on_hand=10, payment_method="cash")

        confirmed = await services.orders.update_order_status(order.id, "confirmed", note="phone verified")

        assert confirmed.status == "confirmed"
        assert confirmed.inventory_reserved is False
        level = await stock_of(product.id)
        assert (level.on_hand, level.reserved) == (7, 0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_and_refund_statuses_are_rejected(
        self, services: Any, place_order: Any
    ) -> None:
        order, _ = await place_order(payment_method="cash")
        await services.orders.update_order_status(order.id, "confirmed")

        with pytest.raises(OrderValidationError):
            await services.orders.update_order_status(order.id, "teleported")
        with pytest.raises(InvalidStateTransitionError):
            await services.orders.update_order_status(order.id, "refunded")
        with pytest.raises(InvalidStateTransitionError):
            await services.orders.update_order_status(order.id, "delivered")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shipping_walks_intermediate_statuses(
        self, services: Any, place_order: Any, mocker: Any
    ) -> None:
        order, _ = await place_order(payment_method="cash")
        await services.orders.update_order_status(order.id, "confirmed")
        spy = mocker.spy(services.notifier, "notify_order_shipped")

        shipped = await services.orders.update_shipping_info(
            order.id,
            ShippingInfo(" 1Z999AA1 ", "UPS", shipping_method="ground", tracking_url="https://ups.test/1Z999AA1"),
        )

        assert shipped.status == "shipped"
        assert shipped.fulfillment_status == "shipped"
        assert shipped.tracking_number == "1Z999AA1"
        assert shipped.processed_at is not None
        assert shipped.shipped_at is not None
        spy.assert_called_once()

        events = await services.orders.get_events(order.id)
        transitions = [
            (e.payload["old_status"], e.payload["new_status"])
            for e in events
            if e.event_type == "status_changed"
        ]
        assert transitions == [
            ("pending", "confirmed"),
            ("confirmed", "processing"),
            ("processing", "ready_to_ship"),
            ("ready_to_ship", "shipped"),
        ]
        assert events[-1].event_type == "shipped"
        assert events[-1].payload["carrier"] == "UPS"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shipping_requires_tracking_and_status(
        self, services: Any, place_order: Any
    ) -> None:
        order, _ = await place_order()

        with pytest.raises(OrderValidationError):
            await services.orders.update_shipping_info(order.id, ShippingInfo(" ", ""))
        with pytest.raises(InvalidStateTransitionError):
            await services.orders.update_shipping_info(order.id, ShippingInfo("1Z", "UPS"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cash_is_settled_on_delivery(self, services: Any, place_order: Any) -> None:
        order, _ = await place_order(payment_method="cash")
        await services.orders.update_order_status(order.id, "confirmed")
        await services.orders.update_shipping_info(order.id, ShippingInfo("1Z", "UPS"))

        out = await services.orders.update_delivery_status(order.id, "out_for_delivery")
        assert out.status == "out_for_delivery"
        assert out.payment_status == "awaiting_payment"

        delivered = await services.orders.update_delivery_status(order.id, "delivered")
        assert delivered.status == "delivered"
        assert delivered.fulfillment_status == "delivered"
        assert delivered.delivered_at is not None
        assert delivered.payment_status == "paid"
        assert delivered.payments[0].status == "paid"
        assert "payment_received" in await _event_types(services, order.id)

        returned = await services.orders.update_order_status(order.id, "returned")
        assert returned.fulfillment_status == "returned"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unpaid_cash_order_cannot_be_returned(self, services: Any, place_order: Any) -> None:
        order, _ = await place_order(payment_method="cash")
        await services.orders.update_order_status(order.id, "confirmed")
        await services.orders.update_shipping_info(order.id, ShippingInfo("1Z", "UPS"))

        with pytest.raises(InvalidStateTransitionError):
            await services.orders.update_order_status(order.id, "returned")

        unchanged = await services.orders.get_order(order.id)
        assert unchanged.status == "shipped"
        assert unchanged.payment_status == "awaiting_payment"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_shipped_order_can_be_returned(self, services: Any, place_order: Any) -> None:
        order, _ = await place_order()
        await _pay_online(services, order)
        await services.orders.update_shipping_info(order.id, ShippingInfo("1Z", "UPS"))

        returned = await services.orders.update_order_status(order.id, "returned", note="refused at door")

        assert returned.status == "returned"
        assert returned.fulfillment_status == "returned"
        events = await services.orders.get_events(order.id)
        (returned_event,) = [e for e in events if e.event_type == "returned"]
        assert returned_event.payload == {"reason": "refused at door"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_delivery_status_validation(self, services: Any, place_order: Any) -> None:
        order, _ = await place_order(payment_method="cash")

        with pytest.raises(OrderValidationError):
            await services.orders.update_delivery_status(order.id, "shipped")
        with pytest.raises(InvalidStateTransitionError):
            await services.orders.update_delivery_status(order.id, "delivered")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_notes_and_timeline_visibility(self, services: Any, place_order: Any) -> None:
        order, _ = await place_order()

        await services.orders.add_note(order.id, "Gift wrap please", is_public=True)
        updated = await services.orders.add_note(order.id, "VIP customer")

        assert updated.customer_notes == "Gift wrap please"
        assert updated.admin_notes == "VIP customer"
        public = await services.orders.get_events(order.id, user_id=order.user_id, public_only=True)
        assert [e.description for e in public if e.event_type == "note_added"] == ["Gift wrap please"]
        everything = await services.orders.get_events(order.id)
        assert len([e for e in everything if e.event_type == "note_added"]) == 2

        with pytest.raises(OrderValidationError):
            await services.orders.add_note(order.id, "   ")


class TestCleanupExpiredOrders:
    """Test suite for cancelling unpaid orders past their timeout."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_unpaid_orders_are_cancelled(
        self, services: Any, place_order: Any, stock_of: Any
    ) -> None:
        unpaid, product = await place_order(quantity=2, on_hand=10)
        cash, _ = await place_order(payment_method="cash")

        assert await services.orders.cleanup_expired_orders(now=utcnow()) == 0
        cancelled = await services.orders.cleanup_expired_orders(now=utcnow() + timedelta(hours=2))

        assert cancelled == 1
        expired = await services.orders.get_order(unpaid.id)
        assert expired.status == "cancelled"
        assert expired.cancellation_reason == "payment timeout"
        assert (await stock_of(product.id)).reserved == 0
        assert (await services.orders.get_order(cash.id)).status == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cleanup_respects_batch_size(self, services: Any, place_order: Any) -> None:
        for _ in range(3):
            await place_order()

        later = utcnow() + timedelta(hours=2)
        assert await services.orders.cleanup_expired_orders(now=later, batch_size=2) == 2
        assert await services.orders.cleanup_expired_orders(now=later, batch_size=2) == 1
        assert await services.orders.cleanup_expired_orders(now=later) == 0


class TestReservationAccounting:
    """Test suite for keeping reserved counters equal to the active holds."""

    @staticmethod
    async def _assert_counter_matches_holds(
        session_factory: Any, stock_of: Any, product_id: uuid.UUID
    ) -> int:
        async with session_factory() as db:
            held = await db.scalar(
                select(func.sum(StockReservation.quantity)).where(
                    StockReservation.product_id == product_id,
                    StockReservation.status == "active",
                )
            )
        level = await stock_of(product_id)
        assert level.reserved == (held or 0)
        return level.reserved

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_counter_follows_reserve_release_expire_and_confirm(
        self,
        services: Any,
        make_product: Any,
        make_cart: Any,
        stock_of: Any,
        session_factory: Any,
    ) -> None:
        product = await make_product(on_hand=20)
        orders = []
        for quantity, method in ((2, "credit_card"), (3, "credit_card"), (4, "cash"), (5, "credit_card")):
            user_id = uuid.uuid4()
            await make_cart(user_id, [(product, quantity)])
            orders.append(await services.orders.create_order(user_id, make_order_request(method)))
        first, second, third, fourth = orders
        assert await self._assert_counter_matches_holds(session_factory, stock_of, product.id) == 14

        await services.orders.cancel_order(first.id)
        assert await self._assert_counter_matches_holds(session_factory, stock_of, product.id) == 12

        await services.orders.update_order_status(third.id, "confirmed")
        assert await self._assert_counter_matches_holds(session_factory, stock_of, product.id) == 8

        await services.payments.create_checkout_session(fourth.id, fourth.user_id)
        async with session_factory() as db:
            async with db.begin():
                await services.reservations.expire_stale(db, now=utcnow() + timedelta(days=1))
        assert await self._assert_counter_matches_holds(session_factory, stock_of, product.id) == 0

        # payment after the holds lapsed takes the stock again and deducts it
        result = await services.payments.confirm_payment_success(
            fourth.id, fourth.user_id, "cs_test_123"
        )
        assert result["status"] == "confirmed"
        assert await self._assert_counter_matches_holds(session_factory, stock_of, product.id) == 0

        level = await stock_of(product.id)
        assert level.on_hand == 20 - 4 - 5
        assert (await services.orders.get_order(second.id)).inventory_reserved is False
