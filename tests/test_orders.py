"""
Order store tests: server-side pricing, stock reservation, owner scoping
and the status lifecycle.
"""
import itertools
import uuid

import pytest
from sqlalchemy import select

from storefront_payments.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from storefront_payments.core.orders import (
    ORDER_PROGRESSION,
    CustomerInfo,
    OrderLine,
    OrderStatus,
    can_transition,
)
from storefront_payments.database.models import Product


class TestTransitionTable:
    """Pure checks on the order status graph."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PENDING, OrderStatus.PAID),
            (OrderStatus.PAID, OrderStatus.CONFIRMED),
            (OrderStatus.CONFIRMED, OrderStatus.SHIPPED),
            (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
            (OrderStatus.PENDING, OrderStatus.CANCELLED),
            (OrderStatus.PAID, OrderStatus.CANCELLED),
            (OrderStatus.SHIPPED, OrderStatus.CANCELLED),
        ],
    )
    def test_allowed_transitions(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PENDING, OrderStatus.SHIPPED),
            (OrderStatus.PAID, OrderStatus.PENDING),
            (OrderStatus.PENDING, OrderStatus.PENDING),
            (OrderStatus.DELIVERED, OrderStatus.CANCELLED),
            (OrderStatus.CANCELLED, OrderStatus.PENDING),
            (OrderStatus.CANCELLED, OrderStatus.CANCELLED),
            (OrderStatus.SHIPPED, OrderStatus.CONFIRMED),
        ],
    )
    def test_rejected_transitions(self, current, target):
        assert not can_transition(current, target)

    @pytest.mark.unit
    def test_any_accepted_sequence_is_a_prefix_of_the_progression(self):
        """
        Walk every sequence of three requested targets from pending, applying
        only the accepted ones. The visited statuses are always a prefix of
        pending -> paid -> confirmed -> shipped -> delivered, optionally
        followed by cancelled.
        """
        for targets in itertools.product(list(OrderStatus), repeat=3):
            history = [OrderStatus.PENDING]
            for target in targets:
                if can_transition(history[-1], target):
                    history.append(target)

            if history[-1] == OrderStatus.CANCELLED:
                body = history[:-1]
            else:
                body = history
            assert tuple(body) == ORDER_PROGRESSION[: len(body)]
            assert history.count(OrderStatus.CANCELLED) <= 1


class TestCreateOrder:
    """Checkout persistence."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_total_computed_from_catalog(self, test_db, products, order_store, customer):
        """Prices come from the catalog and lines keep request order."""
        order = await order_store.create_order(
            items=[
                OrderLine(product_id=products["mug"].id, quantity=2),
                OrderLine(product_id=products["lamp"].id, quantity=1),
            ],
            customer=customer,
            db=test_db,
        )

        assert order.status == OrderStatus.PENDING.value
        assert order.total_cents == 2 * 5000 + 10000
        assert order.currency == "EGP"
        assert [item.product_name for item in order.items] == ["Ceramic Mug", "Desk Lamp"]
        assert order.items[0].line_total_cents == 10000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeated_product_lines_are_merged(self, test_db, products, order_store, customer):
        mug_id = products["mug"].id
        order = await order_store.create_order(
            items=[OrderLine(product_id=mug_id, quantity=1), OrderLine(product_id=mug_id, quantity=2)],
            customer=customer,
            db=test_db,
        )

        assert len(order.items) == 1
        assert order.items[0].quantity == 3
        assert order.total_cents == 15000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stock_is_reserved(self, test_db, products, order_store, customer):
        lamp_id = products["lamp"].id
        await order_store.create_order(
            items=[OrderLine(product_id=lamp_id, quantity=2)], customer=customer, db=test_db
        )

        stock = await test_db.scalar(select(Product.stock).where(Product.id == lamp_id))
        assert stock == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_order_rejected(self, test_db, products, order_store, customer):
        with pytest.raises(ValidationError, match="at least one item"):
            await order_store.create_order(items=[], customer=customer, db=test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_positive_quantity_rejected(self, test_db, products, order_store, customer):
        with pytest.raises(ValidationError, match="positive"):
            await order_store.create_order(
                items=[OrderLine(product_id=products["mug"].id, quantity=0)],
                customer=customer,
                db=test_db,
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_customer_phone_rejected(self, test_db, products, order_store):
        with pytest.raises(ValidationError, match="phone"):
            await order_store.create_order(
                items=[OrderLine(product_id=products["mug"].id, quantity=1)],
                customer=CustomerInfo(name="Guest", phone="  "),
                db=test_db,
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("product_key", ["retired", "unknown"])
    async def test_unavailable_product_rejected(
        self, test_db, products, order_store, customer, product_key
    ):
        product_id = products[product_key].id if product_key in products else uuid.uuid4()

        with pytest.raises(ValidationError, match="not available"):
            await order_store.create_order(
                items=[OrderLine(product_id=product_id, quantity=1)],
                customer=customer,
                db=test_db,
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_out_of_stock_rolls_back_earlier_reservations(
        self, test_db, products, order_store, customer
    ):
        """A failing line leaves the stock of earlier lines untouched."""
        mug_id = products["mug"].id
        sold_out_id = products["sold_out"].id

        with pytest.raises(ValidationError, match="out of stock"):
            await order_store.create_order(
                items=[
                    OrderLine(product_id=mug_id, quantity=1),
                    OrderLine(product_id=sold_out_id, quantity=1),
                ],
                customer=customer,
                db=test_db,
            )

        stock = await test_db.scalar(select(Product.stock).where(Product.id == mug_id))
        assert stock == 10


class TestOrderLookup:
    """Owner scoping on reads."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_owner_can_read_and_others_cannot(self, test_db, products, order_store, customer):
        order = await order_store.create_order(
            items=[OrderLine(product_id=products["mug"].id, quantity=1)],
            customer=customer,
            user_id="user-1",
            db=test_db,
        )

        loaded = await order_store.get_order(order.id, test_db, user_id="user-1")
        assert loaded.id == order.id

        with pytest.raises(NotFoundError):
            await order_store.get_order(order.id, test_db, user_id="user-2")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_guest_order_visible_to_any_caller(self, test_db, order, order_store):
        loaded = await order_store.get_order(order.id, test_db, user_id="someone")
        assert loaded.id == order.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_items(self, test_db, order, order_store):
        items = await order_store.list_items(order.id, test_db)
        assert [item.unit_price_cents for item in items] == [5000, 10000]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order(self, test_db, order_store):
        with pytest.raises(NotFoundError):
            await order_store.get_order(uuid.uuid4(), test_db)


class TestTransitionStatus:
    """Persisted status changes."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_progression(self, test_db, order, order_store):
        for target in ORDER_PROGRESSION[1:]:
            updated = await order_store.transition_status(order.id, target, test_db)
            assert updated.status == target.value
        await test_db.commit()

        loaded = await order_store.get_order(order.id, test_db)
        assert loaded.status == OrderStatus.DELIVERED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_skipping_a_step_is_rejected(self, test_db, order, order_store):
        with pytest.raises(InvalidTransitionError) as exc_info:
            await order_store.transition_status(order.id, OrderStatus.SHIPPED, test_db)

        assert exc_info.value.current == "pending"
        assert exc_info.value.target == "shipped"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled_is_terminal(self, test_db, order, order_store):
        await order_store.transition_status(order.id, "cancelled", test_db)
        await test_db.commit()

        with pytest.raises(InvalidTransitionError):
            await order_store.transition_status(order.id, "paid", test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_status_rejected(self, test_db, order, order_store):
        with pytest.raises(ValidationError):
            await order_store.transition_status(order.id, "refunded", test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_order(self, test_db, order_store):
        with pytest.raises(NotFoundError):
            await order_store.transition_status(uuid.uuid4(), "paid", test_db)
