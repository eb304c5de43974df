"""
Order store: checkout and the order status lifecycle.

Totals are always computed from catalog prices; client-submitted totals
are never read. Status changes follow the monotonic progression

    pending -> paid -> confirmed -> shipped -> delivered

with cancelled reachable from any non-terminal status.
"""
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_payments.config import get_settings
from storefront_payments.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    StorefrontError,
    ValidationError,
)
from storefront_payments.database.models import Order, OrderItem, Product, utc_now
from storefront_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OrderStatus(str, Enum):
    """Order lifecycle status."""

    PENDING = "pending"
    PAID = "paid"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


ORDER_PROGRESSION = (
    OrderStatus.PENDING,
    OrderStatus.PAID,
    OrderStatus.CONFIRMED,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)

TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Return True if ``target`` is directly reachable from ``current``."""
    if current in TERMINAL_ORDER_STATUSES:
        return False
    if target == OrderStatus.CANCELLED:
        return True
    position = ORDER_PROGRESSION.index(current)
    return position + 1 < len(ORDER_PROGRESSION) and ORDER_PROGRESSION[position + 1] == target


@dataclass(frozen=True)
class OrderLine:
    """A requested product and quantity."""

    product_id: uuid.UUID
    quantity: int


@dataclass(frozen=True)
class CustomerInfo:
    """Contact details captured on the order (required for guest checkout)."""

    name: str
    phone: str
    email: Optional[str] = None
    shipping_address: Optional[str] = None
    notes: Optional[str] = None


class OrderStore:
    """Persists orders with their line items and owns the order status."""

    def __init__(self, currency: Optional[str] = None):
        self.currency = (currency or get_settings().default_currency).upper()

    @staticmethod
    def _merge_lines(items: Sequence[OrderLine]) -> Dict[uuid.UUID, int]:
        """Validate requested lines and merge repeated products."""
        if not items:
            raise ValidationError("Order must contain at least one item")

        quantities: Dict[uuid.UUID, int] = {}
        for line in items:
            if line.quantity <= 0:
                raise ValidationError("Item quantity must be positive")
            quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity
        return quantities

    @staticmethod
    def _validate_customer(customer: CustomerInfo) -> None:
        if not customer.name or not customer.name.strip():
            raise ValidationError("Customer name is required")
        if not customer.phone or not customer.phone.strip():
            raise ValidationError("Customer phone is required")

    async def create_order(
        self,
        items: Sequence[OrderLine],
        customer: CustomerInfo,
        user_id: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> Order:
        """
        Create an order and its line items in one transaction.

        Stock is reserved with a conditional decrement per product, so two
        checkouts racing for the last unit cannot both succeed.

        Args:
            items: Requested products and quantities
            customer: Contact details
            user_id: Authenticated owner, None for guest checkout
            db: Database session

        Returns:
            Order: The committed order with items

        Raises:
            ValidationError: Empty order, unknown, inactive or out-of-stock product
        """
        if db is None:
            raise StorefrontError("Database session is required")

        quantities = self._merge_lines(items)
        self._validate_customer(customer)

        try:
            result = await db.execute(
                select(Product).where(Product.id.in_(list(quantities)))
            )
            products = {product.id: product for product in result.scalars().all()}

            order_items: List[OrderItem] = []
            total_cents = 0
            for position, (product_id, quantity) in enumerate(quantities.items()):
                product = products.get(product_id)
                if product is None or not product.is_active:
                    raise ValidationError(f"Product {product_id} is not available")

                reserved = await db.execute(
                    update(Product)
                    .where(Product.id == product_id, Product.stock >= quantity)
                    .values(stock=Product.stock - quantity)
                    .execution_options(synchronize_session=False)
                )
                if reserved.rowcount != 1:
                    raise ValidationError(f"'{product.name}' is out of stock")

                line_total = product.price_cents * quantity
                total_cents += line_total
                order_items.append(
                    OrderItem(
                        position=position,
                        product_id=product_id,
                        product_name=product.name,
                        unit_price_cents=product.price_cents,
                        quantity=quantity,
                        line_total_cents=line_total,
                    )
                )

            if total_cents <= 0:
                raise ValidationError("Order total must be positive")

            order = Order(
                id=uuid.uuid4(),
                user_id=user_id,
                status=OrderStatus.PENDING.value,
                total_cents=total_cents,
                currency=self.currency,
                customer_name=customer.name.strip(),
                customer_email=customer.email,
                customer_phone=customer.phone.strip(),
                shipping_address=customer.shipping_address,
                notes=customer.notes,
                items=order_items,
            )
            db.add(order)
            await db.commit()

        except StorefrontError:
            await db.rollback()
            raise

        logger.info(
            "order_created",
            order_id=str(order.id),
            user_id=user_id,
            total_cents=total_cents,
            item_count=len(order_items),
        )
        metrics.record_order_created(self.currency, total_cents)

        return order

    async def get_order(
        self,
        order_id: uuid.UUID,
        db: AsyncSession,
        user_id: Optional[str] = None,
    ) -> Order:
        """
        Load an order, always re-reading persisted state.

        When both the caller and the order have an owner they must match;
        a mismatch is reported as not found.
        """
        result = await db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()

        if order is None or (user_id and order.user_id and order.user_id != user_id):
            raise NotFoundError(f"Order {order_id} not found")

        return order

    async def transition_status(
        self,
        order_id: uuid.UUID,
        new_status: OrderStatus | str,
        db: AsyncSession,
    ) -> Order:
        """
        Move an order to ``new_status``.

        The write is a conditional update on the status that was validated,
        so a concurrent change makes this call fail instead of overwriting it.
        The caller owns the transaction.

        Raises:
            NotFoundError: If the order does not exist
            InvalidTransitionError: If the target is not reachable
        """
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown order status: {new_status}")

        order = await self.get_order(order_id, db)
        current = OrderStatus(order.status)

        if not can_transition(current, target):
            raise InvalidTransitionError(current.value, target.value)

        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == current.value)
            .values(status=target.value, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )

        order = await self.get_order(order_id, db)
        if result.rowcount != 1:
            raise InvalidTransitionError(order.status, target.value)

        logger.info(
            "order_status_changed",
            order_id=str(order_id),
            from_status=current.value,
            to_status=target.value,
        )
        metrics.record_order_transition(current.value, target.value)

        return order

    async def list_items(
        self,
        order_id: uuid.UUID,
        db: AsyncSession,
        user_id: Optional[str] = None,
    ) -> List[OrderItem]:
        """Line items of an order in checkout order."""
        order = await self.get_order(order_id, db, user_id=user_id)
        return list(order.items)
