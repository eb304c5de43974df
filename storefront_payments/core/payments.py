"""
Payment record store.

One record per payment attempt. A record moves from pending to exactly one
terminal status (completed or failed) through ``finalize``, which is a
conditional update keyed by the payment id: the first writer wins and every
later writer observes the stored outcome.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_payments.core.exceptions import ConflictError, NotFoundError, ValidationError
from storefront_payments.database.models import Payment, PaymentEvent, utc_now

logger = structlog.get_logger(__name__)


class PaymentStatus(str, Enum):
    """Payment record lifecycle status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED})


class PaymentMethod(str, Enum):
    """How the buyer pays."""

    EASYKASH = "easykash"
    CASH_ON_DELIVERY = "cash_on_delivery"


@dataclass(frozen=True)
class PaymentOutcome:
    """Terminal result applied to a pending payment record."""

    status: PaymentStatus
    external_ref: Optional[str] = None
    received_amount_cents: Optional[int] = None
    provider_method: Optional[str] = None
    voucher: Optional[str] = None
    failure_reason: Optional[str] = None

    def __post_init__(self) -> None:
        if self.status not in TERMINAL_PAYMENT_STATUSES:
            raise ValueError(f"Outcome status must be terminal, got {self.status}")


@dataclass
class FinalizeResult:
    """Stored payment after ``finalize`` and whether this call changed it."""

    payment: Payment
    applied: bool


class PaymentStore:
    """Persists payment attempts and owns the payment status."""

    async def create_pending_payment(
        self,
        order_id: uuid.UUID,
        method: PaymentMethod | str,
        amount_cents: int,
        currency: str,
        correlation_ref: str,
        db: AsyncSession,
    ) -> Payment:
        """
        Create a pending payment record for an order.

        Args:
            order_id: Order being paid
            method: Gateway name or cash on delivery
            amount_cents: Amount in minor units
            currency: Currency code
            correlation_ref: Reference the gateway echoes back in callbacks
            db: Database session

        Returns:
            Payment: The flushed (uncommitted) record

        Raises:
            ValidationError: If amount, method or reference are invalid
            ConflictError: If the order already has a pending or completed payment
        """
        try:
            method = PaymentMethod(method)
        except ValueError:
            raise ValidationError(f"Unsupported payment method: {method}")
        if amount_cents <= 0:
            raise ValidationError("Amount must be positive")
        if not correlation_ref:
            raise ValidationError("Correlation reference is required")

        previous = await db.execute(
            select(Payment.status).where(
                Payment.order_id == order_id,
                Payment.status.in_(
                    [PaymentStatus.PENDING.value, PaymentStatus.COMPLETED.value]
                ),
            )
        )
        statuses = set(previous.scalars().all())
        if PaymentStatus.COMPLETED.value in statuses:
            raise ConflictError(f"Order {order_id} is already paid")
        if statuses:
            raise ConflictError(f"Order {order_id} already has a payment in progress")

        existing_ref = await db.execute(
            select(Payment.id).where(Payment.correlation_ref == correlation_ref)
        )
        if existing_ref.first() is not None:
            raise ConflictError("Correlation reference is already in use")

        payment = Payment(
            id=uuid.uuid4(),
            order_id=order_id,
            method=method.value,
            amount_cents=amount_cents,
            currency=currency.upper(),
            status=PaymentStatus.PENDING.value,
            correlation_ref=correlation_ref,
        )
        db.add(payment)
        try:
            await db.flush()
        except IntegrityError:
            # Lost a race against another attempt for the same order or reference
            await db.rollback()
            raise ConflictError(f"Order {order_id} already has a payment in progress")

        logger.info(
            "payment_record_created",
            payment_id=str(payment.id),
            order_id=str(order_id),
            method=method.value,
            amount_cents=amount_cents,
        )
        return payment

    async def finalize(
        self,
        payment_id: uuid.UUID,
        outcome: PaymentOutcome,
        db: AsyncSession,
    ) -> FinalizeResult:
        """
        Apply a terminal outcome to a pending payment exactly once.

        If the record is already terminal nothing is written and the stored
        outcome is returned with ``applied=False``. The caller owns the
        transaction.
        """
        now = utc_now()
        values: Dict[str, Any] = {
            "status": outcome.status.value,
            "finalized_at": now,
            "updated_at": now,
        }
        for field in (
            "external_ref",
            "received_amount_cents",
            "provider_method",
            "voucher",
            "failure_reason",
        ):
            value = getattr(outcome, field)
            if value is not None:
                values[field] = value

        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        applied = result.rowcount == 1

        payment = await self.get_payment(payment_id, db)

        logger.info(
            "payment_finalize",
            payment_id=str(payment_id),
            requested_status=outcome.status.value,
            stored_status=payment.status,
            applied=applied,
        )
        return FinalizeResult(payment=payment, applied=applied)

    async def get_payment(self, payment_id: uuid.UUID, db: AsyncSession) -> Payment:
        """Load a payment record, re-reading persisted state."""
        result = await db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    async def get_by_correlation_ref(
        self, correlation_ref: str, db: AsyncSession
    ) -> Optional[Payment]:
        result = await db.execute(
            select(Payment)
            .where(Payment.correlation_ref == correlation_ref)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_product_code(
        self, product_code: str, db: AsyncSession
    ) -> Optional[Payment]:
        result = await db.execute(
            select(Payment)
            .where(Payment.gateway_product_code == product_code)
            .order_by(Payment.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def latest_for_order(self, order_id: uuid.UUID, db: AsyncSession) -> Optional[Payment]:
        """Most recent payment attempt for an order."""
        result = await db.execute(
            select(Payment)
            .where(Payment.order_id == order_id)
            .order_by(Payment.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_payments(
        self,
        db: AsyncSession,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        order_id: Optional[uuid.UUID] = None,
    ) -> Tuple[List[Payment], int]:
        """Page through payment records, newest first."""
        conditions = []
        if status:
            conditions.append(Payment.status == status)
        if order_id:
            conditions.append(Payment.order_id == order_id)

        total = await db.scalar(select(func.count(Payment.id)).where(*conditions))
        result = await db.execute(
            select(Payment)
            .where(*conditions)
            .order_by(Payment.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), int(total or 0)

    async def attach_gateway_reference(
        self,
        payment_id: uuid.UUID,
        product_code: Optional[str],
        redirect_url: Optional[str],
        db: AsyncSession,
    ) -> None:
        """Store what the gateway returned at initiation."""
        await db.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(
                gateway_product_code=product_code,
                redirect_url=redirect_url,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )

    async def find_stale(self, older_than: datetime, db: AsyncSession) -> List[Payment]:
        """Pending payments created before ``older_than``."""
        result = await db.execute(
            select(Payment)
            .where(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at < older_than,
            )
            .order_by(Payment.created_at)
        )
        return list(result.scalars().all())

    async def expire_stale(
        self,
        older_than: datetime,
        db: AsyncSession,
        trace_id: Optional[uuid.UUID] = None,
    ) -> List[Payment]:
        """
        Fail pending payments created before ``older_than``.

        Each record goes through ``finalize``, so a callback that lands
        during the sweep wins or loses cleanly. The caller commits.

        Returns:
            List[Payment]: Records this sweep moved to failed
        """
        trace_id = trace_id or uuid.uuid4()
        expired: List[Payment] = []
        for stale in await self.find_stale(older_than, db):
            result = await self.finalize(
                stale.id,
                PaymentOutcome(status=PaymentStatus.FAILED, failure_reason="expired"),
                db,
            )
            if not result.applied:
                continue
            await self.record_event(
                db,
                stale.id,
                "payment.expired",
                {"created_at": stale.created_at.isoformat(), "cutoff": older_than.isoformat()},
                trace_id,
            )
            expired.append(result.payment)
        return expired

    async def record_event(
        self,
        db: AsyncSession,
        payment_id: uuid.UUID,
        event_type: str,
        event_data: Dict[str, Any],
        trace_id: uuid.UUID,
    ) -> None:
        """
        Record a payment event for audit trail.

        Args:
            db: Database session
            payment_id: Payment ID
            event_type: Event type
            event_data: Event data
            trace_id: Trace ID shared by the events of one request
        """
        db.add(
            PaymentEvent(
                payment_id=payment_id,
                event_type=event_type,
                event_data=event_data,
                trace_id=trace_id,
            )
        )
