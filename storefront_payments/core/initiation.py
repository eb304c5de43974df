"""
Payment initiation, customer cancellation and stale-attempt expiry.

The pending payment record is committed before the gateway is contacted, so
a crash or timeout during the outbound call always leaves a record the
callback can be matched against.
"""
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_payments.config import Settings, get_settings
from storefront_payments.core.attempt_guard import AttemptGuard
from storefront_payments.core.exceptions import (
    ConflictError,
    GatewayError,
    UpstreamTimeoutError,
    ValidationError,
)
from storefront_payments.core.orders import OrderStatus, OrderStore
from storefront_payments.core.payments import (
    PaymentMethod,
    PaymentOutcome,
    PaymentStatus,
    PaymentStore,
)
from storefront_payments.database.models import Payment, utc_now
from storefront_payments.integrations.easykash import GatewayClient
from storefront_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_REFERENCE_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]{1,255}$")


@dataclass
class InitiationResult:
    """Pending payment and, for gateway payments, where to send the buyer."""

    payment: Payment
    redirect_url: Optional[str]
    next_action: str  # redirect, await_delivery


class PaymentInitiator:
    """
    Starts payment attempts for pending orders.

    Features:
    - Server-side amount, never the client's
    - One active attempt per order
    - Timeout leaves the attempt pending and unconfirmed
    - Repeated failures per order are locked out
    """

    def __init__(
        self,
        gateway_client: GatewayClient,
        attempt_guard: AttemptGuard,
        order_store: Optional[OrderStore] = None,
        payment_store: Optional[PaymentStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway_client = gateway_client
        self.attempt_guard = attempt_guard
        self.order_store = order_store or OrderStore(self.settings.default_currency)
        self.payment_store = payment_store or PaymentStore()

    @staticmethod
    def _guard_key(order_id: uuid.UUID) -> str:
        return f"initiate:{order_id}"

    async def initiate(
        self,
        order_id: uuid.UUID,
        method: PaymentMethod | str,
        db: AsyncSession,
        amount_cents: Optional[int] = None,
        user_id: Optional[str] = None,
        correlation_ref: Optional[str] = None,
        redirect_url: Optional[str] = None,
    ) -> InitiationResult:
        """
        Create a pending payment for an order and, for gateway payments,
        register it with the gateway.

        Args:
            order_id: Order to pay
            method: Payment method
            db: Database session
            amount_cents: Amount the client displayed; must equal the order total
            user_id: Authenticated caller, if any
            correlation_ref: Caller-chosen reference; generated when omitted
            redirect_url: Where the gateway sends the buyer afterwards

        Returns:
            InitiationResult: Payment and next action

        Raises:
            AttemptsBlockedError: Too many recent failed initiations for this order
            NotFoundError: Order does not exist or is not the caller's
            ConflictError: Order is not awaiting payment, is already paid, or has an active attempt
            ValidationError: Amount mismatch or bad reference
            UpstreamTimeoutError: Gateway did not answer; payment stays pending
            GatewayError: Gateway rejected the request; payment is failed
        """
        guard_key = self._guard_key(order_id)
        await self.attempt_guard.ensure_allowed(guard_key, scope="initiate")

        try:
            method = PaymentMethod(method)
        except ValueError:
            raise ValidationError(f"Unsupported payment method: {method}")

        order = await self.order_store.get_order(order_id, db, user_id=user_id)
        if order.status != OrderStatus.PENDING.value:
            raise ConflictError(f"Order is not awaiting payment (status: {order.status})")

        if amount_cents is not None and amount_cents != order.total_cents:
            await self.attempt_guard.record_attempt(guard_key)
            metrics.record_payment_initiation(method.value, "rejected")
            logger.warning(
                "payment_amount_mismatch",
                order_id=str(order_id),
                order_total_cents=order.total_cents,
                submitted_cents=amount_cents,
            )
            raise ValidationError("Payment amount does not match order total")

        if correlation_ref is not None and not _REFERENCE_PATTERN.match(correlation_ref):
            raise ValidationError("Correlation reference has invalid characters")

        trace_id = uuid.uuid4()
        payment = await self.payment_store.create_pending_payment(
            order_id=order.id,
            method=method,
            amount_cents=order.total_cents,
            currency=order.currency,
            correlation_ref=correlation_ref or uuid.uuid4().hex,
            db=db,
        )
        await self.payment_store.record_event(
            db,
            payment.id,
            "payment.created",
            {"method": method.value, "amount_cents": payment.amount_cents},
            trace_id,
        )
        await db.commit()

        if method == PaymentMethod.CASH_ON_DELIVERY:
            await self.attempt_guard.clear(guard_key)
            metrics.record_payment_initiation(method.value, "pending")
            logger.info(
                "payment_initiated",
                payment_id=str(payment.id),
                order_id=str(order_id),
                method=method.value,
            )
            return InitiationResult(payment=payment, redirect_url=None, next_action="await_delivery")

        request = self.gateway_client.build_initiation_request(order, payment, redirect_url)
        try:
            response = await self.gateway_client.send_initiation(request)

        except UpstreamTimeoutError:
            await self.payment_store.record_event(
                db, payment.id, "payment.initiation_unconfirmed", {"reason": "timeout"}, trace_id
            )
            await db.commit()
            await self.attempt_guard.record_attempt(guard_key)
            metrics.record_payment_initiation(method.value, "unconfirmed")
            raise UpstreamTimeoutError(
                "Payment initiation is unconfirmed; the payment remains pending",
                payment_id=str(payment.id),
            )

        except GatewayError as e:
            await self.payment_store.finalize(
                payment.id,
                PaymentOutcome(status=PaymentStatus.FAILED, failure_reason=str(e)),
                db,
            )
            await self.payment_store.record_event(
                db, payment.id, "payment.initiation_failed", {"reason": str(e)}, trace_id
            )
            await db.commit()
            await self.attempt_guard.record_attempt(guard_key)
            metrics.record_payment_initiation(method.value, "rejected")
            raise

        await self.payment_store.attach_gateway_reference(
            payment.id, response.product_code, response.redirect_url, db
        )
        await self.payment_store.record_event(
            db,
            payment.id,
            "payment.redirected",
            {"product_code": response.product_code},
            trace_id,
        )
        await db.commit()
        await self.attempt_guard.clear(guard_key)
        metrics.record_payment_initiation(method.value, "redirected")

        payment = await self.payment_store.get_payment(payment.id, db)
        logger.info(
            "payment_initiated",
            payment_id=str(payment.id),
            order_id=str(order_id),
            method=method.value,
            product_code=response.product_code,
        )
        return InitiationResult(
            payment=payment, redirect_url=response.redirect_url, next_action="redirect"
        )

    async def cancel(
        self,
        payment_id: uuid.UUID,
        db: AsyncSession,
        user_id: Optional[str] = None,
    ) -> Payment:
        """
        Abandon a pending attempt. The order stays pending for a new attempt.

        Raises:
            NotFoundError: Payment or its order is not visible to the caller
            ConflictError: Payment is already completed or failed
        """
        payment = await self.payment_store.get_payment(payment_id, db)
        await self.order_store.get_order(payment.order_id, db, user_id=user_id)

        result = await self.payment_store.finalize(
            payment_id,
            PaymentOutcome(status=PaymentStatus.FAILED, failure_reason="cancelled_by_customer"),
            db,
        )
        if not result.applied:
            raise ConflictError(f"Payment is already {result.payment.status}")

        await self.payment_store.record_event(
            db, payment_id, "payment.cancelled", {"by": user_id or "guest"}, uuid.uuid4()
        )
        await db.commit()

        logger.info("payment_cancelled", payment_id=str(payment_id), order_id=str(payment.order_id))
        return result.payment

    async def expire_stale_payments(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> List[Payment]:
        """Fail pending attempts older than the configured expiry and commit."""
        return await expire_stale_payments(
            db,
            expiry_minutes=self.settings.payment_expiry_minutes,
            payment_store=self.payment_store,
            now=now,
        )


async def expire_stale_payments(
    db: AsyncSession,
    expiry_minutes: int,
    payment_store: Optional[PaymentStore] = None,
    now: Optional[datetime] = None,
) -> List[Payment]:
    """
    Fail pending payments created more than ``expiry_minutes`` ago and commit.

    Shared by the admin endpoint and the expiry worker.
    """
    payment_store = payment_store or PaymentStore()
    cutoff = (now or utc_now()) - timedelta(minutes=expiry_minutes)
    expired = await payment_store.expire_stale(cutoff, db)
    await db.commit()

    metrics.record_payments_expired(len(expired))
    if expired:
        logger.info(
            "stale_payments_expired",
            count=len(expired),
            cutoff=cutoff.isoformat(),
        )
    return expired
