"""
Callback reconciler.

Applies a verified gateway callback to the payment record and its order:

    pending --(verified success)--> completed   (order pending -> paid)
    pending --(verified failure)--> failed
    completed|failed --(any later callback)--> unchanged

The payment finalization, the order transition, any discrepancy row and the
audit event are committed together. Concurrent deliveries for one payment
are serialized by the conditional update in ``PaymentStore.finalize``.
"""
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_payments.core.discrepancies import DiscrepancyKind, DiscrepancyLog
from storefront_payments.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    MalformedCallbackError,
    NotFoundError,
    SignatureError,
    ValidationError,
)
from storefront_payments.core.orders import OrderStatus, OrderStore
from storefront_payments.core.payments import (
    TERMINAL_PAYMENT_STATUSES,
    PaymentOutcome,
    PaymentStatus,
    PaymentStore,
)
from storefront_payments.database.models import Payment
from storefront_payments.integrations.easykash import (
    CallbackStatus,
    GatewayClient,
    VerifiedCallback,
)
from storefront_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class CallbackResult:
    """How a callback was handled; every result is acknowledged to the gateway."""

    outcome: str  # processed, duplicate, ignored, pending
    payment_id: Optional[uuid.UUID] = None
    payment_status: Optional[str] = None
    order_status: Optional[str] = None
    discrepancy: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "outcome": self.outcome,
            "payment_id": str(self.payment_id) if self.payment_id else None,
            "payment_status": self.payment_status,
            "order_status": self.order_status,
            "discrepancy": self.discrepancy,
        }


def _payment_status_for(status: CallbackStatus) -> PaymentStatus:
    if status == CallbackStatus.COMPLETED:
        return PaymentStatus.COMPLETED
    return PaymentStatus.FAILED


class CallbackReconciler:
    """
    Matches gateway callbacks to payment records and applies them exactly once.

    Nothing is read or written before the signature verifies. Every decision
    re-reads persisted state.
    """

    def __init__(
        self,
        gateway_client: GatewayClient,
        payment_store: Optional[PaymentStore] = None,
        order_store: Optional[OrderStore] = None,
        discrepancies: Optional[DiscrepancyLog] = None,
    ):
        self.gateway_client = gateway_client
        self.payment_store = payment_store or PaymentStore()
        self.order_store = order_store or OrderStore()
        self.discrepancies = discrepancies or DiscrepancyLog()

    async def reconcile(
        self,
        raw_payload: Any,
        db: AsyncSession,
        source: str = "dedicated",
    ) -> CallbackResult:
        """
        Verify and apply one inbound callback.

        Args:
            raw_payload: Decoded callback body
            db: Database session
            source: Which endpoint received it (dedicated or root)

        Returns:
            CallbackResult: Outcome to acknowledge

        Raises:
            SignatureError: Untrusted callback; no state was touched
            MalformedCallbackError: Signed but unusable; the gateway should retry
        """
        start_time = time.monotonic()

        try:
            callback = self.gateway_client.verify_callback(raw_payload)
        except SignatureError as e:
            metrics.record_signature_failure()
            metrics.record_callback_outcome("rejected")
            payload = raw_payload if isinstance(raw_payload, dict) else {}
            logger.warning(
                "callback_signature_rejected",
                source=source,
                reason=str(e),
                customer_reference=payload.get("customerReference"),
                product_code=payload.get("ProductCode"),
                claimed_status=payload.get("status"),
                claimed_amount=payload.get("Amount"),
            )
            raise
        except MalformedCallbackError as e:
            metrics.record_callback_outcome("malformed")
            logger.warning("callback_malformed", source=source, reason=str(e))
            raise

        log = logger.bind(
            source=source,
            customer_reference=callback.correlation_ref,
            product_code=callback.product_code,
            external_ref=callback.external_ref,
            claimed_status=callback.raw_status,
        )

        payment = await self._resolve(callback, db)
        if payment is None:
            log.warning("callback_unmatched", claimed_amount_cents=callback.amount_cents)
            metrics.record_callback_outcome("ignored", time.monotonic() - start_time)
            return CallbackResult(outcome="ignored")

        log = log.bind(payment_id=str(payment.id), order_id=str(payment.order_id))

        if callback.status == CallbackStatus.PENDING:
            log.info("callback_still_pending", stored_status=payment.status)
            metrics.record_callback_outcome("pending", time.monotonic() - start_time)
            order = await self.order_store.get_order(payment.order_id, db)
            return CallbackResult(
                outcome="pending",
                payment_id=payment.id,
                payment_status=payment.status,
                order_status=order.status,
            )

        trace_id = uuid.uuid4()
        if PaymentStatus(payment.status) in TERMINAL_PAYMENT_STATUSES:
            result = await self._deduplicate(payment, callback, db, trace_id)
        else:
            result = await self._apply(
                payment,
                PaymentOutcome(
                    status=_payment_status_for(callback.status),
                    external_ref=callback.external_ref,
                    received_amount_cents=callback.amount_cents,
                    provider_method=callback.provider_method,
                    voucher=callback.voucher,
                    failure_reason=(
                        None
                        if callback.status == CallbackStatus.COMPLETED
                        else f"gateway_status:{callback.raw_status}"
                    ),
                ),
                db,
                trace_id,
                event_data={
                    "source": source,
                    "claimed_status": callback.raw_status,
                    "claimed_amount_cents": callback.amount_cents,
                    "external_ref": callback.external_ref,
                    "product_code": callback.product_code,
                },
                callback=callback,
            )

        log.info(
            "callback_processed",
            outcome=result.outcome,
            payment_status=result.payment_status,
            order_status=result.order_status,
            discrepancy=result.discrepancy,
        )
        metrics.record_callback_outcome(result.outcome, time.monotonic() - start_time)
        return result

    async def apply_manual_outcome(
        self,
        payment_id: uuid.UUID,
        status: PaymentStatus | str,
        db: AsyncSession,
        external_ref: Optional[str] = None,
        received_amount_cents: Optional[int] = None,
        note: Optional[str] = None,
    ) -> CallbackResult:
        """
        Operator resolution of a pending payment, e.g. after checking the
        gateway dashboard. Goes through the same atomic path as a callback.

        Raises:
            ValidationError: Status is not terminal
            NotFoundError: Payment does not exist
            ConflictError: Payment is already terminal
        """
        try:
            target = PaymentStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown payment status: {status}")
        if target not in TERMINAL_PAYMENT_STATUSES:
            raise ValidationError("Manual outcome must be completed or failed")

        payment = await self.payment_store.get_payment(payment_id, db)
        if PaymentStatus(payment.status) in TERMINAL_PAYMENT_STATUSES:
            raise ConflictError(f"Payment is already {payment.status}")

        result = await self._apply(
            payment,
            PaymentOutcome(
                status=target,
                external_ref=external_ref,
                received_amount_cents=received_amount_cents,
                failure_reason=None if target == PaymentStatus.COMPLETED else (note or "manual"),
            ),
            db,
            uuid.uuid4(),
            event_data={"source": "admin", "note": note},
        )
        if result.outcome == "duplicate":
            raise ConflictError(f"Payment is already {result.payment_status}")

        logger.info(
            "payment_resolved_manually",
            payment_id=str(payment_id),
            payment_status=result.payment_status,
            order_status=result.order_status,
        )
        return result

    async def _resolve(self, callback: VerifiedCallback, db: AsyncSession) -> Optional[Payment]:
        """Correlation reference first, then the product code captured at initiation."""
        if callback.correlation_ref:
            payment = await self.payment_store.get_by_correlation_ref(callback.correlation_ref, db)
            if payment is not None:
                return payment
        if callback.product_code:
            return await self.payment_store.get_by_product_code(callback.product_code, db)
        return None

    async def _apply(
        self,
        payment: Payment,
        outcome: PaymentOutcome,
        db: AsyncSession,
        trace_id: uuid.UUID,
        event_data: Dict[str, Any],
        callback: Optional[VerifiedCallback] = None,
    ) -> CallbackResult:
        finalized = await self.payment_store.finalize(payment.id, outcome, db)
        if not finalized.applied:
            # Another delivery finalized the record first
            await db.commit()
            if callback is not None:
                return await self._deduplicate(finalized.payment, callback, db, trace_id)
            order = await self.order_store.get_order(payment.order_id, db)
            return CallbackResult(
                outcome="duplicate",
                payment_id=payment.id,
                payment_status=finalized.payment.status,
                order_status=order.status,
            )

        discrepancy: Optional[DiscrepancyKind] = None
        if outcome.status == PaymentStatus.COMPLETED:
            received = outcome.received_amount_cents
            if received is not None and received != payment.amount_cents:
                discrepancy = DiscrepancyKind.AMOUNT_MISMATCH
                await self.discrepancies.record(
                    db,
                    discrepancy,
                    payment_id=payment.id,
                    order_id=payment.order_id,
                    expected_amount_cents=payment.amount_cents,
                    received_amount_cents=received,
                    details={"external_ref": outcome.external_ref},
                )
            else:
                try:
                    await self.order_store.transition_status(payment.order_id, OrderStatus.PAID, db)
                except (InvalidTransitionError, NotFoundError) as e:
                    discrepancy = DiscrepancyKind.ORDER_TRANSITION_FAILED
                    await self.discrepancies.record(
                        db,
                        discrepancy,
                        payment_id=payment.id,
                        order_id=payment.order_id,
                        expected_amount_cents=payment.amount_cents,
                        received_amount_cents=received,
                        details={"error": str(e)},
                    )

        await self.payment_store.record_event(
            db,
            payment.id,
            f"payment.{outcome.status.value}",
            {**event_data, "discrepancy": discrepancy.value if discrepancy else None},
            trace_id,
        )
        await db.commit()

        order = await self.order_store.get_order(payment.order_id, db)
        return CallbackResult(
            outcome="processed",
            payment_id=payment.id,
            payment_status=finalized.payment.status,
            order_status=order.status,
            discrepancy=discrepancy.value if discrepancy else None,
        )

    async def _deduplicate(
        self,
        payment: Payment,
        callback: VerifiedCallback,
        db: AsyncSession,
        trace_id: uuid.UUID,
    ) -> CallbackResult:
        """Acknowledge a callback for a terminal record without changing it."""
        discrepancy: Optional[str] = None
        claimed = _payment_status_for(callback.status)
        if claimed.value != payment.status:
            recorded = await self.discrepancies.record(
                db,
                DiscrepancyKind.LATE_OUTCOME_MISMATCH,
                payment_id=payment.id,
                order_id=payment.order_id,
                expected_amount_cents=payment.amount_cents,
                received_amount_cents=callback.amount_cents,
                details={
                    "stored_status": payment.status,
                    "claimed_status": callback.raw_status,
                    "external_ref": callback.external_ref,
                },
                once_per_payment=True,
            )
            if recorded is not None:
                discrepancy = DiscrepancyKind.LATE_OUTCOME_MISMATCH.value
                await self.payment_store.record_event(
                    db,
                    payment.id,
                    "callback.late_outcome_mismatch",
                    {"claimed_status": callback.raw_status, "stored_status": payment.status},
                    trace_id,
                )
                await db.commit()

        order = await self.order_store.get_order(payment.order_id, db)
        return CallbackResult(
            outcome="duplicate",
            payment_id=payment.id,
            payment_status=payment.status,
            order_status=order.status,
            discrepancy=discrepancy,
        )
