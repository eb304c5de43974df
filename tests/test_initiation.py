"""
Payment initiation, cancellation and expiry tests.
"""
import json
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import update

from storefront_payments.core.exceptions import (
    AttemptsBlockedError,
    ConflictError,
    GatewayError,
    NotFoundError,
    UpstreamTimeoutError,
    ValidationError,
)
from storefront_payments.core.initiation import expire_stale_payments
from storefront_payments.core.orders import OrderLine, OrderStatus
from storefront_payments.core.payments import PaymentStatus
from storefront_payments.database.models import Payment, utc_now


class TestInitiate:
    """Creating a payment attempt for a pending order."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_easykash_initiation_redirects(
        self, test_db, order, initiator, fake_gateway, load_events
    ):
        result = await initiator.initiate(
            order.id, "easykash", test_db, amount_cents=15000, correlation_ref="R1"
        )

        assert result.next_action == "redirect"
        assert result.redirect_url == "https://www.easykash.net/DirectPayV1/EDV4471"
        assert result.payment.status == PaymentStatus.PENDING.value
        assert result.payment.amount_cents == 15000
        assert result.payment.gateway_product_code == "EDV4471"

        sent = json.loads(fake_gateway.requests[0].content)
        assert sent["amount"] == "150.00"
        assert sent["customerReference"] == "R1"

        events = await load_events(test_db, result.payment.id)
        assert [e.event_type for e in events] == ["payment.created", "payment.redirected"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reference_generated_when_omitted(self, test_db, order, initiator):
        result = await initiator.initiate(order.id, "easykash", test_db)

        assert len(result.payment.correlation_ref) == 32

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cash_on_delivery_skips_gateway(self, test_db, order, initiator, fake_gateway):
        result = await initiator.initiate(order.id, "cash_on_delivery", test_db)

        assert result.next_action == "await_delivery"
        assert result.redirect_url is None
        assert result.payment.method == "cash_on_delivery"
        assert fake_gateway.requests == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_amount_must_match_order_total(
        self, test_db, order, initiator, fake_gateway, attempt_guard
    ):
        with pytest.raises(ValidationError, match="does not match"):
            await initiator.initiate(order.id, "easykash", test_db, amount_cents=100)

        assert fake_gateway.requests == []
        status = await attempt_guard.is_blocked(f"initiate:{order.id}")
        assert status.attempts_remaining == 4

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_attempt_while_pending_conflicts(self, test_db, order, initiator):
        await initiator.initiate(order.id, "easykash", test_db)

        with pytest.raises(ConflictError):
            await initiator.initiate(order.id, "easykash", test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_order_cannot_be_paid_again(self, test_db, order, initiator, order_store):
        await order_store.transition_status(order.id, OrderStatus.PAID, test_db)
        await test_db.commit()

        with pytest.raises(ConflictError, match="not awaiting payment"):
            await initiator.initiate(order.id, "easykash", test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_order_with_mismatched_payment_is_not_charged_again(
        self, test_db, order, pending_payment, initiator, reconciler, make_callback, fake_gateway
    ):
        """The order stays pending for review, but the buyer has already paid."""
        result = await reconciler.reconcile(make_callback(amount="1.00"), test_db)
        assert result.order_status == OrderStatus.PENDING.value

        with pytest.raises(ConflictError, match="already paid"):
            await initiator.initiate(order.id, "easykash", test_db, correlation_ref="R2")

        assert fake_gateway.requests == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_users_order_is_not_found(
        self, test_db, products, order_store, customer, initiator
    ):
        owned = await order_store.create_order(
            items=[OrderLine(product_id=products["mug"].id, quantity=1)],
            customer=customer,
            user_id="owner",
            db=test_db,
        )

        with pytest.raises(NotFoundError):
            await initiator.initiate(owned.id, "easykash", test_db, user_id="intruder")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_reference_rejected(self, test_db, order, initiator):
        with pytest.raises(ValidationError):
            await initiator.initiate(order.id, "easykash", test_db, correlation_ref="bad ref!")


class TestGatewayFailures:
    """What the payment record looks like when the gateway misbehaves."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_leaves_payment_pending(
        self, test_db, order, initiator, fake_gateway, payment_store, load_events
    ):
        fake_gateway.behaviour = "timeout"

        with pytest.raises(UpstreamTimeoutError) as exc_info:
            await initiator.initiate(order.id, "easykash", test_db, correlation_ref="R1")

        payment_id = uuid.UUID(exc_info.value.payment_id)
        payment = await payment_store.get_payment(payment_id, test_db)
        assert payment.status == PaymentStatus.PENDING.value

        events = await load_events(test_db, payment_id)
        assert [e.event_type for e in events] == [
            "payment.created",
            "payment.initiation_unconfirmed",
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_late_callback_after_timeout_still_applies(
        self, test_db, order, initiator, fake_gateway, reconciler, make_callback
    ):
        """The gateway accepted the request even though we never saw its answer."""
        fake_gateway.behaviour = "timeout"
        with pytest.raises(UpstreamTimeoutError):
            await initiator.initiate(order.id, "easykash", test_db, correlation_ref="R1")

        result = await reconciler.reconcile(make_callback(), test_db)

        assert result.outcome == "processed"
        assert result.order_status == OrderStatus.PAID.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejection_fails_payment_and_allows_retry(
        self, test_db, order, initiator, fake_gateway, payment_store, order_store
    ):
        fake_gateway.behaviour = "reject"

        with pytest.raises(GatewayError):
            await initiator.initiate(order.id, "easykash", test_db, correlation_ref="R1")

        failed = await payment_store.get_by_correlation_ref("R1", test_db)
        assert failed.status == PaymentStatus.FAILED.value
        assert (await order_store.get_order(order.id, test_db)).status == OrderStatus.PENDING.value

        fake_gateway.behaviour = "ok"
        retry = await initiator.initiate(order.id, "easykash", test_db, correlation_ref="R2")
        assert retry.payment.status == PaymentStatus.PENDING.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeated_failures_lock_out_the_order(
        self, test_db, order, initiator, fake_gateway, test_settings
    ):
        fake_gateway.behaviour = "reject"
        for _ in range(test_settings.lockout_max_attempts):
            with pytest.raises(GatewayError):
                await initiator.initiate(order.id, "easykash", test_db)

        sent = len(fake_gateway.requests)
        with pytest.raises(AttemptsBlockedError) as exc_info:
            await initiator.initiate(order.id, "easykash", test_db)

        assert exc_info.value.retry_after_seconds > 0
        assert len(fake_gateway.requests) == sent

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_clears_failure_count(
        self, test_db, order, initiator, fake_gateway, attempt_guard
    ):
        fake_gateway.behaviour = "reject"
        with pytest.raises(GatewayError):
            await initiator.initiate(order.id, "easykash", test_db)

        fake_gateway.behaviour = "ok"
        await initiator.initiate(order.id, "easykash", test_db)

        status = await attempt_guard.is_blocked(f"initiate:{order.id}")
        assert status.attempts_remaining == 5


class TestCancel:
    """Customer abandons a pending attempt."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_pending_payment(self, test_db, order, initiator, order_store, load_events):
        started = await initiator.initiate(order.id, "easykash", test_db)

        cancelled = await initiator.cancel(started.payment.id, test_db)

        assert cancelled.status == PaymentStatus.FAILED.value
        assert cancelled.failure_reason == "cancelled_by_customer"
        assert (await order_store.get_order(order.id, test_db)).status == OrderStatus.PENDING.value
        events = await load_events(test_db, started.payment.id)
        assert events[-1].event_type == "payment.cancelled"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cannot_cancel_completed_payment(
        self, test_db, pending_payment, initiator, reconciler, make_callback
    ):
        await reconciler.reconcile(make_callback(), test_db)

        with pytest.raises(ConflictError, match="already completed"):
            await initiator.cancel(pending_payment.id, test_db)


class TestExpireStale:
    """Abandoned attempts stop blocking new ones."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_attempt_frees_the_order(
        self, test_db, order, pending_payment, initiator, test_settings
    ):
        await test_db.execute(
            update(Payment)
            .where(Payment.id == pending_payment.id)
            .values(created_at=utc_now() - timedelta(minutes=test_settings.payment_expiry_minutes + 1))
        )
        await test_db.commit()

        expired = await initiator.expire_stale_payments(test_db)

        assert [p.id for p in expired] == [pending_payment.id]
        retry = await initiator.initiate(order.id, "easykash", test_db, correlation_ref="R2")
        assert retry.payment.status == PaymentStatus.PENDING.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_after_expiry_is_flagged(
        self, test_db, order, pending_payment, reconciler, make_callback
    ):
        """A buyer who pays after the attempt expired shows up for review."""
        expired = await expire_stale_payments(
            test_db, expiry_minutes=30, now=utc_now() + timedelta(hours=1)
        )
        assert len(expired) == 1

        result = await reconciler.reconcile(make_callback(), test_db)

        assert result.outcome == "duplicate"
        assert result.payment_status == PaymentStatus.FAILED.value
        assert result.discrepancy == "late_outcome_mismatch"
