"""
Race condition tests.

Each concurrent actor gets its own session, the way separate requests would.
"""
import asyncio

import pytest
from sqlalchemy import func, select

from storefront_payments.core.exceptions import ConflictError
from storefront_payments.core.orders import OrderStatus
from storefront_payments.core.payments import PaymentMethod, PaymentStatus
from storefront_payments.database.models import Order, PaymentEvent, ReconciliationDiscrepancy


class TestRaceConditions:
    """Test race condition prevention."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_success_callbacks_apply_once(
        self, session_factory, order, pending_payment, reconciler, make_callback
    ):
        """
        Two deliveries of the same success callback race.

        Expected: one is processed, the other is a duplicate, and exactly one
        completion event exists.
        """
        payload = make_callback()

        async def deliver():
            async with session_factory() as session:
                return await reconciler.reconcile(payload, session)

        results = await asyncio.gather(deliver(), deliver())

        outcomes = sorted(r.outcome for r in results)
        assert outcomes == ["duplicate", "processed"]
        assert all(r.payment_status == PaymentStatus.COMPLETED.value for r in results)

        async with session_factory() as session:
            events = await session.scalar(
                select(func.count())
                .select_from(PaymentEvent)
                .where(PaymentEvent.event_type == "payment.completed")
            )
            order_status = await session.scalar(
                select(Order.status).where(Order.id == order.id)
            )
        assert events == 1
        assert order_status == OrderStatus.PAID.value

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_conflicting_callbacks_first_writer_wins(
        self, session_factory, pending_payment, reconciler, make_callback
    ):
        """
        A success and a failure for the same attempt race.

        Expected: one outcome is stored and the loser is flagged as a
        late contradicting outcome.
        """

        async def deliver(status):
            async with session_factory() as session:
                return await reconciler.reconcile(make_callback(status=status), session)

        results = await asyncio.gather(deliver("PAID"), deliver("FAILED"))

        stored = {r.payment_status for r in results}
        assert len(stored) == 1
        assert sorted(r.outcome for r in results) == ["duplicate", "processed"]

        async with session_factory() as session:
            discrepancies = await session.scalar(
                select(func.count()).select_from(ReconciliationDiscrepancy)
            )
        assert discrepancies == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_initiations_create_one_pending_payment(
        self, session_factory, order, payment_store
    ):
        """
        Two checkout tabs start a payment for the same order.

        Expected: exactly one pending attempt is created.
        """

        async def start(reference):
            async with session_factory() as session:
                try:
                    payment = await payment_store.create_pending_payment(
                        order_id=order.id,
                        method=PaymentMethod.EASYKASH,
                        amount_cents=order.total_cents,
                        currency=order.currency,
                        correlation_ref=reference,
                        db=session,
                    )
                    await session.commit()
                    return payment.id
                except ConflictError:
                    return None

        results = await asyncio.gather(start("TAB-1"), start("TAB-2"))

        assert sum(1 for r in results if r is not None) == 1
