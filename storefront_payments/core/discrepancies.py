"""
Discrepancy log for payment outcomes that could not be applied cleanly.

Rows are written in the caller's transaction, next to the payment change
they describe, and stay open until an operator resolves them.
"""
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_payments.core.exceptions import ConflictError, NotFoundError
from storefront_payments.database.models import ReconciliationDiscrepancy, utc_now
from storefront_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class DiscrepancyKind(str, Enum):
    """Why a payment outcome needs manual review."""

    AMOUNT_MISMATCH = "amount_mismatch"
    ORDER_TRANSITION_FAILED = "order_transition_failed"
    LATE_OUTCOME_MISMATCH = "late_outcome_mismatch"


class DiscrepancyLog:
    """Writes and resolves reconciliation discrepancies."""

    async def record(
        self,
        db: AsyncSession,
        kind: DiscrepancyKind,
        payment_id: uuid.UUID,
        order_id: uuid.UUID,
        expected_amount_cents: Optional[int] = None,
        received_amount_cents: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        once_per_payment: bool = False,
    ) -> Optional[ReconciliationDiscrepancy]:
        """
        Add a discrepancy to the current transaction.

        With ``once_per_payment`` nothing is written when the payment already
        has a discrepancy of the same kind, and None is returned.
        """
        if once_per_payment:
            existing = await db.execute(
                select(ReconciliationDiscrepancy.id).where(
                    ReconciliationDiscrepancy.payment_id == payment_id,
                    ReconciliationDiscrepancy.kind == kind.value,
                )
            )
            if existing.first() is not None:
                return None

        discrepancy = ReconciliationDiscrepancy(
            payment_id=payment_id,
            order_id=order_id,
            kind=kind.value,
            expected_amount_cents=expected_amount_cents,
            received_amount_cents=received_amount_cents,
            details=details,
        )
        db.add(discrepancy)

        logger.warning(
            "reconciliation_discrepancy_recorded",
            kind=kind.value,
            payment_id=str(payment_id),
            order_id=str(order_id),
            expected_amount_cents=expected_amount_cents,
            received_amount_cents=received_amount_cents,
        )
        metrics.record_discrepancy(kind.value)
        return discrepancy

    async def list(
        self,
        db: AsyncSession,
        resolved: Optional[bool] = False,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[ReconciliationDiscrepancy], int]:
        """Page through discrepancies, newest first; ``resolved=None`` lists all."""
        conditions = []
        if resolved is not None:
            conditions.append(ReconciliationDiscrepancy.resolved == resolved)

        total = await db.scalar(
            select(func.count(ReconciliationDiscrepancy.id)).where(*conditions)
        )
        result = await db.execute(
            select(ReconciliationDiscrepancy)
            .where(*conditions)
            .order_by(ReconciliationDiscrepancy.created_at.desc(), ReconciliationDiscrepancy.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), int(total or 0)

    async def resolve(
        self, discrepancy_id: int, note: str, db: AsyncSession
    ) -> ReconciliationDiscrepancy:
        """Mark a discrepancy resolved and commit."""
        discrepancy = await db.get(ReconciliationDiscrepancy, discrepancy_id)
        if discrepancy is None:
            raise NotFoundError(f"Discrepancy {discrepancy_id} not found")
        if discrepancy.resolved:
            raise ConflictError(f"Discrepancy {discrepancy_id} is already resolved")

        discrepancy.resolved = True
        discrepancy.resolution_note = note
        discrepancy.resolved_at = utc_now()
        await db.commit()

        logger.info(
            "reconciliation_discrepancy_resolved",
            discrepancy_id=discrepancy_id,
            payment_id=str(discrepancy.payment_id),
        )
        return discrepancy
