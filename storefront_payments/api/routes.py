"""
API routes for checkout, payments and gateway callbacks.

Handlers stay thin: services raise ``StorefrontError`` subclasses and the
application-wide handler turns them into responses.
"""
import json
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_payments.core.attempt_guard import AttemptGuard
from storefront_payments.core.discrepancies import DiscrepancyLog
from storefront_payments.core.exceptions import MalformedCallbackError, SignatureError
from storefront_payments.core.initiation import PaymentInitiator
from storefront_payments.core.orders import CustomerInfo, OrderLine, OrderStore
from storefront_payments.core.payments import PaymentStore
from storefront_payments.core.reconciler import CallbackReconciler
from storefront_payments.database.connection import get_db
from storefront_payments.monitoring.health import HealthCheck
from storefront_payments.monitoring.metrics import metrics

from .dependencies import (
    get_attempt_guard,
    get_client_address,
    get_discrepancy_log,
    get_initiator,
    get_order_store,
    get_payment_store,
    get_reconciler,
    get_user_id,
    require_admin,
)
from .schemas import (
    CallbackResponse,
    CreateOrderRequest,
    DiscrepancyListResponse,
    DiscrepancyResponse,
    ExpireStaleResponse,
    HealthCheckResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    ManualResolutionRequest,
    OrderResponse,
    OrderStatusUpdateRequest,
    PaymentListResponse,
    PaymentResponse,
    PaymentStatusResponse,
    RedirectStatusResponse,
    ResolveDiscrepancyRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
callback_router = APIRouter(tags=["callbacks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
monitoring_router = APIRouter(tags=["monitoring"])

health_check = HealthCheck()


@order_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Create an order priced from the catalog",
)
async def create_order(
    request: CreateOrderRequest,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[str] = Depends(get_user_id),
    order_store: OrderStore = Depends(get_order_store),
) -> Any:
    """Create an order with its line items."""
    order = await order_store.create_order(
        items=[OrderLine(product_id=item.product_id, quantity=item.quantity) for item in request.items],
        customer=CustomerInfo(
            name=request.customer_name,
            phone=request.customer_phone,
            email=request.customer_email,
            shipping_address=request.shipping_address,
            notes=request.notes,
        ),
        user_id=user_id,
        db=db,
    )
    return order


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get an order",
)
async def get_order(
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[str] = Depends(get_user_id),
    order_store: OrderStore = Depends(get_order_store),
) -> Any:
    """Get an order by ID."""
    return await order_store.get_order(order_id, db, user_id=user_id)


@order_router.get(
    "/{order_id}/payment-status",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Current order and latest payment status; never changes state",
)
async def get_order_payment_status(
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[str] = Depends(get_user_id),
    order_store: OrderStore = Depends(get_order_store),
    payment_store: PaymentStore = Depends(get_payment_store),
) -> Dict[str, Any]:
    """Status polling endpoint for the checkout page."""
    order = await order_store.get_order(order_id, db, user_id=user_id)
    payment = await payment_store.latest_for_order(order.id, db)

    response: Dict[str, Any] = {"order_id": order.id, "order_status": order.status}
    if payment is not None:
        response.update(
            payment_id=payment.id,
            payment_status=payment.status,
            method=payment.method,
            amount_cents=payment.amount_cents,
            external_ref=payment.external_ref,
            updated_at=payment.updated_at,
        )
    return response


@payment_router.post(
    "/initiate",
    response_model=InitiatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a payment",
    description="Create a pending payment and, for EasyKash, get the payment page URL",
)
async def initiate_payment(
    request: InitiatePaymentRequest,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[str] = Depends(get_user_id),
    initiator: PaymentInitiator = Depends(get_initiator),
) -> Dict[str, Any]:
    """Start a payment attempt for a pending order."""
    logger.info(
        "api_initiate_payment_request",
        order_id=str(request.order_id),
        method=request.method,
    )

    result = await initiator.initiate(
        order_id=request.order_id,
        method=request.method,
        db=db,
        amount_cents=request.amount_cents,
        user_id=user_id,
        correlation_ref=request.customer_reference,
        redirect_url=request.redirect_url,
    )
    payment = result.payment
    return {
        "payment_id": payment.id,
        "order_id": payment.order_id,
        "status": payment.status,
        "method": payment.method,
        "amount_cents": payment.amount_cents,
        "currency": payment.currency,
        "customer_reference": payment.correlation_ref,
        "redirect_url": result.redirect_url,
        "product_code": payment.gateway_product_code,
        "next_action": result.next_action,
    }


@payment_router.post(
    "/{payment_id}/cancel",
    response_model=PaymentResponse,
    summary="Cancel a pending payment",
)
async def cancel_payment(
    payment_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[str] = Depends(get_user_id),
    initiator: PaymentInitiator = Depends(get_initiator),
) -> Any:
    """Abandon a pending payment attempt; the order stays open."""
    return await initiator.cancel(payment_id, db, user_id=user_id)


@payment_router.get(
    "/redirect",
    response_model=RedirectStatusResponse,
    summary="Redirect landing status",
    description="Where the buyer returns from the gateway; reports stored state only",
)
async def payment_redirect(
    customer_reference: str = Query(..., alias="customerReference"),
    claimed_status: Optional[str] = Query(default=None, alias="status"),
    db: AsyncSession = Depends(get_db),
    payment_store: PaymentStore = Depends(get_payment_store),
    order_store: OrderStore = Depends(get_order_store),
) -> Dict[str, Any]:
    """
    Report stored payment state for the returning buyer.

    The redirect's own status is unsigned, so it is echoed back but never applied.
    """
    response: Dict[str, Any] = {
        "customer_reference": customer_reference,
        "claimed_status": claimed_status,
    }
    payment = await payment_store.get_by_correlation_ref(customer_reference, db)
    if payment is None:
        logger.info("payment_redirect_unmatched", customer_reference=customer_reference)
        return response

    order = await order_store.get_order(payment.order_id, db)
    response.update(
        payment_id=payment.id,
        payment_status=payment.status,
        order_id=order.id,
        order_status=order.status,
    )
    return response


async def _read_callback_payload(request: Request) -> Any:
    """The gateway posts either JSON or a urlencoded form."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/x-www-form-urlencoded"):
        form = await request.form()
        return {key: value for key, value in form.items()}

    body = await request.body()
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise MalformedCallbackError("Callback body is neither JSON nor form data")


async def _handle_callback(
    request: Request,
    db: AsyncSession,
    reconciler: CallbackReconciler,
    attempt_guard: AttemptGuard,
    client_address: str,
    source: str,
) -> Dict[str, Any]:
    """Shared by the dedicated callback path and the service root."""
    metrics.record_callback_received(source)
    guard_key = f"callback:{client_address}"

    await attempt_guard.ensure_allowed(guard_key, scope="callback")
    payload = await _read_callback_payload(request)

    try:
        result = await reconciler.reconcile(payload, db, source=source)
    except SignatureError:
        await attempt_guard.record_attempt(guard_key)
        raise

    return result.to_dict()


@callback_router.post(
    "/payments/easykash/callback",
    response_model=CallbackResponse,
    summary="EasyKash callback",
    description="Gateway payment notification",
)
async def easykash_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    reconciler: CallbackReconciler = Depends(get_reconciler),
    attempt_guard: AttemptGuard = Depends(get_attempt_guard),
    client_address: str = Depends(get_client_address),
) -> Dict[str, Any]:
    """Verify and apply a gateway callback."""
    return await _handle_callback(
        request, db, reconciler, attempt_guard, client_address, source="dedicated"
    )


@callback_router.post(
    "/",
    response_model=CallbackResponse,
    summary="Misdelivered EasyKash callback",
    include_in_schema=False,
)
async def root_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    reconciler: CallbackReconciler = Depends(get_reconciler),
    attempt_guard: AttemptGuard = Depends(get_attempt_guard),
    client_address: str = Depends(get_client_address),
) -> Dict[str, Any]:
    """The gateway sometimes posts callbacks to the service root."""
    logger.warning("callback_received_at_root")
    return await _handle_callback(
        request, db, reconciler, attempt_guard, client_address, source="root"
    )


@admin_router.get(
    "/payments",
    response_model=PaymentListResponse,
    summary="List payments",
)
async def list_payments(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    payment_status: Optional[str] = Query(default=None, alias="status"),
    order_id: Optional[UUID] = None,
    db: AsyncSession = Depends(get_db),
    payment_store: PaymentStore = Depends(get_payment_store),
) -> Dict[str, Any]:
    """Page through payment records, newest first."""
    payments, total = await payment_store.list_payments(
        db, page=page, limit=limit, status=payment_status, order_id=order_id
    )
    return {
        "payments": [PaymentResponse.model_validate(p) for p in payments],
        "total": total,
        "page": page,
        "limit": limit,
    }


@admin_router.post(
    "/payments/expire-stale",
    response_model=ExpireStaleResponse,
    summary="Expire stale payments",
    description="Fail pending payments older than the configured expiry",
)
async def expire_stale_payments(
    db: AsyncSession = Depends(get_db),
    initiator: PaymentInitiator = Depends(get_initiator),
) -> Dict[str, Any]:
    """Run one expiry sweep now."""
    expired = await initiator.expire_stale_payments(db)
    return {"expired_count": len(expired), "payment_ids": [p.id for p in expired]}


@admin_router.post(
    "/payments/{payment_id}/resolve",
    response_model=CallbackResponse,
    summary="Resolve a pending payment",
    description="Apply an operator-confirmed outcome through the callback path",
)
async def resolve_payment(
    payment_id: UUID,
    request: ManualResolutionRequest,
    db: AsyncSession = Depends(get_db),
    reconciler: CallbackReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """Manually finalize a pending payment."""
    logger.info("api_resolve_payment_request", payment_id=str(payment_id), status=request.status)
    result = await reconciler.apply_manual_outcome(
        payment_id,
        request.status,
        db,
        external_ref=request.external_ref,
        received_amount_cents=request.received_amount_cents,
        note=request.note,
    )
    return result.to_dict()


@admin_router.post(
    "/orders/{order_id}/status",
    response_model=OrderResponse,
    summary="Change order status",
)
async def update_order_status(
    order_id: UUID,
    request: OrderStatusUpdateRequest,
    db: AsyncSession = Depends(get_db),
    order_store: OrderStore = Depends(get_order_store),
) -> Any:
    """Move an order along its lifecycle (fulfilment or cancellation)."""
    order = await order_store.transition_status(order_id, request.status, db)
    await db.commit()
    return order


@admin_router.get(
    "/discrepancies",
    response_model=DiscrepancyListResponse,
    summary="List reconciliation discrepancies",
)
async def list_discrepancies(
    resolved: bool = False,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    discrepancies: DiscrepancyLog = Depends(get_discrepancy_log),
) -> Dict[str, Any]:
    """Open discrepancies by default."""
    items, total = await discrepancies.list(db, resolved=resolved, page=page, limit=limit)
    return {
        "discrepancies": [DiscrepancyResponse.model_validate(d) for d in items],
        "total": total,
        "page": page,
        "limit": limit,
    }


@admin_router.post(
    "/discrepancies/{discrepancy_id}/resolve",
    response_model=DiscrepancyResponse,
    summary="Resolve a discrepancy",
)
async def resolve_discrepancy(
    discrepancy_id: int,
    request: ResolveDiscrepancyRequest,
    db: AsyncSession = Depends(get_db),
    discrepancies: DiscrepancyLog = Depends(get_discrepancy_log),
) -> Any:
    """Close a discrepancy with a note."""
    return await discrepancies.resolve(discrepancy_id, request.note, db)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness() -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(response: Response) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "ready":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
