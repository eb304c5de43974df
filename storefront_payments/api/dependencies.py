"""
FastAPI dependency providers.

Long-lived collaborators (gateway HTTP client, attempt guard) are built once
per process; stores are stateless and built per request.
"""
import hmac
from functools import lru_cache
from typing import Optional, Sequence

from fastapi import Depends, HTTPException, Request, status

from storefront_payments.config import get_settings
from storefront_payments.core.attempt_guard import AttemptGuard, build_attempt_guard
from storefront_payments.core.discrepancies import DiscrepancyLog
from storefront_payments.core.initiation import PaymentInitiator
from storefront_payments.core.orders import OrderStore
from storefront_payments.core.payments import PaymentStore
from storefront_payments.core.reconciler import CallbackReconciler
from storefront_payments.database.connection import get_session_factory
from storefront_payments.integrations.easykash import GatewayClient


def get_user_id(request: Request) -> Optional[str]:
    """Authenticated user id set by the upstream auth layer, if any."""
    user_id = request.headers.get(get_settings().user_id_header)
    return user_id.strip() if user_id and user_id.strip() else None


def resolve_client_address(
    peer: Optional[str], forwarded_for: Optional[str], trusted_proxies: Sequence[str]
) -> str:
    """
    Address of the caller, looking through trusted reverse proxies.

    X-Forwarded-For is only read when the direct peer is a trusted proxy. The
    header is walked from the right and the first hop that is not itself a
    trusted proxy is the client; hops further left are caller-supplied.
    """
    if not peer:
        return "unknown"
    if peer not in trusted_proxies or not forwarded_for:
        return peer
    hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted_proxies:
            return hop
    return hops[0] if hops else peer


def get_client_address(request: Request) -> str:
    return resolve_client_address(
        request.client.host if request.client else None,
        request.headers.get("x-forwarded-for"),
        get_settings().get_trusted_proxies_list(),
    )


def require_admin(request: Request) -> None:
    """Reject requests without the admin API key."""
    settings = get_settings()
    supplied = request.headers.get(settings.api_key_header, "")
    if not supplied or not hmac.compare_digest(
        supplied.encode("utf-8"), settings.admin_api_key.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


@lru_cache()
def get_gateway_client() -> GatewayClient:
    return GatewayClient(get_settings())


@lru_cache()
def get_attempt_guard() -> AttemptGuard:
    return build_attempt_guard(get_settings(), session_factory=get_session_factory())


def get_order_store() -> OrderStore:
    return OrderStore(get_settings().default_currency)


def get_payment_store() -> PaymentStore:
    return PaymentStore()


def get_discrepancy_log() -> DiscrepancyLog:
    return DiscrepancyLog()


def get_initiator(
    gateway_client: GatewayClient = Depends(get_gateway_client),
    attempt_guard: AttemptGuard = Depends(get_attempt_guard),
    order_store: OrderStore = Depends(get_order_store),
    payment_store: PaymentStore = Depends(get_payment_store),
) -> PaymentInitiator:
    return PaymentInitiator(
        gateway_client=gateway_client,
        attempt_guard=attempt_guard,
        order_store=order_store,
        payment_store=payment_store,
    )


def get_reconciler(
    gateway_client: GatewayClient = Depends(get_gateway_client),
    order_store: OrderStore = Depends(get_order_store),
    payment_store: PaymentStore = Depends(get_payment_store),
    discrepancies: DiscrepancyLog = Depends(get_discrepancy_log),
) -> CallbackReconciler:
    return CallbackReconciler(
        gateway_client=gateway_client,
        payment_store=payment_store,
        order_store=order_store,
        discrepancies=discrepancies,
    )
