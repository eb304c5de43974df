"""
EasyKash gateway client with retry logic and callback verification.

Implements:
- Direct-pay initiation requests built from the stored order and payment
- Bounded timeouts; only requests that never reached the gateway are retried
- Circuit breaker pattern
- HMAC-SHA512 callback signature verification
"""
import hashlib
import hmac
import re
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from storefront_payments.config import Settings, get_settings
from storefront_payments.core.exceptions import (
    GatewayError,
    MalformedCallbackError,
    SignatureError,
    UpstreamTimeoutError,
    ValidationError,
)
from storefront_payments.database.models import Order, Payment
from storefront_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

INITIATION_PATH = "/api/directpayv1/pay"

# Fields covered by the callback signature, concatenated in this order with no separator
SIGNATURE_FIELDS = (
    "ProductCode",
    "Amount",
    "ProductType",
    "PaymentMethod",
    "status",
    "easykashRef",
    "customerReference",
)

_PRODUCT_CODE_PATTERN = re.compile(r"DirectPayV1/([^/?]+)")
_SIGNATURE_PATTERN = re.compile(r"[0-9a-fA-F]+")


class CallbackStatus(str, Enum):
    """Outcome a callback claims, normalized from the gateway's status text."""

    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"


STATUS_ALIASES: Dict[str, CallbackStatus] = {
    "PAID": CallbackStatus.COMPLETED,
    "SUCCESS": CallbackStatus.COMPLETED,
    "COMPLETED": CallbackStatus.COMPLETED,
    "DELIVERED": CallbackStatus.COMPLETED,
    "FAILED": CallbackStatus.FAILED,
    "DECLINED": CallbackStatus.FAILED,
    "CANCELED": CallbackStatus.FAILED,
    "CANCELLED": CallbackStatus.FAILED,
    "EXPIRED": CallbackStatus.FAILED,
    "PENDING": CallbackStatus.PENDING,
    "NEW": CallbackStatus.PENDING,
}


def format_amount(amount_cents: int) -> str:
    """Render minor units the way the gateway expects (``15000`` -> ``"150.00"``)."""
    return f"{Decimal(amount_cents) / 100:.2f}"


def parse_amount(value: Any) -> int:
    """
    Parse a gateway amount into minor units.

    Raises:
        MalformedCallbackError: If the value is missing, not a number or has
            more than two decimal places
    """
    if value is None or isinstance(value, bool):
        raise MalformedCallbackError("Callback amount is missing")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise MalformedCallbackError(f"Callback amount is not a number: {value!r}")
    if not amount.is_finite() or amount < 0:
        raise MalformedCallbackError(f"Callback amount is invalid: {value!r}")

    cents = amount * 100
    if cents != cents.to_integral_value():
        raise MalformedCallbackError(f"Callback amount has too many decimals: {value!r}")
    return int(cents)


def normalize_status(value: Any) -> CallbackStatus:
    """Map the gateway status text onto a CallbackStatus."""
    if not isinstance(value, str) or not value.strip():
        raise MalformedCallbackError("Callback status is missing")
    try:
        return STATUS_ALIASES[value.strip().upper()]
    except KeyError:
        raise MalformedCallbackError(f"Unknown callback status: {value}")


def signature_base(payload: Mapping[str, Any]) -> str:
    """Concatenate the signed fields; absent fields contribute nothing."""
    parts = []
    for name in SIGNATURE_FIELDS:
        value = payload.get(name)
        parts.append("" if value is None else str(value))
    return "".join(parts)


def compute_signature(payload: Mapping[str, Any], secret: str) -> str:
    """HMAC-SHA512 hex digest over the canonical field concatenation."""
    return hmac.new(
        secret.encode("utf-8"),
        signature_base(payload).encode("utf-8"),
        hashlib.sha512,
    ).hexdigest()


def extract_product_code(redirect_url: Optional[str]) -> Optional[str]:
    """Pull the gateway product code out of a direct-pay redirect URL."""
    if not redirect_url:
        return None
    match = _PRODUCT_CODE_PATTERN.search(redirect_url)
    return match.group(1) if match else None


@dataclass(frozen=True)
class GatewayRequest:
    """Outbound initiation request, ready to send."""

    url: str
    payload: Dict[str, Any]
    headers: Dict[str, str] = field(repr=False)


@dataclass(frozen=True)
class GatewayResponse:
    """What the gateway returned for a successful initiation."""

    redirect_url: str
    product_code: Optional[str]
    raw: Dict[str, Any]


@dataclass(frozen=True)
class VerifiedCallback:
    """A callback whose signature has been checked."""

    status: CallbackStatus
    raw_status: str
    amount_cents: int
    correlation_ref: Optional[str]
    product_code: Optional[str]
    external_ref: Optional[str]
    provider_method: Optional[str]
    voucher: Optional[str]
    buyer_email: Optional[str]
    timestamp: Optional[str]
    payload: Dict[str, Any]


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Stops sending initiation requests for a while when the gateway keeps
    failing at the transport level.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                metrics.record_gateway_error("circuit_open")
                raise GatewayError("Payment gateway is temporarily unavailable")

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class GatewayClient:
    """
    EasyKash client.

    Features:
    - Initiation request built only from persisted order/payment values
    - Bounded timeout, tenacity retry for connection failures only
    - Circuit breaker pattern
    - Constant-time callback signature check
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_wait_seconds: float = 0.5,
    ) -> None:
        self.settings = settings or get_settings()
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.gateway_timeout_seconds)
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.retry_wait_seconds = retry_wait_seconds

        logger.info(
            "gateway_client_initialized",
            api_url=self.settings.gateway_api_url,
            timeout_seconds=self.settings.gateway_timeout_seconds,
        )

    @property
    def initiation_url(self) -> str:
        base = self.settings.gateway_api_url.rstrip("/")
        if base.lower().endswith(INITIATION_PATH):
            return base
        return f"{base}{INITIATION_PATH}"

    def build_initiation_request(
        self,
        order: Order,
        payment: Payment,
        redirect_url: Optional[str] = None,
    ) -> GatewayRequest:
        """
        Translate a pending payment into the gateway's direct-pay request.

        Amount and currency come from the stored payment record and must
        agree with the order, so a tampered client price never reaches the
        gateway.

        Raises:
            ValidationError: If the payment does not belong to the order or
                its amount/currency differs from the order's
        """
        if payment.order_id != order.id:
            raise ValidationError("Payment does not belong to this order")
        if payment.amount_cents != order.total_cents:
            raise ValidationError("Payment amount does not match order total")
        if payment.currency.upper() != order.currency.upper():
            raise ValidationError("Payment currency does not match order currency")

        payload = {
            "amount": format_amount(payment.amount_cents),
            "currency": payment.currency.upper(),
            "paymentOptions": self.settings.payment_option_codes,
            "cashExpiry": self.settings.gateway_cash_expiry_hours,
            "name": order.customer_name,
            "email": order.customer_email or "",
            "mobile": order.customer_phone or "",
            "redirectUrl": redirect_url or self.settings.gateway_redirect_url,
            "callbackUrl": self.settings.gateway_callback_url,
            "customerReference": payment.correlation_ref,
        }
        headers = {
            "Content-Type": "application/json",
            "authorization": self.settings.gateway_api_key,
        }
        return GatewayRequest(url=self.initiation_url, payload=payload, headers=headers)

    async def _post(self, request: GatewayRequest) -> httpx.Response:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(httpx.ConnectError),
            stop=stop_after_attempt(max(1, self.settings.gateway_connect_retries)),
            wait=wait_exponential(multiplier=self.retry_wait_seconds, max=8),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "gateway_request_retry",
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self._http.post(
                    request.url, json=request.payload, headers=request.headers
                )
        raise GatewayError("Payment gateway request was not attempted")

    async def send_initiation(self, request: GatewayRequest) -> GatewayResponse:
        """
        Send an initiation request.

        Returns:
            GatewayResponse: Redirect URL and product code

        Raises:
            UpstreamTimeoutError: The gateway did not answer in time; whether
                it accepted the request is unknown
            GatewayError: Connection failed after retries, circuit open, or
                the gateway rejected the request
        """
        start_time = time.monotonic()
        reference = request.payload.get("customerReference")
        logger.info(
            "gateway_initiation_sending",
            customer_reference=reference,
            amount=request.payload.get("amount"),
        )

        try:
            response = await self.circuit_breaker.call(self._post, request)
        except httpx.TimeoutException:
            metrics.record_gateway_error("timeout")
            metrics.record_gateway_call("initiate", "timeout", time.monotonic() - start_time)
            logger.warning("gateway_initiation_timeout", customer_reference=reference)
            raise UpstreamTimeoutError("Payment gateway did not respond in time")
        except httpx.TransportError as e:
            metrics.record_gateway_error("connect")
            metrics.record_gateway_call("initiate", "error", time.monotonic() - start_time)
            logger.error(
                "gateway_initiation_unreachable",
                customer_reference=reference,
                error=str(e),
            )
            raise GatewayError("Payment gateway is unreachable")

        duration = time.monotonic() - start_time
        metrics.record_gateway_call("initiate", str(response.status_code), duration)

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.is_error:
            metrics.record_gateway_error("rejected")
            logger.error(
                "gateway_initiation_rejected",
                customer_reference=reference,
                status_code=response.status_code,
                gateway_message=body.get("message"),
            )
            raise GatewayError(
                f"Payment gateway rejected the request: "
                f"{body.get('message') or response.reason_phrase}"
            )

        redirect_url = body.get("redirectUrl") or body.get("paymentUrl")
        if not redirect_url:
            metrics.record_gateway_error("rejected")
            logger.error(
                "gateway_initiation_missing_redirect",
                customer_reference=reference,
                status_code=response.status_code,
            )
            raise GatewayError("Payment gateway returned no redirect URL")

        product_code = extract_product_code(redirect_url)
        logger.info(
            "gateway_initiation_accepted",
            customer_reference=reference,
            product_code=product_code,
            duration_seconds=round(duration, 3),
        )
        return GatewayResponse(redirect_url=redirect_url, product_code=product_code, raw=body)

    def verify_callback(self, raw_payload: Any) -> VerifiedCallback:
        """
        Verify and parse an inbound callback.

        The signature is checked before anything else is read. A missing
        signature or secret is a failure, never a skipped check.

        Raises:
            SignatureError: Signature missing or wrong
            MalformedCallbackError: Signed payload is not usable
        """
        if not isinstance(raw_payload, Mapping):
            raise SignatureError("Callback payload is not an object")

        supplied = raw_payload.get("signatureHash")
        secret = self.settings.gateway_hmac_secret
        if not secret:
            raise SignatureError("Callback secret is not configured")
        if not isinstance(supplied, str) or not supplied:
            raise SignatureError("Callback signature is missing")

        supplied = supplied.strip()
        if not _SIGNATURE_PATTERN.fullmatch(supplied):
            raise SignatureError("Callback signature is not hex encoded")

        expected = compute_signature(raw_payload, secret)
        if not hmac.compare_digest(expected.lower().encode(), supplied.lower().encode()):
            raise SignatureError("Callback signature does not match")

        status = normalize_status(raw_payload.get("status"))
        amount_cents = parse_amount(raw_payload.get("Amount"))

        def _text(name: str) -> Optional[str]:
            value = raw_payload.get(name)
            if value is None or value == "":
                return None
            return str(value)

        return VerifiedCallback(
            status=status,
            raw_status=str(raw_payload.get("status")),
            amount_cents=amount_cents,
            correlation_ref=_text("customerReference"),
            product_code=_text("ProductCode"),
            external_ref=_text("easykashRef"),
            provider_method=_text("PaymentMethod"),
            voucher=_text("voucher"),
            buyer_email=_text("BuyerEmail"),
            timestamp=_text("Timestamp"),
            payload={k: v for k, v in raw_payload.items() if k != "signatureHash"},
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()
