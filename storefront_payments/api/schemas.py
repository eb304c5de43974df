"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderItemRequest(BaseModel):
    """A product and quantity in a checkout request."""

    product_id: UUID = Field(..., description="Catalog product ID")
    quantity: int = Field(..., gt=0, description="Quantity to order")


class CreateOrderRequest(BaseModel):
    """
    Request schema for creating an order.

    There is no total field: the server prices the order from the catalog.
    """

    items: List[OrderItemRequest] = Field(..., min_length=1, description="Ordered products")
    customer_name: str = Field(..., min_length=1, max_length=255, description="Buyer name")
    customer_phone: str = Field(..., min_length=3, max_length=50, description="Buyer phone")
    customer_email: Optional[str] = Field(default=None, max_length=255, description="Buyer email")
    shipping_address: Optional[str] = Field(default=None, description="Delivery address")
    notes: Optional[str] = Field(default=None, description="Order notes")

    @field_validator("customer_email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        """Light sanity check; the gateway does its own validation."""
        if v is not None and v and "@" not in v:
            raise ValueError("Invalid email address")
        return v or None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "items": [
                        {"product_id": "123e4567-e89b-12d3-a456-426614174000", "quantity": 2}
                    ],
                    "customer_name": "Mona Adel",
                    "customer_phone": "01000000000",
                    "customer_email": "mona@example.com",
                    "shipping_address": "12 Tahrir St, Cairo",
                }
            ]
        }
    }


class OrderItemResponse(BaseModel):
    """Order line item."""

    model_config = ConfigDict(from_attributes=True)

    product_id: UUID
    product_name: str
    unit_price_cents: int
    quantity: int
    line_total_cents: int


class OrderResponse(BaseModel):
    """Response schema for an order."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Order ID")
    user_id: Optional[str] = Field(default=None, description="Owner, absent for guest orders")
    status: str = Field(..., description="Order status")
    total_cents: int = Field(..., description="Order total in minor units")
    currency: str = Field(..., description="Currency code")
    customer_name: str
    customer_phone: str
    customer_email: Optional[str] = None
    shipping_address: Optional[str] = None
    notes: Optional[str] = None
    items: List[OrderItemResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class PaymentResponse(BaseModel):
    """Response schema for a payment record."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Payment ID")
    order_id: UUID = Field(..., description="Order ID")
    method: str = Field(..., description="Payment method")
    amount_cents: int = Field(..., description="Expected amount in minor units")
    currency: str = Field(..., description="Currency code")
    status: str = Field(..., description="Payment status")
    correlation_ref: str = Field(..., description="Reference echoed by the gateway")
    gateway_product_code: Optional[str] = None
    external_ref: Optional[str] = Field(default=None, description="Gateway transaction reference")
    received_amount_cents: Optional[int] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    finalized_at: Optional[datetime] = None


class PaymentStatusResponse(BaseModel):
    """Current payment state of an order."""

    order_id: UUID
    order_status: str
    payment_id: Optional[UUID] = None
    payment_status: Optional[str] = Field(
        default=None, description="Latest payment attempt status, absent if none"
    )
    method: Optional[str] = None
    amount_cents: Optional[int] = None
    external_ref: Optional[str] = None
    updated_at: Optional[datetime] = None


class InitiatePaymentRequest(BaseModel):
    """Request schema for starting a payment."""

    order_id: UUID = Field(..., description="Order to pay")
    method: Literal["easykash", "cash_on_delivery"] = Field(
        default="easykash", description="Payment method"
    )
    amount_cents: Optional[int] = Field(
        default=None, gt=0, description="Amount shown to the buyer; must match the order total"
    )
    customer_reference: Optional[str] = Field(
        default=None, max_length=255, description="Correlation reference (generated if omitted)"
    )
    redirect_url: Optional[str] = Field(
        default=None, description="Where the buyer lands after paying"
    )


class InitiatePaymentResponse(BaseModel):
    """Response schema for a started payment."""

    payment_id: UUID
    order_id: UUID
    status: str = Field(..., description="Payment status (pending)")
    method: str
    amount_cents: int
    currency: str
    customer_reference: str
    redirect_url: Optional[str] = Field(default=None, description="Gateway payment page")
    product_code: Optional[str] = None
    next_action: str = Field(..., description="redirect or await_delivery")


class RedirectStatusResponse(BaseModel):
    """What the buyer's redirect landing page should show."""

    customer_reference: str
    claimed_status: Optional[str] = Field(
        default=None, description="Status in the redirect query; informational only"
    )
    payment_id: Optional[UUID] = None
    payment_status: Optional[str] = None
    order_id: Optional[UUID] = None
    order_status: Optional[str] = None


class CallbackResponse(BaseModel):
    """Acknowledgment returned to the gateway."""

    status: str = Field(..., description="Always ok when acknowledged")
    outcome: str = Field(..., description="processed, duplicate, ignored or pending")
    payment_id: Optional[str] = None
    payment_status: Optional[str] = None
    order_status: Optional[str] = None
    discrepancy: Optional[str] = None


class ManualResolutionRequest(BaseModel):
    """Operator decision for a pending payment."""

    status: Literal["completed", "failed"]
    external_ref: Optional[str] = Field(default=None, max_length=255)
    received_amount_cents: Optional[int] = Field(default=None, ge=0)
    note: Optional[str] = None


class OrderStatusUpdateRequest(BaseModel):
    """Admin order status change."""

    status: Literal["paid", "confirmed", "shipped", "delivered", "cancelled"]


class ExpireStaleResponse(BaseModel):
    """Result of an expiry sweep."""

    expired_count: int
    payment_ids: List[UUID]


class PaymentListResponse(BaseModel):
    """Page of payment records."""

    payments: List[PaymentResponse]
    total: int
    page: int
    limit: int


class DiscrepancyResponse(BaseModel):
    """Reconciliation discrepancy awaiting or after review."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    payment_id: UUID
    order_id: UUID
    kind: str
    expected_amount_cents: Optional[int] = None
    received_amount_cents: Optional[int] = None
    details: Optional[Dict[str, Any]] = None
    resolved: bool
    resolution_note: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None


class DiscrepancyListResponse(BaseModel):
    """Page of discrepancies."""

    discrepancies: List[DiscrepancyResponse]
    total: int
    page: int
    limit: int


class ResolveDiscrepancyRequest(BaseModel):
    """Operator note closing a discrepancy."""

    note: str = Field(..., min_length=1, description="What was done to reconcile")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    """Error body for every handled failure."""

    error: str = Field(..., description="Machine-readable error kind")
    message: str = Field(..., description="Human-readable message")
