"""Pydantic request/response schemas for the storefront API.

These are external contracts (anti-corruption layer), separate from
internal Protean commands and aggregates.
"""

from datetime import date, datetime

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Shared sub-models
# ---------------------------------------------------------------------------
class AddressSchema(BaseModel):
    street: str
    city: str
    state: str | None = None
    postal_code: str
    country: str


class OrderLineSchema(BaseModel):
    product_id: str
    name: str
    quantity: int
    price: float
    discount: float
    final_price: float
    reservation_id: str | None = None


class PricingSchema(BaseModel):
    subtotal: float
    tax: float
    shipping: float
    discount: float
    total: float
    currency: str


class PaymentSummarySchema(BaseModel):
    payment_id: str | None = None
    method: str | None = None
    status: str | None = None
    transaction_id: str | None = None


class StatusChangeSchema(BaseModel):
    status: str
    timestamp: datetime
    note: str | None = None
    actor: str | None = None


# ---------------------------------------------------------------------------
# Order Request Schemas
# ---------------------------------------------------------------------------
class PlaceOrderRequest(BaseModel):
    user_id: str
    shipping_address: AddressSchema
    billing_address: AddressSchema | None = None
    payment_method: str | None = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": "user-001",
                    "shipping_address": {
                        "street": "1 Main St",
                        "city": "Springfield",
                        "state": "IL",
                        "postal_code": "62701",
                        "country": "US",
                    },
                    "payment_method": "card",
                }
            ]
        }
    }


class UpdateStatusRequest(BaseModel):
    status: str
    note: str | None = None
    actor: str = "admin"
    carrier: str | None = None
    tracking_number: str | None = None
    estimated_delivery: date | None = None


class CancelOrderRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    user_id: str | None = None


# ---------------------------------------------------------------------------
# Payment Request Schemas
# ---------------------------------------------------------------------------
class InitiatePaymentRequest(BaseModel):
    order_id: str
    gateway: str  # card, wallet
    method: str | None = None
    amount: float = Field(gt=0)
    currency: str = "USD"


class RefundRequest(BaseModel):
    amount: float | None = Field(default=None, gt=0)
    reason: str = "requested_by_customer"


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------
class OrderResponse(BaseModel):
    order_id: str
    order_number: str
    user_id: str
    status: str
    items: list[OrderLineSchema]
    pricing: PricingSchema
    payment: PaymentSummarySchema | None = None
    shipping_address: AddressSchema
    billing_address: AddressSchema | None = None
    status_history: list[StatusChangeSchema]
    carrier: str | None = None
    tracking_number: str | None = None
    estimated_delivery: date | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]
    total: int
    page: int
    limit: int
    pages: int


class PaymentHandleResponse(BaseModel):
    payment_id: str
    order_id: str
    gateway: str
    status: str
    external_ref: str | None = None
    client_secret: str | None = None
    approval_url: str | None = None


class PaymentVerificationResponse(BaseModel):
    payment_id: str
    order_id: str
    gateway: str
    status: str
    amount: float
    currency: str
    verified: bool
    outcome: str | None = None


class RefundResponse(BaseModel):
    payment_id: str
    refund_id: str
    refund_ref: str | None = None
    status: str
    amount: float


class WebhookAckResponse(BaseModel):
    received: bool
    duplicate: bool
    outcome: str | None = None


class SweepResponse(BaseModel):
    processed: int


class StockLevelResponse(BaseModel):
    product_id: str
    on_hand: int
    reserved: int
    available: int


class LowStockResponse(BaseModel):
    threshold: int
    products: list[StockLevelResponse]
