"""FastAPI routes for the storefront: orders, payments, inventory and maintenance.

Endpoints are plain ``def`` functions: FastAPI runs them in its threadpool,
so keyed locks and blocking gateway calls never stall the event loop.
"""

from dataclasses import asdict

from fastapi import APIRouter, Header, Query, Request
from starlette.concurrency import run_in_threadpool

from storefront.api.schemas import (
    CancelOrderRequest,
    InitiatePaymentRequest,
    LowStockResponse,
    OrderListResponse,
    OrderResponse,
    PaymentHandleResponse,
    PaymentVerificationResponse,
    PlaceOrderRequest,
    RefundRequest,
    RefundResponse,
    StockLevelResponse,
    SweepResponse,
    UpdateStatusRequest,
    WebhookAckResponse,
)
from storefront.inventory import manager as inventory
from storefront.inventory.expiry import expire_stale_reservations
from storefront.ordering.cancellation import cancel_order as cancel_order_use_case
from storefront.ordering.order import Order
from storefront.ordering.placement import place_order as place_order_use_case
from storefront.ordering.queries import get_order as get_order_query
from storefront.ordering.queries import list_all_orders as list_all_orders_query
from storefront.ordering.queries import list_orders as list_orders_query
from storefront.ordering.status import update_status
from storefront.payments import orchestrator


def _address(value) -> dict | None:
    if value is None:
        return None
    return {
        "street": value.street,
        "city": value.city,
        "state": value.state,
        "postal_code": value.postal_code,
        "country": value.country,
    }


def order_response(order: Order) -> OrderResponse:
    payment = order.payment
    return OrderResponse(
        order_id=str(order.id),
        order_number=order.order_number,
        user_id=str(order.user_id),
        status=order.status,
        items=[
            {
                "product_id": str(item.product_id),
                "name": item.name,
                "quantity": item.quantity,
                "price": item.price,
                "discount": item.discount,
                "final_price": item.final_price,
                "reservation_id": str(item.reservation_id) if item.reservation_id else None,
            }
            for item in order.items
        ],
        pricing={
            "subtotal": order.pricing.subtotal,
            "tax": order.pricing.tax,
            "shipping": order.pricing.shipping,
            "discount": order.pricing.discount,
            "total": order.pricing.total,
            "currency": order.pricing.currency,
        },
        payment={
            "payment_id": str(payment.payment_id) if payment.payment_id else None,
            "method": payment.method,
            "status": payment.status,
            "transaction_id": payment.transaction_id,
        }
        if payment
        else None,
        shipping_address=_address(order.shipping_address),
        billing_address=_address(order.billing_address),
        status_history=[
            {"status": change.status, "timestamp": change.timestamp, "note": change.note, "actor": change.actor}
            for change in order.history
        ],
        carrier=order.carrier,
        tracking_number=order.tracking_number,
        estimated_delivery=order.estimated_delivery,
        shipped_at=order.shipped_at,
        delivered_at=order.delivered_at,
        cancelled_at=order.cancelled_at,
        cancellation_reason=order.cancellation_reason,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


def _order_list(result: dict) -> OrderListResponse:
    return OrderListResponse(
        orders=[order_response(order) for order in result["orders"]],
        total=result["total"],
        page=result["page"],
        limit=result["limit"],
        pages=result["pages"],
    )


# ---------------------------------------------------------------------------
# Order Router
# ---------------------------------------------------------------------------
order_router = APIRouter(prefix="/orders", tags=["orders"])


@order_router.post("", status_code=201, response_model=OrderResponse)
def place_order(
    body: PlaceOrderRequest,
    idempotency_key: str | None = Header(default=None),
) -> OrderResponse:
    """Turn the user's cart into a pending order."""
    order = place_order_use_case(
        user_id=body.user_id,
        shipping_address=body.shipping_address.model_dump(),
        billing_address=body.billing_address.model_dump() if body.billing_address else None,
        payment_method=body.payment_method,
        idempotency_key=idempotency_key,
    )
    return order_response(order)


@order_router.get("", response_model=OrderListResponse)
def list_orders(
    user_id: str,
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> OrderListResponse:
    return _order_list(list_orders_query(user_id, status=status, page=page, limit=limit))


@order_router.get("/admin/all", response_model=OrderListResponse)
def list_all_orders(
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> OrderListResponse:
    """Every user's orders, for back-office views."""
    return _order_list(list_all_orders_query(status=status, page=page, limit=limit))


@order_router.get("/{order_id}", response_model=OrderResponse)
def get_order(order_id: str, user_id: str | None = None) -> OrderResponse:
    return order_response(get_order_query(order_id, user_id=user_id))


@order_router.patch("/{order_id}/status", response_model=OrderResponse)
def change_status(order_id: str, body: UpdateStatusRequest) -> OrderResponse:
    """Move an order along fulfillment: processing, shipped, delivered, completed."""
    order = update_status(
        order_id,
        body.status,
        note=body.note,
        actor=body.actor,
        carrier=body.carrier,
        tracking_number=body.tracking_number,
        estimated_delivery=body.estimated_delivery,
    )
    return order_response(order)


@order_router.post("/{order_id}/cancel", response_model=OrderResponse)
def cancel_order(order_id: str, body: CancelOrderRequest) -> OrderResponse:
    actor = "customer" if body.user_id else "admin"
    order = cancel_order_use_case(order_id, reason=body.reason, actor=actor, user_id=body.user_id)
    return order_response(order)


# ---------------------------------------------------------------------------
# Payment Router
# ---------------------------------------------------------------------------
payment_router = APIRouter(prefix="/payments", tags=["payments"])


@payment_router.post("", status_code=201, response_model=PaymentHandleResponse)
def initiate_payment(body: InitiatePaymentRequest) -> PaymentHandleResponse:
    handle = orchestrator.initiate_payment(
        order_id=body.order_id,
        gateway=body.gateway,
        method=body.method,
        amount=body.amount,
        currency=body.currency,
    )
    return PaymentHandleResponse(**handle.__dict__)


@payment_router.post("/{payment_id}/verify", response_model=PaymentVerificationResponse)
def verify_payment(payment_id: str) -> PaymentVerificationResponse:
    """Ask the gateway for a pending payment's status (polling fallback for webhooks)."""
    return PaymentVerificationResponse(**orchestrator.verify_payment(payment_id))


@payment_router.post("/webhooks/{gateway}", response_model=WebhookAckResponse)
async def receive_webhook(gateway: str, request: Request) -> WebhookAckResponse:
    """Gateway callback. Signatures cover the raw body, so it is read before any parsing."""
    body = await request.body()
    result = await run_in_threadpool(
        orchestrator.handle_webhook,
        gateway,
        dict(request.headers),
        body,
        remote_addr=request.client.host if request.client else None,
    )
    return WebhookAckResponse(**result)


@payment_router.post("/{payment_id}/refund", response_model=RefundResponse)
def refund_payment(payment_id: str, body: RefundRequest) -> RefundResponse:
    handle = orchestrator.refund(payment_id, amount=body.amount, reason=body.reason)
    return RefundResponse(**handle.__dict__)


# ---------------------------------------------------------------------------
# Inventory Router
# ---------------------------------------------------------------------------
inventory_router = APIRouter(prefix="/inventory", tags=["inventory"])


@inventory_router.get("/low-stock", response_model=LowStockResponse)
def low_stock(threshold: int = Query(default=10, ge=0)) -> LowStockResponse:
    levels = inventory.low_stock(threshold)
    return LowStockResponse(
        threshold=threshold,
        products=[StockLevelResponse(**asdict(level)) for level in levels],
    )


@inventory_router.get("/{product_id}", response_model=StockLevelResponse)
def stock_level(product_id: str) -> StockLevelResponse:
    return StockLevelResponse(**asdict(inventory.stock_level(product_id)))


# ---------------------------------------------------------------------------
# Maintenance Router: triggered by an external scheduler
# ---------------------------------------------------------------------------
maintenance_router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@maintenance_router.post("/expire-reservations", response_model=SweepResponse)
def expire_reservations() -> SweepResponse:
    return SweepResponse(processed=expire_stale_reservations())


@maintenance_router.post("/expire-payment-failures", response_model=SweepResponse)
def expire_payment_failures() -> SweepResponse:
    return SweepResponse(processed=orchestrator.sweep_payment_failures())
