import logging
from datetime import date
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from storefront import config
from storefront.checkout import checkout
from storefront.database import Database, get_session
from storefront.errors import register_exception_handlers
from storefront.gateway import build_gateways
from storefront.lifecycle import transition_order_status
from storefront.messaging import EventPublisher, Notifier
from storefront.models import OrderStatus, PaymentMethod
from storefront.queries import delete_order, get_order_detail, list_orders, list_payments, list_user_orders
from storefront.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    DeleteResponse,
    OrderDetailResponse,
    OrderFilters,
    OrderListResponse,
    OrderRead,
    OrderStatusSummary,
    PaymentListResponse,
    PaymentRead,
    StatusUpdate,
    StatusUpdateResponse,
    UserOrdersResponse,
    WebhookAck,
    WebhookPayload,
)
from storefront.webhook import confirm_payment

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront Orders")
register_exception_handlers(app)


@app.on_event("startup")
async def startup_event():
    app.state.db = Database(config.DATABASE_URL, pool_size=config.DB_POOL_SIZE, max_overflow=config.DB_MAX_OVERFLOW)
    await app.state.db.init_db()
    app.state.publisher = EventPublisher()
    await app.state.publisher.setup()
    app.state.notifier = Notifier(app.state.publisher)
    app.state.gateways = build_gateways()
    logger.info("Payment gateways available: %s", ", ".join(m.value for m in app.state.gateways) or "none")


@app.on_event("shutdown")
async def shutdown_event():
    for gateway in app.state.gateways.values():
        await gateway.close()
    await app.state.publisher.close()
    await app.state.db.dispose()


def get_gateways(request: Request) -> dict:
    return request.app.state.gateways


def get_notifier(request: Request):
    return request.app.state.notifier


@app.post("/api/orders/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_session),
    gateways: dict = Depends(get_gateways),
    notifier=Depends(get_notifier),
):
    result = await checkout(db, body, gateways, notifier)
    return CheckoutResponse(
        order=OrderRead.model_validate(result.order),
        redirect_url=result.redirect_url,
        message=result.message,
    )


@app.get("/api/orders", response_model=OrderListResponse)
async def get_orders(
    name: Optional[str] = None,
    status: Optional[OrderStatus] = None,
    payment_method: Optional[PaymentMethod] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
):
    filters = OrderFilters(
        name=name,
        status=status,
        payment_method=payment_method,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return await list_orders(db, filters)


@app.get("/api/orders/user/{user_id}", response_model=UserOrdersResponse)
async def get_user_orders(user_id: int, db: AsyncSession = Depends(get_session)):
    return UserOrdersResponse(orders=await list_user_orders(db, user_id))


@app.get("/api/orders/{order_id}", response_model=OrderDetailResponse)
async def get_order(order_id: int, db: AsyncSession = Depends(get_session)):
    return await get_order_detail(db, order_id)


@app.delete("/api/orders/{order_id}", response_model=DeleteResponse)
async def remove_order(order_id: int, db: AsyncSession = Depends(get_session)):
    await delete_order(db, order_id)
    return DeleteResponse()


@app.put("/api/orders/status/{order_id}", response_model=StatusUpdateResponse)
async def update_order_status(
    order_id: int,
    body: StatusUpdate,
    db: AsyncSession = Depends(get_session),
    notifier=Depends(get_notifier),
):
    order = await transition_order_status(db, order_id, body.status, notifier)
    return StatusUpdateResponse(
        order=OrderStatusSummary(
            order_id=order.id, status=order.status, created_at=order.created_at, user_id=order.user_id
        )
    )


@app.post("/api/orders/phonepe/webhook", response_model=WebhookAck)
@app.post("/api/payments/webhook", response_model=WebhookAck)
async def payment_webhook(
    body: WebhookPayload,
    db: AsyncSession = Depends(get_session),
    notifier=Depends(get_notifier),
):
    confirmation = await confirm_payment(db, body.transactionId, body.orderId, body.status, notifier)
    return WebhookAck(
        order_id=confirmation.order_id,
        payment_status=confirmation.payment_status,
        order_status=confirmation.order_status,
        changed=confirmation.changed,
    )


@app.get("/api/payments/{order_id}", response_model=PaymentListResponse)
async def get_payments(order_id: int, db: AsyncSession = Depends(get_session)):
    payments = await list_payments(db, order_id)
    return PaymentListResponse(payments=[PaymentRead.model_validate(p) for p in payments])


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
