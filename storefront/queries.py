from datetime import datetime, time

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from storefront.errors import NotFound
from storefront.models import Address, Order, OrderItem, Payment, User
from storefront.schemas import (
    AddressRead,
    OrderDetailResponse,
    OrderFilters,
    OrderItemRead,
    OrderListResponse,
    OrderRead,
    OrderSummary,
)


def _with_items(stmt):
    return stmt.options(selectinload(Order.items).selectinload(OrderItem.product))


def _item_read(item: OrderItem) -> OrderItemRead:
    return OrderItemRead(
        product_id=item.product_id,
        product_name=item.product.name if item.product is not None else None,
        quantity=item.quantity,
        price=item.price,
    )


def _order_fields(order: Order) -> dict:
    return dict(
        id=order.id,
        user_id=order.user_id,
        address_id=order.address_id,
        total=order.total,
        payment_method=order.payment_method,
        status=order.status,
        gateway_order_ref=order.gateway_order_ref,
        created_at=order.created_at,
        updated_at=order.updated_at,
        items=[_item_read(item) for item in order.items],
    )


async def list_user_orders(session: AsyncSession, user_id: int) -> list:
    result = await session.execute(
        _with_items(select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc(), Order.id.desc()))
    )
    return [OrderRead(**_order_fields(order)) for order in result.scalars().all()]


async def get_order_detail(session: AsyncSession, order_id: int) -> OrderDetailResponse:
    result = await session.execute(_with_items(select(Order).where(Order.id == order_id)))
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFound("Order not found", order_id=order_id)

    address = await session.get(Address, order.address_id) if order.address_id is not None else None
    return OrderDetailResponse(
        order=OrderRead(**_order_fields(order)),
        address=AddressRead.model_validate(address) if address is not None else None,
    )


def _filter_conditions(filters: OrderFilters) -> list:
    conditions = []
    if filters.name:
        conditions.append(func.lower(User.name).like(f"%{filters.name.lower()}%"))
    if filters.status:
        conditions.append(Order.status == filters.status)
    if filters.payment_method:
        conditions.append(Order.payment_method == filters.payment_method)
    if filters.start_date:
        conditions.append(Order.created_at >= datetime.combine(filters.start_date, time.min))
    if filters.end_date:
        conditions.append(Order.created_at <= datetime.combine(filters.end_date, time.max))
    return conditions


async def list_orders(session: AsyncSession, filters: OrderFilters) -> OrderListResponse:
    conditions = _filter_conditions(filters)

    total_orders = await session.scalar(
        select(func.count(Order.id)).select_from(Order).join(User, User.id == Order.user_id).where(*conditions)
    )

    offset = (filters.page - 1) * filters.limit
    result = await session.execute(
        _with_items(
            select(Order, User.name)
            .join(User, User.id == Order.user_id)
            .where(*conditions)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(filters.limit)
            .offset(offset)
        )
    )
    orders = [OrderSummary(**_order_fields(order), customer_name=name) for order, name in result.all()]
    return OrderListResponse(
        total_orders=total_orders,
        orders_left=max(total_orders - filters.page * filters.limit, 0),
        orders=orders,
    )


async def delete_order(session: AsyncSession, order_id: int):
    async with session.begin():
        # Payments are kept for the audit trail, detached from the order
        await session.execute(update(Payment).where(Payment.order_id == order_id).values(order_id=None))
        await session.execute(delete(OrderItem).where(OrderItem.order_id == order_id))
        result = await session.execute(delete(Order).where(Order.id == order_id))
        if result.rowcount == 0:
            raise NotFound("Order not found", order_id=order_id)


async def list_payments(session: AsyncSession, order_id: int) -> list:
    result = await session.execute(select(Payment).where(Payment.order_id == order_id).order_by(Payment.id))
    payments = result.scalars().all()
    if not payments:
        raise NotFound("Payment not found", order_id=order_id)
    return payments
