"""Order status state machine.

Admin updates walk ``ORDER_TRANSITIONS``; payment confirmations from a
gateway walk ``PAYMENT_TRANSITIONS``. A status missing from a table has no
outgoing edges in it.
"""
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.errors import InvalidInput, InvalidTransition, NotFound
from storefront.models import Order, OrderStatus, User

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    OrderStatus.INITIATED: frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURN}),
    OrderStatus.CANCELED: frozenset(),
    OrderStatus.RETURN: frozenset(),
}

PAYMENT_TRANSITIONS = {
    OrderStatus.INITIATED: frozenset({OrderStatus.PAID, OrderStatus.PAYMENT_FAILED}),
    OrderStatus.PAYMENT_FAILED: frozenset({OrderStatus.PAID}),
}


def allowed_next(current: OrderStatus, table=ORDER_TRANSITIONS) -> frozenset:
    return table.get(current, frozenset())


def can_transition(current: OrderStatus, target: OrderStatus, table=ORDER_TRANSITIONS) -> bool:
    return target in allowed_next(current, table)


def parse_status(value) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidInput(f"Invalid status provided: '{value}'", status=value) from None


def apply_transition(order: Order, target: OrderStatus, table=ORDER_TRANSITIONS):
    """Move ``order`` to ``target`` or raise InvalidTransition, leaving it untouched."""
    if not can_transition(order.status, target, table):
        raise InvalidTransition(order.status.value, target.value)
    order.status = target
    order.updated_at = datetime.utcnow()


def order_lock_statement(order_id: int):
    # Row lock keeps concurrent updates from validating against a stale status
    return (
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


async def lock_order(session: AsyncSession, order_id: int):
    result = await session.execute(order_lock_statement(order_id))
    return result.scalar_one_or_none()


async def notify_quietly(notifier, recipient, subject, body):
    """Send a notification; a failure is logged and never propagated."""
    if not recipient:
        return
    try:
        await notifier.send(recipient, subject, body)
    except Exception:
        logger.exception("Failed to send notification '%s' to %s", subject, recipient)


async def transition_order_status(session: AsyncSession, order_id: int, target, notifier) -> Order:
    async with session.begin():
        order = await lock_order(session, order_id)
        if order is None:
            raise NotFound("Order not found", order_id=order_id)
        new_status = parse_status(target)
        previous = order.status
        apply_transition(order, new_status)
        user = await session.get(User, order.user_id)
        recipient = user.email if user else None

    logger.info("Order %s status updated from %s to %s", order.id, previous.value, order.status.value)

    await notify_quietly(
        notifier,
        recipient,
        f"Order Status Updated to '{order.status.value}'",
        f"<h2>Order Status Update</h2>"
        f"<p>Your order <strong>{order.id}</strong> status has been changed to "
        f"<strong>{order.status.value}</strong>.</p>",
    )
    return order
