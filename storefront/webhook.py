"""Reconcile asynchronous payment confirmations from a gateway.

Callers must have verified the gateway's signature before handing the
payload over. Delivery may repeat, so every branch is a no-op when the
outcome has already been applied.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.errors import InvalidInput, NotFound
from storefront.lifecycle import PAYMENT_TRANSITIONS, apply_transition, can_transition, lock_order, notify_quietly
from storefront.models import Order, OrderStatus, Payment, PaymentMethod, PaymentStatus, User

logger = logging.getLogger(__name__)

SUCCESS_CODES = frozenset({"success", "payment_success", "completed", "charged", "captured"})
FAILURE_CODES = frozenset({"failed", "failure", "payment_error", "payment_declined", "declined"})
PENDING_CODES = frozenset({"pending", "payment_pending"})

# Payment states a given outcome may overwrite
SETTLEABLE = {
    PaymentStatus.SUCCESS: frozenset({PaymentStatus.INITIATED, PaymentStatus.PENDING, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.INITIATED, PaymentStatus.PENDING}),
}

ORDER_OUTCOME = {
    PaymentStatus.SUCCESS: OrderStatus.PAID,
    PaymentStatus.FAILED: OrderStatus.PAYMENT_FAILED,
}


@dataclass
class PaymentConfirmation:
    order_id: Optional[int]
    payment_status: PaymentStatus
    order_status: Optional[OrderStatus]
    changed: bool


def normalize_gateway_status(status: str) -> Optional[PaymentStatus]:
    """Map a gateway status string to a payment outcome; None means still pending."""
    code = (status or "").strip().lower()
    if code in SUCCESS_CODES:
        return PaymentStatus.SUCCESS
    if code in FAILURE_CODES:
        return PaymentStatus.FAILED
    if code in PENDING_CODES:
        return None
    raise InvalidInput(f"Unknown payment status '{status}'", status=status)


async def _lock_payment(session: AsyncSession, transaction_id, order_ref):
    if transaction_id:
        result = await session.execute(
            select(Payment)
            .where(Payment.transaction_id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment is not None:
            return payment
    if order_ref:
        result = await session.execute(
            select(Payment)
            .join(Order, Order.id == Payment.order_id)
            .where(Order.gateway_order_ref == order_ref)
            .order_by(Payment.id.desc())
            .limit(1)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
    return None


async def confirm_payment(session: AsyncSession, transaction_id: Optional[str], order_ref: Optional[str],
                          status: str, notifier) -> PaymentConfirmation:
    if not transaction_id and not order_ref:
        raise InvalidInput("transactionId or orderId is required")
    outcome = normalize_gateway_status(status)
    changed = False

    async with session.begin():
        payment = await _lock_payment(session, transaction_id, order_ref)
        if payment is None:
            raise NotFound("Payment not found", transaction_id=transaction_id, order_ref=order_ref)

        order = await lock_order(session, payment.order_id) if payment.order_id is not None else None

        if outcome is not None:
            if payment.status in SETTLEABLE[outcome]:
                payment.status = outcome
                payment.updated_at = datetime.utcnow()
                changed = True
            elif payment.status != outcome:
                logger.warning(
                    "Ignoring %s confirmation for payment %s already %s",
                    outcome.value, payment.transaction_id, payment.status.value,
                )

            target = ORDER_OUTCOME[outcome]
            if payment.payment_method == PaymentMethod.COD:
                # Cash on delivery orders stay in the fulfilment flow
                logger.info("Order %s is cash on delivery; status left at %s", payment.order_id,
                            order.status.value if order is not None else None)
            elif order is not None and order.status != target:
                if can_transition(order.status, target, PAYMENT_TRANSITIONS):
                    apply_transition(order, target, PAYMENT_TRANSITIONS)
                    changed = True
                else:
                    logger.warning(
                        "Order %s left at %s on %s confirmation", order.id, order.status.value, outcome.value
                    )

        recipient = None
        if changed and order is not None:
            user = await session.get(User, order.user_id)
            recipient = user.email if user else None

    confirmation = PaymentConfirmation(
        order_id=order.id if order is not None else None,
        payment_status=payment.status,
        order_status=order.status if order is not None else None,
        changed=changed,
    )
    if changed:
        logger.info(
            "Payment %s is now %s (order %s: %s)",
            payment.transaction_id, payment.status.value, confirmation.order_id,
            confirmation.order_status.value if confirmation.order_status else None,
        )
        if order is not None:
            await notify_quietly(
                notifier,
                recipient,
                f"Payment {payment.status.value} for order {order.id}",
                f"<h2>Payment Update</h2>"
                f"<p>The payment for your order <strong>{order.id}</strong> is "
                f"<strong>{payment.status.value}</strong>.</p>",
            )
    return confirmation
