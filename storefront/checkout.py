"""Checkout: order, line items and the first payment record in one transaction.

The unit price of each line is taken from the request, not from the
catalog, so an order keeps the price the customer saw in the cart.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.errors import CheckoutFailed, InvalidInput, NotFound, StorefrontError
from storefront.gateway import PayerInfo, PaymentGatewayError
from storefront.lifecycle import notify_quietly
from storefront.models import (
    Address,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Product,
    User,
)
from storefront.schemas import CheckoutRequest

logger = logging.getLogger(__name__)

COD_MESSAGE = "Order created successfully, awaiting Cash on Delivery payment."


@dataclass
class CheckoutResult:
    order: Order
    redirect_url: Optional[str] = None
    message: Optional[str] = None


class PaymentDeclined(Exception):
    pass


def line_total(request: CheckoutRequest) -> Decimal:
    return sum((item.price * item.quantity for item in request.items), Decimal("0"))


def validate_checkout(request: CheckoutRequest, gateways: dict):
    if not request.items:
        raise InvalidInput("Order must contain at least one item")
    for item in request.items:
        if item.quantity <= 0:
            raise InvalidInput("Item quantity must be positive", product_id=item.product_id)
        if item.price < 0:
            raise InvalidInput("Item price must not be negative", product_id=item.product_id)
    if request.total < 0:
        raise InvalidInput("Total must not be negative")
    expected = line_total(request)
    if request.total != expected:
        raise InvalidInput(
            "Total does not match the sum of the items",
            total=str(request.total),
            expected_total=f"{expected:.2f}",
        )
    if request.payment_method != PaymentMethod.COD and request.payment_method not in gateways:
        raise InvalidInput("Invalid payment method", payment_method=request.payment_method.value)


async def _load_references(session: AsyncSession, request: CheckoutRequest) -> User:
    user = await session.get(User, request.user_id)
    if user is None:
        raise NotFound("User not found", user_id=request.user_id)

    address = await session.get(Address, request.address_id)
    if address is None or address.user_id != user.id:
        raise NotFound("Address not found", address_id=request.address_id)

    product_ids = {item.product_id for item in request.items}
    result = await session.execute(select(Product.id).where(Product.id.in_(product_ids)))
    missing = sorted(product_ids - set(result.scalars().all()))
    if missing:
        raise NotFound("Product not found", product_ids=missing)
    return user


async def checkout(session: AsyncSession, request: CheckoutRequest, gateways: dict, notifier) -> CheckoutResult:
    validate_checkout(request, gateways)
    method = request.payment_method
    is_cod = method == PaymentMethod.COD
    transaction_id = f"{'COD' if is_cod else 'TXN'}_{uuid4().hex}"
    redirect_url = None

    try:
        async with session.begin():
            user = await _load_references(session, request)

            order = Order(
                user_id=user.id,
                address_id=request.address_id,
                total=request.total,
                payment_method=method,
                status=OrderStatus.INITIATED,
                gateway_order_ref=None if is_cod else transaction_id,
                items=[
                    OrderItem(product_id=item.product_id, quantity=item.quantity, price=item.price)
                    for item in request.items
                ],
            )
            session.add(order)
            await session.flush()

            session.add(
                Payment(
                    order_id=order.id,
                    user_id=user.id,
                    transaction_id=transaction_id,
                    payment_method=method,
                    status=PaymentStatus.PENDING if is_cod else PaymentStatus.INITIATED,
                    amount=request.total,
                )
            )
            await session.flush()

            if not is_cod:
                # Still inside the transaction: a failed initiation undoes the whole order
                initiation = await gateways[method].initiate(
                    transaction_id,
                    request.total,
                    PayerInfo(user_id=user.id, name=request.name or user.name, number=request.number or user.phone),
                )
                if not initiation.success:
                    raise PaymentDeclined(initiation.message or "payment initiation declined")
                redirect_url = initiation.redirect_url
    except StorefrontError:
        raise
    except (PaymentGatewayError, PaymentDeclined) as exc:
        logger.error("Checkout for user %s rolled back, payment initiation failed: %s", request.user_id, exc)
        raise CheckoutFailed() from exc
    except Exception as exc:
        logger.exception("Checkout for user %s rolled back", request.user_id)
        raise CheckoutFailed() from exc

    logger.info("Order %s created for user %s via %s", order.id, user.id, method.value)

    if is_cod:
        await notify_quietly(
            notifier,
            user.email,
            "Order Confirmed - Cash on Delivery",
            f"<h2>Your order has been placed!</h2>"
            f"<p>Order ID: <strong>{order.id}</strong></p>"
            f"<p>We will deliver your order soon. Please keep the payment ready.</p>",
        )
        return CheckoutResult(order=order, message=COD_MESSAGE)

    await notify_quietly(
        notifier,
        user.email,
        f"Order Initiated - {method.value.capitalize()} Payment",
        f"<h2>Thank you for your order!</h2>"
        f"<p>Your order ID: <strong>{order.id}</strong></p>"
        f"<p>Please complete your payment using the link below:</p>"
        f'<a href="{redirect_url}">Pay Now</a>',
    )
    return CheckoutResult(order=order, redirect_url=redirect_url)
