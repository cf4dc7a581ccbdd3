from datetime import datetime
from decimal import Decimal

import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.pool import StaticPool

from storefront.database import Database
from storefront.gateway import PaymentInitiation
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


class RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send(self, recipient, subject, body):
        if self.fail:
            raise RuntimeError("mail server unavailable")
        self.sent.append((recipient, subject, body))


class FakeGateway:
    def __init__(self, result=None, error=None):
        self.result = result or PaymentInitiation(success=True, redirect_url="https://pay.example.com/checkout/abc")
        self.error = error
        self.calls = []

    async def initiate(self, order_ref, amount, payer):
        self.calls.append((order_ref, amount, payer))
        if self.error is not None:
            raise self.error
        return self.result


@pytest_asyncio.fixture
async def db():
    database = Database(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await database.init_db()
    async with database.session() as session:
        session.add_all([
            User(id=1, name="Asha Rao", email="asha@example.com", phone="9990001111"),
            User(id=2, name="Vikram Sen", email="vikram@example.com", phone="9990002222"),
        ])
        session.add_all([
            Address(id=5, user_id=1, full_name="Asha Rao", address_line="12 MG Road", city="Pune",
                    state="MH", country="India", postal_code="411001", is_default=True),
            Address(id=6, user_id=2, full_name="Vikram Sen", address_line="4 Park Street", city="Kolkata",
                    state="WB", country="India", postal_code="700016", is_default=True),
        ])
        session.add_all([
            Product(id=10, name="Brass Diya", price=Decimal("100.00"), stock=50),
            Product(id=11, name="Sandalwood Incense", price=Decimal("45.50"), stock=200),
            Product(id=12, name="Cotton Kurta", price=Decimal("799.00"), stock=10),
        ])
        await session.commit()
    yield database
    await database.dispose()


async def count_rows(database, model):
    async with database.session() as session:
        return await session.scalar(select(func.count()).select_from(model))


async def make_order(database, status=OrderStatus.INITIATED, method=PaymentMethod.COD, user_id=1,
                     gateway_order_ref=None, payment_status=None, created_at=None):
    """Insert an order with one line item and one payment, bypassing checkout."""
    async with database.session() as session:
        order = Order(
            user_id=user_id,
            address_id=5 if user_id == 1 else 6,
            total=Decimal("200.00"),
            payment_method=method,
            status=status,
            gateway_order_ref=gateway_order_ref,
            created_at=created_at or datetime.utcnow(),
            items=[OrderItem(product_id=10, quantity=2, price=Decimal("100.00"))],
        )
        session.add(order)
        await session.flush()
        session.add(Payment(
            order_id=order.id,
            user_id=user_id,
            transaction_id=gateway_order_ref or f"COD_{order.id}",
            payment_method=method,
            status=payment_status or (PaymentStatus.PENDING if method == PaymentMethod.COD else PaymentStatus.INITIATED),
            amount=Decimal("200.00"),
        ))
        await session.commit()
        return order.id


async def fetch(database, model, pk):
    async with database.session() as session:
        return await session.get(model, pk)
