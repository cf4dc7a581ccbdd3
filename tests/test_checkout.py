import pytest
from decimal import Decimal
from pydantic import ValidationError
from sqlalchemy import select

from storefront.checkout import COD_MESSAGE, checkout
from storefront.errors import CheckoutFailed, InvalidInput, NotFound
from storefront.gateway import PaymentGatewayError, PaymentInitiation
from storefront.models import Order, OrderItem, OrderStatus, Payment, PaymentMethod, PaymentStatus
from storefront.schemas import CheckoutRequest

from conftest import FakeGateway, RecordingNotifier, count_rows


def cod_request(items=None, total=200, **overrides):
    data = {
        "user_id": 1,
        "address_id": 5,
        "items": items if items is not None else [{"product_id": 10, "quantity": 2, "price": 100}],
        "total": total,
        "payment_method": "cod",
    }
    data.update(overrides)
    return CheckoutRequest(**data)


async def run_checkout(db, request, gateways=None, notifier=None):
    async with db.session() as session:
        return await checkout(session, request, gateways or {}, notifier or RecordingNotifier())


async def assert_nothing_persisted(db):
    assert await count_rows(db, Order) == 0
    assert await count_rows(db, OrderItem) == 0
    assert await count_rows(db, Payment) == 0


@pytest.mark.asyncio
async def test_cod_checkout_creates_order_item_and_pending_payment(db):
    notifier = RecordingNotifier()

    result = await run_checkout(db, cod_request(), notifier=notifier)

    assert result.message == COD_MESSAGE
    assert result.redirect_url is None
    assert result.order.status == OrderStatus.INITIATED
    assert result.order.total == Decimal("200")

    async with db.session() as session:
        items = (await session.execute(select(OrderItem))).scalars().all()
        payments = (await session.execute(select(Payment))).scalars().all()
    assert [(i.product_id, i.quantity, i.price) for i in items] == [(10, 2, Decimal("100"))]
    assert len(payments) == 1
    assert payments[0].status == PaymentStatus.PENDING
    assert payments[0].order_id == result.order.id
    assert payments[0].transaction_id.startswith("COD_")

    assert notifier.sent[0][0] == "asha@example.com"
    assert notifier.sent[0][1] == "Order Confirmed - Cash on Delivery"


@pytest.mark.asyncio
@pytest.mark.parametrize("count", [1, 2, 3])
async def test_cod_checkout_row_counts(db, count):
    catalog = [(10, Decimal("100.00")), (11, Decimal("45.50")), (12, Decimal("799.00"))]
    items = [{"product_id": pid, "quantity": 1, "price": price} for pid, price in catalog[:count]]
    total = sum(price for _, price in catalog[:count])

    await run_checkout(db, cod_request(items=items, total=total))

    assert await count_rows(db, Order) == 1
    assert await count_rows(db, OrderItem) == count
    assert await count_rows(db, Payment) == 1


@pytest.mark.asyncio
async def test_line_price_is_taken_from_the_request(db):
    # Catalog price of product 10 is 100.00; the cart locked in 90.00
    await run_checkout(db, cod_request(items=[{"product_id": 10, "quantity": 1, "price": "90.00"}], total="90.00"))

    async with db.session() as session:
        item = (await session.execute(select(OrderItem))).scalar_one()
    assert item.price == Decimal("90.00")


@pytest.mark.asyncio
async def test_gateway_checkout_returns_redirect_and_initiated_payment(db):
    gateway = FakeGateway()
    notifier = RecordingNotifier()

    result = await run_checkout(
        db,
        cod_request(payment_method="phonepe", name="Asha", number="9990001111"),
        gateways={PaymentMethod.PHONEPE: gateway},
        notifier=notifier,
    )

    assert result.redirect_url == "https://pay.example.com/checkout/abc"
    order_ref, amount, payer = gateway.calls[0]
    assert order_ref.startswith("TXN_")
    assert amount == Decimal("200")
    assert payer.user_id == 1
    assert payer.number == "9990001111"

    async with db.session() as session:
        order = await session.get(Order, result.order.id)
        payment = (await session.execute(select(Payment))).scalar_one()
    assert order.gateway_order_ref == order_ref
    assert payment.transaction_id == order_ref
    assert payment.status == PaymentStatus.INITIATED
    assert "Pay Now" in notifier.sent[0][2]


@pytest.mark.asyncio
async def test_declined_initiation_rolls_back_everything(db):
    gateway = FakeGateway(result=PaymentInitiation(success=False, message="merchant disabled"))
    notifier = RecordingNotifier()

    with pytest.raises(CheckoutFailed):
        await run_checkout(db, cod_request(payment_method="phonepe"), {PaymentMethod.PHONEPE: gateway}, notifier)

    await assert_nothing_persisted(db)
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_unreachable_gateway_rolls_back_everything(db):
    gateway = FakeGateway(error=PaymentGatewayError("phonepe unreachable"))

    with pytest.raises(CheckoutFailed) as excinfo:
        await run_checkout(db, cod_request(payment_method="phonepe"), {PaymentMethod.PHONEPE: gateway})

    assert excinfo.value.status_code == 500
    assert excinfo.value.message == "Checkout failed"
    await assert_nothing_persisted(db)


@pytest.mark.asyncio
async def test_unexpected_error_rolls_back_and_is_generic(db):
    gateway = FakeGateway(error=KeyError("redirectInfo"))

    with pytest.raises(CheckoutFailed):
        await run_checkout(db, cod_request(payment_method="phonepe"), {PaymentMethod.PHONEPE: gateway})

    await assert_nothing_persisted(db)


@pytest.mark.asyncio
async def test_unknown_product_is_not_found(db):
    request = cod_request(
        items=[{"product_id": 10, "quantity": 1, "price": 100}, {"product_id": 99, "quantity": 1, "price": 100}],
        total=200,
    )

    with pytest.raises(NotFound) as excinfo:
        await run_checkout(db, request)

    assert excinfo.value.details["product_ids"] == [99]
    await assert_nothing_persisted(db)


@pytest.mark.asyncio
async def test_address_of_another_user_is_not_found(db):
    with pytest.raises(NotFound):
        await run_checkout(db, cod_request(address_id=6))

    await assert_nothing_persisted(db)


@pytest.mark.asyncio
async def test_unknown_user_is_not_found(db):
    with pytest.raises(NotFound):
        await run_checkout(db, cod_request(user_id=42))


@pytest.mark.asyncio
async def test_total_must_match_line_items(db):
    with pytest.raises(InvalidInput) as excinfo:
        await run_checkout(db, cod_request(total=150))

    assert excinfo.value.details["expected_total"] == "200.00"
    await assert_nothing_persisted(db)


@pytest.mark.asyncio
async def test_total_off_by_one_cent_is_rejected(db):
    with pytest.raises(InvalidInput):
        await run_checkout(db, cod_request(total="200.01"))

    await assert_nothing_persisted(db)


@pytest.mark.parametrize("price,total", [
    ("0.004", "0.01"),
    ("33.333", "99.999"),
    ("1e30", "1e30"),
    ("123456789", "123456789"),
])
def test_prices_must_fit_the_stored_precision(price, total):
    with pytest.raises(ValidationError):
        cod_request(items=[{"product_id": 10, "quantity": 3, "price": price}], total=total)


@pytest.mark.asyncio
async def test_gateway_without_client_is_rejected(db):
    with pytest.raises(InvalidInput):
        await run_checkout(db, cod_request(payment_method="razorpay"), gateways={})

    await assert_nothing_persisted(db)


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_checkout(db):
    result = await run_checkout(db, cod_request(), notifier=RecordingNotifier(fail=True))

    assert result.order.id is not None
    assert await count_rows(db, Order) == 1
