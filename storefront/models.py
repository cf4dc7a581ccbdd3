from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from storefront.database import Base


class PaymentMethod(enum.Enum):
    COD = "cod"
    PHONEPE = "phonepe"
    RAZORPAY = "razorpay"


class OrderStatus(enum.Enum):
    INITIATED = "initiated"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELED = "canceled"
    RETURN = "return"
    # Only ever set by a payment confirmation from the gateway
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    INITIATED = "initiated"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


def _enum_column(enum_cls, name):
    # Persist the lowercase values rather than the member names
    return Enum(enum_cls, name=name, values_callable=lambda members: [m.value for m in members])


payment_method_type = _enum_column(PaymentMethod, "payment_method")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    name = Column(String(100))
    email = Column(String(255), unique=True)
    phone = Column(String(20))


class Address(Base):
    __tablename__ = "addresses"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    full_name = Column(String(100))
    phone_no = Column(String(20))
    address_line = Column(Text)
    city = Column(String(100))
    state = Column(String(100))
    country = Column(String(100))
    postal_code = Column(String(20))
    is_default = Column(Boolean, default=False, nullable=False)


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    name = Column(String(255))
    price = Column(Numeric(10, 2), nullable=False)
    discount_price = Column(Numeric(10, 2))
    stock = Column(Integer, default=0, nullable=False)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    address_id = Column(Integer, ForeignKey("addresses.id", ondelete="SET NULL"), nullable=True)
    total = Column(Numeric(10, 2), nullable=False)
    payment_method = Column(payment_method_type, nullable=False)
    status = Column(_enum_column(OrderStatus, "order_status"), default=OrderStatus.INITIATED, nullable=False)
    gateway_order_ref = Column(String(100), index=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", passive_deletes=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),)

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    quantity = Column(Integer, nullable=False)
    # Unit price at the time of the order; never recomputed from the catalog
    price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    # Payments outlive deleted orders
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), index=True, nullable=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    transaction_id = Column(String(100), unique=True, nullable=False)
    payment_method = Column(payment_method_type, nullable=False)
    status = Column(_enum_column(PaymentStatus, "payment_status"), default=PaymentStatus.PENDING, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
