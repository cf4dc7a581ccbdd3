from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from storefront.models import OrderStatus, PaymentMethod, PaymentStatus


class CheckoutItem(BaseModel):
    product_id: int
    quantity: int = Field(..., gt=0, le=2_147_483_647)
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)


class CheckoutRequest(BaseModel):
    user_id: int
    address_id: int
    items: List[CheckoutItem] = Field(..., min_length=1)
    total: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    payment_method: PaymentMethod
    # Payer details forwarded to the gateway
    name: Optional[str] = None
    number: Optional[str] = None


class OrderItemRead(BaseModel):
    product_id: Optional[int]
    product_name: Optional[str] = None
    quantity: int
    price: Decimal

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    id: int
    user_id: int
    address_id: Optional[int]
    total: Decimal
    payment_method: PaymentMethod
    status: OrderStatus
    gateway_order_ref: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemRead] = []

    class Config:
        from_attributes = True


class CheckoutResponse(BaseModel):
    success: bool = True
    order: OrderRead
    redirect_url: Optional[str] = None
    message: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str


class OrderStatusSummary(BaseModel):
    order_id: int
    status: OrderStatus
    created_at: datetime
    user_id: int


class StatusUpdateResponse(BaseModel):
    success: bool = True
    message: str = "Order status updated successfully"
    order: OrderStatusSummary


class WebhookPayload(BaseModel):
    transactionId: Optional[str] = None
    orderId: Optional[str] = None
    status: str


class WebhookAck(BaseModel):
    success: bool = True
    order_id: Optional[int]
    payment_status: PaymentStatus
    order_status: Optional[OrderStatus]
    changed: bool


class AddressRead(BaseModel):
    full_name: Optional[str] = None
    phone_no: Optional[str] = None
    address_line: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None

    class Config:
        from_attributes = True


class OrderDetailResponse(BaseModel):
    success: bool = True
    order: OrderRead
    address: Optional[AddressRead]


class OrderSummary(OrderRead):
    customer_name: Optional[str] = None


class UserOrdersResponse(BaseModel):
    success: bool = True
    orders: List[OrderRead]


class OrderFilters(BaseModel):
    name: Optional[str] = None
    status: Optional[OrderStatus] = None
    payment_method: Optional[PaymentMethod] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)


class OrderListResponse(BaseModel):
    success: bool = True
    total_orders: int
    orders_left: int
    orders: List[OrderSummary]


class PaymentRead(BaseModel):
    id: int
    order_id: Optional[int]
    transaction_id: str
    payment_method: PaymentMethod
    status: PaymentStatus
    amount: Decimal
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PaymentListResponse(BaseModel):
    success: bool = True
    payments: List[PaymentRead]


class DeleteResponse(BaseModel):
    success: bool = True
