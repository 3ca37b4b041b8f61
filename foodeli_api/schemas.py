from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
from shared.security_config import sanitize_input

from foodeli_api.models import DeliveryStatus


class OrderItemIn(BaseModel):
    product: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)

class OrderCreate(BaseModel):
    products: List[OrderItemIn] = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    total_amount: Decimal = Field(..., alias="totalAmount", gt=0)

    class Config:
        populate_by_name = True

    @field_validator("address")
    def sanitize_address(cls, v):
        v = sanitize_input(v)
        if not v:
            raise ValueError("Delivery address is required")
        return v

class PaymentInitialize(BaseModel):
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$")
    amount: Decimal = Field(..., ge=1)
    order_id: str = Field(..., alias="orderId", min_length=1)
    callback_url: Optional[str] = None

    class Config:
        populate_by_name = True

    @field_validator("email")
    def normalize_email(cls, v):
        return v.strip().lower()

class OrderComplete(BaseModel):
    order_id: str = Field(..., alias="orderId", min_length=1)

    class Config:
        populate_by_name = True

class DeliveryStatusUpdate(BaseModel):
    delivery_status: DeliveryStatus = Field(..., alias="deliveryStatus")

    class Config:
        populate_by_name = True


class OrderItemResponse(BaseModel):
    product: str
    quantity: int

class PaymentResponse(BaseModel):
    reference: Optional[str] = None
    status: str
    external_reference: Optional[str] = None
    method: Optional[str] = None
    paid_at: Optional[datetime] = None
    gateway_message: Optional[str] = None
    amount: Decimal

class OrderResponse(BaseModel):
    id: str
    user_id: str
    products: List[OrderItemResponse]
    total_amount: Decimal
    address: str
    order_status: str
    delivery_status: Optional[str] = None
    payment: PaymentResponse
    created_at: datetime
    updated_at: Optional[datetime] = None

class PaymentInitResponse(BaseModel):
    authorization_url: str
    reference: str
    order_id: str

class PaymentVerifyResponse(BaseModel):
    reference: str
    status: str
    amount: Decimal
    channel: Optional[str] = None
    paid_at: Optional[datetime] = None
    order: OrderResponse


def to_order_response(doc: dict) -> OrderResponse:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return OrderResponse(**doc)
