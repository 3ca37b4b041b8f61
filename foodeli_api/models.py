from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "Pending Payment"
    PAYMENT_DONE = "Payment Done"
    PROCESSING = "Processing"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"

class DeliveryStatus(str, Enum):
    PROCESSING = "Processing"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class OrderItemDB(BaseModel):
    product: str
    quantity: int = Field(1, ge=1)

class PaymentDB(BaseModel):
    reference: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    external_reference: Optional[str] = None
    method: Optional[str] = None
    paid_at: Optional[datetime] = None
    gateway_message: Optional[str] = None
    amount: Decimal
    authorization_url: Optional[str] = None
    initialized_at: Optional[datetime] = None

    class Config:
        use_enum_values = True

class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    products: List[OrderItemDB]
    total_amount: Decimal
    address: str
    order_status: OrderStatus = OrderStatus.PENDING_PAYMENT
    delivery_status: Optional[DeliveryStatus] = None
    payment: PaymentDB
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True
        use_enum_values = True

    def to_document(self) -> dict:
        # Mongo has no native Decimal without Decimal128; amounts are stored as floats
        doc = self.dict(by_alias=True, exclude={"id"})
        doc["total_amount"] = float(doc["total_amount"])
        doc["payment"]["amount"] = float(doc["payment"]["amount"])
        return doc
