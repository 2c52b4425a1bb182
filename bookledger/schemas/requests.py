from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, field_validator


class BasketItem(BaseModel):
    name: str
    price: Decimal
    quantity: int = 1

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v):
        if v < 1:
            raise ValueError("quantity must be at least 1")
        return v


class CustomerContext(BaseModel):
    customer_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class InitiatePaymentRequest(BaseModel):
    tenant_id: str
    amount: Decimal
    currency: str = "TL"
    basket: List[BasketItem]
    customer: CustomerContext = CustomerContext()
    appointment_id: Optional[str] = None
    order_prefix: str = "PAY"

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        if v <= 0:
            raise ValueError("amount must be greater than zero")
        return v

    @field_validator("basket")
    @classmethod
    def validate_basket(cls, v):
        if not v:
            raise ValueError("basket cannot be empty")
        return v

    @field_validator("order_prefix")
    @classmethod
    def validate_prefix(cls, v):
        if not (v.isascii() and v.isalnum()) or len(v) > 8:
            raise ValueError("order_prefix must be alphanumeric, at most 8 characters")
        return v.upper()


class StatusUpdateRequest(BaseModel):
    status: str

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        allowed = ("pending", "confirmed", "completed", "cancelled")
        if v not in allowed:
            raise ValueError(f"status must be one of {', '.join(allowed)}")
        return v


class BackfillRequest(BaseModel):
    tenant_id: str
    date: Optional[str] = None  # YYYY-MM-DD; whole history when omitted
