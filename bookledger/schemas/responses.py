import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class InitiatePaymentResponse(BaseModel):
    payment_id: str
    merchant_oid: str
    token: str
    payment_url: Optional[str] = None


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    merchant_oid: str
    appointment_id: Optional[str] = None
    amount: Decimal
    payment_amount: int
    currency: str
    status: str  # "pending" | "paid" | "failed"
    failure_reason: Optional[str] = None
    created_at: datetime.datetime
    settled_at: Optional[datetime.datetime] = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    type: str
    amount: Decimal
    payment_type: str
    appointment_id: Optional[str] = None
    customer_name: Optional[str] = None
    description: Optional[str] = None
    date: datetime.date


class StatusChangeResponse(BaseModel):
    appointment_id: str
    previous_status: str
    status: str
    transaction_id: Optional[str] = None
    transaction: Optional[TransactionResponse] = None
    ledger_error: Optional[str] = None  # status stands; the reconciler picks it up


class MissingAppointment(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_name: str
    service_name: str
    date: datetime.date
    time: Optional[str] = None
    price: Decimal
    status: str
    payment_type: str


class MissingTransactionsPreview(BaseModel):
    tenant_id: str
    total_eligible: int
    existing_transactions: int
    missing_count: int
    total_missing_amount: Decimal
    missing: List[MissingAppointment]


class FailedAppointment(BaseModel):
    appointment_id: str
    error: str


class BackfillResponse(BaseModel):
    total: int
    fixed: int
    already_exists: int
    errors: int
    failed: List[FailedAppointment] = []


class PaymentTypeMismatch(BaseModel):
    transaction_id: str
    appointment_id: str
    transaction_payment_type: str
    appointment_payment_type: str
    amount: Decimal


class CustomerRefResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    customer_id: str
    tenant_id: str
    tenant_name: str


class IdentityResolveResponse(BaseModel):
    phone: str
    normalized: str
    customers: List[CustomerRefResponse]


class AggregateResponse(BaseModel):
    phone: str
    normalized: str
    total: int
    items: List[Dict[str, Any]]
    failed_tenants: List[str] = []
