from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from bookledger.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String, primary_key=True, default=lambda: generate_id("ten"))
    business_name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String, primary_key=True, default=lambda: generate_id("cus"))
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    phone = Column(String, nullable=True, index=True)  # free-form in legacy rows
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    email = Column(String, nullable=True)
    is_blacklisted = Column(Boolean, nullable=False, default=False)
    no_show_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(String, primary_key=True, default=lambda: generate_id("apt"))
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    customer_id = Column(String, nullable=True, index=True)
    customer_name = Column(String, nullable=False, default="")
    customer_phone = Column(String, nullable=True)
    service_name = Column(String, nullable=False, default="")
    staff_name = Column(String, nullable=True)
    date = Column(Date, nullable=False)
    time = Column(String, nullable=True)  # HH:MM
    price = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String, nullable=False, default="pending")  # pending | confirmed | completed | cancelled
    payment_type = Column(String, nullable=False, default="cash")  # cash | card
    payment_status = Column(String, nullable=False, default="unpaid")  # unpaid | paid
    payment_id = Column(String, nullable=True)
    package_info = Column(JSON, nullable=True)  # set when paid from a customer package
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: generate_id("pay"))
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    customer_id = Column(String, nullable=True)
    appointment_id = Column(String, nullable=True, index=True)
    merchant_oid = Column(String(64), nullable=False, unique=True, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_amount = Column(Integer, nullable=False)  # minor units sent to the gateway
    currency = Column(String(3), nullable=False, default="TL")
    status = Column(String, nullable=False, default="pending")  # pending | paid | failed
    gateway_token = Column(String, nullable=True)
    raw_basket = Column(Text, nullable=True)  # JSON
    failure_reason = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    user_ip = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    settled_at = Column(DateTime, nullable=True)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        # At most one ledger row per (appointment, type); NULL appointment ids never collide
        UniqueConstraint("appointment_id", "type", name="uq_transactions_appointment_type"),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("txn"))
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_type = Column(String, nullable=False, default="cash")
    appointment_id = Column(String, nullable=True, index=True)
    customer_id = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    description = Column(String, nullable=True)
    date = Column(Date, nullable=False)
    profit = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class CustomerPackage(Base):
    __tablename__ = "customer_packages"

    id = Column(String, primary_key=True, default=lambda: generate_id("cpk"))
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    customer_id = Column(String, ForeignKey("customers.id"), nullable=False, index=True)
    package_name = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")  # active | expired
    total_sessions = Column(Integer, nullable=False, default=0)
    remaining_sessions = Column(Integer, nullable=False, default=0)
    assigned_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=True)
