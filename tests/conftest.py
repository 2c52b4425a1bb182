"""
Shared pytest fixtures for all test modules.

Uses an in-memory SQLite database (StaticPool) so every test
function gets a clean, isolated database with no disk I/O and no state leakage.
"""
import pytest
from datetime import date, timedelta
from decimal import Decimal
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from typing import Optional

from bookledger.database import Base, get_db
from bookledger import models
from bookledger.gateways.paytr import PayTRGateway, to_minor_units


# ---------------------------------------------------------------------------
# In-memory database engine shared across all fixtures in a test session.
# StaticPool forces all SQLAlchemy connections to reuse the same underlying
# sqlite3 connection, which is required for in-memory SQLite.
# ---------------------------------------------------------------------------
TEST_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=TEST_ENGINE)

MERCHANT_ID = "123456"
MERCHANT_KEY = "test_merchant_key"
MERCHANT_SALT = "test_merchant_salt"


@pytest.fixture(autouse=True)
def reset_db():
    """Drop and recreate all tables before each test for full isolation."""
    Base.metadata.drop_all(bind=TEST_ENGINE)
    Base.metadata.create_all(bind=TEST_ENGINE)
    yield
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db(reset_db):
    """Yield a SQLAlchemy session backed by the in-memory test database."""
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    """PayTR client with known credentials; outbound HTTP is patched per test."""
    return PayTRGateway(
        merchant_id=MERCHANT_ID,
        merchant_key=MERCHANT_KEY,
        merchant_salt=MERCHANT_SALT,
        test_mode="1",
        api_url="https://paytr.test/get-token",
        status_url="https://paytr.test/status",
        timeout=5.0,
    )


@pytest.fixture
def client(db, gateway):
    """
    FastAPI TestClient with the real DB dependency overridden to use
    the in-memory test session.  The TestClient is NOT used as a context
    manager so the lifespan hook (table creation, demo seeding) is skipped.
    """
    from bookledger.main import app
    from bookledger.routers.payments import get_gateway

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers: not fixtures, so any test file can import and call them directly.
# ---------------------------------------------------------------------------
def make_tenant(db, tenant_id: str = "ten_1", name: str = "Bella Hair", is_active: bool = True) -> models.Tenant:
    tenant = models.Tenant(id=tenant_id, business_name=name, slug=tenant_id, is_active=is_active)
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return tenant


def make_customer(
    db,
    customer_id: str,
    tenant_id: str = "ten_1",
    phone: Optional[str] = "5551234567",
    first_name: str = "Elif",
    last_name: str = "Yilmaz",
) -> models.Customer:
    customer = models.Customer(
        id=customer_id,
        tenant_id=tenant_id,
        phone=phone,
        first_name=first_name,
        last_name=last_name,
    )
    db.add(customer)
    db.commit()
    db.refresh(customer)
    return customer


def make_appointment(
    db,
    appointment_id: str,
    tenant_id: str = "ten_1",
    customer_id: Optional[str] = "cus_1",
    price="150.00",
    status: str = "completed",
    payment_type: str = "cash",
    package_info: Optional[dict] = None,
    day: Optional[date] = None,
    service_name: str = "Haircut",
    customer_name: str = "Elif Yilmaz",
) -> models.Appointment:
    appointment = models.Appointment(
        id=appointment_id,
        tenant_id=tenant_id,
        customer_id=customer_id,
        customer_name=customer_name,
        service_name=service_name,
        date=day or date(2024, 3, 15),
        time="10:30",
        price=Decimal(str(price)),
        status=status,
        payment_type=payment_type,
        package_info=package_info,
    )
    db.add(appointment)
    db.commit()
    db.refresh(appointment)
    return appointment


def make_payment(
    db,
    merchant_oid: str,
    tenant_id: str = "ten_1",
    amount="150.00",
    status: str = "pending",
    appointment_id: Optional[str] = None,
    raw_basket: Optional[str] = None,
    age_minutes: int = 0,
    failure_reason: Optional[str] = None,
) -> models.Payment:
    payment = models.Payment(
        tenant_id=tenant_id,
        merchant_oid=merchant_oid,
        amount=Decimal(str(amount)),
        payment_amount=to_minor_units(amount),
        status=status,
        appointment_id=appointment_id,
        raw_basket=raw_basket,
        failure_reason=failure_reason,
        created_at=models.utcnow() - timedelta(minutes=age_minutes),
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment


def make_transaction(
    db,
    appointment_id: str,
    tenant_id: str = "ten_1",
    amount="150.00",
    payment_type: str = "cash",
) -> models.Transaction:
    txn = models.Transaction(
        tenant_id=tenant_id,
        type="appointment",
        amount=Decimal(str(amount)),
        payment_type=payment_type,
        appointment_id=appointment_id,
        date=date(2024, 3, 15),
    )
    db.add(txn)
    db.commit()
    db.refresh(txn)
    return txn


def signed_callback(merchant_oid: str, status: str = "success", total_amount: str = "15000", **extra) -> dict:
    """Callback form body signed with the test gateway's credentials."""
    from bookledger.gateways.paytr import make_callback_hash

    payload = {
        "merchant_oid": merchant_oid,
        "status": status,
        "total_amount": total_amount,
        "hash": make_callback_hash(merchant_oid, status, total_amount, MERCHANT_SALT, MERCHANT_KEY),
    }
    payload.update(extra)
    return payload
