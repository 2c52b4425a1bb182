"""
Seeds the database with demo data for the payment and ledger API.

Contents:
- 3 tenants (one inactive)
- ~40 customers; some people book with several tenants and their phone
  numbers are stored in different formats ("0555 123 45 67", "+90 555...",
  "5551234567")
- ~150 appointments across all statuses; roughly 1 in 5 completed/confirmed
  appointments is left without a ledger Transaction for the reconciler
- package-funded appointments and customer packages
- payments in every state, including a few stale pending ones
"""
import sys
import os
import random
from datetime import date, datetime, timedelta
from decimal import Decimal

# Allow running from project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bookledger.database import engine, SessionLocal
from bookledger import models
from bookledger.gateways.paytr import to_minor_units
from bookledger.services.identity import normalize_phone
from bookledger.services.ledger import record_appointment_transaction
from bookledger.services.payments import generate_merchant_oid

random.seed(42)

TENANTS = [
    ("Bella Hair Studio", "bella-hair", True),
    ("Nova Skin Clinic", "nova-skin", True),
    ("Old Town Barber", "old-town-barber", False),
]
SERVICES = [
    ("Haircut", Decimal("350.00")),
    ("Coloring", Decimal("1200.00")),
    ("Facial", Decimal("850.00")),
    ("Manicure", Decimal("300.00")),
    ("Laser Session", Decimal("1500.00")),
]
STAFF = ["Ayse", "Mehmet", "Zeynep", "Can"]
FIRST_NAMES = ["Elif", "Deniz", "Burak", "Selin", "Emre", "Ece", "Kaan", "Derya", "Ozan", "Melis"]
LAST_NAMES = ["Yilmaz", "Kaya", "Demir", "Sahin", "Celik", "Aydin"]
STATUSES = (
    ["completed"] * 45 +
    ["confirmed"] * 20 +
    ["pending"] * 20 +
    ["cancelled"] * 15
)

BASE_DATE = date(2024, 3, 1)


def phone_variant(digits10):
    """Same number, formatted the way different front desks typed it."""
    return random.choice([
        digits10,
        f"0{digits10[:3]} {digits10[3:6]} {digits10[6:8]} {digits10[8:]}",
        f"+90 {digits10[:3]} {digits10[3:6]} {digits10[6:]}",
        f"{digits10[:3]}-{digits10[3:6]}-{digits10[6:]}",
    ])


def make_people(n=25):
    people = []
    for i in range(n):
        people.append({
            "first_name": random.choice(FIRST_NAMES),
            "last_name": random.choice(LAST_NAMES),
            "phone": f"5{random.randint(300000000, 599999999)}",
        })
    return people


def make_appointment(tenant, customer, status, day, package_info=None):
    service, price = random.choice(SERVICES)
    return models.Appointment(
        tenant_id=tenant.id,
        customer_id=customer.id,
        customer_name=customer.full_name,
        customer_phone=customer.phone,
        service_name=service,
        staff_name=random.choice(STAFF),
        date=day,
        time=f"{random.randint(9, 18):02d}:{random.choice(['00', '30'])}",
        price=price,
        status=status,
        payment_type=random.choice(["cash", "cash", "card"]),
        package_info=package_info,
    )


def seed(db):
    tenants = []
    for name, slug, active in TENANTS:
        tenant = models.Tenant(business_name=name, slug=slug, is_active=active)
        db.add(tenant)
        tenants.append(tenant)
    db.commit()

    # --- 1. Customers: each person is known to 1-3 tenants ---
    customers = []
    for person in make_people():
        for tenant in random.sample(tenants, random.randint(1, 3)):
            customer = models.Customer(
                tenant_id=tenant.id,
                first_name=person["first_name"],
                last_name=person["last_name"],
                phone=phone_variant(person["phone"]),
            )
            db.add(customer)
            customers.append(customer)
    db.commit()

    # --- 2. Appointments ---
    appointments = []
    for i in range(150):
        customer = random.choice(customers)
        tenant = db.get(models.Tenant, customer.tenant_id)
        day = BASE_DATE + timedelta(days=random.randint(0, 45))
        appointment = make_appointment(tenant, customer, random.choice(STATUSES), day)
        db.add(appointment)
        appointments.append(appointment)

    # package-funded appointments never reach the ledger
    packages = []
    for customer in random.sample(customers, 8):
        package = models.CustomerPackage(
            tenant_id=customer.tenant_id,
            customer_id=customer.id,
            package_name=random.choice(["10x Laser", "5x Facial", "Monthly Blowdry"]),
            total_sessions=10,
            remaining_sessions=random.randint(0, 9),
            expires_at=datetime(2024, 12, 31),
        )
        db.add(package)
        packages.append(package)
    db.commit()

    for package in packages:
        customer = db.get(models.Customer, package.customer_id)
        tenant = db.get(models.Tenant, package.tenant_id)
        day = BASE_DATE + timedelta(days=random.randint(0, 45))
        db.add(make_appointment(
            tenant, customer, "completed", day,
            package_info={"package_id": package.id, "package_name": package.package_name},
        ))
    db.commit()

    # --- 3. Ledger: most eligible appointments get their Transaction, some are left missing ---
    left_missing = 0
    for appointment in appointments:
        if appointment.status not in ("completed", "confirmed"):
            continue
        if random.random() < 0.2:
            left_missing += 1
            continue
        record_appointment_transaction(db, appointment)

    # --- 4. Payments ---
    card_appointments = [a for a in appointments if a.payment_type == "card"]
    for appointment in card_appointments:
        status = random.choice(["paid", "paid", "paid", "failed", "pending"])
        created_at = models.utcnow() - timedelta(minutes=random.randint(5, 600))
        payment = models.Payment(
            tenant_id=appointment.tenant_id,
            customer_id=appointment.customer_id,
            appointment_id=appointment.id,
            merchant_oid=generate_merchant_oid("PAY"),
            amount=appointment.price,
            payment_amount=to_minor_units(appointment.price),
            status=status,
            customer_name=appointment.customer_name,
            customer_phone=normalize_phone(appointment.customer_phone),
            failure_reason="Insufficient funds" if status == "failed" else None,
            created_at=created_at,
            settled_at=created_at + timedelta(minutes=2) if status == "paid" else None,
        )
        db.add(payment)
        db.flush()
        if status == "paid":
            appointment.payment_status = "paid"
            appointment.payment_id = payment.id
    db.commit()

    return left_missing


def main():
    print("Creating database tables...")
    models.Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        existing = db.query(models.Tenant).count()
        if existing > 0:
            print(f"Database already has {existing} tenants. Skipping seed.")
            return

        print("Generating demo data...")
        left_missing = seed(db)

        print(f"Successfully seeded {db.query(models.Tenant).count()} tenants, "
              f"{db.query(models.Customer).count()} customers, "
              f"{db.query(models.Appointment).count()} appointments.")
        print(f"Transactions: {db.query(models.Transaction).count()} "
              f"({left_missing} eligible appointments left for the reconciler)")

        # Print summary
        from sqlalchemy import func as sqlfunc
        states = db.query(
            models.Payment.status,
            sqlfunc.count(models.Payment.id)
        ).group_by(models.Payment.status).all()
        print("\nPayment status distribution:")
        for state, cnt in states:
            print(f"  {state}: {cnt}")

    finally:
        db.close()


if __name__ == "__main__":
    main()
