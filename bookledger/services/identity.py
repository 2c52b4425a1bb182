"""
Identity correlator.

A person who books with several tenants has one Customer row per tenant and
no shared key. The phone number is the only thing those rows have in common,
so it is normalized to a 10-digit key and matched across partitions.

Colliding phones (two people, one number) are merged; there is no verified
identity to tell them apart.
"""
import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List

from sqlalchemy import func
from sqlalchemy.orm import Session

from bookledger import models

logger = logging.getLogger(__name__)

PHONE_KEY_LENGTH = 10
_NON_DIGITS = re.compile(r"\D")
# Separators front desks type into phone fields
_PHONE_SEPARATORS = (" ", "-", "(", ")", "+", ".")


def normalize_phone(raw) -> str:
    """
    "0555 123 45 67", "555-123-4567" and "905551234567" all -> "5551234567".
    Longer inputs keep their last 10 digits (country code dropped);
    shorter ones lose leading trunk zeros.
    """
    if not raw:
        return ""
    digits = _NON_DIGITS.sub("", str(raw))
    if len(digits) > PHONE_KEY_LENGTH:
        return digits[-PHONE_KEY_LENGTH:]
    return digits.lstrip("0")


def is_phone_key(value: str) -> bool:
    return len(value) == PHONE_KEY_LENGTH and value.isdigit()


class CustomerRef:
    def __init__(self, customer_id: str, tenant_id: str, tenant_name: str):
        self.customer_id = customer_id
        self.tenant_id = tenant_id
        self.tenant_name = tenant_name

    def __eq__(self, other):
        if not isinstance(other, CustomerRef):
            return NotImplemented
        return (self.customer_id, self.tenant_id) == (other.customer_id, other.tenant_id)

    def __hash__(self):
        return hash((self.customer_id, self.tenant_id))

    def __repr__(self):
        return f"CustomerRef({self.customer_id!r}, {self.tenant_id!r})"


class AggregateResult:
    def __init__(self, items: List[Dict[str, Any]], failed_tenants: List[str]):
        self.items = items
        self.failed_tenants = failed_tenants


Fetcher = Callable[[CustomerRef], Awaitable[List[Dict[str, Any]]]]


def _stored_digits(column):
    for sep in _PHONE_SEPARATORS:
        column = func.replace(column, sep, "")
    return column


def resolve(db: Session, digits10: str) -> List[CustomerRef]:
    """All Customer rows in active tenants whose stored phone contains the key."""
    if not is_phone_key(digits10):
        # An empty or partial key would substring-match unrelated rows
        return []

    rows = db.query(models.Customer, models.Tenant).join(
        models.Tenant, models.Tenant.id == models.Customer.tenant_id
    ).filter(
        _stored_digits(models.Customer.phone).contains(digits10),
        models.Tenant.is_active.is_(True),
    ).order_by(models.Customer.created_at).all()

    return [CustomerRef(customer.id, tenant.id, tenant.business_name) for customer, tenant in rows]


async def _fetch_branch(ref: CustomerRef, fetcher: Fetcher):
    """Run one tenant branch; return (items, error)."""
    try:
        items = await fetcher(ref)
        return items, None
    except Exception as e:
        logger.error(f"⚠️ Identity fan-out failed for tenant {ref.tenant_id} (customer {ref.customer_id}): {e}")
        return [], str(e)


async def aggregate(db: Session, digits10: str, fetcher: Fetcher) -> AggregateResult:
    """
    Resolve the phone, then run fetcher once per matching customer with
    asyncio.gather. Branches overlap only as far as the fetcher awaits real
    I/O; the database fetchers below share the request session and so run
    one after another.
    """
    refs = resolve(db, digits10)
    if not refs:
        return AggregateResult([], [])

    outcomes = await asyncio.gather(*[_fetch_branch(ref, fetcher) for ref in refs])

    items: List[Dict[str, Any]] = []
    failed_tenants: List[str] = []
    for ref, (branch_items, error) in zip(refs, outcomes):
        if error:
            if ref.tenant_id not in failed_tenants:
                failed_tenants.append(ref.tenant_id)
            continue
        for item in branch_items:
            tagged = dict(item)
            tagged["tenant_id"] = ref.tenant_id
            tagged["tenant_name"] = ref.tenant_name
            tagged["customer_id"] = ref.customer_id
            items.append(tagged)

    return AggregateResult(items, failed_tenants)


def appointment_fetcher(db: Session) -> Fetcher:
    """Sequential over the shared request session."""

    async def fetch(ref: CustomerRef) -> List[Dict[str, Any]]:
        rows = db.query(models.Appointment).filter(
            models.Appointment.tenant_id == ref.tenant_id,
            models.Appointment.customer_id == ref.customer_id,
        ).order_by(models.Appointment.date.desc(), models.Appointment.time.desc()).all()
        return [
            {
                "appointment_id": a.id,
                "service_name": a.service_name,
                "staff_name": a.staff_name,
                "date": a.date,
                "time": a.time,
                "status": a.status,
                "price": a.price,
                "payment_status": a.payment_status,
            }
            for a in rows
        ]

    return fetch


def package_fetcher(db: Session) -> Fetcher:
    """Active packages with sessions left. Sequential over the shared request session."""

    async def fetch(ref: CustomerRef) -> List[Dict[str, Any]]:
        rows = db.query(models.CustomerPackage).filter(
            models.CustomerPackage.tenant_id == ref.tenant_id,
            models.CustomerPackage.customer_id == ref.customer_id,
            models.CustomerPackage.status == "active",
            models.CustomerPackage.remaining_sessions > 0,
        ).order_by(models.CustomerPackage.assigned_at.desc()).all()
        return [
            {
                "package_id": p.id,
                "package_name": p.package_name,
                "total_sessions": p.total_sessions,
                "remaining_sessions": p.remaining_sessions,
                "assigned_at": p.assigned_at,
                "expires_at": p.expires_at,
            }
            for p in rows
        ]

    return fetch
