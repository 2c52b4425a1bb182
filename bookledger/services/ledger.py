"""
Ledger writer.

The only code path allowed to create an appointment Transaction. Both the
status-transition handler and the reconciler call in here, so the
(appointment_id, type) idempotency key is enforced in one place.

Order of checks:
1. package-funded appointment  -> skip
2. not priced / not eligible   -> skip
3. existing row                -> return it
4. insert
5. unique constraint violation -> another writer won, re-read its row
"""
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookledger import models

logger = logging.getLogger(__name__)

APPOINTMENT_TYPE = "appointment"
LEDGER_ELIGIBLE_STATUSES = ("completed", "confirmed")


class LedgerOutcome:
    def __init__(
        self,
        transaction: Optional[models.Transaction],
        created: bool = False,
        skipped_reason: Optional[str] = None,
    ):
        self.transaction = transaction
        self.created = created
        self.skipped_reason = skipped_reason


def skip_reason(appointment: models.Appointment) -> Optional[str]:
    """Why an appointment is not ledger-eligible, or None when it is."""
    if appointment.package_info:
        return "package"
    if appointment.price is None or Decimal(appointment.price) <= 0:
        return "no_price"
    if appointment.status not in LEDGER_ELIGIBLE_STATUSES:
        return "not_eligible"
    return None


def find_appointment_transaction(db: Session, appointment_id: str) -> Optional[models.Transaction]:
    return db.query(models.Transaction).filter(
        models.Transaction.appointment_id == appointment_id,
        models.Transaction.type == APPOINTMENT_TYPE,
    ).first()


def record_appointment_transaction(db: Session, appointment: models.Appointment) -> LedgerOutcome:
    reason = skip_reason(appointment)
    if reason:
        logger.debug(f"Appointment {appointment.id} skipped by ledger: {reason}")
        return LedgerOutcome(None, skipped_reason=reason)

    existing = find_appointment_transaction(db, appointment.id)
    if existing is not None:
        return LedgerOutcome(existing)

    # Cash appointments never have a Payment row, so the appointment is the source of truth
    txn = models.Transaction(
        tenant_id=appointment.tenant_id,
        type=APPOINTMENT_TYPE,
        amount=appointment.price,
        payment_type=appointment.payment_type or "cash",
        appointment_id=appointment.id,
        customer_id=appointment.customer_id,
        customer_name=appointment.customer_name,
        description=f"Appointment: {appointment.service_name} - {appointment.customer_name}",
        date=appointment.date,
        profit=Decimal("0"),
    )
    appointment_id = appointment.id
    db.add(txn)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = find_appointment_transaction(db, appointment_id)
        if winner is None:
            raise
        logger.info(f"Transaction for appointment {appointment_id} was created concurrently ({winner.id})")
        return LedgerOutcome(winner)

    db.refresh(txn)
    logger.info(
        f"✅ Created transaction {txn.id} for appointment {appointment_id}: {txn.amount} ({txn.payment_type})"
    )
    return LedgerOutcome(txn, created=True)


def ensure_transaction_for_appointment(
    db: Session, appointment: models.Appointment
) -> Optional[models.Transaction]:
    return record_appointment_transaction(db, appointment).transaction
