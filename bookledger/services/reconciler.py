"""
Reconciler: finds ledger-eligible appointments without a Transaction and
backfills them through the ledger writer.

Safe to run repeatedly and concurrently: a second run over the same range
finds nothing to fix, and racing runs only ever see already_exists.
"""
import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from bookledger import config, models
from bookledger.errors import ReconcileItemError
from bookledger.services import ledger

logger = logging.getLogger(__name__)


class ReconcilePreview:
    def __init__(
        self,
        total_eligible: int,
        existing: int,
        missing: List[models.Appointment],
    ):
        self.total_eligible = total_eligible
        self.existing = existing
        self.missing = missing

    @property
    def missing_count(self) -> int:
        return len(self.missing)

    @property
    def missing_amount(self) -> Decimal:
        return sum((Decimal(a.price) for a in self.missing), Decimal("0"))


class BackfillSummary:
    def __init__(self):
        self.total = 0
        self.fixed = 0
        self.already_exists = 0
        self.errors = 0
        self.failed: List[Dict[str, str]] = []

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "fixed": self.fixed,
            "already_exists": self.already_exists,
            "errors": self.errors,
            "failed": self.failed,
        }


def _eligible_appointments(
    db: Session, tenant_id: str, date_from: Optional[date], date_to: Optional[date]
) -> List[models.Appointment]:
    q = db.query(models.Appointment).filter(
        models.Appointment.tenant_id == tenant_id,
        models.Appointment.status.in_(ledger.LEDGER_ELIGIBLE_STATUSES),
        models.Appointment.price > 0,
    )
    if date_from:
        q = q.filter(models.Appointment.date >= date_from)
    if date_to:
        q = q.filter(models.Appointment.date <= date_to)

    # JSON null vs SQL NULL differs between backends; check in Python
    return [a for a in q.order_by(models.Appointment.date, models.Appointment.id).all() if not a.package_info]


def _recorded_appointment_ids(db: Session, tenant_id: str) -> set:
    rows = db.query(models.Transaction.appointment_id).filter(
        models.Transaction.tenant_id == tenant_id,
        models.Transaction.type == ledger.APPOINTMENT_TYPE,
        models.Transaction.appointment_id.isnot(None),
    ).all()
    return {row[0] for row in rows}


def find_missing(
    db: Session, tenant_id: str, date_from: Optional[date] = None, date_to: Optional[date] = None
) -> List[models.Appointment]:
    eligible = _eligible_appointments(db, tenant_id, date_from, date_to)
    recorded = _recorded_appointment_ids(db, tenant_id)
    return [a for a in eligible if a.id not in recorded]


def preview(
    db: Session, tenant_id: str, date_from: Optional[date] = None, date_to: Optional[date] = None
) -> ReconcilePreview:
    eligible = _eligible_appointments(db, tenant_id, date_from, date_to)
    recorded = _recorded_appointment_ids(db, tenant_id)
    missing = [a for a in eligible if a.id not in recorded]
    return ReconcilePreview(
        total_eligible=len(eligible),
        existing=len(eligible) - len(missing),
        missing=missing,
    )


def _backfill_one(db: Session, appointment: models.Appointment) -> ledger.LedgerOutcome:
    appointment_id = appointment.id
    try:
        return ledger.record_appointment_transaction(db, appointment)
    except Exception as e:
        db.rollback()
        raise ReconcileItemError(appointment_id, e) from e


def backfill(
    db: Session, tenant_id: str, date_from: Optional[date] = None, date_to: Optional[date] = None
) -> BackfillSummary:
    """
    Write the missing Transactions for a tenant, one appointment at a time.
    A failing appointment is counted in errors and the batch continues.
    """
    summary = BackfillSummary()
    missing = find_missing(db, tenant_id, date_from, date_to)
    summary.total = len(missing)
    logger.info(f"🔧 Backfill for tenant {tenant_id}: {summary.total} appointment(s) without a transaction")

    for appointment in missing:
        appointment_id = appointment.id
        try:
            outcome = _backfill_one(db, appointment)
        except ReconcileItemError as e:
            logger.error(f"❌ Backfill failed for appointment {e.appointment_id}: {e.cause}")
            summary.errors += 1
            summary.failed.append({"appointment_id": e.appointment_id, "error": str(e.cause)})
            continue

        if outcome.created:
            summary.fixed += 1
        elif outcome.transaction is not None:
            summary.already_exists += 1
        else:
            # Eligibility changed between the scan and the write
            logger.info(f"Appointment {appointment_id} no longer eligible: {outcome.skipped_reason}")

    logger.info(
        f"✅ Backfill for tenant {tenant_id} done: fixed={summary.fixed} "
        f"already_exists={summary.already_exists} errors={summary.errors}"
    )
    return summary


def find_payment_type_mismatches(db: Session, tenant_id: str) -> List[dict]:
    """Appointment transactions whose payment_type disagrees with the appointment. Report only."""
    rows = db.query(models.Transaction, models.Appointment).join(
        models.Appointment, models.Appointment.id == models.Transaction.appointment_id
    ).filter(
        models.Transaction.tenant_id == tenant_id,
        models.Transaction.type == ledger.APPOINTMENT_TYPE,
        models.Transaction.payment_type != models.Appointment.payment_type,
    ).all()

    return [
        {
            "transaction_id": txn.id,
            "appointment_id": appointment.id,
            "transaction_payment_type": txn.payment_type,
            "appointment_payment_type": appointment.payment_type,
            "amount": txn.amount,
        }
        for txn, appointment in rows
    ]


def find_stale_payments(
    db: Session, tenant_id: Optional[str] = None, older_than_minutes: int = config.STALE_PAYMENT_MINUTES
) -> List[models.Payment]:
    """Pending payments older than the threshold; candidates for a status probe."""
    cutoff = models.utcnow() - timedelta(minutes=older_than_minutes)
    q = db.query(models.Payment).filter(
        models.Payment.status == "pending",
        models.Payment.created_at < cutoff,
    )
    if tenant_id:
        q = q.filter(models.Payment.tenant_id == tenant_id)
    return q.order_by(models.Payment.created_at).all()


def find_settlement_errors(db: Session, tenant_id: Optional[str] = None) -> List[models.Payment]:
    """
    Paid payments whose ledger write failed and whose appointment still has no
    Transaction. The failure note stays on the payment after a backfill; the
    join drops the repaired ones.
    """
    q = db.query(models.Payment).outerjoin(
        models.Transaction,
        and_(
            models.Transaction.appointment_id == models.Payment.appointment_id,
            models.Transaction.type == ledger.APPOINTMENT_TYPE,
        ),
    ).filter(
        models.Payment.status == "paid",
        models.Payment.failure_reason.contains("Transaction creation failed"),
        models.Transaction.id.is_(None),
    )
    if tenant_id:
        q = q.filter(models.Payment.tenant_id == tenant_id)
    return q.all()
