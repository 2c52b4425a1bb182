from datetime import date as date_type
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from bookledger import config
from bookledger.database import get_db
from bookledger.schemas.requests import BackfillRequest
from bookledger.schemas.responses import (
    BackfillResponse,
    MissingAppointment,
    MissingTransactionsPreview,
    PaymentResponse,
    PaymentTypeMismatch,
)
from bookledger.services import reconciler

router = APIRouter()


def _parse_date(value: Optional[str]) -> Optional[date_type]:
    if not value:
        return None
    try:
        return date_type.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Invalid date '{value}', expected YYYY-MM-DD")


@router.get("/missing-transactions", response_model=MissingTransactionsPreview)
def preview_missing_transactions(
    tenant_id: str,
    date: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """
    List completed/confirmed, priced, non-package appointments that have no
    ledger Transaction. Read-only.
    """
    day = _parse_date(date)
    result = reconciler.preview(db, tenant_id, date_from=day, date_to=day)

    return MissingTransactionsPreview(
        tenant_id=tenant_id,
        total_eligible=result.total_eligible,
        existing_transactions=result.existing,
        missing_count=result.missing_count,
        total_missing_amount=result.missing_amount,
        missing=[MissingAppointment.model_validate(a) for a in result.missing],
    )


@router.post("/missing-transactions", response_model=BackfillResponse)
def backfill_missing_transactions(body: BackfillRequest, db: Session = Depends(get_db)):
    """
    Create the missing Transactions. Running it twice is safe: the second run
    reports fixed=0.
    """
    day = _parse_date(body.date)
    summary = reconciler.backfill(db, body.tenant_id, date_from=day, date_to=day)
    return BackfillResponse(**summary.to_dict())


@router.get("/payment-type-mismatches", response_model=List[PaymentTypeMismatch])
def payment_type_mismatches(tenant_id: str, db: Session = Depends(get_db)):
    return reconciler.find_payment_type_mismatches(db, tenant_id)


@router.get("/stale-payments", response_model=List[PaymentResponse])
def stale_payments(
    tenant_id: Optional[str] = None,
    older_than_minutes: int = Query(config.STALE_PAYMENT_MINUTES, ge=1),
    db: Session = Depends(get_db),
):
    """Pending payments with no callback after the threshold; probe them via /payments/{oid}/probe."""
    return reconciler.find_stale_payments(db, tenant_id=tenant_id, older_than_minutes=older_than_minutes)


@router.get("/settlement-errors", response_model=List[PaymentResponse])
def settlement_errors(tenant_id: Optional[str] = None, db: Session = Depends(get_db)):
    """Paid payments whose ledger write failed."""
    return reconciler.find_settlement_errors(db, tenant_id=tenant_id)
