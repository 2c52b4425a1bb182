from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from bookledger.database import get_db
from bookledger.errors import AppointmentNotFound, InvalidStatusTransition
from bookledger.schemas.requests import StatusUpdateRequest
from bookledger.schemas.responses import StatusChangeResponse, TransactionResponse
from bookledger.services.appointments import transition_status

router = APIRouter()


@router.patch("/{appointment_id}/status", response_model=StatusChangeResponse)
def update_status(appointment_id: str, body: StatusUpdateRequest, db: Session = Depends(get_db)):
    """
    Change an appointment's status.

    Moving to confirmed or completed writes the appointment's ledger
    Transaction (once). A ledger failure is reported in ledger_error but the
    status change is kept.
    """
    try:
        change = transition_status(db, appointment_id, body.status)
    except AppointmentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))

    txn = change.transaction
    return StatusChangeResponse(
        appointment_id=appointment_id,
        previous_status=change.previous_status,
        status=change.appointment.status,
        transaction_id=txn.id if txn else None,
        transaction=TransactionResponse.model_validate(txn) if txn else None,
        ledger_error=change.ledger_error,
    )
