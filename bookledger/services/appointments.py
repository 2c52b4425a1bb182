import logging
from typing import Optional

from sqlalchemy.orm import Session

from bookledger import models
from bookledger.errors import AppointmentNotFound, InvalidStatusTransition
from bookledger.services import ledger

logger = logging.getLogger(__name__)

# completed and cancelled are final
ALLOWED_TRANSITIONS = {
    "pending": {"confirmed", "completed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}


class StatusChange:
    def __init__(
        self,
        appointment: models.Appointment,
        previous_status: str,
        transaction: Optional[models.Transaction] = None,
        ledger_error: Optional[str] = None,
    ):
        self.appointment = appointment
        self.previous_status = previous_status
        self.transaction = transaction
        self.ledger_error = ledger_error

    @property
    def changed(self) -> bool:
        return self.appointment.status != self.previous_status


def get_appointment(db: Session, appointment_id: str) -> models.Appointment:
    appointment = db.query(models.Appointment).filter(models.Appointment.id == appointment_id).first()
    if appointment is None:
        raise AppointmentNotFound(f"Appointment {appointment_id} not found")
    return appointment


def transition_status(db: Session, appointment_id: str, new_status: str) -> StatusChange:
    """
    Move an appointment to a new status and, when it becomes ledger-eligible,
    write its Transaction.

    Raises:
        AppointmentNotFound: unknown appointment id
        InvalidStatusTransition: the move is not allowed from the current status
    """
    if new_status not in ALLOWED_TRANSITIONS:
        raise InvalidStatusTransition(f"Unknown appointment status '{new_status}'")

    appointment = get_appointment(db, appointment_id)
    previous = appointment.status

    if new_status != previous:
        if new_status not in ALLOWED_TRANSITIONS.get(previous, set()):
            raise InvalidStatusTransition(f"Cannot move appointment from '{previous}' to '{new_status}'")
        appointment.status = new_status
        db.commit()
        db.refresh(appointment)
        logger.info(f"Appointment {appointment_id}: {previous} -> {new_status}")

    change = StatusChange(appointment, previous)
    if new_status not in ledger.LEDGER_ELIGIBLE_STATUSES:
        return change

    try:
        change.transaction = ledger.ensure_transaction_for_appointment(db, appointment)
    except Exception as e:
        # Status change stands; the reconciler backfills the missing entry
        db.rollback()
        logger.exception(f"❌ Ledger write failed for appointment {appointment_id}")
        change.ledger_error = str(e)
    return change
