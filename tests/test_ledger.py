"""
Unit tests for bookledger/services/ledger.py and the appointment status
transitions that call into it.

Covers: eligibility rules, idempotent creation, the unique-constraint race,
and ledger failures during a status change.
"""
import pytest
from datetime import date
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy.exc import IntegrityError

from bookledger import models
from bookledger.errors import AppointmentNotFound, InvalidStatusTransition
from bookledger.services import ledger
from bookledger.services.appointments import transition_status
from tests.conftest import make_appointment, make_transaction


def count_transactions(db, appointment_id):
    return db.query(models.Transaction).filter(
        models.Transaction.appointment_id == appointment_id,
        models.Transaction.type == "appointment",
    ).count()


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------
class TestEligibility:
    def test_package_appointment_skipped(self, db):
        appointment = make_appointment(db, "A1", package_info={"package_id": "cpk_1"})
        outcome = ledger.record_appointment_transaction(db, appointment)
        assert outcome.transaction is None
        assert outcome.skipped_reason == "package"
        assert count_transactions(db, "A1") == 0

    def test_unpriced_appointment_skipped(self, db):
        appointment = make_appointment(db, "A1", price="0")
        outcome = ledger.record_appointment_transaction(db, appointment)
        assert outcome.skipped_reason == "no_price"

    @pytest.mark.parametrize("status", ["pending", "cancelled"])
    def test_ineligible_status_skipped(self, db, status):
        appointment = make_appointment(db, "A1", status=status)
        assert ledger.ensure_transaction_for_appointment(db, appointment) is None
        assert count_transactions(db, "A1") == 0


# ---------------------------------------------------------------------------
# Creation and idempotency
# ---------------------------------------------------------------------------
class TestEnsureTransaction:
    def test_completed_card_appointment(self, db):
        appointment = make_appointment(db, "A1", price="150", payment_type="card", status="completed")
        txn = ledger.ensure_transaction_for_appointment(db, appointment)

        assert txn.appointment_id == "A1"
        assert txn.amount == Decimal("150.00")
        assert txn.payment_type == "card"
        assert txn.type == "appointment"
        assert txn.profit == Decimal("0")
        assert txn.date == date(2024, 3, 15)
        assert txn.description == "Appointment: Haircut - Elif Yilmaz"

    def test_repeat_calls_keep_one_row(self, db):
        appointment = make_appointment(db, "A1", price="150", payment_type="card")
        first = ledger.record_appointment_transaction(db, appointment)
        second = ledger.record_appointment_transaction(db, appointment)
        third = ledger.ensure_transaction_for_appointment(db, appointment)

        assert first.created is True
        assert second.created is False
        assert second.transaction.id == first.transaction.id
        assert third.id == first.transaction.id
        assert count_transactions(db, "A1") == 1

    def test_confirmed_appointment_is_eligible(self, db):
        appointment = make_appointment(db, "A1", status="confirmed")
        assert ledger.ensure_transaction_for_appointment(db, appointment) is not None

    def test_storage_rejects_second_row(self, db):
        make_transaction(db, "A1")
        with pytest.raises(IntegrityError):
            make_transaction(db, "A1")
        db.rollback()
        assert count_transactions(db, "A1") == 1

    def test_concurrent_writer_wins_race(self, db):
        """The existence check misses, the insert collides, the winner's row is returned."""
        appointment = make_appointment(db, "A1")
        winner = make_transaction(db, "A1")
        winner_id = winner.id

        real_find = ledger.find_appointment_transaction
        calls = []

        def stale_then_real(session, appointment_id):
            calls.append(appointment_id)
            if len(calls) == 1:
                return None
            return real_find(session, appointment_id)

        with patch.object(ledger, "find_appointment_transaction", side_effect=stale_then_real):
            outcome = ledger.record_appointment_transaction(db, appointment)

        assert outcome.created is False
        assert outcome.transaction.id == winner_id
        assert count_transactions(db, "A1") == 1

    def test_integrity_error_without_winner_is_raised(self, db):
        appointment = make_appointment(db, "A1")
        boom = IntegrityError("INSERT INTO transactions", {}, Exception("FOREIGN KEY constraint failed"))
        with patch.object(db, "commit", side_effect=boom):
            with pytest.raises(IntegrityError):
                ledger.record_appointment_transaction(db, appointment)


# ---------------------------------------------------------------------------
# Appointment status transitions
# ---------------------------------------------------------------------------
class TestTransitionStatus:
    def test_completing_writes_transaction(self, db):
        make_appointment(db, "A1", status="pending")
        change = transition_status(db, "A1", "completed")

        assert change.previous_status == "pending"
        assert change.appointment.status == "completed"
        assert change.changed is True
        assert change.transaction is not None
        assert count_transactions(db, "A1") == 1

    def test_confirm_then_complete_keeps_one_transaction(self, db):
        make_appointment(db, "A1", status="pending")
        confirmed = transition_status(db, "A1", "confirmed")
        completed = transition_status(db, "A1", "completed")

        assert completed.transaction.id == confirmed.transaction.id
        assert count_transactions(db, "A1") == 1

    def test_same_status_is_noop(self, db):
        make_appointment(db, "A1", status="completed")
        change = transition_status(db, "A1", "completed")
        assert change.changed is False
        assert count_transactions(db, "A1") == 1

    def test_cancel_writes_nothing(self, db):
        make_appointment(db, "A1", status="pending")
        change = transition_status(db, "A1", "cancelled")
        assert change.transaction is None
        assert count_transactions(db, "A1") == 0

    def test_completed_is_final(self, db):
        make_appointment(db, "A1", status="completed")
        with pytest.raises(InvalidStatusTransition):
            transition_status(db, "A1", "pending")

    def test_unknown_status_rejected(self, db):
        make_appointment(db, "A1", status="pending")
        with pytest.raises(InvalidStatusTransition):
            transition_status(db, "A1", "no_show")

    def test_unknown_appointment(self, db):
        with pytest.raises(AppointmentNotFound):
            transition_status(db, "missing", "completed")

    def test_ledger_failure_keeps_status(self, db):
        make_appointment(db, "A1", status="pending")
        with patch.object(ledger, "ensure_transaction_for_appointment", side_effect=RuntimeError("disk full")):
            change = transition_status(db, "A1", "completed")

        assert change.ledger_error == "disk full"
        assert db.get(models.Appointment, "A1").status == "completed"
        assert count_transactions(db, "A1") == 0
