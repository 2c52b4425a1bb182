"""
Unit tests for bookledger/services/reconciler.py.

Covers: missing-set computation, preview totals, idempotent backfill,
per-item failure isolation, and the payment reports.
"""
from datetime import date
from decimal import Decimal
from unittest.mock import patch

from bookledger import models
from bookledger.services import ledger, payments, reconciler
from tests.conftest import make_appointment, make_payment, make_transaction, signed_callback


def seed_mixed(db):
    """Three eligible appointments (one already recorded) plus ineligible noise."""
    make_appointment(db, "A1", price="150", status="completed")
    make_appointment(db, "A2", price="200", status="confirmed", day=date(2024, 3, 16))
    make_appointment(db, "A3", price="100", status="completed")
    make_transaction(db, "A3", amount="100")

    make_appointment(db, "P1", status="pending")
    make_appointment(db, "C1", status="cancelled")
    make_appointment(db, "Z1", price="0")
    make_appointment(db, "K1", package_info={"package_id": "cpk_1"})
    make_appointment(db, "O1", tenant_id="ten_2")


class TestFindMissing:
    def test_only_eligible_unrecorded_appointments(self, db):
        seed_mixed(db)
        missing = reconciler.find_missing(db, "ten_1")
        assert sorted(a.id for a in missing) == ["A1", "A2"]

    def test_date_filter(self, db):
        seed_mixed(db)
        day = date(2024, 3, 16)
        missing = reconciler.find_missing(db, "ten_1", date_from=day, date_to=day)
        assert [a.id for a in missing] == ["A2"]

    def test_other_tenant_not_included(self, db):
        seed_mixed(db)
        missing = reconciler.find_missing(db, "ten_2")
        assert [a.id for a in missing] == ["O1"]


class TestPreview:
    def test_preview_counts_and_amount(self, db):
        seed_mixed(db)
        result = reconciler.preview(db, "ten_1")

        assert result.total_eligible == 3
        assert result.existing == 1
        assert result.missing_count == 2
        assert result.missing_amount == Decimal("350.00")

    def test_preview_is_read_only(self, db):
        seed_mixed(db)
        reconciler.preview(db, "ten_1")
        assert db.query(models.Transaction).count() == 1


class TestBackfill:
    def test_backfill_fixes_missing(self, db):
        seed_mixed(db)
        summary = reconciler.backfill(db, "ten_1")

        assert summary.total == 2
        assert summary.fixed == 2
        assert summary.errors == 0
        assert reconciler.find_missing(db, "ten_1") == []

    def test_second_run_fixes_nothing(self, db):
        seed_mixed(db)
        reconciler.backfill(db, "ten_1")
        second = reconciler.backfill(db, "ten_1")

        assert second.fixed == 0
        assert second.total == 0
        assert db.query(models.Transaction).filter(models.Transaction.tenant_id == "ten_1").count() == 3

    def test_concurrent_creation_counts_as_already_exists(self, db):
        make_appointment(db, "A1")
        stale = reconciler.find_missing(db, "ten_1")
        make_transaction(db, "A1")

        with patch.object(reconciler, "find_missing", return_value=stale):
            summary = reconciler.backfill(db, "ten_1")

        assert summary.already_exists == 1
        assert summary.fixed == 0
        assert db.query(models.Transaction).count() == 1

    def test_item_failure_does_not_stop_batch(self, db):
        make_appointment(db, "A1")
        make_appointment(db, "A2")
        real_record = ledger.record_appointment_transaction

        def fail_on_a1(session, appointment):
            if appointment.id == "A1":
                raise RuntimeError("lock timeout")
            return real_record(session, appointment)

        with patch.object(ledger, "record_appointment_transaction", side_effect=fail_on_a1):
            summary = reconciler.backfill(db, "ten_1")

        assert summary.total == 2
        assert summary.fixed == 1
        assert summary.errors == 1
        assert summary.failed == [{"appointment_id": "A1", "error": "lock timeout"}]
        assert summary.to_dict()["errors"] == 1


class TestReports:
    def test_payment_type_mismatch_reported(self, db):
        make_appointment(db, "A1", payment_type="card")
        make_transaction(db, "A1", payment_type="cash")
        make_appointment(db, "A2", payment_type="cash")
        make_transaction(db, "A2", payment_type="cash")

        mismatches = reconciler.find_payment_type_mismatches(db, "ten_1")
        assert len(mismatches) == 1
        assert mismatches[0]["appointment_id"] == "A1"
        assert mismatches[0]["transaction_payment_type"] == "cash"
        assert mismatches[0]["appointment_payment_type"] == "card"

    def test_stale_pending_payments(self, db):
        make_payment(db, "OLD1", age_minutes=90)
        make_payment(db, "NEW1", age_minutes=1)
        make_payment(db, "OLDPAID1", status="paid", age_minutes=90)

        stale = reconciler.find_stale_payments(db, older_than_minutes=30)
        assert [p.merchant_oid for p in stale] == ["OLD1"]

    def test_settlement_errors(self, db):
        make_payment(db, "PAID1", status="paid", failure_reason="Transaction creation failed: db down")
        make_payment(db, "PAID2", status="paid")
        make_payment(db, "FAIL1", status="failed", failure_reason="Insufficient funds")

        errors = reconciler.find_settlement_errors(db)
        assert [p.merchant_oid for p in errors] == ["PAID1"]

    def test_settlement_error_cleared_by_backfill(self, db, gateway):
        make_appointment(db, "A1", status="completed")
        make_payment(db, "SUB123", appointment_id="A1")
        with patch.object(ledger, "ensure_transaction_for_appointment", side_effect=RuntimeError("db down")):
            payments.handle_callback(db, gateway, signed_callback("SUB123"))

        assert [p.merchant_oid for p in reconciler.find_settlement_errors(db)] == ["SUB123"]

        summary = reconciler.backfill(db, "ten_1")
        assert summary.fixed == 1
        assert reconciler.find_settlement_errors(db) == []
        # The note stays for the audit trail
        assert db.query(models.Payment).one().failure_reason.startswith("Transaction creation failed")
