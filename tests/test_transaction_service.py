"""
test_transaction_service.py — Tests for funding, escrow, disbursement, repayment and recourse

Covers the funded / total_due arithmetic, the escrow -> disbursement leg,
partial and full repayment (case completion and lender metrics), the
overdue / recourse thresholds, default and cancel.

Called by: pytest
Depends on: dealflow/services/transaction_service.py, conftest.py
"""

from datetime import datetime, timedelta, timezone

import pytest

from dealflow.exceptions import DomainRuleError, StateConflictError, ValidationError
from dealflow.services import transaction_service


def _backdate(db, txn, disbursed_days_ago: int, now: datetime):
    txn.disbursed_at = now - timedelta(days=disbursed_days_ago)
    txn.due_at = txn.disbursed_at + timedelta(days=txn.tenor_days)
    db.commit()


# ── Creation ─────────────────────────────────────────────────────────


def test_total_due_is_simple_interest():
    assert transaction_service.total_due(1_920_000, 12, 7) == 1_924_418.63
    assert transaction_service.total_due(1_000_000, 0, 90) == 1_000_000


def test_create_from_lender_terms(db_session, transaction, nbfc, bid, seller, company):
    assert transaction.status == "PENDING_ESCROW"
    assert transaction.transaction_number == f"TXN-{transaction.id:08d}"
    # 80% of the locked 2,400,000
    assert transaction.funded_amount == 1_920_000
    assert (transaction.interest_rate, transaction.tenor_days) == (12, 7)
    assert transaction.total_due == 1_924_418.63
    assert transaction.nbfc_id == nbfc.id
    assert transaction.bid_id == bid.id
    assert (transaction.seller_id, transaction.buyer_id) == (seller.id, company.id)


def test_case_must_be_lender_approved(db_session, locked_case, ops_user):
    with pytest.raises(StateConflictError):
        transaction_service.create_transaction(db_session, locked_case.id, ops_user)


def test_one_live_transaction_per_case(db_session, transaction, approved_case, ops_user):
    with pytest.raises(StateConflictError):
        transaction_service.create_transaction(db_session, approved_case.id, ops_user)


# ── Escrow & disbursement ────────────────────────────────────────────


def test_escrow_then_disbursement(db_session, disbursed, approved_case, nbfc):
    assert disbursed.status == "DISBURSED"
    assert disbursed.tra_setup is True
    assert disbursed.tra_reference == "TRA-001"
    assert disbursed.disbursement_status == "COMPLETED"
    assert disbursed.disbursement_reference == "UTR001"
    assert disbursed.due_at - disbursed.disbursed_at == timedelta(days=7)
    assert approved_case.status == "DISBURSED"
    assert nbfc.capacity_used == 1_920_000


def test_disbursement_needs_escrow(db_session, transaction, ops_user):
    with pytest.raises(DomainRuleError):
        transaction_service.disburse(db_session, transaction.id, ops_user, "initiate")


def test_escrow_needs_tra_reference(db_session, transaction, ops_user):
    with pytest.raises(ValidationError):
        transaction_service.setup_escrow(db_session, transaction.id, ops_user, tra_reference="",
                                         account_number="1", bank_name="HDFC", ifsc="HDFC0000123")


def test_failed_disbursement_returns_to_escrow(db_session, transaction, ops_user):
    transaction_service.setup_escrow(db_session, transaction.id, ops_user, tra_reference="TRA-9",
                                     account_number="1", bank_name="HDFC", ifsc="HDFC0000123")
    transaction_service.disburse(db_session, transaction.id, ops_user, "initiate", "UTR9")
    txn = transaction_service.disburse(db_session, transaction.id, ops_user, "fail")
    assert txn.status == "ESCROW_SETUP"
    assert txn.disbursement_status == "FAILED"
    assert txn.disbursed_at is None


def test_unknown_disbursement_action(db_session, transaction, ops_user):
    with pytest.raises(ValidationError):
        transaction_service.disburse(db_session, transaction.id, ops_user, "retry")


# ── Repayment ────────────────────────────────────────────────────────


def test_partial_then_full_repayment(db_session, disbursed, approved_case, nbfc, ops_user):
    txn = transaction_service.record_repayment(db_session, disbursed.id, ops_user, 1_000_000, "NEFT-1")
    assert txn.status == "AWAITING_REPAYMENT"
    assert txn.repayment_status == "PARTIAL"
    assert txn.amount_received == 1_000_000

    txn = transaction_service.record_repayment(db_session, disbursed.id, ops_user, 924_418.63, "NEFT-2")
    assert txn.status == "REPAID"
    assert txn.repayment_status == "COMPLETED"
    assert [p["reference"] for p in txn.payments] == ["NEFT-1", "NEFT-2"]
    assert approved_case.status == "COMPLETED"
    assert nbfc.total_disbursed == 1_920_000
    assert nbfc.avg_interest_rate == 12


def test_repayment_needs_disbursement(db_session, transaction, ops_user):
    with pytest.raises(StateConflictError):
        transaction_service.record_repayment(db_session, transaction.id, ops_user, 100)


def test_repayment_amount_positive(db_session, disbursed, ops_user):
    with pytest.raises(ValidationError):
        transaction_service.record_repayment(db_session, disbursed.id, ops_user, 0)


# ── Overdue & recourse ───────────────────────────────────────────────


def test_three_days_overdue_no_recourse(db_session, disbursed, approved_case, company):
    now = datetime.now(timezone.utc)
    _backdate(db_session, disbursed, 10, now)

    txn = transaction_service.check_overdue(db_session, disbursed.id, now=now)
    assert txn.overdue_by_days == 3
    assert txn.status == "OVERDUE"
    assert txn.recourse_triggered is not True
    assert approved_case.status == "OVERDUE"
    assert company.overdue_count == 1


def test_fifteen_days_overdue_triggers_recourse(db_session, disbursed, seller, company):
    now = datetime.now(timezone.utc)
    _backdate(db_session, disbursed, 10, now)
    transaction_service.check_overdue(db_session, disbursed.id, now=now)

    later = now + timedelta(days=12)
    txn = transaction_service.check_overdue(db_session, disbursed.id, now=later)
    assert txn.overdue_by_days == 15
    assert txn.recourse_triggered is True
    assert txn.recourse_against_id == seller.id
    # counted once, on the first mark
    assert company.overdue_count == 1


def test_recourse_boundary_is_exclusive(db_session, disbursed):
    now = datetime.now(timezone.utc)
    _backdate(db_session, disbursed, 14, now)
    txn = transaction_service.check_overdue(db_session, disbursed.id, now=now)
    assert txn.overdue_by_days == 7
    assert txn.recourse_triggered is not True


def test_not_overdue_before_due_date(db_session, disbursed):
    txn = transaction_service.check_overdue(db_session, disbursed.id)
    assert txn.status == "DISBURSED"


def test_overdue_repayment_still_completes(db_session, disbursed, approved_case, ops_user):
    now = datetime.now(timezone.utc)
    _backdate(db_session, disbursed, 10, now)
    transaction_service.check_overdue(db_session, disbursed.id, now=now)
    db_session.commit()

    txn = transaction_service.record_repayment(db_session, disbursed.id, ops_user, disbursed.total_due)
    assert txn.status == "REPAID"
    assert approved_case.status == "COMPLETED"


# ── Default / cancel ─────────────────────────────────────────────────


def test_default_only_from_overdue(db_session, disbursed, ops_manager):
    with pytest.raises(StateConflictError):
        transaction_service.declare_default(db_session, disbursed.id, ops_manager)

    now = datetime.now(timezone.utc)
    _backdate(db_session, disbursed, 40, now)
    transaction_service.mark_overdue(db_session, disbursed.id, ops_manager)
    txn = transaction_service.declare_default(db_session, disbursed.id, ops_manager, "No contact for 30 days")
    assert txn.status == "DEFAULTED"
    assert txn.repayment_status == "DEFAULTED"


def test_cancel_before_disbursement_only(db_session, transaction, disbursed, ops_user):
    with pytest.raises(StateConflictError):
        transaction_service.cancel_transaction(db_session, disbursed.id, ops_user)


def test_cancel_pending_escrow(db_session, transaction, ops_user):
    txn = transaction_service.cancel_transaction(db_session, transaction.id, ops_user, "Seller withdrew")
    assert txn.status == "CANCELLED"
