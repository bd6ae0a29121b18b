"""
transaction_service.py — Funded instrument: escrow, disbursement, repayment, overdue, recourse

Business Rules:
- A transaction needs the case at NBFC_APPROVED and the approving lender's share
- funded = locked amount x funding% (default 100); rate = offered, else lender
  average, else 12; tenor = offered, else locked duration, else 30
- total_due = funded + funded x rate/100 x tenor/365 (simple interest)
- Disbursement: INITIATED -> COMPLETED | FAILED; COMPLETED needs tra_setup,
  stamps disbursed_at and due_at = disbursed_at + tenor
- Repayments accumulate; REPAID only when received >= total_due, which also
  completes the case and feeds the lender's metrics
- Overdue when now > due_at: days = floor(now - due_at); recourse against
  the seller once days > 7 (settings.recourse_trigger_days)
- Default only from OVERDUE; cancel only before disbursement

Called by: routers/transactions.py, sweep_service (actual overdue)
Depends on: models, state_machines, nbfc_service, notification_service
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import DomainRuleError, StateConflictError, ValidationError
from ..models import Bid, Case, Company, Nbfc, NbfcShare, SubContractor, Transaction, User
from ..state_machines import (
    CASE_MACHINE,
    TRANSACTION_MACHINE,
    CaseStatus,
    TransactionStatus,
    advance,
    fetch,
    record_status,
)
from ..utils.dates import utc, whole_days_between
from . import nbfc_service, notification_service

log = logging.getLogger("dealflow.transactions")

DISBURSEMENT_ACTIONS = ("initiate", "complete", "fail")
REPAYABLE = (
    TransactionStatus.DISBURSED.value,
    TransactionStatus.AWAITING_REPAYMENT.value,
    TransactionStatus.OVERDUE.value,
)


def total_due(funded_amount: float, interest_rate: float, tenor_days: int) -> float:
    return round(funded_amount + funded_amount * interest_rate / 100 * tenor_days / 365, 2)


def create_transaction(db: Session, case_id: int, user: User, nbfc_id: int | None = None) -> Transaction:
    case = fetch(db, Case, case_id)
    if case.status != CaseStatus.NBFC_APPROVED.value:
        raise StateConflictError(
            f"Case {case.case_number} must be NBFC_APPROVED to fund (is {case.status})",
            entity="Case", entity_id=case.id, current_status=case.status, attempted="create_transaction",
        )
    existing = db.query(Transaction).filter(
        Transaction.case_id == case.id, Transaction.status != TransactionStatus.CANCELLED.value
    ).first()
    if existing:
        raise StateConflictError(
            f"Case {case.case_number} already has transaction {existing.transaction_number}",
            entity="Transaction", entity_id=existing.id, current_status=existing.status,
            attempted="create_transaction",
        )
    lender_id = nbfc_id or case.selected_nbfc_id
    share = db.query(NbfcShare).filter(
        NbfcShare.case_id == case.id, NbfcShare.nbfc_id == lender_id, NbfcShare.status == "APPROVED"
    ).first()
    if share is None:
        raise DomainRuleError(f"NBFC {lender_id} has not approved case {case.case_number}",
                              entity="Case", entity_id=case.id)
    nbfc = fetch(db, Nbfc, lender_id)
    snapshot = case.commercial_snapshot or {}
    locked_amount = snapshot.get("final_amount", case.deal_value)

    funding_percentage = share.funding_percentage or 100
    funded = round(locked_amount * funding_percentage / 100, 2)
    rate = share.interest_rate or nbfc.avg_interest_rate or settings.default_interest_rate
    tenor = share.tenor_days or snapshot.get("final_duration") or settings.default_tenor_days

    txn = Transaction(
        case_id=case.id,
        bid_id=snapshot.get("bid_id"),
        seller_id=case.sub_contractor_id,
        buyer_id=case.company_id,
        nbfc_id=nbfc.id,
        funded_amount=funded,
        funding_percentage=funding_percentage,
        interest_rate=rate,
        tenor_days=tenor,
        total_due=total_due(funded, rate, tenor),
        payments=[],
        created_by_id=user.id,
    )
    if txn.bid_id is None:
        bid = db.query(Bid).filter(Bid.case_id == case.id, Bid.status == "COMMERCIAL_LOCKED").first()
        txn.bid_id = bid.id if bid else None
    record_status(txn, TransactionStatus.PENDING_ESCROW, user.id, f"Funded by {nbfc.code}")
    db.add(txn)
    db.flush()
    txn.transaction_number = f"TXN-{txn.id:08d}"
    sc = db.get(SubContractor, case.sub_contractor_id)
    if sc:
        sc.last_activity_at = txn.created_at or datetime.now(timezone.utc)
    db.commit()
    log.info(f"Transaction {txn.transaction_number} for {case.case_number}: {funded} @ {rate}% / {tenor}d")
    return txn


def get_transaction(db: Session, transaction_id: int) -> Transaction:
    return fetch(db, Transaction, transaction_id)


def setup_escrow(
    db: Session, transaction_id: int, user: User, *, tra_reference: str, account_number: str,
    bank_name: str, ifsc: str,
) -> Transaction:
    if not tra_reference or not account_number:
        raise ValidationError("tra_reference and account_number are required")
    txn = fetch(db, Transaction, transaction_id)
    case = fetch(db, Case, txn.case_id)
    now = datetime.now(timezone.utc)
    advance(db, txn, TRANSACTION_MACHINE, "setup_escrow", changed_by=user.id, now=now, notes=tra_reference)
    txn.tra_setup = True
    txn.tra_reference = tra_reference
    txn.escrow_account_number = account_number
    txn.escrow_bank_name = bank_name
    txn.escrow_ifsc = ifsc
    txn.escrow_setup_at = now
    if case.status == CaseStatus.NBFC_APPROVED.value:
        advance(db, case, CASE_MACHINE, "setup_escrow", changed_by=user.id, now=now)
    db.commit()
    log.info(f"{txn.transaction_number}: escrow {tra_reference} set up")
    return txn


def disburse(db: Session, transaction_id: int, user: User, action: str, reference: str | None = None) -> Transaction:
    """Drive the disbursement leg: initiate, then complete or fail."""
    if action not in DISBURSEMENT_ACTIONS:
        raise ValidationError(f"action must be one of {', '.join(DISBURSEMENT_ACTIONS)}")
    txn = fetch(db, Transaction, transaction_id)
    now = datetime.now(timezone.utc)

    if action == "initiate":
        if not txn.tra_setup:
            raise DomainRuleError(f"{txn.transaction_number}: escrow must be set up before disbursement",
                                  entity="Transaction", entity_id=txn.id, current_status=txn.status)
        advance(db, txn, TRANSACTION_MACHINE, "initiate_disbursement", changed_by=user.id, now=now, notes=reference)
        txn.disbursement_status = "INITIATED"
        txn.disbursement_reference = reference
    elif action == "fail":
        advance(db, txn, TRANSACTION_MACHINE, "fail_disbursement", changed_by=user.id, now=now, notes=reference)
        txn.disbursement_status = "FAILED"
    else:
        if not txn.tra_setup:
            raise DomainRuleError(f"{txn.transaction_number}: escrow must be set up before disbursement",
                                  entity="Transaction", entity_id=txn.id, current_status=txn.status)
        advance(db, txn, TRANSACTION_MACHINE, "complete_disbursement", changed_by=user.id, now=now, notes=reference)
        txn.disbursement_status = "COMPLETED"
        txn.disbursement_reference = reference or txn.disbursement_reference
        txn.disbursed_at = now
        txn.due_at = now + timedelta(days=txn.tenor_days)
        case = fetch(db, Case, txn.case_id)
        if case.status == CaseStatus.ESCROW_SETUP.value:
            advance(db, case, CASE_MACHINE, "disburse", changed_by=user.id, now=now)
        nbfc_service.consume_capacity(fetch(db, Nbfc, txn.nbfc_id), txn.funded_amount)
        sc = db.get(SubContractor, txn.seller_id)
        notification_service.queue(db, sc.email if sc else None, "funds_disbursed",
                                   transaction_number=txn.transaction_number, amount=txn.funded_amount,
                                   due_at=txn.due_at.isoformat())
    db.commit()
    log.info(f"{txn.transaction_number}: disbursement {action} -> {txn.disbursement_status}")
    return txn


def record_repayment(
    db: Session, transaction_id: int, user: User, amount: float, reference: str | None = None,
    now: datetime | None = None,
) -> Transaction:
    if amount is None or amount <= 0:
        raise ValidationError("amount must be positive")
    now = now or datetime.now(timezone.utc)
    txn = fetch(db, Transaction, transaction_id)
    if txn.status not in REPAYABLE:
        raise StateConflictError(
            f"{txn.transaction_number} cannot take repayments while {txn.status}",
            entity="Transaction", entity_id=txn.id, current_status=txn.status, attempted="repay",
        )
    received = round((txn.amount_received or 0) + amount, 2)
    event = "repay" if received >= txn.total_due else "record_partial"
    advance(db, txn, TRANSACTION_MACHINE, event, changed_by=user.id, now=now,
            notes=f"Received {amount} (ref {reference})")
    txn.amount_received = received
    txn.payments = list(txn.payments or []) + [
        {"amount": amount, "reference": reference, "received_at": now.isoformat(), "recorded_by": user.id}
    ]
    if event == "repay":
        txn.repayment_status = "COMPLETED"
        txn.repaid_at = now
        case = fetch(db, Case, txn.case_id)
        if CASE_MACHINE.can(case.status, "complete"):
            advance(db, case, CASE_MACHINE, "complete", changed_by=user.id, now=now)
        nbfc_service.update_metrics_on_close(db, txn.nbfc_id, txn.funded_amount, txn.interest_rate)
    elif txn.repayment_status != "OVERDUE":
        txn.repayment_status = "PARTIAL"
    db.commit()
    log.info(f"{txn.transaction_number}: received {amount}, total {received} / {txn.total_due}")
    return txn


def check_overdue(db: Session, transaction_id: int, now: datetime | None = None,
                  changed_by: int | None = None) -> Transaction:
    """Re-evaluate one disbursed transaction against its due date. No commit."""
    now = now or datetime.now(timezone.utc)
    txn = fetch(db, Transaction, transaction_id)
    if txn.due_at is None or txn.status not in REPAYABLE:
        return txn
    if now <= utc(txn.due_at):
        return txn

    days = whole_days_between(txn.due_at, now)
    first_mark = txn.status != TransactionStatus.OVERDUE.value
    if first_mark:
        advance(db, txn, TRANSACTION_MACHINE, "mark_overdue", changed_by=changed_by, now=now,
                notes=f"Overdue by {days} days")
        case = fetch(db, Case, txn.case_id)
        if CASE_MACHINE.can(case.status, "mark_overdue"):
            advance(db, case, CASE_MACHINE, "mark_overdue", changed_by=changed_by, now=now)
        buyer = db.get(Company, txn.buyer_id)
        if buyer:
            buyer.overdue_count = (buyer.overdue_count or 0) + 1
    txn.repayment_status = "OVERDUE"
    txn.overdue_by_days = days

    if days > settings.recourse_trigger_days and not txn.recourse_triggered:
        txn.recourse_triggered = True
        txn.recourse_triggered_at = now
        txn.recourse_against_id = txn.seller_id
        log.warning(f"{txn.transaction_number}: recourse triggered against seller {txn.seller_id} ({days}d overdue)")
    return txn


def mark_overdue(db: Session, transaction_id: int, user: User) -> Transaction:
    txn = check_overdue(db, transaction_id, changed_by=user.id)
    db.commit()
    return txn


def declare_default(db: Session, transaction_id: int, user: User, notes: str | None = None) -> Transaction:
    txn = fetch(db, Transaction, transaction_id)
    advance(db, txn, TRANSACTION_MACHINE, "declare_default", changed_by=user.id, notes=notes)
    txn.repayment_status = "DEFAULTED"
    notification_service.queue_role(db, "founder", "transaction_defaulted",
                                    transaction_number=txn.transaction_number, total_due=txn.total_due,
                                    received=txn.amount_received)
    db.commit()
    log.warning(f"{txn.transaction_number} declared DEFAULTED by {user.email}")
    return txn


def cancel_transaction(db: Session, transaction_id: int, user: User, reason: str | None = None) -> Transaction:
    txn = fetch(db, Transaction, transaction_id)
    advance(db, txn, TRANSACTION_MACHINE, "cancel", changed_by=user.id, notes=reason)
    db.commit()
    log.info(f"{txn.transaction_number} cancelled by {user.email}")
    return txn
