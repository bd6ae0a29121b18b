"""
case_service.py — Bills, CWC requests (cases) and their EPC / RMT reviews

Business Rules:
- Bills start UPLOADED; ops verify or reject them once
- A stored bill file is deleted again if the bill row cannot be saved
- A case (the seller's CWC request) needs a VERIFIED bill, a seller that
  clears the Blacklist Gate and is not DORMANT, COOLING_PERIOD or
  BLACKLISTED, and no other live case on the bill
- Case numbers are GRY-000001 style, derived from the row id
- EPC review only by the EPC named on the case, only from
  READY_FOR_COMPANY_REVIEW (no skip-ahead)
- RMT may approve / reject / flag an EPC-verified case
- Opening a case starts an EPC_VALIDATION SLA; the EPC decision closes it

Called by: routers/cases.py
Depends on: models, state_machines, blacklist_service, sla_service, storage_service
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from ..exceptions import (
    AuthorizationError,
    DomainRuleError,
    ExternalAdapterError,
    StateConflictError,
    ValidationError,
)
from ..models import Bill, Case, NbfcShare, SubContractor, User
from ..state_machines import (
    BILL_MACHINE,
    CASE_MACHINE,
    CaseStatus,
    SubContractorStatus,
    advance,
    fetch,
    record_status,
)
from . import blacklist_service, notification_service, sla_service, storage_service

log = logging.getLogger("dealflow.cases")

_DEAD_CASE_STATUSES = (CaseStatus.EPC_REJECTED.value, CaseStatus.RMT_REJECTED.value)
_BARRED_SELLER_STATUSES = (
    SubContractorStatus.DORMANT.value,
    SubContractorStatus.COOLING_PERIOD.value,
    SubContractorStatus.BLACKLISTED.value,
)


# ── Bills ────────────────────────────────────────────────────────────


def create_bill(
    db: Session,
    user: User,
    *,
    sub_contractor_id: int,
    company_id: int,
    bill_number: str,
    amount: float,
    file_bytes: bytes | None = None,
    mime_type: str | None = None,
    file_url: str | None = None,
) -> Bill:
    """Register a bill. An attached file is stored first; storage errors propagate."""
    if amount is None or amount <= 0:
        raise ValidationError("amount must be positive")
    if not bill_number or not bill_number.strip():
        raise ValidationError("bill_number is required")
    sc = fetch(db, SubContractor, sub_contractor_id)
    stored = None
    if file_bytes:
        stored = storage_service.upload(file_bytes, mime_type or "application/octet-stream")
    bill = Bill(
        bill_number=bill_number.strip(),
        amount=amount,
        sub_contractor_id=sc.id,
        company_id=company_id,
        file_url=stored["url"] if stored else file_url,
        file_public_id=stored["public_id"] if stored else None,
    )
    record_status(bill, "UPLOADED", user.id, "Bill uploaded")
    try:
        db.add(bill)
        db.flush()
        sla_service.create_sla(db, "BILL_VERIFICATION", bill.id, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        if stored:
            _discard_file(stored["public_id"])
        raise
    log.info(f"Bill {bill.id} ({bill.bill_number}, {amount}) uploaded for SubContractor {sc.id}")
    return bill


def _discard_file(public_id: str) -> None:
    try:
        storage_service.delete(public_id)
    except ExternalAdapterError as e:
        log.warning(f"Stored file {public_id} orphaned: {e}")


def verify_bill(db: Session, bill_id: int, user: User, approve: bool, notes: str | None = None) -> Bill:
    bill = fetch(db, Bill, bill_id)
    advance(db, bill, BILL_MACHINE, "verify" if approve else "reject", changed_by=user.id, notes=notes)
    bill.verified_by_id = user.id
    bill.verification_notes = notes
    sla_service.close_entity_slas(db, "BILL_VERIFICATION", bill.id)
    sc = db.get(SubContractor, bill.sub_contractor_id)
    notification_service.queue(db, sc.email if sc else None, "bill_reviewed",
                               bill_id=bill.id, status=bill.status)
    db.commit()
    log.info(f"Bill {bill.id} -> {bill.status} by {user.email}")
    return bill


# ── Cases ────────────────────────────────────────────────────────────


def create_case(db: Session, user: User, bill_id: int) -> Case:
    """Raise the CWC request for a verified bill."""
    bill = fetch(db, Bill, bill_id)
    if bill.status != "VERIFIED":
        raise StateConflictError(
            f"Bill {bill.id} must be VERIFIED before a case can be raised",
            entity="Bill", entity_id=bill.id, current_status=bill.status, attempted="create_case",
        )
    if user.role == "subcontractor" and user.sub_contractor_id != bill.sub_contractor_id:
        raise AuthorizationError("Sellers can only raise cases for their own bills",
                                 entity="Bill", entity_id=bill.id)
    sc = fetch(db, SubContractor, bill.sub_contractor_id)
    blacklist_service.ensure_not_blacklisted(db, sc)
    if sc.status in _BARRED_SELLER_STATUSES:
        raise DomainRuleError(
            f"SubContractor {sc.id} cannot raise a case while {sc.status}",
            entity="SubContractor", entity_id=sc.id, current_status=sc.status,
        )
    live = (
        db.query(Case)
        .filter(Case.bill_id == bill.id, Case.status.notin_(_DEAD_CASE_STATUSES))
        .first()
    )
    if live:
        raise StateConflictError(
            f"Bill {bill.id} already backs case {live.case_number}",
            entity="Case", entity_id=live.id, current_status=live.status, attempted="create_case",
        )

    now = datetime.now(timezone.utc)
    case = Case(
        bill_id=bill.id,
        sub_contractor_id=sc.id,
        company_id=bill.company_id,
        deal_value=bill.amount,
        risk_level=sc.risk_category or "MEDIUM",
        created_by_id=user.id,
    )
    record_status(case, CaseStatus.READY_FOR_COMPANY_REVIEW, user.id, "CWC request raised", now)
    db.add(case)
    db.flush()
    case.case_number = f"GRY-{case.id:06d}"
    sc.last_activity_at = now
    sla_service.create_sla(db, "EPC_VALIDATION", case.id, now=now, commit=False)
    notification_service.queue(db, f"company:{case.company_id}", "case_ready_for_review",
                               case_id=case.id, case_number=case.case_number)
    db.commit()
    log.info(f"Case {case.case_number} raised for bill {bill.id} by {user.email}")
    return case


def get_case(db: Session, case_id: int) -> Case:
    return fetch(db, Case, case_id)


def list_cases(db: Session, user: User, status: str | None = None) -> list[Case]:
    """Role-scoped: EPCs see their company's, sellers their own, lenders what was shared."""
    q = db.query(Case)
    if user.role == "epc":
        q = q.filter(Case.company_id == user.company_id)
    elif user.role == "subcontractor":
        q = q.filter(Case.sub_contractor_id == user.sub_contractor_id)
    elif user.role == "nbfc":
        shared = db.query(NbfcShare.case_id).filter(NbfcShare.nbfc_id == user.nbfc_id)
        q = q.filter(Case.id.in_(shared))
    if status:
        q = q.filter(Case.status == status)
    return q.order_by(Case.created_at.desc()).all()


def review_case(db: Session, case_id: int, user: User, approve: bool, notes: str | None = None) -> Case:
    """EPC verifies or rejects the bill raised against it."""
    case = fetch(db, Case, case_id)
    if user.role != "admin" and (user.role != "epc" or user.company_id != case.company_id):
        raise AuthorizationError(
            f"Only the EPC on case {case.case_number} can review it",
            entity="Case", entity_id=case.id, current_status=case.status,
        )
    event = "epc_approve" if approve else "epc_reject"
    advance(db, case, CASE_MACHINE, event, changed_by=user.id, notes=notes)
    case.epc_review_notes = notes
    sla_service.close_entity_slas(db, "EPC_VALIDATION", case.id)
    sc = db.get(SubContractor, case.sub_contractor_id)
    notification_service.queue(db, sc.email if sc else None, "case_epc_reviewed",
                               case_number=case.case_number, status=case.status)
    db.commit()
    log.info(f"Case {case.case_number}: {event} by {user.email}")
    return case


RMT_EVENTS = {"approve": "rmt_approve", "reject": "rmt_reject", "needs_review": "rmt_needs_review"}


def rmt_review_case(db: Session, case_id: int, user: User, decision: str, notes: str | None = None) -> Case:
    event = RMT_EVENTS.get(decision)
    if event is None:
        raise ValidationError(f"decision must be one of {', '.join(RMT_EVENTS)}")
    case = fetch(db, Case, case_id)
    advance(db, case, CASE_MACHINE, event, changed_by=user.id, notes=notes)
    case.rmt_review_notes = notes
    db.commit()
    log.info(f"Case {case.case_number}: {event} by {user.email}")
    return case
