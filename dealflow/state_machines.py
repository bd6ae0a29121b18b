"""
state_machines.py — Explicit transition tables for every stateful entity

Each entity gets one StateMachine listing every legal (status, event) edge
exactly once. Services never assign `status` directly: they call
advance(), which resolves the edge, writes it with a compare-and-set
UPDATE (… WHERE id = ? AND status = <status we read>), and appends the
status_history entry. A caller racing a stale read gets a
StateConflictError instead of overwriting the winner.

Business Rules:
- status_history is append-only; status always equals its last entry
- An event that is not legal from the current status raises StateConflictError
  carrying entity, id, current status and the attempted event
- A compare-and-set that matches zero rows raises StateConflictError

Called by: all services under dealflow/services/
Depends on: dealflow/exceptions.py
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from sqlalchemy import update
from sqlalchemy.orm import Session

from .exceptions import NotFoundError, StateConflictError


# ── Status enums ─────────────────────────────────────────────────────


class SubContractorStatus(str, Enum):
    LEAD_CREATED = "LEAD_CREATED"
    PROFILE_INCOMPLETE = "PROFILE_INCOMPLETE"
    PROFILE_COMPLETED = "PROFILE_COMPLETED"
    KYC_PENDING = "KYC_PENDING"
    KYC_IN_PROGRESS = "KYC_IN_PROGRESS"
    KYC_COMPLETED = "KYC_COMPLETED"
    DOCS_SUBMITTED = "DOCS_SUBMITTED"
    RMT_PENDING = "RMT_PENDING"
    RMT_APPROVED = "RMT_APPROVED"
    RMT_REJECTED = "RMT_REJECTED"
    EPC_VALIDATION_PENDING = "EPC_VALIDATION_PENDING"
    EPC_VALIDATED = "EPC_VALIDATED"
    EPC_REJECTED = "EPC_REJECTED"
    ACTIVE = "ACTIVE"
    DORMANT = "DORMANT"
    COOLING_PERIOD = "COOLING_PERIOD"
    BLACKLISTED = "BLACKLISTED"


class CompanyStatus(str, Enum):
    LEAD_CREATED = "LEAD_CREATED"
    CREDENTIALS_CREATED = "CREDENTIALS_CREATED"
    DOCS_SUBMITTED = "DOCS_SUBMITTED"
    ACTION_REQUIRED = "ACTION_REQUIRED"
    ACTIVE = "ACTIVE"
    DORMANT = "DORMANT"
    SUSPENDED = "SUSPENDED"
    BLACKLISTED = "BLACKLISTED"


class CaseStatus(str, Enum):
    READY_FOR_COMPANY_REVIEW = "READY_FOR_COMPANY_REVIEW"
    EPC_REJECTED = "EPC_REJECTED"
    EPC_VERIFIED = "EPC_VERIFIED"
    RMT_APPROVED = "RMT_APPROVED"
    RMT_REJECTED = "RMT_REJECTED"
    RMT_NEEDS_REVIEW = "RMT_NEEDS_REVIEW"
    BID_PLACED = "BID_PLACED"
    NEGOTIATION_IN_PROGRESS = "NEGOTIATION_IN_PROGRESS"
    COMMERCIAL_LOCKED = "COMMERCIAL_LOCKED"
    SHARED_WITH_NBFC = "SHARED_WITH_NBFC"
    NBFC_APPROVED = "NBFC_APPROVED"
    NBFC_REJECTED = "NBFC_REJECTED"
    ESCROW_SETUP = "ESCROW_SETUP"
    DISBURSED = "DISBURSED"
    COMPLETED = "COMPLETED"
    OVERDUE = "OVERDUE"


class BidStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    NEGOTIATION_IN_PROGRESS = "NEGOTIATION_IN_PROGRESS"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    COMMERCIAL_LOCKED = "COMMERCIAL_LOCKED"


class TransactionStatus(str, Enum):
    PENDING_ESCROW = "PENDING_ESCROW"
    ESCROW_SETUP = "ESCROW_SETUP"
    PENDING_DISBURSEMENT = "PENDING_DISBURSEMENT"
    DISBURSED = "DISBURSED"
    AWAITING_REPAYMENT = "AWAITING_REPAYMENT"
    REPAID = "REPAID"
    OVERDUE = "OVERDUE"
    DEFAULTED = "DEFAULTED"
    CANCELLED = "CANCELLED"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    ESCALATED = "ESCALATED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class SlaStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REMINDER_1_SENT = "REMINDER_1_SENT"
    REMINDER_2_SENT = "REMINDER_2_SENT"
    ESCALATED = "ESCALATED"
    DORMANT = "DORMANT"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class BlacklistStatus(str, Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


class AssessmentStatus(str, Enum):
    PENDING = "PENDING"
    NEEDS_OPS_APPROVAL = "NEEDS_OPS_APPROVAL"
    NEEDS_FOUNDER_APPROVAL = "NEEDS_FOUNDER_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# ── Machine ──────────────────────────────────────────────────────────


class StateMachine:
    """A closed set of (status, event) -> status edges for one entity kind."""

    def __init__(self, entity: str, rows: Iterable[tuple]):
        self.entity = entity
        self.edges: dict[tuple[str, str], str] = {}
        for sources, event, target in rows:
            if isinstance(sources, (str, Enum)):
                sources = (sources,)
            for source in sources:
                key = (_value(source), event)
                if key in self.edges:
                    raise ValueError(f"{entity}: duplicate edge {key}")
                self.edges[key] = _value(target)

    def next_state(self, current: str, event: str, entity_id=None) -> str:
        target = self.edges.get((_value(current), event))
        if target is None:
            raise StateConflictError(
                f"{self.entity} {entity_id} cannot '{event}' from status {_value(current)}",
                entity=self.entity,
                entity_id=entity_id,
                current_status=_value(current),
                attempted=event,
            )
        return target

    def can(self, current: str, event: str) -> bool:
        return (_value(current), event) in self.edges

    def events_from(self, current: str) -> list[str]:
        return sorted(e for (s, e) in self.edges if s == _value(current))

    def sources_for(self, event: str) -> set[str]:
        return {s for (s, e) in self.edges if e == event}


def _value(status) -> str:
    return status.value if isinstance(status, Enum) else status


def _all_but(enum_cls, *excluded) -> tuple:
    return tuple(s for s in enum_cls if s not in excluded)


SC = SubContractorStatus
SUB_CONTRACTOR_MACHINE = StateMachine("SubContractor", [
    (SC.LEAD_CREATED, "mark_profile_incomplete", SC.PROFILE_INCOMPLETE),
    ((SC.LEAD_CREATED, SC.PROFILE_INCOMPLETE), "complete_profile", SC.PROFILE_COMPLETED),
    (SC.PROFILE_COMPLETED, "request_kyc", SC.KYC_PENDING),
    (SC.KYC_PENDING, "submit_kyc", SC.KYC_IN_PROGRESS),
    (SC.KYC_IN_PROGRESS, "approve_kyc", SC.KYC_COMPLETED),
    (SC.KYC_IN_PROGRESS, "reject_kyc", SC.KYC_PENDING),
    (SC.KYC_COMPLETED, "submit_docs", SC.DOCS_SUBMITTED),
    ((SC.KYC_COMPLETED, SC.DOCS_SUBMITTED), "start_risk_assessment", SC.RMT_PENDING),
    (SC.RMT_PENDING, "rmt_approve", SC.RMT_APPROVED),
    (SC.RMT_PENDING, "rmt_reject", SC.RMT_REJECTED),
    (SC.RMT_REJECTED, "start_cooling", SC.COOLING_PERIOD),
    (SC.COOLING_PERIOD, "reenter", SC.LEAD_CREATED),
    (SC.RMT_APPROVED, "request_epc_validation", SC.EPC_VALIDATION_PENDING),
    (SC.EPC_VALIDATION_PENDING, "epc_validate", SC.EPC_VALIDATED),
    (SC.EPC_VALIDATION_PENDING, "epc_reject", SC.EPC_REJECTED),
    (SC.EPC_VALIDATED, "activate", SC.ACTIVE),
    (SC.DORMANT, "reactivate", SC.ACTIVE),
    (_all_but(SC, SC.DORMANT, SC.COOLING_PERIOD, SC.BLACKLISTED), "mark_dormant", SC.DORMANT),
    (_all_but(SC, SC.BLACKLISTED), "blacklist", SC.BLACKLISTED),
])

CO = CompanyStatus
COMPANY_MACHINE = StateMachine("Company", [
    (CO.LEAD_CREATED, "issue_credentials", CO.CREDENTIALS_CREATED),
    ((CO.LEAD_CREATED, CO.CREDENTIALS_CREATED, CO.ACTION_REQUIRED), "submit_docs", CO.DOCS_SUBMITTED),
    (CO.DOCS_SUBMITTED, "request_action", CO.ACTION_REQUIRED),
    (CO.DOCS_SUBMITTED, "activate", CO.ACTIVE),
    ((CO.DORMANT, CO.SUSPENDED), "reactivate", CO.ACTIVE),
    (CO.ACTIVE, "suspend", CO.SUSPENDED),
    (CO.ACTIVE, "mark_dormant", CO.DORMANT),
    (_all_but(CO, CO.BLACKLISTED), "blacklist", CO.BLACKLISTED),
])

CS = CaseStatus
CASE_MACHINE = StateMachine("Case", [
    (CS.READY_FOR_COMPANY_REVIEW, "epc_approve", CS.EPC_VERIFIED),
    (CS.READY_FOR_COMPANY_REVIEW, "epc_reject", CS.EPC_REJECTED),
    ((CS.EPC_VERIFIED, CS.RMT_NEEDS_REVIEW), "rmt_approve", CS.RMT_APPROVED),
    ((CS.EPC_VERIFIED, CS.RMT_NEEDS_REVIEW), "rmt_reject", CS.RMT_REJECTED),
    (CS.EPC_VERIFIED, "rmt_needs_review", CS.RMT_NEEDS_REVIEW),
    ((CS.EPC_VERIFIED, CS.RMT_APPROVED), "place_bid", CS.BID_PLACED),
    (CS.BID_PLACED, "negotiate", CS.NEGOTIATION_IN_PROGRESS),
    ((CS.BID_PLACED, CS.NEGOTIATION_IN_PROGRESS), "bid_rejected", CS.EPC_VERIFIED),
    ((CS.BID_PLACED, CS.NEGOTIATION_IN_PROGRESS), "lock", CS.COMMERCIAL_LOCKED),
    ((CS.COMMERCIAL_LOCKED, CS.NBFC_REJECTED), "share_with_nbfc", CS.SHARED_WITH_NBFC),
    (CS.SHARED_WITH_NBFC, "nbfc_approve", CS.NBFC_APPROVED),
    (CS.SHARED_WITH_NBFC, "nbfc_reject", CS.NBFC_REJECTED),
    (CS.NBFC_APPROVED, "setup_escrow", CS.ESCROW_SETUP),
    (CS.ESCROW_SETUP, "disburse", CS.DISBURSED),
    (CS.DISBURSED, "mark_overdue", CS.OVERDUE),
    ((CS.DISBURSED, CS.OVERDUE), "complete", CS.COMPLETED),
])

BS = BidStatus
BID_MACHINE = StateMachine("Bid", [
    ((BS.SUBMITTED, BS.NEGOTIATION_IN_PROGRESS), "negotiate", BS.NEGOTIATION_IN_PROGRESS),
    ((BS.SUBMITTED, BS.NEGOTIATION_IN_PROGRESS), "lock", BS.COMMERCIAL_LOCKED),
    ((BS.SUBMITTED, BS.NEGOTIATION_IN_PROGRESS), "reject", BS.REJECTED),
])

TS = TransactionStatus
TRANSACTION_MACHINE = StateMachine("Transaction", [
    (TS.PENDING_ESCROW, "setup_escrow", TS.ESCROW_SETUP),
    (TS.ESCROW_SETUP, "initiate_disbursement", TS.PENDING_DISBURSEMENT),
    (TS.PENDING_DISBURSEMENT, "complete_disbursement", TS.DISBURSED),
    (TS.PENDING_DISBURSEMENT, "fail_disbursement", TS.ESCROW_SETUP),
    ((TS.DISBURSED, TS.AWAITING_REPAYMENT), "record_partial", TS.AWAITING_REPAYMENT),
    (TS.OVERDUE, "record_partial", TS.OVERDUE),
    ((TS.DISBURSED, TS.AWAITING_REPAYMENT, TS.OVERDUE), "repay", TS.REPAID),
    ((TS.DISBURSED, TS.AWAITING_REPAYMENT), "mark_overdue", TS.OVERDUE),
    (TS.OVERDUE, "declare_default", TS.DEFAULTED),
    ((TS.PENDING_ESCROW, TS.ESCROW_SETUP), "cancel", TS.CANCELLED),
])

AS = ApprovalStatus
APPROVAL_MACHINE = StateMachine("ApprovalRequest", [
    ((AS.PENDING, AS.ESCALATED), "approve_level", AS.PENDING),
    ((AS.PENDING, AS.ESCALATED), "approve", AS.APPROVED),
    ((AS.PENDING, AS.ESCALATED), "reject", AS.REJECTED),
    ((AS.PENDING, AS.ESCALATED), "escalate", AS.ESCALATED),
    ((AS.PENDING, AS.ESCALATED), "cancel", AS.CANCELLED),
])

SS = SlaStatus
SLA_OPEN_STATUSES = (SS.ACTIVE, SS.REMINDER_1_SENT, SS.REMINDER_2_SENT, SS.ESCALATED)
SLA_MACHINE = StateMachine("Sla", [
    (SS.ACTIVE, "remind_1", SS.REMINDER_1_SENT),
    ((SS.ACTIVE, SS.REMINDER_1_SENT), "remind_2", SS.REMINDER_2_SENT),
    ((SS.ACTIVE, SS.REMINDER_1_SENT, SS.REMINDER_2_SENT), "escalate", SS.ESCALATED),
    (SLA_OPEN_STATUSES, "go_dormant", SS.DORMANT),
    (SLA_OPEN_STATUSES, "complete", SS.COMPLETED),
    (SLA_OPEN_STATUSES, "cancel", SS.CANCELLED),
])

BILL_MACHINE = StateMachine("Bill", [
    ("UPLOADED", "verify", "VERIFIED"),
    ("UPLOADED", "reject", "REJECTED"),
])

BL = BlacklistStatus
BLACKLIST_MACHINE = StateMachine("Blacklist", [
    (BL.PENDING_APPROVAL, "approve", BL.ACTIVE),
    (BL.PENDING_APPROVAL, "reject", BL.REVOKED),
    (BL.ACTIVE, "revoke", BL.REVOKED),
])

RA = AssessmentStatus
_OPEN_ASSESSMENT = (RA.PENDING, RA.NEEDS_OPS_APPROVAL, RA.NEEDS_FOUNDER_APPROVAL)
ASSESSMENT_MACHINE = StateMachine("SellerRiskAssessment", [
    (_OPEN_ASSESSMENT, "approve", RA.APPROVED),
    (_OPEN_ASSESSMENT, "reject", RA.REJECTED),
])


# ── Persistence helpers ──────────────────────────────────────────────


def fetch(db: Session, model, entity_id: int, label: str | None = None):
    """Re-read a row (bypassing the identity map) or raise NotFoundError."""
    obj = (
        db.query(model)
        .populate_existing()
        .with_for_update()
        .filter(model.id == entity_id)
        .first()
    )
    if obj is None:
        raise NotFoundError(label or model.__name__, entity_id)
    return obj


def record_status(obj, status, changed_by: int | None = None, notes: str | None = None,
                  now: datetime | None = None) -> None:
    """Set status and append the matching history entry (new rows, self-loops)."""
    now = now or datetime.now(timezone.utc)
    status = _value(status)
    obj.status = status
    obj.status_history = list(obj.status_history or []) + [{
        "status": status,
        "changed_at": now.isoformat(),
        "changed_by": changed_by,
        "notes": notes,
    }]


def advance(
    db: Session,
    obj,
    machine: StateMachine,
    event: str,
    *,
    changed_by: int | None = None,
    notes: str | None = None,
    now: datetime | None = None,
    expect: dict | None = None,
) -> str:
    """Apply `event` to a persisted row with compare-and-set semantics.

    `expect` adds extra column equalities to the guard (e.g. the approval
    level the caller decided on). Returns the new status.
    """
    current = obj.status
    target = machine.next_state(current, event, obj.id)
    model = type(obj)
    now = now or datetime.now(timezone.utc)

    stmt = update(model).where(model.id == obj.id, model.status == current)
    for column, value in (expect or {}).items():
        stmt = stmt.where(getattr(model, column) == value)
    result = db.execute(
        stmt.values(status=target, updated_at=now).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StateConflictError(
            f"{machine.entity} {obj.id} changed underneath this '{event}' (read as {current})",
            entity=machine.entity,
            entity_id=obj.id,
            current_status=current,
            attempted=event,
        )
    record_status(obj, target, changed_by, notes, now)
    return target
