"""
onboarding_service.py — SubContractor / Company onboarding state machine

Business Rules:
- All party status changes go through apply_event(); any event whose
  target is ACTIVE runs the Blacklist Gate first, so no code path can
  activate a blacklisted PAN/GSTIN/email
- KYC approval stamps last_kyc_at and a 12-month expiry, and closes the
  KYC_COMPLETION SLA
- An approved RMT rejection opens a 6-month cooling period; re-entry is
  refused until it ends unless an EARLY_REENTRY request was approved
- Dormant marking records when and why; reactivation clears it
- New leads get a KYC_COMPLETION SLA
- EPC companies are moved by ops (credentials, docs, activation,
  suspension); activating a company starts its 12-month KYC validity

Called by: routers/onboarding.py, risk_service, blacklist_service,
           approval_service (post-approval), sweep_service
Depends on: state_machines, blacklist_service, sla_service, approval_service
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import AuthorizationError, DomainRuleError, StateConflictError, ValidationError
from ..models import Company, SubContractor, User
from ..state_machines import (
    COMPANY_MACHINE,
    SUB_CONTRACTOR_MACHINE,
    SubContractorStatus,
    advance,
    fetch,
    record_status,
)
from ..utils.dates import add_months, utc
from . import blacklist_service, notification_service

log = logging.getLogger("dealflow.onboarding")

# Events a person may trigger through the API; the rest are driven by
# risk assessment, approvals, blacklist cascades and sweeps.
SUB_CONTRACTOR_API_EVENTS = {
    "mark_profile_incomplete": ("sales", "ops", "ops_manager"),
    "complete_profile": ("sales", "ops", "ops_manager", "subcontractor"),
    "request_kyc": ("ops", "ops_manager"),
    "submit_kyc": ("subcontractor", "ops", "ops_manager"),
    "approve_kyc": ("ops", "ops_manager"),
    "reject_kyc": ("ops", "ops_manager"),
    "submit_docs": ("subcontractor", "ops", "ops_manager"),
    "request_epc_validation": ("ops", "ops_manager"),
    "epc_validate": ("epc",),
    "epc_reject": ("epc",),
    "activate": ("ops", "ops_manager"),
    "reactivate": ("ops", "ops_manager"),
    "reenter": ("ops", "ops_manager"),
}

COMPANY_API_EVENTS = {
    "issue_credentials": ("sales", "ops", "ops_manager"),
    "submit_docs": ("epc", "ops", "ops_manager"),
    "request_action": ("ops", "ops_manager"),
    "activate": ("ops", "ops_manager"),
    "reactivate": ("ops", "ops_manager"),
    "suspend": ("ops_manager",),
    "mark_dormant": ("ops", "ops_manager"),
}

_MACHINES = {SubContractor: SUB_CONTRACTOR_MACHINE, Company: COMPANY_MACHINE}


def apply_event(
    db: Session,
    party,
    event: str,
    *,
    changed_by: int | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> str:
    """Move a SubContractor or Company along its machine. No commit."""
    now = now or datetime.now(timezone.utc)
    machine = _MACHINES[type(party)]
    target = machine.next_state(party.status, event, party.id)

    if target == "ACTIVE":
        blacklist_service.ensure_not_blacklisted(db, party)
    if event == "reenter":
        _check_reentry(party, now)

    advance(db, party, machine, event, changed_by=changed_by, notes=notes, now=now)

    # Company documents are reviewed as part of activation; there is no
    # separate KYC step on its machine.
    if event == "approve_kyc" or (event == "activate" and isinstance(party, Company)):
        party.last_kyc_at = now
        party.kyc_expires_at = add_months(now, settings.kyc_validity_months)
        party.re_kyc_triggered = False
        party.re_kyc_reason = None
        party.kyc_expiry_notified_at = None
    elif event == "mark_dormant" and isinstance(party, SubContractor):
        party.dormant_marked_at = now
        party.dormant_reason = notes
    elif event == "reactivate" and isinstance(party, SubContractor):
        party.dormant_marked_at = None
        party.dormant_reason = None
    elif event == "reenter":
        party.cooling_started_at = None
        party.cooling_ends_at = None
        party.early_reentry_approved = False
    if isinstance(party, SubContractor) and changed_by is not None:
        party.last_activity_at = now
    return target


def _check_reentry(sc: SubContractor, now: datetime) -> None:
    if sc.early_reentry_approved:
        return
    if sc.cooling_ends_at and utc(sc.cooling_ends_at) > now:
        raise DomainRuleError(
            f"SubContractor {sc.id} is cooling until {utc(sc.cooling_ends_at).date().isoformat()}",
            entity="SubContractor",
            entity_id=sc.id,
            cooling_ends_at=utc(sc.cooling_ends_at).isoformat(),
        )


def create_sub_contractor(db: Session, user: User, **fields) -> SubContractor:
    """Sales lead entry. Opens the KYC_COMPLETION SLA."""
    from . import sla_service

    if not fields.get("company_name"):
        raise ValidationError("company_name is required")
    ids = blacklist_service.normalize(fields.pop("pan", None), fields.pop("gstin", None),
                                      fields.pop("email", None))
    sc = SubContractor(**fields, **ids, last_activity_at=datetime.now(timezone.utc))
    record_status(sc, SubContractorStatus.LEAD_CREATED, user.id, "Lead created")
    db.add(sc)
    db.flush()
    if blacklist_service.is_blacklisted(db, **ids):
        log.warning(f"SubContractor {sc.id} created but matches an active blacklist entry")
    sla_service.create_sla(db, "KYC_COMPLETION", sc.id, commit=False)
    db.commit()
    log.info(f"SubContractor {sc.id} ({sc.company_name}) created by {user.email}")
    return sc


def create_company(db: Session, user: User, **fields) -> Company:
    """EPC buyer lead entry. Identifiers are normalized like sellers'."""
    if not fields.get("name"):
        raise ValidationError("name is required")
    ids = blacklist_service.normalize(fields.pop("pan", None), fields.pop("gstin", None),
                                      fields.pop("email", None))
    co = Company(**fields, **ids)
    record_status(co, "LEAD_CREATED", user.id, "Company lead created")
    db.add(co)
    db.commit()
    log.info(f"Company {co.id} ({co.name}) created by {user.email}")
    return co


def transition_sub_contractor(
    db: Session, sub_contractor_id: int, event: str, user: User, notes: str | None = None
) -> SubContractor:
    """API-driven onboarding step, role-checked against SUB_CONTRACTOR_API_EVENTS."""
    from . import sla_service

    roles = SUB_CONTRACTOR_API_EVENTS.get(event)
    if roles is None:
        raise ValidationError(f"Unknown onboarding event: {event}")
    if user.role not in roles and user.role not in ("admin", "founder"):
        raise AuthorizationError(
            f"Role '{user.role}' cannot trigger '{event}'", entity="SubContractor",
            entity_id=sub_contractor_id, attempted=event,
        )
    sc = fetch(db, SubContractor, sub_contractor_id)
    if event in ("epc_validate", "epc_reject") and user.role == "epc" and sc.epc_company_id != user.company_id:
        raise AuthorizationError(
            "Only the EPC that referred this seller can validate it",
            entity="SubContractor", entity_id=sc.id,
        )
    target = apply_event(db, sc, event, changed_by=user.id, notes=notes)
    if event == "approve_kyc":
        sla_service.close_entity_slas(db, "KYC_COMPLETION", sc.id)
    notification_service.queue(db, sc.email, "onboarding_status", sub_contractor_id=sc.id, status=target)
    db.commit()
    log.info(f"SubContractor {sc.id}: {event} -> {target} by {user.email}")
    return sc


def transition_company(
    db: Session, company_id: int, event: str, user: User, notes: str | None = None
) -> Company:
    """API-driven EPC onboarding step, role-checked against COMPANY_API_EVENTS.

    An EPC user may only submit documents for their own company.
    """
    roles = COMPANY_API_EVENTS.get(event)
    if roles is None:
        raise ValidationError(f"Unknown company event: {event}")
    if user.role not in roles and user.role not in ("admin", "founder"):
        raise AuthorizationError(
            f"Role '{user.role}' cannot trigger '{event}'", entity="Company",
            entity_id=company_id, attempted=event,
        )
    co = fetch(db, Company, company_id)
    if user.role == "epc" and user.company_id != co.id:
        raise AuthorizationError("EPC users can only act on their own company", entity="Company", entity_id=co.id)
    target = apply_event(db, co, event, changed_by=user.id, notes=notes)
    notification_service.queue(db, co.email, "onboarding_status", company_id=co.id, status=target)
    db.commit()
    log.info(f"Company {co.id}: {event} -> {target} by {user.email}")
    return co


def start_cooling(db: Session, sc: SubContractor, actor_id: int | None, now: datetime,
                  reason: str | None = None) -> None:
    """RMT rejection confirmed: RMT_REJECTED then COOLING_PERIOD for six months. No commit."""
    if sc.status == SubContractorStatus.RMT_PENDING.value:
        apply_event(db, sc, "rmt_reject", changed_by=actor_id, notes=reason, now=now)
    apply_event(db, sc, "start_cooling", changed_by=actor_id, notes=reason, now=now)
    sc.cooling_started_at = now
    sc.cooling_ends_at = add_months(now, settings.cooling_period_months)
    sc.cooling_reason = reason
    sc.early_reentry_approved = False


def request_early_reentry(db: Session, sub_contractor_id: int, user: User, reason: str):
    from . import approval_service

    if not reason or not reason.strip():
        raise ValidationError("A justification is required for early re-entry")
    sc = fetch(db, SubContractor, sub_contractor_id)
    if sc.status != SubContractorStatus.COOLING_PERIOD.value:
        raise StateConflictError(
            f"SubContractor {sc.id} is not in a cooling period",
            entity="SubContractor", entity_id=sc.id, current_status=sc.status,
            attempted="request_early_reentry",
        )
    existing = approval_service.open_request_for(db, "EARLY_REENTRY", "subcontractor", sc.id)
    if existing:
        return existing
    return approval_service.create_request(
        db, user,
        request_type="EARLY_REENTRY",
        entity_type="subcontractor",
        entity_id=sc.id,
        title=f"Early re-entry for {sc.company_name}",
        description=reason,
    )


def grant_early_reentry(db: Session, sub_contractor_id: int, actor_id: int | None, now: datetime) -> None:
    """Post-approval effect of EARLY_REENTRY. No commit."""
    sc = fetch(db, SubContractor, sub_contractor_id)
    sc.early_reentry_approved = True
    apply_event(db, sc, "reenter", changed_by=actor_id, notes="Early re-entry approved", now=now)


def mark_dormant(db: Session, party, now: datetime, reason: str) -> None:
    """Sweep-driven. No commit."""
    apply_event(db, party, "mark_dormant", notes=reason, now=now)
