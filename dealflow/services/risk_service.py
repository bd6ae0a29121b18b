"""
risk_service.py — Risk Scoring Engine + seller risk assessment lifecycle

Scores a prospective seller from the 12-item RMT checklist.

Business Rules:
- Score starts at 100, each unverified item subtracts its penalty, clamp [0, 100]
- Penalty totals per category: company verification 25, address 10,
  financial health 30, past track record 20, key personnel 15,
  blacklist 50, industry clearance 10
- LOW >= 80, MEDIUM 50-79, HIGH < 50
- Every checklist write recomputes score, category, recommendation and
  status together (LOW -> PENDING, MEDIUM -> NEEDS_OPS_APPROVAL,
  HIGH -> NEEDS_FOUNDER_APPROVAL)
- The Blacklist Gate runs before an assessment is created
- PROCEED needs company verification, financial health and blacklist items
- PROCEED on LOW approves at once; MEDIUM/HIGH and every REJECT go through
  an ApprovalRequest, resolved in resolve_assessment()
- An approved rejection puts the seller into a 6-month cooling period

Called by: routers/risk.py, approval_service (post-decision)
Depends on: models, blacklist_service, approval_service, onboarding_service
"""

import logging
from datetime import datetime, timezone
from typing import Mapping

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..exceptions import DomainRuleError, StateConflictError, ValidationError
from ..models import SellerRiskAssessment, SubContractor, User
from ..state_machines import ASSESSMENT_MACHINE, AssessmentStatus, advance, fetch, record_status
from . import approval_service, blacklist_service, notification_service, onboarding_service

log = logging.getLogger("dealflow.risk")

PENALTIES = {
    # company verification (25)
    "business_registered": 10,
    "gst_active": 10,
    "pan_verified": 5,
    # address (10)
    "address_verified": 10,
    # financial health (30)
    "bank_statements_provided": 10,
    "positive_cash_flow": 10,
    "regular_transactions": 10,
    # past track record (20)
    "past_projects_verified": 10,
    "epc_references_valid": 10,
    # key personnel (15)
    "key_personnel_verified": 15,
    # blacklist (50)
    "blacklist_check": 50,
    # industry clearance (10)
    "industry_clearance": 10,
}

REQUIRED_FOR_PROCEED = (
    "business_registered",
    "gst_active",
    "pan_verified",
    "bank_statements_provided",
    "positive_cash_flow",
    "regular_transactions",
    "blacklist_check",
)

RECOMMENDATION = {"LOW": "PROCEED", "MEDIUM": "REVIEW", "HIGH": "REJECT"}
TIER_STATUS = {
    "LOW": AssessmentStatus.PENDING,
    "MEDIUM": AssessmentStatus.NEEDS_OPS_APPROVAL,
    "HIGH": AssessmentStatus.NEEDS_FOUNDER_APPROVAL,
}


# ── Scoring engine ───────────────────────────────────────────────────


def compute_score(checklist: Mapping[str, bool]) -> int:
    unknown = set(checklist) - set(PENALTIES)
    if unknown:
        raise ValidationError(f"Unknown checklist item(s): {', '.join(sorted(unknown))}")
    score = 100 - sum(p for item, p in PENALTIES.items() if not checklist.get(item, False))
    return max(0, min(100, score))


def categorize(score: int) -> str:
    if score >= 80:
        return "LOW"
    if score >= 50:
        return "MEDIUM"
    return "HIGH"


def _rescore(a: SellerRiskAssessment, actor_id: int | None, now: datetime | None = None) -> None:
    a.risk_score = compute_score(a.checklist)
    a.risk_category = categorize(a.risk_score)
    a.recommendation = RECOMMENDATION[a.risk_category]
    target = TIER_STATUS[a.risk_category].value
    if a.status != target or not a.status_history:
        record_status(a, target, actor_id, f"Score {a.risk_score} ({a.risk_category})", now)


# ── Assessment lifecycle ─────────────────────────────────────────────


def create_assessment(db: Session, sub_contractor_id: int, user: User) -> SellerRiskAssessment:
    sc = fetch(db, SubContractor, sub_contractor_id)
    blacklist_service.ensure_not_blacklisted(db, sc)

    open_one = (
        db.query(SellerRiskAssessment)
        .filter(
            SellerRiskAssessment.sub_contractor_id == sc.id,
            SellerRiskAssessment.status.notin_(
                [AssessmentStatus.APPROVED.value, AssessmentStatus.REJECTED.value]
            ),
        )
        .first()
    )
    if open_one:
        raise StateConflictError(
            f"SubContractor {sc.id} already has open assessment {open_one.id}",
            entity="SellerRiskAssessment",
            entity_id=open_one.id,
            current_status=open_one.status,
            attempted="create",
        )

    onboarding_service.apply_event(db, sc, "start_risk_assessment", changed_by=user.id,
                                   notes="Risk assessment started")
    a = SellerRiskAssessment(sub_contractor_id=sc.id, assessed_by_id=user.id, blacklist_check=True)
    _rescore(a, user.id)
    db.add(a)
    db.flush()
    sc.risk_assessment_id = a.id
    db.commit()
    log.info(f"Risk assessment {a.id} created for SubContractor {sc.id} by {user.email}")
    return a


def update_checklist(
    db: Session, assessment_id: int, updates: Mapping[str, bool], user: User, notes: str | None = None
) -> SellerRiskAssessment:
    a = fetch(db, SellerRiskAssessment, assessment_id)
    unknown = set(updates) - set(PENALTIES)
    if unknown:
        raise ValidationError(f"Unknown checklist item(s): {', '.join(sorted(unknown))}")
    if a.submitted_at is not None or a.status in (AssessmentStatus.APPROVED, AssessmentStatus.REJECTED):
        raise StateConflictError(
            f"Assessment {a.id} checklist is frozen after the RMT decision",
            entity="SellerRiskAssessment",
            entity_id=a.id,
            current_status=a.status,
            attempted="update_checklist",
        )
    for item, verified in updates.items():
        setattr(a, item, bool(verified))
    if notes:
        a.checklist_notes = notes
    _rescore(a, user.id)
    db.commit()
    return a


def complete_assessment(
    db: Session, assessment_id: int, user: User, decision: str, notes: str | None = None
) -> SellerRiskAssessment:
    """RMT decision. LOW + PROCEED approves now; everything else needs sign-off."""
    if decision not in ("PROCEED", "REJECT"):
        raise ValidationError("decision must be PROCEED or REJECT")
    now = datetime.now(timezone.utc)
    a = fetch(db, SellerRiskAssessment, assessment_id)
    if a.submitted_at is not None or a.status in (AssessmentStatus.APPROVED, AssessmentStatus.REJECTED):
        raise StateConflictError(
            f"Assessment {a.id} already decided",
            entity="SellerRiskAssessment",
            entity_id=a.id,
            current_status=a.status,
            attempted="complete",
        )
    sc = fetch(db, SubContractor, a.sub_contractor_id)

    if decision == "PROCEED":
        missing = [item for item in REQUIRED_FOR_PROCEED if not getattr(a, item)]
        if missing:
            raise DomainRuleError(
                f"Cannot proceed: required checklist items unverified: {', '.join(missing)}",
                entity="SellerRiskAssessment",
                entity_id=a.id,
                missing_items=missing,
            )

    a.decision = decision
    a.decision_notes = notes
    a.submitted_at = now
    sc.risk_category = a.risk_category

    if decision == "PROCEED" and a.risk_category == "LOW":
        advance(db, a, ASSESSMENT_MACHINE, "approve", changed_by=user.id, notes=notes, now=now)
        onboarding_service.apply_event(db, sc, "rmt_approve", changed_by=user.id,
                                       notes="Low risk, auto-approved", now=now)
        notification_service.queue(db, sc.email, "rmt_approved", sub_contractor_id=sc.id)
        db.commit()
        log.info(f"Assessment {a.id} approved (LOW, score {a.risk_score})")
        return a

    if decision == "REJECT":
        request_type = "SELLER_RISK_REJECTION"
        if a.status != AssessmentStatus.NEEDS_OPS_APPROVAL.value:
            record_status(a, AssessmentStatus.NEEDS_OPS_APPROVAL, user.id, "Rejection needs ops sign-off", now)
    elif a.risk_category == "HIGH":
        request_type = "HIGH_RISK_CASE"
    else:
        request_type = "SELLER_RISK_REJECTION"

    req = approval_service.create_request(
        db,
        user,
        request_type=request_type,
        entity_type="risk_assessment",
        entity_id=a.id,
        title=f"{decision} {sc.company_name}: {a.risk_category} risk (score {a.risk_score})",
        description=notes,
        priority="HIGH" if a.risk_category == "HIGH" else "MEDIUM",
        commit=False,
    )
    a.approval_request_id = req.id
    db.commit()
    log.info(f"Assessment {a.id}: {decision} on {a.risk_category} risk -> approval {req.id} ({request_type})")
    return a


def resolve_assessment(
    db: Session, assessment_id: int, *, approved: bool, actor_id: int | None, now: datetime | None = None
) -> SellerRiskAssessment:
    """Apply an approval outcome to the assessment and its seller. No commit."""
    now = now or datetime.now(timezone.utc)
    a = fetch(db, SellerRiskAssessment, assessment_id)
    sc = fetch(db, SubContractor, a.sub_contractor_id)
    seller_passes = (a.decision == "PROCEED") == approved

    if a.decision == "REJECT" and not approved:
        # Rejection overruled: back to RMT for another look
        a.decision = None
        a.submitted_at = None
        a.approval_request_id = None
        _rescore(a, actor_id, now)
        log.info(f"Assessment {a.id} reopened after its rejection was overruled")
        return a

    if seller_passes:
        advance(db, a, ASSESSMENT_MACHINE, "approve", changed_by=actor_id, now=now)
        onboarding_service.apply_event(db, sc, "rmt_approve", changed_by=actor_id, now=now)
        notification_service.queue(db, sc.email, "rmt_approved", sub_contractor_id=sc.id)
    else:
        advance(db, a, ASSESSMENT_MACHINE, "reject", changed_by=actor_id, now=now)
        onboarding_service.start_cooling(db, sc, actor_id, now, reason=a.decision_notes or "RMT rejection")
        notification_service.queue(db, sc.email, "rmt_rejected", sub_contractor_id=sc.id)
    log.info(f"Assessment {a.id} resolved: {'APPROVED' if seller_passes else 'REJECTED'}")
    return a


def risk_dashboard(db: Session) -> dict:
    by_status = dict(
        db.query(SellerRiskAssessment.status, func.count(SellerRiskAssessment.id))
        .group_by(SellerRiskAssessment.status)
        .all()
    )
    by_category = dict(
        db.query(SellerRiskAssessment.risk_category, func.count(SellerRiskAssessment.id))
        .group_by(SellerRiskAssessment.risk_category)
        .all()
    )
    avg = db.query(func.avg(SellerRiskAssessment.risk_score)).scalar()
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_category": by_category,
        "average_score": round(float(avg), 1) if avg is not None else None,
        "pending_approval": by_status.get("NEEDS_OPS_APPROVAL", 0) + by_status.get("NEEDS_FOUNDER_APPROVAL", 0),
    }
