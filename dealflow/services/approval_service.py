"""
approval_service.py — Approval Escalation Resolver

Every sign-off above the initiating actor's authority becomes an
ApprovalRequest whose approver chain is a pure function of its type.

Business Rules:
- Founder-only types: DEAL_ABOVE_1CR, AGENT_MISCONDUCT, STRATEGIC_EXCEPTION,
  NEW_NBFC_ONBOARDING
- Two-tier (ops_manager -> founder): HIGH_RISK_CASE, EPC_DELAY_ESCALATION
- Everything else: ops_manager
- A decision at level L needs the level's role, or an admin/founder override
- Approving the last level -> APPROVED + type-specific post-approval effect
- Rejecting at any level is terminal (+ post-rejection effect)
- Only PENDING/ESCALATED requests can be decided
- Escalation skips the current level; escalating past the last level fails
- current_level never decreases and never exceeds len(approval_chain)
- The named entity must exist and suit the type (e.g. DEAL_ABOVE_1CR -> case);
  blacklist, early re-entry and risk-rejection requests must name one
- Effects run only for the (type, entity_type) pair they are written for; a
  request with no entity, or a HIGH_RISK_CASE filed on a case, is a plain sign-off

Called by: routers/approvals.py, blacklist_service, risk_service,
           bid_service, onboarding_service, sweep_service
Depends on: models (ApprovalRequest, User), state_machines, notification_service
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..exceptions import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from ..models import (
    Agent,
    ApprovalRequest,
    Blacklist,
    Case,
    Company,
    Nbfc,
    SellerRiskAssessment,
    Sla,
    SubContractor,
    Transaction,
    User,
)
from ..state_machines import (
    APPROVAL_MACHINE,
    ApprovalStatus,
    advance,
    fetch,
    record_status,
)
from . import notification_service

log = logging.getLogger("dealflow.approvals")

REQUEST_TYPES = (
    "SELLER_RISK_REJECTION",
    "HIGH_RISK_CASE",
    "DEAL_ABOVE_1CR",
    "EPC_DELAY_ESCALATION",
    "NBFC_EXCEPTION",
    "BLACKLIST_APPROVAL",
    "EARLY_REENTRY",
    "PARTIAL_FUNDING",
    "AGENT_MISCONDUCT",
    "STRATEGIC_EXCEPTION",
    "NEW_NBFC_ONBOARDING",
    "DORMANT_ESCALATION",
)
PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")
OVERRIDE_ROLES = ("admin", "founder")
OPEN_STATUSES = (ApprovalStatus.PENDING.value, ApprovalStatus.ESCALATED.value)

_FOUNDER_ONLY = ("DEAL_ABOVE_1CR", "AGENT_MISCONDUCT", "STRATEGIC_EXCEPTION", "NEW_NBFC_ONBOARDING")
_TWO_TIER = ("HIGH_RISK_CASE", "EPC_DELAY_ESCALATION")

ENTITY_MODELS = {
    "case": Case,
    "subcontractor": SubContractor,
    "company": Company,
    "agent": Agent,
    "blacklist": Blacklist,
    "risk_assessment": SellerRiskAssessment,
    "transaction": Transaction,
    "nbfc": Nbfc,
    "sla": Sla,
}

# Types with a post-decision effect may only point at these entity types.
_ENTITY_TYPES_FOR = {
    "SELLER_RISK_REJECTION": ("risk_assessment",),
    "HIGH_RISK_CASE": ("risk_assessment", "case", "subcontractor"),
    "BLACKLIST_APPROVAL": ("blacklist",),
    "EARLY_REENTRY": ("subcontractor",),
    "DEAL_ABOVE_1CR": ("case",),
    "AGENT_MISCONDUCT": ("agent",),
}
_ENTITY_REQUIRED = ("SELLER_RISK_REJECTION", "BLACKLIST_APPROVAL", "EARLY_REENTRY")


def resolve_chain(request_type: str) -> list[str]:
    """Ordered approver roles for a request type."""
    if request_type not in REQUEST_TYPES:
        raise ValidationError(f"Unknown approval request type: {request_type}")
    if request_type in _FOUNDER_ONLY:
        return ["founder"]
    if request_type in _TWO_TIER:
        return ["ops_manager", "founder"]
    return ["ops_manager"]


def create_request(
    db: Session,
    requester: User | None,
    *,
    request_type: str,
    title: str,
    entity_type: str | None = None,
    entity_id: int | None = None,
    description: str | None = None,
    priority: str = "MEDIUM",
    amount: float | None = None,
    commit: bool = True,
) -> ApprovalRequest:
    """Open a request at level 1 of its chain.

    Services that open a request as part of a larger change pass
    commit=False and commit themselves.
    """
    if priority not in PRIORITIES:
        raise ValidationError(f"priority must be one of {', '.join(PRIORITIES)}")
    if not title or not title.strip():
        raise ValidationError("title is required")
    roles = resolve_chain(request_type)
    _check_entity(db, request_type, entity_type, entity_id)
    req = ApprovalRequest(
        request_type=request_type,
        entity_type=entity_type,
        entity_id=entity_id,
        title=title.strip(),
        description=description,
        priority=priority,
        amount=amount,
        approval_chain=[
            {"level": i, "approver_role": role, "status": "PENDING",
             "decided_by": None, "decided_at": None, "notes": None}
            for i, role in enumerate(roles, start=1)
        ],
        current_level=1,
        requested_by_id=requester.id if requester else None,
    )
    record_status(req, ApprovalStatus.PENDING, req.requested_by_id, "Request created")
    db.add(req)
    db.flush()
    log.info(f"Approval {req.id} opened: {request_type} -> {roles}")
    _announce(db, req)
    if commit:
        db.commit()
    return req


def _check_entity(db: Session, request_type: str, entity_type: str | None, entity_id: int | None) -> None:
    if (entity_type is None) != (entity_id is None):
        raise ValidationError("entity_type and entity_id go together")
    allowed = _ENTITY_TYPES_FOR.get(request_type)
    if entity_type is None:
        if request_type in _ENTITY_REQUIRED:
            raise ValidationError(f"{request_type} must name its {allowed[0]}")
        return
    if entity_type not in ENTITY_MODELS:
        raise ValidationError(f"Unknown entity_type: {entity_type}")
    if allowed and entity_type not in allowed:
        raise ValidationError(
            f"{request_type} cannot be filed against a {entity_type}",
            request_type=request_type, entity_type=entity_type,
        )
    if db.get(ENTITY_MODELS[entity_type], entity_id) is None:
        raise NotFoundError(ENTITY_MODELS[entity_type].__name__, entity_id)


def get_request(db: Session, request_id: int) -> ApprovalRequest:
    return fetch(db, ApprovalRequest, request_id)


def can_act(req: ApprovalRequest, user: User) -> bool:
    return user.role in OVERRIDE_ROLES or user.role == req.current_approver_role


def _check_actor(req: ApprovalRequest, user: User, action: str) -> None:
    if not can_act(req, user):
        raise AuthorizationError(
            f"Role '{user.role}' cannot {action} approval {req.id} at level "
            f"{req.current_level} (requires '{req.current_approver_role}')",
            entity="ApprovalRequest",
            entity_id=req.id,
            required_role=req.current_approver_role,
            current_level=req.current_level,
        )


def _stamp_level(req: ApprovalRequest, level: int, status: str, user: User | None,
                 notes: str | None, now: datetime) -> None:
    chain = [dict(step) for step in req.approval_chain]
    for step in chain:
        if step["level"] == level:
            step.update(
                status=status,
                decided_by=user.id if user else None,
                decided_at=now.isoformat(),
                notes=notes,
            )
    req.approval_chain = chain


def approve(db: Session, request_id: int, user: User, notes: str | None = None) -> ApprovalRequest:
    """Sign off the current level; the last level resolves the request."""
    now = datetime.now(timezone.utc)
    req = fetch(db, ApprovalRequest, request_id)
    APPROVAL_MACHINE.next_state(req.status, "approve", req.id)
    _check_actor(req, user, "approve")

    level = req.current_level
    _stamp_level(req, level, "APPROVED", user, notes, now)
    if level < len(req.approval_chain):
        advance(db, req, APPROVAL_MACHINE, "approve_level", changed_by=user.id,
                notes=f"Level {level} approved", now=now, expect={"current_level": level})
        req.current_level = level + 1
        _announce(db, req)
        db.commit()
        log.info(f"Approval {req.id}: level {level} approved by {user.email}, now at level {req.current_level}")
        return req

    advance(db, req, APPROVAL_MACHINE, "approve", changed_by=user.id, notes=notes, now=now,
            expect={"current_level": level})
    req.resolved_at = now
    _run_effect(POST_APPROVAL, db, req, user.id, now)
    _notify_requester(db, req, "approval_approved")
    db.commit()
    log.info(f"Approval {req.id} ({req.request_type}) APPROVED by {user.email}")
    return req


def reject(db: Session, request_id: int, user: User, notes: str | None = None) -> ApprovalRequest:
    """Rejection at any level is terminal."""
    if not notes or not notes.strip():
        raise ValidationError("A rejection reason is required")
    now = datetime.now(timezone.utc)
    req = fetch(db, ApprovalRequest, request_id)
    APPROVAL_MACHINE.next_state(req.status, "reject", req.id)
    _check_actor(req, user, "reject")

    level = req.current_level
    _stamp_level(req, level, "REJECTED", user, notes, now)
    advance(db, req, APPROVAL_MACHINE, "reject", changed_by=user.id, notes=notes, now=now,
            expect={"current_level": level})
    req.resolved_at = now
    _run_effect(POST_REJECTION, db, req, user.id, now)
    _notify_requester(db, req, "approval_rejected")
    db.commit()
    log.info(f"Approval {req.id} ({req.request_type}) REJECTED at level {level} by {user.email}")
    return req


def escalate(db: Session, request_id: int, user: User, reason: str | None = None) -> ApprovalRequest:
    """Skip the current level. Fails at the last level instead of no-op'ing."""
    now = datetime.now(timezone.utc)
    req = fetch(db, ApprovalRequest, request_id)
    APPROVAL_MACHINE.next_state(req.status, "escalate", req.id)
    if not (can_act(req, user) or user.id == req.requested_by_id):
        raise AuthorizationError(
            f"Role '{user.role}' cannot escalate approval {req.id}",
            entity="ApprovalRequest", entity_id=req.id,
        )
    level = req.current_level
    if level >= len(req.approval_chain):
        raise StateConflictError(
            f"Approval {req.id} is already at its highest level ({level})",
            entity="ApprovalRequest",
            entity_id=req.id,
            current_status=req.status,
            attempted="escalate",
        )
    _stamp_level(req, level, "SKIPPED", user, reason, now)
    advance(db, req, APPROVAL_MACHINE, "escalate", changed_by=user.id,
            notes=reason or f"Escalated past level {level}", now=now, expect={"current_level": level})
    req.current_level = level + 1
    _announce(db, req)
    db.commit()
    log.info(f"Approval {req.id} escalated to level {req.current_level} by {user.email}")
    return req


def cancel(db: Session, request_id: int, user: User, reason: str | None = None) -> ApprovalRequest:
    req = fetch(db, ApprovalRequest, request_id)
    APPROVAL_MACHINE.next_state(req.status, "cancel", req.id)
    if user.id != req.requested_by_id and user.role not in OVERRIDE_ROLES:
        raise AuthorizationError(
            "Only the requester or an admin can cancel a request",
            entity="ApprovalRequest", entity_id=req.id,
        )
    now = datetime.now(timezone.utc)
    advance(db, req, APPROVAL_MACHINE, "cancel", changed_by=user.id, notes=reason, now=now)
    req.resolved_at = now
    db.commit()
    log.info(f"Approval {req.id} cancelled by {user.email}")
    return req


def my_pending(db: Session, user: User) -> list[ApprovalRequest]:
    """Open requests the user can decide right now, most urgent first."""
    open_reqs = (
        db.query(ApprovalRequest)
        .filter(ApprovalRequest.status.in_(OPEN_STATUSES))
        .order_by(ApprovalRequest.created_at)
        .all()
    )
    rank = {p: i for i, p in enumerate(reversed(PRIORITIES))}
    mine = [r for r in open_reqs if can_act(r, user)]
    return sorted(mine, key=lambda r: rank.get(r.priority, len(PRIORITIES)))


def pending_count_by_role(db: Session) -> dict[str, int]:
    counts: dict[str, int] = {}
    for req in db.query(ApprovalRequest).filter(ApprovalRequest.status.in_(OPEN_STATUSES)):
        role = req.current_approver_role
        counts[role] = counts.get(role, 0) + 1
    return counts


def open_request_for(db: Session, request_type: str, entity_type: str, entity_id: int) -> ApprovalRequest | None:
    return (
        db.query(ApprovalRequest)
        .filter(
            ApprovalRequest.request_type == request_type,
            ApprovalRequest.entity_type == entity_type,
            ApprovalRequest.entity_id == entity_id,
            ApprovalRequest.status.in_(OPEN_STATUSES),
        )
        .first()
    )


def status_counts(db: Session) -> dict[str, int]:
    rows = db.query(ApprovalRequest.status, func.count(ApprovalRequest.id)).group_by(ApprovalRequest.status)
    return {status: n for status, n in rows}


# ── Notifications ────────────────────────────────────────────────────


def _announce(db: Session, req: ApprovalRequest) -> None:
    notification_service.queue_role(
        db,
        req.current_approver_role,
        "approval_needed",
        approval_id=req.id,
        request_type=req.request_type,
        title=req.title,
        priority=req.priority,
        level=req.current_level,
    )


def _notify_requester(db: Session, req: ApprovalRequest, template: str) -> None:
    requester = db.get(User, req.requested_by_id) if req.requested_by_id else None
    notification_service.queue(
        db,
        requester.email if requester else None,
        template,
        approval_id=req.id,
        request_type=req.request_type,
        title=req.title,
    )


# ── Post-decision effects ────────────────────────────────────────────
# Keyed on (request_type, entity_type). Each runs inside the deciding
# transaction; an exception rolls the decision back.


def _run_effect(table: dict, db: Session, req: ApprovalRequest, actor_id: int, now: datetime) -> None:
    if req.entity_id is None:
        return
    handler = table.get((req.request_type, req.entity_type))
    if handler:
        handler(db, req, actor_id, now)


def _apply_risk_decision(approved: bool):
    def handler(db, req, actor_id, now):
        from . import risk_service

        risk_service.resolve_assessment(db, req.entity_id, approved=approved, actor_id=actor_id, now=now)
    return handler


def _blacklist_approved(db, req, actor_id, now):
    from . import blacklist_service

    blacklist_service.activate_entry(db, req.entity_id, actor_id, now)


def _blacklist_rejected(db, req, actor_id, now):
    from . import blacklist_service

    reason = req.approval_chain[req.current_level - 1].get("notes")
    blacklist_service.dismiss_entry(db, req.entity_id, actor_id, reason, now)


def _early_reentry_approved(db, req, actor_id, now):
    from . import onboarding_service

    onboarding_service.grant_early_reentry(db, req.entity_id, actor_id, now)


def _deal_above_threshold_approved(db, req, actor_id, now):
    case = fetch(db, Case, req.entity_id)
    case.founder_approved = True
    case.founder_approved_amount = req.amount if req.amount is not None else case.deal_value


def _agent_misconduct_approved(db, req, actor_id, now):
    agent = fetch(db, Agent, req.entity_id)
    if agent.status != "SUSPENDED":
        record_status(agent, "SUSPENDED", actor_id, req.title, now)
        agent.suspension_reason = req.description or req.title


POST_APPROVAL = {
    ("SELLER_RISK_REJECTION", "risk_assessment"): _apply_risk_decision(True),
    ("HIGH_RISK_CASE", "risk_assessment"): _apply_risk_decision(True),
    ("BLACKLIST_APPROVAL", "blacklist"): _blacklist_approved,
    ("EARLY_REENTRY", "subcontractor"): _early_reentry_approved,
    ("DEAL_ABOVE_1CR", "case"): _deal_above_threshold_approved,
    ("AGENT_MISCONDUCT", "agent"): _agent_misconduct_approved,
}

POST_REJECTION = {
    ("SELLER_RISK_REJECTION", "risk_assessment"): _apply_risk_decision(False),
    ("HIGH_RISK_CASE", "risk_assessment"): _apply_risk_decision(False),
    ("BLACKLIST_APPROVAL", "blacklist"): _blacklist_rejected,
}
