"""
sla_service.py — SLA Milestone Scheduler

Every tracked entity (case, KYC, bill, NBFC response, ...) gets one Sla
with four deadlines fixed at creation: created_at + 3 / 7 / 10 / 14 days.

Business Rules:
- Milestone due dates are written once and never recomputed
- Completing a milestone compares against its fixed due date:
  on or before -> COMPLETED, after -> COMPLETED_LATE
- The Sla is COMPLETED once all four milestones are done
- Overdue sweep: PENDING milestone past due -> OVERDUE + one
  MILESTONE_OVERDUE escalation event (never a second one on re-run)
- Reminder sweep: the furthest stage reached is emitted once
  (day3 reminder 1, day7 reminder 2, day10 escalation, day14 dormant)
  and the Sla only ever moves forward
- Both sweeps commit per Sla; one bad Sla is logged and skipped

Called by: sweep_service, scheduler.py, routers/sla.py, case_service, onboarding_service
Depends on: models (Sla, SlaMilestone, SlaEvent), state_machines, notification_service
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import NotFoundError, StateConflictError, ValidationError
from ..models import Sla, SlaEvent, SlaMilestone, User
from ..state_machines import SLA_MACHINE, SLA_OPEN_STATUSES, SlaStatus, advance, fetch, record_status
from ..utils.dates import utc, whole_days_between
from . import notification_service

log = logging.getLogger("dealflow.sla")

ENTITY_TYPES = (
    "CASE",
    "EPC_VALIDATION",
    "BILL_VERIFICATION",
    "KYC_COMPLETION",
    "NBFC_RESPONSE",
    "DOCUMENT_UPLOAD",
)
MILESTONE_NAMES = (
    "Initial Document Verification",
    "RMT Pre-screening Complete",
    "NBFC Approval Decision",
    "Deal Execution",
)
DONE = ("COMPLETED", "COMPLETED_LATE")

# (milestone index, ledger kind, Sla event)
REMINDER_STAGES = (
    (0, "REMINDER_1", "remind_1"),
    (1, "REMINDER_2", "remind_2"),
    (2, "ESCALATION", "escalate"),
    (3, "DORMANT", "go_dormant"),
)

_OPEN = [s.value for s in SLA_OPEN_STATUSES]


def create_sla(db: Session, entity_type: str, entity_id: int, now: datetime | None = None,
               commit: bool = True) -> Sla:
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(f"Unknown SLA entity type: {entity_type}")
    now = now or datetime.now(timezone.utc)
    sla = Sla(entity_type=entity_type, entity_id=entity_id, created_at=now)
    record_status(sla, SlaStatus.ACTIVE, notes="SLA started", now=now)
    for days, name in zip(settings.sla_milestone_days, MILESTONE_NAMES):
        sla.milestones.append(SlaMilestone(
            key=f"day{days}", name=name, offset_days=days, due_at=now + timedelta(days=days),
        ))
    db.add(sla)
    db.flush()
    log.info(f"SLA {sla.id} opened for {entity_type} {entity_id}")
    if commit:
        db.commit()
    return sla


def get_sla(db: Session, sla_id: int) -> Sla:
    return fetch(db, Sla, sla_id)


def slas_for(db: Session, entity_type: str, entity_id: int) -> list[Sla]:
    return (
        db.query(Sla)
        .filter(Sla.entity_type == entity_type, Sla.entity_id == entity_id)
        .order_by(Sla.id)
        .all()
    )


def _finish(milestone: SlaMilestone, now: datetime, user_id: int | None, notes: str | None) -> None:
    milestone.completed_at = now
    milestone.completed_by_id = user_id
    milestone.notes = notes
    milestone.status = "COMPLETED" if now <= utc(milestone.due_at) else "COMPLETED_LATE"


def complete_milestone(db: Session, sla_id: int, key: str, user: User | None = None,
                       notes: str | None = None, now: datetime | None = None) -> SlaMilestone:
    now = now or datetime.now(timezone.utc)
    sla = fetch(db, Sla, sla_id)
    if sla.status not in _OPEN:
        raise StateConflictError(
            f"SLA {sla.id} is {sla.status}", entity="Sla", entity_id=sla.id,
            current_status=sla.status, attempted="complete_milestone",
        )
    milestone = next((m for m in sla.milestones if m.key == key), None)
    if milestone is None:
        raise NotFoundError("SlaMilestone", f"{sla_id}/{key}")
    if milestone.status in DONE:
        raise StateConflictError(
            f"Milestone {key} of SLA {sla.id} already {milestone.status}",
            entity="SlaMilestone", entity_id=milestone.id,
            current_status=milestone.status, attempted="complete",
        )
    _finish(milestone, now, user.id if user else None, notes)
    if all(m.status in DONE for m in sla.milestones):
        advance(db, sla, SLA_MACHINE, "complete", changed_by=user.id if user else None,
                notes="All milestones done", now=now)
        sla.completed_at = now
    db.commit()
    log.info(f"SLA {sla.id} milestone {key} -> {milestone.status}")
    return milestone


def close_entity_slas(db: Session, entity_type: str, entity_id: int, now: datetime | None = None) -> int:
    """Entity reached its goal: finish remaining milestones and close. No commit."""
    now = now or datetime.now(timezone.utc)
    closed = 0
    for sla in slas_for(db, entity_type, entity_id):
        if sla.status not in _OPEN:
            continue
        for m in sla.milestones:
            if m.status not in DONE:
                _finish(m, now, None, "Closed with entity")
        advance(db, sla, SLA_MACHINE, "complete", notes=f"{entity_type} done", now=now)
        sla.completed_at = now
        closed += 1
    return closed


def _record_once(db: Session, sla: Sla, kind: str, milestone_key: str = "", detail: str | None = None) -> bool:
    """Add a ledger row unless one exists. True when this call created it."""
    exists = (
        db.query(SlaEvent.id)
        .filter(SlaEvent.sla_id == sla.id, SlaEvent.kind == kind, SlaEvent.milestone_key == milestone_key)
        .first()
    )
    if exists:
        return False
    db.add(SlaEvent(sla_id=sla.id, kind=kind, milestone_key=milestone_key, detail=detail))
    return True


def run_overdue_sweep(db: Session, now: datetime | None = None) -> dict:
    """Flip past-due PENDING milestones to OVERDUE, one escalation each."""
    now = now or datetime.now(timezone.utc)
    slas = db.query(Sla).filter(Sla.status.in_(_OPEN)).order_by(Sla.id).all()
    flipped = 0
    escalations = 0
    errors = []

    for sla in slas:
        try:
            for m in sla.milestones:
                if m.status not in ("PENDING", "OVERDUE") or utc(m.due_at) >= now:
                    continue
                m.days_overdue = whole_days_between(m.due_at, now)
                if m.status == "PENDING":
                    m.status = "OVERDUE"
                    flipped += 1
                if _record_once(db, sla, "MILESTONE_OVERDUE", m.key,
                                f"{m.name} overdue by {m.days_overdue} day(s)"):
                    escalations += 1
                    notification_service.queue_role(
                        db, "ops_manager", "sla_milestone_overdue",
                        sla_id=sla.id, entity_type=sla.entity_type, entity_id=sla.entity_id,
                        milestone=m.key, days_overdue=m.days_overdue,
                    )
            db.commit()
        except Exception as e:
            db.rollback()
            log.error(f"SLA overdue sweep failed for SLA {sla.id}: {e}")
            errors.append({"sla_id": sla.id, "error": str(e)})

    result = {
        "checked": len(slas),
        "milestones_overdue": flipped,
        "escalations_created": escalations,
        "errors": errors,
    }
    log.info(f"SLA overdue sweep complete: {result}")
    return result


def run_reminder_sweep(db: Session, now: datetime | None = None) -> dict:
    """Emit the furthest reminder stage each open Sla has reached, once."""
    from . import approval_service

    now = now or datetime.now(timezone.utc)
    slas = db.query(Sla).filter(Sla.status.in_(_OPEN)).order_by(Sla.id).all()
    counts = {"REMINDER_1": 0, "REMINDER_2": 0, "ESCALATION": 0, "DORMANT": 0}
    errors = []

    for sla in slas:
        try:
            milestones = list(sla.milestones)
            reached = [
                stage for stage in REMINDER_STAGES
                if stage[0] < len(milestones)
                and utc(milestones[stage[0]].due_at) <= now
                and milestones[stage[0]].status not in DONE
            ]
            if not reached:
                continue
            index, kind, event = reached[-1]
            if not SLA_MACHINE.can(sla.status, event):
                continue
            if not _record_once(db, sla, kind, detail=f"Stage reached at {now.isoformat()}"):
                continue
            advance(db, sla, SLA_MACHINE, event, notes=f"{milestones[index].name} missed", now=now)
            if kind == "ESCALATION" and sla.entity_type == "EPC_VALIDATION":
                approval_service.create_request(
                    db, None,
                    request_type="EPC_DELAY_ESCALATION",
                    entity_type="sla",
                    entity_id=sla.id,
                    title=f"EPC validation delayed: {sla.entity_type} {sla.entity_id}",
                    priority="HIGH",
                    commit=False,
                )
            notification_service.queue_role(
                db, "ops" if kind.startswith("REMINDER") else "ops_manager", f"sla_{kind.lower()}",
                sla_id=sla.id, entity_type=sla.entity_type, entity_id=sla.entity_id,
            )
            db.commit()
            counts[kind] += 1
        except Exception as e:
            db.rollback()
            log.error(f"SLA reminder sweep failed for SLA {sla.id}: {e}")
            errors.append({"sla_id": sla.id, "error": str(e)})

    result = {
        "checked": len(slas),
        "reminders_sent": counts["REMINDER_1"] + counts["REMINDER_2"],
        "escalated": counts["ESCALATION"],
        "dormant": counts["DORMANT"],
        "errors": errors,
    }
    log.info(f"SLA reminder sweep complete: {result}")
    return result


def sla_dashboard(db: Session) -> dict:
    by_status = dict(db.query(Sla.status, func.count(Sla.id)).group_by(Sla.status).all())
    overdue = db.query(func.count(SlaMilestone.id)).filter(SlaMilestone.status == "OVERDUE").scalar()
    late = db.query(func.count(SlaMilestone.id)).filter(SlaMilestone.status == "COMPLETED_LATE").scalar()
    escalations = db.query(func.count(SlaEvent.id)).filter(SlaEvent.kind == "MILESTONE_OVERDUE").scalar()
    return {
        "by_status": by_status,
        "active": sum(by_status.get(s, 0) for s in _OPEN),
        "overdue_milestones": overdue or 0,
        "completed_late": late or 0,
        "escalations": escalations or 0,
    }
