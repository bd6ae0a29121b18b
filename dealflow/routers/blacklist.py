"""
blacklist.py — Blacklist Gate endpoints

Business Rules:
- check is a read: returns the matching ACTIVE entry or {"blacklisted": false}
- approve / reject route through the entry's BLACKLIST_APPROVAL request, so
  the approval chain and its cascade run exactly as from /approvals

Called by: main.py (router mount)
Depends on: blacklist_service, approval_service, dependencies
"""

from fastapi import APIRouter, Depends
from loguru import logger
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import require_roles, require_user
from ..exceptions import StateConflictError
from ..models import Blacklist, User
from ..schemas.blacklist import BlacklistCheck, BlacklistDecision, BlacklistReport, BlacklistRevoke
from ..services import approval_service, blacklist_service
from ..state_machines import fetch
from ..utils.serialize import row_to_dict

router = APIRouter(prefix="/blacklist", tags=["blacklist"])


@router.post("/check")
def check(body: BlacklistCheck, user: User = Depends(require_user), db: Session = Depends(get_db)):
    entry = blacklist_service.is_blacklisted(db, body.pan, body.gstin, body.email)
    if entry is None:
        return {"blacklisted": False}
    return {"blacklisted": True, "entry_id": entry.id, "reason": entry.reason, "entity_type": entry.entity_type}


@router.post("/report", status_code=201)
def report(
    body: BlacklistReport,
    user: User = Depends(require_roles("ops", "ops_manager", "rmt", "sales", "founder")),
    db: Session = Depends(get_db),
):
    entry = blacklist_service.report(db, user, **body.model_dump())
    logger.warning("Blacklist report {} filed by {}", entry.id, user.email)
    return row_to_dict(entry)


def _pending_request_id(db: Session, entry_id: int) -> int:
    entry = fetch(db, Blacklist, entry_id)
    if entry.approval_request_id is None or entry.status != "PENDING_APPROVAL":
        raise StateConflictError(
            f"Blacklist entry {entry.id} is not awaiting approval",
            entity="Blacklist", entity_id=entry.id, current_status=entry.status, attempted="decide",
        )
    return entry.approval_request_id


@router.post("/{entry_id}/approve")
def approve(
    entry_id: int,
    body: BlacklistDecision,
    user: User = Depends(require_roles("ops_manager", "founder")),
    db: Session = Depends(get_db),
):
    approval_service.approve(db, _pending_request_id(db, entry_id), user, body.notes)
    return row_to_dict(fetch(db, Blacklist, entry_id))


@router.post("/{entry_id}/reject")
def reject(
    entry_id: int,
    body: BlacklistDecision,
    user: User = Depends(require_roles("ops_manager", "founder")),
    db: Session = Depends(get_db),
):
    approval_service.reject(db, _pending_request_id(db, entry_id), user, body.notes or "Report rejected")
    return row_to_dict(fetch(db, Blacklist, entry_id))


@router.post("/{entry_id}/revoke")
def revoke(
    entry_id: int,
    body: BlacklistRevoke,
    user: User = Depends(require_roles("ops_manager", "founder")),
    db: Session = Depends(get_db),
):
    return row_to_dict(blacklist_service.revoke(db, entry_id, user, body.reason))
