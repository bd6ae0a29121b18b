"""
approvals.py — Approval Escalation Resolver endpoints

Business Rules:
- Any staff member may file a request; the chain comes from its type
- approve / reject / escalate are checked against the current level's role
  in approval_service (admin and founder may always act)
- my-pending lists only what the caller can decide right now

Called by: main.py (router mount)
Depends on: approval_service, dependencies
"""

from fastapi import APIRouter, Depends
from loguru import logger
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import require_roles, require_user
from ..models import User
from ..schemas.approvals import ApprovalCreate, ApprovalDecision, ApprovalEscalate
from ..services import approval_service
from ..utils.serialize import row_to_dict

router = APIRouter(prefix="/approvals", tags=["approvals"])

STAFF = ("founder", "ops_manager", "ops", "rmt", "sales")


def _approval_out(req, user: User | None = None) -> dict:
    out = row_to_dict(req)
    out["current_approver_role"] = req.current_approver_role
    if user is not None:
        out["can_act"] = req.status in approval_service.OPEN_STATUSES and approval_service.can_act(req, user)
    return out


@router.post("", status_code=201)
def create_approval(
    body: ApprovalCreate,
    user: User = Depends(require_roles(*STAFF)),
    db: Session = Depends(get_db),
):
    req = approval_service.create_request(db, user, **body.model_dump())
    logger.info("Approval {} filed by {}", req.id, user.email)
    return _approval_out(req, user)


@router.get("/my-pending")
def my_pending(user: User = Depends(require_user), db: Session = Depends(get_db)):
    items = approval_service.my_pending(db, user)
    return {"items": [_approval_out(r, user) for r in items], "total": len(items)}


@router.get("/pending-counts")
def pending_counts(user: User = Depends(require_roles(*STAFF)), db: Session = Depends(get_db)):
    return {
        "by_role": approval_service.pending_count_by_role(db),
        "by_status": approval_service.status_counts(db),
    }


@router.get("/{request_id}")
def get_approval(request_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return _approval_out(approval_service.get_request(db, request_id), user)


@router.post("/{request_id}/approve")
def approve(
    request_id: int,
    body: ApprovalDecision,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    return _approval_out(approval_service.approve(db, request_id, user, body.notes), user)


@router.post("/{request_id}/reject")
def reject(
    request_id: int,
    body: ApprovalDecision,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    return _approval_out(approval_service.reject(db, request_id, user, body.notes), user)


@router.post("/{request_id}/escalate")
def escalate(
    request_id: int,
    body: ApprovalEscalate,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    return _approval_out(approval_service.escalate(db, request_id, user, body.reason), user)


@router.post("/{request_id}/cancel")
def cancel(
    request_id: int,
    body: ApprovalEscalate,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    return _approval_out(approval_service.cancel(db, request_id, user, body.reason), user)
