"""
sla.py — SLA milestone endpoints

Called by: main.py (router mount)
Depends on: sla_service, dependencies
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import require_roles
from ..models import User
from ..schemas.onboarding import MilestoneComplete
from ..services import sla_service
from ..utils.serialize import row_to_dict

router = APIRouter(prefix="/sla", tags=["sla"])

OPS = ("ops", "ops_manager", "founder", "rmt")


@router.get("/dashboard")
def dashboard(user: User = Depends(require_roles(*OPS)), db: Session = Depends(get_db)):
    return sla_service.sla_dashboard(db)


@router.get("/{sla_id}")
def get_sla(sla_id: int, user: User = Depends(require_roles(*OPS)), db: Session = Depends(get_db)):
    sla = sla_service.get_sla(db, sla_id)
    out = row_to_dict(sla)
    out["milestones"] = [row_to_dict(m) for m in sla.milestones]
    return out


@router.post("/{sla_id}/milestones/{key}/complete")
def complete_milestone(
    sla_id: int,
    key: str,
    body: MilestoneComplete,
    user: User = Depends(require_roles(*OPS)),
    db: Session = Depends(get_db),
):
    return row_to_dict(sla_service.complete_milestone(db, sla_id, key, user, body.notes))
