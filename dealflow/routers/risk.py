"""
risk.py — Seller risk assessment endpoints (RMT)

Called by: main.py (router mount)
Depends on: risk_service, dependencies
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import require_roles
from ..models import User
from ..schemas.risk import AssessmentComplete, AssessmentCreate, ChecklistUpdate
from ..services import risk_service
from ..utils.serialize import row_to_dict

router = APIRouter(prefix="/risk", tags=["risk"])

RMT = ("rmt", "ops_manager", "founder")


def _assessment_out(a) -> dict:
    out = row_to_dict(a)
    out["checklist"] = a.checklist
    return out


@router.post("/assessments", status_code=201)
def create_assessment(
    body: AssessmentCreate,
    user: User = Depends(require_roles(*RMT)),
    db: Session = Depends(get_db),
):
    return _assessment_out(risk_service.create_assessment(db, body.sub_contractor_id, user))


@router.patch("/assessments/{assessment_id}/checklist")
def update_checklist(
    assessment_id: int,
    body: ChecklistUpdate,
    user: User = Depends(require_roles(*RMT)),
    db: Session = Depends(get_db),
):
    return _assessment_out(risk_service.update_checklist(db, assessment_id, body.items, user, body.notes))


@router.post("/assessments/{assessment_id}/complete")
def complete(
    assessment_id: int,
    body: AssessmentComplete,
    user: User = Depends(require_roles(*RMT)),
    db: Session = Depends(get_db),
):
    return _assessment_out(risk_service.complete_assessment(db, assessment_id, user, body.decision, body.notes))


@router.get("/dashboard")
def dashboard(user: User = Depends(require_roles(*RMT, "ops")), db: Session = Depends(get_db)):
    return risk_service.risk_dashboard(db)
