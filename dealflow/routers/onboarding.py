"""
onboarding.py — Seller and EPC company onboarding endpoints

Business Rules:
- Sales / ops create seller and EPC company leads; each seller and company
  event is role-checked in onboarding_service
- Early re-entry from a cooling period goes through an EARLY_REENTRY approval

Called by: main.py (router mount)
Depends on: onboarding_service, dependencies
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import require_roles, require_user
from ..models import User
from ..schemas.onboarding import CompanyCreate, EarlyReentryIn, SubContractorCreate, TransitionIn
from ..services import onboarding_service
from ..utils.serialize import row_to_dict

router = APIRouter(tags=["onboarding"])


@router.post("/subcontractors", status_code=201)
def create_sub_contractor(
    body: SubContractorCreate,
    user: User = Depends(require_roles("sales", "ops", "ops_manager")),
    db: Session = Depends(get_db),
):
    return row_to_dict(onboarding_service.create_sub_contractor(db, user, **body.model_dump()))


@router.post("/subcontractors/{sub_contractor_id}/early-reentry", status_code=201)
def request_early_reentry(
    sub_contractor_id: int,
    body: EarlyReentryIn,
    user: User = Depends(require_roles("sales", "ops", "ops_manager", "rmt")),
    db: Session = Depends(get_db),
):
    req = onboarding_service.request_early_reentry(db, sub_contractor_id, user, body.reason)
    return {"approval_request_id": req.id, "status": req.status}


@router.post("/subcontractors/{sub_contractor_id}/{event}")
def transition(
    sub_contractor_id: int,
    event: str,
    body: TransitionIn,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    sc = onboarding_service.transition_sub_contractor(db, sub_contractor_id, event, user, body.notes)
    return row_to_dict(sc)


# ── EPC companies ────────────────────────────────────────────────────


@router.post("/companies", status_code=201)
def create_company(
    body: CompanyCreate,
    user: User = Depends(require_roles("sales", "ops", "ops_manager")),
    db: Session = Depends(get_db),
):
    return row_to_dict(onboarding_service.create_company(db, user, **body.model_dump()))


@router.post("/companies/{company_id}/{event}")
def transition_company(
    company_id: int,
    event: str,
    body: TransitionIn,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    return row_to_dict(onboarding_service.transition_company(db, company_id, event, user, body.notes))
