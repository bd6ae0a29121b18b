"""
nbfc.py — NBFC matching, case sharing and lender responses

Called by: main.py (router mount)
Depends on: nbfc_service, dependencies
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import require_roles
from ..models import User
from ..schemas.nbfc import RespondIn, ShareIn
from ..services import nbfc_service
from ..utils.serialize import row_to_dict

router = APIRouter(prefix="/nbfc", tags=["nbfc"])


@router.get("/match/{case_id}")
def match(
    case_id: int,
    user: User = Depends(require_roles("ops", "ops_manager", "founder", "rmt")),
    db: Session = Depends(get_db),
):
    ranked = nbfc_service.match_nbfcs(db, case_id)
    return {
        "case_id": case_id,
        "matches": [
            {
                "nbfc_id": r["nbfc"].id,
                "name": r["nbfc"].name,
                "code": r["nbfc"].code,
                "preference_score": r["nbfc"].preference_score,
                "match_score": r["match_score"],
                "reasons": r["reasons"],
            }
            for r in ranked
        ],
    }


@router.post("/share/{case_id}")
def share(
    case_id: int,
    body: ShareIn,
    user: User = Depends(require_roles("ops", "ops_manager", "founder")),
    db: Session = Depends(get_db),
):
    shares = nbfc_service.share_case(db, case_id, body.nbfc_ids, user)
    return {"case_id": case_id, "shared": [row_to_dict(s) for s in shares]}


@router.post("/{case_id}/respond")
def respond(
    case_id: int,
    body: RespondIn,
    user: User = Depends(require_roles("nbfc", "ops_manager")),
    db: Session = Depends(get_db),
):
    share = nbfc_service.respond(db, case_id, user, **body.model_dump())
    return row_to_dict(share)
