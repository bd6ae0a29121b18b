"""
cases.py — Bills, CWC requests (cases) and bids

Business Rules:
- Bills: sellers and ops upload, ops verify
- Cases: raised from a verified bill; EPC reviews, RMT reviews
- Bids: the case's EPC places, either party negotiates, lock freezes terms
- Locking a deal of 1 crore or more answers 422 approval_required until
  the founder signs off

Called by: main.py (router mount)
Depends on: case_service, bid_service, dependencies
"""

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import require_roles, require_user
from ..models import User
from ..schemas.deals import (
    BidCreate,
    BidReject,
    BillVerify,
    CaseCreate,
    CaseReview,
    NegotiateIn,
    RmtReview,
)
from ..services import bid_service, case_service
from ..utils.serialize import row_to_dict

router = APIRouter(tags=["cases"])


# ── Bills ────────────────────────────────────────────────────────────


@router.post("/bills", status_code=201)
async def create_bill(
    sub_contractor_id: int = Form(...),
    company_id: int = Form(...),
    bill_number: str = Form(...),
    amount: float = Form(..., gt=0),
    file: UploadFile | None = File(None),
    user: User = Depends(require_roles("subcontractor", "ops", "ops_manager")),
    db: Session = Depends(get_db),
):
    data = await file.read() if file else None
    bill = case_service.create_bill(
        db, user,
        sub_contractor_id=sub_contractor_id,
        company_id=company_id,
        bill_number=bill_number,
        amount=amount,
        file_bytes=data,
        mime_type=file.content_type if file else None,
    )
    return row_to_dict(bill)


@router.post("/bills/{bill_id}/verify")
def verify_bill(
    bill_id: int,
    body: BillVerify,
    user: User = Depends(require_roles("ops", "ops_manager")),
    db: Session = Depends(get_db),
):
    return row_to_dict(case_service.verify_bill(db, bill_id, user, body.approve, body.notes))


# ── Cases ────────────────────────────────────────────────────────────


@router.get("/cases")
def list_cases(status: str | None = None, user: User = Depends(require_user), db: Session = Depends(get_db)):
    cases = case_service.list_cases(db, user, status)
    return {"items": [row_to_dict(c) for c in cases], "total": len(cases)}


@router.post("/cases", status_code=201)
def create_case(
    body: CaseCreate,
    user: User = Depends(require_roles("subcontractor", "ops", "ops_manager", "sales")),
    db: Session = Depends(get_db),
):
    return row_to_dict(case_service.create_case(db, user, body.bill_id))


@router.get("/cases/{case_id}")
def get_case(case_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return row_to_dict(case_service.get_case(db, case_id))


@router.post("/cases/{case_id}/review")
def review_case(
    case_id: int,
    body: CaseReview,
    user: User = Depends(require_roles("epc")),
    db: Session = Depends(get_db),
):
    return row_to_dict(case_service.review_case(db, case_id, user, body.approve, body.notes))


@router.post("/cases/{case_id}/rmt-review")
def rmt_review_case(
    case_id: int,
    body: RmtReview,
    user: User = Depends(require_roles("rmt")),
    db: Session = Depends(get_db),
):
    return row_to_dict(case_service.rmt_review_case(db, case_id, user, body.decision, body.notes))


# ── Bids ─────────────────────────────────────────────────────────────


@router.post("/bids", status_code=201)
def place_bid(
    body: BidCreate,
    user: User = Depends(require_roles("epc")),
    db: Session = Depends(get_db),
):
    bid = bid_service.place_bid(db, user, body.case_id, body.bid_amount, body.funding_duration_days)
    return row_to_dict(bid)


@router.get("/bids/{bid_id}")
def get_bid(bid_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return row_to_dict(bid_service.get_bid(db, bid_id))


@router.post("/bids/{bid_id}/negotiate")
def negotiate(
    bid_id: int,
    body: NegotiateIn,
    user: User = Depends(require_roles("epc", "subcontractor")),
    db: Session = Depends(get_db),
):
    bid = bid_service.negotiate(db, bid_id, user, body.counter_amount, body.counter_duration, body.message)
    return row_to_dict(bid)


@router.post("/bids/{bid_id}/lock")
def lock_bid(
    bid_id: int,
    user: User = Depends(require_roles("epc", "subcontractor", "ops", "ops_manager", "founder")),
    db: Session = Depends(get_db),
):
    return row_to_dict(bid_service.lock_commercial(db, bid_id, user))


@router.post("/bids/{bid_id}/reject")
def reject_bid(
    bid_id: int,
    body: BidReject,
    user: User = Depends(require_roles("subcontractor")),
    db: Session = Depends(get_db),
):
    return row_to_dict(bid_service.reject_bid(db, bid_id, user, body.reason))
