"""
transactions.py — Transaction endpoints (escrow, disbursement, repayment, overdue)

Called by: main.py (router mount)
Depends on: transaction_service, dependencies
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import require_roles
from ..models import User
from ..schemas.transactions import DisburseIn, EscrowIn, NotesIn, RepaymentIn, TransactionCreate
from ..services import transaction_service
from ..utils.serialize import row_to_dict

router = APIRouter(prefix="/transactions", tags=["transactions"])

OPS = ("ops", "ops_manager", "founder")


@router.post("", status_code=201)
def create_transaction(
    body: TransactionCreate,
    user: User = Depends(require_roles(*OPS)),
    db: Session = Depends(get_db),
):
    return row_to_dict(transaction_service.create_transaction(db, body.case_id, user, body.nbfc_id))


@router.get("/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user: User = Depends(require_roles(*OPS, "nbfc", "rmt")),
    db: Session = Depends(get_db),
):
    return row_to_dict(transaction_service.get_transaction(db, transaction_id))


@router.post("/{transaction_id}/escrow")
def setup_escrow(
    transaction_id: int,
    body: EscrowIn,
    user: User = Depends(require_roles(*OPS)),
    db: Session = Depends(get_db),
):
    return row_to_dict(transaction_service.setup_escrow(db, transaction_id, user, **body.model_dump()))


@router.post("/{transaction_id}/disburse")
def disburse(
    transaction_id: int,
    body: DisburseIn,
    user: User = Depends(require_roles(*OPS, "nbfc")),
    db: Session = Depends(get_db),
):
    return row_to_dict(transaction_service.disburse(db, transaction_id, user, body.action, body.reference))


@router.post("/{transaction_id}/repayment")
def record_repayment(
    transaction_id: int,
    body: RepaymentIn,
    user: User = Depends(require_roles(*OPS)),
    db: Session = Depends(get_db),
):
    return row_to_dict(transaction_service.record_repayment(db, transaction_id, user, body.amount, body.reference))


@router.post("/{transaction_id}/overdue")
def check_overdue(
    transaction_id: int,
    user: User = Depends(require_roles(*OPS)),
    db: Session = Depends(get_db),
):
    return row_to_dict(transaction_service.mark_overdue(db, transaction_id, user))


@router.post("/{transaction_id}/default")
def declare_default(
    transaction_id: int,
    body: NotesIn,
    user: User = Depends(require_roles("ops_manager", "founder")),
    db: Session = Depends(get_db),
):
    return row_to_dict(transaction_service.declare_default(db, transaction_id, user, body.notes))


@router.post("/{transaction_id}/cancel")
def cancel_transaction(
    transaction_id: int,
    body: NotesIn,
    user: User = Depends(require_roles(*OPS)),
    db: Session = Depends(get_db),
):
    return row_to_dict(transaction_service.cancel_transaction(db, transaction_id, user, body.notes))
