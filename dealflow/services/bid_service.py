"""
bid_service.py — EPC bids, two-way negotiation and commercial lock

Business Rules:
- Bids only on EPC_VERIFIED (or RMT_APPROVED) cases; placing one moves
  the case to BID_PLACED
- Counter-offers alternate: the seller answers the EPC's bid, then turns
  alternate; each appends {counter_amount, counter_duration, proposed_by_role}
- Negotiation moves bid and case to NEGOTIATION_IN_PROGRESS, whichever is behind
- Lock takes the LAST negotiation entry, else the original bid, and
  freezes it on the bid (locked_terms) and the case (commercial_snapshot)
- Only SUBMITTED / NEGOTIATION_IN_PROGRESS bids lock; a second lock is a
  StateConflictError
- Deals at or above the founder threshold (1 crore) need an approved
  DEAL_ABOVE_1CR request before they lock; the sign-off covers the amount
  approved, so a counter above it needs a fresh one
- Bid then case are written in that order, so a half-applied lock is
  visible as a locked bid on a negotiating case and is safe to retry

Called by: routers/cases.py
Depends on: models, state_machines, approval_service, notification_service
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import ApprovalRequiredError, AuthorizationError, StateConflictError, ValidationError
from ..models import Bid, Case, SubContractor, User
from ..state_machines import BID_MACHINE, CASE_MACHINE, BidStatus, CaseStatus, advance, fetch, record_status
from . import approval_service, notification_service

log = logging.getLogger("dealflow.bids")

NEGOTIATING_ROLES = ("epc", "subcontractor")


def _party_role(case: Case, user: User) -> str:
    """The side the user speaks for on this case, or AuthorizationError."""
    if user.role == "epc" and user.company_id == case.company_id:
        return "epc"
    if user.role == "subcontractor" and user.sub_contractor_id == case.sub_contractor_id:
        return "subcontractor"
    raise AuthorizationError(
        f"User {user.id} is not a party to case {case.case_number}",
        entity="Case", entity_id=case.id,
    )


def _validate_terms(amount: float, duration: int) -> None:
    if amount is None or amount <= 0:
        raise ValidationError("amount must be positive")
    if duration is None or duration <= 0:
        raise ValidationError("duration must be a positive number of days")


def place_bid(db: Session, user: User, case_id: int, bid_amount: float, funding_duration_days: int) -> Bid:
    _validate_terms(bid_amount, funding_duration_days)
    case = fetch(db, Case, case_id)
    if user.role != "admin" and _party_role(case, user) != "epc":
        raise AuthorizationError("Only the case's EPC can place a bid", entity="Case", entity_id=case.id)
    now = datetime.now(timezone.utc)
    advance(db, case, CASE_MACHINE, "place_bid", changed_by=user.id, now=now,
            notes=f"Bid {bid_amount} for {funding_duration_days} days")
    bid = Bid(
        case_id=case.id,
        company_id=case.company_id,
        placed_by_id=user.id,
        bid_amount=bid_amount,
        funding_duration_days=funding_duration_days,
    )
    record_status(bid, BidStatus.SUBMITTED, user.id, "Bid placed", now)
    db.add(bid)
    sc = db.get(SubContractor, case.sub_contractor_id)
    notification_service.queue(db, sc.email if sc else None, "bid_placed", case_number=case.case_number,
                               amount=bid_amount, duration=funding_duration_days)
    db.commit()
    log.info(f"Bid {bid.id} placed on {case.case_number}: {bid_amount} / {funding_duration_days}d")
    return bid


def get_bid(db: Session, bid_id: int) -> Bid:
    return fetch(db, Bid, bid_id)


def negotiate(
    db: Session, bid_id: int, user: User, counter_amount: float, counter_duration: int,
    message: str | None = None,
) -> Bid:
    _validate_terms(counter_amount, counter_duration)
    bid = fetch(db, Bid, bid_id)
    case = fetch(db, Case, bid.case_id)
    role = _party_role(case, user)
    BID_MACHINE.next_state(bid.status, "negotiate", bid.id)

    log_entries = list(bid.negotiations or [])
    expected = "subcontractor" if not log_entries else (
        "epc" if log_entries[-1]["proposed_by_role"] == "subcontractor" else "subcontractor"
    )
    if role != expected:
        raise StateConflictError(
            f"Waiting for a counter-offer from {expected} on bid {bid.id}",
            entity="Bid", entity_id=bid.id, current_status=bid.status, attempted="negotiate",
        )

    now = datetime.now(timezone.utc)
    advance(db, bid, BID_MACHINE, "negotiate", changed_by=user.id, now=now,
            notes=f"{role} countered {counter_amount} / {counter_duration}d")
    bid.negotiations = log_entries + [{
        "counter_amount": counter_amount,
        "counter_duration": counter_duration,
        "proposed_by_role": role,
        "proposed_by": user.id,
        "message": message,
        "proposed_at": now.isoformat(),
    }]
    if case.status == CaseStatus.BID_PLACED.value:
        advance(db, case, CASE_MACHINE, "negotiate", changed_by=user.id, now=now)
    notification_service.queue(db, f"case:{case.id}:{'subcontractor' if role == 'epc' else 'epc'}",
                               "counter_offer", case_number=case.case_number,
                               amount=counter_amount, duration=counter_duration)
    db.commit()
    log.info(f"Bid {bid.id}: {role} countered {counter_amount} / {counter_duration}d")
    return bid


def final_terms(bid: Bid) -> dict:
    """Last negotiation entry wins, else the original bid."""
    if bid.negotiations:
        last = bid.negotiations[-1]
        return {"amount": last["counter_amount"], "duration": last["counter_duration"], "source": "negotiation"}
    return {"amount": bid.bid_amount, "duration": bid.funding_duration_days, "source": "bid"}


def _founder_cleared(case: Case, amount: float) -> bool:
    return bool(case.founder_approved) and (case.founder_approved_amount or 0) >= amount


def lock_commercial(db: Session, bid_id: int, user: User) -> Bid:
    bid = fetch(db, Bid, bid_id)
    case = fetch(db, Case, bid.case_id)
    if user.role in NEGOTIATING_ROLES:
        _party_role(case, user)
    BID_MACHINE.next_state(bid.status, "lock", bid.id)
    CASE_MACHINE.next_state(case.status, "lock", case.id)

    terms = final_terms(bid)
    if terms["amount"] >= settings.founder_approval_threshold and not _founder_cleared(case, terms["amount"]):
        title = f"{case.case_number}: deal of {terms['amount']:,.0f} needs founder sign-off"
        req = approval_service.open_request_for(db, "DEAL_ABOVE_1CR", "case", case.id)
        if req is None:
            req = approval_service.create_request(
                db, user,
                request_type="DEAL_ABOVE_1CR",
                entity_type="case",
                entity_id=case.id,
                title=title,
                priority="HIGH",
                amount=terms["amount"],
            )
        elif (req.amount or 0) < terms["amount"]:
            log.info(f"Approval {req.id} raised from {req.amount} to {terms['amount']} before decision")
            req.amount = terms["amount"]
            req.title = title
            db.commit()
        raise ApprovalRequiredError(
            f"Case {case.case_number} needs founder approval before locking", req.id
        )

    now = datetime.now(timezone.utc)
    advance(db, bid, BID_MACHINE, "lock", changed_by=user.id, now=now, notes="Commercial terms locked")
    bid.locked_terms = {**terms, "locked_at": now.isoformat()}
    advance(db, case, CASE_MACHINE, "lock", changed_by=user.id, now=now, notes="Commercial terms locked")
    case.commercial_snapshot = {
        "bid_id": bid.id,
        "final_amount": terms["amount"],
        "final_duration": terms["duration"],
        "locked_at": now.isoformat(),
    }
    case.locked_at = now
    notification_service.queue_role(db, "ops", "commercial_locked", case_number=case.case_number,
                                    amount=terms["amount"], duration=terms["duration"])
    db.commit()
    log.info(f"Bid {bid.id} locked for {case.case_number}: {terms}")
    return bid


def reject_bid(db: Session, bid_id: int, user: User, reason: str | None = None) -> Bid:
    """Seller walks away from the bid; the case reopens for a fresh one."""
    bid = fetch(db, Bid, bid_id)
    case = fetch(db, Case, bid.case_id)
    if user.role != "admin" and _party_role(case, user) != "subcontractor":
        raise AuthorizationError("Only the seller can reject a bid", entity="Bid", entity_id=bid.id)
    now = datetime.now(timezone.utc)
    advance(db, bid, BID_MACHINE, "reject", changed_by=user.id, notes=reason, now=now)
    advance(db, case, CASE_MACHINE, "bid_rejected", changed_by=user.id, notes=reason, now=now)
    db.commit()
    log.info(f"Bid {bid.id} rejected by seller on {case.case_number}")
    return bid
