"""
nbfc_service.py — NBFC Matching & Scoring Engine, case sharing and lender responses

Business Rules:
- Candidates are ACTIVE, accept the case's risk level, and cover the deal
  amount: min_deal_size <= amount <= (max_deal_size or no upper bound)
- Filter order: preference_score desc, approval_rate desc, avg_interest_rate asc
- match score = preference + 0.3*approval_rate + 2*(20 - avg_rate)
                + max(0, 10 - avg_processing_days)
  Ranking is score desc; ties keep the filter order (stable sort)
- preference score = 50 + min(25, 0.25*approval_rate) + max(0, 15 - days)
                     + max(0, 10 - 0.5*(avg_rate - 10)), clamped to [0, 100]
  recomputed whenever a lender's metrics move
- A lender with no processing history counts as 10 days
- Cases are shared only once locked (or re-shared after every lender declined)
- First approving lender moves the case to NBFC_APPROVED; all declined -> NBFC_REJECTED

Called by: routers/nbfc.py, transaction_service, scheduler (capacity reset)
Depends on: models (Nbfc, NbfcShare, Case, SubContractor), state_machines
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from ..exceptions import AuthorizationError, StateConflictError, ValidationError
from ..models import Case, Nbfc, NbfcShare, SubContractor, User
from ..state_machines import CASE_MACHINE, CaseStatus, advance, fetch
from ..utils.dates import whole_days_between
from . import notification_service

log = logging.getLogger("dealflow.nbfc")

DEFAULT_PROCESSING_DAYS = 10
SHAREABLE_STATUSES = (
    CaseStatus.COMMERCIAL_LOCKED.value,
    CaseStatus.SHARED_WITH_NBFC.value,
    CaseStatus.NBFC_REJECTED.value,
)


# ── Scoring ──────────────────────────────────────────────────────────


def _processing_days(nbfc: Nbfc) -> float:
    return DEFAULT_PROCESSING_DAYS if nbfc.avg_processing_days is None else nbfc.avg_processing_days


def match_score(nbfc: Nbfc) -> float:
    score = nbfc.preference_score
    score += 0.3 * (nbfc.approval_rate or 0)
    score += 2 * (20 - nbfc.avg_interest_rate)
    score += max(0, 10 - _processing_days(nbfc))
    return round(score, 2)


def calculate_preference_score(nbfc: Nbfc) -> float:
    score = 50.0
    score += min(25, 0.25 * (nbfc.approval_rate or 0))
    score += max(0, 15 - _processing_days(nbfc))
    score += max(0, 10 - 0.5 * (nbfc.avg_interest_rate - 10))
    return round(min(100.0, max(0.0, score)), 2)


def case_risk_level(db: Session, case: Case) -> str:
    if case.risk_level:
        return case.risk_level
    sc = db.get(SubContractor, case.sub_contractor_id)
    return (sc.risk_category if sc else None) or "MEDIUM"


def case_amount(case: Case) -> float:
    """Locked amount once commercials are frozen, else the bill value."""
    if case.commercial_snapshot:
        return case.commercial_snapshot["final_amount"]
    return case.deal_value or 0


def candidates(db: Session, risk_level: str, amount: float) -> list[Nbfc]:
    rows = (
        db.query(Nbfc)
        .filter(Nbfc.status == "ACTIVE", Nbfc.min_deal_size <= amount)
        .filter((Nbfc.max_deal_size.is_(None)) | (Nbfc.max_deal_size >= amount))
        .order_by(Nbfc.preference_score.desc(), Nbfc.approval_rate.desc(), Nbfc.avg_interest_rate.asc())
        .all()
    )
    # accepted_risk_levels is a JSON list; filtered here to stay backend-neutral
    return [n for n in rows if risk_level in (n.accepted_risk_levels or [])]


def rank(nbfcs: list[Nbfc]) -> list[dict]:
    ranked = [
        {
            "nbfc": n,
            "match_score": match_score(n),
            "reasons": [
                f"Approval rate: {n.approval_rate or 0}%",
                f"Avg rate: {n.avg_interest_rate}%",
                f"Processing: {n.avg_processing_days if n.avg_processing_days is not None else 'N/A'} days",
            ],
        }
        for n in nbfcs
    ]
    return sorted(ranked, key=lambda r: r["match_score"], reverse=True)


def match_nbfcs(db: Session, case_id: int) -> list[dict]:
    case = fetch(db, Case, case_id)
    risk_level = case_risk_level(db, case)
    amount = case_amount(case)
    ranked = rank(candidates(db, risk_level, amount))
    log.info(f"Case {case.case_number}: {len(ranked)} lenders match ({risk_level}, {amount})")
    return ranked


# ── Sharing & responses ──────────────────────────────────────────────


def share_case(db: Session, case_id: int, nbfc_ids: list[int], user: User) -> list[NbfcShare]:
    """Offer a locked case to lenders. Already-shared lenders are skipped."""
    if not nbfc_ids:
        raise ValidationError("nbfc_ids must not be empty")
    case = fetch(db, Case, case_id)
    if case.status not in SHAREABLE_STATUSES:
        raise StateConflictError(
            f"Case {case.case_number} cannot be shared from {case.status}",
            entity="Case", entity_id=case.id, current_status=case.status, attempted="share_with_nbfc",
        )
    now = datetime.now(timezone.utc)
    existing = {s.nbfc_id for s in db.query(NbfcShare).filter(NbfcShare.case_id == case.id)}
    created = []
    for nbfc_id in dict.fromkeys(nbfc_ids):
        if nbfc_id in existing:
            continue
        nbfc = fetch(db, Nbfc, nbfc_id)
        if nbfc.status != "ACTIVE":
            raise StateConflictError(
                f"NBFC {nbfc.code} is {nbfc.status}",
                entity="Nbfc", entity_id=nbfc.id, current_status=nbfc.status, attempted="share",
            )
        share = NbfcShare(case_id=case.id, nbfc_id=nbfc.id, match_score=match_score(nbfc),
                          shared_by_id=user.id, shared_at=now)
        db.add(share)
        created.append(share)
        notification_service.queue(db, nbfc.contact_email, "case_shared",
                                   case_number=case.case_number, amount=case_amount(case))
    if created and case.status != CaseStatus.SHARED_WITH_NBFC.value:
        advance(db, case, CASE_MACHINE, "share_with_nbfc", changed_by=user.id, now=now,
                notes=f"Shared with {len(created)} lender(s)")
    db.commit()
    log.info(f"Case {case.case_number} shared with {[s.nbfc_id for s in created]} by {user.email}")
    return created


def respond(
    db: Session,
    case_id: int,
    user: User,
    approve: bool,
    *,
    nbfc_id: int | None = None,
    interest_rate: float | None = None,
    funding_percentage: float | None = None,
    tenor_days: int | None = None,
    notes: str | None = None,
) -> NbfcShare:
    """A lender approves (with terms) or declines a shared case."""
    lender_id = user.nbfc_id if user.role == "nbfc" else nbfc_id
    if lender_id is None:
        raise ValidationError("nbfc_id is required")
    if user.role == "nbfc" and nbfc_id is not None and nbfc_id != user.nbfc_id:
        raise AuthorizationError("Lenders can only answer for themselves", entity="Nbfc", entity_id=nbfc_id)
    if funding_percentage is not None and not 0 < funding_percentage <= 100:
        raise ValidationError("funding_percentage must be in (0, 100]")

    case = fetch(db, Case, case_id)
    share = (
        db.query(NbfcShare)
        .populate_existing()
        .with_for_update()
        .filter(NbfcShare.case_id == case.id, NbfcShare.nbfc_id == lender_id)
        .first()
    )
    if share is None:
        raise AuthorizationError(f"Case {case.case_number} was not shared with NBFC {lender_id}",
                                 entity="Case", entity_id=case.id)
    if share.status != "PENDING":
        raise StateConflictError(
            f"NBFC {lender_id} already answered case {case.case_number}",
            entity="NbfcShare", entity_id=share.id, current_status=share.status, attempted="respond",
        )

    now = datetime.now(timezone.utc)
    share.status = "APPROVED" if approve else "REJECTED"
    share.interest_rate = interest_rate
    share.funding_percentage = funding_percentage
    share.tenor_days = tenor_days
    share.response_notes = notes
    share.responded_by_id = user.id
    share.responded_at = now

    nbfc = fetch(db, Nbfc, lender_id)
    record_response(nbfc, approve, whole_days_between(share.shared_at, now) if share.shared_at else None)

    if approve and case.status == CaseStatus.SHARED_WITH_NBFC.value:
        advance(db, case, CASE_MACHINE, "nbfc_approve", changed_by=user.id, now=now,
                notes=f"Approved by {nbfc.code}")
        case.selected_nbfc_id = nbfc.id
    elif not approve and case.status == CaseStatus.SHARED_WITH_NBFC.value:
        db.flush()
        open_shares = (
            db.query(NbfcShare)
            .filter(NbfcShare.case_id == case.id, NbfcShare.status.in_(("PENDING", "APPROVED")))
            .count()
        )
        if open_shares == 0:
            advance(db, case, CASE_MACHINE, "nbfc_reject", changed_by=user.id, now=now,
                    notes="Every lender declined")
    notification_service.queue_role(db, "ops", "nbfc_responded", case_number=case.case_number,
                                    nbfc=nbfc.code, decision=share.status)
    db.commit()
    log.info(f"NBFC {nbfc.code} {share.status} case {case.case_number}")
    return share


# ── Metrics ──────────────────────────────────────────────────────────


def record_response(nbfc: Nbfc, approved: bool, processing_days: int | None) -> None:
    """Fold one decision into the rolling metrics and rescore the lender."""
    prior = nbfc.total_deals_processed or 0
    nbfc.total_deals_processed = prior + 1
    if approved:
        nbfc.approved_deals = (nbfc.approved_deals or 0) + 1
    nbfc.approval_rate = round(100 * (nbfc.approved_deals or 0) / nbfc.total_deals_processed, 2)
    if processing_days is not None:
        old_avg = nbfc.avg_processing_days or 0
        nbfc.avg_processing_days = round((old_avg * prior + processing_days) / nbfc.total_deals_processed, 2)
    nbfc.preference_score = calculate_preference_score(nbfc)


def update_metrics_on_close(db: Session, nbfc_id: int, funded_amount: float, interest_rate: float | None) -> Nbfc:
    """A repaid deal adds to disbursed volume and moves the average rate. No commit."""
    nbfc = fetch(db, Nbfc, nbfc_id)
    n = nbfc.approved_deals or 0
    nbfc.total_disbursed = (nbfc.total_disbursed or 0) + funded_amount
    if interest_rate is not None and n:
        nbfc.avg_interest_rate = round((nbfc.avg_interest_rate * (n - 1) + interest_rate) / n, 2)
    nbfc.preference_score = calculate_preference_score(nbfc)
    log.info(f"NBFC {nbfc.code}: disbursed {nbfc.total_disbursed}, preference {nbfc.preference_score}")
    return nbfc


def consume_capacity(nbfc: Nbfc, amount: float) -> None:
    nbfc.capacity_used = (nbfc.capacity_used or 0) + amount
    if nbfc.monthly_capacity and nbfc.capacity_used > nbfc.monthly_capacity:
        log.warning(f"NBFC {nbfc.code} over monthly capacity: {nbfc.capacity_used} / {nbfc.monthly_capacity}")


def reset_monthly_capacity(db: Session) -> dict:
    updated = db.query(Nbfc).filter(Nbfc.capacity_used > 0).update(
        {Nbfc.capacity_used: 0}, synchronize_session=False
    )
    db.commit()
    log.info(f"Monthly capacity reset for {updated} lender(s)")
    return {"reset": updated}
