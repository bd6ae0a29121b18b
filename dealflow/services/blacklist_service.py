"""
blacklist_service.py — Blacklist Gate (lifetime fraud registry)

Business Rules:
- Identifiers are normalized: PAN/GSTIN upper-case, email lower-case
- is_blacklisted() matches ACTIVE entries on PAN OR GSTIN OR email
- Checked before a risk assessment is created and before any party
  transition whose target is ACTIVE
- Reporting creates a PENDING_APPROVAL entry + BLACKLIST_APPROVAL request
  (HIGH priority for FRAUD); a second non-revoked entry for the same
  PAN/GSTIN is refused
- Only approval of that request flips the entry ACTIVE, which cascades
  BLACKLISTED onto the SubContractor/Company it names
- Revocation only from ACTIVE, audited with revoked_by/revoked_at/reason

Called by: routers/blacklist.py, risk_service, onboarding_service, approval_service (post-approval)
Depends on: models (Blacklist, SubContractor, Company), state_machines
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..exceptions import BlacklistedError, StateConflictError, ValidationError
from ..models import Blacklist, Company, SubContractor, User
from ..state_machines import BLACKLIST_MACHINE, BlacklistStatus, advance, fetch, record_status

log = logging.getLogger("dealflow.blacklist")

REASONS = (
    "FRAUD",
    "FAKE_DOCUMENTS",
    "MISREPRESENTATION",
    "PAYMENT_DEFAULT",
    "EPC_REJECTION_FRAUD",
    "OTHER",
)
ENTITY_TYPES = ("company", "subcontractor")


def normalize(pan: str | None = None, gstin: str | None = None, email: str | None = None) -> dict:
    return {
        "pan": pan.strip().upper() if pan and pan.strip() else None,
        "gstin": gstin.strip().upper() if gstin and gstin.strip() else None,
        "email": email.strip().lower() if email and email.strip() else None,
    }


def is_blacklisted(
    db: Session, pan: str | None = None, gstin: str | None = None, email: str | None = None
) -> Blacklist | None:
    """First ACTIVE entry matching any supplied identifier, else None."""
    ids = normalize(pan, gstin, email)
    clauses = [getattr(Blacklist, k) == v for k, v in ids.items() if v]
    if not clauses:
        return None
    return (
        db.query(Blacklist)
        .filter(Blacklist.status == BlacklistStatus.ACTIVE.value, or_(*clauses))
        .order_by(Blacklist.id)
        .first()
    )


def ensure_not_blacklisted(db: Session, party) -> None:
    """Raise BlacklistedError if the party matches an ACTIVE entry."""
    entry = is_blacklisted(db, pan=party.pan, gstin=party.gstin, email=party.email)
    if entry:
        ids = normalize(party.pan, party.gstin, party.email)
        matched = next(k for k in ("pan", "gstin", "email") if ids[k] and ids[k] == getattr(entry, k))
        log.warning(f"Blacklist hit: {type(party).__name__} {party.id} on {matched} (entry {entry.id})")
        raise BlacklistedError(entry.id, matched)


def report(
    db: Session,
    reporter: User,
    *,
    entity_type: str,
    reason: str,
    entity_id: int | None = None,
    entity_name: str | None = None,
    pan: str | None = None,
    gstin: str | None = None,
    email: str | None = None,
    description: str | None = None,
) -> Blacklist:
    """File a blacklist report awaiting ops approval."""
    from . import approval_service

    if entity_type not in ENTITY_TYPES:
        raise ValidationError(f"entity_type must be one of {', '.join(ENTITY_TYPES)}")
    if reason not in REASONS:
        raise ValidationError(f"reason must be one of {', '.join(REASONS)}")
    ids = normalize(pan, gstin, email)
    if entity_id is not None:
        party = _party(db, entity_type, entity_id)
        ids = {k: ids[k] or v for k, v in normalize(party.pan, party.gstin, party.email).items()}
        entity_name = entity_name or _party_name(party)
    if not any(ids.values()):
        raise ValidationError("At least one of pan, gstin or email is required")

    dup_clauses = [getattr(Blacklist, k) == ids[k] for k in ("pan", "gstin") if ids[k]]
    if dup_clauses:
        existing = (
            db.query(Blacklist)
            .filter(Blacklist.status != BlacklistStatus.REVOKED.value, or_(*dup_clauses))
            .first()
        )
        if existing:
            raise StateConflictError(
                f"Blacklist entry {existing.id} already covers this PAN/GSTIN",
                entity="Blacklist",
                entity_id=existing.id,
                current_status=existing.status,
                attempted="report",
            )

    entry = Blacklist(
        entity_type=entity_type,
        entity_id=entity_id,
        entity_name=entity_name,
        reason=reason,
        description=description,
        reported_by_id=reporter.id,
        **ids,
    )
    record_status(entry, BlacklistStatus.PENDING_APPROVAL, reporter.id, f"Reported: {reason}")
    db.add(entry)
    db.flush()

    request = approval_service.create_request(
        db,
        reporter,
        request_type="BLACKLIST_APPROVAL",
        entity_type="blacklist",
        entity_id=entry.id,
        title=f"Blacklist {entity_name or entity_type}: {reason}",
        description=description,
        priority="HIGH" if reason == "FRAUD" else "MEDIUM",
        commit=False,
    )
    entry.approval_request_id = request.id
    db.commit()
    log.info(f"Blacklist entry {entry.id} reported by {reporter.email} ({reason}), approval {request.id}")
    return entry


def activate_entry(db: Session, entry_id: int, approver_id: int | None, now: datetime | None = None) -> Blacklist:
    """PENDING_APPROVAL -> ACTIVE and cascade BLACKLISTED onto the party. No commit."""
    from . import onboarding_service

    entry = fetch(db, Blacklist, entry_id)
    advance(db, entry, BLACKLIST_MACHINE, "approve", changed_by=approver_id,
            notes="Blacklist approved", now=now)
    if entry.entity_id is not None:
        party = _party(db, entry.entity_type, entry.entity_id)
        if party.status != "BLACKLISTED":
            onboarding_service.apply_event(
                db, party, "blacklist", changed_by=approver_id,
                notes=f"Blacklisted: {entry.reason}", now=now,
            )
    log.info(f"Blacklist entry {entry.id} ACTIVE ({entry.entity_type} {entry.entity_id})")
    return entry


def dismiss_entry(db: Session, entry_id: int, approver_id: int | None, reason: str | None = None,
                  now: datetime | None = None) -> Blacklist:
    """Rejected report: PENDING_APPROVAL -> REVOKED. No commit."""
    entry = fetch(db, Blacklist, entry_id)
    advance(db, entry, BLACKLIST_MACHINE, "reject", changed_by=approver_id,
            notes=reason or "Report rejected", now=now)
    entry.revoke_reason = reason or "Report rejected"
    return entry


def revoke(db: Session, entry_id: int, user: User, reason: str) -> Blacklist:
    """ACTIVE -> REVOKED, audited. The party's own status is left for ops to restore."""
    if not reason or not reason.strip():
        raise ValidationError("A revocation reason is required")
    now = datetime.now(timezone.utc)
    entry = fetch(db, Blacklist, entry_id)
    advance(db, entry, BLACKLIST_MACHINE, "revoke", changed_by=user.id, notes=reason, now=now)
    entry.revoked_by_id = user.id
    entry.revoked_at = now
    entry.revoke_reason = reason
    db.commit()
    log.info(f"Blacklist entry {entry.id} revoked by {user.email}: {reason}")
    return entry


def _party(db: Session, entity_type: str, entity_id: int):
    model = SubContractor if entity_type == "subcontractor" else Company
    return fetch(db, model, entity_id)


def _party_name(party) -> str:
    return getattr(party, "company_name", None) or getattr(party, "name", None)
