"""
sweep_service.py — Periodic sweeps: dormancy, KYC expiry, repayment reminders, overdue alerts

Every sweep is safe to re-run: each entity is processed and committed on
its own, a failure rolls back only that entity and lands in the summary's
`errors`, and one-shot notifications are stamped on the row that earned them.

Business Rules:
- Dormancy: last_activity_at <= now - 90d AND no Transaction for the seller
  created within the last 90d (both required); each newly dormant seller
  also files a DORMANT_ESCALATION approval request
- KYC expiry: expiring within 30 days -> one reminder (kyc_expiry_notified_at);
  already expired -> re_kyc_triggered
- Repayment reminder: disbursed, unpaid, due within 30 days -> one reminder
- Actual overdue: check_overdue on every past-due transaction; alert level
  OVERDUE at >= 7 days, CRITICAL at >= 30 days, each raised once

Called by: scheduler.py, routers/cron.py
Depends on: models, onboarding_service, transaction_service, sla_service,
            approval_service, nbfc_service, notification_service
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import exists
from sqlalchemy.orm import Session

from ..config import settings
from ..models import Company, SubContractor, Transaction
from ..state_machines import SUB_CONTRACTOR_MACHINE
from ..utils.dates import utc, whole_days_between
from . import approval_service, nbfc_service, notification_service, onboarding_service, sla_service, transaction_service

log = logging.getLogger("dealflow.sweeps")

_UNPAID = ("DISBURSED", "AWAITING_REPAYMENT")
_DUE_TRACKED = ("DISBURSED", "AWAITING_REPAYMENT", "OVERDUE")


# ── Dormancy ─────────────────────────────────────────────────────────


def run_dormant_sweep(db: Session, now: datetime | None = None) -> dict:
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=settings.dormancy_days)
    eligible = sorted(SUB_CONTRACTOR_MACHINE.sources_for("mark_dormant"))
    recent_txn = exists().where(Transaction.seller_id == SubContractor.id, Transaction.created_at >= cutoff)
    candidates = (
        db.query(SubContractor)
        .filter(
            SubContractor.status.in_(eligible),
            SubContractor.last_activity_at.isnot(None),
            SubContractor.last_activity_at <= cutoff,
            ~recent_txn,
        )
        .order_by(SubContractor.id)
        .all()
    )
    marked = 0
    errors = []
    for sc in candidates:
        try:
            inactive_for = whole_days_between(sc.last_activity_at, now)
            onboarding_service.mark_dormant(db, sc, now, f"No activity for {inactive_for} days")
            approval_service.create_request(
                db, None,
                request_type="DORMANT_ESCALATION",
                entity_type="subcontractor",
                entity_id=sc.id,
                title=f"{sc.company_name} went dormant",
                description=f"No activity or transactions for {inactive_for} days",
                priority="LOW",
                commit=False,
            )
            notification_service.queue(db, sc.email, "account_dormant", sub_contractor_id=sc.id)
            db.commit()
            marked += 1
            log.info(f"SubContractor {sc.id} marked DORMANT ({inactive_for}d inactive)")
        except Exception as e:
            db.rollback()
            log.error(f"Dormant sweep failed for SubContractor {sc.id}: {e}")
            errors.append({"id": sc.id, "error": str(e)})

    result = {"checked": len(candidates), "marked": marked, "errors": errors}
    log.info(f"Dormant sweep complete: {result}")
    return result


# ── KYC expiry ───────────────────────────────────────────────────────


def run_kyc_expiry(db: Session, now: datetime | None = None) -> dict:
    now = now or datetime.now(timezone.utc)
    horizon = now + timedelta(days=settings.kyc_expiry_warning_days)
    reminded = 0
    triggered = 0
    checked = 0
    errors = []

    for model in (SubContractor, Company):
        parties = (
            db.query(model)
            .filter(
                model.kyc_expires_at.isnot(None),
                model.kyc_expires_at <= horizon,
                model.status != "BLACKLISTED",
            )
            .order_by(model.id)
            .all()
        )
        for party in parties:
            checked += 1
            try:
                expires = utc(party.kyc_expires_at)
                if expires <= now:
                    if party.re_kyc_triggered:
                        continue
                    party.re_kyc_triggered = True
                    party.re_kyc_reason = "KYC_EXPIRED"
                    notification_service.queue(db, party.email, "rekyc_required",
                                               entity=model.__name__, entity_id=party.id)
                    triggered += 1
                else:
                    if party.kyc_expiry_notified_at is not None:
                        continue
                    party.kyc_expiry_notified_at = now
                    notification_service.queue(db, party.email, "kyc_expiring",
                                               entity=model.__name__, entity_id=party.id,
                                               expires_at=expires.isoformat())
                    reminded += 1
                db.commit()
            except Exception as e:
                db.rollback()
                log.error(f"KYC expiry check failed for {model.__name__} {party.id}: {e}")
                errors.append({"id": party.id, "entity": model.__name__, "error": str(e)})

    result = {"checked": checked, "reminders_sent": reminded, "rekyc_triggered": triggered, "errors": errors}
    log.info(f"KYC expiry sweep complete: {result}")
    return result


# ── Repayments ───────────────────────────────────────────────────────


def run_overdue_notifications(db: Session, now: datetime | None = None) -> dict:
    """Heads-up to seller and buyer a month before repayment falls due."""
    now = now or datetime.now(timezone.utc)
    horizon = now + timedelta(days=settings.repayment_reminder_days)
    txns = (
        db.query(Transaction)
        .filter(
            Transaction.status.in_(_UNPAID),
            Transaction.due_at.isnot(None),
            Transaction.due_at >= now,
            Transaction.due_at <= horizon,
            Transaction.repayment_reminder_sent_at.is_(None),
        )
        .order_by(Transaction.id)
        .all()
    )
    sent = 0
    errors = []
    for txn in txns:
        try:
            txn.repayment_reminder_sent_at = now
            seller = db.get(SubContractor, txn.seller_id)
            buyer = db.get(Company, txn.buyer_id)
            for party in (seller, buyer):
                notification_service.queue(db, party.email if party else None, "repayment_due_soon",
                                           transaction_number=txn.transaction_number,
                                           due_at=utc(txn.due_at).isoformat(), total_due=txn.total_due)
            db.commit()
            sent += 1
        except Exception as e:
            db.rollback()
            log.error(f"Repayment reminder failed for transaction {txn.id}: {e}")
            errors.append({"id": txn.id, "error": str(e)})

    result = {"checked": len(txns), "notifications_sent": sent, "errors": errors}
    log.info(f"Overdue notification sweep complete: {result}")
    return result


def run_actual_overdue(db: Session, now: datetime | None = None) -> dict:
    now = now or datetime.now(timezone.utc)
    txns = (
        db.query(Transaction)
        .filter(Transaction.status.in_(_DUE_TRACKED), Transaction.due_at.isnot(None), Transaction.due_at < now)
        .order_by(Transaction.id)
        .all()
    )
    counts = {"marked_overdue": 0, "alerts_overdue": 0, "alerts_critical": 0, "recourse_triggered": 0}
    errors = []
    for txn in txns:
        try:
            was_overdue = txn.status == "OVERDUE"
            had_recourse = bool(txn.recourse_triggered)
            txn = transaction_service.check_overdue(db, txn.id, now=now)
            days = txn.overdue_by_days or 0
            if not was_overdue and txn.status == "OVERDUE":
                counts["marked_overdue"] += 1
            if txn.recourse_triggered and not had_recourse:
                counts["recourse_triggered"] += 1

            if days >= settings.critical_overdue_days and txn.overdue_alert_level != "CRITICAL":
                txn.overdue_alert_level = "CRITICAL"
                notification_service.queue_role(db, "founder", "critical_overdue",
                                                transaction_number=txn.transaction_number, days_overdue=days)
                counts["alerts_critical"] += 1
            elif days >= settings.recourse_trigger_days and txn.overdue_alert_level is None:
                txn.overdue_alert_level = "OVERDUE"
                notification_service.queue_role(db, "ops", "transaction_overdue",
                                                transaction_number=txn.transaction_number, days_overdue=days)
                counts["alerts_overdue"] += 1
            db.commit()
        except Exception as e:
            db.rollback()
            log.error(f"Overdue check failed for transaction {txn.id}: {e}")
            errors.append({"id": txn.id, "error": str(e)})

    result = {"checked": len(txns), **counts, "errors": errors}
    log.info(f"Actual overdue sweep complete: {result}")
    return result


# ── All ──────────────────────────────────────────────────────────────


SWEEPS = {
    "dormant": run_dormant_sweep,
    "sla_reminders": sla_service.run_reminder_sweep,
    "sla_overdue": sla_service.run_overdue_sweep,
    "kyc_expiry": run_kyc_expiry,
    "overdue_notifications": run_overdue_notifications,
    "actual_overdue": run_actual_overdue,
}


def run_all(db: Session, now: datetime | None = None) -> dict:
    """Run every sweep in turn; a sweep that blows up is reported, not fatal."""
    now = now or datetime.now(timezone.utc)
    results = {}
    for name, sweep in SWEEPS.items():
        try:
            results[name] = sweep(db, now)
        except Exception as e:
            db.rollback()
            log.error(f"Sweep {name} failed: {e}")
            results[name] = {"error": str(e)}
    return results


def reset_nbfc_capacity(db: Session, now: datetime | None = None) -> dict:
    return nbfc_service.reset_monthly_capacity(db)
