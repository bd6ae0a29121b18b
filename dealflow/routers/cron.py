"""
cron.py — Manual triggers for the scheduled sweeps

Same sweeps the in-process scheduler runs, exposed so an external cron
(or an operator) can fire them on demand.

Business Rules:
- Access: X-Cron-Secret header, or an admin/founder bearer token
- Each sweep is idempotent; re-running it does not double-mark or re-notify
- Response: {"success": true, "message": ..., **sweep counts}

Called by: main.py (router mount), external cron
Depends on: sweep_service, scheduler, dependencies
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from loguru import logger
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import require_cron_access
from ..exceptions import NotFoundError
from ..scheduler import schedule_description, scheduler
from ..services import sweep_service

router = APIRouter(prefix="/cron", tags=["cron"])

_MESSAGES = {
    "dormant": "Dormant sweep completed",
    "sla_reminders": "SLA reminder sweep completed",
    "sla_overdue": "SLA overdue sweep completed",
    "kyc_expiry": "KYC expiry sweep completed",
    "overdue_notifications": "Repayment reminder sweep completed",
    "actual_overdue": "Overdue transaction sweep completed",
}


@router.get("/status")
def cron_status(_=Depends(require_cron_access)):
    return {
        "running": scheduler.running,
        "jobs": schedule_description(),
        "last_results": scheduler.last_result,
    }


@router.post("/run/all")
def run_all(_=Depends(require_cron_access), db: Session = Depends(get_db)):
    results = sweep_service.run_all(db, datetime.now(timezone.utc))
    failed = [name for name, r in results.items() if "error" in r]
    logger.info("Cron run/all finished, failed: {}", failed or "none")
    return {
        "success": not failed,
        "message": "All sweeps completed" if not failed else f"Sweeps failed: {', '.join(failed)}",
        "results": results,
    }


@router.post("/run/{sweep}")
def run_sweep(sweep: str, _=Depends(require_cron_access), db: Session = Depends(get_db)):
    name = sweep.replace("-", "_")
    func = sweep_service.SWEEPS.get(name)
    if func is None:
        raise NotFoundError("Sweep", sweep)
    result = func(db, datetime.now(timezone.utc))
    logger.info("Cron {}: {}", name, result)
    return {"success": True, "message": _MESSAGES[name], **result}
