"""
test_sla_service.py — Tests for the SLA Milestone Scheduler

Covers fixed milestone deadlines, on-time vs late completion, closing an
SLA, and idempotence of the overdue and reminder sweeps.

Called by: pytest
Depends on: dealflow/services/sla_service.py, conftest.py
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from dealflow.exceptions import NotFoundError, StateConflictError, ValidationError
from dealflow.models import ApprovalRequest, SlaEvent
from dealflow.services import sla_service

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _days(n: int) -> datetime:
    return T0 + timedelta(days=n)


def _milestone(sla, key):
    return next(m for m in sla.milestones if m.key == key)


# ── Creation & completion ────────────────────────────────────────────


def test_milestones_fixed_at_creation(db_session):
    sla = sla_service.create_sla(db_session, "CASE", 1, now=T0)
    assert sla.status == "ACTIVE"
    assert [m.key for m in sla.milestones] == ["day3", "day7", "day10", "day14"]
    assert [m.due_at for m in sla.milestones] == [_days(3), _days(7), _days(10), _days(14)]
    assert all(m.status == "PENDING" for m in sla.milestones)


def test_unknown_entity_type(db_session):
    with pytest.raises(ValidationError):
        sla_service.create_sla(db_session, "LUNCH", 1)


def test_on_time_and_late_completion(db_session, ops_user):
    sla = sla_service.create_sla(db_session, "CASE", 1, now=T0)
    on_time = sla_service.complete_milestone(db_session, sla.id, "day3", ops_user, now=_days(3))
    late = sla_service.complete_milestone(db_session, sla.id, "day7", ops_user, "Docs came in late", now=_days(8))
    assert on_time.status == "COMPLETED"
    assert late.status == "COMPLETED_LATE"
    assert late.completed_by_id == ops_user.id
    assert sla.status == "ACTIVE"


def test_all_milestones_close_the_sla(db_session):
    sla = sla_service.create_sla(db_session, "NBFC_RESPONSE", 5, now=T0)
    for key in ("day3", "day7", "day10", "day14"):
        sla_service.complete_milestone(db_session, sla.id, key, now=_days(1))
    assert sla.status == "COMPLETED"
    assert sla.completed_at == _days(1)

    with pytest.raises(StateConflictError):
        sla_service.complete_milestone(db_session, sla.id, "day3", now=_days(2))


def test_milestone_completes_once(db_session):
    sla = sla_service.create_sla(db_session, "CASE", 1, now=T0)
    sla_service.complete_milestone(db_session, sla.id, "day3", now=_days(1))
    with pytest.raises(StateConflictError):
        sla_service.complete_milestone(db_session, sla.id, "day3", now=_days(2))


def test_unknown_milestone_key(db_session):
    sla = sla_service.create_sla(db_session, "CASE", 1, now=T0)
    with pytest.raises(NotFoundError):
        sla_service.complete_milestone(db_session, sla.id, "day99")


def test_close_entity_slas(db_session):
    sla = sla_service.create_sla(db_session, "KYC_COMPLETION", 9, now=T0)
    assert sla_service.close_entity_slas(db_session, "KYC_COMPLETION", 9, now=_days(8)) == 1
    db_session.commit()
    assert sla.status == "COMPLETED"
    assert _milestone(sla, "day3").status == "COMPLETED_LATE"
    assert _milestone(sla, "day10").status == "COMPLETED"
    # nothing left open
    assert sla_service.close_entity_slas(db_session, "KYC_COMPLETION", 9) == 0


# ── Overdue sweep ────────────────────────────────────────────────────


def test_overdue_sweep_flips_and_escalates_once(db_session):
    sla = sla_service.create_sla(db_session, "CASE", 1, now=T0)

    first = sla_service.run_overdue_sweep(db_session, now=_days(8))
    assert first == {"checked": 1, "milestones_overdue": 2, "escalations_created": 2, "errors": []}
    assert _milestone(sla, "day3").status == "OVERDUE"
    assert _milestone(sla, "day3").days_overdue == 5
    assert _milestone(sla, "day10").status == "PENDING"

    again = sla_service.run_overdue_sweep(db_session, now=_days(8))
    assert again["milestones_overdue"] == 0
    assert again["escalations_created"] == 0
    assert db_session.query(SlaEvent).filter_by(kind="MILESTONE_OVERDUE").count() == 2


def test_overdue_sweep_only_escalates_new_misses(db_session):
    sla = sla_service.create_sla(db_session, "CASE", 1, now=T0)
    sla_service.run_overdue_sweep(db_session, now=_days(8))
    later = sla_service.run_overdue_sweep(db_session, now=_days(11))
    assert later["milestones_overdue"] == 1
    assert later["escalations_created"] == 1
    assert _milestone(sla, "day3").days_overdue == 8


def test_completed_milestones_are_not_overdue(db_session):
    sla = sla_service.create_sla(db_session, "CASE", 1, now=T0)
    sla_service.complete_milestone(db_session, sla.id, "day3", now=_days(2))
    result = sla_service.run_overdue_sweep(db_session, now=_days(5))
    assert result["milestones_overdue"] == 0


def test_closed_slas_are_skipped(db_session):
    sla_service.create_sla(db_session, "CASE", 1, now=T0)
    sla_service.close_entity_slas(db_session, "CASE", 1, now=_days(1))
    db_session.commit()
    assert sla_service.run_overdue_sweep(db_session, now=_days(30))["checked"] == 0


# ── Reminder sweep ───────────────────────────────────────────────────


def test_reminder_sweep_emits_furthest_stage_once(db_session):
    sla = sla_service.create_sla(db_session, "CASE", 1, now=T0)

    # day3 and day7 both passed: only the second reminder goes out
    result = sla_service.run_reminder_sweep(db_session, now=_days(8))
    assert result["reminders_sent"] == 1
    assert sla.status == "REMINDER_2_SENT"
    assert db_session.query(SlaEvent).filter_by(kind="REMINDER_1").count() == 0

    assert sla_service.run_reminder_sweep(db_session, now=_days(9))["reminders_sent"] == 0
    assert sla.status == "REMINDER_2_SENT"


def test_reminder_stages_progress(db_session):
    sla = sla_service.create_sla(db_session, "CASE", 1, now=T0)
    sla_service.run_reminder_sweep(db_session, now=_days(3))
    assert sla.status == "REMINDER_1_SENT"
    assert sla_service.run_reminder_sweep(db_session, now=_days(10))["escalated"] == 1
    assert sla.status == "ESCALATED"
    assert sla_service.run_reminder_sweep(db_session, now=_days(14))["dormant"] == 1
    assert sla.status == "DORMANT"


def test_epc_validation_escalation_files_approval(db_session):
    sla = sla_service.create_sla(db_session, "EPC_VALIDATION", 42, now=T0)
    sla_service.run_reminder_sweep(db_session, now=_days(11))
    req = db_session.query(ApprovalRequest).one()
    assert req.request_type == "EPC_DELAY_ESCALATION"
    assert (req.entity_type, req.entity_id) == ("sla", sla.id)
    assert req.current_approver_role == "ops_manager"


def test_done_milestones_send_no_reminder(db_session):
    sla = sla_service.create_sla(db_session, "CASE", 1, now=T0)
    sla_service.complete_milestone(db_session, sla.id, "day3", now=_days(1))
    assert sla_service.run_reminder_sweep(db_session, now=_days(4))["reminders_sent"] == 0
    assert sla.status == "ACTIVE"


def test_one_bad_sla_does_not_stop_the_sweep(db_session):
    bad = sla_service.create_sla(db_session, "CASE", 1, now=T0)
    good = sla_service.create_sla(db_session, "CASE", 2, now=T0)
    with patch("dealflow.services.notification_service.queue_role", side_effect=[RuntimeError("boom"), None]):
        result = sla_service.run_reminder_sweep(db_session, now=_days(4))
    assert result["reminders_sent"] == 1
    assert [e["sla_id"] for e in result["errors"]] == [bad.id]
    assert good.status == "REMINDER_1_SENT"
    assert bad.status == "ACTIVE"


# ── Dashboard ────────────────────────────────────────────────────────


def test_sla_dashboard(db_session):
    sla_service.create_sla(db_session, "CASE", 1, now=T0)
    sla_service.create_sla(db_session, "CASE", 2, now=T0)
    sla_service.close_entity_slas(db_session, "CASE", 2, now=_days(9))
    db_session.commit()
    sla_service.run_overdue_sweep(db_session, now=_days(8))

    dash = sla_service.sla_dashboard(db_session)
    assert dash["by_status"] == {"ACTIVE": 1, "COMPLETED": 1}
    assert dash["active"] == 1
    assert dash["overdue_milestones"] == 2
    assert dash["completed_late"] == 2
    assert dash["escalations"] == 2
