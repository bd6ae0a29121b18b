"""
test_risk_service.py — Tests for the risk scoring engine and assessment lifecycle

Covers compute_score/categorize (weights, tier boundaries, monotonicity),
assessment creation behind the Blacklist Gate, checklist rescoring, and
the RMT decision paths (auto-approve, approval request, cooling period).

Called by: pytest
Depends on: dealflow/services/risk_service.py, conftest.py
"""

import pytest

from dealflow.exceptions import BlacklistedError, DomainRuleError, StateConflictError, ValidationError
from dealflow.models import ApprovalRequest, Blacklist, CHECKLIST_ITEMS
from dealflow.services import approval_service, risk_service
from dealflow.state_machines import record_status

ALL_TRUE = {item: True for item in CHECKLIST_ITEMS}


def _checklist(**unverified):
    return {**ALL_TRUE, **{k: False for k in unverified}}


# ── Scoring engine ───────────────────────────────────────────────────


def test_full_checklist_scores_100_low():
    score = risk_service.compute_score(ALL_TRUE)
    assert score == 100
    assert risk_service.categorize(score) == "LOW"


def test_unverified_blacklist_and_gst_scores_40_high():
    score = risk_service.compute_score(_checklist(blacklist_check=1, gst_active=1))
    assert score == 40
    assert risk_service.categorize(score) == "HIGH"


def test_unverified_blacklist_alone_scores_50_medium():
    score = risk_service.compute_score(_checklist(blacklist_check=1))
    assert score == 50
    assert risk_service.categorize(score) == "MEDIUM"


def test_missing_financials_scores_70_medium():
    checklist = _checklist(bank_statements_provided=1, positive_cash_flow=1, regular_transactions=1)
    assert risk_service.compute_score(checklist) == 70
    assert risk_service.categorize(70) == "MEDIUM"


def test_empty_checklist_clamps_to_zero():
    assert risk_service.compute_score({}) == 0


def test_penalty_weights_total_per_category():
    p = risk_service.PENALTIES
    assert p["business_registered"] + p["gst_active"] + p["pan_verified"] == 25
    assert p["bank_statements_provided"] + p["positive_cash_flow"] + p["regular_transactions"] == 30
    assert p["past_projects_verified"] + p["epc_references_valid"] == 20
    assert p["key_personnel_verified"] == 15
    assert p["blacklist_check"] == 50


@pytest.mark.parametrize("score,category", [(80, "LOW"), (79, "MEDIUM"), (50, "MEDIUM"), (49, "HIGH")])
def test_tier_boundaries(score, category):
    assert risk_service.categorize(score) == category


def test_verifying_an_item_never_lowers_the_score():
    base = _checklist(**{item: 1 for item in CHECKLIST_ITEMS})
    for item in CHECKLIST_ITEMS:
        better = {**base, item: True}
        assert risk_service.compute_score(better) >= risk_service.compute_score(base)


def test_unknown_item_rejected():
    with pytest.raises(ValidationError):
        risk_service.compute_score({"has_website": True})


# ── Assessment lifecycle ─────────────────────────────────────────────


@pytest.fixture()
def pending_seller(db_session, seller):
    record_status(seller, "KYC_COMPLETED", notes="seed")
    seller.risk_category = None
    db_session.commit()
    return seller


def test_create_assessment_moves_seller_to_rmt_pending(db_session, pending_seller, rmt_user):
    a = risk_service.create_assessment(db_session, pending_seller.id, rmt_user)
    assert pending_seller.status == "RMT_PENDING"
    assert pending_seller.risk_assessment_id == a.id
    # only blacklist_check starts verified: 100 - 110 clamps to 0
    assert a.risk_score == 0
    assert a.risk_category == "HIGH"
    assert a.status == "NEEDS_FOUNDER_APPROVAL"


def test_create_assessment_blocked_by_active_blacklist(db_session, pending_seller, rmt_user):
    entry = Blacklist(entity_type="subcontractor", pan=pending_seller.pan, reason="FRAUD")
    record_status(entry, "ACTIVE", notes="seed")
    db_session.add(entry)
    db_session.commit()

    with pytest.raises(BlacklistedError) as exc:
        risk_service.create_assessment(db_session, pending_seller.id, rmt_user)
    assert exc.value.context["matched_on"] == "pan"
    assert pending_seller.status == "KYC_COMPLETED"


def test_second_open_assessment_refused(db_session, pending_seller, rmt_user):
    risk_service.create_assessment(db_session, pending_seller.id, rmt_user)
    with pytest.raises(StateConflictError):
        risk_service.create_assessment(db_session, pending_seller.id, rmt_user)


def test_checklist_update_rescores_together(db_session, pending_seller, rmt_user):
    a = risk_service.create_assessment(db_session, pending_seller.id, rmt_user)
    a = risk_service.update_checklist(db_session, a.id, ALL_TRUE, rmt_user, "All verified")
    assert (a.risk_score, a.risk_category, a.recommendation, a.status) == (100, "LOW", "PROCEED", "PENDING")
    assert a.checklist_notes == "All verified"


def test_low_risk_proceed_auto_approves(db_session, pending_seller, rmt_user):
    a = risk_service.create_assessment(db_session, pending_seller.id, rmt_user)
    risk_service.update_checklist(db_session, a.id, ALL_TRUE, rmt_user)
    a = risk_service.complete_assessment(db_session, a.id, rmt_user, "PROCEED")
    assert a.status == "APPROVED"
    assert pending_seller.status == "RMT_APPROVED"
    assert pending_seller.risk_category == "LOW"
    assert db_session.query(ApprovalRequest).count() == 0


def test_proceed_needs_required_items(db_session, pending_seller, rmt_user):
    a = risk_service.create_assessment(db_session, pending_seller.id, rmt_user)
    with pytest.raises(DomainRuleError) as exc:
        risk_service.complete_assessment(db_session, a.id, rmt_user, "PROCEED")
    assert "gst_active" in exc.value.context["missing_items"]


def test_medium_proceed_goes_to_ops_manager(db_session, pending_seller, rmt_user, ops_manager):
    a = risk_service.create_assessment(db_session, pending_seller.id, rmt_user)
    checklist = _checklist(past_projects_verified=1, epc_references_valid=1, key_personnel_verified=1)
    risk_service.update_checklist(db_session, a.id, checklist, rmt_user)
    a = risk_service.complete_assessment(db_session, a.id, rmt_user, "PROCEED")
    assert a.risk_category == "MEDIUM"
    req = db_session.get(ApprovalRequest, a.approval_request_id)
    assert req.request_type == "SELLER_RISK_REJECTION"
    assert req.current_approver_role == "ops_manager"

    approval_service.approve(db_session, req.id, ops_manager, "Fine")
    assert a.status == "APPROVED"
    assert pending_seller.status == "RMT_APPROVED"


def test_approved_rejection_starts_cooling(db_session, pending_seller, rmt_user, ops_manager):
    a = risk_service.create_assessment(db_session, pending_seller.id, rmt_user)
    a = risk_service.complete_assessment(db_session, a.id, rmt_user, "REJECT", "Fake references")
    approval_service.approve(db_session, a.approval_request_id, ops_manager)

    assert a.status == "REJECTED"
    assert pending_seller.status == "COOLING_PERIOD"
    assert pending_seller.cooling_ends_at is not None
    assert pending_seller.cooling_reason == "Fake references"


def test_checklist_frozen_after_decision(db_session, pending_seller, rmt_user):
    a = risk_service.create_assessment(db_session, pending_seller.id, rmt_user)
    risk_service.complete_assessment(db_session, a.id, rmt_user, "REJECT")
    with pytest.raises(StateConflictError):
        risk_service.update_checklist(db_session, a.id, {"gst_active": True}, rmt_user)


def test_risk_dashboard_counts(db_session, pending_seller, rmt_user):
    risk_service.create_assessment(db_session, pending_seller.id, rmt_user)
    dash = risk_service.risk_dashboard(db_session)
    assert dash["total"] == 1
    assert dash["pending_approval"] == 1
    assert dash["average_score"] == 0.0
