"""
test_onboarding_service.py — Tests for seller onboarding, cooling period and re-entry

Covers lead creation, the KYC path (expiry stamp, SLA close), role and
ordering checks on API events, EPC validation by the referring EPC, the
cooling period with early re-entry, dormancy reactivation, and EPC company
transitions behind the blacklist gate.

Called by: pytest
Depends on: dealflow/services/onboarding_service.py, approval_service.py, conftest.py
"""

from datetime import datetime, timedelta, timezone

import pytest

from dealflow.exceptions import (
    AuthorizationError,
    BlacklistedError,
    DomainRuleError,
    StateConflictError,
    ValidationError,
)
from dealflow.models import ApprovalRequest, Blacklist, Sla
from dealflow.services import approval_service, onboarding_service
from dealflow.state_machines import record_status
from dealflow.utils.dates import add_months


@pytest.fixture()
def lead(db_session, sales_user, company):
    return onboarding_service.create_sub_contractor(
        db_session, sales_user, company_name="Om Sai Civil Works", contact_name="Prakash",
        email=" Prakash@OmSai.in", pan="aaopp1234q", gstin="27aaopp1234q1z2", epc_company_id=company.id,
    )


def _walk(db, sc, user, *events):
    for event in events:
        onboarding_service.transition_sub_contractor(db, sc.id, event, user)


# ── Leads & KYC ──────────────────────────────────────────────────────


def test_lead_normalized_with_kyc_sla(db_session, lead):
    assert lead.status == "LEAD_CREATED"
    assert (lead.email, lead.pan, lead.gstin) == ("prakash@omsai.in", "AAOPP1234Q", "27AAOPP1234Q1Z2")
    sla = db_session.query(Sla).filter_by(entity_type="KYC_COMPLETION", entity_id=lead.id).one()
    assert sla.status == "ACTIVE"


def test_lead_needs_company_name(db_session, sales_user):
    with pytest.raises(ValidationError):
        onboarding_service.create_sub_contractor(db_session, sales_user, contact_name="No name")


def test_kyc_approval_stamps_expiry(db_session, lead, ops_user):
    _walk(db_session, lead, ops_user, "complete_profile", "request_kyc", "submit_kyc", "approve_kyc")
    assert lead.status == "KYC_COMPLETED"
    assert lead.kyc_expires_at == add_months(lead.last_kyc_at, 12)
    sla = db_session.query(Sla).filter_by(entity_type="KYC_COMPLETION", entity_id=lead.id).one()
    assert sla.status == "COMPLETED"
    assert [h["status"] for h in lead.status_history][-1] == "KYC_COMPLETED"


def test_kyc_rejection_goes_back_to_pending(db_session, lead, ops_user):
    _walk(db_session, lead, ops_user, "complete_profile", "request_kyc", "submit_kyc", "reject_kyc")
    assert lead.status == "KYC_PENDING"


def test_no_skipping_ahead(db_session, lead, ops_user):
    with pytest.raises(StateConflictError) as exc:
        onboarding_service.transition_sub_contractor(db_session, lead.id, "approve_kyc", ops_user)
    assert exc.value.context["current_status"] == "LEAD_CREATED"


def test_role_checked_per_event(db_session, lead, rmt_user):
    with pytest.raises(AuthorizationError):
        onboarding_service.transition_sub_contractor(db_session, lead.id, "complete_profile", rmt_user)


def test_internal_events_not_exposed(db_session, lead, ops_manager):
    with pytest.raises(ValidationError):
        onboarding_service.transition_sub_contractor(db_session, lead.id, "blacklist", ops_manager)


def test_activity_stamped_on_transition(db_session, lead, ops_user):
    lead.last_activity_at = datetime.now(timezone.utc) - timedelta(days=60)
    db_session.commit()
    _walk(db_session, lead, ops_user, "complete_profile")
    assert lead.last_activity_at > datetime.now(timezone.utc) - timedelta(minutes=1)


# ── EPC validation & activation ──────────────────────────────────────


def test_only_referring_epc_validates(db_session, lead, epc_user):
    from dealflow.models import Company, User

    record_status(lead, "EPC_VALIDATION_PENDING", notes="seed")
    other = Company(name="Shapoorji")
    record_status(other, "ACTIVE")
    db_session.add(other)
    db_session.flush()
    stranger = User(email="ap@shapoorji.in", name="ap", role="epc", company_id=other.id)
    db_session.add(stranger)
    db_session.commit()

    with pytest.raises(AuthorizationError):
        onboarding_service.transition_sub_contractor(db_session, lead.id, "epc_validate", stranger)
    onboarding_service.transition_sub_contractor(db_session, lead.id, "epc_validate", epc_user)
    assert lead.status == "EPC_VALIDATED"


def test_activation_passes_blacklist_gate(db_session, lead, ops_user):
    record_status(lead, "EPC_VALIDATED", notes="seed")
    db_session.commit()
    onboarding_service.transition_sub_contractor(db_session, lead.id, "activate", ops_user)
    assert lead.status == "ACTIVE"


def test_dormant_reactivation_clears_marker(db_session, seller, ops_user):
    onboarding_service.mark_dormant(db_session, seller, datetime.now(timezone.utc), "No activity for 95 days")
    db_session.commit()
    assert seller.dormant_reason == "No activity for 95 days"

    onboarding_service.transition_sub_contractor(db_session, seller.id, "reactivate", ops_user)
    assert seller.status == "ACTIVE"
    assert seller.dormant_marked_at is None
    assert seller.dormant_reason is None


# ── EPC companies ────────────────────────────────────────────────────


@pytest.fixture()
def epc_lead(db_session, sales_user):
    return onboarding_service.create_company(db_session, sales_user, name="Kalpataru Power",
                                             email="ap@kalpataru.in", pan="aabck1234q")


def test_company_walks_to_active(db_session, epc_lead, sales_user, ops_user):
    onboarding_service.transition_company(db_session, epc_lead.id, "issue_credentials", sales_user)
    onboarding_service.transition_company(db_session, epc_lead.id, "submit_docs", ops_user)
    onboarding_service.transition_company(db_session, epc_lead.id, "request_action", ops_user, "GST cert blurry")
    onboarding_service.transition_company(db_session, epc_lead.id, "submit_docs", ops_user)
    co = onboarding_service.transition_company(db_session, epc_lead.id, "activate", ops_user)
    assert co.status == "ACTIVE"
    assert co.kyc_expires_at == add_months(co.last_kyc_at, 12)
    assert [h["status"] for h in co.status_history] == [
        "LEAD_CREATED", "CREDENTIALS_CREATED", "DOCS_SUBMITTED", "ACTION_REQUIRED", "DOCS_SUBMITTED", "ACTIVE",
    ]


def test_blacklisted_company_cannot_activate(db_session, epc_lead, ops_user):
    entry = Blacklist(entity_type="company", pan="AABCK1234Q", reason="FRAUD")
    record_status(entry, "ACTIVE", notes="seed")
    record_status(epc_lead, "DOCS_SUBMITTED", notes="seed")
    db_session.add(entry)
    db_session.commit()

    with pytest.raises(BlacklistedError) as exc:
        onboarding_service.transition_company(db_session, epc_lead.id, "activate", ops_user)
    assert exc.value.context == {"blacklist_id": entry.id, "matched_on": "pan"}
    db_session.rollback()
    assert epc_lead.status == "DOCS_SUBMITTED"


def test_company_events_role_checked(db_session, company, ops_user, ops_manager):
    with pytest.raises(AuthorizationError):
        onboarding_service.transition_company(db_session, company.id, "suspend", ops_user)
    with pytest.raises(ValidationError):
        onboarding_service.transition_company(db_session, company.id, "approve_kyc", ops_manager)

    onboarding_service.transition_company(db_session, company.id, "suspend", ops_manager, "Overdue x3")
    assert company.status == "SUSPENDED"
    onboarding_service.transition_company(db_session, company.id, "reactivate", ops_user)
    onboarding_service.transition_company(db_session, company.id, "mark_dormant", ops_user)
    assert company.status == "DORMANT"


def test_epc_submits_docs_for_own_company_only(db_session, company, epc_lead, epc_user):
    record_status(company, "CREDENTIALS_CREATED", notes="seed")
    record_status(epc_lead, "CREDENTIALS_CREATED", notes="seed")
    db_session.commit()

    with pytest.raises(AuthorizationError):
        onboarding_service.transition_company(db_session, epc_lead.id, "submit_docs", epc_user)
    onboarding_service.transition_company(db_session, company.id, "submit_docs", epc_user)
    assert company.status == "DOCS_SUBMITTED"


# ── Cooling period & re-entry ────────────────────────────────────────


@pytest.fixture()
def cooling(db_session, lead, rmt_user):
    record_status(lead, "RMT_PENDING", notes="seed")
    db_session.commit()
    onboarding_service.start_cooling(db_session, lead, rmt_user.id, datetime.now(timezone.utc), "Fake references")
    db_session.commit()
    return lead


def test_cooling_lasts_six_months(db_session, cooling):
    assert cooling.status == "COOLING_PERIOD"
    assert cooling.cooling_ends_at == add_months(cooling.cooling_started_at, 6)
    assert [h["status"] for h in cooling.status_history][-2:] == ["RMT_REJECTED", "COOLING_PERIOD"]


def test_reentry_refused_while_cooling(db_session, cooling, ops_user):
    with pytest.raises(DomainRuleError) as exc:
        onboarding_service.transition_sub_contractor(db_session, cooling.id, "reenter", ops_user)
    assert "cooling_ends_at" in exc.value.context
    db_session.rollback()
    assert cooling.status == "COOLING_PERIOD"


def test_reentry_after_cooling_ends(db_session, cooling, ops_user):
    cooling.cooling_ends_at = datetime.now(timezone.utc) - timedelta(days=1)
    db_session.commit()
    onboarding_service.transition_sub_contractor(db_session, cooling.id, "reenter", ops_user)
    assert cooling.status == "LEAD_CREATED"
    assert cooling.cooling_ends_at is None


def test_early_reentry_via_approval(db_session, cooling, sales_user, ops_manager):
    req = onboarding_service.request_early_reentry(db_session, cooling.id, sales_user, "Referees re-verified")
    assert req.request_type == "EARLY_REENTRY"
    # asking twice reuses the open request
    assert onboarding_service.request_early_reentry(db_session, cooling.id, sales_user, "Again").id == req.id
    assert db_session.query(ApprovalRequest).count() == 1

    approval_service.approve(db_session, req.id, ops_manager, "Cleared")
    assert cooling.status == "LEAD_CREATED"
    assert cooling.early_reentry_approved is False


def test_early_reentry_needs_reason(db_session, cooling, sales_user):
    with pytest.raises(ValidationError):
        onboarding_service.request_early_reentry(db_session, cooling.id, sales_user, "")


def test_early_reentry_only_while_cooling(db_session, seller, sales_user):
    with pytest.raises(StateConflictError):
        onboarding_service.request_early_reentry(db_session, seller.id, sales_user, "Please")
