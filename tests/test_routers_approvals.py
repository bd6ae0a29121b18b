"""
test_routers_approvals.py — HTTP tests for the approval resolver and the blacklist gate

Approvals: filing, my-pending, level checks, escalation past the last
level, cancel. Blacklist: report, check, approve via the chain, revoke.

Called by: pytest
Depends on: dealflow/routers/approvals.py, dealflow/routers/blacklist.py, conftest.py
"""

import pytest

# ── Approvals ────────────────────────────────────────────────────────


@pytest.fixture()
def high_risk(client, new_case, ops_user):
    client.act_as(ops_user)
    resp = client.post("/approvals", json={"request_type": "HIGH_RISK_CASE", "title": "Seller on watchlist",
                                           "entity_type": "case", "entity_id": new_case.id, "priority": "HIGH"})
    assert resp.status_code == 201
    return resp.json()


def test_file_request(high_risk):
    assert high_risk["status"] == "PENDING"
    assert high_risk["current_level"] == 1
    assert high_risk["current_approver_role"] == "ops_manager"
    assert [s["approver_role"] for s in high_risk["approval_chain"]] == ["ops_manager", "founder"]
    assert high_risk["can_act"] is False


def test_unknown_request_type(client, ops_user):
    client.act_as(ops_user)
    resp = client.post("/approvals", json={"request_type": "BIRTHDAY_LEAVE", "title": "x"})
    assert resp.status_code == 400
    assert resp.json()["context"]["type"] == "validation_error"


def test_filing_against_missing_entity(client, ops_user):
    client.act_as(ops_user)
    resp = client.post("/approvals", json={"request_type": "DEAL_ABOVE_1CR", "title": "Big one",
                                           "entity_type": "case", "entity_id": 4242})
    assert resp.status_code == 404
    assert resp.json()["context"] == {"type": "not_found", "entity": "Case", "entity_id": 4242}


def test_filing_against_wrong_entity_type(client, new_case, ops_user):
    client.act_as(ops_user)
    resp = client.post("/approvals", json={"request_type": "AGENT_MISCONDUCT", "title": "Wrong target",
                                           "entity_type": "case", "entity_id": new_case.id})
    assert resp.status_code == 400
    assert resp.json()["context"]["entity_type"] == "case"


def test_epc_cannot_file(client, epc_user):
    client.act_as(epc_user)
    assert client.post("/approvals", json={"request_type": "PARTIAL_FUNDING", "title": "x"}).status_code == 403


def test_my_pending_and_counts(client, high_risk, ops_manager, founder):
    client.act_as(ops_manager)
    mine = client.get("/approvals/my-pending").json()
    assert mine["total"] == 1
    assert mine["items"][0]["can_act"] is True
    counts = client.get("/approvals/pending-counts").json()
    assert counts["by_role"] == {"ops_manager": 1}
    assert counts["by_status"] == {"PENDING": 1}


def test_escalate_then_founder_decides(client, high_risk, ops_manager, founder):
    rid = high_risk["id"]
    client.act_as(ops_manager)
    resp = client.post(f"/approvals/{rid}/escalate", json={"reason": "Exposure above team limit"})
    assert resp.json()["status"] == "ESCALATED"
    assert resp.json()["current_approver_role"] == "founder"

    denied = client.post(f"/approvals/{rid}/approve", json={})
    assert denied.status_code == 403
    assert denied.json()["context"]["required_role"] == "founder"

    client.act_as(founder)
    top = client.post(f"/approvals/{rid}/escalate", json={})
    assert top.status_code == 409
    assert top.json()["context"]["attempted"] == "escalate"

    done = client.post(f"/approvals/{rid}/approve", json={"notes": "Accept with 2x cover"})
    assert done.json()["status"] == "APPROVED"
    assert [s["status"] for s in done.json()["approval_chain"]] == ["SKIPPED", "APPROVED"]


def test_reject_needs_reason(client, high_risk, ops_manager):
    client.act_as(ops_manager)
    assert client.post(f"/approvals/{high_risk['id']}/reject", json={}).status_code == 400
    resp = client.post(f"/approvals/{high_risk['id']}/reject", json={"notes": "Not enough evidence"})
    assert resp.json()["status"] == "REJECTED"


def test_requester_cancels(client, high_risk, ops_user, rmt_user):
    client.act_as(rmt_user)
    assert client.post(f"/approvals/{high_risk['id']}/cancel", json={}).status_code == 403
    client.act_as(ops_user)
    assert client.post(f"/approvals/{high_risk['id']}/cancel", json={"reason": "Duplicate"}).json()["status"] \
        == "CANCELLED"


# ── Blacklist ────────────────────────────────────────────────────────


@pytest.fixture()
def report(client, seller, ops_user):
    client.act_as(ops_user)
    resp = client.post("/blacklist/report", json={"entity_type": "subcontractor", "entity_id": seller.id,
                                                  "reason": "FAKE_DOCUMENTS", "description": "Forged PO"})
    assert resp.status_code == 201
    return resp.json()


def test_pending_report_not_enforced(client, report):
    assert report["status"] == "PENDING_APPROVAL"
    assert client.post("/blacklist/check", json={"pan": "abcpk1234f"}).json() == {"blacklisted": False}


def test_approve_activates_entry(client, db_session, report, seller, ops_manager):
    client.act_as(ops_manager)
    resp = client.post(f"/blacklist/{report['id']}/approve", json={"notes": "Verified with EPC"})
    assert resp.json()["status"] == "ACTIVE"

    hit = client.post("/blacklist/check", json={"email": "RAVI@sge.in"}).json()
    assert hit["blacklisted"] is True
    assert hit["entry_id"] == report["id"]
    db_session.refresh(seller)
    assert seller.status == "BLACKLISTED"

    again = client.post(f"/blacklist/{report['id']}/approve", json={})
    assert again.status_code == 409


def test_reject_dismisses_report(client, report, ops_manager):
    client.act_as(ops_manager)
    resp = client.post(f"/blacklist/{report['id']}/reject", json={})
    assert resp.json()["status"] == "REVOKED"
    assert resp.json()["revoke_reason"] == "Report rejected"


def test_ops_cannot_approve(client, report, ops_user):
    client.act_as(ops_user)
    assert client.post(f"/blacklist/{report['id']}/approve", json={}).status_code == 403


def test_revoke_lifts_entry(client, report, ops_manager):
    client.act_as(ops_manager)
    client.post(f"/blacklist/{report['id']}/approve", json={})
    resp = client.post(f"/blacklist/{report['id']}/revoke", json={"reason": "Cleared by court order"})
    assert resp.json()["status"] == "REVOKED"
    assert client.post("/blacklist/check", json={"pan": "ABCPK1234F"}).json() == {"blacklisted": False}


def test_check_needs_an_identifier(client):
    assert client.post("/blacklist/check", json={}).status_code == 422
