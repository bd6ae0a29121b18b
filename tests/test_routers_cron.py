"""
test_routers_cron.py — HTTP tests for the manual sweep triggers

Access via X-Cron-Secret or an admin/founder bearer token; each sweep
reports its counts; run/all survives a failing sweep.

Called by: pytest
Depends on: dealflow/routers/cron.py, dealflow/dependencies.py, conftest.py
"""

from unittest.mock import patch

from dealflow.dependencies import issue_token
from dealflow.services import sweep_service

SECRET = {"X-Cron-Secret": "test-cron-secret"}


def test_status_lists_jobs(client):
    body = client.get("/cron/status", headers=SECRET).json()
    assert body["running"] is False
    assert {j["id"] for j in body["jobs"]} >= {"sla_overdue", "dormant_sweep", "nbfc_capacity_reset"}


def test_secret_or_token_required(client):
    assert client.post("/cron/run/dormant").status_code == 401
    assert client.post("/cron/run/dormant", headers={"X-Cron-Secret": "nope"}).status_code == 401


def test_founder_token_accepted(client, founder):
    resp = client.post("/cron/run/dormant", headers={"Authorization": f"Bearer {issue_token(founder)}"})
    assert resp.status_code == 200


def test_ops_token_refused(client, ops_user):
    resp = client.post("/cron/run/dormant", headers={"Authorization": f"Bearer {issue_token(ops_user)}"})
    assert resp.status_code == 403


def test_run_single_sweep(client, new_case):
    resp = client.post("/cron/run/sla-overdue", headers=SECRET)
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["message"] == "SLA overdue sweep completed"
    assert body["checked"] == 1
    assert body["milestones_overdue"] == 0


def test_unknown_sweep_404(client):
    resp = client.post("/cron/run/spring-cleaning", headers=SECRET)
    assert resp.status_code == 404
    assert resp.json()["context"] == {"type": "not_found", "entity": "Sweep", "entity_id": "spring-cleaning"}


def test_run_all(client):
    body = client.post("/cron/run/all", headers=SECRET).json()
    assert body["success"] is True
    assert set(body["results"]) == set(sweep_service.SWEEPS)


def test_run_all_reports_failed_sweep(client):
    def broken(db, now):
        raise RuntimeError("kyc feed down")

    with patch.dict(sweep_service.SWEEPS, {"kyc_expiry": broken}):
        body = client.post("/cron/run/all", headers=SECRET).json()
    assert body["success"] is False
    assert body["message"] == "Sweeps failed: kyc_expiry"
    assert body["results"]["kyc_expiry"] == {"error": "kyc feed down"}
    assert "error" not in body["results"]["dormant"]
