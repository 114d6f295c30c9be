from __future__ import annotations

import pytest

from identity_sync.models import SyncRun, SyncRunStatus, db
from identity_sync.utils.permissions import ADMIN_KEY_HEADER, check_admin_api_key

ADMIN_KEY = "s3cret-admin-key"


@pytest.fixture
def secured_client(app, client):
    app.config["SYNC_ADMIN_API_KEY"] = ADMIN_KEY
    return client


def _headers():
    return {ADMIN_KEY_HEADER: ADMIN_KEY}


def test_health_endpoint_lists_source_readiness(app, client):
    app.config["STRIPE_SECRET_KEY"] = None

    response = client.get("/sync/health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["enabled"] is True
    sources = {entry["name"]: entry for entry in payload["sources"]}
    assert sources["csv"]["status"] == "ready"
    assert sources["stripe"]["status"] == "missing_config"
    assert sources["stripe"]["missing_config"] == ["STRIPE_SECRET_KEY"]


def test_trigger_requires_admin_key(secured_client):
    response = secured_client.post("/sync/trigger", json={"sources": ["csv"]})
    assert response.status_code == 401
    assert response.get_json() == {"ok": False, "error": "Unauthorized"}

    wrong = secured_client.post("/sync/trigger", json={"sources": ["csv"]}, headers={ADMIN_KEY_HEADER: "nope"})
    assert wrong.status_code == 401


def test_admin_key_check_rules():
    assert check_admin_api_key(None, {"SYNC_ADMIN_API_KEY": None}) is True
    assert check_admin_api_key(None, {"SYNC_ADMIN_API_KEY": None, "ENV_IS_PRODUCTION": True}) is False
    assert check_admin_api_key("abc", {"SYNC_ADMIN_API_KEY": "abc"}) is True
    assert check_admin_api_key("abd", {"SYNC_ADMIN_API_KEY": "abc"}) is False


def test_trigger_runs_one_batch(app, secured_client, csv_rows):
    app.extensions["sync"]["worker_enabled"] = False
    csv_rows(3)

    response = secured_client.post(
        "/sync/trigger",
        json={"sources": ["csv"], "batchSize": 2},
        headers=_headers(),
    )

    assert response.status_code == 200, response.get_json()
    payload = response.get_json()
    assert payload["ok"] is True
    assert payload["hasMore"] is True
    assert payload["status"] == "paused"
    assert payload["batch"]["inserted"] == 2
    assert payload["pending"]["total"] == 1


def test_trigger_completes_small_run(secured_client, csv_rows):
    csv_rows(2)

    response = secured_client.post("/sync/trigger", json={"sources": "csv"}, headers=_headers())

    payload = response.get_json()
    assert response.status_code == 200
    assert payload["status"] == "completed"
    assert payload["hasMore"] is False
    assert payload["progressPct"] == 100.0


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"sources": ["hubspot"]},
        {"sources": ["csv"], "batchSize": -5},
    ],
)
def test_trigger_rejects_invalid_requests(secured_client, body):
    response = secured_client.post("/sync/trigger", json=body, headers=_headers())
    assert response.status_code == 400
    assert response.get_json()["ok"] is False


def test_trigger_unknown_run_returns_404(secured_client):
    response = secured_client.post("/sync/trigger", json={"syncRunId": 12345}, headers=_headers())
    assert response.status_code == 404


def test_trigger_fetch_failure_returns_500(app, secured_client):
    app.config["STRIPE_SECRET_KEY"] = None

    response = secured_client.post("/sync/trigger", json={"sources": ["stripe"]}, headers=_headers())

    assert response.status_code == 500
    payload = response.get_json()
    assert payload["ok"] is False
    assert payload["status"] == "failed"
    assert "STRIPE_SECRET_KEY" in payload["error"]


def test_trigger_disabled_returns_404(app, secured_client):
    app.config["SYNC_ENABLED"] = False
    response = secured_client.post("/sync/trigger", json={"sources": ["csv"]}, headers=_headers())
    assert response.status_code == 404


def test_cancel_endpoint(secured_client, csv_rows):
    csv_rows(4)
    secured_client.post("/sync/trigger", json={"sources": ["csv"], "batchSize": 1}, headers=_headers())

    response = secured_client.post("/sync/cancel", json={"sources": ["csv"]}, headers=_headers())

    assert response.status_code == 200
    assert response.get_json() == {"ok": True, "status": "cancelled", "cancelled": 1}
    assert SyncRun.query.filter_by(status=SyncRunStatus.CANCELLED).count() == 1


def test_force_cancel_through_trigger(secured_client, csv_rows):
    csv_rows(4)
    secured_client.post("/sync/trigger", json={"sources": ["csv"], "batchSize": 1}, headers=_headers())

    response = secured_client.post(
        "/sync/trigger",
        json={"sources": ["csv"], "forceCancel": True},
        headers=_headers(),
    )

    assert response.status_code == 200
    assert response.get_json()["cancelled"] == 1


def test_force_cancel_string_false_does_not_cancel(secured_client, csv_rows):
    csv_rows(4)
    secured_client.post("/sync/trigger", json={"sources": ["csv"], "batchSize": 1}, headers=_headers())

    response = secured_client.post(
        "/sync/trigger",
        json={"sources": ["csv"], "batchSize": 1, "forceCancel": "false"},
        headers=_headers(),
    )

    assert response.status_code == 200
    assert "cancelled" not in response.get_json()
    assert SyncRun.query.filter_by(status=SyncRunStatus.CANCELLED).count() == 0


def test_trigger_rejects_ambiguous_flag(secured_client):
    response = secured_client.post(
        "/sync/trigger",
        json={"sources": ["csv"], "forceCancel": "maybe"},
        headers=_headers(),
    )

    assert response.status_code == 400
    assert "forceCancel" in response.get_json()["error"]


def test_trigger_dry_run_previews_batch(secured_client, csv_rows):
    csv_rows(3)

    response = secured_client.post(
        "/sync/trigger",
        json={"sources": ["csv"], "batchSize": 2, "dryRun": True},
        headers=_headers(),
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["dryRun"] is True
    assert payload["status"] == "dry_run"
    assert payload["syncRunId"] is None
    assert payload["batch"]["inserted"] == 2
    assert payload["pending"]["total"] == 3
    assert SyncRun.query.count() == 0


def test_trigger_dry_run_requires_sources(secured_client):
    response = secured_client.post("/sync/trigger", json={"syncRunId": 1, "dryRun": True}, headers=_headers())
    assert response.status_code == 400


def test_runs_list_and_detail(secured_client, csv_rows):
    csv_rows(2)
    trigger = secured_client.post("/sync/trigger", json={"sources": ["csv"]}, headers=_headers()).get_json()

    listing = secured_client.get("/sync/runs?status=completed&source=csv", headers=_headers())
    assert listing.status_code == 200
    body = listing.get_json()
    assert body["total"] == 1
    assert body["items"][0]["id"] == trigger["syncRunId"]
    assert body["items"][0]["totals"]["inserted"] == 2

    detail = secured_client.get(f"/sync/runs/{trigger['syncRunId']}", headers=_headers())
    assert detail.status_code == 200
    detail_body = detail.get_json()
    assert detail_body["status"] == "completed"
    assert detail_body["checkpoint"]["cursors"]["csv"]["kind"] == "row_id"
    assert detail_body["metadata"]["initial_pending_total"] == 2


def test_runs_list_rejects_bad_filters(secured_client):
    response = secured_client.get("/sync/runs?sort=duration", headers=_headers())
    assert response.status_code == 400


def test_run_detail_missing(secured_client):
    response = secured_client.get("/sync/runs/999", headers=_headers())
    assert response.status_code == 404
    assert response.get_json()["ok"] is False


def test_unknown_route_returns_json_404(client):
    response = client.get("/no-such-page")
    assert response.status_code == 404
    assert response.get_json() == {"ok": False, "error": "Not found"}


def test_runs_list_empty(secured_client):
    response = secured_client.get("/sync/runs", headers=_headers())
    assert response.status_code == 200
    assert response.get_json()["items"] == []
    assert db.session.query(SyncRun).count() == 0
