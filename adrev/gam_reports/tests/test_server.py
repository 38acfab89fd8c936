"""Tests for the HTTP trigger endpoints."""

from __future__ import annotations

import threading
from unittest.mock import Mock

import pytest

from adrev.gam_reports import server
from adrev.gam_reports.errors import RunLeaseError
from adrev.gam_reports.pipeline import Pipeline


@pytest.fixture
def pipeline():
    return Pipeline(
        config=Mock(job_name="gam_reports"),
        ch_client=Mock(),
        orchestrator=Mock(),
        sink=Mock(),
        lease=Mock(),
        stop_event=threading.Event(),
        dry_run=False,
    )


@pytest.fixture
def spawned():
    return []


@pytest.fixture
def client(pipeline, spawned):
    def _spawn(target, name):
        spawned.append(name)
        target()

    app = server.create_app(pipeline, spawn=_spawn)
    app.config["TESTING"] = True
    return app.test_client()


def test_root_describes_service(client):
    response = client.get("/")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["service"] == server.SERVICE_NAME
    assert "POST /fetch-reports" in payload["endpoints"]


def test_health(client):
    payload = client.get("/health").get_json()

    assert payload["status"] == "healthy"
    assert payload["uptime"] >= 0
    assert payload["timestamp"].endswith("Z")


def test_fetch_reports_acknowledges_and_runs_in_background(client, pipeline, spawned, monkeypatch):
    execute_all = Mock()
    monkeypatch.setattr(server, "execute_all", execute_all)

    response = client.post("/fetch-reports", json={"request_id": "req-1", "triggered_by": "cron"})

    assert response.status_code == 202
    payload = response.get_json()
    assert payload["success"] is True
    assert payload["requestId"] == "req-1"
    assert payload["note"] == server.BACKGROUND_NOTE
    assert "triggeredAt" in payload
    pipeline.lease.acquire.assert_called_once_with("req-1")
    execute_all.assert_called_once_with(pipeline, owner="req-1", lease_held=True)
    assert spawned == ["fetch-reports-req-1"]


def test_fetch_reports_generates_request_id(client, monkeypatch):
    monkeypatch.setattr(server, "execute_all", Mock())

    response = client.post("/fetch-reports")

    assert response.status_code == 202
    assert response.get_json()["requestId"]


def test_fetch_reports_rejected_while_run_in_progress(client, pipeline, spawned, monkeypatch):
    execute_all = Mock()
    monkeypatch.setattr(server, "execute_all", execute_all)
    pipeline.lease.acquire.side_effect = RunLeaseError("Run already in progress (owner: req-0)", holder="req-0")

    response = client.post("/fetch-reports", json={"request_id": "req-1"})

    assert response.status_code == 409
    assert response.get_json()["success"] is False
    execute_all.assert_not_called()
    assert spawned == []


def test_background_failure_does_not_change_ack(client, monkeypatch):
    monkeypatch.setattr(server, "execute_all", Mock(side_effect=RuntimeError("boom")))

    assert client.post("/fetch-reports", json={"request_id": "req-1"}).status_code == 202


def test_historical_requires_publisher_id(client, monkeypatch):
    execute_single = Mock()
    monkeypatch.setattr(server, "execute_single", execute_single)

    response = client.post("/fetch-historical-reports", json={"request_id": "req-2"})

    assert response.status_code == 400
    assert response.get_json() == {"success": False, "error": "publisherId is required", "requestId": "req-2"}
    execute_single.assert_not_called()


def test_historical_runs_backfill(client, pipeline, monkeypatch):
    execute_single = Mock()
    monkeypatch.setattr(server, "execute_single", execute_single)

    response = client.post("/fetch-historical-reports", json={"publisherId": "pub-9"})

    assert response.status_code == 202
    payload = response.get_json()
    assert payload["publisherId"] == "pub-9"
    assert payload["success"] is True
    execute_single.assert_called_once_with(pipeline, "pub-9", historical=True)
