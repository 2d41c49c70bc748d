import time

import pytest
from conftest import FakeGateway
from fastapi.testclient import TestClient

from focuslock.api.main import STATE, app
from focuslock.api.services.runtime import build_runtime
from focuslock.api.services.store import KeyValueStore
from focuslock.config import Settings
from focuslock.model.models import ALERT_TRIGGERED
from focuslock.ui.notifications import NotificationConfig, NotificationService


@pytest.fixture
def runtime(host, clock, rng, tmp_path):
    return build_runtime(
        Settings(store_path=None, log_dir=str(tmp_path), disable_puzzle_count=2),
        gateway=FakeGateway(),
        host=host,
        store=KeyValueStore(),
        notifier=NotificationService(NotificationConfig(enabled=False)),
        clock=clock,
        rng=rng,
    )


@pytest.fixture
def client(runtime):
    STATE["runtime"] = runtime
    with TestClient(app) as test_client:
        yield test_client
    STATE["runtime"] = None


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def test_runtime_not_started():
    """起動前は 503"""
    STATE["runtime"] = None
    response = TestClient(app).get("/alert")
    assert response.status_code == 503


class TestSessionEndpoints:
    def test_declare_and_clear(self, client):
        response = client.post("/session", json={"work_task": "Write report"})
        assert response.status_code == 200
        assert response.json()["session"]["work_task"] == "Write report"
        assert client.get("/session").json()["session"]["declared"] is True

        client.post("/session", json={"work_task": ""})
        assert client.get("/session").json()["session"] is None


class TestEventEndpoints:
    """companion からのイベント"""

    def test_network_event(self, client, runtime):
        response = client.post(
            "/events/network",
            json={"url": "https://www.youtube.com/api", "resource_type": "xmlhttprequest"},
        )
        assert response.json() == {"ok": True, "recorded": True}
        assert runtime.activity.snapshot().domains == ("youtube.com",)

    def test_network_event_requires_url(self, client):
        response = client.post("/events/network", json={"url": "  "})
        assert response.status_code == 422

    def test_view_event_negative_idle_rejected(self, client):
        response = client.post(
            "/events/view", json={"event": "updated", "view_id": 1, "idle_ms": -1}
        )
        assert response.status_code == 422

    def test_completed_navigation_triggers_evaluation(self, client, runtime):
        response = client.post(
            "/events/view",
            json={
                "event": "updated",
                "view_id": 1,
                "url": "https://github.com/user/repo",
                "title": "repo",
                "active": True,
                "status": "complete",
            },
        )
        assert response.json()["evaluation_requested"] is True
        assert wait_for(lambda: client.get("/snapshot").json()["snapshot"] is not None)
        snapshot = client.get("/snapshot").json()["snapshot"]
        assert snapshot["state"] == "on_task"
        assert snapshot["context"]["view_id"] == 1

    def test_activation_blocked_while_locked(self, client):
        client.post(
            "/events/view",
            json={"event": "updated", "view_id": 1, "url": "https://nba.com", "active": True},
        )
        client.post("/attention/debug")
        client.get("/control")

        response = client.post("/events/view", json={"event": "activated", "view_id": 2})
        assert response.json()["allowed"] is False
        messages = client.get("/control").json()["messages"]
        assert messages == [{"type": "ACTIVATE_VIEW", "view_id": 1, "payload": {}}]


class TestAlertEndpoints:
    """ロック / 解除の流れ"""

    def test_drowsiness_lock_and_unlock(self, client, runtime, clock):
        client.post(
            "/events/view",
            json={"event": "updated", "view_id": 1, "url": "https://github.com", "active": True},
        )
        body = client.post("/attention/debug").json()
        assert body["alert"]["phase"] == "locked"
        assert body["alert"]["kind"] == "drowsiness"
        assert len(body["alert"]["alarms"]) == 5
        assert client.get("/control").json()["messages"][0]["type"] == ALERT_TRIGGERED

        client.post(
            "/attention",
            json={"timestamp": clock(), "state": "awake", "confidence": 0.9},
        )
        for _ in range(10):
            body = client.post("/alert/ack").json()
        assert body["alert"]["stage"] == "puzzle"
        assert body["alert"]["prompt"]

        wrong = client.post("/alert/answer", json={"answer": "nope"}).json()
        assert wrong["correct"] is False
        assert wrong["alert"]["error"]

        answer = runtime.alerts.challenge.expected_answer
        result = client.post("/alert/answer", json={"answer": answer}).json()
        assert result["correct"] is True
        assert result["alert"]["phase"] == "idle"

    def test_dismiss_keeps_lock(self, client):
        client.post("/attention/debug")
        body = client.post("/alert/dismiss").json()
        assert body["alert"]["alarms"] == []
        assert body["alert"]["phase"] == "locked"

    def test_attention_validation(self, client):
        response = client.post(
            "/attention", json={"timestamp": 0, "state": "awake", "confidence": 1.5}
        )
        assert response.status_code == 422
        response = client.post(
            "/attention", json={"timestamp": 0, "state": "dozing", "confidence": 0.5}
        )
        assert response.status_code == 422


class TestDisableEndpoints:
    """無効化プロトコル"""

    def test_disable_after_solving_all_puzzles(self, client, runtime):
        body = client.post("/disable/start").json()
        assert body["remaining"] == 2
        assert body["prompt"]

        wrong = client.post("/disable/answer", json={"answer": "nope"}).json()
        assert wrong["correct"] is False
        assert wrong["remaining"] == 2

        for remaining in (1, 0):
            answer = runtime.disable_challenge.current.expected_answer
            body = client.post("/disable/answer", json={"answer": answer}).json()
            assert body["correct"] is True
            assert body["remaining"] == remaining
        assert body["disabled"] is True
        assert client.get("/status").json()["disabled"] is True
        assert client.post("/disable/start").json()["disabled"] is True

        assert client.post("/enable").json()["disabled"] is False

    def test_answer_without_start(self, client):
        body = client.post("/disable/answer", json={"answer": "x"}).json()
        assert body["correct"] is False
        assert body["disabled"] is False

    def test_cancel(self, client, runtime):
        client.post("/disable/start")
        client.post("/disable/cancel")
        assert not runtime.disable_challenge.active


class TestSettingsAndAnalytics:
    def test_attention_settings_roundtrip(self, client):
        defaults = client.get("/settings/attention").json()
        assert defaults["enabled"] is True
        assert defaults["thresholds"]["sleep_seconds"] == 5.0

        updated = client.put(
            "/settings/attention", json={"detectors": {"yawning": False}}
        ).json()
        assert updated["detectors"]["yawning"] is False
        assert client.get("/settings/attention").json() == updated

    def test_analytics_summary(self, client):
        summary = client.get("/analytics/summary", params={"days": 30}).json()
        assert summary["total_time_ms"] == 0
        assert len(summary["hourly_activity"]) == 24
        assert client.get("/analytics/summary", params={"days": 0}).status_code == 422
        assert client.delete("/analytics").json() == {"ok": True}

    def test_status_reports_gateway(self, client):
        status = client.get("/status").json()
        assert status["gateway_configured"] is True
        assert status["gateway_available"] is True

    def test_monitoring(self, client):
        data = client.get("/api/monitoring_data").json()
        assert data["disabled"] is False
        assert data["pump_logs"] == []
        page = client.get("/monitoring")
        assert page.status_code == 200
        assert "FocusLock Monitor" in page.text
