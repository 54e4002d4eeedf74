"""
Tests for the operational API.

The controller is injected with reset_api_state(); the TestClient is not used
as a context manager, so the lifespan hook (worker autostart) does not run.
"""

import pytest
from fastapi.testclient import TestClient

from api.main import app, reset_api_state
from shared.errors import PermanentChannelError


@pytest.fixture
def api_client(controller):
    """Create a test client with fresh state."""
    reset_api_state(controller)
    yield TestClient(app)
    reset_api_state(None)


def _registration(**overrides) -> dict:
    body = {
        "type": "USER_REGISTRATION",
        "user_id": "user-001",
        "destination": "asha@example.com",
        "payload": {"full_name": "Asha Rao", "registration_date": "2024-01-15T09:00:00Z"},
        "occurrence_key": "registration",
    }
    body.update(overrides)
    return body


class TestHealthEndpoint:
    """Tests for the health check endpoint."""

    def test_unhealthy_while_stopped(self, api_client):
        response = api_client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_healthy_while_running(self, api_client, controller):
        controller.start()

        response = api_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["worker_status"] == "running"


class TestWorkerEndpoints:
    """Tests for start/stop/status."""

    def test_start_stop_cycle(self, api_client, controller):
        assert api_client.post("/worker/start").json()["started"] is True
        assert api_client.post("/worker/start").json()["started"] is False
        assert controller.is_running is True

        assert api_client.post("/worker/stop").json()["stopped"] is True
        assert api_client.post("/worker/stop").json()["stopped"] is False
        assert controller.is_running is False

    def test_status(self, api_client):
        data = api_client.get("/worker/status").json()

        assert data["worker_status"] == "stopped"
        assert data["queue_length"] == 0
        assert data["process_interval_ms"] == 5000
        assert data["max_batch_size"] == 5


class TestEventsEndpoint:
    """Tests for publishing through the API."""

    def test_publish_accepted(self, api_client, controller):
        response = api_client.post("/events", json=_registration())

        assert response.status_code == 202
        data = response.json()
        assert data["accepted"] is True
        assert data["event_id"].startswith("notif_")
        assert controller.queue.length() == 1

    def test_explicit_event_id(self, api_client):
        response = api_client.post("/events", json=_registration(event_id="evt-42"))

        assert response.json()["event_id"] == "evt-42"

    def test_invalid_payload_rejected(self, api_client, controller):
        response = api_client.post("/events", json=_registration(payload={"full_name": "Asha"}))

        assert response.status_code == 422
        assert controller.queue.length() == 0

    def test_unknown_type_rejected(self, api_client):
        response = api_client.post("/events", json=_registration(type="UNKNOWN_TYPE"))

        assert response.status_code == 422

    def test_queue_unavailable(self, api_client, controller):
        controller.queue.close()

        response = api_client.post("/events", json=_registration())

        assert response.status_code == 503
        assert response.json()["accepted"] is False


class TestNotificationEndpoints:
    """Tests for delivery status lookups."""

    def test_get_notification(self, api_client, controller):
        event_id = api_client.post("/events", json=_registration()).json()["event_id"]
        controller.run_once()

        response = api_client.get(f"/notifications/{event_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "SENT"
        assert data["attempt_count"] == 0
        assert data["destination"] == "asha@example.com"

    def test_get_missing_notification(self, api_client):
        response = api_client.get("/notifications/nonexistent")

        assert response.status_code == 404
        assert "not found" in response.json()["detail"].lower()

    def test_user_history(self, api_client, controller):
        api_client.post("/events", json=_registration(occurrence_key="a"))
        api_client.post("/events", json=_registration(occurrence_key="b"))
        api_client.post("/events", json=_registration(user_id="someone-else"))
        controller.run_once()

        data = api_client.get("/notifications/user/user-001", params={"limit": 1}).json()

        assert data["total"] == 2
        assert len(data["notifications"]) == 1
        assert data["notifications"][0]["user_id"] == "user-001"

    def test_stats(self, api_client, controller, channel):
        channel.fail_next("bad@example.com", PermanentChannelError("rejected"))
        api_client.post("/events", json=_registration())
        api_client.post("/events", json=_registration(destination="bad@example.com", occurrence_key="b"))
        controller.run_once()

        data = api_client.get("/notifications/stats", params={"days": 7}).json()

        assert data["period_days"] == 7
        assert data["by_status"]["SENT"] == 1
        assert data["by_status"]["FAILED"] == 1
        assert data["by_type"] == {"USER_REGISTRATION": 2}
        assert data["recent_failures"][0]["destination"] == "bad@example.com"
        assert data["worker"]["worker_status"] == "stopped"


class TestAdminEndpoints:
    """Tests for force retry and queue purge."""

    def test_force_retry_failed(self, api_client, controller, channel):
        channel.fail_next("asha@example.com", PermanentChannelError("mailbox full"))
        event_id = api_client.post("/events", json=_registration()).json()["event_id"]
        controller.run_once()

        response = api_client.post(f"/notifications/{event_id}/retry")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "RETRYING"
        assert data["attempt_count"] == 1
        assert controller.queue.length() == 1

    def test_force_retry_sent_conflicts(self, api_client, controller):
        event_id = api_client.post("/events", json=_registration()).json()["event_id"]
        controller.run_once()

        response = api_client.post(f"/notifications/{event_id}/retry")

        assert response.status_code == 409

    def test_force_retry_missing(self, api_client):
        assert api_client.post("/notifications/missing/retry").status_code == 404

    def test_clear_queue(self, api_client, controller):
        api_client.post("/events", json=_registration(occurrence_key="a"))
        api_client.post("/events", json=_registration(occurrence_key="b"))

        response = api_client.delete("/queue")

        assert response.json() == {"removed": 2}
        assert controller.queue.length() == 0
