"""
Integration tests for sessions and feedback.
"""
import pytest
from fastapi.testclient import TestClient


def _event(kind="like", item_id="p6", session_id="s_api", viewer_id="viewer_1"):
    return {"viewer_id": viewer_id, "session_id": session_id, "item_id": item_id, "kind": kind}


class TestSessionsAPI:
    def test_session_lifecycle(self, test_client: TestClient, mock_session_storage):
        created = test_client.post("/v1/sessions", json={"viewer_id": "viewer_1", "session_id": "s_api"})
        assert created.status_code == 201
        assert created.json()["state"] == "active"
        assert created.json()["action_count"] == 0

        ack = test_client.post("/v1/feedback", params={"wait": True}, json=_event())
        assert ack.status_code == 200
        assert ack.json()["accepted"] is True
        assert sum(ack.json()["weights"].values()) == pytest.approx(1.0)

        summary = test_client.get("/v1/sessions/s_api").json()
        assert summary["action_count"] == 1
        assert summary["weights"] == ack.json()["weights"]

        ended = test_client.delete("/v1/sessions/s_api")
        assert ended.status_code == 200
        record = ended.json()
        assert record["action_count"] == 1
        assert record["weights_persisted"] is False  # Shorter than the minimum duration
        assert mock_session_storage.get("s_api") is not None

        assert test_client.get("/v1/sessions/s_api").status_code == 404
        assert test_client.delete("/v1/sessions/s_api").status_code == 404

    def test_fire_and_forget_feedback(self, test_client: TestClient):
        response = test_client.post("/v1/feedback", json=_event(kind="view"))

        assert response.status_code == 202
        assert response.json() == {"accepted": True, "weights": None}

        # First event opens the session
        summary = test_client.get("/v1/sessions/s_api")
        assert summary.status_code == 200
        assert summary.json()["viewer_id"] == "viewer_1"

    def test_feedback_after_end_is_rejected(self, test_client: TestClient):
        test_client.post("/v1/sessions", json={"viewer_id": "viewer_1", "session_id": "s_api"})
        test_client.delete("/v1/sessions/s_api")

        response = test_client.post("/v1/feedback", json=_event())

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"

    def test_feedback_for_foreign_session(self, test_client: TestClient):
        test_client.post("/v1/sessions", json={"viewer_id": "viewer_1", "session_id": "s_api"})

        response = test_client.post("/v1/feedback", json=_event(viewer_id="viewer_2"))

        assert response.status_code == 400

    def test_malformed_event(self, test_client: TestClient):
        response = test_client.post("/v1/feedback", json=_event(kind="poke"))
        assert response.status_code == 422

        response = test_client.post("/v1/feedback", json=_event(viewer_id="bad id!"))
        assert response.status_code == 400

    def test_invalid_viewer_on_start(self, test_client: TestClient):
        response = test_client.post("/v1/sessions", json={"viewer_id": "bad id!"})
        assert response.status_code == 400

    def test_unknown_session(self, test_client: TestClient):
        assert test_client.get("/v1/sessions/nope").status_code == 404

    def test_active_sessions_in_readiness(self, test_client: TestClient):
        test_client.post("/v1/sessions", json={"viewer_id": "viewer_1", "session_id": "s_one"})
        test_client.post("/v1/sessions", json={"viewer_id": "viewer_2", "session_id": "s_two"})

        assert test_client.get("/health/ready").json()["active_sessions"] == 2
