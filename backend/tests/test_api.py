"""
Tests for the REST API
"""
import base64
import csv
import io

import cv2
import numpy as np
import pytest

from focus_proctor import main
from focus_proctor.config import Settings
from focus_proctor.detection.gaze_detector import FrameAnalysis
from focus_proctor.models.detection_models import FocusStatePayload
from focus_proctor.pipeline.session import ProctoringSession
from focus_proctor.utils.auth import create_access_token


def create_session(client, name="Ada"):
    response = client.post("/api/sessions", json={"candidateName": name})
    assert response.status_code == 201
    return response.json()["_id"]


def encode_frame():
    ok, buffer = cv2.imencode(".jpg", np.zeros((48, 64, 3), dtype=np.uint8))
    assert ok
    return base64.b64encode(buffer.tobytes()).decode("ascii")


class FacingGaze:
    """Face analyzer stand-in that sees one frontal face in every frame"""

    def __init__(self):
        self.frames = []
        self.resets = 0

    async def initialize(self):
        pass

    async def process_frame(self, frame, timestamp):
        self.frames.append(frame)
        return FrameAnalysis(state=FocusStatePayload(focus_state="focused", face_count=1, timestamp=timestamp))

    def reset(self):
        self.resets += 1

    def close(self):
        pass


@pytest.fixture
def live_sessions(monkeypatch):
    """Live sessions built with stub analyzers; returns the sessions created"""
    created = []

    def build(session_id, storage, source, on_message, on_error):
        session = ProctoringSession(
            session_id, storage, source, Settings(OBJECT_ENABLED=False, FLUSH_INTERVAL_SECONDS=60),
            gaze_detector=FacingGaze(), on_message=on_message, on_error=on_error,
        )
        created.append(session)
        return session

    monkeypatch.setattr(main, "build_proctoring_session", build)
    return created


class TestHealth:
    """Tests for status endpoints"""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["active_sessions"] == 0


class TestSessions:
    """Tests for session endpoints"""

    def test_create_and_get(self, client):
        session_id = create_session(client)

        response = client.get(f"/api/sessions/{session_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["_id"] == session_id
        assert data["candidateName"] == "Ada"
        assert data["events"] == []

    def test_create_requires_name(self, client):
        response = client.post("/api/sessions", json={"candidateName": ""})
        assert response.status_code == 422

    def test_append_events_and_end(self, client):
        session_id = create_session(client)
        events = [
            {"id": "e1", "ts": 1000, "type": "LookingAway", "duration": 5000},
            {"id": "e2", "ts": 2000, "type": "PhoneDetected", "frameThumb": "data:image/jpeg;base64,xx"},
        ]

        response = client.post(f"/api/sessions/{session_id}/events", json={"events": events})
        assert response.status_code == 200
        assert response.json() == {"ok": True}

        response = client.patch(f"/api/sessions/{session_id}/end")
        assert response.json() == {"ok": True}

        data = client.get(f"/api/sessions/{session_id}").json()
        assert [e["id"] for e in data["events"]] == ["e1", "e2"]
        assert data["events"][1]["frameThumb"] == "data:image/jpeg;base64,xx"
        assert data["endedAt"] >= data["startedAt"]

    def test_empty_event_batch_rejected(self, client):
        session_id = create_session(client)
        response = client.post(f"/api/sessions/{session_id}/events", json={"events": []})
        assert response.status_code == 422

    def test_duplicate_ids_rejected(self, client):
        session_id = create_session(client)
        events = [{"id": "e1", "ts": 1, "type": "NoFace"}, {"id": "e1", "ts": 2, "type": "NoFace"}]
        response = client.post(f"/api/sessions/{session_id}/events", json={"events": events})
        assert response.status_code == 422

    def test_unknown_event_type_rejected(self, client):
        session_id = create_session(client)
        response = client.post(f"/api/sessions/{session_id}/events",
                               json={"events": [{"ts": 1, "type": "Sneezing"}]})
        assert response.status_code == 422

    def test_unknown_session(self, client):
        assert client.get("/api/sessions/missing").status_code == 404
        assert client.patch("/api/sessions/missing/end").status_code == 404
        assert client.get("/api/reports/missing").status_code == 404

    def test_end_with_metrics(self, client):
        session_id = create_session(client)

        response = client.patch(f"/api/sessions/{session_id}/end", json={"avgFps": 7.9, "droppedFrames": 4})
        assert response.status_code == 200

        data = client.get(f"/api/sessions/{session_id}").json()
        assert data["metrics"] == {"avgFps": 7.9, "droppedFrames": 4}
        assert "endedAt" in data

    def test_list_sessions(self, client):
        create_session(client, "Ada")
        create_session(client, "Grace")

        data = client.get("/api/sessions").json()
        assert data["count"] == 2
        assert {s["candidateName"] for s in data["sessions"]} == {"Ada", "Grace"}


class TestReports:
    """Tests for report and export endpoints"""

    def _session_with_events(self, client):
        session_id = create_session(client)
        events = [
            {"ts": 1000, "type": "LookingAway"},
            {"ts": 2000, "type": "NoFace"},
            {"ts": 3000, "type": "PhoneDetected", "meta": {"score": 0.9}},
        ]
        client.post(f"/api/sessions/{session_id}/events", json={"events": events})
        client.patch(f"/api/sessions/{session_id}/end")
        return session_id

    def test_report(self, client):
        session_id = self._session_with_events(client)

        response = client.get(f"/api/reports/{session_id}")
        assert response.status_code == 200
        report = response.json()
        assert report["sessionId"] == session_id
        assert report["integrityScore"] == 65
        assert report["countsByType"] == {
            "LookingAway": 1, "NoFace": 1, "MultipleFaces": 0,
            "PhoneDetected": 1, "NotesDetected": 0, "ExtraDeviceDetected": 0,
        }
        assert [p["score"] for p in report["timeline"]] == [100, 95, 85, 65, 65]

    def test_export_json(self, client):
        session_id = self._session_with_events(client)

        response = client.get(f"/export/{session_id}/json")
        assert response.status_code == 200
        assert "attachment" in response.headers["content-disposition"]
        body = response.json()
        assert body["session"]["_id"] == session_id
        assert body["report"]["integrityScore"] == 65
        assert body["episodes"] == [
            {"type": "LookingAway", "startedAt": 1000, "endedAt": 1000, "count": 1},
            {"type": "NoFace", "startedAt": 2000, "endedAt": 2000, "count": 1},
            {"type": "PhoneDetected", "startedAt": 3000, "endedAt": 3000, "count": 1},
        ]

    def test_export_csv(self, client):
        session_id = self._session_with_events(client)

        response = client.get(f"/export/{session_id}/csv")
        assert response.status_code == 200
        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0] == ["Timestamp", "Event Type", "Duration (ms)", "Details"]
        assert [r[1] for r in rows[1:]] == ["LookingAway", "NoFace", "PhoneDetected"]
        assert rows[3][3] == '{"score": 0.9}'


class TestUploads:
    """Tests for video uploads"""

    def test_upload_video(self, client):
        session_id = create_session(client)

        response = client.post(
            "/api/uploads/video",
            data={"sessionId": session_id},
            files={"file": ("recording.webm", b"webm-bytes", "video/webm")},
        )
        assert response.status_code == 200
        url = response.json()["url"]

        assert client.get(url).content == b"webm-bytes"
        session = client.get(f"/api/sessions/{session_id}").json()
        assert session["videoRef"] == {"url": url, "bytes": 10}

    def test_upload_unknown_session(self, client):
        response = client.post(
            "/api/uploads/video",
            data={"sessionId": "missing"},
            files={"file": ("recording.webm", b"webm-bytes", "video/webm")},
        )
        assert response.status_code == 404


class TestAuth:
    """Tests for the Bearer token check"""

    def test_missing_token_rejected(self, secured_app, client):
        response = client.post("/api/sessions", json={"candidateName": "Ada"})
        assert response.status_code == 401

    def test_invalid_token_rejected(self, secured_app, client):
        response = client.post("/api/sessions", json={"candidateName": "Ada"},
                               headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_valid_token_accepted(self, secured_app, client, auth_settings):
        token = create_access_token({"sub": "interviewer-1"}, auth_settings.JWT_SECRET)
        response = client.post("/api/sessions", json={"candidateName": "Ada"},
                               headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 201

    def test_reads_are_open(self, secured_app, client):
        assert client.get("/health").status_code == 200


class TestWebSocket:
    """Tests for the WebSocket endpoint"""

    def test_unknown_session_closed(self, client):
        with client.websocket_connect("/ws/missing") as websocket:
            message = websocket.receive_json()

        assert message["type"] == "ERROR"
        assert message["payload"] == {"message": "Session not found", "fatal": True}

    def test_frame_reset_and_visibility(self, client, live_sessions):
        session_id = create_session(client)

        with client.websocket_connect(f"/ws/{session_id}") as websocket:
            assert websocket.receive_json()["type"] == "READY"

            websocket.send_json({"type": "frame", "image": encode_frame()})
            state = websocket.receive_json()
            assert state["type"] == "STATE"
            assert state["payload"]["focusState"] == "focused"
            assert state["payload"]["faceCount"] == 1

            websocket.send_json({"type": "frame", "image": "not-an-image"})
            assert websocket.receive_json() == {
                "type": "ERROR", "payload": {"message": "Failed to decode image", "fatal": False}
            }

            websocket.send_json({"type": "visibility", "visible": False})
            websocket.send_json({"type": "reset"})
            websocket.send_text("{not json")
            assert websocket.receive_json()["payload"]["message"] == "Invalid message"

            session = live_sessions[0]
            assert session.analysis_enabled is False
            assert session.focus_worker.running is False
            assert session.focus_worker.analyzer.resets == 1
            assert len(session.focus_worker.analyzer.frames) == 1
            assert main.active_sessions[session_id] is session


class TestLiveStorage:
    """Tests for the storage live sessions report to"""

    def test_local_store_by_default(self, app, store):
        assert main.get_live_storage() is store
        assert main.get_live_storage() is store
