"""
Pytest configuration for Focus Proctor tests
"""
import pytest
from fastapi.testclient import TestClient

from focus_proctor.config import Settings, get_settings
from focus_proctor.detection.head_pose import Landmark
from focus_proctor.models.detection_models import FocusThresholds
from focus_proctor.utils.session_store import FileSessionStore

FACE_MESH_SIZE = 468


def build_face(yaw_offset=0.0, pitch_offset=0.0, depth=1.0):
    """Synthetic Face Mesh landmark list.

    With no offsets the face is frontal (yaw 0, pitch 0). `yaw_offset` moves
    the right cheek outwards, `pitch_offset` moves the chin below the brow.
    """
    landmarks = [Landmark(0.5, 0.5, 0.0) for _ in range(FACE_MESH_SIZE)]
    landmarks[33] = landmarks[133] = Landmark(0.4, 0.4, 0.0)
    landmarks[362] = landmarks[263] = Landmark(0.6, 0.4, 0.0)
    landmarks[234] = Landmark(0.3, 0.5, 0.0)
    landmarks[454] = Landmark(0.7 + yaw_offset, 0.5, 0.0)
    for idx in (10, 338, 297, 67):
        landmarks[idx] = Landmark(0.5, 0.3, 0.0)
    landmarks[152] = Landmark(0.5, 0.3 + pitch_offset, depth)
    landmarks[1] = Landmark(0.5, 0.45, 0.0)
    return landmarks


@pytest.fixture
def face():
    """Factory for synthetic faces"""
    return build_face


@pytest.fixture
def thresholds():
    return FocusThresholds(
        looking_away_seconds=5,
        no_face_seconds=10,
        multiple_faces_seconds=2,
        yaw_degrees=20,
        pitch_degrees=15,
        sampling_fps=8,
        breach_ratio=0.7,
    )


@pytest.fixture
def store(tmp_path):
    """File-backed session store in a temp directory"""
    return FileSessionStore(str(tmp_path / "logs"))


@pytest.fixture
def app(store):
    """FastAPI app wired to the temp store"""
    from focus_proctor.main import app

    app.state.store = store
    app.state.live_storage = None
    yield app
    app.state.store = None
    app.state.live_storage = None
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """FastAPI test client"""
    return TestClient(app)


@pytest.fixture
def auth_settings():
    return Settings(AUTH_REQUIRED=True, JWT_SECRET="test-jwt-secret-key-32-chars-min")


@pytest.fixture
def secured_app(app, auth_settings):
    app.dependency_overrides[get_settings] = lambda: auth_settings
    return app
