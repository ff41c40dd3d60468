"""Shared fixtures for try-on tests.

Camera, detector and glasses images are synthetic: no webcam, no face mesh
model and no network needed.
"""

import numpy as np
import pytest

from face_landmarks import EYE_CENTER, LEFT_EYE_OUTER, RIGHT_EYE_OUTER
from helpers import NUM_KEYPOINTS, FakeCamera, FakeDetector, make_glasses_png, png_data_uri
from tryon_config import TryOnConfig


@pytest.fixture
def make_keypoints():
    """Factory for a face-mesh sized keypoint array with the eye points set."""
    def _make(left=(100.0, 200.0), right=(220.0, 200.0), center=None, n=NUM_KEYPOINTS, dims=2):
        pts = np.zeros((n, dims), np.float32)
        if center is None:
            center = ((left[0] + right[0]) / 2.0, (left[1] + right[1]) / 2.0)
        pts[LEFT_EYE_OUTER, :2] = left
        pts[RIGHT_EYE_OUTER, :2] = right
        pts[EYE_CENTER, :2] = center
        return pts
    return _make


@pytest.fixture
def config():
    return TryOnConfig()


@pytest.fixture
def glasses_a():
    return png_data_uri(make_glasses_png(color=(0, 255, 0)))


@pytest.fixture
def glasses_b():
    return png_data_uri(make_glasses_png(width=300, height=150, color=(255, 0, 0)))


@pytest.fixture
def fake_camera():
    return FakeCamera()


@pytest.fixture
def make_session(config, fake_camera):
    """Factory for a started session with fake camera and detector, loops not running."""
    from tryon_session import TryOnSession

    sessions = []

    def _make(detector=None, camera=None, start=True, **kwargs):
        cam = camera or fake_camera
        det = detector or FakeDetector()
        session = TryOnSession(config,
                               camera_factory=lambda: cam,
                               detector_factory=lambda: det,
                               **kwargs)
        if start:
            assert session.start(run_loops=False)
        sessions.append((session, det))
        return session

    yield _make

    for session, det in sessions:
        if det.gate is not None:
            det.gate.set()
        session.close()
