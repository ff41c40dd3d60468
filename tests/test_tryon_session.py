"""Tests for the session: detection cadence, lifecycle and capture."""

import threading

import numpy as np
import pytest

from compositor import decode_data_uri
from helpers import FakeCamera, FakeDetector, make_glasses_png
from pose_estimator import Adjustment
from tryon_errors import CameraPermissionError, LandmarkError
from tryon_session import SessionStatus, TryOnSession


def load_glasses(session, url):
    assert session.set_glasses_image(url).result(timeout=5) is True
    session.render_tick()


def green_centroid(img):
    ys, xs = np.where((img[..., 1] > 200) & (img[..., 0] < 50) & (img[..., 2] < 50))
    assert len(xs) > 0
    return xs.mean(), ys.mean()


class TestDetection:
    def test_face_publishes_pose(self, make_session, make_keypoints):
        session = make_session(FakeDetector([make_keypoints()]))

        assert session.detection_tick() is True
        pose, version = session.pose_state.latest()
        assert pose.scale == pytest.approx(120.0 / 140.0)
        assert pose.x == pytest.approx(1.6)
        assert pose.y == pytest.approx(0.39)
        assert session.face_found
        assert session.detections == 1

    def test_no_face_freezes_pose(self, make_session, make_keypoints):
        session = make_session(FakeDetector([make_keypoints(), None]))
        session.detection_tick()
        before = session.pose_state.latest()

        assert session.detection_tick() is False
        assert session.detection_tick() is False
        assert session.pose_state.latest() == before
        assert not session.face_found
        assert session.misses == 2

    def test_detector_exception_is_a_miss(self, make_session, make_keypoints):
        session = make_session(FakeDetector([make_keypoints(), RuntimeError("inference failed")]))
        session.detection_tick()
        before = session.pose_state.latest()

        assert session.detection_tick() is False
        assert session.pose_state.latest() == before
        assert session.misses == 1

    def test_short_landmark_array_is_a_miss(self, make_session):
        session = make_session(FakeDetector([np.zeros((10, 2), np.float32)]))
        assert session.detection_tick() is False
        assert session.pose_state.latest() == (None, 1)

    def test_landmark_error_from_detector_is_a_miss(self, make_session):
        session = make_session(FakeDetector([LandmarkError("bad mesh")]))
        assert session.detection_tick() is False
        assert session.misses == 1

    def test_camera_not_ready_skips_detection(self, make_session, make_keypoints):
        det = FakeDetector([make_keypoints()])
        session = make_session(det, camera=FakeCamera(ready=False))
        assert session.detection_tick() is False
        assert det.calls == 0

    def test_overlapping_tick_is_skipped(self, make_session, make_keypoints):
        det = FakeDetector([make_keypoints()])
        det.gate = threading.Event()
        session = make_session(det)

        assert session.schedule_detection() is True
        assert det.started.wait(5)
        assert session.schedule_detection() is False
        assert session.schedule_detection() is False
        assert session.skipped_ticks == 2
        assert det.calls == 1

        det.gate.set()
        assert session._detect_future.result(timeout=5) is True
        assert session.schedule_detection() is True
        session._detect_future.result(timeout=5)
        assert det.calls == 2

    def test_busy_detector_tick_not_counted_twice(self, make_session, make_keypoints):
        det = FakeDetector([make_keypoints()])
        session = make_session(det)

        with session._detect_lock:
            assert session.detection_tick() is False
        assert session.skipped_ticks == 0
        assert det.calls == 0

    def test_adjustments_apply_on_next_detection(self, make_session, make_keypoints):
        session = make_session(FakeDetector([make_keypoints(), None, make_keypoints()]))
        session.detection_tick()

        session.set_adjustments({"scale": 2.0})
        session.detection_tick()  # face lost
        assert session.pose_state.latest()[0].scale == pytest.approx(120.0 / 140.0)

        session.detection_tick()
        assert session.pose_state.latest()[0].scale == pytest.approx(2 * 120.0 / 140.0)


class TestAdjustments:
    def test_partial_update_keeps_other_values(self, make_session):
        session = make_session()
        session.set_adjustments({"scale": 1.5})
        adj = session.set_adjustments({"offsetX": 0.2})
        assert adj == Adjustment(scale=1.5, offset_x=0.2)

    def test_reset(self, make_session):
        session = make_session()
        session.set_adjustments(Adjustment(scale=0.7, rotation=0.3))
        assert session.reset_adjustments() == Adjustment()

    def test_invalid_update_rejected(self, make_session):
        session = make_session()
        with pytest.raises(ValueError):
            session.set_adjustments({"scale": "huge"})
        assert session.adjustments.get() == Adjustment()


class TestLifecycle:
    def test_camera_failure_then_retry(self, config):
        attempts = []
        detectors = []

        def camera_factory():
            attempts.append(1)
            if len(attempts) == 1:
                raise CameraPermissionError(0)
            return FakeCamera()

        def detector_factory():
            detectors.append(FakeDetector())
            return detectors[-1]

        session = TryOnSession(config, camera_factory=camera_factory,
                               detector_factory=detector_factory)
        try:
            assert session.start(run_loops=False) is False
            assert session.status == SessionStatus.ERROR
            assert "camera 0" in session.error
            assert session.capture() is None
            assert detectors == []

            assert session.retry(run_loops=False) is True
            assert session.status == SessionStatus.READY
            assert session.error is None
            assert detectors[-1].loaded
        finally:
            session.close()

    def test_detector_load_failure_releases_camera(self, config, fake_camera):
        session = TryOnSession(config, camera_factory=lambda: fake_camera,
                               detector_factory=lambda: FakeDetector(fail_load=True))
        assert session.start(run_loops=False) is False
        assert session.status == SessionStatus.ERROR
        assert "landmark model" in session.error
        assert fake_camera.released
        assert session.camera is None
        assert session.renderer is None
        session.close()

    def test_unexpected_factory_error_is_wrapped(self, config):
        def broken():
            raise OSError("device busy")

        session = TryOnSession(config, camera_factory=broken,
                               detector_factory=FakeDetector)
        assert session.start(run_loops=False) is False
        assert "device busy" in session.error
        session.close()

    def test_close_releases_everything(self, make_session, fake_camera, glasses_a):
        det = FakeDetector()
        session = make_session(det)
        load_glasses(session, glasses_a)
        sprite = session.renderer.sprite

        session.close()
        assert session.status == SessionStatus.CLOSED
        assert fake_camera.released
        assert det.closed
        assert sprite.disposed
        assert session.renderer is None
        assert session.capture() is None
        assert session.latest_jpeg()[0] is None

    def test_close_is_idempotent(self, make_session):
        session = make_session()
        session.close()
        session.close()
        assert session.status == SessionStatus.CLOSED

    def test_glasses_set_before_start_load_on_start(self, make_session, glasses_a):
        session = make_session(start=False)
        assert session.set_glasses_image(glasses_a) is None
        assert session.start(run_loops=False)
        assert session.renderer.is_loading

        for _ in range(500):
            session.render_tick()
            if session.renderer.sprite is not None:
                break
            threading.Event().wait(0.01)
        assert session.renderer.current_url == glasses_a

    def test_loops_run_and_stop(self, make_session, make_keypoints, config):
        config.detect_interval_ms = 5
        config.render_fps = 200
        session = make_session(FakeDetector([make_keypoints()]), start=False)
        assert session.start(run_loops=True)

        for _ in range(200):
            if session.detections and session.latest_jpeg()[0] is not None:
                break
            threading.Event().wait(0.01)

        assert session.detections > 0
        assert session.latest_jpeg()[0][:2] == b"\xff\xd8"
        session.close()
        assert session._threads == []


class TestRenderAndCapture:
    def test_render_tick_without_frame(self, make_session):
        session = make_session(camera=FakeCamera(ready=False))
        assert session.render_tick() is None
        assert session.capture() is None

    def test_capture_before_start(self, make_session):
        session = make_session(start=False)
        assert session.capture() is None

    def test_capture_before_first_render(self, make_session):
        assert make_session().capture() is None

    def test_a_b_a_switch(self, make_session, glasses_a, glasses_b):
        session = make_session()
        for url in (glasses_a, glasses_b, glasses_a):
            load_glasses(session, url)
        renderer = session.renderer
        assert len(renderer.scene) == 1
        assert renderer.sprite.texture.image.shape == (100, 200, 4)
        assert session.status_snapshot()["glasses"] == glasses_a

    def test_overlay_aligned_with_mirrored_eyes_in_capture(self, make_session, make_keypoints, glasses_a):
        shots = []
        session = make_session(FakeDetector([make_keypoints(left=(100, 200), right=(220, 200))]),
                               on_screenshot=shots.append)
        load_glasses(session, glasses_a)
        session.detection_tick()
        session.render_tick()

        payload = session.capture((320, 240))
        assert shots == [payload]
        img = decode_data_uri(payload)
        assert img.shape == (240, 320, 3)

        # eye center (160, 200) mirrors to (480, 200); base offset moves it down 1px
        cx, cy = green_centroid(img)
        assert cx == pytest.approx(240, abs=1.5)
        assert cy == pytest.approx(100.5, abs=1.5)

    def test_capture_defaults_to_native_size(self, make_session, glasses_a):
        session = make_session()
        load_glasses(session, glasses_a)
        img = decode_data_uri(session.capture())
        assert img.shape == (480, 640, 3)

    def test_capture_matches_live_frame(self, make_session, make_keypoints, glasses_a):
        session = make_session(FakeDetector([make_keypoints()]))
        load_glasses(session, glasses_a)
        session.detection_tick()
        live = session.render_tick()

        img = decode_data_uri(session.capture())
        assert np.array_equal(img, live)

    def test_no_callback_when_not_ready(self, make_session):
        shots = []
        session = make_session(camera=FakeCamera(ready=False), on_screenshot=shots.append)
        session.render_tick()
        assert session.capture((320, 240)) is None
        assert shots == []

    def test_status_snapshot(self, make_session, make_keypoints, glasses_a):
        session = make_session(FakeDetector([make_keypoints()]))
        load_glasses(session, glasses_a)
        session.detection_tick()

        snap = session.status_snapshot()
        assert snap["status"] == "ready"
        assert snap["error"] is None
        assert snap["faceFound"] is True
        assert snap["loading"] is False
        assert snap["hasSprite"] is True
        assert snap["adjustments"] == Adjustment().to_dict()
        assert snap["detections"] == 1

    def test_capture_larger_than_limit_raises(self, make_session, glasses_a):
        session = make_session()
        load_glasses(session, glasses_a)
        with pytest.raises(ValueError):
            session.capture((60000, 60))

    def test_default_glasses_may_be_a_local_file(self, config, make_session, tmp_path):
        p = tmp_path / "aviator.png"
        p.write_bytes(make_glasses_png(width=120, height=60))
        config.default_glasses = str(p)
        session = make_session()

        for _ in range(500):
            session.render_tick()
            if session.renderer.sprite is not None:
                break
            threading.Event().wait(0.01)
        assert session.renderer.sprite.texture.image.shape == (60, 120, 4)
