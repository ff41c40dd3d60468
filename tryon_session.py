"""
Try-on session: camera, detector, renderer and the two loops that drive them.

The render loop runs at display rate and is the only thread touching the
scene. The detection timer fires on a fixed interval and hands poses to the
render loop through PoseState. A detection still running when the timer
fires again makes that tick a skip.
"""

from __future__ import annotations

import logging
import statistics
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Callable, Optional, Union

import numpy as np

from camera_async import AsyncVideoCapture
from compositor import Compositor, compose_frame, encode_jpeg
from face_landmarks import EyeLandmarks, FaceMeshDetector
from overlay_renderer import OverlayRenderer
from pose_estimator import Adjustment, AdjustmentModel, PoseEstimator, PoseState
from tryon_config import TryOnConfig
from tryon_errors import CaptureNotReadyError, InitializationError, LandmarkError

logger = logging.getLogger(__name__)

PERF_REPORT_EVERY = 300


class SessionStatus(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"
    CLOSED = "closed"


class TryOnSession:
    """
    Args:
        config: runtime settings
        camera_factory: returns an opened camera with read() and release();
            raises InitializationError if the camera is unavailable
        detector_factory: returns a detector with load(), detect(frame), close()
        on_screenshot: called with the PNG data URI of every successful capture
    """

    def __init__(self,
                 config: Optional[TryOnConfig] = None,
                 camera_factory: Optional[Callable] = None,
                 detector_factory: Optional[Callable] = None,
                 on_screenshot: Optional[Callable[[str], None]] = None):
        self.config = config or TryOnConfig()
        self._camera_factory = camera_factory or self._open_camera
        self._detector_factory = detector_factory or self._make_detector
        self.on_screenshot = on_screenshot

        self.adjustments = AdjustmentModel()
        self.estimator = PoseEstimator.from_config(self.config)
        self.pose_state = PoseState(self.config.pose_smooth_a)
        self.compositor = Compositor(self.config.max_capture_side)

        self.camera = None
        self.detector = None
        self.renderer: Optional[OverlayRenderer] = None

        self.status = SessionStatus.IDLE
        self.error: Optional[str] = None
        self.face_found = False
        self.detections = 0
        self.misses = 0
        self.skipped_ticks = 0

        self._glasses_url = self.config.default_glasses
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._detect_executor: Optional[ThreadPoolExecutor] = None
        self._detect_future: Optional[Future] = None
        self._detect_lock = threading.Lock()
        self._lifecycle_lock = threading.RLock()

        self._frame_lock = threading.Lock()
        self._last_frame: Optional[np.ndarray] = None
        self._last_surface: Optional[np.ndarray] = None
        self._last_jpeg: Optional[bytes] = None
        self._last_ts = 0.0

    # ---- lifecycle -------------------------------------------------------

    def _open_camera(self):
        cam = AsyncVideoCapture(src=self.config.cam_index,
                                width=self.config.cap_w, height=self.config.cap_h)
        try:
            cam.wait_ready()
        except InitializationError:
            cam.release()
            raise
        return cam

    def _make_detector(self):
        return FaceMeshDetector(self.config.min_detection_confidence,
                                self.config.min_tracking_confidence)

    def start(self, run_loops: bool = True) -> bool:
        """Open camera and detector, then start the loops.

        Returns False and enters ERROR if initialization fails. There is no
        automatic retry; call retry().
        """
        with self._lifecycle_lock:
            if self.status == SessionStatus.READY:
                return True
            self.status = SessionStatus.INITIALIZING
            self.error = None
            self._stop.clear()

            try:
                self.camera = self._camera_factory()
                detector = self._detector_factory()
                detector.load()
                self.detector = detector
            except InitializationError as e:
                return self._fail(e)
            except Exception as e:
                return self._fail(InitializationError("Initialization failed", cause=e))

            self.renderer = OverlayRenderer(self.config)
            self.pose_state.clear()
            self.face_found = False
            if self._glasses_url:
                self.renderer.set_glasses_image(self._glasses_url)

            self._detect_executor = ThreadPoolExecutor(max_workers=1,
                                                       thread_name_prefix="detector")
            if run_loops:
                self._spawn(self._render_loop, "render-loop")
                self._spawn(self._detection_timer, "detection-timer")

            self.status = SessionStatus.READY
            logger.info("Try-on session ready")
            return True

    def _fail(self, error: InitializationError) -> bool:
        logger.error("Initialization failed: %s", error)
        self._release_resources()
        self.status = SessionStatus.ERROR
        self.error = str(error)
        return False

    def _spawn(self, target, name):
        t = threading.Thread(target=target, name=name, daemon=True)
        self._threads.append(t)
        t.start()

    def retry(self, run_loops: bool = True) -> bool:
        """Full re-initialization, used after a fatal init error."""
        with self._lifecycle_lock:
            logger.info("Re-initializing try-on session")
            self._shutdown()
            self.status = SessionStatus.IDLE
            return self.start(run_loops=run_loops)

    def close(self):
        with self._lifecycle_lock:
            if self.status == SessionStatus.CLOSED:
                return
            self._shutdown()
            self.status = SessionStatus.CLOSED
            logger.info("Try-on session closed")

    def _shutdown(self):
        self._stop.set()
        for t in self._threads:
            if t is not threading.current_thread():
                t.join(timeout=2.0)
        self._threads = []
        if self._detect_executor is not None:
            self._detect_executor.shutdown(wait=True, cancel_futures=True)
            self._detect_executor = None
            self._detect_future = None
        self._release_resources()

    def _release_resources(self):
        if self.renderer is not None:
            self.renderer.dispose()
            self.renderer = None
        if self.detector is not None:
            try:
                self.detector.close()
            except Exception:
                logger.warning("Detector close failed", exc_info=True)
            self.detector = None
        if self.camera is not None:
            self.camera.release()
            self.camera = None
        with self._frame_lock:
            self._last_frame = None
            self._last_surface = None
            self._last_jpeg = None
        self.pose_state.clear()
        self.face_found = False

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ---- inputs ----------------------------------------------------------

    def set_glasses_image(self, url: str) -> Optional[Future]:
        self._glasses_url = url
        renderer = self.renderer
        if renderer is None:
            return None
        return renderer.set_glasses_image(url)

    def set_adjustments(self, value: Union[Adjustment, dict]) -> Adjustment:
        if not isinstance(value, Adjustment):
            value = Adjustment.from_dict(value, base=self.adjustments.get())
        return self.adjustments.replace(value)

    def reset_adjustments(self) -> Adjustment:
        return self.adjustments.reset()

    # ---- detection -------------------------------------------------------

    def schedule_detection(self) -> bool:
        """One detection-timer tick. Returns False if the tick was skipped."""
        executor = self._detect_executor
        if executor is None:
            return False
        if self._detect_future is not None and not self._detect_future.done():
            self.skipped_ticks += 1
            logger.debug("Detection still running, tick skipped (%d total)", self.skipped_ticks)
            return False
        self._detect_future = executor.submit(self.detection_tick)
        return True

    def _detection_timer(self):
        interval = self.config.detect_interval_s
        next_t = time.monotonic()
        while not self._stop.is_set():
            self.schedule_detection()
            next_t += interval
            delay = next_t - time.monotonic()
            if delay < 0:
                next_t = time.monotonic()
                delay = 0.0
            self._stop.wait(delay)

    def detection_tick(self) -> bool:
        """Detect and publish a new pose. Returns True if a face was found.

        A miss leaves the published pose untouched.
        """
        if not self._detect_lock.acquire(blocking=False):
            return False
        try:
            return self._detect_once()
        finally:
            self._detect_lock.release()

    def _detect_once(self) -> bool:
        camera, detector = self.camera, self.detector
        if camera is None or detector is None:
            return False
        ok, frame = camera.read()
        if not ok or frame is None:
            return False
        H, W = frame.shape[:2]

        try:
            keypoints = detector.detect(frame)
            if keypoints is None or len(keypoints) == 0:
                self.face_found = False
                self.misses += 1
                return False
            eyes = EyeLandmarks.from_keypoints(keypoints, W, H)
        except LandmarkError as e:
            logger.warning("Unusable landmarks: %s", e)
            self.face_found = False
            self.misses += 1
            return False
        except Exception:
            logger.warning("Face detection error", exc_info=True)
            self.face_found = False
            self.misses += 1
            return False

        pose = self.estimator.estimate(eyes, self.adjustments.get())
        self.pose_state.publish(pose)
        self.face_found = True
        self.detections += 1
        return True

    # ---- rendering -------------------------------------------------------

    def render_tick(self) -> Optional[np.ndarray]:
        """Render one display frame. Returns the composited BGR image or None."""
        renderer, camera = self.renderer, self.camera
        if renderer is None or camera is None:
            return None

        renderer.process_pending()
        pose, _ = self.pose_state.latest()
        renderer.apply_pose(pose)

        ok, frame = camera.read()
        if not ok or frame is None:
            return None
        H, W = frame.shape[:2]
        surface = renderer.render(W, H)
        display = compose_frame(frame, surface)
        jpeg = encode_jpeg(display, self.config.jpeg_quality)

        with self._frame_lock:
            self._last_frame = frame
            self._last_surface = surface
            if jpeg is not None:
                self._last_jpeg = jpeg
                self._last_ts = time.time()
        return display

    def _render_loop(self):
        interval = self.config.render_interval_s
        times = []
        while not self._stop.is_set():
            t0 = time.perf_counter()
            try:
                self.render_tick()
            except Exception:
                logger.exception("Render tick failed")
            dt = time.perf_counter() - t0

            times.append(dt * 1000)
            if len(times) >= PERF_REPORT_EVERY:
                read_fps = getattr(self.camera, "get_read_fps", None)
                logger.debug("Render %.2fms avg over %d frames, camera %.1f FPS, "
                             "%d detections, %d misses, %d skipped",
                             statistics.mean(times), len(times),
                             read_fps() if read_fps else 0.0,
                             self.detections, self.misses, self.skipped_ticks)
                times = []
            self._stop.wait(max(0.0, interval - dt))

    def latest_jpeg(self) -> tuple[Optional[bytes], float]:
        with self._frame_lock:
            return self._last_jpeg, self._last_ts

    # ---- capture ---------------------------------------------------------

    def capture(self, display_size: Optional[tuple[int, int]] = None) -> Optional[str]:
        """Screenshot of the current view as a PNG data URI, or None if not ready.

        display_size is the on-screen (width, height); defaults to the native
        frame size. Raises ValueError if it exceeds config.max_capture_side.
        """
        if self.status != SessionStatus.READY:
            logger.info("Capture skipped: session is %s", self.status.value)
            return None
        with self._frame_lock:
            frame, surface = self._last_frame, self._last_surface
        if display_size is None:
            display_size = (frame.shape[1], frame.shape[0]) if frame is not None else (0, 0)

        try:
            payload = self.compositor.capture(frame, surface, display_size)
        except CaptureNotReadyError as e:
            logger.info("Capture skipped: %s", e)
            return None

        if self.on_screenshot is not None:
            self.on_screenshot(payload)
        return payload

    def status_snapshot(self) -> dict:
        renderer = self.renderer
        return {
            "status": self.status.value,
            "error": self.error,
            "faceFound": self.face_found,
            "loading": renderer.is_loading if renderer is not None else False,
            "glasses": self._glasses_url,
            "hasSprite": renderer is not None and renderer.sprite is not None,
            "adjustments": self.adjustments.get().to_dict(),
            "detections": self.detections,
            "misses": self.misses,
            "skippedTicks": self.skipped_ticks,
        }
