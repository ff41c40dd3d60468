# Async camera reading: a background thread keeps the latest frame so the
# render and detection loops never wait on camera IO.

import logging
import threading
import time

import cv2

from tryon_errors import CameraPermissionError

logger = logging.getLogger(__name__)


class AsyncVideoCapture:
    """
    Video capture that reads frames on a background thread.

    read() returns the most recent frame immediately. A frame counter tells
    callers whether anything has been decoded yet (is_ready()).
    """

    def __init__(self, src=0, width=None, height=None, fps=None):
        """
        Args:
            src: camera index
            width: capture width
            height: capture height
            fps: target frame rate

        Raises:
            CameraPermissionError: the device could not be opened
                (missing, busy or access denied).
        """
        self.src = src
        self.running = False
        self.thread = None
        self.cap = cv2.VideoCapture(src)

        if not self.cap.isOpened():
            self.cap.release()
            raise CameraPermissionError(src, "open")

        if width is not None:
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        if height is not None:
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        if fps is not None:
            self.cap.set(cv2.CAP_PROP_FPS, fps)

        self.ret, self.frame = self.cap.read()

        self.lock = threading.Lock()
        self.frames_read = 1 if self.ret else 0
        self.read_count = 0
        self.last_read_time = time.time()

        self.running = True
        self.thread = threading.Thread(target=self._reader, name="camera-reader", daemon=True)
        self.thread.start()
        logger.info("Camera %s opened", src)

    def _reader(self):
        while self.running:
            ret, frame = self.cap.read()
            if ret:
                with self.lock:
                    self.ret = ret
                    self.frame = frame
                    self.frames_read += 1
                    self.read_count += 1
            else:
                time.sleep(0.01)

    def read(self):
        """
        Returns:
            ret, frame: same contract as cv2.VideoCapture.read(); frame is a copy.
        """
        with self.lock:
            return self.ret, self.frame.copy() if self.frame is not None else None

    def is_ready(self):
        """True once at least one frame has been decoded."""
        with self.lock:
            return self.frames_read > 0 and self.frame is not None

    def wait_ready(self, timeout=3.0):
        """Block until the first frame arrives.

        Raises:
            CameraPermissionError: no frame within `timeout` seconds.
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.is_ready():
                return
            time.sleep(0.02)
        raise CameraPermissionError(self.src, "read")

    def get(self, prop_id):
        return self.cap.get(prop_id)

    def set(self, prop_id, value):
        return self.cap.set(prop_id, value)

    def release(self):
        if self.thread is None and not self.running:
            return
        self.running = False
        if self.thread is not None and self.thread.is_alive():
            self.thread.join(timeout=1.0)
        self.thread = None
        self.cap.release()
        logger.info("Camera %s released", self.src)

    def get_read_fps(self):
        """Actual read rate of the background thread since the last call."""
        now = time.time()
        dt = now - self.last_read_time
        if dt > 0:
            fps = self.read_count / dt
            self.read_count = 0
            self.last_read_time = now
            return fps
        return 0

    def __del__(self):
        if getattr(self, "cap", None) is not None:
            self.release()
