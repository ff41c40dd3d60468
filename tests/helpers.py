"""Synthetic camera, detector and glasses images for try-on tests."""

import base64
import threading

import cv2
import numpy as np

from tryon_errors import DetectorLoadError

NUM_KEYPOINTS = 468


def make_glasses_png(width=200, height=100, color=(0, 255, 0), opaque=True):
    """BGRA glasses image: a solid colored band with transparent margins."""
    img = np.zeros((height, width, 4), np.uint8)
    if opaque:
        img[..., :3] = color
        img[..., 3] = 255
    else:
        img[height // 4: 3 * height // 4, :, :3] = color
        img[height // 4: 3 * height // 4, :, 3] = 255
    ok, buf = cv2.imencode(".png", img)
    assert ok
    return buf.tobytes()


def png_data_uri(png_bytes):
    return "data:image/png;base64," + base64.b64encode(png_bytes).decode("ascii")


class FakeCamera:
    def __init__(self, width=640, height=480, ready=True):
        self.frame = np.zeros((height, width, 3), np.uint8)
        self.ready = ready
        self.released = False

    def read(self):
        if not self.ready:
            return False, None
        return True, self.frame.copy()

    def release(self):
        self.released = True


class FakeDetector:
    """Returns scripted results in order; the last one repeats.

    A result may be a keypoint array, None (no face) or an exception to raise.
    Set `gate` to an Event to make detect() block until it is set.
    """

    def __init__(self, results=None, fail_load=False):
        self.results = list(results) if results is not None else [None]
        self.fail_load = fail_load
        self.calls = 0
        self.loaded = False
        self.closed = False
        self.gate = None
        self.started = threading.Event()

    def load(self):
        if self.fail_load:
            raise DetectorLoadError("fake.face_mesh")
        self.loaded = True

    def detect(self, frame):
        idx = min(self.calls, len(self.results) - 1)
        self.calls += 1
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5.0)
        item = self.results[idx]
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        self.closed = True


