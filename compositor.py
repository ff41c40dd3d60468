"""
Compositing of the mirrored video frame with the rendered overlay.

The live display and screenshots go through the same mirror-resize-blend
path, so a capture matches what the user saw.
"""

from __future__ import annotations

import base64
import logging
from typing import Optional

import cv2
import numpy as np

from tryon_errors import CaptureNotReadyError

logger = logging.getLogger(__name__)


def mirror_frame(frame: np.ndarray) -> np.ndarray:
    return cv2.flip(frame, 1)


def alpha_blend(base_bgr: np.ndarray, overlay_bgra: np.ndarray) -> np.ndarray:
    """Blend a BGRA overlay over a BGR image of the same size."""
    fg = overlay_bgra[..., :3].astype(np.float32)
    a = overlay_bgra[..., 3:4].astype(np.float32) / 255.0
    return (base_bgr * (1 - a) + fg * a).astype(np.uint8)


def _has_pixels(img: Optional[np.ndarray]) -> bool:
    return img is not None and img.ndim >= 2 and img.shape[0] > 0 and img.shape[1] > 0


def _resize(img, width, height):
    if img.shape[1] == width and img.shape[0] == height:
        return img
    return cv2.resize(img, (width, height), interpolation=cv2.INTER_LINEAR)


def compose_frame(frame: np.ndarray, surface: Optional[np.ndarray],
                  display_size: Optional[tuple[int, int]] = None) -> np.ndarray:
    """Mirror the frame, scale both layers to display_size (w, h) and blend."""
    if display_size is None:
        display_size = (frame.shape[1], frame.shape[0])
    w, h = display_size
    out = _resize(mirror_frame(frame), w, h)
    if _has_pixels(surface):
        out = alpha_blend(out, _resize(surface, w, h))
    return out


def encode_jpeg(image: np.ndarray, quality: int = 80) -> Optional[bytes]:
    ok, buf = cv2.imencode('.jpg', image, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
    return buf.tobytes() if ok else None


def encode_png(image: np.ndarray) -> bytes:
    ok, buf = cv2.imencode('.png', image)
    if not ok:
        raise ValueError("PNG encoding failed")
    return buf.tobytes()


def to_data_uri(png_bytes: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes).decode("ascii")


def decode_data_uri(uri: str) -> np.ndarray:
    _, _, payload = uri.partition(",")
    return cv2.imdecode(np.frombuffer(base64.b64decode(payload), np.uint8), cv2.IMREAD_UNCHANGED)


class Compositor:
    """Builds still captures from the current frame and overlay surface."""

    def __init__(self, max_side: Optional[int] = None):
        self.max_side = max_side

    def capture_png(self, frame, surface, display_size) -> bytes:
        """Composite at display_size (w, h) and return PNG bytes.

        Raises:
            CaptureNotReadyError: no decoded frame, no overlay surface, or an
                empty display size.
            ValueError: display size larger than max_side.
        """
        if not _has_pixels(frame):
            raise CaptureNotReadyError("video has no decoded frame yet")
        if not _has_pixels(surface):
            raise CaptureNotReadyError("overlay surface not rendered yet")
        w, h = (int(v) for v in display_size)
        if w <= 0 or h <= 0:
            raise CaptureNotReadyError("display size must be positive",
                                       context={"width": w, "height": h})
        if self.max_side and max(w, h) > self.max_side:
            raise ValueError(f"capture size {w}x{h} exceeds {self.max_side} px per side")

        png = encode_png(compose_frame(frame, surface, (w, h)))
        logger.debug("Captured %dx%d screenshot (%d bytes)", w, h, len(png))
        return png

    def capture(self, frame, surface, display_size) -> str:
        """Same as capture_png but returns a PNG data URI."""
        return to_data_uri(self.capture_png(frame, surface, display_size))
