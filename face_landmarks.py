"""
Face landmark detection.

FaceMeshDetector wraps MediaPipe Face Mesh and returns the keypoints of at
most one face in frame pixel space. EyeLandmarks pulls the three points the
pose needs out of that raw array, so the Face Mesh index numbers are only
known here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from tryon_errors import DetectorLoadError, LandmarkError

logger = logging.getLogger(__name__)

# MediaPipe Face Mesh indices (image coordinates, camera not mirrored)
LEFT_EYE_OUTER = 33     # outer corner of the eye on the image-left side
RIGHT_EYE_OUTER = 263   # outer corner of the eye on the image-right side
EYE_CENTER = 168        # nose bridge between the eyes

MIN_KEYPOINTS = max(LEFT_EYE_OUTER, RIGHT_EYE_OUTER, EYE_CENTER) + 1


def to_img_px(lm, W, H):
    return np.array([lm.x * W, lm.y * H, lm.z * W], np.float32)


@dataclass(frozen=True)
class EyeLandmarks:
    """Eye corners and eye-center anchor in frame pixels."""

    left_eye: tuple[float, float]
    right_eye: tuple[float, float]
    eye_center: tuple[float, float]
    frame_width: int
    frame_height: int

    @classmethod
    def from_keypoints(cls, keypoints, frame_width: int, frame_height: int) -> "EyeLandmarks":
        """Build from an (N, 2) or (N, 3) keypoint array of one face.

        Raises:
            LandmarkError: array has the wrong shape or too few points.
        """
        pts = np.asarray(keypoints, dtype=np.float32)
        if pts.ndim != 2 or pts.shape[1] not in (2, 3):
            raise LandmarkError("keypoints must be an (N, 2) or (N, 3) array",
                                expected="(N, 2|3)", actual=pts.shape)
        if pts.shape[0] < MIN_KEYPOINTS:
            raise LandmarkError("too few keypoints for eye landmarks",
                                expected=MIN_KEYPOINTS, actual=pts.shape[0])
        if frame_width <= 0 or frame_height <= 0:
            raise LandmarkError("frame size must be positive",
                                actual=(frame_width, frame_height))

        def xy(idx):
            return float(pts[idx, 0]), float(pts[idx, 1])

        return cls(
            left_eye=xy(LEFT_EYE_OUTER),
            right_eye=xy(RIGHT_EYE_OUTER),
            eye_center=xy(EYE_CENTER),
            frame_width=int(frame_width),
            frame_height=int(frame_height),
        )

    @property
    def eye_vector(self) -> tuple[float, float]:
        return (self.right_eye[0] - self.left_eye[0],
                self.right_eye[1] - self.left_eye[1])

    @property
    def eye_distance(self) -> float:
        dx, dy = self.eye_vector
        return float(np.hypot(dx, dy))


class FaceMeshDetector:
    """Single-face MediaPipe Face Mesh detector.

    detect() takes a BGR frame and returns an (N, 3) float32 array of
    keypoints in pixel space (z scaled by frame width), or None when no face
    is visible.
    """

    model_name = "mediapipe.face_mesh"

    def __init__(self, min_detection_confidence=0.5, min_tracking_confidence=0.5):
        self.min_detection_confidence = min_detection_confidence
        self.min_tracking_confidence = min_tracking_confidence
        self._fm = None

    @property
    def loaded(self) -> bool:
        return self._fm is not None

    def load(self):
        if self._fm is not None:
            return
        try:
            import mediapipe as mp
            self._fm = mp.solutions.face_mesh.FaceMesh(
                max_num_faces=1,
                refine_landmarks=False,
                min_detection_confidence=self.min_detection_confidence,
                min_tracking_confidence=self.min_tracking_confidence,
            )
        except Exception as e:
            raise DetectorLoadError(self.model_name, cause=e) from e
        logger.info("Face mesh model loaded")

    def detect(self, frame) -> Optional[np.ndarray]:
        if self._fm is None:
            raise RuntimeError("detector not loaded")
        H, W = frame.shape[:2]
        res = self._fm.process(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))
        if not res.multi_face_landmarks:
            return None
        lm = res.multi_face_landmarks[0].landmark
        return np.stack([to_img_px(p, W, H) for p in lm])

    def close(self):
        if self._fm is not None:
            self._fm.close()
            self._fm = None
            logger.info("Face mesh model released")
