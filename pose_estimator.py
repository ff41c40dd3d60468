"""
Pose estimation for the glasses overlay.

Overlay space has its origin at the surface center, x to the right and y up,
as seen in the mirrored (selfie) display. Frame pixels are mirrored into it
by the translation step.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, replace
from typing import Optional

from face_landmarks import EyeLandmarks

SCALE_RANGE = (0.5, 2.0)
OFFSET_RANGE = (-0.5, 0.5)
ROTATION_RANGE = (-0.5, 0.5)


def clamp(x, a, b):
    return a if x < a else (b if x > b else x)

def ema(prev, new, a):
    return new if prev is None else (a*prev + (1.0-a)*new)

def smooth_angle(prev, cur, a):
    if prev is None: return cur
    delta = (cur - prev + math.pi) % (2*math.pi) - math.pi
    return prev + (1.0 - a) * delta


@dataclass(frozen=True)
class Adjustment:
    """User fit adjustments. Out-of-range values are clamped to their bounds."""

    scale: float = 1.0
    offset_x: float = 0.0
    offset_y: float = 0.0
    rotation: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "scale", clamp(float(self.scale), *SCALE_RANGE))
        object.__setattr__(self, "offset_x", clamp(float(self.offset_x), *OFFSET_RANGE))
        object.__setattr__(self, "offset_y", clamp(float(self.offset_y), *OFFSET_RANGE))
        object.__setattr__(self, "rotation", clamp(float(self.rotation), *ROTATION_RANGE))

    @classmethod
    def from_dict(cls, data: dict, base: Optional["Adjustment"] = None) -> "Adjustment":
        """Parse the UI payload (camelCase keys). Missing keys keep `base` values.

        Raises:
            ValueError: a value is not a finite number.
        """
        base = base or cls()
        values = {}
        for key, field_name in (("scale", "scale"), ("offsetX", "offset_x"),
                                ("offsetY", "offset_y"), ("rotation", "rotation")):
            if key not in data:
                values[field_name] = getattr(base, field_name)
                continue
            raw = data[key]
            if isinstance(raw, bool):
                raise ValueError(f"{key} must be a number")
            try:
                value = float(raw)
            except (TypeError, ValueError):
                raise ValueError(f"{key} must be a number") from None
            if not math.isfinite(value):
                raise ValueError(f"{key} must be finite")
            values[field_name] = value
        return cls(**values)

    def to_dict(self) -> dict:
        return {
            "scale": self.scale,
            "offsetX": self.offset_x,
            "offsetY": self.offset_y,
            "rotation": self.rotation,
        }


class AdjustmentModel:
    """Holds the current Adjustment. Replaced wholesale, read once per detection."""

    def __init__(self, initial: Optional[Adjustment] = None):
        self._lock = threading.Lock()
        self._current = initial or Adjustment()

    def get(self) -> Adjustment:
        with self._lock:
            return self._current

    def replace(self, adjustment: Adjustment) -> Adjustment:
        with self._lock:
            self._current = adjustment
            return adjustment

    def reset(self) -> Adjustment:
        return self.replace(Adjustment())


@dataclass(frozen=True)
class Pose:
    x: float
    y: float
    scale: float
    rotation: float


class PoseEstimator:
    """Turns eye landmarks plus the current Adjustment into a Pose.

    Args:
        ref_eye_distance: eye-corner distance in pixels that maps to scale 1.0
        pixel_to_overlay: overlay units per frame pixel
        base_offset: fixed (x, y) offset in overlay units
    """

    def __init__(self, ref_eye_distance=140.0, pixel_to_overlay=0.01, base_offset=(0.0, -0.01)):
        if ref_eye_distance <= 0:
            raise ValueError("ref_eye_distance must be positive")
        self.ref_eye_distance = float(ref_eye_distance)
        self.pixel_to_overlay = float(pixel_to_overlay)
        self.base_offset = (float(base_offset[0]), float(base_offset[1]))

    @classmethod
    def from_config(cls, config):
        return cls(config.ref_eye_distance, config.pixel_to_overlay,
                   (config.base_offset_x, config.base_offset_y))

    def scale_factor(self, eye_distance: float, user_scale: float = 1.0) -> float:
        return (eye_distance / self.ref_eye_distance) * user_scale

    def translation(self, eyes: EyeLandmarks, adjustment: Adjustment) -> tuple[float, float]:
        cx, cy = eyes.eye_center
        # x is negated for the mirrored view, y because overlay space is y-up
        x = -(cx - eyes.frame_width / 2.0) * self.pixel_to_overlay
        y = -(cy - eyes.frame_height / 2.0) * self.pixel_to_overlay
        return (x + self.base_offset[0] + adjustment.offset_x,
                y + self.base_offset[1] + adjustment.offset_y)

    def rotation(self, eyes: EyeLandmarks, adjustment: Adjustment) -> float:
        dx, dy = eyes.eye_vector
        return math.atan2(dy, dx) + adjustment.rotation

    def estimate(self, eyes: EyeLandmarks, adjustment: Adjustment) -> Pose:
        x, y = self.translation(eyes, adjustment)
        return Pose(
            x=x,
            y=y,
            scale=self.scale_factor(eyes.eye_distance, adjustment.scale),
            rotation=self.rotation(eyes, adjustment),
        )


class PoseState:
    """Latest pose, written by the detection loop and read by the render loop.

    With smooth_a > 0 each published pose is blended into the previous one.
    """

    def __init__(self, smooth_a: float = 0.0):
        self.smooth_a = clamp(float(smooth_a), 0.0, 0.99)
        self._lock = threading.Lock()
        self._pose: Optional[Pose] = None
        self._version = 0

    def publish(self, pose: Pose) -> Pose:
        with self._lock:
            prev = self._pose
            if prev is not None and self.smooth_a > 0.0:
                a = self.smooth_a
                pose = replace(
                    pose,
                    x=ema(prev.x, pose.x, a),
                    y=ema(prev.y, pose.y, a),
                    scale=ema(prev.scale, pose.scale, a),
                    rotation=smooth_angle(prev.rotation, pose.rotation, a),
                )
            self._pose = pose
            self._version += 1
            return pose

    def latest(self) -> tuple[Optional[Pose], int]:
        with self._lock:
            return self._pose, self._version

    def clear(self):
        with self._lock:
            self._pose = None
            self._version += 1
