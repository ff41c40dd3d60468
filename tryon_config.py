import os
from dataclasses import dataclass
from typing import Optional


def env_bool(name, default="0"):
    return os.environ.get(name, default).strip().lower() in ("1","true","yes","on","y")

def env_int(name, default):
    return int(os.environ.get(name, str(default)))

def env_float(name, default):
    return float(os.environ.get(name, str(default)))


@dataclass
class TryOnConfig:
    # Camera
    cam_index: int = 0
    cap_w: int = 640
    cap_h: int = 480

    # Loop cadence
    detect_interval_ms: float = 120.0
    render_fps: float = 60.0

    # Pose calibration. One overlay unit is 1 / pixel_to_overlay surface pixels;
    # the quad is quad_w x quad_h units before scaling.
    ref_eye_distance: float = 140.0
    pixel_to_overlay: float = 0.01
    base_offset_x: float = 0.0
    base_offset_y: float = -0.01
    quad_w: float = 2.0
    quad_h: float = 1.0
    pose_smooth_a: float = 0.0

    # Detector
    min_detection_confidence: float = 0.5
    min_tracking_confidence: float = 0.5

    # Textures
    max_texture_size: int = 512
    max_texture_bytes: int = 10 * 1024 * 1024
    texture_timeout: float = 10.0
    default_glasses: Optional[str] = None

    # Output
    jpeg_quality: int = 80
    max_capture_side: int = 4096

    # HTTP
    host: str = "127.0.0.1"
    port: int = 5000
    log_level: str = "INFO"
    debug: bool = False

    @property
    def detect_interval_s(self):
        return self.detect_interval_ms / 1000.0

    @property
    def render_interval_s(self):
        return 1.0 / self.render_fps if self.render_fps > 0 else 0.0

    @property
    def pixels_per_unit(self):
        return 1.0 / self.pixel_to_overlay

    @classmethod
    def from_env(cls):
        return cls(
            cam_index=env_int("CAM_INDEX", 0),
            cap_w=env_int("CAP_W", 640),
            cap_h=env_int("CAP_H", 480),
            detect_interval_ms=env_float("DETECT_INTERVAL_MS", 120.0),
            render_fps=env_float("RENDER_FPS", 60.0),
            ref_eye_distance=env_float("REF_EYE_DIST", 140.0),
            pixel_to_overlay=env_float("PIXEL_TO_OVERLAY", 0.01),
            base_offset_x=env_float("BASE_OFFSET_X", 0.0),
            base_offset_y=env_float("BASE_OFFSET_Y", -0.01),
            pose_smooth_a=env_float("POSE_SMOOTH_A", 0.0),
            min_detection_confidence=env_float("MIN_DETECTION_CONFIDENCE", 0.5),
            min_tracking_confidence=env_float("MIN_TRACKING_CONFIDENCE", 0.5),
            max_texture_size=env_int("MAX_TEXTURE_SIZE", 512),
            max_texture_bytes=env_int("MAX_TEXTURE_BYTES", 10 * 1024 * 1024),
            texture_timeout=env_float("TEXTURE_TIMEOUT", 10.0),
            default_glasses=os.environ.get("DEFAULT_GLASSES") or None,
            jpeg_quality=env_int("JPEG_QUALITY", 80),
            max_capture_side=env_int("MAX_CAPTURE_SIDE", 4096),
            host=os.environ.get("HOST", "127.0.0.1"),
            port=env_int("PORT", 5000),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            debug=env_bool("FLASK_DEBUG", "0"),
        )
