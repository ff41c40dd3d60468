"""
Exception hierarchy for the try-on pipeline.

Initialization errors are fatal for a session. Landmark, texture and capture
errors are recoverable: the caller logs them and keeps the last good state.
"""

from __future__ import annotations

from typing import Any, Optional


class TryOnError(Exception):
    """Base exception carrying optional context and cause."""

    def __init__(
        self,
        message: str,
        *,
        context: Optional[dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        self.context = context or {}
        self.cause = cause

        full_message = message
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            full_message = f"{message} [{context_str}]"

        if cause:
            full_message = f"{full_message} (caused by: {cause})"

        super().__init__(full_message)


class InitializationError(TryOnError):
    """Session could not be brought up. Requires a manual retry."""
    pass


class CameraPermissionError(InitializationError):
    """Camera could not be opened or produced no frames."""

    def __init__(
        self,
        camera_id: int,
        operation: str = "open",
        cause: Optional[Exception] = None
    ):
        super().__init__(
            f"Camera error: failed to {operation} camera {camera_id}",
            context={"camera_id": camera_id, "operation": operation},
            cause=cause
        )


class DetectorLoadError(InitializationError):
    """Landmark model failed to load."""

    def __init__(self, model_name: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Failed to load landmark model '{model_name}'",
            context={"model": model_name},
            cause=cause
        )


class LandmarkError(TryOnError):
    """Detector output does not contain the keypoints the pose needs."""

    def __init__(self, message: str, expected: Optional[Any] = None,
                 actual: Optional[Any] = None):
        super().__init__(
            message,
            context={"expected": expected, "actual": actual}
        )


class TextureLoadError(TryOnError):
    """Glasses image could not be fetched or decoded."""

    def __init__(self, url: str, reason: str, cause: Optional[Exception] = None):
        shown = url if len(url) <= 80 else url[:77] + "..."
        super().__init__(
            f"Failed to load glasses texture: {reason}",
            context={"url": shown},
            cause=cause
        )


class CaptureNotReadyError(TryOnError):
    """Video or overlay surface not available yet; nothing was captured."""
    pass
