"""
Camera capture for scene queries.

Grabs a single frame on demand and returns it as a base64-encoded JPEG,
the format the scene service expects. Returns None when the camera is not
open yet, so the assistant can tell the user instead of querying blind.

Requires: opencv-python-headless >= 4.8.0
    pip install opencv-python-headless
"""

import base64
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import numpy as np

logger = logging.getLogger(__name__)


class FrameSource(Protocol):
    def capture_current_frame(self) -> Optional[str]: ...


@dataclass
class CameraConfig:
    """Configuration for camera capture."""

    device: int = 0
    width: int = 1280
    height: int = 720
    jpeg_quality: int = 80
    warmup_frames: int = 5


class Camera:
    """
    USB / built-in camera.

    Usage:
        with Camera() as cam:
            frame_b64 = cam.capture_current_frame()
    """

    def __init__(self, config: Optional[CameraConfig] = None):
        self.config = config or CameraConfig()
        self._cap = None
        self._cv2 = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._cap is not None and self._cap.isOpened()

    def open(self) -> bool:
        """
        Open the camera device.

        Returns:
            True if camera opened successfully, False otherwise.
        """
        try:
            import cv2
        except ImportError:
            logger.error("OpenCV not installed. Install with: pip install opencv-python-headless")
            return False

        self._cv2 = cv2

        try:
            self._cap = cv2.VideoCapture(self.config.device)
            if not self._cap.isOpened():
                logger.error("Failed to open camera device %s", self.config.device)
                self._cap = None
                return False

            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.config.width)
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config.height)

            # Let auto-exposure settle
            for _ in range(self.config.warmup_frames):
                self._cap.read()

            actual_w = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
            actual_h = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
            logger.info("Camera ready: device=%s (%dx%d)", self.config.device, actual_w, actual_h)
            return True

        except Exception as e:
            logger.error("Camera error: %s", e)
            self._cap = None
            return False

    def capture_frame(self) -> Optional[np.ndarray]:
        """Capture a raw BGR frame, or None if the camera is not ready."""
        if not self.is_open:
            return None

        # Drop stale buffered frames so the answer matches what is in front now
        for _ in range(3):
            self._cap.grab()

        ret, frame = self._cap.read()
        if not ret or frame is None:
            return None
        return frame

    def capture_current_frame(self) -> Optional[str]:
        """Capture a frame as base64 JPEG, or None if the camera is not ready."""
        with self._lock:
            frame = self.capture_frame()
        if frame is None:
            return None

        encode_params = [self._cv2.IMWRITE_JPEG_QUALITY, self.config.jpeg_quality]
        success, jpeg_buf = self._cv2.imencode(".jpg", frame, encode_params)
        if not success:
            return None

        return base64.b64encode(jpeg_buf.tobytes()).decode("utf-8")

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class ImageFile:
    """Frame source that always returns the same image file (for ``blindvision ask``)."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def capture_current_frame(self) -> Optional[str]:
        if not self.path.exists():
            logger.error("Image not found: %s", self.path)
            return None
        return base64.b64encode(self.path.read_bytes()).decode("utf-8")


class NoCamera:
    """Frame source for running without a camera; every capture reports not-ready."""

    def capture_current_frame(self) -> Optional[str]:
        return None
