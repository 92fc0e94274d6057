"""Webcam capture via OpenCV."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import cv2

from engagecam.ml.preprocessing import flip_horizontal

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class Webcam:
    """A square, optionally mirrored, RGB view of a capture device.

    ``canvas`` holds the most recent frame after ``update()``.
    """

    def __init__(self, width: int = 200, height: int = 200, flip: bool = True, device_index: int = 0) -> None:
        self.width = width
        self.height = height
        self.flip = flip
        self.device_index = device_index
        self.canvas: NDArray[np.uint8] | None = None
        self._capture: cv2.VideoCapture | None = None
        self._playing = False

    @property
    def playing(self) -> bool:
        return self._playing

    def setup(self) -> None:
        """Open the capture device.

        Raises:
            RuntimeError: If the camera cannot be opened.
        """
        capture = cv2.VideoCapture(self.device_index)
        if not capture.isOpened():
            capture.release()
            raise RuntimeError(f"Cannot open camera {self.device_index}")
        self._capture = capture
        logger.info("Opened camera %d (%dx%d, flip=%s)", self.device_index, self.width, self.height, self.flip)

    def play(self) -> None:
        if self._capture is None:
            raise RuntimeError("Webcam.setup() must be called before play()")
        self._playing = True

    def update(self) -> NDArray[np.uint8]:
        """Grab the next frame into ``canvas`` and return it."""
        if self._capture is None or not self._playing:
            raise RuntimeError("Webcam is not playing")
        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise RuntimeError(f"Failed to read a frame from camera {self.device_index}")

        frame = self._fit(frame)
        if self.flip:
            frame = flip_horizontal(frame)
        self.canvas = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        return self.canvas

    def stop(self) -> None:
        self._playing = False
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info("Released camera %d", self.device_index)

    def _fit(self, frame: NDArray[np.uint8]) -> NDArray[np.uint8]:
        # Crop to the target aspect ratio before scaling so the view is not stretched.
        h, w = frame.shape[:2]
        target_ratio = self.width / self.height
        if w / h > target_ratio:
            new_w = int(round(h * target_ratio))
            x0 = (w - new_w) // 2
            frame = frame[:, x0 : x0 + new_w]
        else:
            new_h = int(round(w / target_ratio))
            y0 = (h - new_h) // 2
            frame = frame[y0 : y0 + new_h]
        return cv2.resize(frame, (self.width, self.height), interpolation=cv2.INTER_AREA)
