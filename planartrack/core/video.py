"""
Video frame access for the tracker.

Provides a FrameSource backed by an OpenCV VideoCapture with random
access by frame number, so the tracker can request reference and
target frames in any order.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import cv2
import numpy as np

from planartrack.core.base import Rect

logger = logging.getLogger(__name__)


@dataclass
class VideoProperties:
    """Properties of a video file."""
    width: int
    height: int
    fps: float
    frame_count: int

    @classmethod
    def from_capture(cls, cap: cv2.VideoCapture) -> "VideoProperties":
        """Create VideoProperties from an OpenCV VideoCapture."""
        return cls(
            width=int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            height=int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            fps=cap.get(cv2.CAP_PROP_FPS),
            frame_count=int(cap.get(cv2.CAP_PROP_FRAME_COUNT)),
        )

    def to_dict(self) -> dict:
        return {
            "width": self.width,
            "height": self.height,
            "fps": self.fps,
            "frame_count": self.frame_count,
        }

    @property
    def rect(self) -> Rect:
        return Rect(0, 0, self.width, self.height)


class VideoFrameSource:
    """
    Random-access frame source reading a video file with OpenCV.

    Frames are returned in RGB order. Sequential reads avoid seeking.
    Frame numbers are 0-indexed.

    Example:
        with VideoFrameSource("input.mp4") as source:
            frame = source.get_frame(10)
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._cap: cv2.VideoCapture | None = None
        self._props: VideoProperties | None = None
        self._next_frame = 0

    @property
    def properties(self) -> VideoProperties:
        if self._props is None:
            self.open()
        return self._props

    def open(self) -> "VideoFrameSource":
        """Open the video file."""
        if not self.path.exists():
            raise FileNotFoundError(f"Video file not found: {self.path}")

        self._cap = cv2.VideoCapture(str(self.path))
        if not self._cap.isOpened():
            raise RuntimeError(f"Failed to open video: {self.path}")

        self._props = VideoProperties.from_capture(self._cap)
        self._next_frame = 0
        logger.debug("Opened %s: %s", self.path, self._props.to_dict())
        return self

    def close(self) -> None:
        """Close the video file."""
        if self._cap:
            self._cap.release()
            self._cap = None

    def __enter__(self) -> "VideoFrameSource":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def get_frame(self, time: int) -> np.ndarray:
        if self._cap is None:
            self.open()
        time = int(time)
        if time < 0 or time >= self._props.frame_count:
            raise IndexError(f"Frame {time} outside 0..{self._props.frame_count - 1}")

        if time != self._next_frame:
            self._cap.set(cv2.CAP_PROP_POS_FRAMES, time)

        ret, frame = self._cap.read()
        if not ret:
            raise RuntimeError(f"Failed to read frame {time} from {self.path}")
        self._next_frame = time + 1
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    def format_rect(self, time: int) -> Rect:
        return self.properties.rect
