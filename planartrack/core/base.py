"""
Base types and protocols for the planartrack framework.

This module defines the collaborator interfaces the tracking core talks
to: a frame source for pixel access, a progress sink for start/update/end
notifications and an error sink for user-facing failure messages.
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Protocol, Sequence, runtime_checkable

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle (x1, y1) - (x2, y2)."""
    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    def corners(self) -> list[tuple[float, float]]:
        """Corners in (x1,y1), (x2,y1), (x2,y2), (x1,y2) order."""
        return [
            (self.x1, self.y1),
            (self.x2, self.y1),
            (self.x2, self.y2),
            (self.x1, self.y2),
        ]


@runtime_checkable
class FrameSource(Protocol):
    """Protocol for objects that provide decoded frames by time."""

    def get_frame(self, time: int) -> np.ndarray:
        """Return the frame at `time` as an (H, W) or (H, W, 3) RGB array."""
        ...

    def format_rect(self, time: int) -> Rect:
        """Return the region of definition of the frame at `time`."""
        ...


@runtime_checkable
class ProgressSink(Protocol):
    """Protocol for progress reporting and cooperative cancellation."""

    def progress_start(self, total: int) -> None:
        ...

    def progress_update(self, fraction: float) -> None:
        ...

    def progress_end(self) -> None:
        ...

    def is_cancelled(self) -> bool:
        ...


@runtime_checkable
class ErrorSink(Protocol):
    """Protocol for user-facing error reporting."""

    def report_error(self, message: str) -> None:
        ...


class NullProgress:
    """Progress sink that ignores everything and never cancels."""

    def progress_start(self, total: int) -> None:
        pass

    def progress_update(self, fraction: float) -> None:
        pass

    def progress_end(self) -> None:
        pass

    def is_cancelled(self) -> bool:
        return False


class LoggingProgress(NullProgress):
    """Progress sink that writes to the package logger."""

    def __init__(self, name: str = "progress"):
        self.name = name
        self._last_percent = -1

    def progress_start(self, total: int) -> None:
        self._last_percent = -1
        logger.info("%s: started (%d items)", self.name, total)

    def progress_update(self, fraction: float) -> None:
        percent = int(fraction * 100)
        if percent // 10 != self._last_percent // 10:
            logger.info("%s: %d%%", self.name, percent)
        self._last_percent = percent

    def progress_end(self) -> None:
        logger.info("%s: done", self.name)


class LoggingErrorSink:
    """Error sink that logs messages and keeps them for inspection."""

    def __init__(self):
        self.messages: list[str] = []

    def report_error(self, message: str) -> None:
        self.messages.append(message)
        logger.warning(message)


class ArrayFrameSource:
    """
    Frame source backed by in-memory numpy arrays.

    Example:
        >>> frames = [np.zeros((120, 160, 3), np.float32) for _ in range(10)]
        >>> source = ArrayFrameSource(frames)
        >>> source.format_rect(0).width
        160
    """

    def __init__(self, frames: Sequence[np.ndarray] | Mapping[int, np.ndarray], first_frame: int = 0):
        if isinstance(frames, Mapping):
            self._frames = dict(frames)
        else:
            self._frames = {first_frame + i: f for i, f in enumerate(frames)}
        if not self._frames:
            raise ValueError("ArrayFrameSource needs at least one frame")

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def frame_range(self) -> tuple[int, int]:
        return (min(self._frames), max(self._frames))

    def get_frame(self, time: int) -> np.ndarray:
        try:
            return self._frames[int(time)]
        except KeyError:
            raise IndexError(f"No frame at time {time}") from None

    def format_rect(self, time: int) -> Rect:
        frame = self._frames.get(int(time))
        if frame is None:
            frame = next(iter(self._frames.values()))
        h, w = frame.shape[:2]
        return Rect(0, 0, w, h)
