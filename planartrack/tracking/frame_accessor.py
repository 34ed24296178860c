"""
Session-scoped frame access for the alignment engine.

The accessor converts source frames to single-channel float images
(mixing the enabled channels and applying the pre-blur) and caches the
result for the lifetime of one tracking session. It is released when
the session ends so a later session never sees stale pixels.
"""

import logging
import threading

import cv2
import numpy as np

from planartrack.core.base import FrameSource
from planartrack.tracking.marker import ChannelMask

logger = logging.getLogger(__name__)


def invert_y(y: float, height: float) -> float:
    """
    Flip a vertical coordinate between canonical (y up) and image rows (y down).

    The mapping is its own inverse, so it is used in both directions.
    """
    return height - 1.0 - y


def to_gray(frame: np.ndarray, channels: ChannelMask) -> np.ndarray:
    """Average the enabled channels of an RGB frame into a float32 image."""
    img = np.asarray(frame)
    if img.dtype == np.uint8:
        img = img.astype(np.float32) / 255.0
    elif img.dtype == np.uint16:
        img = img.astype(np.float32) / 65535.0
    else:
        img = img.astype(np.float32)

    if img.ndim == 2:
        return img
    selected = [i for i, on in enumerate(channels[:img.shape[2]]) if on]
    if not selected:
        raise ValueError("At least one channel must be enabled")
    return img[:, :, selected].mean(axis=2).astype(np.float32)


class TrackerFrameAccessor:
    """
    Cached, channel-masked grayscale access to a frame source.

    Example:
        >>> accessor = TrackerFrameAccessor(source, (True, True, True))
        >>> img = accessor.get_image(10, sigma=0.9)
        >>> accessor.release()
    """

    def __init__(self, source: FrameSource, channels: ChannelMask, format_height: float | None = None):
        self.source = source
        self.channels = tuple(bool(c) for c in channels)
        self.format_height = format_height
        self._cache: dict[tuple, np.ndarray] = {}
        self._lock = threading.Lock()
        self._source_lock = threading.Lock()
        self._released = False
        self.hits = 0
        self.misses = 0

    @property
    def released(self) -> bool:
        return self._released

    def get_image(
        self,
        time: int,
        channels: ChannelMask | None = None,
        sigma: float = 0.0,
    ) -> np.ndarray:
        """
        Grayscale float32 image of the frame at `time`.

        Args:
            time: Frame number
            channels: Channel mask; defaults to the session mask
            sigma: Gaussian pre-blur sigma, 0 to disable

        Raises:
            RuntimeError: If the accessor has been released
        """
        if self._released:
            raise RuntimeError("Frame accessor used after its session ended")
        channels = tuple(channels) if channels is not None else self.channels
        key = (int(time), channels, round(float(sigma), 6))

        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self.hits += 1
                return cached

        with self._source_lock:
            frame = self.source.get_frame(int(time))
        img = to_gray(frame, channels)
        if sigma > 0:
            img = cv2.GaussianBlur(img, (0, 0), sigma)

        with self._lock:
            self.misses += 1
            self._cache.setdefault(key, img)
            return self._cache[key]

    def release(self) -> None:
        """Drop cached images; the accessor cannot be used afterwards."""
        with self._lock:
            logger.debug("Releasing frame accessor (%d cached, %d hits, %d misses)",
                         len(self._cache), self.hits, self.misses)
            self._cache.clear()
            self._released = True
