"""
Engine-side marker arena.

AutoTrack keeps every engine marker of a tracking session, keyed by
(track index, frame), and aligns a marker against its reference sample.
Worker threads insert concurrently, so every access to the arena goes
through one mutex. Engine markers use image coordinates (y down).
"""

import logging
import threading
from dataclasses import dataclass, replace

import numpy as np

from planartrack.tracking.frame_accessor import TrackerFrameAccessor
from planartrack.tracking.marker import ChannelMask, SampleSource
from planartrack.tracking.region import (
    Termination,
    TrackRegionOptions,
    TrackRegionResult,
    track_region,
)

logger = logging.getLogger(__name__)


@dataclass
class EngineMarker:
    """
    A marker sample as seen by the alignment engine.

    Attributes:
        track: Index of the marker in the session
        frame: Frame of this sample
        reference_frame: Frame whose pattern is searched for
        source: MANUAL for user keyframes, TRACKED otherwise
        center: Centre in image coordinates
        patch: (4, 2) pattern quad (tl, tr, br, bl) in image coordinates
        search_min: Top-left corner of the search region
        search_max: Bottom-right corner of the search region
        channels: Channel mask used to sample the frames
    """
    track: int
    frame: int
    reference_frame: int
    source: SampleSource
    center: np.ndarray
    patch: np.ndarray
    search_min: np.ndarray
    search_max: np.ndarray
    channels: ChannelMask = (True, True, True)

    def pattern_points(self) -> np.ndarray:
        """Quad corners followed by the centre, shape (5, 2)."""
        return np.vstack([self.patch, self.center[None, :]])

    def search_region(self) -> tuple[float, float, float, float]:
        return (float(self.search_min[0]), float(self.search_min[1]),
                float(self.search_max[0]), float(self.search_max[1]))


class AutoTrack:
    """
    Mutex-protected collection of engine markers bound to one frame accessor.

    Example:
        >>> autotrack = AutoTrack(accessor)
        >>> autotrack.add_marker(reference)
        >>> ok, result, tracked = autotrack.track_marker(target, options)
    """

    def __init__(self, accessor: TrackerFrameAccessor):
        self.accessor = accessor
        self._markers: dict[tuple[int, int], EngineMarker] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._markers)

    def add_marker(self, marker: EngineMarker) -> None:
        """Insert or replace the sample of (track, frame)."""
        with self._lock:
            self._markers[(marker.track, marker.frame)] = marker

    def get_marker(self, track: int, frame: int) -> EngineMarker | None:
        with self._lock:
            return self._markers.get((track, int(frame)))

    def markers_for_track(self, track: int) -> list[EngineMarker]:
        with self._lock:
            found = [m for (t, _), m in self._markers.items() if t == track]
        return sorted(found, key=lambda m: m.frame)

    def track_marker(
        self,
        marker: EngineMarker,
        options: TrackRegionOptions,
    ) -> tuple[bool, TrackRegionResult, EngineMarker]:
        """
        Align `marker` against its reference sample.

        The reference sample must have been added beforehand. On success
        the returned marker holds the aligned centre and quad; its search
        region is moved by the centre displacement.

        Returns:
            (ok, result, tracked marker); the input marker is not modified
        """
        reference = self.get_marker(marker.track, marker.reference_frame)
        if reference is None:
            logger.debug("No reference sample for track %d at frame %d",
                         marker.track, marker.reference_frame)
            return False, TrackRegionResult(Termination.SOURCE_OUT_OF_BOUNDS), marker

        image1 = self.accessor.get_image(reference.frame, marker.channels, options.sigma)
        image2 = self.accessor.get_image(marker.frame, marker.channels, options.sigma)

        result = track_region(
            image1, image2,
            reference.pattern_points(), marker.pattern_points(),
            marker.search_region(), options,
        )
        if result.points is None or not result.is_usable():
            return False, result, marker

        center = result.points[4].copy()
        delta = center - marker.center
        tracked = replace(
            marker,
            source=SampleSource.TRACKED,
            center=center,
            patch=result.points[:4].copy(),
            search_min=marker.search_min + delta,
            search_max=marker.search_max + delta,
        )
        return True, result, tracked
