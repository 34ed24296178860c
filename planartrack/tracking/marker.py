"""
Track markers.

A Marker is a tracked patch: a centre point, an offset, a search window
and a four-corner pattern quad (both relative to centre + offset), an
error curve and an enabled curve. Every field is keyframed over time.

Keyframes set by the user are authoritative (MANUAL); keyframes written
by the tracker are TRACKED. Coordinates are canonical: x to the right,
y up, so the pattern's top corners have positive y offsets.
"""

import threading
from enum import Enum, IntEnum

from planartrack.core.curve import Param

ChannelMask = tuple[bool, bool, bool]

Point = tuple[float, float]


class MotionModel(IntEnum):
    """Deformation allowed when aligning the pattern between frames."""
    TRANSLATION = 0
    TRANSLATION_ROTATION = 1
    TRANSLATION_SCALE = 2
    TRANSLATION_ROTATION_SCALE = 3
    AFFINE = 4
    HOMOGRAPHY = 5


class ReferenceFramePolicy(IntEnum):
    """How the frame whose pattern is searched for is chosen."""
    PREVIOUS_FRAME = 0
    NEAREST_KEYFRAME = 1


class SampleSource(Enum):
    """Origin of a marker sample."""
    MANUAL = "manual"
    TRACKED = "tracked"


class Marker:
    """
    A tracked point/patch with pose, search window and error over time.

    Example:
        >>> m = Marker("track1", center=(100, 100))
        >>> m.set_user_keyframe(0)
        >>> m.sample_source(0)
        <SampleSource.MANUAL: 'manual'>
    """

    def __init__(
        self,
        name: str,
        center: Point = (0.0, 0.0),
        pattern_half_size: Point = (15.0, 15.0),
        search_half_size: Point = (35.0, 35.0),
        motion_model: MotionModel = MotionModel.TRANSLATION,
        reference_policy: ReferenceFramePolicy = ReferenceFramePolicy.PREVIOUS_FRAME,
        channels: ChannelMask | None = None,
    ):
        """
        Initialize a marker with un-animated default values.

        Args:
            name: Marker name, used in logs and error messages
            center: Default centre position
            pattern_half_size: Half width/height of the default square pattern
            search_half_size: Half width/height of the default search window
            motion_model: Alignment model used when tracking this marker
            reference_policy: Reference frame selection policy
            channels: Optional (r, g, b) override of the session channel mask
        """
        self.name = name
        self.motion_model = MotionModel(motion_model)
        self.reference_policy = ReferenceFramePolicy(reference_policy)
        self.channels = channels

        px, py = pattern_half_size
        sx, sy = search_half_size

        self.center = Param("center", 2, tuple(center))
        self.offset = Param("offset", 2)
        self.search_btm_left = Param("searchBoxBtmLeft", 2, (-sx, -sy))
        self.search_top_right = Param("searchBoxTopRight", 2, (sx, sy))
        self.pattern_top_left = Param("patternTopLeft", 2, (-px, py))
        self.pattern_top_right = Param("patternTopRight", 2, (px, py))
        self.pattern_btm_right = Param("patternBtmRight", 2, (px, -py))
        self.pattern_btm_left = Param("patternBtmLeft", 2, (-px, -py))
        self.error = Param("error", 1)
        self.enabled = Param("enabled", 1, (1.0,))

        self._user_keyframes: set[int] = set()
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Marker({self.name!r}, keys={len(self._user_keyframes)})"

    @property
    def pattern_params(self) -> tuple[Param, Param, Param, Param]:
        """Pattern corners in top-left, top-right, bottom-right, bottom-left order."""
        return (self.pattern_top_left, self.pattern_top_right,
                self.pattern_btm_right, self.pattern_btm_left)

    # -- keyframes ----------------------------------------------------------

    def set_user_keyframe(self, time: int, center: Point | None = None) -> None:
        """
        Make `time` an authoritative keyframe.

        The current pose at `time` (or the given centre) is keyed on every
        pose field and the error is set to 0.
        """
        time = int(time)
        cx, cy = center if center is not None else self.center.get_values_at_time(time)
        self.center.set_values_at_time(time, cx, cy)
        for param in (self.offset, self.search_btm_left, self.search_top_right, *self.pattern_params):
            param.set_values_at_time(time, *param.get_values_at_time(time))
        self.error.set_value_at_time(time, 0.0)
        with self._lock:
            self._user_keyframes.add(time)

    def mark_user_keyframes(self, times) -> None:
        """Flag already keyed times as user keyframes without touching the curves."""
        with self._lock:
            self._user_keyframes.update(int(t) for t in times)

    def remove_user_keyframe(self, time: int) -> None:
        with self._lock:
            self._user_keyframes.discard(int(time))

    def is_user_keyframe(self, time: int) -> bool:
        with self._lock:
            return int(time) in self._user_keyframes

    def user_keyframes(self) -> list[int]:
        with self._lock:
            return sorted(self._user_keyframes)

    def center_keyframes(self) -> list[int]:
        """Every time with a centre sample, user or tracked."""
        return [int(t) for t in self.center.keyframe_times()]

    def has_sample(self, time: int) -> bool:
        return self.center.get_keyframe_index(time) >= 0

    def sample_source(self, time: int) -> SampleSource | None:
        """Classify the sample at `time`, or None if there is no sample."""
        if self.is_user_keyframe(time):
            return SampleSource.MANUAL
        if self.has_sample(time):
            return SampleSource.TRACKED
        return None

    def clear_tracked(self) -> None:
        """Remove every tracked sample, keeping user keyframes."""
        keep = set(self.user_keyframes())
        params = (self.center, self.offset, self.search_btm_left, self.search_top_right,
                  *self.pattern_params, self.error)
        for param in params:
            for curve in param.curves:
                for t in curve.keyframe_times():
                    if int(t) not in keep:
                        curve.remove_keyframe(t)

    # -- per-time accessors -------------------------------------------------

    def is_enabled(self, time: float) -> bool:
        return self.enabled.get_value_at_time(time) >= 0.5

    def set_enabled(self, time: int, enabled: bool) -> None:
        self.enabled.set_value_at_time(time, 1.0 if enabled else 0.0)

    def get_center(self, time: float) -> Point:
        return self.center.get_values_at_time(time)

    def get_offset(self, time: float) -> Point:
        return self.offset.get_values_at_time(time)

    def get_pattern_corners(self, time: float) -> list[Point]:
        return [p.get_values_at_time(time) for p in self.pattern_params]

    def get_search_window(self, time: float) -> tuple[Point, Point]:
        """Search window (bottom-left, top-right), relative to centre + offset."""
        return (self.search_btm_left.get_values_at_time(time),
                self.search_top_right.get_values_at_time(time))

    def get_error(self, time: float) -> float:
        return self.error.get_value_at_time(time)

    def reference_frame(self, time: int, frame_step: int) -> int:
        """
        Frame whose pattern is searched for when tracking to `time`.

        PREVIOUS_FRAME always uses time - frame_step. NEAREST_KEYFRAME uses
        the closest user keyframe on the already-tracked side of `time`,
        falling back to time - frame_step when there is none.
        """
        time = int(time)
        previous = time - frame_step
        if self.reference_policy == ReferenceFramePolicy.PREVIOUS_FRAME:
            return previous

        direction = 1 if frame_step > 0 else -1
        candidates = [k for k in self.user_keyframes() if (time - k) * direction > 0]
        if not candidates:
            return previous
        return min(candidates, key=lambda k: abs(time - k))

    def set_tracked_pose(
        self,
        time: int,
        center: Point,
        pattern_corners: list[Point],
        error: float,
        search_window: tuple[Point, Point] | None = None,
    ) -> None:
        """
        Key a tracked pose at `time`.

        Args:
            center: New centre
            pattern_corners: Corners relative to centre + offset (tl, tr, br, bl)
            error: 1 - correlation of the alignment
            search_window: Optional (bottom-left, top-right) relative to centre + offset
        """
        time = int(time)
        self.error.set_value_at_time(time, error)
        self.center.set_values_at_time(time, *center)
        for param, corner in zip(self.pattern_params, pattern_corners):
            param.set_values_at_time(time, *corner)
        if search_window is None:
            return
        btm_left, top_right = search_window
        self.search_btm_left.set_values_at_time(time, *btm_left)
        self.search_top_right.set_values_at_time(time, *top_right)
