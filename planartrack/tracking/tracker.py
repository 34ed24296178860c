"""
Single-marker, single-frame tracking step.

PatchTracker converts a Marker sample to an engine marker (inverting y
against the format height), aligns it against its reference sample and
writes the result back as keyframes on the Marker. Failures are returned
as TrackStepResult values; nothing is raised for an unusable alignment.
"""

import logging
import math
import threading
from dataclasses import dataclass

import numpy as np

from planartrack.tracking import region
from planartrack.tracking.autotrack import AutoTrack, EngineMarker
from planartrack.tracking.frame_accessor import TrackerFrameAccessor, invert_y
from planartrack.tracking.marker import ChannelMask, Marker, SampleSource
from planartrack.tracking.region import Termination, TrackRegionOptions, TrackRegionResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepContext:
    """Identifies the step running on the current worker thread."""
    session_id: int
    marker: str
    frame: int


_step_context = threading.local()


def current_step() -> StepContext | None:
    """Step context of the calling thread, or None outside a tracking step."""
    return getattr(_step_context, "step", None)


def _enter_step(context: StepContext) -> None:
    _step_context.step = context


def release_step_state() -> None:
    """Clear the step context and the engine scratch state of this thread."""
    if hasattr(_step_context, "step"):
        del _step_context.step
    region.release_thread_state()


class StepContextFilter(logging.Filter):
    """Adds session_id, marker and frame of the current step to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        step = current_step()
        record.session_id = step.session_id if step else "-"
        record.marker = step.marker if step else "-"
        record.frame = step.frame if step else "-"
        return True


@dataclass
class TrackedMarker:
    """A marker of the session with its alignment options."""
    marker: Marker
    options: TrackRegionOptions


@dataclass
class TrackArgs:
    """
    Everything one tracking session shares between its steps.

    Attributes:
        start: First frame; never aligned
        end: Last frame, inclusive
        step: Frame step, negative to track backwards
        autotrack: Engine marker arena
        accessor: Session frame accessor
        tracks: Markers and their options, indexed by track number
        format_height: Height used for y inversion
        channels: Session channel mask
        session_id: Id of the owning session in the scheduler registry
    """
    start: int
    end: int
    step: int
    autotrack: AutoTrack
    accessor: TrackerFrameAccessor
    tracks: list[TrackedMarker]
    format_height: float
    channels: ChannelMask = (True, True, True)
    session_id: int = 0

    @property
    def num_tracks(self) -> int:
        return len(self.tracks)

    def frames(self) -> list[int]:
        """Frames stepped through after `start`, up to `end` inclusive."""
        if self.step == 0:
            return []
        out = []
        t = self.start + self.step
        while (t <= self.end) if self.step > 0 else (t >= self.end):
            out.append(t)
            t += self.step
        return out


@dataclass
class TrackStepResult:
    """Outcome of tracking one marker to one frame."""
    track: int
    marker: str
    frame: int
    ok: bool
    source: SampleSource | None = None
    termination: Termination | None = None
    correlation: float = math.nan
    message: str = ""


def error_from_correlation(correlation: float) -> float:
    """
    Stored error of an alignment: 1 - correlation.

    A NaN correlation (flat patch) counts as a perfect match, so the
    error is 0 instead of NaN.
    """
    if math.isnan(correlation):
        correlation = 1.0
    return 1.0 - correlation


def to_engine_marker(
    marker: Marker,
    track: int,
    time: int,
    frame_step: int,
    format_height: float,
    channels: ChannelMask,
    is_reference: bool,
) -> EngineMarker:
    """
    Convert the Marker sample at `time` to an engine marker.

    Centre, offset and pattern are sampled at `time`. The search window
    is sampled at `time` for a reference sample and at the reference
    frame for a sample about to be tracked; in both cases it is placed
    around the centre + offset at `time`.
    """
    reference_frame = marker.reference_frame(time, frame_step)
    source = SampleSource.MANUAL if marker.is_user_keyframe(time) else SampleSource.TRACKED

    search_time = time if is_reference else reference_frame
    btm_left, top_right = marker.get_search_window(search_time)

    cx, cy = marker.get_center(time)
    ox, oy = marker.get_offset(time)
    px, py = cx + ox, cy + oy

    patch = np.array(
        [(x + px, invert_y(y + py, format_height)) for x, y in marker.get_pattern_corners(time)],
        dtype=np.float64,
    )
    return EngineMarker(
        track=track,
        frame=int(time),
        reference_frame=int(reference_frame),
        source=source,
        center=np.array([cx, invert_y(cy, format_height)], dtype=np.float64),
        patch=patch,
        search_min=np.array([btm_left[0] + px, invert_y(top_right[1] + py, format_height)]),
        search_max=np.array([top_right[0] + px, invert_y(btm_left[1] + py, format_height)]),
        channels=tuple(marker.channels) if marker.channels is not None else tuple(channels),
    )


def write_back(
    engine_marker: EngineMarker,
    format_height: float,
    result: TrackRegionResult | None,
    marker: Marker,
) -> None:
    """
    Key the engine marker's pose on `marker` at its frame.

    With no result (user keyframe) the error is 0 and the search window
    is left untouched; otherwise the error is 1 - correlation and the
    moved search window is keyed too.
    """
    time = engine_marker.frame
    error = 0.0 if result is None else error_from_correlation(result.correlation)

    cx = float(engine_marker.center[0])
    cy = invert_y(float(engine_marker.center[1]), format_height)
    ox, oy = marker.get_offset(time)
    px, py = cx + ox, cy + oy

    corners = [(float(x) - px, invert_y(float(y), format_height) - py) for x, y in engine_marker.patch]

    search_window = None
    if result is not None:
        smin, smax = engine_marker.search_min, engine_marker.search_max
        search_window = (
            (float(smin[0]) - px, invert_y(float(smax[1]), format_height) - py),
            (float(smax[0]) - px, invert_y(float(smin[1]), format_height) - py),
        )

    marker.set_tracked_pose(time, (cx, cy), corners, error, search_window)


class PatchTracker:
    """
    Runs tracking steps for the markers of one session.

    Example:
        >>> tracker = PatchTracker(args)
        >>> result = tracker.track_step(0, 11)
        >>> result.ok
        True
    """

    def __init__(self, args: TrackArgs):
        self.args = args

    def _engine_marker(self, index: int, time: int, is_reference: bool) -> EngineMarker:
        args = self.args
        return to_engine_marker(
            args.tracks[index].marker, index, time, args.step,
            args.format_height, args.channels, is_reference,
        )

    def seed(self) -> int:
        """
        Register every existing sample with the engine, except the start frame.

        Returns:
            Number of engine markers added
        """
        args = self.args
        added = 0
        for index, tracked in enumerate(args.tracks):
            marker = tracked.marker
            user_keys = set(marker.user_keyframes())
            times = sorted(user_keys | set(marker.center_keyframes()))
            for t in times:
                if t == args.start:
                    continue
                args.autotrack.add_marker(self._engine_marker(index, t, is_reference=True))
                added += 1
        logger.debug("Seeded %d engine markers for %d tracks", added, args.num_tracks)
        return added

    def track_step(self, index: int, time: int) -> TrackStepResult:
        """
        Track marker `index` to frame `time`.

        User keyframes are not aligned: their pose is re-asserted with
        error 0. The start frame is only registered as a reference.

        Returns:
            TrackStepResult; `ok` is False when the alignment was unusable
        """
        args = self.args
        marker = args.tracks[index].marker
        _enter_step(StepContext(args.session_id, marker.name, int(time)))
        try:
            if time == args.start:
                start_marker = self._engine_marker(index, time, is_reference=True)
                args.autotrack.add_marker(start_marker)
                if start_marker.source == SampleSource.MANUAL:
                    write_back(start_marker, args.format_height, None, marker)
                    return TrackStepResult(index, marker.name, time, True, SampleSource.MANUAL, correlation=1.0)
                return TrackStepResult(index, marker.name, time, True)

            engine_marker = self._engine_marker(index, time, is_reference=False)
            args.autotrack.add_marker(engine_marker)

            if engine_marker.source == SampleSource.MANUAL:
                logger.debug("%s: frame %d is a keyframe, not tracked", marker.name, time)
                write_back(engine_marker, args.format_height, None, marker)
                return TrackStepResult(index, marker.name, time, True, SampleSource.MANUAL, correlation=1.0)

            reference = self._engine_marker(index, engine_marker.reference_frame, is_reference=True)
            args.autotrack.add_marker(reference)

            ok, result, tracked = args.autotrack.track_marker(engine_marker, args.tracks[index].options)
            if not ok:
                message = (f"Tracking failed for {marker.name} at frame {time} "
                           f"({result.termination.name.lower()})")
                logger.warning(message)
                return TrackStepResult(index, marker.name, time, False,
                                       termination=result.termination,
                                       correlation=result.correlation, message=message)

            write_back(tracked, args.format_height, result, marker)
            args.autotrack.add_marker(tracked)
            logger.debug("%s: frame %d tracked, correlation %.4f", marker.name, time, result.correlation)
            return TrackStepResult(index, marker.name, time, True, SampleSource.TRACKED,
                                   result.termination, result.correlation)
        finally:
            release_step_state()
