"""
Sequence tracking.

TrackScheduler runs one tracking session at a time on a background
thread. A session steps through the frame range one generation at a
time; within a generation every marker is tracked concurrently on a
thread pool, and the next generation starts only once the current one
has finished. Cancellation is checked between generations and before
each marker step.

Example:
    >>> scheduler = TrackScheduler(source, TrackerSettings())
    >>> session = scheduler.track_sequence(markers, 0, 50)
    >>> session.wait()
    <SessionState.COMPLETED: 'completed'>
"""

import itertools
import logging
import os
import threading
import weakref
from concurrent.futures import ThreadPoolExecutor
from enum import Enum

from planartrack.core.base import ErrorSink, FrameSource, LoggingErrorSink, NullProgress, ProgressSink
from planartrack.core.config import TrackerSettings
from planartrack.core.errors import ConfigurationError, TrackingBusyError
from planartrack.tracking.autotrack import AutoTrack
from planartrack.tracking.frame_accessor import TrackerFrameAccessor
from planartrack.tracking.marker import Marker, MotionModel
from planartrack.tracking.region import TrackRegionOptions
from planartrack.tracking.tracker import PatchTracker, TrackArgs, TrackedMarker, TrackStepResult

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Worker threads look sessions up by id; the registry never keeps one alive.
_sessions: "weakref.WeakValueDictionary[int, TrackingSession]" = weakref.WeakValueDictionary()
_session_ids = itertools.count(1)
_registry_lock = threading.Lock()


def lookup_session(session_id: int) -> "TrackingSession | None":
    """Return the live session with this id, or None once it is gone."""
    with _registry_lock:
        return _sessions.get(session_id)


def region_options(settings: TrackerSettings, mode: MotionModel) -> TrackRegionOptions:
    """Alignment options of a marker from the session settings."""
    return TrackRegionOptions(
        mode=MotionModel(mode),
        minimum_correlation=settings.minimum_correlation,
        max_iterations=settings.max_iterations,
        use_brute_initialization=settings.brute_force_pre_track,
        use_normalized_intensities=settings.normalize_intensities,
        sigma=settings.pre_blur_sigma,
    )


class TrackingSession(threading.Thread):
    """
    One track_sequence invocation running on its own thread.

    Attributes:
        session_id: Registry id
        state: Current SessionState
        results: Step results in generation order
        error: Unexpected exception that ended the session, if any
    """

    def __init__(
        self,
        args: TrackArgs,
        progress: ProgressSink,
        error_sink: ErrorSink,
        max_workers: int,
    ):
        with _registry_lock:
            session_id = next(_session_ids)
        super().__init__(daemon=True, name=f"TrackingSession-{session_id}")

        self.session_id = session_id
        args.session_id = session_id
        self.args = args
        self.progress = progress
        self.error_sink = error_sink
        self.max_workers = max_workers

        self.state = SessionState.IDLE
        self.results: list[TrackStepResult] = []
        self.error: Exception | None = None
        self._cancel_event = threading.Event()
        self._done_event = threading.Event()

        with _registry_lock:
            _sessions[session_id] = self

    @property
    def is_running(self) -> bool:
        return self.state == SessionState.RUNNING

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set() or self.progress.is_cancelled()

    @property
    def failures(self) -> list[TrackStepResult]:
        return [r for r in self.results if not r.ok]

    def cancel(self) -> None:
        """Request cancellation; already written keyframes are kept."""
        self._cancel_event.set()

    def wait(self, timeout: float | None = None) -> SessionState:
        """Block until the session ends (or the timeout elapses) and return its state."""
        self._done_event.wait(timeout)
        return self.state

    def start(self) -> None:
        self.state = SessionState.RUNNING
        super().start()

    def run(self) -> None:
        args = self.args
        tracker = PatchTracker(args)
        generations = [args.start] + args.frames()

        logger.info("Tracking session %d: %d markers, frames %d..%d step %d",
                    self.session_id, args.num_tracks, args.start, args.end, args.step)
        self.progress.progress_start(args.num_tracks)
        state = SessionState.COMPLETED
        try:
            tracker.seed()
            with ThreadPoolExecutor(max_workers=self.max_workers,
                                    thread_name_prefix=f"track-{self.session_id}") as pool:
                for i, time in enumerate(generations):
                    if self.cancel_requested:
                        state = SessionState.CANCELLED
                        break
                    futures = [
                        pool.submit(_run_step, self.session_id, tracker, index, time)
                        for index in range(args.num_tracks)
                    ]
                    for future in futures:
                        result = future.result()
                        if result is None:
                            state = SessionState.CANCELLED
                        else:
                            self.results.append(result)
                    self.progress.progress_update((i + 1) / len(generations))
        except Exception as exc:
            logger.exception("Tracking session %d aborted", self.session_id)
            self.error = exc
            state = SessionState.FAILED
            self.error_sink.report_error(f"Tracking aborted: {exc}")
        finally:
            args.accessor.release()
            self.state = state
            self.progress.progress_end()
            logger.info("Tracking session %d %s (%d failed steps)",
                        self.session_id, self.state.value, len(self.failures))
            self._done_event.set()


def _run_step(session_id: int, tracker: PatchTracker, index: int, time: int) -> TrackStepResult | None:
    """Work unit of the pool: one marker, one frame."""
    session = lookup_session(session_id)
    if session is None or session.cancel_requested:
        return None

    try:
        result = tracker.track_step(index, time)
    except Exception as exc:
        name = tracker.args.tracks[index].marker.name
        logger.exception("Tracking step crashed for %s at frame %d", name, time)
        result = TrackStepResult(index, name, time, False, message=f"{name} at frame {time}: {exc}")

    if not result.ok:
        session.error_sink.report_error(result.message)
    return result


class TrackScheduler:
    """
    Launches tracking sessions over a frame source.

    Only one session runs at a time; starting another while one is
    running raises TrackingBusyError.
    """

    def __init__(
        self,
        source: FrameSource,
        settings: TrackerSettings | None = None,
        progress: ProgressSink | None = None,
        error_sink: ErrorSink | None = None,
        format_height: float | None = None,
    ):
        if source is None:
            raise ConfigurationError("A frame source is required")
        self.source = source
        self.settings = settings or TrackerSettings()
        self.progress = progress or NullProgress()
        self.error_sink = error_sink or LoggingErrorSink()
        self.format_height = format_height
        self._session: TrackingSession | None = None
        self._lock = threading.Lock()

    @property
    def session(self) -> TrackingSession | None:
        return self._session

    @property
    def state(self) -> SessionState:
        session = self._session
        return session.state if session is not None else SessionState.IDLE

    def track_sequence(
        self,
        markers: list[Marker],
        start: int,
        end: int,
        frame_step: int = 1,
    ) -> TrackingSession:
        """
        Start tracking `markers` from `start` to `end` (inclusive).

        Args:
            markers: Markers to track, in track index order
            start: First frame; its samples are references only
            end: Last frame
            frame_step: Frame increment, negative to track backwards

        Returns:
            The running TrackingSession

        Raises:
            ConfigurationError: No markers, no enabled channel, bad step or settings
            TrackingBusyError: A session is already running
        """
        markers = list(markers)
        if not markers:
            raise ConfigurationError("No markers to track")
        if frame_step == 0:
            raise ConfigurationError("frame_step must not be 0")
        if (end - start) * frame_step < 0:
            raise ConfigurationError(
                f"frame_step {frame_step} does not lead from {start} to {end}"
            )
        settings = self.settings
        settings.validate()
        channels = settings.channels
        if not any(channels):
            raise ConfigurationError("At least one of the red, green, blue channels must be tracked")

        with self._lock:
            if self._session is not None and self._session.is_running:
                raise TrackingBusyError(
                    f"Tracking session {self._session.session_id} is still running"
                )

            height = self.format_height
            if height is None:
                height = self.source.format_rect(start).height
            accessor = TrackerFrameAccessor(self.source, channels, height)
            args = TrackArgs(
                start=int(start),
                end=int(end),
                step=int(frame_step),
                autotrack=AutoTrack(accessor),
                accessor=accessor,
                tracks=[TrackedMarker(m, region_options(settings, m.motion_model)) for m in markers],
                format_height=height,
                channels=channels,
            )
            max_workers = min(settings.max_workers or os.cpu_count() or 1, len(markers))
            session = TrackingSession(args, self.progress, self.error_sink, max_workers)
            self._session = session
            session.start()
        return session

    def cancel(self) -> None:
        """Cancel the running session, if any."""
        session = self._session
        if session is not None:
            session.cancel()

    def wait(self, timeout: float | None = None) -> SessionState:
        session = self._session
        if session is None:
            return SessionState.IDLE
        return session.wait(timeout)
