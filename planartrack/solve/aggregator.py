"""
Solve tracked markers into transform or corner-pin curves.

A solve computes one model per keyframe on a thread pool, drops the
keyframes whose fit failed, smooths the rest in time order and replaces
the destination curves in a single write. Transform and corner-pin
solves have independent slots; a new request for a slot supersedes the
one in flight, which then finishes without writing.

Example:
    >>> aggregator = SolveAggregator(markers, source)
    >>> task = aggregator.solve_transform(0, range(0, 50))
    >>> task.result()
    <SolveState.FINISHED: 'finished'>
    >>> tx, ty = aggregator.transform_params.translate.get_values_at_time(10)
"""

import logging
import os
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable

import numpy as np

from planartrack.core.base import ErrorSink, FrameSource, LoggingErrorSink, NullProgress, ProgressSink
from planartrack.core.config import MotionType, RobustSettings, TrackerSettings, TransformType
from planartrack.core.curve import Param
from planartrack.core.errors import ConfigurationError, RobustFitError, SolveError
from planartrack.geometry.kernels import CLOSED_FORM, apply_homography
from planartrack.geometry.prosac import (
    compute_homography_from_n_points,
    compute_similarity_from_n_points,
    compute_translation_from_n_points,
)
from planartrack.solve.extract import extract_sorted_points, windowed_smooth
from planartrack.tracking.marker import Marker

logger = logging.getLogger(__name__)


@dataclass
class SolveRequest:
    """Snapshot of the inputs of one solve."""
    ref_time: int
    keyframes: list[int]
    jitter_period: int
    jitter_add: bool
    markers: list[Marker]
    invert: bool = False


@dataclass
class TransformData:
    """Similarity (or translation) solved at one time."""
    time: int
    valid: bool = True
    translation: tuple[float, float] = (0.0, 0.0)
    rotation: float = 0.0
    scale: float = 1.0
    has_rotation_and_scale: bool = False


@dataclass
class CornerPinData:
    """Homography solved at one time; `nb_enabled_points` is the tier used (1..4)."""
    time: int
    valid: bool = True
    h: np.ndarray = field(default_factory=lambda: np.eye(3))
    nb_enabled_points: int = 0


class TransformParams:
    """Destination curves of a transform solve."""

    def __init__(self):
        self.translate = Param("translate", 2)
        self.rotate = Param("rotate", 1)
        self.scale = Param("scale", 2, (1.0, 1.0))
        self.center = Param("center", 2)
        self.invert = False
        self.revision = 0

    def reset_animation(self) -> None:
        for param in (self.translate, self.rotate, self.scale, self.center):
            param.remove_animation()


class CornerPinParams:
    """Destination curves of a corner-pin solve: four from/to points."""

    def __init__(self):
        self.from_points = [Param(f"from{i + 1}", 2) for i in range(4)]
        self.to_points = [Param(f"to{i + 1}", 2) for i in range(4)]
        self.enabled = [Param(f"enable{i + 1}", 1, (1.0,)) for i in range(4)]
        self.invert = False
        self.revision = 0

    def reset_animation(self) -> None:
        for param in (*self.from_points, *self.to_points, *self.enabled):
            param.remove_animation()


def _enabled_markers(markers: list[Marker], time: int) -> list[Marker]:
    return [m for m in markers if m.is_enabled(time)]


def compute_transform_at_time(
    ref_time: int,
    time: int,
    markers: list[Marker],
    source: FrameSource,
    jitter_period: int = 0,
    jitter_add: bool = False,
    robust: RobustSettings | None = None,
) -> TransformData:
    """
    Solve the transform from `ref_time` to `time`.

    One enabled marker gives a robust translation, more give a robust
    similarity. A fit failure yields an invalid TransformData.
    """
    data = TransformData(time=int(time))
    x1, x2 = extract_sorted_points(ref_time, time, _enabled_markers(markers, time),
                                   jitter_period, jitter_add)
    if len(x1) == 0:
        data.valid = False
        return data

    if ref_time == time:
        data.has_rotation_and_scale = len(x1) > 1
        return data

    rod1 = source.format_rect(ref_time)
    rod2 = source.format_rect(time)
    sizes = (rod1.width, rod1.height, rod2.width, rod2.height)
    try:
        if len(x1) == 1:
            data.translation = compute_translation_from_n_points(x1, x2, *sizes, settings=robust)
        else:
            data.has_rotation_and_scale = True
            tx, ty, rotation, scale = compute_similarity_from_n_points(x1, x2, *sizes, settings=robust)
            data.translation = (tx, ty)
            data.rotation = rotation
            data.scale = scale
    except (RobustFitError, np.linalg.LinAlgError) as exc:
        logger.debug("Transform solve failed at %d: %s", time, exc)
        data.valid = False
    return data


def compute_corner_pin_at_time(
    ref_time: int,
    time: int,
    markers: list[Marker],
    source: FrameSource,
    jitter_period: int = 0,
    jitter_add: bool = False,
    robust: RobustSettings | None = None,
) -> CornerPinData:
    """
    Solve the corner-pin homography from `ref_time` to `time`.

    One, two and three enabled markers use the exact translation,
    similarity and affine solvers; four or more use a robust homography.
    """
    data = CornerPinData(time=int(time))
    x1, x2 = extract_sorted_points(ref_time, time, _enabled_markers(markers, time),
                                   jitter_period, jitter_add)
    n = len(x1)
    if n == 0:
        data.valid = False
        return data

    if ref_time == time:
        data.nb_enabled_points = 4
        return data

    if n in CLOSED_FORM:
        h = CLOSED_FORM[n](x1, x2)
        if h is None:
            data.valid = False
            return data
        data.h = h
        data.nb_enabled_points = n
        return data

    rod1 = source.format_rect(ref_time)
    rod2 = source.format_rect(time)
    try:
        data.h = compute_homography_from_n_points(
            x1, x2, rod1.width, rod1.height, rod2.width, rod2.height, settings=robust
        )
        data.nb_enabled_points = 4
    except (RobustFitError, np.linalg.LinAlgError) as exc:
        logger.debug("Corner pin solve failed at %d: %s", time, exc)
        data.valid = False
    return data


class SolveState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"


class SolveTask:
    """
    Handle of one in-flight solve.

    Callbacks registered with `add_done_callback` run once the task has
    ended, on the thread that ended it.
    """

    def __init__(self, request: SolveRequest, slot: TransformType):
        self.request = request
        self.slot = slot
        self.state = SolveState.PENDING
        self.error: Exception | None = None
        self.results: list = []
        self._futures: list[Future] = []
        self._stop_state: SolveState | None = None
        self._callbacks: list[Callable[["SolveTask"], None]] = []
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._done_event = threading.Event()

    def __repr__(self) -> str:
        return f"SolveTask({self.slot.name}, ref={self.request.ref_time}, {self.state.value})"

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self._done_event.is_set()

    def cancel(self) -> None:
        """Stop the task; it ends CANCELLED and writes nothing."""
        self._stop(SolveState.CANCELLED)

    def supersede(self) -> None:
        """Stop the task because a newer request replaced it; it ends SUPERSEDED."""
        self._stop(SolveState.SUPERSEDED)

    def _stop(self, state: SolveState) -> None:
        with self._lock:
            if self.done or self._cancel_event.is_set():
                return
            self._stop_state = state
            self._cancel_event.set()
            futures = list(self._futures)
        for future in futures:
            future.cancel()

    def _attach(self, futures: list[Future]) -> None:
        with self._lock:
            self._futures = futures
            stopped = self._cancel_event.is_set()
        if stopped:
            for future in futures:
                future.cancel()

    def _release(self) -> None:
        with self._lock:
            self._futures = []

    def _finish(self, state: SolveState, error: Exception | None = None) -> None:
        with self._lock:
            self.state = state
            self.error = error
            callbacks = list(self._callbacks)
            self._callbacks.clear()
            self._done_event.set()
        for callback in callbacks:
            callback(self)

    def add_done_callback(self, fn: Callable[["SolveTask"], None]) -> None:
        with self._lock:
            if not self.done:
                self._callbacks.append(fn)
                return
        fn(self)

    def wait(self, timeout: float | None = None) -> SolveState:
        self._done_event.wait(timeout)
        return self.state

    def result(self, timeout: float | None = None) -> SolveState:
        """
        Wait for the task and return its final state.

        Raises:
            TimeoutError: If the task is still running after `timeout`
            SolveError: If every keyframe failed
        """
        if not self._done_event.wait(timeout):
            raise TimeoutError(f"{self!r} still running")
        if self.error is not None:
            raise self.error
        return self.state


def _safe_compute(compute: Callable, request: SolveRequest, time: int, source, robust):
    """Work unit: one keyframe. Unexpected errors become an invalid result."""
    try:
        return compute(request.ref_time, time, request.markers, source,
                       request.jitter_period, request.jitter_add, robust)
    except Exception:
        logger.exception("Solve crashed at frame %d", time)
        return None


class SolveAggregator:
    """
    Runs transform and corner-pin solves over a marker set.

    Args:
        markers: Markers whose centres are solved
        source: Frame source, used for the format rectangle of each time
        settings: Smoothing windows and robust settings
        progress: Progress sink
        error_sink: User-facing error sink
        set_solver_params_enabled: Host hook that locks the solver controls
            while a solve is running
    """

    def __init__(
        self,
        markers: list[Marker],
        source: FrameSource,
        settings: TrackerSettings | None = None,
        progress: ProgressSink | None = None,
        error_sink: ErrorSink | None = None,
        set_solver_params_enabled: Callable[[bool], None] | None = None,
    ):
        self.markers = list(markers)
        self.source = source
        self.settings = settings or TrackerSettings()
        self.progress = progress or NullProgress()
        self.error_sink = error_sink or LoggingErrorSink()
        self.set_solver_params_enabled = set_solver_params_enabled or (lambda enabled: None)

        self.transform_params = TransformParams()
        self.corner_pin_params = CornerPinParams()

        self._tasks: dict[TransformType, SolveTask] = {}
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        workers = self.settings.max_workers or os.cpu_count() or 1
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="solve")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def close(self) -> None:
        """Cancel running solves and shut the worker pool down."""
        with self._lock:
            tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        self._executor.shutdown(wait=True, cancel_futures=True)

    def current_task(self, slot: TransformType) -> SolveTask | None:
        with self._lock:
            return self._tasks.get(slot)

    def _is_current(self, task: SolveTask) -> bool:
        with self._lock:
            return self._tasks.get(task.slot) is task

    def _keyframes(self, keyframes: Iterable[int] | None, markers: list[Marker]) -> list[int]:
        if keyframes is None:
            found = set()
            for m in markers:
                found.update(m.center_keyframes())
            keyframes = found
        return sorted({int(k) for k in keyframes})

    # -- public operations --------------------------------------------------

    def solve_transform(
        self,
        ref_time: int,
        keyframes: Iterable[int] | None = None,
        jitter_period: int = 0,
        jitter_add: bool = False,
        invert: bool = False,
    ) -> SolveTask:
        """
        Solve translate/rotate/scale curves relative to `ref_time`.

        Args:
            ref_time: Reference time (identity transform)
            keyframes: Times to solve; defaults to every marker centre keyframe
            jitter_period: Point smoothing window, <= 1 to disable
            jitter_add: Amplify jitter instead of removing it
            invert: Value of the output invert flag

        Returns:
            The SolveTask; any in-flight transform solve is superseded

        Raises:
            ConfigurationError: No markers or no keyframes
        """
        return self._launch(TransformType.TRANSFORM, ref_time, keyframes,
                            jitter_period, jitter_add, invert)

    def solve_corner_pin(
        self,
        ref_time: int,
        keyframes: Iterable[int] | None = None,
        jitter_period: int = 0,
        jitter_add: bool = False,
        invert: bool = False,
    ) -> SolveTask:
        """Solve the four corner-pin "to" curves relative to `ref_time`. See solve_transform."""
        return self._launch(TransformType.CORNER_PIN, ref_time, keyframes,
                            jitter_period, jitter_add, invert)

    def solve_from_settings(self, keyframes: Iterable[int] | None = None) -> SolveTask | None:
        """
        Solve according to the motion and transform type of the settings.

        Returns:
            The SolveTask, or None when the motion type is NONE
        """
        settings = self.settings
        motion = settings.motion_type
        if motion == MotionType.NONE:
            return None

        jitter_period = 0
        jitter_add = False
        if motion in (MotionType.REMOVE_JITTER, MotionType.ADD_JITTER):
            jitter_period = settings.jitter_period
            jitter_add = motion == MotionType.ADD_JITTER

        return self._launch(settings.transform_type, settings.reference_frame, keyframes,
                            jitter_period, jitter_add, motion == MotionType.STABILIZE)

    # -- internals ----------------------------------------------------------

    def _launch(self, slot, ref_time, keyframes, jitter_period, jitter_add, invert) -> SolveTask:
        markers = list(self.markers)
        if not markers:
            raise ConfigurationError("No markers to solve from")
        keys = self._keyframes(keyframes, markers)
        if not keys:
            raise ConfigurationError("No keyframes to solve")

        request = SolveRequest(int(ref_time), keys, int(jitter_period), bool(jitter_add), markers, invert)
        task = SolveTask(request, slot)

        with self._lock:
            previous = self._tasks.get(slot)
            self._tasks[slot] = task
        if previous is not None and not previous.done:
            logger.info("Superseding %r", previous)
            previous.supersede()

        self.set_solver_params_enabled(False)
        self.progress.progress_start(len(keys))
        logger.info("Solving %s: ref %d, %d keyframes, jitter %d%s",
                    slot.name, request.ref_time, len(keys), request.jitter_period,
                    " (add)" if request.jitter_add else "")

        if slot == TransformType.TRANSFORM:
            compute, write = compute_transform_at_time, self._write_transform
        else:
            compute, write = compute_corner_pin_at_time, self._write_corner_pin

        thread = threading.Thread(target=self._run, args=(task, compute, write),
                                  name=f"solve-{slot.name.lower()}", daemon=True)
        thread.start()
        return task

    def _run(self, task: SolveTask, compute: Callable, write: Callable) -> None:
        request = task.request
        state = SolveState.FAILED
        error = None
        try:
            task.state = SolveState.RUNNING
            robust = self.settings.robust
            futures = [
                self._executor.submit(_safe_compute, compute, request, t, self.source, robust)
                for t in request.keyframes
            ]
            task._attach(futures)

            results = []
            for i, future in enumerate(futures):
                if task.cancelled:
                    break
                try:
                    data = future.result()
                except CancelledError:
                    break
                if data is not None and data.valid:
                    results.append(data)
                if self._is_current(task):
                    self.progress.progress_update((i + 1) / len(futures))
            task.results = results

            if task.cancelled:
                state = task._stop_state
            elif not results:
                error = SolveError(
                    f"Solve failed for all {len(request.keyframes)} keyframes; curves left unchanged"
                )
                self.error_sink.report_error(str(error))
            else:
                with self._write_lock:
                    if self._is_current(task) and not task.cancelled:
                        write(request, results)
                        state = SolveState.FINISHED
                    else:
                        state = task._stop_state or SolveState.SUPERSEDED
        except Exception as exc:
            logger.exception("Solve %r aborted", task)
            error = exc
            self.error_sink.report_error(f"Solve aborted: {exc}")
        finally:
            self._end_solve(task)
            task._finish(state, error)
            logger.info("%r ended", task)

    def _end_solve(self, task: SolveTask) -> None:
        """Release the task's handles; unlock the controls if no newer solve took over."""
        task._release()
        with self._lock:
            current = self._tasks.get(task.slot) is task
            if current:
                del self._tasks[task.slot]
            busy = bool(self._tasks)
        if current:
            task.request = SolveRequest(task.request.ref_time, [], task.request.jitter_period,
                                        task.request.jitter_add, [], task.request.invert)
            if not busy:
                self.set_solver_params_enabled(True)
            self.progress.progress_end()

    def _write_transform(self, request: SolveRequest, results: list[TransformData]) -> None:
        params = self.transform_params
        smooth_t, smooth_r, smooth_s = self.settings.smooth_transform
        params.reset_animation()

        translations = windowed_smooth([d.translation for d in results], smooth_t)
        for data, (tx, ty) in zip(results, translations):
            params.translate.set_values_at_time(data.time, float(tx), float(ty))

        with_rs = [d for d in results if d.has_rotation_and_scale]
        if with_rs:
            rotations = windowed_smooth([d.rotation for d in with_rs], smooth_r)
            scales = windowed_smooth([d.scale for d in with_rs], smooth_s)
            for data, rotation, scale in zip(with_rs, rotations, scales):
                params.rotate.set_value_at_time(data.time, float(rotation))
                params.scale.set_values_at_time(data.time, float(scale), float(scale))

        params.invert = request.invert
        params.revision += 1
        logger.info("Transform curves written for %d keyframes", len(results))

    def _write_corner_pin(self, request: SolveRequest, results: list[CornerPinData]) -> None:
        params = self.corner_pin_params
        params.reset_animation()

        from_points = self.source.format_rect(request.ref_time).corners()
        for param_from, param_to, point in zip(params.from_points, params.to_points, from_points):
            param_from.set_default(*point)
            param_to.set_default(*point)

        to = np.array([apply_homography(d.h, from_points).ravel() for d in results])
        finite = np.all(np.isfinite(to), axis=1)
        if not np.all(finite):
            skipped = [d.time for d, ok in zip(results, finite) if not ok]
            logger.warning("Corner pin sends a corner to infinity at frames %s; skipped", skipped)
            results = [d for d, ok in zip(results, finite) if ok]
            to = to[finite]
        to = windowed_smooth(to, self.settings.smooth_corner_pin)
        for data, row in zip(results, to):
            for c, param in enumerate(params.to_points):
                param.set_values_at_time(data.time, float(row[2 * c]), float(row[2 * c + 1]))

        params.invert = request.invert
        params.revision += 1
        logger.info("Corner pin curves written for %d keyframes", len(results))
