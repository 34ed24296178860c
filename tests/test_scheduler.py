"""
Tests for sequence tracking sessions.
"""

import threading

import pytest
import numpy as np

from tests.test_tracking import HEIGHT, WIDTH, blob_frame, moving_blob_source


class GatedSource:
    """Frame source whose pixel reads block until the gate opens."""

    def __init__(self, inner):
        self.inner = inner
        self.gate = threading.Event()

    def get_frame(self, time):
        self.gate.wait(10)
        return self.inner.get_frame(time)

    def format_rect(self, time):
        return self.inner.format_rect(time)


class RecordingProgress:
    def __init__(self):
        self.events = []

    def progress_start(self, total):
        self.events.append(("start", total))

    def progress_update(self, fraction):
        self.events.append(("update", fraction))

    def progress_end(self):
        self.events.append(("end", None))

    def is_cancelled(self):
        return False


class CancelAtEndProgress(RecordingProgress):
    """Requests cancellation once the last generation has finished."""

    def __init__(self):
        super().__init__()
        self.scheduler = None

    def progress_update(self, fraction):
        super().progress_update(fraction)
        if fraction >= 1.0:
            self.scheduler.cancel()


class FailingProgress(RecordingProgress):
    def progress_update(self, fraction):
        raise RuntimeError("progress display closed")


def _blob_marker(name="blob"):
    from planartrack.tracking import Marker

    marker = Marker(name, center=(100.0, 100.0))
    marker.set_user_keyframe(0)
    return marker


class TestTrackScheduler:
    """Tests for TrackScheduler."""

    def test_track_sequence(self):
        """Test a complete session over two markers."""
        from planartrack.tracking import TrackScheduler, SessionState, SampleSource

        markers = [_blob_marker("a"), _blob_marker("b")]
        progress = RecordingProgress()
        scheduler = TrackScheduler(moving_blob_source(), progress=progress)

        session = scheduler.track_sequence(markers, 0, 5)
        assert session.wait(30) == SessionState.COMPLETED
        assert session.error is None
        assert session.failures == []
        assert scheduler.state == SessionState.COMPLETED

        for marker in markers:
            assert marker.get_center(5)[0] == pytest.approx(110.0, abs=0.5)
            assert marker.sample_source(5) == SampleSource.TRACKED

        assert progress.events[0] == ("start", 2)
        assert progress.events[-1] == ("end", None)
        updates = [v for e, v in progress.events if e == "update"]
        assert updates[-1] == pytest.approx(1.0)
        assert session.args.accessor.released

    def test_backwards(self):
        """Test tracking with a negative step."""
        from planartrack.tracking import Marker, TrackScheduler, SessionState

        marker = Marker("blob", center=(110.0, 100.0))
        marker.set_user_keyframe(5)
        scheduler = TrackScheduler(moving_blob_source())

        session = scheduler.track_sequence([marker], 5, 0, frame_step=-1)
        assert session.wait(30) == SessionState.COMPLETED
        assert marker.get_center(0)[0] == pytest.approx(100.0, abs=0.5)

    def test_failures_reported(self):
        """Test that failed steps reach the error sink without stopping the session."""
        from planartrack.core import LoggingErrorSink
        from planartrack.tracking import Marker, TrackScheduler, SessionState

        edge = Marker("edge", center=(2.0, 100.0))
        edge.set_user_keyframe(0)
        sink = LoggingErrorSink()
        scheduler = TrackScheduler(moving_blob_source(), error_sink=sink)

        session = scheduler.track_sequence([edge, _blob_marker()], 0, 5)
        assert session.wait(30) == SessionState.COMPLETED
        assert len(session.failures) == 5
        assert len(sink.messages) == 5
        assert all("edge" in m for m in sink.messages)

    def test_busy(self):
        """Test that a second session is rejected while one runs."""
        from planartrack.core import TrackingBusyError
        from planartrack.tracking import TrackScheduler, SessionState

        source = GatedSource(moving_blob_source())
        scheduler = TrackScheduler(source)
        session = scheduler.track_sequence([_blob_marker()], 0, 5)
        try:
            with pytest.raises(TrackingBusyError):
                scheduler.track_sequence([_blob_marker()], 0, 5)
        finally:
            source.gate.set()
        assert session.wait(30) == SessionState.COMPLETED

        again = scheduler.track_sequence([_blob_marker()], 0, 1)
        assert again.wait(30) == SessionState.COMPLETED

    def test_cancel(self):
        """Test cooperative cancellation keeps what was written."""
        from planartrack.tracking import TrackScheduler, SessionState

        source = GatedSource(moving_blob_source())
        scheduler = TrackScheduler(source)
        marker = _blob_marker()
        session = scheduler.track_sequence([marker], 0, 5)

        scheduler.cancel()
        source.gate.set()
        assert session.wait(30) == SessionState.CANCELLED
        assert not marker.has_sample(5)
        assert marker.sample_source(0) is not None
        assert session.args.accessor.released

    def test_session_registry(self):
        """Test sessions can be looked up by id while alive."""
        from planartrack.tracking import TrackScheduler
        from planartrack.tracking.scheduler import lookup_session

        scheduler = TrackScheduler(moving_blob_source())
        session = scheduler.track_sequence([_blob_marker()], 0, 1)
        session.wait(30)
        assert lookup_session(session.session_id) is session
        assert lookup_session(-1) is None

    def test_preconditions(self):
        """Test configuration failures are raised before starting."""
        from planartrack.core import ConfigurationError, TrackerSettings
        from planartrack.tracking import TrackScheduler

        scheduler = TrackScheduler(moving_blob_source())
        with pytest.raises(ConfigurationError):
            scheduler.track_sequence([], 0, 5)
        with pytest.raises(ConfigurationError):
            scheduler.track_sequence([_blob_marker()], 0, 5, frame_step=0)
        with pytest.raises(ConfigurationError):
            scheduler.track_sequence([_blob_marker()], 5, 0, frame_step=1)

        no_channels = TrackerSettings(track_red=False, track_green=False, track_blue=False)
        with pytest.raises(ConfigurationError):
            TrackScheduler(moving_blob_source(), no_channels).track_sequence([_blob_marker()], 0, 5)

        with pytest.raises(ConfigurationError):
            TrackScheduler(None)

    def test_marker_channel_override(self):
        """Test that a marker's own channel mask is used for its frames."""
        from planartrack.core import ArrayFrameSource
        from planartrack.tracking import Marker, TrackScheduler, SessionState

        frames = []
        for t in range(3):
            rgb = np.zeros((HEIGHT, WIDTH, 3), np.float32)
            rgb[..., 1] = blob_frame(100.0 + 2.0 * t, HEIGHT - 1 - 100.0)
            frames.append(rgb)

        marker = Marker("green", center=(100.0, 100.0), channels=(False, True, False))
        marker.set_user_keyframe(0)
        scheduler = TrackScheduler(ArrayFrameSource(frames))
        session = scheduler.track_sequence([marker], 0, 2)
        assert session.wait(30) == SessionState.COMPLETED
        assert session.failures == []
        assert marker.get_center(2)[0] == pytest.approx(104.0, abs=0.5)

    def test_cancel_after_last_generation(self):
        """Test a cancel arriving once all frames are tracked still completes."""
        from planartrack.tracking import TrackScheduler, SessionState

        progress = CancelAtEndProgress()
        scheduler = TrackScheduler(moving_blob_source(), progress=progress)
        progress.scheduler = scheduler
        marker = _blob_marker()

        session = scheduler.track_sequence([marker], 0, 5)
        assert session.wait(30) == SessionState.COMPLETED
        assert session.cancel_requested
        assert marker.has_sample(5)

    def test_aborted_session_failed(self):
        """Test that an exception in the session loop ends it as failed."""
        from planartrack.core import LoggingErrorSink
        from planartrack.tracking import TrackScheduler, SessionState

        sink = LoggingErrorSink()
        scheduler = TrackScheduler(moving_blob_source(), progress=FailingProgress(),
                                   error_sink=sink)
        session = scheduler.track_sequence([_blob_marker()], 0, 5)

        assert session.wait(30) == SessionState.FAILED
        assert isinstance(session.error, RuntimeError)
        assert any("progress display closed" in m for m in sink.messages)
        assert session.args.accessor.released
