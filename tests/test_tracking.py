"""
Tests for region alignment and single-step tracking.
"""

import math

import pytest
import numpy as np

HEIGHT = 200
WIDTH = 240


def blob_frame(cx, cy, sigma=6.0, height=HEIGHT, width=WIDTH):
    """Gaussian blob centred at (cx, cy) in image coordinates (y down)."""
    yy, xx = np.mgrid[0:height, 0:width].astype(np.float32)
    img = np.exp(-((xx - cx) ** 2 + (yy - cy) ** 2) / (2.0 * sigma ** 2))
    return img.astype(np.float32)


def moving_blob_source(n_frames=6, speed=2.0):
    """Blob translating +speed px/frame in x, at canonical y = 100."""
    from planartrack.core import ArrayFrameSource

    image_y = HEIGHT - 1 - 100.0
    return ArrayFrameSource([blob_frame(100.0 + speed * t, image_y) for t in range(n_frames)])


def make_args(source, markers, start, end, step=1, settings=None):
    from planartrack.core import TrackerSettings
    from planartrack.tracking.autotrack import AutoTrack
    from planartrack.tracking.frame_accessor import TrackerFrameAccessor
    from planartrack.tracking.scheduler import region_options
    from planartrack.tracking.tracker import TrackArgs, TrackedMarker

    settings = settings or TrackerSettings()
    accessor = TrackerFrameAccessor(source, settings.channels, HEIGHT)
    return TrackArgs(
        start=start,
        end=end,
        step=step,
        autotrack=AutoTrack(accessor),
        accessor=accessor,
        tracks=[TrackedMarker(m, region_options(settings, m.motion_model)) for m in markers],
        format_height=HEIGHT,
        channels=settings.channels,
    )


def run_steps(args):
    from planartrack.tracking import PatchTracker

    tracker = PatchTracker(args)
    tracker.seed()
    results = []
    for time in [args.start] + args.frames():
        for index in range(args.num_tracks):
            results.append(tracker.track_step(index, time))
    return results


class TestTrackRegion:
    """Tests for the alignment engine."""

    def _pattern(self, cx, cy, half=15.0):
        return np.array([
            [cx - half, cy - half], [cx + half, cy - half],
            [cx + half, cy + half], [cx - half, cy + half], [cx, cy],
        ])

    def test_translation_recovered(self):
        """Test that a pure shift is found."""
        from planartrack.tracking.region import Termination, TrackRegionOptions, track_region

        img1 = blob_frame(100, 100)
        img2 = blob_frame(104.5, 97.0)
        pattern = self._pattern(100, 100)

        result = track_region(img1, img2, pattern, pattern, (60, 60, 140, 140),
                              TrackRegionOptions(max_iterations=50, sigma=0.0))
        assert result.termination == Termination.CONVERGENCE
        assert result.points[4] == pytest.approx([104.5, 97.0], abs=0.2)
        assert result.correlation > 0.99

    def test_brute_force_used_for_large_shift(self):
        """Test the exhaustive pre-track moves the initial guess."""
        from planartrack.tracking.region import TrackRegionOptions, track_region

        img1 = blob_frame(80, 100)
        img2 = blob_frame(110, 100)
        pattern = self._pattern(80, 100)

        result = track_region(img1, img2, pattern, pattern, (40, 60, 150, 140),
                              TrackRegionOptions(max_iterations=50))
        assert result.used_brute_translation_initialization
        assert result.points[4] == pytest.approx([110.0, 100.0], abs=0.3)

    def test_small_pattern(self):
        """Test that a degenerate pattern is rejected."""
        from planartrack.tracking.region import Termination, TrackRegionOptions, track_region

        img = blob_frame(100, 100)
        pattern = self._pattern(100, 100, half=0.5)
        result = track_region(img, img, pattern, pattern, (60, 60, 140, 140), TrackRegionOptions())
        assert result.termination == Termination.INSUFFICIENT_PATTERN_AREA
        assert not result.is_usable()

    def test_source_out_of_bounds(self):
        """Test a pattern leaving the reference image."""
        from planartrack.tracking.region import Termination, TrackRegionOptions, track_region

        img = blob_frame(100, 100)
        pattern = self._pattern(5, 100)
        result = track_region(img, img, pattern, pattern, (0, 60, 60, 140), TrackRegionOptions())
        assert result.termination == Termination.SOURCE_OUT_OF_BOUNDS

    def test_search_region_too_small(self):
        """Test a search region smaller than the pattern."""
        from planartrack.tracking.region import Termination, TrackRegionOptions, track_region

        img = blob_frame(100, 100)
        pattern = self._pattern(100, 100)
        result = track_region(img, img, pattern, pattern, (95, 95, 105, 105), TrackRegionOptions())
        assert result.termination == Termination.DESTINATION_OUT_OF_BOUNDS

    def test_insufficient_correlation(self):
        """Test that a mismatch below the threshold is reported."""
        from planartrack.tracking.region import Termination, TrackRegionOptions, track_region

        rng = np.random.default_rng(0)
        img1 = blob_frame(100, 100)
        img2 = rng.random((HEIGHT, WIDTH)).astype(np.float32)
        pattern = self._pattern(100, 100)

        options = TrackRegionOptions(minimum_correlation=0.95, max_iterations=0,
                                     use_brute_initialization=False)
        result = track_region(img1, img2, pattern, pattern, (60, 60, 140, 140), options)
        assert result.termination == Termination.INSUFFICIENT_CORRELATION
        assert result.correlation < 0.95

    def test_fell_out_of_search_region(self):
        """Test a quad ending outside the search crop is rejected even inside the image."""
        from planartrack.tracking.region import Termination, TrackRegionOptions, track_region

        img = blob_frame(100, 100)
        pattern = self._pattern(100, 100)
        guess = self._pattern(130, 100)

        options = TrackRegionOptions(max_iterations=0, use_brute_initialization=False)
        result = track_region(img, img, pattern, guess, (60, 60, 140, 140), options)
        assert result.termination == Termination.FELL_OUT_OF_BOUNDS
        assert result.points[4] == pytest.approx([130.0, 100.0])
        assert not result.is_usable()

    def test_zncc_flat_is_nan(self):
        """Test that a flat patch has no defined correlation."""
        from planartrack.tracking.region import zncc

        flat = np.ones((5, 5))
        assert math.isnan(zncc(flat, np.arange(25.0).reshape(5, 5)))
        assert zncc(np.arange(25.0), np.arange(25.0) * 2 + 1) == pytest.approx(1.0)


class TestErrorPolicy:
    """Tests for the stored error of an alignment."""

    def test_nan_correlation_is_perfect(self):
        """Test that NaN correlation maps to error 0."""
        from planartrack.tracking.tracker import error_from_correlation

        assert error_from_correlation(math.nan) == 0.0
        assert error_from_correlation(0.75) == pytest.approx(0.25)


class TestMarker:
    """Tests for marker keyframes and reference selection."""

    def test_user_keyframe(self):
        """Test that user keyframes are MANUAL with error 0."""
        from planartrack.tracking import Marker, SampleSource

        marker = Marker("m", center=(10.0, 20.0))
        assert marker.sample_source(0) is None
        marker.set_user_keyframe(0)
        assert marker.sample_source(0) == SampleSource.MANUAL
        assert marker.get_error(0) == 0.0

    def test_remove_user_keyframe(self):
        """Test that removing the flag turns a key into a tracked sample."""
        from planartrack.tracking import Marker, SampleSource

        marker = Marker("m")
        marker.set_user_keyframe(4)
        marker.remove_user_keyframe(4)
        assert marker.user_keyframes() == []
        assert marker.sample_source(4) == SampleSource.TRACKED

    def test_clear_tracked(self):
        """Test that clearing keeps user keyframes only."""
        from planartrack.tracking import Marker

        marker = Marker("m")
        marker.set_user_keyframe(0)
        marker.set_tracked_pose(1, (1.0, 1.0), marker.get_pattern_corners(0), 0.1)
        marker.clear_tracked()
        assert marker.center_keyframes() == [0]

    def test_reference_frame_policies(self):
        """Test previous-frame and nearest-keyframe references."""
        from planartrack.tracking import Marker, ReferenceFramePolicy

        prev = Marker("p")
        assert prev.reference_frame(10, 1) == 9
        assert prev.reference_frame(10, -2) == 12

        nearest = Marker("n", reference_policy=ReferenceFramePolicy.NEAREST_KEYFRAME)
        nearest.set_user_keyframe(0)
        nearest.set_user_keyframe(6)
        nearest.set_user_keyframe(20)
        assert nearest.reference_frame(10, 1) == 6
        assert nearest.reference_frame(10, -1) == 20
        assert nearest.reference_frame(-5, 1) == -6


class TestPatchTracker:
    """End-to-end tests of PatchTracker over a synthetic sequence."""

    def test_frames(self):
        """Test the stepped frame list is inclusive of the end."""
        args = make_args(moving_blob_source(), [], 0, 5)
        assert args.frames() == [1, 2, 3, 4, 5]
        args = make_args(moving_blob_source(), [], 5, 0, step=-2)
        assert args.frames() == [3, 1]

    def test_translating_feature(self):
        """Test tracking a blob moving +2 px/frame for 5 frames."""
        from planartrack.tracking import Marker, SampleSource

        marker = Marker("blob", center=(100.0, 100.0))
        marker.set_user_keyframe(0)

        results = run_steps(make_args(moving_blob_source(), [marker], 0, 5))
        assert all(r.ok for r in results)

        cx, cy = marker.get_center(5)
        assert cx == pytest.approx(110.0, abs=0.5)
        assert cy == pytest.approx(100.0, abs=0.5)

        assert marker.sample_source(0) == SampleSource.MANUAL
        for t in range(1, 6):
            assert marker.sample_source(t) == SampleSource.TRACKED
            assert marker.get_error(t) < 0.05
        assert marker.get_error(0) == 0.0

    def test_search_window_follows_pattern(self):
        """Test that tracked frames key the search window relative to the new centre."""
        from planartrack.tracking import Marker

        marker = Marker("blob", center=(100.0, 100.0))
        marker.set_user_keyframe(0)
        run_steps(make_args(moving_blob_source(), [marker], 0, 5))

        btm_left, top_right = marker.get_search_window(5)
        assert btm_left == pytest.approx((-35.0, -35.0), abs=0.5)
        assert top_right == pytest.approx((35.0, 35.0), abs=0.5)
        assert marker.search_btm_left.get_keyframe_index(5) >= 0

    def test_user_keyframe_not_aligned(self):
        """Test that a user keyframe inside the range keeps its pose."""
        from planartrack.tracking import Marker, SampleSource

        marker = Marker("blob", center=(100.0, 100.0))
        marker.set_user_keyframe(0)
        marker.set_user_keyframe(3, center=(130.0, 90.0))
        corners = marker.get_pattern_corners(3)

        results = run_steps(make_args(moving_blob_source(), [marker], 0, 3))
        at_key = [r for r in results if r.frame == 3][0]

        assert at_key.ok
        assert at_key.source == SampleSource.MANUAL
        assert marker.get_center(3) == pytest.approx((130.0, 90.0))
        assert np.allclose(marker.get_pattern_corners(3), corners)
        assert marker.get_error(3) == 0.0
        assert marker.sample_source(3) == SampleSource.MANUAL

    def test_deterministic(self):
        """Test that identical inputs give identical poses."""
        from planartrack.tracking import Marker

        centers = []
        for _ in range(2):
            marker = Marker("blob", center=(100.0, 100.0))
            marker.set_user_keyframe(0)
            run_steps(make_args(moving_blob_source(), [marker], 0, 5))
            centers.append([marker.get_center(t) for t in range(6)])
        assert np.allclose(centers[0], centers[1], rtol=0, atol=1e-9)

    def test_failure_is_a_result(self):
        """Test that an unusable alignment returns ok=False and writes nothing."""
        from planartrack.tracking import Marker
        from planartrack.tracking.region import Termination

        marker = Marker("edge", center=(2.0, 100.0))
        marker.set_user_keyframe(0)

        results = run_steps(make_args(moving_blob_source(), [marker], 0, 1))
        failed = [r for r in results if not r.ok]
        assert len(failed) == 1
        assert failed[0].termination == Termination.SOURCE_OUT_OF_BOUNDS
        assert "edge" in failed[0].message
        assert not marker.has_sample(1)

    def test_step_state_released(self):
        """Test that no step context survives a step."""
        from planartrack.tracking import Marker
        from planartrack.tracking.tracker import current_step

        marker = Marker("blob", center=(100.0, 100.0))
        marker.set_user_keyframe(0)
        run_steps(make_args(moving_blob_source(), [marker], 0, 1))
        assert current_step() is None


class TestAutoTrack:
    """Tests for the engine marker arena."""

    def test_markers_for_track(self):
        """Test insert, replace and per-track listing."""
        from planartrack.tracking import Marker
        from planartrack.tracking.tracker import to_engine_marker

        args = make_args(moving_blob_source(), [], 0, 5)
        marker = Marker("m", center=(100.0, 100.0))
        for t in (3, 1, 2, 1):
            args.autotrack.add_marker(to_engine_marker(marker, 0, t, 1, HEIGHT, (True, True, True), True))
        args.autotrack.add_marker(to_engine_marker(marker, 1, 0, 1, HEIGHT, (True, True, True), True))

        assert len(args.autotrack) == 4
        assert [m.frame for m in args.autotrack.markers_for_track(0)] == [1, 2, 3]
        assert args.autotrack.get_marker(1, 0) is not None
        assert args.autotrack.get_marker(1, 5) is None

    def test_engine_marker_y_down(self):
        """Test conversion to image coordinates."""
        from planartrack.tracking import Marker
        from planartrack.tracking.tracker import to_engine_marker

        marker = Marker("m", center=(100.0, 100.0), pattern_half_size=(10.0, 5.0))
        em = to_engine_marker(marker, 0, 0, 1, HEIGHT, (True, True, True), True)

        assert em.center.tolist() == [100.0, 99.0]
        # Top-left corner is above the centre, so it has the smaller row.
        assert em.patch[0].tolist() == [90.0, 94.0]
        assert em.search_min.tolist() == [65.0, 64.0]
        assert em.search_max.tolist() == [135.0, 134.0]
        assert em.pattern_points().shape == (5, 2)
