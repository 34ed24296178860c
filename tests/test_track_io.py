"""
Tests for marker and track data I/O.
"""

import pytest


class TestParseTrackLine:
    """Tests for parse_track_line."""

    def test_crv_format(self):
        """Test parsing CRV format line."""
        from planartrack.tracking.track_io import parse_track_line

        assert parse_track_line("100 [[ 123.45, 678.90]]") == (100, 123.45, 678.90)

    def test_simple_format(self):
        """Test parsing simple whitespace-separated format."""
        from planartrack.tracking.track_io import parse_track_line

        assert parse_track_line("7 1.5 -2.25") == (7, 1.5, -2.25)

    def test_negative_and_exponent(self):
        """Test negative frames and exponent notation."""
        from planartrack.tracking.track_io import parse_track_line

        assert parse_track_line("-3 [[ -1e-3, 2.5E+2]]") == (-3, -0.001, 250.0)

    def test_invalid_line(self):
        """Test parsing invalid line returns None."""
        from planartrack.tracking.track_io import parse_track_line

        assert parse_track_line("") is None
        assert parse_track_line("# comment") is None


class TestCrvFiles:
    """Tests for .crv file reading and writing."""

    def test_write_then_read(self, tmp_path):
        """Test a written file reads back sorted by frame."""
        from planartrack.tracking.track_io import read_crv_file, write_crv_file

        path = tmp_path / "track.crv"
        write_crv_file(path, [(2, 3.0, 4.0), (1, 1.0, 2.0)])
        assert path.read_text().splitlines()[0] == "1 [[ 1.0, 2.0]]"
        assert read_crv_file(path) == {1: (1.0, 2.0), 2: (3.0, 4.0)}

    def test_missing_file(self, tmp_path):
        """Test reading a missing file."""
        from planartrack.tracking.track_io import read_crv_file

        with pytest.raises(FileNotFoundError):
            read_crv_file(tmp_path / "missing.crv")

    def test_marker_export_and_import(self, tmp_path):
        """Test exporting a marker's centres and rebuilding a marker."""
        from planartrack.tracking import Marker, SampleSource
        from planartrack.tracking.track_io import export_marker_crv, marker_from_crv

        marker = Marker("track01", center=(10.0, 20.0))
        marker.set_user_keyframe(0)
        marker.set_tracked_pose(1, (12.0, 21.0), marker.get_pattern_corners(0), 0.05)

        path = tmp_path / "track01.crv"
        assert export_marker_crv(marker, path) == 2

        loaded = marker_from_crv(path)
        assert loaded.name == "track01"
        assert loaded.get_center(1) == (12.0, 21.0)
        assert loaded.sample_source(1) == SampleSource.MANUAL


class TestMarkerFiles:
    """Tests for marker JSON persistence."""

    def test_save_and_load(self, tmp_path):
        """Test that markers keep their keyframes and settings."""
        from planartrack.tracking import Marker, MotionModel, ReferenceFramePolicy, SampleSource
        from planartrack.tracking.track_io import load_markers, save_markers

        marker = Marker(
            "corner",
            center=(50.0, 60.0),
            motion_model=MotionModel.AFFINE,
            reference_policy=ReferenceFramePolicy.NEAREST_KEYFRAME,
            channels=(True, False, True),
        )
        marker.set_user_keyframe(0)
        marker.set_tracked_pose(3, (55.0, 58.0), marker.get_pattern_corners(0), 0.125)
        marker.set_enabled(5, False)

        path = tmp_path / "markers.json"
        save_markers([marker], path)
        (loaded,) = load_markers(path)

        assert loaded.name == "corner"
        assert loaded.motion_model == MotionModel.AFFINE
        assert loaded.reference_policy == ReferenceFramePolicy.NEAREST_KEYFRAME
        assert loaded.channels == (True, False, True)
        assert loaded.user_keyframes() == [0]
        assert loaded.center_keyframes() == [0, 3]
        assert loaded.get_center(3) == (55.0, 58.0)
        assert loaded.get_error(3) == pytest.approx(0.125)
        assert loaded.sample_source(0) == SampleSource.MANUAL
        assert loaded.sample_source(3) == SampleSource.TRACKED
        assert not loaded.is_enabled(5)
        assert loaded.get_pattern_corners(3) == marker.get_pattern_corners(3)

    def test_not_a_marker_file(self, tmp_path):
        """Test rejecting unrelated JSON."""
        from planartrack.tracking.track_io import load_markers

        path = tmp_path / "other.json"
        path.write_text("[1, 2, 3]")
        with pytest.raises(ValueError):
            load_markers(path)
