"""
Tracking module - Planar patch tracking over frame sequences.

This module provides:
- Marker: keyframed patch with centre, pattern quad and search window
- PatchTracker: one marker, one frame step of region alignment
- TrackScheduler: concurrent sequence tracking with cancellation
- Track data file I/O utilities

Example:
    >>> from planartrack.tracking import Marker, TrackScheduler
    >>> marker = Marker("track1", center=(320, 240))
    >>> marker.set_user_keyframe(0)
    >>> session = TrackScheduler(source).track_sequence([marker], 0, 100)
    >>> session.wait()
"""

from planartrack.tracking.marker import (
    Marker,
    MotionModel,
    ReferenceFramePolicy,
    SampleSource,
)
from planartrack.tracking.region import Termination, TrackRegionOptions, TrackRegionResult, track_region
from planartrack.tracking.tracker import PatchTracker, TrackArgs, TrackStepResult
from planartrack.tracking.scheduler import TrackScheduler, TrackingSession, SessionState
from planartrack.tracking.track_io import (
    load_markers,
    save_markers,
    read_crv_file,
    write_crv_file,
    export_marker_crv,
    marker_from_crv,
    parse_track_line,
)

__all__ = [
    "Marker",
    "MotionModel",
    "ReferenceFramePolicy",
    "SampleSource",
    "Termination",
    "TrackRegionOptions",
    "TrackRegionResult",
    "track_region",
    "PatchTracker",
    "TrackArgs",
    "TrackStepResult",
    "TrackScheduler",
    "TrackingSession",
    "SessionState",
    "load_markers",
    "save_markers",
    "read_crv_file",
    "write_crv_file",
    "export_marker_crv",
    "marker_from_crv",
    "parse_track_line",
]
