#!/usr/bin/env python3
"""
Minimal Example: planartrack API Usage
======================================

Shows the essential API calls without extra boilerplate.
This is the "quick reference" version.
"""

from planartrack.core import TrackerSettings, MotionType, TransformType
from planartrack.core.video import VideoFrameSource
from planartrack.tracking import Marker, TrackScheduler
from planartrack.tracking.track_io import export_marker_crv, save_markers
from planartrack.solve import SolveAggregator
from planartrack.utils import setup_logging

setup_logging()


# =============================================================================
# STEP 1: TRACKING
# Equivalent to: planartrack track input.mp4 markers.json -o tracked.json \
#                -fs 30 -fe 200 --crv-dir .
# =============================================================================

input_video = "input.mp4"
first_frame = 30
last_frame = 200

settings = TrackerSettings(max_error=0.15, pre_blur_sigma=1.0)

# Two markers keyed by hand on the first frame (y up, origin bottom-left)
marker1 = Marker("track01", center=(420, 610))
marker2 = Marker("track02", center=(1480, 590))
markers = [marker1, marker2]
for marker in markers:
    marker.set_user_keyframe(first_frame)

with VideoFrameSource(input_video) as source:
    scheduler = TrackScheduler(source, settings)
    session = scheduler.track_sequence(markers, first_frame, last_frame)
    session.wait()

    for failure in session.failures:
        print("Lost:", failure.message)

    save_markers(markers, "tracked.json")
    for marker in markers:
        export_marker_crv(marker, f"{marker.name}.crv")


    # =========================================================================
    # STEP 2: SOLVE
    # Equivalent to: planartrack solve tracked.json -o curves.json \
    #                --video input.mp4 --motion stabilize -rf 30
    # =========================================================================

    settings.motion_type = MotionType.STABILIZE
    settings.transform_type = TransformType.TRANSFORM
    settings.reference_frame = first_frame
    settings.smooth_transform = (5, 5, 5)

    with SolveAggregator(markers, source, settings) as aggregator:
        aggregator.solve_from_settings().result()
        params = aggregator.transform_params

        for frame in range(first_frame, last_frame + 1, 10):
            tx, ty = params.translate.get_values_at_time(frame)
            rotation = params.rotate.get_value_at_time(frame)
            scale, _ = params.scale.get_values_at_time(frame)
            print(f"{frame}: translate=({tx:.2f}, {ty:.2f}) rotate={rotation:.3f} scale={scale:.4f}")
