"""
planartrack - Planar Patch Tracking and Motion Solving
======================================================

A Python toolkit for tracking image patches across a frame sequence
and solving the tracks into stabilization / match-move transforms or
corner pins.

Main modules:
- planartrack.tracking: Markers, region alignment and sequence tracking
- planartrack.geometry: Minimal solvers and PROSAC robust estimation
- planartrack.solve: Point extraction, smoothing and curve solving
- planartrack.core: Curves, configuration, frame sources and errors

Quick start:
    >>> from planartrack import Marker, TrackScheduler, SolveAggregator
    >>> marker = Marker("track1", center=(320, 240))
    >>> marker.set_user_keyframe(0)
    >>> TrackScheduler(source).track_sequence([marker], 0, 100).wait()
    >>> task = SolveAggregator([marker], source).solve_transform(0)
"""

__version__ = "0.1.0"

# Convenience imports
from planartrack.core import TrackerSettings, load_config
from planartrack.tracking import Marker, MotionModel, TrackScheduler
from planartrack.solve import SolveAggregator

__all__ = [
    "__version__",
    "TrackerSettings",
    "load_config",
    "Marker",
    "MotionModel",
    "TrackScheduler",
    "SolveAggregator",
]
