"""
Solve module - Transform and corner-pin curves from tracked markers.
"""

from planartrack.solve.extract import extract_sorted_points, windowed_average, windowed_smooth
from planartrack.solve.aggregator import (
    SolveAggregator,
    SolveTask,
    SolveState,
    SolveRequest,
    TransformData,
    CornerPinData,
    TransformParams,
    CornerPinParams,
    compute_transform_at_time,
    compute_corner_pin_at_time,
)

__all__ = [
    "extract_sorted_points",
    "windowed_average",
    "windowed_smooth",
    "SolveAggregator",
    "SolveTask",
    "SolveState",
    "SolveRequest",
    "TransformData",
    "CornerPinData",
    "TransformParams",
    "CornerPinParams",
    "compute_transform_at_time",
    "compute_corner_pin_at_time",
]
