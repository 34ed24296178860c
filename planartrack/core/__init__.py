"""
Core module - Base types, protocols, curves, configuration and errors.
"""

from planartrack.core.base import (
    Rect,
    FrameSource,
    ProgressSink,
    ErrorSink,
    NullProgress,
    LoggingProgress,
    LoggingErrorSink,
    ArrayFrameSource,
)
from planartrack.core.curve import Curve, KeyFrame, Param
from planartrack.core.video import VideoFrameSource, VideoProperties
from planartrack.core.config import (
    Config,
    MotionType,
    RobustSettings,
    TrackerSettings,
    TransformType,
    load_config,
    save_config,
    get_env_config,
)
from planartrack.core.errors import (
    TrackerError,
    ConfigurationError,
    TrackingBusyError,
    RobustFitError,
    SolveError,
)

__all__ = [
    "Rect",
    "FrameSource",
    "ProgressSink",
    "ErrorSink",
    "NullProgress",
    "LoggingProgress",
    "LoggingErrorSink",
    "ArrayFrameSource",
    "Curve",
    "KeyFrame",
    "Param",
    "VideoFrameSource",
    "VideoProperties",
    "Config",
    "MotionType",
    "RobustSettings",
    "TrackerSettings",
    "TransformType",
    "load_config",
    "save_config",
    "get_env_config",
    "TrackerError",
    "ConfigurationError",
    "TrackingBusyError",
    "RobustFitError",
    "SolveError",
]
