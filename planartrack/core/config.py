"""
Configuration management for the planartrack framework.

Provides settings dataclasses for tracking and solving, with JSON
persistence and environment variable overrides.
"""

import json
import os
from dataclasses import dataclass, field, asdict, fields
from enum import IntEnum
from pathlib import Path
from typing import Any

from planartrack.core.errors import ConfigurationError


class MotionType(IntEnum):
    """What the solved transform is used for."""
    NONE = 0
    STABILIZE = 1
    MATCH_MOVE = 2
    REMOVE_JITTER = 3
    ADD_JITTER = 4


class TransformType(IntEnum):
    """Which parameter set the solve writes."""
    TRANSFORM = 0
    CORNER_PIN = 1


@dataclass
class RobustSettings:
    """Settings of the PROSAC robust estimator."""
    inlier_threshold: float = 2.0
    max_iterations: int = 10000
    confidence: float = 0.99
    random_match_probability: float = 0.01
    non_randomness_significance: float = 0.05

    def validate(self) -> None:
        if self.inlier_threshold <= 0:
            raise ConfigurationError("inlier_threshold must be positive")
        if self.max_iterations < 1:
            raise ConfigurationError("robust max_iterations must be at least 1")
        if not 0 < self.confidence < 1:
            raise ConfigurationError("confidence must be in (0, 1)")
        if not 0 < self.random_match_probability < 1:
            raise ConfigurationError("random_match_probability must be in (0, 1)")
        if not 0 < self.non_randomness_significance < 1:
            raise ConfigurationError("non_randomness_significance must be in (0, 1)")


@dataclass
class TrackerSettings:
    """Session-level tracking and solving settings."""
    track_red: bool = True
    track_green: bool = True
    track_blue: bool = True
    max_error: float = 0.2
    max_iterations: int = 50
    brute_force_pre_track: bool = True
    normalize_intensities: bool = False
    pre_blur_sigma: float = 0.9

    reference_frame: int = 0
    motion_type: MotionType = MotionType.NONE
    transform_type: TransformType = TransformType.TRANSFORM
    jitter_period: int = 10
    smooth_transform: tuple[int, int, int] = (0, 0, 0)
    smooth_corner_pin: int = 0

    max_workers: int | None = None
    robust: RobustSettings = field(default_factory=RobustSettings)

    @property
    def channels(self) -> tuple[bool, bool, bool]:
        return (self.track_red, self.track_green, self.track_blue)

    @property
    def minimum_correlation(self) -> float:
        return 1.0 - self.max_error

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ConfigurationError: If any setting is out of range
        """
        if not 0.0 <= self.max_error <= 1.0:
            raise ConfigurationError(f"max_error must be in [0, 1], got {self.max_error}")
        if not 0 <= self.max_iterations <= 150:
            raise ConfigurationError(f"max_iterations must be in [0, 150], got {self.max_iterations}")
        if not 0.0 <= self.pre_blur_sigma <= 10.0:
            raise ConfigurationError(f"pre_blur_sigma must be in [0, 10], got {self.pre_blur_sigma}")
        if self.jitter_period < 0:
            raise ConfigurationError("jitter_period must be >= 0")
        if len(self.smooth_transform) != 3 or any(s < 0 for s in self.smooth_transform):
            raise ConfigurationError("smooth_transform must be three non-negative windows")
        if self.smooth_corner_pin < 0:
            raise ConfigurationError("smooth_corner_pin must be >= 0")
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        self.robust.validate()

    def to_dict(self) -> dict:
        d = asdict(self)
        d["motion_type"] = self.motion_type.name
        d["transform_type"] = self.transform_type.name
        d["smooth_transform"] = list(self.smooth_transform)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrackerSettings":
        """Build settings from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}

        if "motion_type" in kwargs:
            kwargs["motion_type"] = _parse_enum(MotionType, kwargs["motion_type"])
        if "transform_type" in kwargs:
            kwargs["transform_type"] = _parse_enum(TransformType, kwargs["transform_type"])
        if "smooth_transform" in kwargs:
            kwargs["smooth_transform"] = tuple(int(s) for s in kwargs["smooth_transform"])
        if "robust" in kwargs:
            robust_known = {f.name for f in fields(RobustSettings)}
            kwargs["robust"] = RobustSettings(
                **{k: v for k, v in kwargs["robust"].items() if k in robust_known}
            )
        return cls(**kwargs)


@dataclass
class Config:
    """
    Main configuration container.

    Example:
        config = Config.load("tracker_config.json")
        scheduler = TrackScheduler(source, config.settings)
    """
    settings: TrackerSettings = field(default_factory=TrackerSettings)

    @classmethod
    def load(cls, path: str | Path) -> "Config":
        """Load configuration from a JSON file."""
        return load_config(path)

    def save(self, path: str | Path) -> None:
        """Save configuration to a JSON file."""
        save_config(self, path)

    def to_dict(self) -> dict:
        return {"settings": self.settings.to_dict()}


def _parse_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls[value.upper()]
        except KeyError:
            raise ConfigurationError(f"Invalid {enum_cls.__name__}: {value}") from None
    return enum_cls(int(value))


def _coerce_env_value(current: Any, raw: str) -> Any:
    if current is None:
        return int(raw) if raw.strip() else None
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int) and not isinstance(current, IntEnum):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, tuple):
        return tuple(int(v) for v in raw.split(","))
    return raw


def load_config(path: str | Path, use_env: bool = False) -> Config:
    """
    Load configuration from a JSON file.

    Args:
        path: Path to the JSON configuration file
        use_env: Apply PLANARTRACK_* environment overrides on top

    Returns:
        Parsed and validated Config object

    Raises:
        FileNotFoundError: If the config file doesn't exist
        json.JSONDecodeError: If the JSON is invalid
        ConfigurationError: If a value is out of range
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r") as f:
        data = json.load(f)

    settings = TrackerSettings.from_dict(data.get("settings", {}))

    if use_env:
        for key, raw in get_env_config().items():
            if hasattr(settings, key) and key != "robust":
                value = _coerce_env_value(getattr(settings, key), raw)
                if key in ("motion_type", "transform_type"):
                    value = _parse_enum(type(getattr(settings, key)), raw)
                setattr(settings, key, value)

    settings.validate()
    return Config(settings=settings)


def save_config(config: Config, path: str | Path) -> None:
    """
    Save configuration to a JSON file.

    Args:
        config: Configuration object to save
        path: Output path for the JSON file
    """
    path = Path(path)
    with open(path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)


def get_env_config(prefix: str = "PLANARTRACK_") -> dict[str, Any]:
    """
    Get configuration from environment variables.

    All environment variables starting with the prefix will be included.
    Variable names are converted to lowercase with the prefix removed.

    Example:
        PLANARTRACK_MAX_ERROR=0.1 -> {"max_error": "0.1"}
    """
    config = {}
    for key, value in os.environ.items():
        if key.startswith(prefix):
            config_key = key[len(prefix):].lower()
            config[config_key] = value
    return config
