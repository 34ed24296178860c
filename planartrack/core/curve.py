"""
Keyframed animation curves.

A Curve maps integer or fractional times to float values. Between
keyframes the value is linearly interpolated; outside the keyed range
the first/last value is held. A Param groups one curve per dimension
(e.g. x and y of a 2D position).
"""

import bisect
from dataclasses import dataclass
from typing import Iterable, Iterator


@dataclass(frozen=True)
class KeyFrame:
    """A single (time, value) sample."""
    time: float
    value: float


class Curve:
    """
    A sorted set of keyframes with linear interpolation.

    Example:
        >>> c = Curve(default=0.0)
        >>> c.add_keyframe(0, 10.0)
        >>> c.add_keyframe(10, 20.0)
        >>> c.get_value_at_time(5)
        15.0
    """

    def __init__(self, default: float = 0.0, keyframes: Iterable[KeyFrame] | None = None):
        self.default = default
        self._times: list[float] = []
        self._values: list[float] = []
        if keyframes:
            for k in keyframes:
                self.add_keyframe(k.time, k.value)

    def __len__(self) -> int:
        return len(self._times)

    def __iter__(self) -> Iterator[KeyFrame]:
        for t, v in zip(self._times, self._values):
            yield KeyFrame(t, v)

    def __repr__(self) -> str:
        return f"Curve({len(self)} keys, default={self.default})"

    def add_keyframe(self, time: float, value: float) -> None:
        """Insert a keyframe, replacing any existing key at the same time."""
        i = bisect.bisect_left(self._times, time)
        if i < len(self._times) and self._times[i] == time:
            self._values[i] = float(value)
        else:
            self._times.insert(i, time)
            self._values.insert(i, float(value))

    def remove_keyframe(self, time: float) -> bool:
        i = self.keyframe_index(time)
        if i < 0:
            return False
        del self._times[i]
        del self._values[i]
        return True

    def remove_animation(self) -> None:
        """Drop every keyframe; the curve falls back to its default."""
        self._times.clear()
        self._values.clear()

    def keyframe_index(self, time: float) -> int:
        """Index of the keyframe at exactly `time`, or -1."""
        i = bisect.bisect_left(self._times, time)
        if i < len(self._times) and self._times[i] == time:
            return i
        return -1

    def has_keyframe(self, time: float) -> bool:
        return self.keyframe_index(time) >= 0

    def keyframe_times(self) -> list[float]:
        return list(self._times)

    def is_animated(self) -> bool:
        return bool(self._times)

    def get_value_at_time(self, time: float) -> float:
        if not self._times:
            return self.default
        if time <= self._times[0]:
            return self._values[0]
        if time >= self._times[-1]:
            return self._values[-1]
        i = bisect.bisect_right(self._times, time)
        t0, t1 = self._times[i - 1], self._times[i]
        v0, v1 = self._values[i - 1], self._values[i]
        if t0 == time:
            return v0
        a = (time - t0) / (t1 - t0)
        return v0 + a * (v1 - v0)


class Param:
    """
    A named, N-dimensional animated parameter.

    Example:
        >>> center = Param("center", 2)
        >>> center.set_values_at_time(3, 100.0, 50.0)
        >>> center.get_values_at_time(3)
        (100.0, 50.0)
    """

    def __init__(self, name: str, dimension: int = 1, defaults: tuple[float, ...] | None = None):
        self.name = name
        defaults = defaults or (0.0,) * dimension
        if len(defaults) != dimension:
            raise ValueError(f"{name}: expected {dimension} defaults, got {len(defaults)}")
        self.curves = [Curve(default=d) for d in defaults]

    @property
    def dimension(self) -> int:
        return len(self.curves)

    def __repr__(self) -> str:
        return f"Param({self.name!r}, dim={self.dimension})"

    def get_value_at_time(self, time: float, dim: int = 0) -> float:
        return self.curves[dim].get_value_at_time(time)

    def get_values_at_time(self, time: float) -> tuple[float, ...]:
        return tuple(c.get_value_at_time(time) for c in self.curves)

    def set_value_at_time(self, time: float, value: float, dim: int = 0) -> None:
        self.curves[dim].add_keyframe(time, value)

    def set_values_at_time(self, time: float, *values: float) -> None:
        if len(values) != self.dimension:
            raise ValueError(f"{self.name}: expected {self.dimension} values, got {len(values)}")
        for curve, v in zip(self.curves, values):
            curve.add_keyframe(time, v)

    def set_default(self, *values: float) -> None:
        """Set the un-animated value of every dimension."""
        for curve, v in zip(self.curves, values):
            curve.default = float(v)

    def get_keyframe_index(self, time: float, dim: int = 0) -> int:
        return self.curves[dim].keyframe_index(time)

    def keyframe_times(self, dim: int = 0) -> list[float]:
        return self.curves[dim].keyframe_times()

    def remove_animation(self) -> None:
        for c in self.curves:
            c.remove_animation()

    def is_animated(self) -> bool:
        return any(c.is_animated() for c in self.curves)
