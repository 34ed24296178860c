"""
Correspondence extraction and windowed smoothing.

Builds the two point sets a robust fit consumes: marker centres at the
reference time and at the target time, ordered from most to least
trustworthy marker. Optionally the centres are averaged over a jitter
window first ("remove jitter"), or pushed away from that average
("add jitter").
"""

import numpy as np
from scipy.ndimage import uniform_filter1d

from planartrack.core.curve import Param
from planartrack.tracking.marker import Marker


def windowed_average(param: Param, time: float, half: int) -> np.ndarray:
    """
    Mean of a 2D param over the frames time - half .. time + half.

    Times outside the keyed range read the held first/last value, so the
    window is effectively clamped to the available samples.
    """
    samples = [param.get_values_at_time(time + dt) for dt in range(-half, half + 1)]
    return np.mean(np.asarray(samples, dtype=np.float64), axis=0)


def _jittered_center(marker: Marker, time: float, half: int, jitter_add: bool) -> np.ndarray:
    avg = windowed_average(marker.center, time, half)
    if not jitter_add:
        return avg
    at_time = np.asarray(marker.get_center(time), dtype=np.float64)
    return at_time + (at_time - avg)


def extract_sorted_points(
    ref_time: float,
    time: float,
    markers: list[Marker],
    jitter_period: int = 0,
    jitter_add: bool = False,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Centre correspondences between `ref_time` and `time`.

    Only markers with a centre keyframe at `time` contribute. Pairs are
    sorted by increasing error at `time` (decreasing confidence); ties
    keep the marker order.

    Args:
        ref_time: Reference time
        time: Target time
        markers: Candidate markers
        jitter_period: Window length; <= 1 uses the raw centres
        jitter_add: Amplify deviation from the windowed average instead of removing it

    Returns:
        (x1, x2), two (N, 2) arrays
    """
    use_jitter = jitter_period > 1
    half = max(0, jitter_period // 2)

    p1, p2, errors = [], [], []
    for marker in markers:
        if not marker.has_sample(time):
            continue
        if use_jitter:
            p1.append(_jittered_center(marker, ref_time, half, jitter_add))
            p2.append(_jittered_center(marker, time, half, jitter_add))
        else:
            p1.append(marker.get_center(ref_time))
            p2.append(marker.get_center(time))
        errors.append(marker.get_error(time))

    if not p1:
        return np.zeros((0, 2)), np.zeros((0, 2))

    order = np.argsort(np.asarray(errors), kind="stable")
    x1 = np.asarray(p1, dtype=np.float64)[order]
    x2 = np.asarray(p2, dtype=np.float64)[order]
    return x1, x2


def windowed_smooth(samples: np.ndarray, window: int) -> np.ndarray:
    """
    Symmetric moving average over a sample sequence.

    Each output averages the `window // 2` samples before and after it
    plus itself; indices past either end repeat the edge sample.
    A window <= 1 returns the samples unchanged.

    Args:
        samples: (N,) or (N, D) array in time order
        window: Window length

    Returns:
        Array of the same shape
    """
    samples = np.asarray(samples, dtype=np.float64)
    if window <= 1 or len(samples) == 0:
        return samples.copy()
    return uniform_filter1d(samples, size=2 * (window // 2) + 1, axis=0, mode="nearest")
