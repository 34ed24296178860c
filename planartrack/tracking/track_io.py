"""
Track data I/O utilities.

Markers are saved as JSON (every animated field plus the user
keyframes). Marker centres can also be exchanged in the .crv text
format, one `FRAME [[ x, y]]` line per frame.
"""

import json
import logging
import re
from pathlib import Path
from typing import Iterator

from planartrack.core.curve import Param
from planartrack.tracking.marker import Marker, MotionModel, ReferenceFramePolicy

logger = logging.getLogger(__name__)


# Pattern for parsing CRV format: FRAME [[ x, y ]]
CRV_PATTERN = re.compile(r'(-?\d+)\s*\[\[\s*(-?[\d.eE+-]+)\s*,\s*(-?[\d.eE+-]+)\s*\]\]')

# Pattern for parsing simple format: FRAME x y
SIMPLE_PATTERN = re.compile(r'(-?\d+)\s+(-?[\d.eE+-]+)\s+(-?[\d.eE+-]+)')

FORMAT_VERSION = 1


def parse_track_line(line: str) -> tuple[int, float, float] | None:
    """
    Parse a single line of tracking data.

    Supports two formats:
        - CRV format: FRAME [[ x, y ]]
        - Simple format: FRAME x y

    Returns:
        Tuple of (frame_number, x, y) or None if line doesn't match
    """
    line = line.strip()
    if not line:
        return None

    match = CRV_PATTERN.match(line) or SIMPLE_PATTERN.match(line)
    if match:
        return (
            int(match.group(1)),
            float(match.group(2)),
            float(match.group(3)),
        )
    return None


def iter_crv_file(path: str | Path) -> Iterator[tuple[int, float, float]]:
    """Iterate over the (frame, x, y) samples of a .crv file."""
    path = Path(path)
    with open(path, 'r') as f:
        for line in f:
            parsed = parse_track_line(line)
            if parsed:
                yield parsed


def read_crv_file(path: str | Path) -> dict[int, tuple[float, float]]:
    """
    Read tracking data from a .crv file.

    Returns:
        Dictionary mapping frame numbers to (x, y) coordinates

    Example:
        >>> data = read_crv_file("track01.crv")
        >>> x, y = data[100]
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Track file not found: {path}")
    return {frame: (x, y) for frame, x, y in iter_crv_file(path)}


def write_crv_file(
    path: str | Path,
    data: dict[int, tuple[float, float]] | list[tuple[int, float, float]],
) -> None:
    """
    Write tracking data to a .crv file.

    Args:
        path: Output path for the .crv file
        data: Either a dict mapping frame -> (x, y) or a list of (frame, x, y) tuples
    """
    if isinstance(data, list):
        items = sorted(data, key=lambda x: x[0])
    else:
        items = [(f, xy[0], xy[1]) for f, xy in sorted(data.items())]

    with open(Path(path), 'w') as f:
        for frame, x, y in items:
            f.write(f"{frame} [[ {x}, {y}]]\n")


def export_marker_crv(marker: Marker, path: str | Path) -> int:
    """
    Write the centre samples of a marker to a .crv file.

    Returns:
        Number of frames written
    """
    data = {int(t): marker.get_center(t) for t in marker.center_keyframes()}
    write_crv_file(path, data)
    return len(data)


def marker_from_crv(path: str | Path, name: str | None = None, **marker_kwargs) -> Marker:
    """
    Create a marker whose centre is user-keyed at every frame of a .crv file.

    Extra keyword arguments are passed to the Marker constructor.
    """
    path = Path(path)
    data = read_crv_file(path)
    marker = Marker(name or path.stem, **marker_kwargs)
    for frame, xy in sorted(data.items()):
        marker.set_user_keyframe(frame, xy)
    return marker


def _marker_params(marker: Marker) -> list[Param]:
    return [
        marker.center, marker.offset, marker.search_btm_left, marker.search_top_right,
        *marker.pattern_params, marker.error, marker.enabled,
    ]


def param_to_dict(param: Param) -> dict:
    """Serialize a Param as its defaults and per-dimension [time, value] keys."""
    return {
        "defaults": [c.default for c in param.curves],
        "keys": [[[k.time, k.value] for k in c] for c in param.curves],
    }


def param_from_dict(param: Param, data: dict) -> None:
    """Load defaults and keys from `param_to_dict` output into `param`."""
    param.remove_animation()
    param.set_default(*data.get("defaults", [c.default for c in param.curves]))
    for curve, keys in zip(param.curves, data.get("keys", [])):
        for t, v in keys:
            curve.add_keyframe(t, v)


def marker_to_dict(marker: Marker) -> dict:
    return {
        "name": marker.name,
        "motion_model": marker.motion_model.name,
        "reference_policy": marker.reference_policy.name,
        "channels": list(marker.channels) if marker.channels is not None else None,
        "user_keyframes": marker.user_keyframes(),
        "params": {p.name: param_to_dict(p) for p in _marker_params(marker)},
    }


def marker_from_dict(data: dict) -> Marker:
    """Rebuild a marker saved with `marker_to_dict`; unknown params are ignored."""
    channels = data.get("channels")
    marker = Marker(
        data["name"],
        motion_model=MotionModel[data.get("motion_model", "TRANSLATION")],
        reference_policy=ReferenceFramePolicy[data.get("reference_policy", "PREVIOUS_FRAME")],
        channels=tuple(bool(c) for c in channels) if channels is not None else None,
    )
    saved = data.get("params", {})
    for param in _marker_params(marker):
        if param.name in saved:
            param_from_dict(param, saved[param.name])
    marker.mark_user_keyframes(data.get("user_keyframes", []))
    return marker


def save_markers(markers: list[Marker], path: str | Path) -> None:
    """Save markers to a JSON file."""
    path = Path(path)
    payload = {"version": FORMAT_VERSION, "markers": [marker_to_dict(m) for m in markers]}
    with open(path, 'w') as f:
        json.dump(payload, f, indent=2)
    logger.info("Saved %d markers to %s", len(markers), path)


def load_markers(path: str | Path) -> list[Marker]:
    """
    Load markers from a JSON file written by `save_markers`.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not a marker file
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Marker file not found: {path}")
    with open(path, 'r') as f:
        payload = json.load(f)
    if not isinstance(payload, dict) or "markers" not in payload:
        raise ValueError(f"{path} is not a marker file")
    markers = [marker_from_dict(d) for d in payload["markers"]]
    logger.info("Loaded %d markers from %s", len(markers), path)
    return markers
