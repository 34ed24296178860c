"""
Iterative region alignment.

Aligns a pattern quad from a reference image inside the search region
of a target image. The pattern is rectified into a template, optionally
located by an exhaustive template match (brute-force pre-track), and
then refined with OpenCV's enhanced correlation coefficient (ECC)
maximisation under the requested motion model.

All coordinates here are image coordinates: x to the right, y down,
origin at the top-left pixel centre.
"""

import logging
import math
import threading
from dataclasses import dataclass
from enum import IntEnum

import cv2
import numpy as np

from planartrack.tracking.marker import MotionModel

logger = logging.getLogger(__name__)


class Termination(IntEnum):
    """Why an alignment stopped."""
    CONVERGENCE = 0
    NO_CONVERGENCE = 1
    SOURCE_OUT_OF_BOUNDS = 2
    DESTINATION_OUT_OF_BOUNDS = 3
    FELL_OUT_OF_BOUNDS = 4
    INSUFFICIENT_CORRELATION = 5
    INSUFFICIENT_PATTERN_AREA = 6
    DIVERGED = 7


@dataclass
class TrackRegionOptions:
    """Parameters of one alignment."""
    mode: MotionModel = MotionModel.TRANSLATION
    minimum_correlation: float = 0.0
    max_iterations: int = 20
    use_brute_initialization: bool = True
    use_normalized_intensities: bool = False
    sigma: float = 0.9
    epsilon: float = 1e-5


@dataclass
class TrackRegionResult:
    """
    Outcome of an alignment.

    Attributes:
        termination: Stop reason
        correlation: Zero-normalized cross-correlation of the aligned pattern,
            NaN when either patch has no variance
        points: (5, 2) aligned quad corners (tl, tr, br, bl) and centre, or None
        used_brute_translation_initialization: Whether the pre-track moved the guess
    """
    termination: Termination
    correlation: float = math.nan
    points: np.ndarray | None = None
    used_brute_translation_initialization: bool = False

    def is_usable(self) -> bool:
        return self.termination in (Termination.CONVERGENCE, Termination.NO_CONVERGENCE)


_ECC_MOTION = {
    MotionModel.TRANSLATION: cv2.MOTION_TRANSLATION,
    MotionModel.TRANSLATION_ROTATION: cv2.MOTION_EUCLIDEAN,
    MotionModel.TRANSLATION_SCALE: cv2.MOTION_AFFINE,
    MotionModel.TRANSLATION_ROTATION_SCALE: cv2.MOTION_AFFINE,
    MotionModel.AFFINE: cv2.MOTION_AFFINE,
    MotionModel.HOMOGRAPHY: cv2.MOTION_HOMOGRAPHY,
}

# Scratch images of the alignment running on the current worker thread.
_scratch = threading.local()


def _scratch_buffers() -> dict:
    buffers = getattr(_scratch, "buffers", None)
    if buffers is None:
        buffers = {}
        _scratch.buffers = buffers
    return buffers


def release_thread_state() -> None:
    """Drop the scratch images held by the calling thread."""
    if hasattr(_scratch, "buffers"):
        del _scratch.buffers


def zncc(a: np.ndarray, b: np.ndarray) -> float:
    """Zero-normalized cross-correlation; NaN if either input is flat."""
    a = a.astype(np.float64).ravel()
    b = b.astype(np.float64).ravel()
    a = a - a.mean()
    b = b - b.mean()
    den = math.sqrt(float((a * a).sum()) * float((b * b).sum()))
    if den == 0.0:
        return math.nan
    return float((a * b).sum() / den)


def _to3x3(w: np.ndarray) -> np.ndarray:
    w = np.asarray(w, dtype=np.float64)
    if w.shape == (3, 3):
        return w
    return np.vstack([w, [0.0, 0.0, 1.0]])


def _apply(h: np.ndarray, pts: np.ndarray) -> np.ndarray:
    p = np.hstack([pts, np.ones((len(pts), 1))]) @ h.T
    return p[:, :2] / p[:, 2:3]


def _inside(pts: np.ndarray, width: int, height: int) -> bool:
    return bool(np.all(pts[:, 0] >= 0) and np.all(pts[:, 0] <= width - 1)
                and np.all(pts[:, 1] >= 0) and np.all(pts[:, 1] <= height - 1))


def _template_size(quad: np.ndarray) -> tuple[int, int]:
    tl, tr, br, bl = quad
    w = max(np.linalg.norm(tr - tl), np.linalg.norm(br - bl))
    h = max(np.linalg.norm(bl - tl), np.linalg.norm(br - tr))
    return int(round(w)) + 1, int(round(h)) + 1


def _initial_warp(mode: MotionModel, rect: np.ndarray, quad: np.ndarray) -> np.ndarray:
    """Warp (template -> search crop) matching the guessed quad under `mode`."""
    h = cv2.getPerspectiveTransform(rect.astype(np.float32), quad.astype(np.float32)).astype(np.float64)
    if mode == MotionModel.HOMOGRAPHY:
        return h

    if mode in (MotionModel.TRANSLATION_SCALE, MotionModel.TRANSLATION_ROTATION_SCALE, MotionModel.AFFINE):
        a = cv2.getAffineTransform(rect[:3].astype(np.float32), quad[:3].astype(np.float32))
        return _to3x3(a)

    c_rect = rect.mean(axis=0)
    c_quad = _apply(h, c_rect[None, :])[0]
    if mode == MotionModel.TRANSLATION:
        r = np.eye(2)
    else:
        dx, dy = quad[1] - quad[0]
        theta = math.atan2(dy, dx)
        r = np.array([[math.cos(theta), -math.sin(theta)], [math.sin(theta), math.cos(theta)]])
    w = np.eye(3)
    w[:2, :2] = r
    w[:2, 2] = c_quad - r @ c_rect
    return w


def _constrain_delta(mode: MotionModel, delta: np.ndarray, pivot: np.ndarray) -> np.ndarray:
    """Project an affine update onto the scale-only or similarity family."""
    if mode not in (MotionModel.TRANSLATION_SCALE, MotionModel.TRANSLATION_ROTATION_SCALE):
        return delta
    lin = delta[:2, :2]
    if mode == MotionModel.TRANSLATION_SCALE:
        s = 0.5 * (lin[0, 0] + lin[1, 1])
        proj = np.array([[s, 0.0], [0.0, s]])
    else:
        a = 0.5 * (lin[0, 0] + lin[1, 1])
        b = 0.5 * (lin[1, 0] - lin[0, 1])
        proj = np.array([[a, -b], [b, a]])
    moved_pivot = _apply(delta, pivot[None, :])[0]
    out = np.eye(3)
    out[:2, :2] = proj
    out[:2, 2] = moved_pivot - proj @ pivot
    return out


def _normalize(img: np.ndarray) -> np.ndarray:
    mean = float(img.mean())
    return img / mean if mean > 1e-12 else img


def track_region(
    image1: np.ndarray,
    image2: np.ndarray,
    pattern1: np.ndarray,
    pattern2: np.ndarray,
    search_region: tuple[float, float, float, float],
    options: TrackRegionOptions,
) -> TrackRegionResult:
    """
    Align the pattern of image1 inside the search region of image2.

    Args:
        image1: Reference grayscale float32 image
        image2: Target grayscale float32 image
        pattern1: (5, 2) reference quad (tl, tr, br, bl) and centre
        pattern2: (5, 2) initial guess of the quad and centre in image2
        search_region: (x_min, y_min, x_max, y_max) in image2
        options: Alignment options

    Returns:
        TrackRegionResult; `points` holds the aligned quad and centre when usable
    """
    pattern1 = np.asarray(pattern1, dtype=np.float64).reshape(5, 2)
    pattern2 = np.asarray(pattern2, dtype=np.float64).reshape(5, 2)
    quad1 = pattern1[:4]

    tw, th = _template_size(quad1)
    if tw < 3 or th < 3:
        return TrackRegionResult(Termination.INSUFFICIENT_PATTERN_AREA)

    h1, w1 = image1.shape[:2]
    if not _inside(quad1, w1, h1):
        return TrackRegionResult(Termination.SOURCE_OUT_OF_BOUNDS)

    rect = np.array([[0, 0], [tw - 1, 0], [tw - 1, th - 1], [0, th - 1]], dtype=np.float64)
    to_ref = cv2.getPerspectiveTransform(rect.astype(np.float32), quad1.astype(np.float32))
    template = cv2.warpPerspective(
        image1, to_ref, (tw, th), flags=cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP
    )

    h2, w2 = image2.shape[:2]
    x0, y0, x1, y1 = search_region
    sx0 = max(0, int(math.floor(min(x0, x1))))
    sy0 = max(0, int(math.floor(min(y0, y1))))
    sx1 = min(w2, int(math.ceil(max(x0, x1))) + 1)
    sy1 = min(h2, int(math.ceil(max(y0, y1))) + 1)
    if sx1 - sx0 < tw or sy1 - sy0 < th:
        return TrackRegionResult(Termination.DESTINATION_OUT_OF_BOUNDS)

    crop = np.ascontiguousarray(image2[sy0:sy1, sx0:sx1], dtype=np.float32)
    origin = np.array([sx0, sy0], dtype=np.float64)
    guess = pattern2 - origin

    if options.use_normalized_intensities:
        template = _normalize(template)
        crop = _normalize(crop)
    template = np.ascontiguousarray(template, dtype=np.float32)

    buffers = _scratch_buffers()
    buffers["template"] = template
    buffers["search"] = crop

    used_brute = False
    if options.use_brute_initialization:
        method = cv2.TM_CCOEFF_NORMED if options.use_normalized_intensities else cv2.TM_SQDIFF
        scores = cv2.matchTemplate(crop, template, method)
        min_val, max_val, min_loc, max_loc = cv2.minMaxLoc(scores)
        best = np.array(max_loc if method == cv2.TM_CCOEFF_NORMED else min_loc, dtype=np.float64)
        moved = quad1 - quad1[0] + best
        shift = moved.mean(axis=0) - guess[:4].mean(axis=0)
        if np.any(np.abs(shift) > 1e-9):
            guess = guess + shift
            used_brute = True

    w0 = _initial_warp(options.mode, rect, guess[:4])
    warp = w0
    if options.max_iterations > 0:
        motion = _ECC_MOTION[options.mode]
        init = w0.astype(np.float32) if motion == cv2.MOTION_HOMOGRAPHY else w0[:2].astype(np.float32)
        criteria = (cv2.TERM_CRITERIA_COUNT | cv2.TERM_CRITERIA_EPS,
                    int(options.max_iterations), float(options.epsilon))
        try:
            _, found = cv2.findTransformECC(template, crop, init, motion, criteria, None, 1)
        except cv2.error as exc:
            logger.debug("ECC alignment diverged: %s", exc)
            return TrackRegionResult(Termination.DIVERGED, used_brute_translation_initialization=used_brute)
        warp = _to3x3(found)

    if not np.all(np.isfinite(warp)):
        return TrackRegionResult(Termination.DIVERGED, used_brute_translation_initialization=used_brute)

    delta = warp @ np.linalg.inv(w0)
    delta = _constrain_delta(options.mode, delta, guess[:4].mean(axis=0))
    final_warp = delta @ w0

    aligned = _apply(delta, guess)
    if not np.all(np.isfinite(aligned)):
        return TrackRegionResult(Termination.DIVERGED, used_brute_translation_initialization=used_brute)

    points = aligned + origin
    if not _inside(aligned[:4], sx1 - sx0, sy1 - sy0):
        return TrackRegionResult(Termination.FELL_OUT_OF_BOUNDS, points=points,
                                 used_brute_translation_initialization=used_brute)

    warped = cv2.warpPerspective(
        crop, final_warp.astype(np.float32), (tw, th),
        flags=cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP,
    )
    buffers["aligned"] = warped
    correlation = zncc(template, warped)

    # NaN never compares below the threshold; flat patches pass here.
    if options.minimum_correlation > 0.0 and correlation < options.minimum_correlation:
        return TrackRegionResult(Termination.INSUFFICIENT_CORRELATION, correlation, points, used_brute)

    return TrackRegionResult(Termination.CONVERGENCE, correlation, points, used_brute)
