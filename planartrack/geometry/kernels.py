"""
Minimal-sample and least-squares solvers for 2D motion models.

Every model is expressed as a 3x3 matrix acting on homogeneous points
(x, y, 1), except the fundamental matrix which relates the two views
through the epipolar constraint x2^T F x1 = 0.

The model classes are a tagged variant: ModelKind names the class and
KERNELS maps it to the kernel implementing minimal fitting, refitting
and residuals for that class. CLOSED_FORM maps an exact point count to
the algebraically exact solver used when no robust loop is needed.
"""

import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable

import numpy as np


class ModelKind(IntEnum):
    """Model classes, ordered by degrees of freedom."""
    TRANSLATION = 0
    SIMILARITY = 1
    AFFINE = 2
    HOMOGRAPHY = 3
    FUNDAMENTAL = 4


def as_points(pts) -> np.ndarray:
    """Convert a sequence of (x, y) pairs to an (N, 2) float64 array."""
    arr = np.asarray(pts, dtype=np.float64)
    return arr.reshape(-1, 2)


def to_homogeneous(pts) -> np.ndarray:
    """(N, 2) euclidean points to (N, 3) homogeneous points with z = 1."""
    pts = as_points(pts)
    return np.hstack([pts, np.ones((len(pts), 1))])


def apply_homography(h: np.ndarray, pts) -> np.ndarray:
    """
    Apply a 3x3 matrix to euclidean points.

    Args:
        h: 3x3 transform
        pts: (N, 2) points or a single (x, y)

    Returns:
        (N, 2) transformed points
    """
    r = to_homogeneous(pts) @ np.asarray(h, dtype=np.float64).T
    with np.errstate(divide="ignore", invalid="ignore"):
        return r[:, :2] / r[:, 2:3]


# ---------------------------------------------------------------------------
# Closed-form minimal solvers
# ---------------------------------------------------------------------------

def translation_from_one_point(p1, p2) -> np.ndarray:
    """Translation mapping p1 onto p2."""
    (x1, y1), (x2, y2) = as_points(p1)[0], as_points(p2)[0]
    return np.array([
        [1.0, 0.0, x2 - x1],
        [0.0, 1.0, y2 - y1],
        [0.0, 0.0, 1.0],
    ])


def similarity_from_two_points(p1a, p1b, p2a, p2b) -> np.ndarray | None:
    """
    Rotation + uniform scale + translation mapping p1a->p2a and p1b->p2b.

    Returns None if the two source points coincide.
    """
    pa, pb = complex(*as_points(p1a)[0]), complex(*as_points(p1b)[0])
    qa, qb = complex(*as_points(p2a)[0]), complex(*as_points(p2b)[0])
    d = pb - pa
    if abs(d) < 1e-12:
        return None
    z = (qb - qa) / d
    t = qa - z * pa
    return np.array([
        [z.real, -z.imag, t.real],
        [z.imag, z.real, t.imag],
        [0.0, 0.0, 1.0],
    ])


def affine_from_three_points(src, dst) -> np.ndarray | None:
    """
    Affine transform mapping three source points onto three targets.

    Returns None if the source points are collinear.
    """
    src, dst = as_points(src), as_points(dst)
    a = to_homogeneous(src[:3])
    if abs(np.linalg.det(a)) < 1e-12:
        return None
    m = np.linalg.solve(a, dst[:3]).T
    return np.vstack([m, [0.0, 0.0, 1.0]])


def normalizer_from_image_size(width: float, height: float) -> np.ndarray:
    """Conditioning matrix centring the image and scaling it to unit area."""
    width = max(float(width), 1.0)
    height = max(float(height), 1.0)
    norm = 1.0 / math.sqrt(width * height / 2.0)
    return np.array([
        [norm, 0.0, -norm * width / 2.0],
        [0.0, norm, -norm * height / 2.0],
        [0.0, 0.0, 1.0],
    ])


def _normalizer_from_points(pts: np.ndarray) -> np.ndarray:
    c = pts.mean(axis=0)
    d = np.sqrt(((pts - c) ** 2).sum(axis=1)).mean()
    s = math.sqrt(2.0) / d if d > 1e-12 else 1.0
    return np.array([
        [s, 0.0, -s * c[0]],
        [0.0, s, -s * c[1]],
        [0.0, 0.0, 1.0],
    ])


def homography_from_points(src, dst, n1: np.ndarray | None = None, n2: np.ndarray | None = None) -> np.ndarray | None:
    """
    Direct linear transform for N >= 4 correspondences.

    Args:
        src, dst: (N, 2) points
        n1, n2: Optional conditioning matrices; derived from the points if omitted

    Returns:
        3x3 homography normalized so h[2, 2] == 1, or None if degenerate
    """
    src, dst = as_points(src), as_points(dst)
    if len(src) < 4:
        return None
    n1 = _normalizer_from_points(src) if n1 is None else n1
    n2 = _normalizer_from_points(dst) if n2 is None else n2
    x1 = to_homogeneous(src) @ n1.T
    x2 = to_homogeneous(dst) @ n2.T

    rows = []
    for (x, y, w), (u, v, z) in zip(x1, x2):
        rows.append([0, 0, 0, -z * x, -z * y, -z * w, v * x, v * y, v * w])
        rows.append([z * x, z * y, z * w, 0, 0, 0, -u * x, -u * y, -u * w])
    a = np.asarray(rows)
    if np.linalg.matrix_rank(a, tol=1e-10) < 8:
        return None
    _, _, vt = np.linalg.svd(a)
    hn = vt[-1].reshape(3, 3)
    h = np.linalg.inv(n2) @ hn @ n1
    if abs(h[2, 2]) < 1e-12:
        return None
    return h / h[2, 2]


def fundamental_from_points(x1, x2, n1: np.ndarray | None = None, n2: np.ndarray | None = None) -> np.ndarray | None:
    """
    Normalized eight-point algorithm with rank-2 enforcement.

    Returns None for fewer than 8 points or a degenerate configuration.
    """
    x1, x2 = as_points(x1), as_points(x2)
    if len(x1) < 8:
        return None
    n1 = _normalizer_from_points(x1) if n1 is None else n1
    n2 = _normalizer_from_points(x2) if n2 is None else n2
    p1 = to_homogeneous(x1) @ n1.T
    p2 = to_homogeneous(x2) @ n2.T

    a = np.column_stack([
        p2[:, 0] * p1[:, 0], p2[:, 0] * p1[:, 1], p2[:, 0],
        p2[:, 1] * p1[:, 0], p2[:, 1] * p1[:, 1], p2[:, 1],
        p1[:, 0], p1[:, 1], np.ones(len(p1)),
    ])
    if np.linalg.matrix_rank(a, tol=1e-10) < 8:
        return None
    _, _, vt = np.linalg.svd(a)
    f = vt[-1].reshape(3, 3)

    u, s, vt = np.linalg.svd(f)
    s[2] = 0.0
    f = u @ np.diag(s) @ vt
    f = n2.T @ f @ n1
    norm = np.linalg.norm(f)
    return f / norm if norm > 0 else None


# ---------------------------------------------------------------------------
# Least-squares refits over N points
# ---------------------------------------------------------------------------

def fit_translation(x1, x2) -> np.ndarray:
    x1, x2 = as_points(x1), as_points(x2)
    t = (x2 - x1).mean(axis=0)
    return np.array([[1.0, 0.0, t[0]], [0.0, 1.0, t[1]], [0.0, 0.0, 1.0]])


def fit_similarity(x1, x2) -> np.ndarray | None:
    """Umeyama least-squares similarity without reflection."""
    x1, x2 = as_points(x1), as_points(x2)
    if len(x1) < 2:
        return None
    mu1, mu2 = x1.mean(axis=0), x2.mean(axis=0)
    d1, d2 = x1 - mu1, x2 - mu2
    var1 = (d1 ** 2).sum() / len(x1)
    if var1 < 1e-12:
        return None
    cov = d2.T @ d1 / len(x1)
    u, s, vt = np.linalg.svd(cov)
    sign = np.eye(2)
    if np.linalg.det(u) * np.linalg.det(vt) < 0:
        sign[1, 1] = -1.0
    r = u @ sign @ vt
    scale = np.trace(np.diag(s) @ sign) / var1
    t = mu2 - scale * r @ mu1
    m = np.eye(3)
    m[:2, :2] = scale * r
    m[:2, 2] = t
    return m


def fit_affine(x1, x2) -> np.ndarray | None:
    x1, x2 = as_points(x1), as_points(x2)
    if len(x1) < 3:
        return None
    a = to_homogeneous(x1)
    if np.linalg.matrix_rank(a) < 3:
        return None
    m, *_ = np.linalg.lstsq(a, x2, rcond=None)
    return np.vstack([m.T, [0.0, 0.0, 1.0]])


def similarity_to_rts(m: np.ndarray) -> tuple[float, float, float, float]:
    """
    Decompose a similarity matrix.

    Returns:
        (tx, ty, scale, rotation) with rotation in radians
    """
    a, b = m[0, 0], m[1, 0]
    return float(m[0, 2]), float(m[1, 2]), float(math.hypot(a, b)), float(math.atan2(b, a))


# ---------------------------------------------------------------------------
# Kernels
# ---------------------------------------------------------------------------

def _transfer_errors(model: np.ndarray, x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    proj = apply_homography(model, x1)
    err = ((proj - x2) ** 2).sum(axis=1)
    return np.where(np.isfinite(err), err, np.inf)


def sampson_errors(f: np.ndarray, x1, x2) -> np.ndarray:
    """Squared Sampson distance of each correspondence to the epipolar constraint."""
    p1, p2 = to_homogeneous(x1), to_homogeneous(x2)
    fx1 = p1 @ f.T
    ftx2 = p2 @ f
    num = (p2 * fx1).sum(axis=1) ** 2
    den = fx1[:, 0] ** 2 + fx1[:, 1] ** 2 + ftx2[:, 0] ** 2 + ftx2[:, 1] ** 2
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(den > 0, num / den, np.inf)


@dataclass
class ModelKernel:
    """
    Fitting kernel for one model class.

    Attributes:
        kind: Model class
        min_samples: Minimal number of correspondences for one hypothesis
        minimal: Solver for exactly min_samples correspondences
        refine: Least-squares solver over any number of inliers
        residuals: Squared error of each correspondence under a model
        conditioned: Whether solvers accept conditioning matrices
    """
    kind: ModelKind
    min_samples: int
    minimal: Callable
    refine: Callable
    residuals: Callable = _transfer_errors
    conditioned: bool = False

    def fit(self, x1: np.ndarray, x2: np.ndarray, n1=None, n2=None) -> list[np.ndarray]:
        """Fit hypotheses to a minimal sample; empty list if degenerate."""
        model = self.minimal(x1, x2, n1, n2) if self.conditioned else self.minimal(x1, x2)
        return [] if model is None else [model]

    def refit(self, x1: np.ndarray, x2: np.ndarray, n1=None, n2=None) -> np.ndarray | None:
        if self.conditioned:
            return self.refine(x1, x2, n1, n2)
        return self.refine(x1, x2)


KERNELS: dict[ModelKind, ModelKernel] = {
    ModelKind.TRANSLATION: ModelKernel(
        ModelKind.TRANSLATION, 1,
        minimal=lambda x1, x2: translation_from_one_point(x1[0], x2[0]),
        refine=fit_translation,
    ),
    ModelKind.SIMILARITY: ModelKernel(
        ModelKind.SIMILARITY, 2,
        minimal=lambda x1, x2: similarity_from_two_points(x1[0], x1[1], x2[0], x2[1]),
        refine=fit_similarity,
    ),
    ModelKind.AFFINE: ModelKernel(
        ModelKind.AFFINE, 3,
        minimal=affine_from_three_points,
        refine=fit_affine,
    ),
    ModelKind.HOMOGRAPHY: ModelKernel(
        ModelKind.HOMOGRAPHY, 4,
        minimal=homography_from_points,
        refine=homography_from_points,
        conditioned=True,
    ),
    ModelKind.FUNDAMENTAL: ModelKernel(
        ModelKind.FUNDAMENTAL, 8,
        minimal=fundamental_from_points,
        refine=fundamental_from_points,
        residuals=sampson_errors,
        conditioned=True,
    ),
}


def _closed_form_translation(x1, x2):
    return translation_from_one_point(x1[0], x2[0])


def _closed_form_similarity(x1, x2):
    return similarity_from_two_points(x1[0], x1[1], x2[0], x2[1])


# Exact solvers by point count, used below the homography tier.
CLOSED_FORM: dict[int, Callable] = {
    1: _closed_form_translation,
    2: _closed_form_similarity,
    3: affine_from_three_points,
}
