"""
Geometry module - Model kernels and robust estimation.

This module provides:
- Closed-form minimal solvers (translation, similarity, affine,
  homography, fundamental matrix) behind the ModelKind tagged variant
- PROSAC robust fitting with classified failure codes

Example:
    >>> from planartrack.geometry import compute_similarity_from_n_points
    >>> tx, ty, rot, scale = compute_similarity_from_n_points(x1, x2, 1920, 1080, 1920, 1080)
"""

from planartrack.geometry.kernels import (
    ModelKind,
    KERNELS,
    CLOSED_FORM,
    apply_homography,
    similarity_to_rts,
)
from planartrack.geometry.prosac import (
    ProsacReturnCode,
    ProsacResult,
    prosac,
    raise_for_code,
    compute_translation_from_n_points,
    compute_similarity_from_n_points,
    compute_homography_from_n_points,
    compute_fundamental_from_n_points,
)

__all__ = [
    "ModelKind",
    "KERNELS",
    "CLOSED_FORM",
    "apply_homography",
    "similarity_to_rts",
    "ProsacReturnCode",
    "ProsacResult",
    "prosac",
    "raise_for_code",
    "compute_translation_from_n_points",
    "compute_similarity_from_n_points",
    "compute_homography_from_n_points",
    "compute_fundamental_from_n_points",
]
