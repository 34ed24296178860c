"""
PROSAC robust model estimation.

PROSAC (progressive sample consensus) draws hypotheses from a growing
prefix of the correspondences, which must be sorted by decreasing
confidence. Good correspondences are therefore tried first and a model
is usually found after far fewer iterations than uniform RANSAC.

Reference: O. Chum and J. Matas, "Matching with PROSAC - Progressive
Sample Consensus", CVPR 2005.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import IntEnum

import numpy as np
from scipy.stats import binom

from planartrack.core.config import RobustSettings
from planartrack.core.errors import (
    MaxIterationsFromProportionError,
    MaxIterationsParamError,
    NoModelFoundError,
    NotEnoughPointsError,
)
from planartrack.geometry.kernels import (
    KERNELS,
    ModelKernel,
    ModelKind,
    as_points,
    normalizer_from_image_size,
    similarity_to_rts,
)

logger = logging.getLogger(__name__)


class ProsacReturnCode(IntEnum):
    """Outcome of a PROSAC run."""
    FOUND_MODEL = 0
    INLIERS_IS_MIN_SAMPLES = 1
    NO_MODEL_FOUND = 2
    NOT_ENOUGH_POINTS = 3
    MAX_ITERATIONS_FROM_PROPORTION_REACHED = 4
    MAX_ITERATIONS_PARAM_REACHED = 5

    @property
    def success(self) -> bool:
        return self in (ProsacReturnCode.FOUND_MODEL, ProsacReturnCode.INLIERS_IS_MIN_SAMPLES)


@dataclass
class ProsacResult:
    """Result of a PROSAC run. `model` is None unless the run succeeded."""
    code: ProsacReturnCode
    kind: ModelKind
    model: np.ndarray | None = None
    inliers: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    iterations: int = 0

    @property
    def success(self) -> bool:
        return self.code.success


def min_non_random_inliers(n: int, min_samples: int, beta: float, psi: float) -> int:
    """
    Smallest inlier count that is unlikely to support a random model.

    The number of correspondences that agree with a wrong model by
    chance follows Binomial(n - m, beta) on top of the m sample points.
    """
    trials = n - min_samples
    if trials <= 0:
        return n
    for j in range(trials + 1):
        if binom.sf(j - 1, trials, beta) < psi:
            return min(min_samples + j, n)
    return n


def _iterations_from_proportion(n_inliers: int, n_total: int, min_samples: int, confidence: float) -> float:
    p_good = (n_inliers / n_total) ** min_samples
    if p_good >= 1.0:
        return 0.0
    if p_good <= 0.0:
        return math.inf
    return math.ceil(math.log(1.0 - confidence) / math.log(1.0 - p_good))


def prosac(
    kernel: ModelKernel,
    x1,
    x2,
    settings: RobustSettings | None = None,
    sizes: tuple[float, float, float, float] | None = None,
    seed: int = 0,
) -> ProsacResult:
    """
    Robustly fit a model to correspondences sorted by decreasing confidence.

    Args:
        kernel: Model kernel (see kernels.KERNELS)
        x1: (N, 2) points at the reference time
        x2: (N, 2) points at the target time
        settings: Inlier threshold, iteration cap and confidence
        sizes: Optional (w1, h1, w2, h2) image sizes used to condition the solvers
        seed: Seed of the sampling generator; runs are reproducible

    Returns:
        ProsacResult; check `code` before using `model`
    """
    settings = settings or RobustSettings()
    x1, x2 = as_points(x1), as_points(x2)
    if len(x1) != len(x2):
        raise ValueError(f"Point count mismatch: {len(x1)} vs {len(x2)}")

    n_total = len(x1)
    m = kernel.min_samples

    n1 = n2 = None
    if sizes is not None and kernel.conditioned:
        w1, h1, w2, h2 = sizes
        n1 = normalizer_from_image_size(w1, h1)
        n2 = normalizer_from_image_size(w2, h2)

    if n_total < m:
        return ProsacResult(ProsacReturnCode.NOT_ENOUGH_POINTS, kernel.kind)

    if n_total == m:
        models = kernel.fit(x1, x2, n1, n2)
        if not models:
            return ProsacResult(ProsacReturnCode.NO_MODEL_FOUND, kernel.kind, iterations=1)
        return ProsacResult(
            ProsacReturnCode.INLIERS_IS_MIN_SAMPLES, kernel.kind, models[0],
            inliers=np.arange(n_total), iterations=1,
        )

    rng = np.random.default_rng(seed)
    threshold2 = settings.inlier_threshold ** 2
    max_iterations = settings.max_iterations

    # T_n: average number of samples drawn only from the first n points
    # among max_iterations samples drawn uniformly from all of them.
    n = m
    t_n = float(max_iterations)
    for i in range(m):
        t_n *= (n - i) / (n_total - i)
    t_n_prime = 1

    k_star = math.inf
    best_model = None
    best_inliers = np.zeros(0, dtype=int)
    k = 0
    stopped_by_param = False

    while True:
        if k >= max_iterations:
            stopped_by_param = True
            break
        if k >= k_star:
            break
        k += 1

        if k == t_n_prime and n < n_total:
            t_n_next = t_n * (n + 1) / (n + 1 - m)
            n += 1
            t_n_prime += math.ceil(t_n_next - t_n)
            t_n = t_n_next

        if t_n_prime < k:
            sample = rng.choice(n, size=m, replace=False)
        else:
            sample = np.append(rng.choice(n - 1, size=m - 1, replace=False), n - 1)

        for model in kernel.fit(x1[sample], x2[sample], n1, n2):
            errors = kernel.residuals(model, x1, x2)
            inliers = np.flatnonzero(errors < threshold2)
            if len(inliers) > len(best_inliers):
                best_model = model
                best_inliers = inliers
                k_star = _iterations_from_proportion(
                    len(inliers), n_total, m, settings.confidence
                )

    if best_model is None:
        return ProsacResult(ProsacReturnCode.NO_MODEL_FOUND, kernel.kind, iterations=k)

    required = min_non_random_inliers(
        n_total, m, settings.random_match_probability, settings.non_randomness_significance
    )
    if len(best_inliers) < required:
        code = (ProsacReturnCode.MAX_ITERATIONS_PARAM_REACHED if stopped_by_param
                else ProsacReturnCode.MAX_ITERATIONS_FROM_PROPORTION_REACHED)
        logger.debug(
            "%s: best consensus %d/%d below non-random minimum %d after %d iterations",
            kernel.kind.name, len(best_inliers), n_total, required, k,
        )
        return ProsacResult(code, kernel.kind, inliers=best_inliers, iterations=k)

    refined = kernel.refit(x1[best_inliers], x2[best_inliers], n1, n2)
    if refined is not None and np.all(np.isfinite(refined)):
        best_model = refined

    return ProsacResult(
        ProsacReturnCode.FOUND_MODEL, kernel.kind, best_model,
        inliers=best_inliers, iterations=k,
    )


def raise_for_code(code: ProsacReturnCode, min_samples: int) -> None:
    """
    Convert a failed PROSAC outcome to its exception.

    Raises:
        NoModelFoundError, NotEnoughPointsError,
        MaxIterationsFromProportionError, MaxIterationsParamError
    """
    if code.success:
        return
    if code == ProsacReturnCode.NO_MODEL_FOUND:
        raise NoModelFoundError(
            "Could not find a model for the given correspondences.", code, min_samples
        )
    if code == ProsacReturnCode.NOT_ENOUGH_POINTS:
        raise NotEnoughPointsError(
            f"This model requires a minimum of {min_samples} correspondences.", code, min_samples
        )
    if code == ProsacReturnCode.MAX_ITERATIONS_FROM_PROPORTION_REACHED:
        raise MaxIterationsFromProportionError(
            "Maximum iterations computed from outliers proportion reached", code, min_samples
        )
    raise MaxIterationsParamError("Maximum solver iterations reached", code, min_samples)


def run_prosac_for_model(
    kind: ModelKind,
    x1,
    x2,
    w1: float,
    h1: float,
    w2: float,
    h2: float,
    settings: RobustSettings | None = None,
) -> np.ndarray:
    """Run PROSAC for a model class and return the model or raise."""
    kernel = KERNELS[kind]
    result = prosac(kernel, x1, x2, settings, sizes=(w1, h1, w2, h2))
    raise_for_code(result.code, kernel.min_samples)
    return result.model


def compute_translation_from_n_points(x1, x2, w1, h1, w2, h2, settings=None) -> tuple[float, float]:
    """Robust translation (tx, ty)."""
    model = run_prosac_for_model(ModelKind.TRANSLATION, x1, x2, w1, h1, w2, h2, settings)
    return float(model[0, 2]), float(model[1, 2])


def compute_similarity_from_n_points(x1, x2, w1, h1, w2, h2, settings=None) -> tuple[float, float, float, float]:
    """
    Robust similarity.

    Returns:
        (tx, ty, rotation in degrees, scale)
    """
    model = run_prosac_for_model(ModelKind.SIMILARITY, x1, x2, w1, h1, w2, h2, settings)
    tx, ty, scale, rotation = similarity_to_rts(model)
    return tx, ty, math.degrees(rotation), scale


def compute_homography_from_n_points(x1, x2, w1, h1, w2, h2, settings=None) -> np.ndarray:
    """Robust 3x3 homography."""
    return run_prosac_for_model(ModelKind.HOMOGRAPHY, x1, x2, w1, h1, w2, h2, settings)


def compute_fundamental_from_n_points(x1, x2, w1, h1, w2, h2, settings=None) -> np.ndarray:
    """Robust 3x3 fundamental matrix."""
    return run_prosac_for_model(ModelKind.FUNDAMENTAL, x1, x2, w1, h1, w2, h2, settings)
