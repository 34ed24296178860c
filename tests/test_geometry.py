"""
Tests for the model kernels and PROSAC.
"""

import math

import pytest
import numpy as np


def _apply(h, pts):
    pts = np.asarray(pts, dtype=np.float64)
    p = np.hstack([pts, np.ones((len(pts), 1))]) @ np.asarray(h).T
    return p[:, :2] / p[:, 2:3]


class TestKernels:
    """Tests for closed-form solvers."""

    def test_translation_from_one_point(self):
        """Test the one-point translation."""
        from planartrack.geometry.kernels import translation_from_one_point

        m = translation_from_one_point((1, 2), (4, 6))
        assert np.allclose(m, [[1, 0, 3], [0, 1, 4], [0, 0, 1]])

    def test_similarity_from_two_points(self):
        """Test the two-point similarity and its decomposition."""
        from planartrack.geometry.kernels import similarity_from_two_points, similarity_to_rts

        angle = math.radians(30)
        scale = 2.0
        r = scale * np.array([[math.cos(angle), -math.sin(angle)], [math.sin(angle), math.cos(angle)]])
        src = np.array([[0.0, 0.0], [10.0, 5.0]])
        dst = src @ r.T + [3.0, -1.0]

        m = similarity_from_two_points(src[0], src[1], dst[0], dst[1])
        tx, ty, s, rot = similarity_to_rts(m)
        assert (tx, ty) == pytest.approx((3.0, -1.0))
        assert s == pytest.approx(2.0)
        assert rot == pytest.approx(angle)

    def test_similarity_degenerate(self):
        """Test that coincident source points give no model."""
        from planartrack.geometry.kernels import similarity_from_two_points

        assert similarity_from_two_points((1, 1), (1, 1), (0, 0), (2, 2)) is None

    def test_affine_exact_three_points(self):
        """Test that three exact correspondences are reproduced."""
        from planartrack.geometry.kernels import affine_from_three_points

        a = np.array([[1.2, 0.3, 5.0], [-0.1, 0.9, -2.0], [0.0, 0.0, 1.0]])
        src = np.array([[0.0, 0.0], [100.0, 10.0], [20.0, 80.0]])
        dst = _apply(a, src)

        m = affine_from_three_points(src, dst)
        assert np.allclose(_apply(m, src), dst, atol=1e-9)
        assert np.allclose(m, a)

    def test_affine_collinear(self):
        """Test that collinear points give no model."""
        from planartrack.geometry.kernels import affine_from_three_points

        src = [[0, 0], [1, 1], [2, 2]]
        assert affine_from_three_points(src, src) is None

    def test_homography_exact(self):
        """Test the DLT on exact correspondences."""
        from planartrack.geometry.kernels import homography_from_points

        h = np.array([[1.1, 0.05, 5.0], [0.02, 0.95, -3.0], [1e-4, 2e-4, 1.0]])
        src = np.array([[10, 10], [600, 20], [620, 450], [15, 470], [300, 240]], dtype=float)
        dst = _apply(h, src)

        found = homography_from_points(src, dst)
        assert np.allclose(found, h, atol=1e-8)

    def test_apply_homography_identity(self):
        """Test applying the identity."""
        from planartrack.geometry import apply_homography

        pts = [(1.0, 2.0), (3.0, 4.0)]
        assert np.allclose(apply_homography(np.eye(3), pts), pts)

    def test_closed_form_table(self):
        """Test the exact solver table by point count."""
        from planartrack.geometry import CLOSED_FORM

        assert sorted(CLOSED_FORM) == [1, 2, 3]
        m = CLOSED_FORM[1](np.array([[0.0, 0.0]]), np.array([[2.0, -1.0]]))
        assert np.allclose(m[:2, 2], [2.0, -1.0])


class TestProsac:
    """Tests for the robust estimator."""

    def test_single_point_is_closed_form(self):
        """Test that one correspondence skips the sampling loop."""
        from planartrack.geometry import KERNELS, ModelKind, ProsacReturnCode, prosac

        result = prosac(KERNELS[ModelKind.TRANSLATION], [[1.0, 2.0]], [[4.0, 6.0]])
        assert result.code == ProsacReturnCode.INLIERS_IS_MIN_SAMPLES
        assert result.iterations == 1
        assert np.allclose(result.model[:2, 2], [3.0, 4.0])

    def test_translation_rejects_outliers(self):
        """Test robust translation with outliers at the end of the list."""
        from planartrack.geometry import compute_translation_from_n_points

        rng = np.random.default_rng(1)
        x1 = rng.uniform(0, 500, size=(10, 2))
        x2 = x1 + [7.0, -3.0]
        x2[8] += [40.0, 25.0]
        x2[9] += [-60.0, 10.0]

        tx, ty = compute_translation_from_n_points(x1, x2, 640, 480, 640, 480)
        assert (tx, ty) == pytest.approx((7.0, -3.0))

    def test_similarity(self):
        """Test robust similarity (degrees, scale)."""
        from planartrack.geometry import compute_similarity_from_n_points

        angle = math.radians(10)
        r = 1.2 * np.array([[math.cos(angle), -math.sin(angle)], [math.sin(angle), math.cos(angle)]])
        x1 = np.array([[100, 100], [400, 120], [380, 300], [120, 320], [250, 200]], dtype=float)
        x2 = x1 @ r.T + [5.0, -3.0]

        tx, ty, rot, scale = compute_similarity_from_n_points(x1, x2, 640, 480, 640, 480)
        assert (tx, ty) == pytest.approx((5.0, -3.0), abs=1e-6)
        assert rot == pytest.approx(10.0)
        assert scale == pytest.approx(1.2)

    def test_homography(self):
        """Test robust homography on exact correspondences."""
        from planartrack.geometry import compute_homography_from_n_points

        h = np.array([[1.05, 0.02, 4.0], [-0.03, 0.98, 2.0], [5e-5, -2e-5, 1.0]])
        x1 = np.array([[50, 40], [590, 60], [600, 430], [40, 440], [320, 240], [200, 100]], dtype=float)
        x2 = _apply(h, x1)

        found = compute_homography_from_n_points(x1, x2, 640, 480, 640, 480)
        assert np.allclose(_apply(found, x1), x2, atol=1e-6)

    def test_not_enough_points(self):
        """Test the not-enough-points failure."""
        from planartrack.geometry import compute_homography_from_n_points
        from planartrack.core.errors import NotEnoughPointsError

        pts = np.array([[0, 0], [10, 0], [10, 10]], dtype=float)
        with pytest.raises(NotEnoughPointsError) as info:
            compute_homography_from_n_points(pts, pts, 640, 480, 640, 480)
        assert info.value.min_samples == 4

    def test_fundamental_shape(self):
        """Test that the fundamental matrix has rank 2."""
        from planartrack.geometry import compute_fundamental_from_n_points

        rng = np.random.default_rng(3)
        world = np.column_stack([rng.uniform(-1, 1, 12), rng.uniform(-1, 1, 12), rng.uniform(4, 8, 12)])
        k = np.array([[500, 0, 320], [0, 500, 240], [0, 0, 1]], dtype=float)
        p1 = world @ k.T
        a = math.radians(5)
        rot = np.array([[math.cos(a), 0, math.sin(a)], [0, 1, 0], [-math.sin(a), 0, math.cos(a)]])
        moved = world @ rot.T + [0.3, 0.1, 0.2]
        p2 = moved @ k.T
        x1 = p1[:, :2] / p1[:, 2:]
        x2 = p2[:, :2] / p2[:, 2:]

        f = compute_fundamental_from_n_points(x1, x2, 640, 480, 640, 480)
        assert f.shape == (3, 3)
        assert np.linalg.matrix_rank(f, tol=1e-8) == 2

    def test_raise_for_code(self):
        """Test the return code to exception mapping."""
        from planartrack.geometry import ProsacReturnCode, raise_for_code
        from planartrack.core.errors import (
            MaxIterationsFromProportionError,
            MaxIterationsParamError,
            NoModelFoundError,
            RobustFitError,
        )

        raise_for_code(ProsacReturnCode.FOUND_MODEL, 4)
        raise_for_code(ProsacReturnCode.INLIERS_IS_MIN_SAMPLES, 4)
        with pytest.raises(NoModelFoundError):
            raise_for_code(ProsacReturnCode.NO_MODEL_FOUND, 4)
        with pytest.raises(MaxIterationsFromProportionError):
            raise_for_code(ProsacReturnCode.MAX_ITERATIONS_FROM_PROPORTION_REACHED, 4)
        with pytest.raises(MaxIterationsParamError) as info:
            raise_for_code(ProsacReturnCode.MAX_ITERATIONS_PARAM_REACHED, 4)
        assert isinstance(info.value, RobustFitError)
        assert info.value.code == ProsacReturnCode.MAX_ITERATIONS_PARAM_REACHED

    def test_min_non_random_inliers(self):
        """Test the non-randomness bound."""
        from planartrack.geometry.prosac import min_non_random_inliers

        assert min_non_random_inliers(4, 1, 0.01, 0.05) == 2
        assert min_non_random_inliers(4, 4, 0.01, 0.05) == 4
