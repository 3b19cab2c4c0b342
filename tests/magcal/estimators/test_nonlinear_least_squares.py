"""
Unit tests for the Levenberg-Marquardt solver.

Tests cover:
    - Convergence on exact and noisy data
    - Weighted fits and fit statistics (chi-square, MSE)
    - Failure modes: singular information matrix, damping cap, non-finite residuals
    - Iteration cap warning
    - Gauge-deficient problems
"""

import unittest

import numpy as np
import pytest
from numpy.testing import assert_allclose

from magcal.errors import FittingError, NumericalError
from magcal.estimators.nonlinear_least_squares import NonlinearLSResult, levenberg_marquardt


class TestLevenbergMarquardtExponential(unittest.TestCase):
    """Test LM on y = a·exp(k·t)."""

    def setUp(self):
        self.t = np.linspace(0.0, 1.0, 20)
        self.true_x = np.array([2.0, -1.5])

        def h(x):
            return x[0] * np.exp(x[1] * self.t)

        def jacobian(x):
            e = np.exp(x[1] * self.t)
            return np.column_stack([e, x[0] * self.t * e])

        self.h = h
        self.jacobian = jacobian

    def test_exact_measurements_convergence(self):
        y = self.h(self.true_x)

        result = levenberg_marquardt(self.h, self.jacobian, y, x0=np.array([1.0, 0.0]))

        self.assertIsInstance(result, NonlinearLSResult)
        self.assertTrue(result.converged)
        assert_allclose(result.x, self.true_x, rtol=1e-8)
        self.assertLess(result.chi_sq, 1e-20)
        self.assertLess(result.iterations, 100)

    def test_noisy_measurements_statistics(self):
        rng = np.random.default_rng(42)
        sigma = 0.01
        y = self.h(self.true_x) + sigma * rng.standard_normal(len(self.t))
        weights = np.full(len(self.t), 1.0 / sigma ** 2)

        result = levenberg_marquardt(self.h, self.jacobian, y, x0=np.array([1.0, 0.0]), weights=weights)

        self.assertTrue(result.converged)
        assert_allclose(result.x, self.true_x, atol=0.05)
        assert_allclose(result.chi_sq, np.sum(weights * result.residuals ** 2), rtol=1e-12)
        assert_allclose(result.mse, np.mean(result.residuals ** 2), rtol=1e-12)
        assert_allclose(result.cost, 0.5 * result.chi_sq)

        # Covariance is symmetric positive definite
        assert_allclose(result.covariance, result.covariance.T, rtol=1e-10)
        self.assertTrue(np.all(np.linalg.eigvalsh(result.covariance) > 0))

    def test_covariance_can_be_skipped(self):
        y = self.h(self.true_x)

        result = levenberg_marquardt(
            self.h, self.jacobian, y, x0=np.array([1.0, 0.0]), return_covariance=False
        )

        self.assertIsNone(result.covariance)

    def test_iteration_cap_warns(self):
        y = self.h(self.true_x)

        with pytest.warns(UserWarning, match="max_iter"):
            result = levenberg_marquardt(self.h, self.jacobian, y, x0=np.array([1.0, 0.0]), max_iter=1)

        self.assertFalse(result.converged)
        self.assertEqual(result.iterations, 1)

    def test_wrong_jacobian_hits_damping_cap(self):
        y = self.h(self.true_x)

        def uphill(x):
            return -self.jacobian(x)

        with pytest.raises(FittingError, match="damping"):
            levenberg_marquardt(self.h, uphill, y, x0=np.array([1.0, 0.0]))

    def test_non_finite_initial_residuals_raise(self):
        y = self.h(self.true_x)
        y[3] = np.nan

        with pytest.raises(FittingError, match="not finite"):
            levenberg_marquardt(self.h, self.jacobian, y, x0=np.array([1.0, 0.0]))

    def test_invalid_inputs(self):
        y = self.h(self.true_x)
        with pytest.raises(ValueError, match="weights"):
            levenberg_marquardt(self.h, self.jacobian, y, np.array([1.0, 0.0]), weights=-np.ones(20))
        with pytest.raises(ValueError, match="y must be 1D"):
            levenberg_marquardt(self.h, self.jacobian, y.reshape(4, 5), np.array([1.0, 0.0]))


class TestLevenbergMarquardtSingular(unittest.TestCase):
    """Test detection of singular information matrices and gauge handling."""

    def setUp(self):
        self.t = np.linspace(-1.0, 1.0, 10)

        # Only the sum x0 + x1 is observable
        def h(x):
            return (x[0] + x[1]) * self.t

        def jacobian(x):
            return np.column_stack([self.t, self.t])

        self.h = h
        self.jacobian = jacobian
        self.y = 3.0 * self.t

    def test_unobserved_parameter_raises(self):
        def h(x):
            return x[0] * self.t

        def jacobian(x):
            return np.column_stack([self.t, np.zeros_like(self.t)])

        with pytest.raises(FittingError, match="singular"):
            levenberg_marquardt(h, jacobian, self.y, x0=np.zeros(2))

    def test_rank_deficient_raises_without_gauge(self):
        with pytest.raises(FittingError, match="rank"):
            levenberg_marquardt(self.h, self.jacobian, self.y, x0=np.array([0.5, 0.5]))

    def test_fitting_error_is_numerical_error(self):
        with pytest.raises(NumericalError):
            levenberg_marquardt(self.h, self.jacobian, self.y, x0=np.array([0.5, 0.5]))

    def test_declared_gauge_is_solved(self):
        result = levenberg_marquardt(
            self.h, self.jacobian, self.y, x0=np.array([0.5, 0.5]), rank_deficiency=1
        )

        self.assertTrue(result.converged)
        assert_allclose(result.x[0] + result.x[1], 3.0, rtol=1e-8)
        self.assertTrue(np.all(np.isfinite(result.covariance)))

    def test_invalid_rank_deficiency(self):
        with pytest.raises(ValueError, match="rank_deficiency"):
            levenberg_marquardt(self.h, self.jacobian, self.y, x0=np.zeros(2), rank_deficiency=2)


if __name__ == "__main__":
    unittest.main()
