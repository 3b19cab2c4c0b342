"""
Unit tests for measurement and result data types.
"""

import unittest

import numpy as np
import pytest
from numpy.testing import assert_allclose
from scipy.stats import chi2

from magcal.calibration import CalibrationResult, MagnetometerMeasurement
from magcal.models import HARD_IRON_NAMES, SOFT_IRON_NAMES


class TestMagnetometerMeasurement(unittest.TestCase):
    """Test measurement validation."""

    def test_arrays_are_read_only_copies(self):
        b_meas = np.array([1e-5, 2e-5, 3e-5])

        measurement = MagnetometerMeasurement(b_meas=b_meas, b_true=b_meas)
        b_meas[0] = 0.0

        self.assertEqual(measurement.b_meas[0], 1e-5)
        with pytest.raises(ValueError):
            measurement.b_true[0] = 0.0

    def test_weight(self):
        self.assertAlmostEqual(MagnetometerMeasurement(b_meas=np.zeros(3), std=4.0).weight, 0.25)

    def test_invalid_measurement(self):
        with pytest.raises(ValueError, match="shape"):
            MagnetometerMeasurement(b_meas=np.zeros(2))
        with pytest.raises(ValueError, match="std"):
            MagnetometerMeasurement(b_meas=np.zeros(3), std=0.0)
        with pytest.raises(ValueError, match="reference_norm"):
            MagnetometerMeasurement(b_meas=np.zeros(3), reference_norm=-1.0)

    def test_degenerate_weights_are_rejected(self):
        with pytest.raises(ValueError, match="std must be positive and finite"):
            MagnetometerMeasurement(b_meas=np.zeros(3), std=np.inf)
        with pytest.raises(ValueError, match="reference_norm"):
            MagnetometerMeasurement(b_meas=np.zeros(3), reference_norm=0.0)
        with pytest.raises(ValueError, match="reference_norm"):
            MagnetometerMeasurement(b_meas=np.zeros(3), reference_norm=np.nan)


class TestCalibrationResult(unittest.TestCase):
    """Test result accessors and correction."""

    def setUp(self):
        self.hard_iron = np.array([1e-6, -2e-6, 3e-6])
        self.soft_iron = np.array([[0.01, 0.002, 0.0], [0.001, -0.02, 0.003], [0.0, 0.0, 0.015]])

    def make_result(self, **kwargs):
        values = dict(
            hard_iron=self.hard_iron,
            soft_iron=self.soft_iron,
            covariance=np.diag(np.arange(1.0, 13.0)),
            chi_sq=30.0,
            mse=1e-14,
            dof=28,
        )
        values.update(kwargs)
        return CalibrationResult(**values)

    def test_parameters_by_name(self):
        parameters = self.make_result().parameters()

        self.assertEqual(tuple(parameters), HARD_IRON_NAMES + SOFT_IRON_NAMES)
        self.assertEqual(parameters["by"], -2e-6)
        self.assertEqual(parameters["myx"], 0.001)
        self.assertEqual(parameters["myz"], 0.003)

    def test_as_array_follows_covariance_layout(self):
        values = self.make_result().as_array()

        self.assertEqual(len(values), 12)
        assert_allclose(values[:3], self.hard_iron)
        self.assertEqual(values[3 + SOFT_IRON_NAMES.index("mxy")], 0.002)

    def test_standard_deviations(self):
        result = self.make_result()

        assert_allclose(result.standard_deviations, np.sqrt(np.arange(1.0, 13.0)))
        assert_allclose(result.hard_iron_covariance, np.diag([1.0, 2.0, 3.0]))

    def test_known_hard_iron_layout(self):
        result = self.make_result(covariance=np.eye(9), hard_iron_estimated=False)

        self.assertEqual(result.param_names, SOFT_IRON_NAMES)
        self.assertEqual(len(result.as_array()), 9)
        self.assertIsNone(result.hard_iron_covariance)

    def test_covariance_shape_is_checked(self):
        with pytest.raises(ValueError, match="covariance"):
            self.make_result(covariance=np.eye(9))

    def test_missing_covariance(self):
        result = self.make_result(covariance=None)

        self.assertIsNone(result.standard_deviations)
        self.assertIsNone(result.hard_iron_covariance)

    def test_p_value(self):
        result = self.make_result()

        self.assertAlmostEqual(result.p_value, chi2.sf(30.0, 28))
        self.assertTrue(np.isnan(self.make_result(dof=0).p_value))

    def test_correct_inverts_distortion(self):
        result = self.make_result()
        b_true = np.array([[2.0e-5, 1.0e-6, 4.0e-5], [-3.0e-5, 2.0e-5, 1.0e-5]])
        b_meas = self.hard_iron + b_true @ (np.eye(3) + self.soft_iron).T

        assert_allclose(result.correct(b_meas), b_true, rtol=1e-12)
        assert_allclose(result.correct(b_meas[0]), b_true[0], rtol=1e-12)

    def test_result_is_read_only(self):
        result = self.make_result()
        with pytest.raises(ValueError):
            result.soft_iron[0, 0] = 1.0


if __name__ == "__main__":
    unittest.main()
