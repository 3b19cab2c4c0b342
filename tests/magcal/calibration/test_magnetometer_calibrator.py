"""
Unit tests for the nonlinear magnetometer calibrator.

Tests cover:
    - Bias recovery from the minimum number of noiseless frame measurements
    - Round-trip recovery for frame and norm measurements
    - Common-axis and known-hard-iron variants
    - Readiness checks before any numerical work
    - Run locking, listener notifications and failure handling
"""

import threading
import unittest
from unittest import mock

import numpy as np
import pytest
from numpy.testing import assert_allclose

from magcal.calibration import (
    CalibrationListener,
    CalibratorConfig,
    MagnetometerCalibrator,
    MagnetometerMeasurement,
    MeasurementType,
    RobustCalibratorConfig,
)
from magcal.errors import (
    CalibrationFailure,
    ConfigurationError,
    FittingError,
    LockedError,
    NotReadyError,
)
from magcal.sim import generate_measurements, random_soft_iron

FIELD_NORM = 4.8e-5
BIAS = np.array([1e-6, 2e-6, -1e-6])


def tetrahedron_fields():
    directions = np.array([[1, 1, 1], [1, -1, -1], [-1, 1, -1], [-1, -1, 1]], dtype=float)
    return FIELD_NORM * directions / np.linalg.norm(directions, axis=1, keepdims=True)


def frame_measurements(b_true, hard_iron, soft_iron):
    b_meas = hard_iron + b_true @ (np.eye(3) + soft_iron).T
    return [MagnetometerMeasurement(b_meas=m, b_true=t) for m, t in zip(b_meas, b_true)]


class RecordingListener(CalibrationListener):
    def __init__(self):
        self.events = []

    def on_calibrate_start(self, calibrator):
        self.events.append("start")

    def on_calibrate_end(self, calibrator):
        self.events.append("end")


class TestFrameCalibration(unittest.TestCase):
    """Test calibration against known field vectors."""

    def test_bias_from_minimum_noiseless_measurements(self):
        measurements = frame_measurements(tetrahedron_fields(), BIAS, np.zeros((3, 3)))
        calibrator = MagnetometerCalibrator(measurements, MeasurementType.FRAME)

        result = calibrator.calibrate()

        self.assertEqual(calibrator.minimum_measurements, 4)
        assert_allclose(result.hard_iron, BIAS, atol=1e-9)
        assert_allclose(result.soft_iron, 0.0, atol=1e-9)
        self.assertEqual(result.dof, 0)

    def test_noiseless_round_trip(self):
        rng = np.random.default_rng(11)
        soft_iron = random_soft_iron(rng)
        measurements = generate_measurements(20, BIAS, soft_iron, std=0.0, seed=11)

        result = MagnetometerCalibrator(measurements).calibrate()

        assert_allclose(result.hard_iron, BIAS, atol=1e-12)
        assert_allclose(result.soft_iron, soft_iron, atol=1e-9)
        self.assertTrue(result.converged)

    def test_noisy_fit_statistics(self):
        rng = np.random.default_rng(5)
        soft_iron = random_soft_iron(rng)
        measurements = generate_measurements(200, BIAS, soft_iron, seed=5)

        result = MagnetometerCalibrator(measurements).calibrate()

        self.assertEqual(result.covariance.shape, (12, 12))
        self.assertEqual(result.dof, 600 - 12)
        self.assertTrue(0.7 < result.chi_sq / result.dof < 1.3)
        errors = np.abs(result.hard_iron - BIAS)
        self.assertTrue(np.all(errors < 5.0 * result.standard_deviations[:3]))
        self.assertTrue(0.0 <= result.p_value <= 1.0)

    def test_common_axis_lower_couplings_are_zero(self):
        rng = np.random.default_rng(8)
        soft_iron = random_soft_iron(rng, common_axis_used=True)
        measurements = generate_measurements(50, BIAS, soft_iron, seed=8)
        config = CalibratorConfig(common_axis_used=True)

        result = MagnetometerCalibrator(measurements, config=config).calibrate()

        self.assertEqual(result.soft_iron[1, 0], 0.0)
        self.assertEqual(result.soft_iron[2, 0], 0.0)
        self.assertEqual(result.soft_iron[2, 1], 0.0)
        for name in ("myx", "mzx", "mzy"):
            k = result.param_names.index(name)
            assert_allclose(result.covariance[k], 0.0)
        assert_allclose(result.hard_iron, BIAS, atol=3e-7)

    def test_known_hard_iron(self):
        rng = np.random.default_rng(2)
        soft_iron = random_soft_iron(rng)
        measurements = generate_measurements(30, BIAS, soft_iron, std=0.0, seed=2)
        config = CalibratorConfig(known_hard_iron=BIAS)

        result = MagnetometerCalibrator(measurements, config=config).calibrate()

        self.assertFalse(result.hard_iron_estimated)
        assert_allclose(result.hard_iron, BIAS)
        assert_allclose(result.soft_iron, soft_iron, atol=1e-9)
        self.assertEqual(result.covariance.shape, (9, 9))

    def test_estimated_values_follow_result(self):
        measurements = frame_measurements(tetrahedron_fields(), BIAS, np.zeros((3, 3)))
        calibrator = MagnetometerCalibrator(measurements)
        self.assertIsNone(calibrator.estimated_hard_iron)

        result = calibrator.calibrate()

        self.assertIs(calibrator.result, result)
        assert_allclose(calibrator.estimated_hard_iron, result.hard_iron)
        assert_allclose(calibrator.estimated_soft_iron, result.soft_iron)


class TestNormCalibration(unittest.TestCase):
    """Test calibration against a known field magnitude."""

    def setUp(self):
        rng = np.random.default_rng(21)
        self.hard_iron = np.array([3e-6, -2e-6, 1.5e-6])
        self.soft_iron = random_soft_iron(rng)

    def test_noiseless_round_trip(self):
        measurements = generate_measurements(
            30, self.hard_iron, self.soft_iron, std=0.0, with_b_true=False, seed=21
        )

        result = MagnetometerCalibrator(measurements, MeasurementType.NORM).calibrate()

        # Soft iron is only defined up to a rotation; M Mᵀ is not
        M_true = np.eye(3) + self.soft_iron
        M = np.eye(3) + result.soft_iron
        assert_allclose(result.hard_iron, self.hard_iron, atol=1e-10)
        assert_allclose(M @ M.T, M_true @ M_true.T, atol=1e-7)
        self.assertEqual(result.covariance.shape, (12, 12))

    def test_global_ground_truth_norm(self):
        measurements = generate_measurements(
            30, self.hard_iron, self.soft_iron, std=0.0, with_b_true=False, seed=4
        )
        norm = measurements[0].reference_norm
        stripped = [MagnetometerMeasurement(b_meas=m.b_meas) for m in measurements]
        config = CalibratorConfig(ground_truth_norm=norm)

        result = MagnetometerCalibrator(stripped, "norm", config=config).calibrate()

        assert_allclose(result.hard_iron, self.hard_iron, atol=1e-10)

    def test_common_axis_is_unique(self):
        soft_iron = random_soft_iron(np.random.default_rng(6), common_axis_used=True)
        measurements = generate_measurements(
            30, self.hard_iron, soft_iron, std=0.0, with_b_true=False, seed=6
        )
        config = CalibratorConfig(common_axis_used=True)

        result = MagnetometerCalibrator(measurements, MeasurementType.NORM, config=config).calibrate()

        assert_allclose(result.hard_iron, self.hard_iron, atol=1e-10)
        assert_allclose(result.soft_iron, soft_iron, atol=1e-7)

    def test_minimum_measurements_boundary(self):
        measurements = generate_measurements(
            13, self.hard_iron, self.soft_iron, std=0.0, with_b_true=False, seed=9
        )

        MagnetometerCalibrator(measurements, MeasurementType.NORM).calibrate()

        with pytest.raises(NotReadyError):
            MagnetometerCalibrator(measurements[:12], MeasurementType.NORM).calibrate()

    def test_missing_ground_truth_norm(self):
        measurements = [MagnetometerMeasurement(b_meas=np.full(3, 1e-5)) for _ in range(20)]
        calibrator = MagnetometerCalibrator(measurements, MeasurementType.NORM)

        self.assertFalse(calibrator.is_ready)
        with pytest.raises(NotReadyError):
            calibrator.calibrate()


class TestReadiness(unittest.TestCase):
    """Test readiness checks."""

    def test_below_minimum_does_not_call_fitter(self):
        b_true = tetrahedron_fields()[:2]
        measurements = frame_measurements(b_true, BIAS, np.zeros((3, 3)))
        config = CalibratorConfig(known_hard_iron=BIAS)
        calibrator = MagnetometerCalibrator(measurements, MeasurementType.FRAME, config=config)

        with mock.patch("magcal.calibration.problem.levenberg_marquardt") as fitter:
            with pytest.raises(NotReadyError):
                calibrator.calibrate()

        self.assertEqual(calibrator.minimum_measurements, 3)
        fitter.assert_not_called()
        self.assertIsNone(calibrator.result)

    def test_known_hard_iron_minimum_succeeds(self):
        measurements = frame_measurements(tetrahedron_fields()[:3], BIAS, np.zeros((3, 3)))
        config = CalibratorConfig(known_hard_iron=BIAS)

        result = MagnetometerCalibrator(measurements, config=config).calibrate()

        assert_allclose(result.soft_iron, 0.0, atol=1e-9)

    def test_frame_needs_b_true(self):
        measurements = [MagnetometerMeasurement(b_meas=np.ones(3) * 1e-5) for _ in range(10)]

        with pytest.raises(NotReadyError):
            MagnetometerCalibrator(measurements, MeasurementType.FRAME).calibrate()

    def test_unknown_measurement_type(self):
        with pytest.raises(ConfigurationError, match="measurement type"):
            MagnetometerCalibrator([], "vector")

    def test_wrong_config_type(self):
        calibrator = MagnetometerCalibrator()
        with pytest.raises(ConfigurationError, match="CalibratorConfig"):
            calibrator.config = "fast"

    def test_robust_config_is_accepted(self):
        calibrator = MagnetometerCalibrator(config=RobustCalibratorConfig())

        self.assertIsInstance(calibrator.config, CalibratorConfig)


class TestRunSemantics(unittest.TestCase):
    """Test locking, notifications and failure handling."""

    def setUp(self):
        rng = np.random.default_rng(13)
        self.soft_iron = random_soft_iron(rng)
        self.measurements = generate_measurements(30, BIAS, self.soft_iron, seed=13)

    def test_listener_notified(self):
        listener = RecordingListener()

        MagnetometerCalibrator(self.measurements, listener=listener).calibrate()

        self.assertEqual(listener.events, ["start", "end"])

    def test_reentrant_calls_are_locked(self):
        errors = []

        class Reentrant(CalibrationListener):
            def on_calibrate_start(self, calibrator):
                for action in (
                    calibrator.calibrate,
                    lambda: setattr(calibrator, "measurements", []),
                    lambda: setattr(calibrator, "config", CalibratorConfig()),
                    lambda: setattr(calibrator, "listener", None),
                ):
                    try:
                        action()
                    except LockedError as e:
                        errors.append(e)

        calibrator = MagnetometerCalibrator(self.measurements, listener=Reentrant())
        result = calibrator.calibrate()

        self.assertEqual(len(errors), 4)
        self.assertIs(calibrator.result, result)
        self.assertFalse(calibrator.is_running)

    def test_concurrent_call_is_rejected(self):
        started = threading.Event()
        release = threading.Event()
        outcome = {}

        class Slow(CalibrationListener):
            def on_calibrate_start(self, calibrator):
                started.set()
                release.wait(10.0)

        calibrator = MagnetometerCalibrator(self.measurements, listener=Slow())

        def run():
            outcome["result"] = calibrator.calibrate()

        worker = threading.Thread(target=run)
        worker.start()
        try:
            self.assertTrue(started.wait(10.0))
            self.assertTrue(calibrator.is_running)
            with pytest.raises(ConfigurationError):
                calibrator.calibrate()
        finally:
            release.set()
            worker.join(10.0)

        expected = MagnetometerCalibrator(self.measurements).calibrate()
        assert_allclose(outcome["result"].hard_iron, expected.hard_iron)
        assert_allclose(outcome["result"].soft_iron, expected.soft_iron)
        self.assertIs(calibrator.result, outcome["result"])

    def test_failure_keeps_previous_result(self):
        calibrator = MagnetometerCalibrator(self.measurements)
        previous = calibrator.calibrate()

        b_true = np.tile([2.0e-5, 1.0e-5, 4.0e-5], (10, 1))
        calibrator.measurements = frame_measurements(b_true, BIAS, np.zeros((3, 3)))

        with pytest.raises(CalibrationFailure) as excinfo:
            calibrator.calibrate()

        self.assertIsInstance(excinfo.value.__cause__, FittingError)
        self.assertIs(calibrator.result, previous)
        self.assertFalse(calibrator.is_running)


if __name__ == "__main__":
    unittest.main()
