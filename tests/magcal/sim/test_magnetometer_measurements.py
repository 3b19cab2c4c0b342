"""
Unit tests for synthetic magnetometer data generation.
"""

import unittest

import numpy as np
from numpy.testing import assert_allclose

from magcal.calibration import FrameRecord, MeasurementPreprocessor, PositionRecord
from magcal.sensors import DipoleReferenceField
from magcal.sim import (
    DEFAULT_LATITUDE,
    DEFAULT_LONGITUDE,
    distort,
    euler_to_rotation_matrix,
    generate_frame_records,
    generate_measurements,
    generate_position_records,
    random_attitudes,
    random_soft_iron,
)

HARD_IRON = np.array([1e-6, -2e-6, 0.5e-6])


class TestRotations(unittest.TestCase):
    """Test attitude helpers."""

    def test_yaw_rotation(self):
        C = euler_to_rotation_matrix(0.0, 0.0, np.pi / 2)

        # Body x-axis points East
        assert_allclose(C @ np.array([1.0, 0.0, 0.0]), [0.0, 1.0, 0.0], atol=1e-15)

    def test_random_attitudes_are_rotations(self):
        attitudes = random_attitudes(10, np.random.default_rng(0))

        self.assertEqual(attitudes.shape, (10, 3, 3))
        for C in attitudes:
            assert_allclose(C @ C.T, np.eye(3), atol=1e-12)
            self.assertAlmostEqual(np.linalg.det(C), 1.0)


class TestSoftIron(unittest.TestCase):
    """Test soft-iron helpers."""

    def test_scale_bound(self):
        soft_iron = random_soft_iron(np.random.default_rng(1), scale=0.05)

        self.assertTrue(np.all(np.abs(soft_iron) <= 0.05))

    def test_common_axis_is_upper_triangular(self):
        soft_iron = random_soft_iron(np.random.default_rng(1), common_axis_used=True)

        assert_allclose(np.tril(soft_iron, -1), 0.0)

    def test_distort(self):
        soft_iron = random_soft_iron(np.random.default_rng(2))
        b_true = np.array([2e-5, 0.0, 4e-5])

        assert_allclose(distort(b_true, HARD_IRON, soft_iron), HARD_IRON + (np.eye(3) + soft_iron) @ b_true)


class TestGenerateMeasurements(unittest.TestCase):
    """Test preprocessed measurement generation."""

    def setUp(self):
        self.soft_iron = random_soft_iron(np.random.default_rng(3))

    def test_noiseless_measurements_follow_error_model(self):
        measurements = generate_measurements(15, HARD_IRON, self.soft_iron, std=0.0, seed=3)

        for m in measurements:
            assert_allclose(m.b_meas, distort(m.b_true, HARD_IRON, self.soft_iron), atol=1e-18)
            self.assertEqual(m.std, 1.0)
            self.assertAlmostEqual(np.linalg.norm(m.b_true), m.reference_norm)

    def test_norm_only_measurements(self):
        measurements = generate_measurements(5, HARD_IRON, self.soft_iron, with_b_true=False, seed=3)

        self.assertTrue(all(m.b_true is None for m in measurements))
        self.assertTrue(all(m.reference_norm > 0.0 for m in measurements))

    def test_outliers_are_displaced_and_scored(self):
        std = 2e-7
        clean = generate_measurements(10, HARD_IRON, self.soft_iron, std=std, seed=4)
        dirty = generate_measurements(10, HARD_IRON, self.soft_iron, std=std, outlier_indices=[2], seed=4)

        displacement = np.linalg.norm(dirty[2].b_meas - clean[2].b_meas)
        self.assertAlmostEqual(displacement / std, 100.0)
        assert_allclose(dirty[5].b_meas, clean[5].b_meas)
        self.assertEqual(dirty[2].quality_score, 0.0)
        self.assertEqual(dirty[5].quality_score, 1.0)

    def test_seed_is_reproducible(self):
        first = generate_measurements(5, HARD_IRON, self.soft_iron, seed=9)
        second = generate_measurements(5, HARD_IRON, self.soft_iron, seed=9)

        for a, b in zip(first, second):
            assert_allclose(a.b_meas, b.b_meas)


class TestGenerateRecords(unittest.TestCase):
    """Test raw record generation."""

    def setUp(self):
        self.soft_iron = random_soft_iron(np.random.default_rng(5))

    def test_frame_records_preprocess_to_consistent_measurements(self):
        records = generate_frame_records(8, HARD_IRON, self.soft_iron, std=1e-9, seed=5)
        measurements = MeasurementPreprocessor(DipoleReferenceField()).process(records)

        self.assertTrue(all(isinstance(r, FrameRecord) for r in records))
        for m in measurements:
            assert_allclose(m.b_meas, distort(m.b_true, HARD_IRON, self.soft_iron), atol=1e-8)

    def test_position_records(self):
        records = generate_position_records(6, HARD_IRON, self.soft_iron, outlier_indices=[1], seed=5)

        self.assertTrue(all(isinstance(r, PositionRecord) for r in records))
        self.assertEqual(records[0].latitude, DEFAULT_LATITUDE)
        self.assertEqual(records[0].longitude, DEFAULT_LONGITUDE)
        self.assertEqual([r.quality_score for r in records], [1.0, 0.0, 1.0, 1.0, 1.0, 1.0])


if __name__ == "__main__":
    unittest.main()
