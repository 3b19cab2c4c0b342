"""
Magnetometer calibration engine.

Calibrators:
    - MagnetometerCalibrator: Levenberg-Marquardt fit on all measurements
    - RobustMagnetometerCalibrator: robust estimation followed by an inlier refit

Supporting components:
    - CalibratorConfig / RobustCalibratorConfig: validated configuration
    - MeasurementPreprocessor: raw records to measurements via a reference field
    - Covariance propagation to the full parameter layout
    - CalibrationListener: lifecycle notifications
"""

from magcal.calibration.types import (
    MagnetometerMeasurement,
    FrameRecord,
    PositionRecord,
    PreliminaryResult,
    CalibrationResult,
)
from magcal.calibration.config import CalibratorConfig, RobustCalibratorConfig
from magcal.calibration.covariance import (
    propagate_covariance,
    common_axis_embedding,
    expand_common_axis_covariance,
    norm_conversion_jacobian,
    full_covariance,
)
from magcal.calibration.events import CalibrationListener
from magcal.calibration.problem import CalibrationProblem
from magcal.calibration.preprocessing import MeasurementPreprocessor
from magcal.calibration.calibrators import (
    MeasurementType,
    build_model,
    MagnetometerCalibrator,
    RobustMagnetometerCalibrator,
)

__all__ = [
    # Data types
    "MagnetometerMeasurement",
    "FrameRecord",
    "PositionRecord",
    "PreliminaryResult",
    "CalibrationResult",
    # Configuration
    "CalibratorConfig",
    "RobustCalibratorConfig",
    # Covariance propagation
    "propagate_covariance",
    "common_axis_embedding",
    "expand_common_axis_covariance",
    "norm_conversion_jacobian",
    "full_covariance",
    # Engine
    "CalibrationListener",
    "CalibrationProblem",
    "MeasurementPreprocessor",
    "MeasurementType",
    "build_model",
    "MagnetometerCalibrator",
    "RobustMagnetometerCalibrator",
]
