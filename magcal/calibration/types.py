"""
Data structures for magnetometer calibration.

This module defines the records and results exchanged with the calibrators:
    - Raw records (FrameRecord, PositionRecord) consumed by the preprocessor
    - Preprocessed measurements (MagnetometerMeasurement) consumed by calibrators
    - Preliminary solutions produced inside robust estimation
    - Final calibration results

Units:
    Magnetic flux density in Tesla, angles in radians, heights in meters,
    time as decimal year.

Conventions:
    Hard iron bm and soft iron Mm follow b_meas = bm + (I + Mm) b_true.
    attitude is the body-to-NED rotation matrix C such that v_ned = C @ v_body.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np
from scipy.stats import chi2

from magcal.estimators.robust import InliersData
from magcal.models import HARD_IRON_NAMES, SOFT_IRON_NAMES, soft_iron_to_array


def _frozen_array(value, shape: Tuple[int, ...], name: str) -> np.ndarray:
    array = np.array(value, dtype=float)
    if array.shape != shape:
        raise ValueError(f"{name} must have shape {shape}, got {array.shape}")
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class MagnetometerMeasurement:
    """
    Preprocessed magnetometer measurement.

    Attributes:
        b_meas: Measured magnetic flux density in body frame, shape (3,) [T].
        b_true: Ground-truth flux density in body frame, shape (3,) [T].
                Required by frame-based calibration, None otherwise.
        std: Standard deviation of the measurement noise [T]. The measurement
             weight is 1/std.
        reference_norm: Expected field magnitude at the measurement [T].
                        Overrides the calibrator's ground-truth norm if set.
        quality_score: Quality of the measurement, larger is better. Required
                       by progressive robust methods (PROSAC, PROMedS).
        context: Optional metadata (position, time) carried from preprocessing.

    Notes:
        Arrays are copied and made read-only; a measurement never changes once
        handed to a calibrator.
    """

    b_meas: np.ndarray
    b_true: Optional[np.ndarray] = None
    std: float = 1.0
    reference_norm: Optional[float] = None
    quality_score: Optional[float] = None
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        """Validate shapes and freeze array fields."""
        object.__setattr__(self, "b_meas", _frozen_array(self.b_meas, (3,), "b_meas"))
        if self.b_true is not None:
            object.__setattr__(self, "b_true", _frozen_array(self.b_true, (3,), "b_true"))
        if not 0.0 < self.std < np.inf:
            raise ValueError(f"std must be positive and finite, got {self.std}")
        if self.reference_norm is not None and not 0.0 < self.reference_norm < np.inf:
            raise ValueError(f"reference_norm must be positive and finite, got {self.reference_norm}")

    @property
    def weight(self) -> float:
        return 1.0 / self.std


@dataclass(frozen=True)
class PositionRecord:
    """
    Raw measurement taken at a known position and time, unknown attitude.

    Attributes:
        b_meas: Measured flux density in body frame, shape (3,) [T].
        latitude: Latitude in radians.
        longitude: Longitude in radians.
        height: Height in meters.
        year: Decimal year.
        std: Measurement noise standard deviation [T].
        quality_score: Optional quality score, larger is better.
    """

    b_meas: np.ndarray
    latitude: float
    longitude: float
    height: float = 0.0
    year: float = 2025.0
    std: float = 1.0
    quality_score: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "b_meas", _frozen_array(self.b_meas, (3,), "b_meas"))


@dataclass(frozen=True)
class FrameRecord:
    """
    Raw measurement taken at a known position, time and attitude.

    Attributes:
        b_meas: Measured flux density in body frame, shape (3,) [T].
        attitude: Body-to-NED rotation matrix, shape (3, 3).
        latitude: Latitude in radians.
        longitude: Longitude in radians.
        height: Height in meters.
        year: Decimal year.
        std: Measurement noise standard deviation [T].
        quality_score: Optional quality score, larger is better.
    """

    b_meas: np.ndarray
    attitude: np.ndarray
    latitude: float
    longitude: float
    height: float = 0.0
    year: float = 2025.0
    std: float = 1.0
    quality_score: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "b_meas", _frozen_array(self.b_meas, (3,), "b_meas"))
        object.__setattr__(self, "attitude", _frozen_array(self.attitude, (3, 3), "attitude"))


@dataclass(frozen=True)
class PreliminaryResult:
    """Candidate solution computed from a minimal subset. Carries no covariance."""

    params: np.ndarray
    hard_iron: np.ndarray
    soft_iron: np.ndarray


@dataclass(frozen=True)
class CalibrationResult:
    """
    Magnetometer calibration result.

    Attributes:
        hard_iron: Hard-iron bias bm, shape (3,) [T]. Equal to the known value
                   when the hard iron was not estimated.
        soft_iron: Soft-iron matrix Mm, shape (3, 3).
        covariance: Covariance in the full parameter layout
                    [bx, by, bz, sx, sy, sz, mxy, mxz, myx, myz, mzx, mzy]
                    (12 x 12), or without the hard-iron block (9 x 9) when the
                    hard iron was known. None if not computed.
        chi_sq: Weighted sum of squared residuals at the solution.
        mse: Unweighted mean of squared residuals at the solution.
        dof: Degrees of freedom of the fit (residuals minus free parameters).
        hard_iron_estimated: Whether hard iron was part of the fit.
        inliers_data: Inlier selection of robust calibration, None otherwise.
        iterations: Fitter iterations of the final fit.
        converged: Whether the final fit met its convergence criterion.
    """

    hard_iron: np.ndarray
    soft_iron: np.ndarray
    covariance: Optional[np.ndarray]
    chi_sq: float
    mse: float
    dof: int
    hard_iron_estimated: bool = True
    inliers_data: Optional[InliersData] = None
    iterations: int = 0
    converged: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "hard_iron", _frozen_array(self.hard_iron, (3,), "hard_iron"))
        object.__setattr__(self, "soft_iron", _frozen_array(self.soft_iron, (3, 3), "soft_iron"))
        if self.covariance is not None:
            n = len(self.param_names)
            object.__setattr__(
                self, "covariance", _frozen_array(self.covariance, (n, n), "covariance")
            )

    @property
    def param_names(self) -> Tuple[str, ...]:
        if self.hard_iron_estimated:
            return HARD_IRON_NAMES + SOFT_IRON_NAMES
        return SOFT_IRON_NAMES

    def as_array(self) -> np.ndarray:
        """Parameters in the covariance layout."""
        soft = soft_iron_to_array(self.soft_iron)
        if self.hard_iron_estimated:
            return np.concatenate([self.hard_iron, soft])
        return soft

    def parameters(self) -> Dict[str, float]:
        """Parameters by name (bx, by, bz, sx, ..., mzy)."""
        values = dict(zip(HARD_IRON_NAMES, self.hard_iron.tolist()))
        values.update(zip(SOFT_IRON_NAMES, soft_iron_to_array(self.soft_iron).tolist()))
        return values

    @property
    def standard_deviations(self) -> Optional[np.ndarray]:
        if self.covariance is None:
            return None
        return np.sqrt(np.clip(np.diag(self.covariance), 0.0, None))

    @property
    def hard_iron_covariance(self) -> Optional[np.ndarray]:
        if self.covariance is None or not self.hard_iron_estimated:
            return None
        return self.covariance[:3, :3]

    @property
    def p_value(self) -> float:
        """
        Goodness-of-fit p-value P(χ²_dof ≥ chi_sq).

        Meaningful when measurement standard deviations are realistic. Returns
        NaN when the fit has no redundancy (dof ≤ 0).
        """
        if self.dof <= 0:
            return float("nan")
        return float(chi2.sf(self.chi_sq, self.dof))

    def correct(self, b_meas: np.ndarray) -> np.ndarray:
        """
        Remove hard- and soft-iron distortion from measurements.

        b_true = (I + Mm)⁻¹ (b_meas - bm)

        Args:
            b_meas: Measured flux density, shape (3,) or (N, 3) [T].

        Returns:
            Corrected flux density with the same shape as b_meas [T].
        """
        b_meas = np.asarray(b_meas, dtype=float)
        M = np.eye(3) + self.soft_iron
        corrected = np.linalg.solve(M, (np.atleast_2d(b_meas) - self.hard_iron).T).T
        return corrected.reshape(b_meas.shape)
