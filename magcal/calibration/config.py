"""
Calibrator configuration.

A single frozen configuration object carries every calibrator option. Variants
are derived with dataclasses.replace, e.g.:

    >>> from dataclasses import replace
    >>> config = RobustCalibratorConfig(common_axis_used=True)
    >>> config = replace(config, method=RobustEstimatorMethod.PROMEDS, seed=7)

Invalid values raise ConfigurationError at construction.
"""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from magcal.errors import ConfigurationError
from magcal.estimators.robust import RobustEstimatorMethod


def _array_field(config, name: str, shape) -> None:
    value = getattr(config, name)
    if value is None:
        return
    array = np.array(value, dtype=float)
    if array.shape != shape:
        raise ConfigurationError(f"{name} must have shape {shape}, got {array.shape}")
    if not np.all(np.isfinite(array)):
        raise ConfigurationError(f"{name} must be finite")
    array.setflags(write=False)
    object.__setattr__(config, name, array)


@dataclass(frozen=True)
class CalibratorConfig:
    """
    Configuration of the nonlinear magnetometer calibrator.

    Attributes:
        common_axis_used: If True, myx, mzx and mzy are fixed to zero.
        known_hard_iron: Known hard-iron bias (3,) [T]. If None, the hard iron
            is estimated.
        initial_hard_iron: Initial hard-iron guess (3,) [T].
        initial_soft_iron: Initial soft-iron guess (3, 3). I + initial_soft_iron
            must be invertible.
        ground_truth_norm: Expected field magnitude [T] for norm-based
            calibration, used for measurements without their own reference norm.
        max_iterations: Levenberg-Marquardt iteration cap.
        tolerance: Relative chi-square change treated as no progress.
        initial_damping: Initial Levenberg-Marquardt damping.
    """

    common_axis_used: bool = False
    known_hard_iron: Optional[np.ndarray] = None
    initial_hard_iron: np.ndarray = field(default_factory=lambda: np.zeros(3))
    initial_soft_iron: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    ground_truth_norm: Optional[float] = None
    max_iterations: int = 100
    tolerance: float = 1e-12
    initial_damping: float = 1e-3

    def __post_init__(self) -> None:
        """Validate configuration values."""
        _array_field(self, "known_hard_iron", (3,))
        _array_field(self, "initial_hard_iron", (3,))
        _array_field(self, "initial_soft_iron", (3, 3))

        if abs(np.linalg.det(np.eye(3) + self.initial_soft_iron)) < 1e-12:
            raise ConfigurationError("I + initial_soft_iron must be invertible")
        if self.ground_truth_norm is not None and not 0.0 < self.ground_truth_norm < np.inf:
            raise ConfigurationError(
                f"ground_truth_norm must be positive and finite, got {self.ground_truth_norm}"
            )
        if self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if not self.tolerance >= 0.0:
            raise ConfigurationError(f"tolerance must be non-negative, got {self.tolerance}")
        if not self.initial_damping > 0.0:
            raise ConfigurationError(f"initial_damping must be positive, got {self.initial_damping}")

    @property
    def hard_iron_estimated(self) -> bool:
        return self.known_hard_iron is None


@dataclass(frozen=True)
class RobustCalibratorConfig(CalibratorConfig):
    """
    Configuration of the robust magnetometer calibrator.

    Attributes:
        method: Robust estimation method.
        confidence: Probability of drawing at least one outlier-free subset.
        max_iterations_robust: Maximum number of subsets drawn.
        progress_delta: Minimum progress change between progress notifications.
        stop_threshold: LMedS/PROMedS stop when the median squared residual is
            at or below this value [T²].
        threshold: RANSAC/MSAC/PROSAC inlier threshold on residuals [T].
        inlier_factor: LMedS/PROMedS inlier threshold as multiple of the robust
            residual standard deviation.
        preliminary_subset_size: Samples per subset. Defaults to the model's
            minimum number of measurements and may not be smaller.
        use_linear_calibrator: Compute preliminary solutions of affine (frame)
            models in closed form instead of with Levenberg-Marquardt.
        refine_preliminary_solutions: Refine linear preliminary solutions with
            Levenberg-Marquardt on their subset.
        refine_result: Refit the best preliminary solution on all inliers.
        keep_covariance: Keep the covariance of the refined result.
        seed: Seed of the subset sampler.
    """

    method: RobustEstimatorMethod = RobustEstimatorMethod.LMEDS
    confidence: float = 0.99
    max_iterations_robust: int = 5000
    progress_delta: float = 0.05
    stop_threshold: float = 1e-18
    threshold: float = 1e-8
    inlier_factor: float = 2.5
    preliminary_subset_size: Optional[int] = None
    use_linear_calibrator: bool = True
    refine_preliminary_solutions: bool = False
    refine_result: bool = True
    keep_covariance: bool = True
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        super().__post_init__()
        try:
            object.__setattr__(self, "method", RobustEstimatorMethod(self.method))
        except ValueError as e:
            raise ConfigurationError(f"Unknown robust method: {self.method}") from e

        if not 0.0 <= self.confidence <= 1.0:
            raise ConfigurationError(f"confidence must be in [0, 1], got {self.confidence}")
        if self.max_iterations_robust < 1:
            raise ConfigurationError(
                f"max_iterations_robust must be >= 1, got {self.max_iterations_robust}"
            )
        if not 0.0 <= self.progress_delta <= 1.0:
            raise ConfigurationError(f"progress_delta must be in [0, 1], got {self.progress_delta}")
        if not self.stop_threshold > 0.0:
            raise ConfigurationError(f"stop_threshold must be > 0, got {self.stop_threshold}")
        if not self.threshold > 0.0:
            raise ConfigurationError(f"threshold must be > 0, got {self.threshold}")
        if not self.inlier_factor > 0.0:
            raise ConfigurationError(f"inlier_factor must be > 0, got {self.inlier_factor}")
        if self.preliminary_subset_size is not None and self.preliminary_subset_size < 1:
            raise ConfigurationError(
                f"preliminary_subset_size must be >= 1, got {self.preliminary_subset_size}"
            )
