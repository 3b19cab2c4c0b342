"""
Magnetometer calibrators.

MagnetometerCalibrator fits the hard-iron bias and soft-iron matrix to all
measurements with Levenberg-Marquardt. RobustMagnetometerCalibrator first runs
a robust estimator (LMedS, RANSAC, MSAC, PROSAC or PROMedS) over minimal
subsets, then refits the best candidate on its inliers.

Two measurement types are supported:
    MeasurementType.FRAME: ground-truth field vector known for each measurement
    MeasurementType.NORM:  only the ground-truth field magnitude is known

Run semantics:
    - calibrate() blocks until a result or an error is produced.
    - At most one run per calibrator. A concurrent or reentrant call, and any
      attempt to change measurements, configuration or listener during a run,
      raises LockedError.
    - Readiness is checked before any computation (NotReadyError).
    - A failure leaves the previous result untouched. Numerical failures of
      the final fit are raised as CalibrationFailure chained to their cause.

Example:
    >>> calibrator = MagnetometerCalibrator(measurements, MeasurementType.FRAME)
    >>> result = calibrator.calibrate()
    >>> print(result.hard_iron, result.soft_iron)
"""

import threading
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np

from magcal.calibration.config import CalibratorConfig, RobustCalibratorConfig
from magcal.calibration.events import CalibrationListener
from magcal.calibration.problem import CalibrationProblem, missing_ground_truth
from magcal.calibration.types import CalibrationResult, MagnetometerMeasurement, PreliminaryResult
from magcal.errors import (
    CalibrationFailure,
    ConfigurationError,
    FittingError,
    LockedError,
    NotReadyError,
    NumericalError,
)
from magcal.estimators import RobustEstimatorMethod, create_robust_estimator
from magcal.models import FrameMagnetometerModel, NormMagnetometerModel


class MeasurementType(str, Enum):
    """Kind of ground truth available for each measurement."""

    FRAME = "frame"
    NORM = "norm"


def build_model(measurement_type, config: CalibratorConfig):
    """Create the measurement model selected by measurement type and configuration."""
    measurement_type = MeasurementType(measurement_type)
    model_class = FrameMagnetometerModel if measurement_type is MeasurementType.FRAME else NormMagnetometerModel
    return model_class(common_axis_used=config.common_axis_used, hard_iron=config.known_hard_iron)


class MagnetometerCalibrator:
    """
    Nonlinear least-squares magnetometer calibrator.

    Args:
        measurements: Preprocessed measurements.
        measurement_type: MeasurementType.FRAME or MeasurementType.NORM.
        config: Calibrator configuration. Defaults to CalibratorConfig().
        listener: Optional CalibrationListener.
    """

    config_class = CalibratorConfig

    def __init__(
        self,
        measurements: Sequence[MagnetometerMeasurement] = (),
        measurement_type=MeasurementType.FRAME,
        config: Optional[CalibratorConfig] = None,
        listener: Optional[CalibrationListener] = None,
    ):
        self._lock = threading.Lock()
        self._result: Optional[CalibrationResult] = None
        self._measurements: tuple = ()
        self._config = self.config_class()
        self._listener = None

        try:
            self._measurement_type = MeasurementType(measurement_type)
        except ValueError as e:
            raise ConfigurationError(f"Unknown measurement type: {measurement_type}") from e

        self.measurements = measurements
        if config is not None:
            self.config = config
        self.listener = listener

    # Configuration

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def _check_not_running(self) -> None:
        if self.is_running:
            raise LockedError()

    @property
    def measurements(self) -> tuple:
        return self._measurements

    @measurements.setter
    def measurements(self, measurements: Sequence[MagnetometerMeasurement]) -> None:
        self._check_not_running()
        self._measurements = tuple(measurements)

    @property
    def measurement_type(self) -> MeasurementType:
        return self._measurement_type

    @property
    def config(self) -> CalibratorConfig:
        return self._config

    @config.setter
    def config(self, config: CalibratorConfig) -> None:
        self._check_not_running()
        if not isinstance(config, self.config_class):
            raise ConfigurationError(
                f"{type(self).__name__} needs a {self.config_class.__name__}, got {type(config).__name__}"
            )
        self._config = config

    @property
    def listener(self) -> Optional[CalibrationListener]:
        return self._listener

    @listener.setter
    def listener(self, listener: Optional[CalibrationListener]) -> None:
        self._check_not_running()
        self._listener = listener

    @property
    def model(self):
        return build_model(self._measurement_type, self._config)

    @property
    def minimum_measurements(self) -> int:
        return self.model.minimum_measurements

    @property
    def is_ready(self) -> bool:
        model = self.model
        return len(self._measurements) >= model.minimum_measurements and not missing_ground_truth(
            model, self._measurements, self._config.ground_truth_norm
        )

    # Results

    @property
    def result(self) -> Optional[CalibrationResult]:
        """Last successful result, or None."""
        return self._result

    @property
    def estimated_hard_iron(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.hard_iron

    @property
    def estimated_soft_iron(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.soft_iron

    # Calibration

    def calibrate(self) -> CalibrationResult:
        """
        Estimate hard iron and soft iron from the measurements.

        Returns:
            The new CalibrationResult, also available as `result`.

        Raises:
            LockedError: If a calibration is already running.
            NotReadyError: If there are too few measurements or ground truth is missing.
            RobustEstimationError: If robust estimation found no valid solution.
            CalibrationFailure: If the final fit failed numerically.
        """
        if not self._lock.acquire(blocking=False):
            raise LockedError()

        try:
            if not self.is_ready:
                raise NotReadyError(
                    f"{type(self).__name__} needs at least {self.minimum_measurements} "
                    f"measurements with ground truth, got {len(self._measurements)}"
                )

            problem = CalibrationProblem(self.model, self._measurements, self._config.ground_truth_norm)
            self._notify("on_calibrate_start")
            try:
                result = self._calibrate(problem)
            except CalibrationFailure:
                raise
            except (NumericalError, np.linalg.LinAlgError) as e:
                raise CalibrationFailure(f"Calibration failed: {e}") from e

            self._result = result
            self._notify("on_calibrate_end")
            return result
        finally:
            self._lock.release()

    def _calibrate(self, problem: CalibrationProblem) -> CalibrationResult:
        config = self._config
        x0 = problem.model.pack(config.initial_hard_iron, config.initial_soft_iron)
        fit = problem.fit(
            x0,
            max_iter=config.max_iterations,
            tol=config.tolerance,
            mu0=config.initial_damping,
        )
        return problem.result(
            fit.x,
            fit.covariance,
            fit.chi_sq,
            fit.mse,
            len(fit.residuals),
            iterations=fit.iterations,
            converged=fit.converged,
        )

    def _notify(self, hook: str, *args) -> None:
        if self._listener is not None:
            getattr(self._listener, hook)(self, *args)


class RobustMagnetometerCalibrator(MagnetometerCalibrator):
    """
    Robust magnetometer calibrator.

    Preliminary solutions are computed from subsets of preliminary_subset_size
    measurements: in closed form for frame measurements when
    use_linear_calibrator is set, with Levenberg-Marquardt otherwise. Every
    measurement is scored against each candidate and the best candidate is
    refined on its inliers when refine_result is set.

    Args:
        measurements: Preprocessed measurements.
        measurement_type: MeasurementType.FRAME or MeasurementType.NORM.
        config: Robust configuration. Defaults to RobustCalibratorConfig().
        listener: Optional CalibrationListener; receives iteration and
            progress notifications of the robust estimator.
    """

    config_class = RobustCalibratorConfig

    @property
    def method(self) -> RobustEstimatorMethod:
        return self._config.method

    @property
    def preliminary_subset_size(self) -> int:
        size = self._config.preliminary_subset_size
        return self.minimum_measurements if size is None else size

    @MagnetometerCalibrator.config.setter
    def config(self, config: RobustCalibratorConfig) -> None:
        self._check_not_running()
        if not isinstance(config, RobustCalibratorConfig):
            raise ConfigurationError(
                f"{type(self).__name__} needs a RobustCalibratorConfig, got {type(config).__name__}"
            )
        minimum = build_model(self._measurement_type, config).minimum_measurements
        if config.preliminary_subset_size is not None and config.preliminary_subset_size < minimum:
            raise ConfigurationError(
                f"preliminary_subset_size must be >= {minimum}, got {config.preliminary_subset_size}"
            )
        self._config = config

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        scores = [m.quality_score for m in self._measurements]
        if any(score is None for score in scores):
            return None
        return np.array(scores, dtype=float)

    @property
    def is_ready(self) -> bool:
        if not super().is_ready or len(self._measurements) < self.preliminary_subset_size:
            return False
        progressive = self.method in (RobustEstimatorMethod.PROSAC, RobustEstimatorMethod.PROMEDS)
        return not progressive or self.quality_scores is not None

    def _calibrate(self, problem: CalibrationProblem) -> CalibrationResult:
        config = self._config
        model = problem.model
        x0 = model.pack(config.initial_hard_iron, config.initial_soft_iron)

        def preliminary_solutions(indices) -> List[PreliminaryResult]:
            if model.is_linear and config.use_linear_calibrator:
                params, _ = problem.linear_fit(indices)
                if config.refine_preliminary_solutions:
                    params = self._preliminary_fit(problem, params, indices)
            else:
                params = self._preliminary_fit(problem, x0, indices)
            problem.check_candidate(params)
            hard_iron, soft_iron = model.unpack(params)
            return [PreliminaryResult(params=params, hard_iron=hard_iron, soft_iron=soft_iron)]

        def residuals(candidate: PreliminaryResult) -> np.ndarray:
            return problem.residuals(candidate.params)

        options = {}
        if self.method in (RobustEstimatorMethod.LMEDS, RobustEstimatorMethod.PROMEDS):
            options.update(stop_threshold=config.stop_threshold, inlier_factor=config.inlier_factor)
        else:
            options.update(threshold=config.threshold)

        estimator = create_robust_estimator(
            self.method,
            problem.n_measurements,
            self.preliminary_subset_size,
            preliminary_solutions,
            residuals,
            confidence=config.confidence,
            max_iterations=config.max_iterations_robust,
            progress_delta=config.progress_delta,
            quality_scores=self.quality_scores,
            seed=config.seed,
            on_iteration=lambda iteration: self._notify("on_calibrate_next_iteration", iteration),
            on_progress=lambda progress: self._notify("on_calibrate_progress_change", progress),
            **options,
        )
        estimate = estimator.estimate()

        preliminary = estimate.candidate
        inliers_data = estimate.inliers_data
        inlier_indices = np.flatnonzero(inliers_data.inliers)

        if not config.refine_result:
            chi_sq, mse, n_observations = problem.statistics(preliminary.params, inlier_indices)
            return problem.result(
                preliminary.params, None, chi_sq, mse, n_observations, inliers_data=inliers_data
            )

        fit = self._fit(
            problem, preliminary.params, inlier_indices, return_covariance=config.keep_covariance
        )
        return problem.result(
            fit.x,
            fit.covariance,
            fit.chi_sq,
            fit.mse,
            len(fit.residuals),
            inliers_data=inliers_data,
            iterations=fit.iterations,
            converged=fit.converged,
        )

    def _preliminary_fit(self, problem, x0, indices) -> np.ndarray:
        fit = self._fit(problem, x0, indices, return_covariance=False)
        if not fit.converged:
            raise FittingError(f"Preliminary fit did not converge in {fit.iterations} iterations")
        return fit.x

    def _fit(self, problem, x0, indices, return_covariance):
        config = self._config
        return problem.fit(
            x0,
            indices,
            max_iter=config.max_iterations,
            tol=config.tolerance,
            mu0=config.initial_damping,
            return_covariance=return_covariance,
        )
