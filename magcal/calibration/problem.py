"""
Least-squares problem assembled from magnetometer measurements.

A CalibrationProblem binds a measurement model to a fixed set of measurements
and exposes the operations the calibrators need:
    - fit: Levenberg-Marquardt fit on all measurements or a subset
    - linear_fit: closed-form weighted fit for affine (frame) models
    - residuals: per-measurement error of a candidate, for robust scoring
    - result: conversion of fitted parameters into a CalibrationResult

Observation weights:
    Frame models: each vector component has weight 1/σ².
    Norm models: the observation is ‖B‖², whose first-order standard deviation
    is 2‖B‖σ, so the weight is 1/(2‖B‖σ)².
"""

from typing import Optional, Sequence, Tuple

import numpy as np

from magcal.calibration.covariance import full_covariance
from magcal.calibration.types import CalibrationResult, MagnetometerMeasurement
from magcal.errors import FittingError, NotReadyError
from magcal.estimators import InliersData, NonlinearLSResult, levenberg_marquardt, weighted_least_squares
from magcal.models import COMPONENTS, FrameMagnetometerModel, NormMagnetometerModel

# Plausibility bounds for preliminary solutions: singular values of I + Mm
# within [1/MAX_SOFT_IRON_GAIN, MAX_SOFT_IRON_GAIN], and ‖bm‖ at most
# MAX_HARD_IRON_RATIO times the median ground-truth field magnitude.
MAX_SOFT_IRON_GAIN = 10.0
MAX_HARD_IRON_RATIO = 1000.0


def missing_ground_truth(model, measurements: Sequence[MagnetometerMeasurement], ground_truth_norm=None) -> bool:
    """Whether any measurement lacks the ground truth required by the model."""
    if isinstance(model, FrameMagnetometerModel):
        return any(m.b_true is None for m in measurements)
    if ground_truth_norm is not None:
        return False
    return any(m.reference_norm is None for m in measurements)


class CalibrationProblem:
    """
    Measurements and model of a calibration run.

    Args:
        model: FrameMagnetometerModel or NormMagnetometerModel.
        measurements: Measurements, read-only for the lifetime of the problem.
        ground_truth_norm: Field magnitude [T] for norm models, used for
            measurements without their own reference_norm.

    Raises:
        NotReadyError: If a measurement lacks required ground truth.
    """

    def __init__(self, model, measurements: Sequence[MagnetometerMeasurement], ground_truth_norm: Optional[float] = None):
        if missing_ground_truth(model, measurements, ground_truth_norm):
            if isinstance(model, FrameMagnetometerModel):
                raise NotReadyError("Frame calibration needs b_true for every measurement")
            raise NotReadyError("Norm calibration needs a ground-truth norm")

        self.model = model
        self.b_meas = np.array([m.b_meas for m in measurements], dtype=float).reshape(-1, COMPONENTS)
        self.std = np.array([m.std for m in measurements], dtype=float)

        if isinstance(model, FrameMagnetometerModel):
            self.b_true = np.array([m.b_true for m in measurements], dtype=float).reshape(-1, COMPONENTS)
            self.norms = None
            field_norms = np.linalg.norm(self.b_true, axis=1)
        else:
            self.b_true = None
            self.norms = np.array(
                [ground_truth_norm if m.reference_norm is None else m.reference_norm for m in measurements],
                dtype=float,
            )
            field_norms = self.norms
        self.field_scale = float(np.median(field_norms)) if len(field_norms) else 0.0

    @property
    def n_measurements(self) -> int:
        return len(self.b_meas)

    def _indices(self, indices) -> np.ndarray:
        if indices is None:
            return np.arange(self.n_measurements)
        return np.asarray(indices)

    def observations(self, indices=None):
        """
        Observation vector, weights, model function and Jacobian for a subset.

        Returns:
            Tuple (y, weights, h, jacobian) suitable for levenberg_marquardt.
        """
        idx = self._indices(indices)
        model = self.model

        if isinstance(model, FrameMagnetometerModel):
            b_true = self.b_true[idx]
            y = self.b_meas[idx].ravel()
            weights = np.repeat(1.0 / self.std[idx] ** 2, COMPONENTS)

            def h(params):
                return model.h(params, b_true).ravel()

            def jacobian(params):
                return model.H(params, b_true).reshape(-1, model.n_params)

        else:
            b_meas = self.b_meas[idx]
            norms = self.norms[idx]
            y = norms ** 2
            weights = 1.0 / (2.0 * norms * self.std[idx]) ** 2

            def h(params):
                return model.h(params, b_meas)

            def jacobian(params):
                return model.H(params, b_meas)

        return y, weights, h, jacobian

    def fit(
        self,
        x0: np.ndarray,
        indices=None,
        max_iter: int = 100,
        tol: float = 1e-12,
        mu0: float = 1e-3,
        return_covariance: bool = True,
    ) -> NonlinearLSResult:
        """
        Levenberg-Marquardt fit of the model parameters.

        Raises:
            FittingError: If there are fewer measurements than the model needs,
                or the fit fails.
        """
        idx = self._indices(indices)
        if len(idx) < self.model.minimum_measurements:
            raise FittingError(
                f"{len(idx)} measurements, at least {self.model.minimum_measurements} required"
            )

        y, weights, h, jacobian = self.observations(idx)
        return levenberg_marquardt(
            h,
            jacobian,
            y,
            x0,
            weights=weights,
            max_iter=max_iter,
            tol=tol,
            mu0=mu0,
            rank_deficiency=self.model.rank_deficiency,
            return_covariance=return_covariance,
        )

    def linear_fit(self, indices=None, return_covariance: bool = False) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """
        Closed-form weighted least-squares fit of an affine model.

        h(p) = h(0) + A p, so p̂ solves A p = y - h(0) in the weighted sense.

        Raises:
            TypeError: If the model is not affine.
            FittingError: If the subset is rank deficient.
        """
        if not self.model.is_linear:
            raise TypeError(f"{type(self.model).__name__} is not affine in its parameters")

        y, weights, h, jacobian = self.observations(indices)
        zero = np.zeros(self.model.n_params)
        return weighted_least_squares(jacobian(zero), y - h(zero), weights, return_covariance=return_covariance)

    def check_candidate(self, params: np.ndarray) -> None:
        """
        Reject a degenerate preliminary solution.

        Raises:
            FittingError: If the parameters are not finite, I + Mm has a
                singular value outside [1/MAX_SOFT_IRON_GAIN, MAX_SOFT_IRON_GAIN],
                or ‖bm‖ exceeds MAX_HARD_IRON_RATIO times the field magnitude.
        """
        params = np.asarray(params, dtype=float)
        if not np.all(np.isfinite(params)):
            raise FittingError("Preliminary solution is not finite")

        hard_iron, soft_iron = self.model.unpack(params)
        gains = np.linalg.svd(np.eye(COMPONENTS) + soft_iron, compute_uv=False)
        if gains[0] > MAX_SOFT_IRON_GAIN or gains[-1] < 1.0 / MAX_SOFT_IRON_GAIN:
            raise FittingError(
                f"Soft-iron gains {gains[-1]:.3g}..{gains[0]:.3g} outside "
                f"[{1.0 / MAX_SOFT_IRON_GAIN:g}, {MAX_SOFT_IRON_GAIN:g}]"
            )
        if np.linalg.norm(hard_iron) > MAX_HARD_IRON_RATIO * self.field_scale:
            raise FittingError(
                f"Hard iron of {np.linalg.norm(hard_iron):.3g} T is implausible for a "
                f"{self.field_scale:.3g} T field"
            )

    def residuals(self, params: np.ndarray) -> np.ndarray:
        """
        Error of every measurement against a candidate, shape (N,) [T].

        Frame: ‖bm + (I + Mm) b_true - b_meas‖
        Norm:  |‖(I + Mm)⁻¹ (b_meas - bm)‖ - ‖B‖|
        """
        hard_iron, soft_iron = self.model.unpack(params)
        if isinstance(self.model, NormMagnetometerModel):
            return self.model.residual_norms(hard_iron, soft_iron, self.b_meas, self.norms)
        return self.model.residual_norms(hard_iron, soft_iron, self.b_true, self.b_meas)

    def statistics(self, params: np.ndarray, indices=None) -> Tuple[float, float, int]:
        """Chi-square, MSE and number of scalar observations at params."""
        y, weights, h, _ = self.observations(indices)
        r = y - h(params)
        return float(np.sum(weights * r ** 2)), float(np.mean(r ** 2)), len(y)

    def result(
        self,
        params: np.ndarray,
        covariance: Optional[np.ndarray],
        chi_sq: float,
        mse: float,
        n_observations: int,
        inliers_data: Optional[InliersData] = None,
        iterations: int = 0,
        converged: bool = True,
    ) -> CalibrationResult:
        """Convert fitted model parameters into a CalibrationResult."""
        hard_iron, soft_iron = self.model.unpack(params)
        if covariance is not None:
            covariance = full_covariance(self.model, params, covariance)

        n_free = self.model.n_params - self.model.rank_deficiency
        return CalibrationResult(
            hard_iron=hard_iron,
            soft_iron=soft_iron,
            covariance=covariance,
            chi_sq=chi_sq,
            mse=mse,
            dof=n_observations - n_free,
            hard_iron_estimated=self.model.estimates_hard_iron,
            inliers_data=inliers_data,
            iterations=iterations,
            converged=converged,
        )
