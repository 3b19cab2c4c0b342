"""
Estimation algorithms used by the calibrators.

Available estimators:
    - Weighted linear least squares (closed-form solver for affine models)
    - Levenberg-Marquardt nonlinear least squares
    - Robust estimators by minimal-subset sampling (LMedS, RANSAC, MSAC, PROSAC, PROMedS)
"""

from magcal.estimators.least_squares import weighted_least_squares
from magcal.estimators.nonlinear_least_squares import (
    levenberg_marquardt,
    NonlinearLSResult,
)
from magcal.estimators.robust import (
    RobustEstimatorMethod,
    EstimatorState,
    InliersData,
    RobustEstimate,
    RobustEstimator,
    LMedSEstimator,
    RANSACEstimator,
    MSACEstimator,
    PROSACEstimator,
    PROMedSEstimator,
    UniformSampler,
    ProgressiveSampler,
    create_robust_estimator,
    required_iterations,
)

__all__ = [
    # Linear LS
    "weighted_least_squares",
    # Nonlinear LS
    "levenberg_marquardt",
    "NonlinearLSResult",
    # Robust estimation
    "RobustEstimatorMethod",
    "EstimatorState",
    "InliersData",
    "RobustEstimate",
    "RobustEstimator",
    "LMedSEstimator",
    "RANSACEstimator",
    "MSACEstimator",
    "PROSACEstimator",
    "PROMedSEstimator",
    "UniformSampler",
    "ProgressiveSampler",
    "create_robust_estimator",
    "required_iterations",
]
