"""Magnetometer calibration from batches of measurements.

This package contains the components of the calibration engine:
- models: Magnetometer measurement models and their analytic Jacobians
- estimators: Linear/nonlinear least squares and robust estimation (LMedS, RANSAC, ...)
- calibration: Calibrators, configuration, results and covariance propagation
- sensors: Reference (Earth) magnetic field service
- sim: Synthetic measurement generation
"""

__version__ = "0.1.0"
