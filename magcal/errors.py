"""
Exception hierarchy for magnetometer calibration.

All errors raised by the calibration engine derive from CalibrationError so that
callers can catch the whole family at once, while still telling apart:

    ConfigurationError   invalid configuration value (also a ValueError)
    LockedError          calibrator invoked or modified while running
    NotReadyError        not enough measurements or missing ground truth
    NumericalError       numerical failure
        FittingError         non-convergence or singular information matrix
        ReferenceFieldError  reference-field lookup failure
        CalibrationFailure   failed final fit, wraps the underlying cause
    RobustEstimationError no valid candidate or confidence not reached
"""


class CalibrationError(Exception):
    """Base class for all calibration errors."""


class ConfigurationError(CalibrationError, ValueError):
    """Invalid configuration value."""


class LockedError(ConfigurationError):
    """Raised when a calibrator or estimator is used while it is running."""

    def __init__(self, message: str = "calibrator is currently running"):
        super().__init__(message)


class NotReadyError(CalibrationError):
    """Raised when a calibration cannot start (too few measurements, missing inputs)."""


class NumericalError(CalibrationError):
    """Numerical failure during calibration."""


class FittingError(NumericalError):
    """Least-squares fit failed (non-convergence or singular information matrix)."""


class ReferenceFieldError(NumericalError):
    """Reference magnetic field could not be evaluated."""


class CalibrationFailure(NumericalError):
    """Final calibration fit failed. The underlying error is chained as __cause__."""


class RobustEstimationError(CalibrationError):
    """Robust estimation could not produce a solution."""
