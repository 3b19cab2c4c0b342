"""
Calibration lifecycle notifications.

Listeners are called synchronously on the calibrating thread. Notifications are
informational: return values are ignored, and a listener must not call back
into the calibrator that notified it (such calls raise LockedError).
"""


class CalibrationListener:
    """
    Base listener with no-op hooks. Override the hooks of interest.

    Example:
        >>> class Printer(CalibrationListener):
        ...     def on_calibrate_progress_change(self, calibrator, progress):
        ...         print(f"{100 * progress:.0f}%")
    """

    def on_calibrate_start(self, calibrator) -> None:
        """Called when a calibration run starts."""

    def on_calibrate_end(self, calibrator) -> None:
        """Called when a calibration run finishes successfully."""

    def on_calibrate_next_iteration(self, calibrator, iteration: int) -> None:
        """Called after each robust-estimation iteration (1-based)."""

    def on_calibrate_progress_change(self, calibrator, progress: float) -> None:
        """Called when robust-estimation progress advances by progress_delta."""
