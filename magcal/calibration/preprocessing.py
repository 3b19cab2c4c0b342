"""
Conversion of raw records into calibration measurements.

For each record the reference-field service gives the expected Earth field in
the local NED frame, B_ned. Then:

    FrameRecord:    b_true = Cᵀ B_ned   (C: body-to-NED attitude)
                    reference_norm = ‖B_ned‖
    PositionRecord: reference_norm = ‖B_ned‖ (attitude unknown)

The resulting MagnetometerMeasurement carries the position and time of the
record in its context.
"""

from typing import Iterable, List, Union

import numpy as np

from magcal.calibration.types import FrameRecord, MagnetometerMeasurement, PositionRecord
from magcal.errors import ReferenceFieldError
from magcal.sensors.reference_field import ReferenceFieldModel


class MeasurementPreprocessor:
    """
    Turns frame and position records into MagnetometerMeasurement objects.

    Reference-field failures are raised as ReferenceFieldError and are never
    retried.

    Args:
        reference_field: Reference magnetic field service.

    Example:
        >>> preprocessor = MeasurementPreprocessor(DipoleReferenceField())
        >>> measurements = preprocessor.process(records)
    """

    def __init__(self, reference_field: ReferenceFieldModel):
        self.reference_field = reference_field

    def reference_ned(self, record: Union[FrameRecord, PositionRecord]) -> np.ndarray:
        """Expected field in NED at the record's position and time [T]."""
        try:
            field = self.reference_field.field_ned(
                record.latitude, record.longitude, record.height, record.year
            )
        except ReferenceFieldError:
            raise
        except (ValueError, ArithmeticError, np.linalg.LinAlgError) as e:
            raise ReferenceFieldError(f"Reference field lookup failed: {e}") from e

        field = np.asarray(field, dtype=float)
        if field.shape != (3,) or not np.all(np.isfinite(field)):
            raise ReferenceFieldError(f"Reference field returned an invalid value: {field}")
        return field

    def from_frame_record(self, record: FrameRecord) -> MagnetometerMeasurement:
        b_ned = self.reference_ned(record)
        return MagnetometerMeasurement(
            b_meas=record.b_meas,
            b_true=record.attitude.T @ b_ned,
            std=record.std,
            reference_norm=float(np.linalg.norm(b_ned)),
            quality_score=record.quality_score,
            context=_context(record),
        )

    def from_position_record(self, record: PositionRecord) -> MagnetometerMeasurement:
        b_ned = self.reference_ned(record)
        return MagnetometerMeasurement(
            b_meas=record.b_meas,
            std=record.std,
            reference_norm=float(np.linalg.norm(b_ned)),
            quality_score=record.quality_score,
            context=_context(record),
        )

    def process(self, records: Iterable[Union[FrameRecord, PositionRecord]]) -> List[MagnetometerMeasurement]:
        """
        Preprocess a batch of records, preserving order.

        Raises:
            ReferenceFieldError: If the reference field fails for any record.
            TypeError: If a record is neither a FrameRecord nor a PositionRecord.
        """
        measurements = []
        for record in records:
            if isinstance(record, FrameRecord):
                measurements.append(self.from_frame_record(record))
            elif isinstance(record, PositionRecord):
                measurements.append(self.from_position_record(record))
            else:
                raise TypeError(f"Unsupported record type: {type(record).__name__}")
        return measurements


def _context(record) -> dict:
    return {
        "latitude": record.latitude,
        "longitude": record.longitude,
        "height": record.height,
        "year": record.year,
    }
