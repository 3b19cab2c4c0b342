"""Reference field services for magnetometer calibration."""

from magcal.sensors.reference_field import (
    DIPOLE_B0,
    EARTH_REFERENCE_RADIUS,
    GEOMAGNETIC_POLE_LATITUDE,
    GEOMAGNETIC_POLE_LONGITUDE,
    ReferenceFieldModel,
    DipoleReferenceField,
    ned_basis,
)

__all__ = [
    "DIPOLE_B0",
    "EARTH_REFERENCE_RADIUS",
    "GEOMAGNETIC_POLE_LATITUDE",
    "GEOMAGNETIC_POLE_LONGITUDE",
    "ReferenceFieldModel",
    "DipoleReferenceField",
    "ned_basis",
]
