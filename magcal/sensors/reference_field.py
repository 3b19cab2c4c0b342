"""
Reference (Earth) magnetic field service.

Calibration against known field vectors or known field magnitude needs the
expected Earth magnetic flux density at each measurement location and time.
This module defines the service interface and a tilted-dipole implementation.

Tilted dipole model:
    B(r) = B0 (Re / |r|)³ [3 (m̂·r̂) r̂ - m̂]

where:
    B0: equatorial field strength at the reference radius [T]
    Re: reference Earth radius [m]
    m̂:  unit dipole moment, pointing to the geomagnetic south pole (m̂ = -p̂)
    p̂:  unit vector towards the geomagnetic north pole
    r̂:  unit position vector (spherical Earth)

The ECEF field is projected onto the local NED axes:
    n̂ = (-sinφ cosλ, -sinφ sinλ, cosφ)
    ê = (-sinλ, cosλ, 0)
    d̂ = (-cosφ cosλ, -cosφ sinλ, -sinφ)

Notes:
    - The dipole captures about 90% of the main field. It is intended for
      simulation and tests; production systems should wrap a WMM/IGRF
      implementation behind ReferenceFieldModel.
    - All angles are in radians.
"""

from abc import ABC, abstractmethod

import numpy as np

from magcal.errors import ReferenceFieldError

# Equatorial dipole field strength at the reference radius [T]
DIPOLE_B0 = 3.12e-5

# Reference radius of the geomagnetic models [m]
EARTH_REFERENCE_RADIUS = 6371200.0

# Geomagnetic north pole (dipole approximation) [rad]
GEOMAGNETIC_POLE_LATITUDE = np.deg2rad(80.7)
GEOMAGNETIC_POLE_LONGITUDE = np.deg2rad(-72.7)


def ned_basis(latitude: float, longitude: float) -> np.ndarray:
    """
    Rotation whose rows are the NED unit vectors expressed in ECEF.

    Args:
        latitude: Latitude φ in radians.
        longitude: Longitude λ in radians.

    Returns:
        3x3 matrix R such that v_ned = R @ v_ecef.
    """
    sin_lat, cos_lat = np.sin(latitude), np.cos(latitude)
    sin_lon, cos_lon = np.sin(longitude), np.cos(longitude)
    return np.array(
        [
            [-sin_lat * cos_lon, -sin_lat * sin_lon, cos_lat],
            [-sin_lon, cos_lon, 0.0],
            [-cos_lat * cos_lon, -cos_lat * sin_lon, -sin_lat],
        ]
    )


class ReferenceFieldModel(ABC):
    """Interface of a reference magnetic field service."""

    @abstractmethod
    def field_ned(
        self,
        latitude: float,
        longitude: float,
        height: float = 0.0,
        year: float = 2025.0,
    ) -> np.ndarray:
        """
        Expected magnetic flux density in the local NED frame.

        Args:
            latitude: Latitude in radians, [-π/2, π/2].
            longitude: Longitude in radians.
            height: Height above the reference sphere in meters.
            year: Decimal year of the measurement.

        Returns:
            Magnetic flux density [B_N, B_E, B_D] in Tesla, shape (3,).

        Raises:
            ReferenceFieldError: If the field cannot be evaluated.
        """

    def field_norm(
        self,
        latitude: float,
        longitude: float,
        height: float = 0.0,
        year: float = 2025.0,
    ) -> float:
        """Magnitude of the expected magnetic flux density [T]."""
        return float(np.linalg.norm(self.field_ned(latitude, longitude, height, year)))


class DipoleReferenceField(ReferenceFieldModel):
    """
    Tilted-dipole approximation of the Earth magnetic field.

    The model is static: year is accepted for interface compatibility but
    does not change the result.

    Example:
        >>> field = DipoleReferenceField()
        >>> b = field.field_ned(np.deg2rad(41.38), np.deg2rad(2.17))
        >>> print(f"|B| = {np.linalg.norm(b) * 1e6:.1f} uT")
    """

    def __init__(
        self,
        b0: float = DIPOLE_B0,
        pole_latitude: float = GEOMAGNETIC_POLE_LATITUDE,
        pole_longitude: float = GEOMAGNETIC_POLE_LONGITUDE,
        reference_radius: float = EARTH_REFERENCE_RADIUS,
    ):
        if b0 <= 0.0:
            raise ValueError(f"b0 must be positive, got {b0}")
        if reference_radius <= 0.0:
            raise ValueError(f"reference_radius must be positive, got {reference_radius}")

        self.b0 = b0
        self.reference_radius = reference_radius
        self.pole = np.array(
            [
                np.cos(pole_latitude) * np.cos(pole_longitude),
                np.cos(pole_latitude) * np.sin(pole_longitude),
                np.sin(pole_latitude),
            ]
        )

    def field_ned(self, latitude, longitude, height=0.0, year=2025.0):
        if not np.all(np.isfinite([latitude, longitude, height, year])):
            raise ReferenceFieldError("Position and time must be finite")
        if abs(latitude) > np.pi / 2:
            raise ReferenceFieldError(f"Latitude out of range: {latitude} rad")

        radius = self.reference_radius + height
        if radius <= 0.0:
            raise ReferenceFieldError(f"Height {height} m is below the Earth center")

        r_hat = np.array(
            [
                np.cos(latitude) * np.cos(longitude),
                np.cos(latitude) * np.sin(longitude),
                np.sin(latitude),
            ]
        )
        m_hat = -self.pole

        scale = self.b0 * (self.reference_radius / radius) ** 3
        field_ecef = scale * (3.0 * np.dot(m_hat, r_hat) * r_hat - m_hat)

        return ned_basis(latitude, longitude) @ field_ecef
