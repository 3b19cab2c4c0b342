"""
Generate synthetic magnetometer calibration data.

Forward model:
    b_true = Cᵀ B_ned
    b_meas = bm + (I + Mm) b_true + w,   w ~ N(0, σ² I)

where C is the body-to-NED attitude, B_ned the reference field at the
measurement position and time, bm the hard iron and Mm the soft iron.

Outliers:
    Selected measurements are pushed away from the sensor origin by a fixed
    distance outlier_scale·σ along the measured direction. This changes both
    the vector error and the norm error by outlier_scale·σ, independently of
    the random noise draw.

Typical values (consumer MEMS magnetometer):
    hard iron: a few µT
    soft iron: scale and coupling of a few percent
    noise:     0.2 µT
"""

from typing import List, Optional, Sequence

import numpy as np

from magcal.calibration.types import FrameRecord, MagnetometerMeasurement, PositionRecord
from magcal.models import LOWER_TRIANGULAR_INDEX
from magcal.sensors.reference_field import DipoleReferenceField, ReferenceFieldModel

DEFAULT_NOISE_STD = 200e-9

# Barcelona
DEFAULT_LATITUDE = np.deg2rad(41.3825)
DEFAULT_LONGITUDE = np.deg2rad(2.176944)
DEFAULT_HEIGHT = 0.0
DEFAULT_YEAR = 2025.0


def euler_to_rotation_matrix(roll: float, pitch: float, yaw: float) -> np.ndarray:
    """
    Body-to-NED rotation from roll-pitch-yaw Euler angles (ZYX convention).

    Args:
        roll: Roll angle φ in radians (rotation about x-axis).
        pitch: Pitch angle θ in radians (rotation about y-axis).
        yaw: Yaw angle ψ in radians (rotation about z-axis).

    Returns:
        3x3 rotation matrix C such that v_ned = C @ v_body.
    """
    cr, sr = np.cos(roll), np.sin(roll)
    cp, sp = np.cos(pitch), np.sin(pitch)
    cy, sy = np.cos(yaw), np.sin(yaw)

    return np.array(
        [
            [cy * cp, cy * sp * sr - sy * cr, cy * sp * cr + sy * sr],
            [sy * cp, sy * sp * sr + cy * cr, sy * sp * cr - cy * sr],
            [-sp, cp * sr, cp * cr],
        ]
    )


def random_attitudes(n: int, rng: np.random.Generator) -> np.ndarray:
    """Random body-to-NED attitudes, shape (n, 3, 3)."""
    roll = rng.uniform(-np.pi, np.pi, n)
    pitch = rng.uniform(-np.pi / 2, np.pi / 2, n)
    yaw = rng.uniform(-np.pi, np.pi, n)
    return np.array([euler_to_rotation_matrix(r, p, y) for r, p, y in zip(roll, pitch, yaw)])


def random_soft_iron(
    rng: np.random.Generator, scale: float = 0.02, common_axis_used: bool = False
) -> np.ndarray:
    """
    Random soft-iron matrix with entries uniform in [-scale, scale].

    With common_axis_used the lower-triangular couplings are zero.
    """
    soft_iron = rng.uniform(-scale, scale, (3, 3))
    if common_axis_used:
        for index in LOWER_TRIANGULAR_INDEX:
            soft_iron[index] = 0.0
    return soft_iron


def distort(b_true: np.ndarray, hard_iron: np.ndarray, soft_iron: np.ndarray) -> np.ndarray:
    """Apply hard and soft iron: bm + (I + Mm) b_true, for (3,) or (N, 3) input."""
    b_true = np.asarray(b_true, dtype=float)
    return hard_iron + b_true @ (np.eye(3) + soft_iron).T


def _measured(
    b_true: np.ndarray,
    hard_iron: np.ndarray,
    soft_iron: np.ndarray,
    std: float,
    outlier_indices: Sequence[int],
    outlier_scale: float,
    rng: np.random.Generator,
) -> np.ndarray:
    b_meas = distort(b_true, hard_iron, soft_iron) + rng.normal(0.0, std, b_true.shape)
    for i in outlier_indices:
        direction = b_meas[i] / np.linalg.norm(b_meas[i])
        b_meas[i] = b_meas[i] + outlier_scale * std * direction
    return b_meas


def generate_frame_records(
    n: int,
    hard_iron: np.ndarray,
    soft_iron: np.ndarray,
    reference_field: Optional[ReferenceFieldModel] = None,
    latitude: float = DEFAULT_LATITUDE,
    longitude: float = DEFAULT_LONGITUDE,
    height: float = DEFAULT_HEIGHT,
    year: float = DEFAULT_YEAR,
    std: float = DEFAULT_NOISE_STD,
    outlier_indices: Sequence[int] = (),
    outlier_scale: float = 100.0,
    seed: Optional[int] = None,
) -> List[FrameRecord]:
    """
    Frame records at a fixed position with random attitudes.

    Quality scores are 1 for regular records and 0 for outliers, so that
    progressive methods rank clean records first.

    Args:
        n: Number of records.
        hard_iron: Hard iron bm (3,) [T].
        soft_iron: Soft iron Mm (3, 3).
        reference_field: Reference field service. Defaults to a tilted dipole.
        latitude, longitude: Position in radians.
        height: Height in meters.
        year: Decimal year.
        std: Noise standard deviation [T].
        outlier_indices: Records turned into outliers.
        outlier_scale: Outlier displacement as a multiple of std.
        seed: Random seed.

    Returns:
        List of FrameRecord.
    """
    rng = np.random.default_rng(seed)
    field = reference_field if reference_field is not None else DipoleReferenceField()
    b_ned = field.field_ned(latitude, longitude, height, year)

    attitudes = random_attitudes(n, rng)
    b_true = np.einsum("nji,j->ni", attitudes, b_ned)
    b_meas = _measured(b_true, hard_iron, soft_iron, std, outlier_indices, outlier_scale, rng)

    outliers = set(outlier_indices)
    return [
        FrameRecord(
            b_meas=b_meas[i],
            attitude=attitudes[i],
            latitude=latitude,
            longitude=longitude,
            height=height,
            year=year,
            std=std,
            quality_score=0.0 if i in outliers else 1.0,
        )
        for i in range(n)
    ]


def generate_position_records(
    n: int,
    hard_iron: np.ndarray,
    soft_iron: np.ndarray,
    reference_field: Optional[ReferenceFieldModel] = None,
    latitude: float = DEFAULT_LATITUDE,
    longitude: float = DEFAULT_LONGITUDE,
    height: float = DEFAULT_HEIGHT,
    year: float = DEFAULT_YEAR,
    std: float = DEFAULT_NOISE_STD,
    outlier_indices: Sequence[int] = (),
    outlier_scale: float = 100.0,
    seed: Optional[int] = None,
) -> List[PositionRecord]:
    """Position records (attitude discarded). Arguments as generate_frame_records."""
    frames = generate_frame_records(
        n, hard_iron, soft_iron, reference_field, latitude, longitude, height, year,
        std, outlier_indices, outlier_scale, seed,
    )
    return [
        PositionRecord(
            b_meas=f.b_meas,
            latitude=f.latitude,
            longitude=f.longitude,
            height=f.height,
            year=f.year,
            std=f.std,
            quality_score=f.quality_score,
        )
        for f in frames
    ]


def generate_measurements(
    n: int,
    hard_iron: np.ndarray,
    soft_iron: np.ndarray,
    b_ned: Optional[np.ndarray] = None,
    std: float = DEFAULT_NOISE_STD,
    outlier_indices: Sequence[int] = (),
    outlier_scale: float = 100.0,
    with_b_true: bool = True,
    seed: Optional[int] = None,
) -> List[MagnetometerMeasurement]:
    """
    Preprocessed measurements for random attitudes under a fixed NED field.

    Args:
        n: Number of measurements.
        hard_iron: Hard iron bm (3,) [T].
        soft_iron: Soft iron Mm (3, 3).
        b_ned: Reference field in NED [T]. Defaults to the dipole field at
            the default position.
        std: Noise standard deviation [T]. std=0 gives noiseless data; the
            measurements then carry a unit std for weighting.
        outlier_indices: Measurements turned into outliers.
        outlier_scale: Outlier displacement as a multiple of std.
        with_b_true: Attach b_true (frame calibration). Otherwise only the
            reference norm is attached (norm calibration).
        seed: Random seed.

    Returns:
        List of MagnetometerMeasurement with quality scores 1 (regular) or
        0 (outliers).
    """
    rng = np.random.default_rng(seed)
    if b_ned is None:
        b_ned = DipoleReferenceField().field_ned(DEFAULT_LATITUDE, DEFAULT_LONGITUDE)
    b_ned = np.asarray(b_ned, dtype=float)
    norm = float(np.linalg.norm(b_ned))

    attitudes = random_attitudes(n, rng)
    b_true = np.einsum("nji,j->ni", attitudes, b_ned)
    b_meas = _measured(b_true, hard_iron, soft_iron, std, outlier_indices, outlier_scale, rng)

    outliers = set(outlier_indices)
    weight_std = std if std > 0.0 else 1.0
    return [
        MagnetometerMeasurement(
            b_meas=b_meas[i],
            b_true=b_true[i] if with_b_true else None,
            std=weight_std,
            reference_norm=norm,
            quality_score=0.0 if i in outliers else 1.0,
        )
        for i in range(n)
    ]
