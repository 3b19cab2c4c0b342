"""Synthetic data generation for magnetometer calibration."""

from magcal.sim.magnetometer_measurements import (
    DEFAULT_NOISE_STD,
    DEFAULT_LATITUDE,
    DEFAULT_LONGITUDE,
    euler_to_rotation_matrix,
    random_attitudes,
    random_soft_iron,
    distort,
    generate_frame_records,
    generate_position_records,
    generate_measurements,
)

__all__ = [
    "DEFAULT_NOISE_STD",
    "DEFAULT_LATITUDE",
    "DEFAULT_LONGITUDE",
    "euler_to_rotation_matrix",
    "random_attitudes",
    "random_soft_iron",
    "distort",
    "generate_frame_records",
    "generate_position_records",
    "generate_measurements",
]
