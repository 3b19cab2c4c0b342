"""
Magnetometer measurement models used by the calibrators.

Each model exposes the same interface:
    h(params, x): predicted observations
    H(params, x): analytic Jacobian
    pack / unpack: conversion between parameter vectors and (hard_iron, soft_iron)
    residual_norms: per-measurement error used by robust estimation
"""

from magcal.models.magnetometer_models import (
    COMPONENTS,
    HARD_IRON_NAMES,
    SOFT_IRON_NAMES,
    COMMON_AXIS_SOFT_IRON_NAMES,
    SOFT_IRON_INDEX,
    LOWER_TRIANGULAR_INDEX,
    FrameMagnetometerModel,
    NormMagnetometerModel,
    soft_iron_to_array,
    array_to_soft_iron,
)

__all__ = [
    "COMPONENTS",
    "HARD_IRON_NAMES",
    "SOFT_IRON_NAMES",
    "COMMON_AXIS_SOFT_IRON_NAMES",
    "SOFT_IRON_INDEX",
    "LOWER_TRIANGULAR_INDEX",
    "FrameMagnetometerModel",
    "NormMagnetometerModel",
    "soft_iron_to_array",
    "array_to_soft_iron",
]
