"""
Example: Magnetometer Calibration from Known Field Vectors.

A magnetometer is rotated through random attitudes at a known position. For
every sample the attitude is known, so the expected body-frame field follows
from the reference field:

    b_true = Cᵀ B_ned

and the hard iron bm and soft iron Mm of

    b_meas = bm + (I + Mm) b_true + w

are estimated with Levenberg-Marquardt.

Run from repository root:
    python calibration_examples/example_frame_calibration.py

Demonstrates:
    - Frame records → measurements with MeasurementPreprocessor
    - General (12 unknowns) and common-axis (9 unknowns) calibration
    - Known hard iron (soft iron only)
    - Parameter standard deviations and chi-square goodness of fit
    - Correcting raw measurements with the fitted calibration
"""

import argparse
from dataclasses import replace
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from magcal.calibration import (
    CalibratorConfig,
    MagnetometerCalibrator,
    MeasurementPreprocessor,
    MeasurementType,
)
from magcal.sensors import DipoleReferenceField
from magcal.sim import DEFAULT_NOISE_STD, generate_frame_records, random_soft_iron


def print_result(label, result, hard_iron_true, soft_iron_true):
    """Print a calibration result against the true parameters."""
    hard_iron_error = np.linalg.norm(result.hard_iron - hard_iron_true)
    soft_iron_error = np.max(np.abs(result.soft_iron - soft_iron_true))

    print(f"\n--- {label} ---")
    print(f"Estimated hard iron [uT]: {result.hard_iron * 1e6}")
    print(f"True hard iron [uT]:      {hard_iron_true * 1e6}")
    print(f"Hard iron error:          {hard_iron_error * 1e9:.2f} nT")
    print(f"Max soft iron error:      {soft_iron_error:.2e}")
    if result.standard_deviations is not None and result.hard_iron_estimated:
        print(f"Hard iron std [nT]:       {result.standard_deviations[:3] * 1e9}")
    print(f"chi2 = {result.chi_sq:.1f}, dof = {result.dof}, p-value = {result.p_value:.3f}")
    print(f"Converged: {result.converged} ({result.iterations} iterations)")


def run_examples(n_measurements, noise_std, seed):
    rng = np.random.default_rng(seed)
    hard_iron = np.array([5e-6, -3e-6, 2e-6])
    soft_iron = random_soft_iron(rng, scale=0.03)
    soft_iron_common = random_soft_iron(rng, scale=0.03, common_axis_used=True)

    reference = DipoleReferenceField()
    preprocessor = MeasurementPreprocessor(reference)

    print("=" * 70)
    print("Frame-based magnetometer calibration")
    print("=" * 70)
    print(f"\nMeasurements: {n_measurements}")
    print(f"Noise std:    {noise_std * 1e9:.0f} nT")

    records = generate_frame_records(n_measurements, hard_iron, soft_iron, std=noise_std, seed=seed)
    measurements = preprocessor.process(records)
    print(f"Reference field magnitude: {measurements[0].reference_norm * 1e6:.2f} uT")

    # General calibration
    calibrator = MagnetometerCalibrator(measurements, MeasurementType.FRAME)
    result = calibrator.calibrate()
    print_result("General soft iron (12 unknowns)", result, hard_iron, soft_iron)

    # Common-axis calibration
    records_common = generate_frame_records(
        n_measurements, hard_iron, soft_iron_common, std=noise_std, seed=seed + 1
    )
    config = CalibratorConfig(common_axis_used=True)
    result_common = MagnetometerCalibrator(
        preprocessor.process(records_common), config=config
    ).calibrate()
    print_result("Common-axis soft iron (9 unknowns)", result_common, hard_iron, soft_iron_common)
    print(f"Lower couplings (myx, mzx, mzy): "
          f"{result_common.soft_iron[1, 0]}, {result_common.soft_iron[2, 0]}, {result_common.soft_iron[2, 1]}")

    # Known hard iron
    calibrator.config = replace(calibrator.config, known_hard_iron=hard_iron)
    result_known = calibrator.calibrate()
    print_result("Known hard iron (9 unknowns)", result_known, hard_iron, soft_iron)

    return measurements, result


def plot_correction(measurements, result, output_dir):
    b_meas = np.array([m.b_meas for m in measurements])
    b_true = np.array([m.b_true for m in measurements])
    corrected = result.correct(b_meas)

    raw_error = np.linalg.norm(b_meas - b_true, axis=1) * 1e9
    corrected_error = np.linalg.norm(corrected - b_true, axis=1) * 1e9

    fig, axes = plt.subplots(1, 2, figsize=(14, 6))

    ax = axes[0]
    ax.scatter(b_meas[:, 0] * 1e6, b_meas[:, 1] * 1e6, s=12, c="red", alpha=0.6, label="Raw")
    ax.scatter(corrected[:, 0] * 1e6, corrected[:, 1] * 1e6, s=12, c="blue", alpha=0.6, label="Corrected")
    ax.set_xlabel("x (uT)")
    ax.set_ylabel("y (uT)")
    ax.set_title("Body-frame field, x-y projection", fontweight="bold")
    ax.set_aspect("equal")
    ax.grid(True, alpha=0.3)
    ax.legend()

    ax = axes[1]
    bins = np.linspace(0.0, max(raw_error.max(), corrected_error.max()), 40)
    ax.hist(raw_error, bins=bins, color="red", alpha=0.6, label="Raw")
    ax.hist(corrected_error, bins=bins, color="blue", alpha=0.6, label="Corrected")
    ax.set_xlabel("Vector error (nT)")
    ax.set_ylabel("Count")
    ax.set_title("Error against reference field", fontweight="bold")
    ax.grid(True, alpha=0.3)
    ax.legend()

    plt.tight_layout()

    output_dir.mkdir(exist_ok=True)
    output_path = output_dir / "frame_calibration.png"
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    print(f"\nFigure saved to: {output_path}")
    plt.close(fig)


def main():
    parser = argparse.ArgumentParser(description="Frame-based magnetometer calibration example")
    parser.add_argument("--measurements", type=int, default=200, help="Number of measurements (default: 200)")
    parser.add_argument(
        "--noise", type=float, default=DEFAULT_NOISE_STD * 1e9, help="Noise std in nT (default: 200)"
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    parser.add_argument("--no-plot", action="store_true", help="Skip the figure")
    args = parser.parse_args()

    measurements, result = run_examples(args.measurements, args.noise * 1e-9, args.seed)

    if not args.no_plot:
        plot_correction(measurements, result, Path(__file__).parent / "figs")


if __name__ == "__main__":
    main()
