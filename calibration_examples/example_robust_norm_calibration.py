"""
Example: Robust Magnetometer Calibration from the Field Magnitude.

Without attitude information only the magnitude of the Earth field is known at
each sample. The calibration then fits the ellipsoid traced by the raw
measurements:

    ‖(I + Mm)⁻¹ (b_meas - bm)‖ = ‖B_earth‖

Magnetic disturbances (nearby steel, electronics) produce gross outliers that
bias a plain least-squares fit. Robust estimators draw minimal subsets, score
every measurement against each candidate and refit on the inliers.

Run from repository root:
    python calibration_examples/example_robust_norm_calibration.py

Demonstrates:
    - Position records → measurements with per-sample reference norms
    - Non-robust fit vs LMedS, RANSAC, MSAC and PROMedS
    - Progress reporting through a CalibrationListener
    - Soft iron is only defined up to a rotation: compare (I + Mm)(I + Mm)ᵀ
"""

import argparse
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
from tqdm import tqdm

from magcal.calibration import (
    CalibrationListener,
    MagnetometerCalibrator,
    MeasurementPreprocessor,
    MeasurementType,
    RobustCalibratorConfig,
    RobustMagnetometerCalibrator,
)
from magcal.estimators import RobustEstimatorMethod
from magcal.sensors import DipoleReferenceField
from magcal.sim import DEFAULT_NOISE_STD, generate_position_records, random_soft_iron


class ProgressBarListener(CalibrationListener):
    """Shows robust estimation progress as a tqdm bar."""

    def __init__(self, desc):
        self.desc = desc
        self.bar = None

    def on_calibrate_start(self, calibrator):
        self.bar = tqdm(total=100, desc=self.desc, unit="%", leave=False)

    def on_calibrate_progress_change(self, calibrator, progress):
        self.bar.update(round(100 * progress) - self.bar.n)

    def on_calibrate_end(self, calibrator):
        self.bar.close()


def shape_error(result, soft_iron_true):
    M = np.eye(3) + result.soft_iron
    M_true = np.eye(3) + soft_iron_true
    return np.max(np.abs(M @ M.T - M_true @ M_true.T))


def run_comparison(n_measurements, outlier_ratio, noise_std, seed):
    rng = np.random.default_rng(seed)
    hard_iron = np.array([4e-6, -6e-6, 3e-6])
    soft_iron = random_soft_iron(rng, scale=0.03)

    n_outliers = int(round(outlier_ratio * n_measurements))
    outliers = np.sort(rng.choice(n_measurements, n_outliers, replace=False))

    print("=" * 70)
    print("Robust norm-based magnetometer calibration")
    print("=" * 70)
    print(f"\nMeasurements: {n_measurements} ({n_outliers} outliers)")
    print(f"Noise std:    {noise_std * 1e9:.0f} nT")

    records = generate_position_records(
        n_measurements, hard_iron, soft_iron, std=noise_std, outlier_indices=outliers, seed=seed
    )
    measurements = MeasurementPreprocessor(DipoleReferenceField()).process(records)

    results = {}
    results["Least squares"] = MagnetometerCalibrator(measurements, MeasurementType.NORM).calibrate()

    methods = {
        "LMedS": dict(method=RobustEstimatorMethod.LMEDS, stop_threshold=(2 * noise_std) ** 2),
        "RANSAC": dict(method=RobustEstimatorMethod.RANSAC, threshold=5 * noise_std),
        "MSAC": dict(method=RobustEstimatorMethod.MSAC, threshold=5 * noise_std),
        "PROMedS": dict(method=RobustEstimatorMethod.PROMEDS, stop_threshold=(2 * noise_std) ** 2),
    }
    for label, options in methods.items():
        config = RobustCalibratorConfig(seed=seed, progress_delta=0.01, **options)
        calibrator = RobustMagnetometerCalibrator(
            measurements, MeasurementType.NORM, config, listener=ProgressBarListener(label)
        )
        results[label] = calibrator.calibrate()

    print(f"\n{'Method':<15} {'Hard iron err (nT)':<20} {'Shape err':<12} {'Outliers':<10}")
    print("-" * 60)
    for label, result in results.items():
        error = np.linalg.norm(result.hard_iron - hard_iron) * 1e9
        rejected = "-" if result.inliers_data is None else str(len(result.inliers_data.outlier_indices))
        print(f"{label:<15} {error:<20.1f} {shape_error(result, soft_iron):<12.2e} {rejected:<10}")

    found = set(results["LMedS"].inliers_data.outlier_indices.tolist())
    print(f"\nLMedS rejected all injected outliers: {set(outliers.tolist()) <= found}")

    return measurements, outliers, results


def plot_residuals(measurements, outliers, results, output_dir):
    b_meas = np.array([m.b_meas for m in measurements])
    norms = np.array([m.reference_norm for m in measurements])

    fig, axes = plt.subplots(1, 2, figsize=(14, 6), sharey=True)
    for ax, label in zip(axes, ("Least squares", "LMedS")):
        result = results[label]
        residuals = (np.linalg.norm(result.correct(b_meas), axis=1) - norms) * 1e9

        clean = np.setdiff1d(np.arange(len(measurements)), outliers)
        ax.scatter(clean, residuals[clean], s=12, c="blue", label="Regular")
        ax.scatter(outliers, residuals[outliers], s=30, c="red", marker="x", label="Injected outlier")
        if result.inliers_data is not None:
            threshold = result.inliers_data.threshold * 1e9
            ax.axhline(threshold, color="gray", linestyle="--", label="Inlier threshold")
            ax.axhline(-threshold, color="gray", linestyle="--")
        ax.set_xlabel("Measurement index")
        ax.set_title(f"{label}: corrected magnitude error", fontweight="bold")
        ax.grid(True, alpha=0.3)
        ax.legend()
    axes[0].set_ylabel("‖b_corrected‖ - ‖B‖ (nT)")
    axes[0].set_yscale("symlog", linthresh=1000.0)

    plt.tight_layout()

    output_dir.mkdir(exist_ok=True)
    output_path = output_dir / "robust_norm_calibration.png"
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    print(f"\nFigure saved to: {output_path}")
    plt.close(fig)


def main():
    parser = argparse.ArgumentParser(description="Robust norm-based magnetometer calibration example")
    parser.add_argument("--measurements", type=int, default=100, help="Number of measurements (default: 100)")
    parser.add_argument("--outlier-ratio", type=float, default=0.1, help="Fraction of outliers (default: 0.1)")
    parser.add_argument(
        "--noise", type=float, default=DEFAULT_NOISE_STD * 1e9, help="Noise std in nT (default: 200)"
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    parser.add_argument("--no-plot", action="store_true", help="Skip the figure")
    args = parser.parse_args()

    measurements, outliers, results = run_comparison(
        args.measurements, args.outlier_ratio, args.noise * 1e-9, args.seed
    )

    if not args.no_plot:
        plot_residuals(measurements, outliers, results, Path(__file__).parent / "figs")


if __name__ == "__main__":
    main()
