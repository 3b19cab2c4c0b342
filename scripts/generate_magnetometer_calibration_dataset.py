"""
Generate Magnetometer Calibration Dataset.

This script generates synthetic magnetometer calibration datasets: raw
measurements of a sensor rotated through random attitudes at a fixed position,
distorted by hard iron and soft iron, with Gaussian noise and optional
magnetic disturbances (gross outliers).

Each dataset contains the raw records (measured field, attitude, position and
time), the true calibration parameters and a config.json describing the
generation settings and a quick calibration check.

Forward model:
    b_true = Cᵀ B_ned(lat, lon, h, t)
    b_meas = bm + (I + Mm) b_true + w,   w ~ N(0, σ² I)
"""

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from magcal.calibration import (
    FrameRecord,
    MeasurementPreprocessor,
    MeasurementType,
    RobustCalibratorConfig,
    RobustMagnetometerCalibrator,
)
from magcal.sensors import DipoleReferenceField
from magcal.sim import (
    DEFAULT_LATITUDE,
    DEFAULT_LONGITUDE,
    generate_frame_records,
    random_soft_iron,
)

PRESETS = {
    "baseline": dict(noise_nT=200.0, outlier_ratio=0.0, common_axis=False),
    "noisy": dict(noise_nT=1000.0, outlier_ratio=0.0, common_axis=False),
    "disturbances": dict(noise_nT=200.0, outlier_ratio=0.15, common_axis=False),
    "common_axis": dict(noise_nT=200.0, outlier_ratio=0.05, common_axis=True),
}


def save_dataset(
    output_dir: Path,
    records: List[FrameRecord],
    hard_iron: np.ndarray,
    soft_iron: np.ndarray,
    outliers: np.ndarray,
    config: Dict,
) -> None:
    """Save dataset to disk."""
    output_dir.mkdir(parents=True, exist_ok=True)

    np.savetxt(
        output_dir / "magnetometer.txt",
        np.array([r.b_meas for r in records]) * 1e6,
        fmt="%.6f",
        header="mx (microTesla), my (microTesla), mz (microTesla)",
    )
    np.savetxt(
        output_dir / "attitude.txt",
        np.array([r.attitude.ravel() for r in records]),
        fmt="%.9f",
        header="body-to-NED rotation matrix, row-major (c11 c12 c13 c21 ... c33)",
    )
    np.savetxt(
        output_dir / "position.txt",
        np.array([[r.latitude, r.longitude, r.height, r.year] for r in records]),
        fmt="%.9f",
        header="latitude (rad), longitude (rad), height (m), year",
    )
    np.savetxt(output_dir / "outliers.txt", outliers, fmt="%d", header="indices of disturbed records")

    with open(output_dir / "ground_truth.json", "w") as f:
        json.dump({"hard_iron_T": hard_iron.tolist(), "soft_iron": soft_iron.tolist()}, f, indent=2)

    with open(output_dir / "config.json", "w") as f:
        json.dump(config, f, indent=2)

    print(f"\n  Saved dataset to: {output_dir}")
    print(f"    Files: 6 files (magnetometer, attitude, position, outliers, ground truth, config)")
    print(f"    Records: {len(records)}")


def generate_dataset(
    output_dir: str,
    preset: Optional[str] = None,
    n_records: int = 500,
    noise_nT: float = 200.0,
    outlier_ratio: float = 0.0,
    common_axis: bool = False,
    latitude_deg: float = float(np.rad2deg(DEFAULT_LATITUDE)),
    longitude_deg: float = float(np.rad2deg(DEFAULT_LONGITUDE)),
    seed: int = 42,
) -> None:
    """
    Generate a magnetometer calibration dataset.

    Args:
        output_dir: Output directory path.
        preset: Preset configuration name (overrides noise and outlier settings).
        n_records: Number of records.
        noise_nT: Measurement noise std (nT).
        outlier_ratio: Fraction of records turned into disturbances.
        common_axis: Use an upper-triangular soft-iron matrix.
        latitude_deg: Latitude (deg).
        longitude_deg: Longitude (deg).
        seed: Random seed.
    """
    if preset is not None:
        settings = PRESETS[preset]
        noise_nT = settings["noise_nT"]
        outlier_ratio = settings["outlier_ratio"]
        common_axis = settings["common_axis"]
        output_dir = f"data/sim/magcal_{preset}"

    print("\n" + "=" * 70)
    print(f"Generating Magnetometer Calibration Dataset: {Path(output_dir).name}")
    print("=" * 70)

    rng = np.random.default_rng(seed)
    hard_iron = rng.uniform(-10e-6, 10e-6, 3)
    soft_iron = random_soft_iron(rng, scale=0.05, common_axis_used=common_axis)
    n_outliers = int(round(outlier_ratio * n_records))
    outliers = np.sort(rng.choice(n_records, n_outliers, replace=False))
    latitude = np.deg2rad(latitude_deg)
    longitude = np.deg2rad(longitude_deg)

    print("\nStep 1: Generating records...")
    records = generate_frame_records(
        n_records,
        hard_iron,
        soft_iron,
        latitude=latitude,
        longitude=longitude,
        std=noise_nT * 1e-9,
        outlier_indices=outliers,
        seed=seed,
    )
    print(f"  Records: {n_records}")
    print(f"  Noise: {noise_nT:.0f} nT")
    print(f"  Disturbed records: {n_outliers}")
    print(f"  Hard iron: {np.round(hard_iron * 1e6, 3)} uT")

    print("\nStep 2: Robust calibration check...")
    start = time.time()
    measurements = MeasurementPreprocessor(DipoleReferenceField()).process(records)
    config = RobustCalibratorConfig(common_axis_used=common_axis, seed=seed)
    result = RobustMagnetometerCalibrator(measurements, MeasurementType.FRAME, config).calibrate()
    elapsed = time.time() - start

    hard_iron_error = float(np.linalg.norm(result.hard_iron - hard_iron))
    soft_iron_error = float(np.max(np.abs(result.soft_iron - soft_iron)))
    rejected = result.inliers_data.outlier_indices
    print(f"  Time: {elapsed:.3f} s")
    print(f"  Hard iron error: {hard_iron_error * 1e9:.1f} nT")
    print(f"  Max soft iron error: {soft_iron_error:.2e}")
    print(f"  Rejected records: {len(rejected)}")

    dataset_config = {
        "dataset": "magnetometer_calibration",
        "preset": preset,
        "num_records": n_records,
        "position": {"latitude_deg": latitude_deg, "longitude_deg": longitude_deg},
        "reference_field": "tilted_dipole",
        "reference_norm_uT": float(measurements[0].reference_norm * 1e6),
        "sensor": {
            "noise_std_nT": noise_nT,
            "common_axis": common_axis,
            "num_disturbed_records": n_outliers,
        },
        "calibration_check": {
            "method": config.method.value,
            "hard_iron_error_nT": hard_iron_error * 1e9,
            "max_soft_iron_error": soft_iron_error,
            "num_rejected": int(len(rejected)),
            "all_disturbances_rejected": bool(set(outliers.tolist()) <= set(rejected.tolist())),
        },
        "seed": seed,
    }

    save_dataset(Path(output_dir), records, hard_iron, soft_iron, outliers, dataset_config)

    print("\n" + "=" * 70)
    print("Dataset generation complete!")
    print("=" * 70)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Generate Magnetometer Calibration Dataset",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Presets:
  baseline        Consumer MEMS noise (200 nT), no disturbances
  noisy           High noise (1 uT), no disturbances
  disturbances    15% of records disturbed by nearby magnetic sources
  common_axis     Upper-triangular soft iron, 5% disturbed records

Examples:
  # Generate baseline dataset
  python scripts/generate_magnetometer_calibration_dataset.py --preset baseline

  # Generate dataset with custom parameters
  python scripts/generate_magnetometer_calibration_dataset.py \\
      --output data/sim/my_magcal \\
      --records 1000 \\
      --noise 500 \\
      --outlier-ratio 0.2
        """,
    )

    parser.add_argument(
        "--preset",
        type=str,
        choices=sorted(PRESETS),
        help="Use preset configuration (overrides noise and outlier parameters)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default="data/sim/magcal_custom",
        help="Output directory (default: data/sim/magcal_custom)",
    )

    data_group = parser.add_argument_group("Data Parameters")
    data_group.add_argument("--records", type=int, default=500, help="Number of records (default: 500)")
    data_group.add_argument("--noise", type=float, default=200.0, help="Noise std in nT (default: 200)")
    data_group.add_argument(
        "--outlier-ratio", type=float, default=0.0, help="Fraction of disturbed records (default: 0.0)"
    )
    data_group.add_argument("--common-axis", action="store_true", help="Upper-triangular soft iron")
    data_group.add_argument(
        "--latitude", type=float, default=float(np.rad2deg(DEFAULT_LATITUDE)), help="Latitude in degrees"
    )
    data_group.add_argument(
        "--longitude", type=float, default=float(np.rad2deg(DEFAULT_LONGITUDE)), help="Longitude in degrees"
    )

    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")

    args = parser.parse_args()

    generate_dataset(
        output_dir=args.output,
        preset=args.preset,
        n_records=args.records,
        noise_nT=args.noise,
        outlier_ratio=args.outlier_ratio,
        common_axis=args.common_axis,
        latitude_deg=args.latitude,
        longitude_deg=args.longitude,
        seed=args.seed,
    )


if __name__ == "__main__":
    main()
