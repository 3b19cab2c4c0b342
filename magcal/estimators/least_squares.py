"""
Weighted linear least squares.

Used as the closed-form solver for measurement models that are affine in
their parameters:
    y = A x + e,   E[e e'] = W⁻¹
    x̂ = (A'WA)⁻¹ A'Wy
"""

from typing import Optional, Tuple

import numpy as np

from magcal.errors import FittingError


def weighted_least_squares(
    A: np.ndarray,
    b: np.ndarray,
    weights: Optional[np.ndarray] = None,
    return_covariance: bool = True,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Weighted least squares estimation with diagonal measurement weights.

    Solves: x_hat = argmin (Ax - b)' W (Ax - b)
    Solution: x_hat = (A'WA)^(-1) A'Wb

    Setting wᵢ = 1/σᵢ² yields the best linear unbiased estimate. The returned
    covariance is scaled by the residual variance σ̂² = r'Wr / (m - n) when the
    system is overdetermined.

    Args:
        A: Design matrix (m × n), where m ≥ n.
        b: Observation vector (m,).
        weights: Non-negative diagonal weights (m,). If None, uniform weights.
        return_covariance: If True, compute covariance matrix.

    Returns:
        Tuple of:
            - x_hat: Estimated parameter vector (n,).
            - P: Covariance matrix (n × n), or None if return_covariance is False.

    Raises:
        ValueError: If dimensions don't match or weights are negative.
        FittingError: If the system is underdetermined or rank deficient.

    Example:
        >>> import numpy as np
        >>> A = np.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
        >>> b = np.array([1.0, 2.0, 3.2])
        >>> x_hat, P = weighted_least_squares(A, b, np.array([100.0, 100.0, 4.0]))
    """
    A = np.asarray(A, dtype=float)
    b = np.asarray(b, dtype=float)

    # Validate inputs
    if A.ndim != 2 or b.ndim != 1:
        raise ValueError(
            f"Invalid dimensions: A must be 2D, b must be 1D. "
            f"Got A={A.shape}, b={b.shape}"
        )

    m, n = A.shape
    if len(b) != m:
        raise ValueError(f"Dimension mismatch: A has {m} rows, b has {len(b)} elements")

    if weights is None:
        weights = np.ones(m)
    else:
        weights = np.asarray(weights, dtype=float)
        if weights.shape != (m,):
            raise ValueError(f"weights length mismatch: expected {m}, got {weights.shape}")
        if np.any(weights < 0):
            raise ValueError("Weights must be non-negative")

    if m < n:
        raise FittingError(f"Underdetermined system: m={m} < n={n}")

    # Row scaling by sqrt(w) keeps the problem in least-squares form
    sqrt_w = np.sqrt(weights)
    A_w = A * sqrt_w[:, None]
    b_w = b * sqrt_w

    # Column scaling so that rank is judged independently of parameter units
    norms = np.linalg.norm(A_w, axis=0)
    if np.any(norms == 0.0) or not np.all(np.isfinite(A_w)):
        raise FittingError("Design matrix has unobserved or non-finite columns")
    A_s = A_w / norms

    rank = np.linalg.matrix_rank(A_s)
    if rank < n:
        raise FittingError(f"Design matrix is rank deficient: rank={rank} < n={n}")

    z, _, _, _ = np.linalg.lstsq(A_s, b_w, rcond=None)
    x_hat = z / norms

    P = None
    if return_covariance:
        residuals = b_w - A_s @ z
        if m > n:
            sigma2 = float(residuals @ residuals) / (m - n)
        else:
            sigma2 = 1.0  # Exact fit case

        # Covariance: P = σ² (A'WA)^(-1)
        inverse = np.linalg.inv(A_s.T @ A_s)
        P = sigma2 * inverse / np.outer(norms, norms)

    return x_hat, P
