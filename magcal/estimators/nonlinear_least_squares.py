"""
Levenberg-Marquardt solver for weighted nonlinear least squares.

Mathematical Formulation:
    Given observations y, per-row weights w and a model h(x), we seek:
        x̂ = argmin χ²(x),   χ²(x) = Σᵢ wᵢ (yᵢ - hᵢ(x))²

    With J = ∂h/∂x, r = y - h(x) and W = diag(w):
        α = J'WJ        (information matrix)
        β = J'Wr

    Levenberg-Marquardt step with Marquardt scaling:
        (α + μ diag(α)) Δx = β

    A step is accepted when it does not increase χ², in which case μ ← μ/10;
    otherwise μ ← 10μ and the step is retried from the same point.

    At the optimum the parameter covariance is:
        P = σ̂² α⁻¹,   σ̂² = χ² / (m - n_eff)

Gauge freedom:
    Some models are invariant along a known number of parameter directions
    (e.g. the general norm-based magnetometer model under M → M Rᵀ). Passing
    rank_deficiency tells the solver how many directions of α are expected to
    be unobservable. Steps are then solved with a truncated least-squares solve
    and the covariance uses the pseudo-inverse of α.
"""

import warnings
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np

from magcal.errors import FittingError

# Damping above this value means no downhill step could be found
MAX_DAMPING = 1e10

# Consecutive steps with negligible χ² change required for convergence
STALL_STEPS = 4

# Relative singular value cutoff for gauge-deficient problems
GAUGE_RCOND = 1e-10


@dataclass
class NonlinearLSResult:
    """Result container for nonlinear least squares optimization.

    Attributes:
        x: Estimated parameter vector.
        covariance: Covariance matrix (n × n), or None.
        iterations: Number of iterations performed.
        residuals: Final residuals r = y - h(x̂).
        cost: Final cost value ½χ².
        converged: Whether the solver converged within tolerance.
        chi_sq: Weighted sum of squared residuals at x̂.
        mse: Unweighted mean of squared residuals at x̂.
    """

    x: np.ndarray
    covariance: Optional[np.ndarray]
    iterations: int
    residuals: np.ndarray
    cost: float
    converged: bool
    chi_sq: float = 0.0
    mse: float = 0.0


def levenberg_marquardt(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = 100,
    tol: float = 1e-12,
    mu0: float = 1e-3,
    rank_deficiency: int = 0,
    return_covariance: bool = True,
) -> NonlinearLSResult:
    """
    Levenberg-Marquardt solver for weighted nonlinear least squares.

    Solves: x̂ = argmin Σ wᵢ (yᵢ - hᵢ(x))²

    Convergence is declared when χ² has changed by less than tol·χ² on
    4 consecutive accepted steps, or when χ² has reached the floating-point
    floor (64·eps)²·Σ wᵢyᵢ² (exact fit). Reaching max_iter without meeting
    either criterion emits a UserWarning and returns converged=False.

    Args:
        h: Measurement model function h: R^n → R^m.
        jacobian: Function returning Jacobian matrix J = ∂h/∂x (m × n).
        y: Observation vector (m,).
        x0: Initial parameter estimate (n,).
        weights: Optional non-negative measurement weights (m,).
            If None, uses uniform weights.
        max_iter: Maximum number of iterations.
        tol: Relative χ² change below which a step makes no progress.
        mu0: Initial damping parameter.
        rank_deficiency: Number of gauge directions the model cannot observe.
        return_covariance: If True, compute covariance at final estimate.

    Returns:
        NonlinearLSResult containing estimate, covariance, and fit statistics.

    Raises:
        ValueError: If array dimensions are inconsistent.
        FittingError: If the information matrix is singular, the residuals are
            not finite at x0, or the damping reaches its cap without finding
            a downhill step.

    Example:
        >>> import numpy as np
        >>> t = np.linspace(0.0, 1.0, 20)
        >>> def h(x):
        ...     return x[0] * np.exp(x[1] * t)
        >>> def jac(x):
        ...     e = np.exp(x[1] * t)
        ...     return np.column_stack([e, x[0] * t * e])
        >>> y = h(np.array([2.0, -1.5]))
        >>> result = levenberg_marquardt(h, jac, y, x0=np.array([1.0, 0.0]))
        >>> print(f"Estimate: {result.x}, Converged: {result.converged}")
    """
    # Input validation
    y = np.asarray(y, dtype=float)
    x0 = np.asarray(x0, dtype=float)

    if y.ndim != 1:
        raise ValueError(f"y must be 1D array, got shape {y.shape}")
    if x0.ndim != 1:
        raise ValueError(f"x0 must be 1D array, got shape {x0.shape}")

    m = len(y)
    n = len(x0)

    if weights is None:
        weights = np.ones(m)
    else:
        weights = np.asarray(weights, dtype=float)
        if weights.ndim != 1 or len(weights) != m:
            raise ValueError(f"weights must be 1D array of length {m}")
        if np.any(weights < 0):
            raise ValueError("weights must be non-negative")

    if not 0 <= rank_deficiency < n:
        raise ValueError(f"rank_deficiency must be in [0, {n}), got {rank_deficiency}")

    x = x0.copy()
    r, chi_sq = _evaluate(h, y, x, weights)
    if not np.isfinite(chi_sq):
        raise FittingError("Residuals are not finite at the initial estimate")

    floor = (64.0 * np.finfo(float).eps) ** 2 * np.sum(weights * y ** 2)
    mu = mu0
    stalled = 0
    converged = chi_sq <= floor
    iteration = 0

    while not converged and iteration < max_iter:
        iteration += 1

        J = _evaluate_jacobian(jacobian, x, m, n)
        alpha = J.T @ (weights[:, None] * J)
        beta = J.T @ (weights * r)
        _check_information(alpha, n - rank_deficiency)

        # Inner loop: raise damping until a downhill step is found
        while True:
            damped = alpha + mu * np.diag(np.diag(alpha))
            delta = _solve_scaled(damped, beta, rank_deficiency)
            x_new = x + delta
            try:
                r_new, chi_sq_new = _evaluate(h, y, x_new, weights)
            except np.linalg.LinAlgError:
                chi_sq_new = np.inf

            if np.isfinite(chi_sq_new) and chi_sq_new <= chi_sq:
                break

            mu *= 10.0
            if mu > MAX_DAMPING:
                raise FittingError(
                    f"Levenberg-Marquardt damping exceeded {MAX_DAMPING:g} "
                    f"without reducing chi-square (iteration {iteration})"
                )

        change = chi_sq - chi_sq_new
        x, r, chi_sq = x_new, r_new, chi_sq_new
        mu /= 10.0

        if change <= tol * chi_sq:
            stalled += 1
        else:
            stalled = 0

        if stalled >= STALL_STEPS or chi_sq <= floor:
            converged = True

    if not converged:
        warnings.warn(
            f"Levenberg-Marquardt reached max_iter={max_iter} without converging "
            f"(chi_sq={chi_sq:.6g})",
            UserWarning,
        )

    # Covariance estimation
    P = None
    if return_covariance:
        J = _evaluate_jacobian(jacobian, x, m, n)
        alpha = J.T @ (weights[:, None] * J)
        _check_information(alpha, n - rank_deficiency)

        n_eff = n - rank_deficiency
        if m > n_eff:
            sigma2 = chi_sq / (m - n_eff)
        else:
            sigma2 = 1.0

        P = sigma2 * _inverse_information(alpha, rank_deficiency)

    return NonlinearLSResult(
        x=x,
        covariance=P,
        iterations=iteration,
        residuals=r,
        cost=0.5 * chi_sq,
        converged=converged,
        chi_sq=float(chi_sq),
        mse=float(np.mean(r ** 2)),
    )


def _evaluate(
    h: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x: np.ndarray,
    weights: np.ndarray,
) -> Tuple[np.ndarray, float]:
    """Residuals and χ² at x."""
    hx = np.asarray(h(x), dtype=float)
    if hx.shape != y.shape:
        raise ValueError(f"h(x) returned shape {hx.shape}, expected {y.shape}")
    r = y - hx
    return r, float(np.sum(weights * r ** 2))


def _evaluate_jacobian(
    jacobian: Callable[[np.ndarray], np.ndarray], x: np.ndarray, m: int, n: int
) -> np.ndarray:
    J = np.asarray(jacobian(x), dtype=float)
    if J.shape != (m, n):
        raise ValueError(f"Jacobian shape {J.shape}, expected ({m}, {n})")
    return J


def _column_scale(alpha: np.ndarray) -> np.ndarray:
    return 1.0 / np.sqrt(np.diag(alpha))


def _check_information(alpha: np.ndarray, required_rank: int) -> None:
    """
    Raise FittingError if the information matrix cannot support a solution.

    The rank is evaluated on the column-normalised matrix so that parameters
    with very different magnitudes (hard iron in T against unitless soft iron)
    do not mask each other.
    """
    diagonal = np.diag(alpha)
    if not np.all(np.isfinite(alpha)):
        raise FittingError("Information matrix contains non-finite values")
    if np.any(diagonal <= 0.0):
        unobserved = np.flatnonzero(diagonal <= 0.0).tolist()
        raise FittingError(f"Information matrix is singular: parameters {unobserved} are unobserved")

    scale = _column_scale(alpha)
    normalized = alpha * np.outer(scale, scale)
    rank = np.linalg.matrix_rank(normalized)
    if rank < required_rank:
        raise FittingError(
            f"Information matrix is singular: rank {rank} < {required_rank} "
            f"(insufficient measurement diversity)"
        )


def _solve_scaled(matrix: np.ndarray, rhs: np.ndarray, rank_deficiency: int) -> np.ndarray:
    """Solve matrix·x = rhs after symmetric column normalisation."""
    scale = _column_scale(matrix)
    normalized = matrix * np.outer(scale, scale)
    scaled_rhs = scale * rhs

    if rank_deficiency > 0:
        z = np.linalg.lstsq(normalized, scaled_rhs, rcond=GAUGE_RCOND)[0]
    else:
        try:
            z = np.linalg.solve(normalized, scaled_rhs)
        except np.linalg.LinAlgError:
            z = np.linalg.lstsq(normalized, scaled_rhs, rcond=None)[0]
    return scale * z


def _inverse_information(alpha: np.ndarray, rank_deficiency: int) -> np.ndarray:
    scale = _column_scale(alpha)
    normalized = alpha * np.outer(scale, scale)

    if rank_deficiency > 0:
        inverse = np.linalg.pinv(normalized, rcond=GAUGE_RCOND, hermitian=True)
    else:
        try:
            inverse = np.linalg.inv(normalized)
        except np.linalg.LinAlgError as e:
            raise FittingError(f"Information matrix is not invertible: {e}") from e

    return inverse * np.outer(scale, scale)
