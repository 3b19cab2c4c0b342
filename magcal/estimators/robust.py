"""
Robust estimation by minimal-subset sampling.

A robust estimator repeatedly:
    1. draws a minimal subset of the samples,
    2. computes one or more candidate solutions from that subset,
    3. evaluates the residual of every sample against each candidate,
    4. scores the candidate and keeps the best one seen so far,
    5. updates the number of iterations required to reach the configured
       confidence from the best inlier ratio w:
           k = log(1 - confidence) / log(1 - w^s)

The estimators are problem-agnostic: the caller supplies a function that
computes candidates from subset indices and a function that computes the
residual of every sample against a candidate.

Scoring strategies (lower score tuple is better):
    LMedS:   median of squared residuals
    RANSAC:  negated count of residuals within a fixed threshold
    MSAC:    Σ min(r², t²)  (truncated quadratic cost)
    PROSAC:  RANSAC scoring with progressive sampling by quality score
    PROMedS: LMedS scoring with progressive sampling by quality score

Progressive sampling draws subsets from the highest-quality samples first and
grows the sampling pool following the PROSAC growth function.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np

from magcal.errors import (
    ConfigurationError,
    LockedError,
    NotReadyError,
    NumericalError,
    RobustEstimationError,
)

# Consistency factor between the MAD and the standard deviation of a Gaussian
MAD_TO_SIGMA = 1.4826


class RobustEstimatorMethod(str, Enum):
    """Supported robust estimation methods."""

    LMEDS = "lmeds"
    RANSAC = "ransac"
    MSAC = "msac"
    PROSAC = "prosac"
    PROMEDS = "promeds"


class EstimatorState(Enum):
    """Lifecycle of a robust estimation run.

    IDLE, CONVERGED and FAILED all accept a new run; SAMPLING rejects one.
    """

    IDLE = "idle"
    SAMPLING = "sampling"
    CONVERGED = "converged"
    FAILED = "failed"


@dataclass(frozen=True)
class InliersData:
    """Inlier selection produced by a robust estimation run.

    Attributes:
        inliers: Boolean mask (N,), True for samples kept for refinement.
        residuals: Residual of every sample against the best candidate (N,).
        threshold: Residual threshold used to decide the mask.
    """

    inliers: np.ndarray
    residuals: np.ndarray
    threshold: float

    @property
    def n_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers))

    @property
    def outlier_indices(self) -> np.ndarray:
        return np.flatnonzero(~self.inliers)


@dataclass
class RobustEstimate:
    """Best candidate found by a robust estimator.

    Attributes:
        candidate: Best candidate solution, as returned by the candidate function.
        inliers_data: Inlier mask, residuals and threshold for the candidate.
        score: Score tuple of the candidate (lower is better).
        iterations: Number of subsets drawn.
    """

    candidate: Any
    inliers_data: InliersData
    score: Tuple[float, ...]
    iterations: int


def required_iterations(inlier_ratio: float, subset_size: int, confidence: float) -> float:
    """
    Number of subsets needed to draw at least one outlier-free subset.

    Args:
        inlier_ratio: Fraction of inliers w in [0, 1].
        subset_size: Samples per subset s.
        confidence: Probability of drawing an outlier-free subset.

    Returns:
        log(1 - confidence) / log(1 - w^s), rounded up. Infinite when no
        finite number of iterations reaches the confidence.
    """
    if confidence <= 0.0:
        return 1.0
    if confidence >= 1.0 or inlier_ratio <= 0.0:
        return math.inf

    p_clean = inlier_ratio ** subset_size
    if p_clean >= 1.0:
        return 1.0
    if p_clean <= 0.0:
        return math.inf
    return float(math.ceil(math.log(1.0 - confidence) / math.log1p(-p_clean)))


class UniformSampler:
    """Draws subsets uniformly at random without replacement."""

    def __init__(self, n_samples: int, subset_size: int, rng: np.random.Generator):
        self.n_samples = n_samples
        self.subset_size = subset_size
        self.rng = rng

    def draw(self) -> np.ndarray:
        return np.sort(self.rng.choice(self.n_samples, self.subset_size, replace=False))


class ProgressiveSampler:
    """
    PROSAC sampler.

    Samples are ranked by decreasing quality score. Subsets are drawn from the
    top-n samples, and n grows as iterations proceed so that after
    max_iterations draws the whole set has become available.
    """

    def __init__(
        self,
        quality_scores: np.ndarray,
        subset_size: int,
        max_iterations: int,
        rng: np.random.Generator,
    ):
        quality_scores = np.asarray(quality_scores, dtype=float)
        self.order = np.argsort(-quality_scores, kind="stable")
        self.n_samples = len(quality_scores)
        self.subset_size = subset_size
        self.rng = rng

        s = subset_size
        t_n = float(max_iterations)
        for i in range(s):
            t_n *= (s - i) / (self.n_samples - i)

        self._n = s
        self._t = 0
        self._t_n = t_n
        self._t_n_prime = 1

    @property
    def pool_size(self) -> int:
        return self._n

    def draw(self) -> np.ndarray:
        self._t += 1
        s = self.subset_size

        if self._t > self._t_n_prime and self._n < self.n_samples:
            t_next = self._t_n * (self._n + 1) / (self._n + 1 - s)
            self._n += 1
            self._t_n_prime += int(math.ceil(t_next - self._t_n))
            self._t_n = t_next

        if self._t_n_prime < self._t:
            chosen = self.rng.choice(self._n, s, replace=False)
        else:
            # Newest sample of the pool is always included
            head = self.rng.choice(self._n - 1, s - 1, replace=False)
            chosen = np.append(head, self._n - 1)

        return np.sort(self.order[chosen])


class RobustEstimator(ABC):
    """
    Base class for robust estimators.

    Subclasses define how a candidate is scored from its residuals, when the
    run may stop early, and how the final inlier set is derived.

    Args:
        n_samples: Total number of samples N.
        subset_size: Number of samples per subset s (the minimal subset size).
        preliminary_solutions: Callable mapping sorted subset indices to a list
            of candidate solutions. May raise NumericalError, in which case
            the subset is discarded.
        residuals: Callable mapping a candidate to the residual of every sample
            (N,). Non-finite residuals discard the candidate.
        confidence: Probability that at least one drawn subset is outlier-free.
        max_iterations: Maximum number of subsets drawn.
        progress_delta: Minimum progress change between progress notifications.
        quality_scores: Per-sample quality scores, larger is better. Required
            by progressive methods.
        seed: Seed for the random generator.
        on_iteration: Called with the 1-based iteration index after each draw.
        on_progress: Called with the progress fraction in [0, 1].
    """

    method: RobustEstimatorMethod
    progressive = False

    def __init__(
        self,
        n_samples: int,
        subset_size: int,
        preliminary_solutions: Callable[[np.ndarray], List[Any]],
        residuals: Callable[[Any], np.ndarray],
        confidence: float = 0.99,
        max_iterations: int = 5000,
        progress_delta: float = 0.05,
        quality_scores: Optional[Sequence[float]] = None,
        seed: Optional[int] = None,
        on_iteration: Optional[Callable[[int], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ):
        if not 0.0 <= confidence <= 1.0:
            raise ConfigurationError(f"confidence must be in [0, 1], got {confidence}")
        if max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {max_iterations}")
        if not 0.0 <= progress_delta <= 1.0:
            raise ConfigurationError(f"progress_delta must be in [0, 1], got {progress_delta}")
        if subset_size < 1:
            raise ConfigurationError(f"subset_size must be >= 1, got {subset_size}")

        self.n_samples = n_samples
        self.subset_size = subset_size
        self.preliminary_solutions = preliminary_solutions
        self.residuals = residuals
        self.confidence = confidence
        self.max_iterations = max_iterations
        self.progress_delta = progress_delta
        self.quality_scores = None if quality_scores is None else np.asarray(quality_scores, dtype=float)
        self.seed = seed
        self.on_iteration = on_iteration
        self.on_progress = on_progress

        self._state = EstimatorState.IDLE

    @property
    def state(self) -> EstimatorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is EstimatorState.SAMPLING

    @property
    def is_ready(self) -> bool:
        if self.n_samples < self.subset_size:
            return False
        if self.progressive:
            return self.quality_scores is not None and len(self.quality_scores) == self.n_samples
        return True

    def estimate(self) -> RobustEstimate:
        """
        Run the sampling loop and return the best candidate.

        Returns:
            RobustEstimate with the best candidate and its inlier data.

        Raises:
            LockedError: If a run is already in progress.
            NotReadyError: If there are fewer samples than the subset size, or
                quality scores are missing for a progressive method.
            RobustEstimationError: If no subset produced a valid candidate, or
                the iteration cap was reached before the configured confidence.
        """
        if self.is_running:
            raise LockedError()
        if not self.is_ready:
            raise NotReadyError(
                f"{self.method.value} needs at least {self.subset_size} samples"
                + (" and one quality score per sample" if self.progressive else "")
                + f", got {self.n_samples}"
            )

        self._state = EstimatorState.SAMPLING
        try:
            result = self._run()
        except Exception:
            self._state = EstimatorState.FAILED
            raise
        self._state = EstimatorState.CONVERGED
        return result

    def _run(self) -> RobustEstimate:
        rng = np.random.default_rng(self.seed)
        if self.progressive:
            sampler = ProgressiveSampler(self.quality_scores, self.subset_size, self.max_iterations, rng)
        else:
            sampler = UniformSampler(self.n_samples, self.subset_size, rng)

        best_candidate = None
        best_score = None
        best_residuals = None
        required = math.inf
        iteration = 0
        last_progress = 0.0
        stopped = False

        while iteration < min(required, self.max_iterations):
            indices = sampler.draw()
            iteration += 1

            for candidate in self._candidates(indices):
                residuals = self._candidate_residuals(candidate)
                if residuals is None:
                    continue

                score, n_inliers = self._score(residuals)
                if best_score is None or score < best_score:
                    best_candidate, best_score, best_residuals = candidate, score, residuals
                    required = required_iterations(
                        n_inliers / self.n_samples, self.subset_size, self.confidence
                    )

            if self.on_iteration is not None:
                self.on_iteration(iteration)

            progress = min(1.0, iteration / min(required, self.max_iterations))
            if self.on_progress is not None and progress - last_progress >= self.progress_delta:
                last_progress = progress
                self.on_progress(progress)

            if best_score is not None and self._stop_reached(best_score):
                stopped = True
                break

        if best_candidate is None:
            raise RobustEstimationError(
                f"No valid candidate found after {iteration} iterations"
            )
        if not stopped and iteration >= self.max_iterations and required > self.max_iterations:
            raise RobustEstimationError(
                f"Iteration budget of {self.max_iterations} exhausted before reaching "
                f"confidence {self.confidence} (required {required:g})"
            )

        if self.on_progress is not None and last_progress < 1.0:
            self.on_progress(1.0)

        return RobustEstimate(
            candidate=best_candidate,
            inliers_data=self._inliers_data(best_residuals),
            score=best_score,
            iterations=iteration,
        )

    def _candidates(self, indices: np.ndarray) -> List[Any]:
        try:
            return list(self.preliminary_solutions(indices))
        except (NumericalError, np.linalg.LinAlgError):
            return []

    def _candidate_residuals(self, candidate: Any) -> Optional[np.ndarray]:
        try:
            residuals = np.asarray(self.residuals(candidate), dtype=float)
        except (NumericalError, np.linalg.LinAlgError):
            return None
        if residuals.shape != (self.n_samples,) or not np.all(np.isfinite(residuals)):
            return None
        return residuals

    @abstractmethod
    def _score(self, residuals: np.ndarray) -> Tuple[Tuple[float, ...], int]:
        """Return (score, inlier count) for a candidate's residuals."""

    @abstractmethod
    def _inliers_data(self, residuals: np.ndarray) -> InliersData:
        """Build the final inlier selection for the best candidate."""

    def _stop_reached(self, score: Tuple[float, ...]) -> bool:
        return False


class LMedSEstimator(RobustEstimator):
    """
    Least Median of Squares estimator.

    The candidate minimising the median of squared residuals wins. The inlier
    threshold is derived from the robust scale estimate of the best candidate:
        σ̂ = 1.4826 · (1 + 5 / (N - s)) · sqrt(median(r²))
        threshold = inlier_factor · σ̂
    and never falls below sqrt(stop_threshold).

    The threshold scales with the candidate's own residuals, so even a poor
    candidate finds most samples within it. The inlier ratio driving the
    iteration count is therefore bounded by the breakdown point of the median:
    at most m = ⌊N/2⌋ - s + 1 outliers are tolerated, and
        w = min(n_inliers, N - m) / N

    Args:
        stop_threshold: The run stops once the best median squared residual
            is at or below this value. Must be positive.
        inlier_factor: Multiple of σ̂ used as inlier threshold.
    """

    method = RobustEstimatorMethod.LMEDS

    def __init__(self, *args, stop_threshold: float = 1e-18, inlier_factor: float = 2.5, **kwargs):
        super().__init__(*args, **kwargs)
        if stop_threshold <= 0.0:
            raise ConfigurationError(f"stop_threshold must be > 0, got {stop_threshold}")
        if inlier_factor <= 0.0:
            raise ConfigurationError(f"inlier_factor must be > 0, got {inlier_factor}")
        self.stop_threshold = stop_threshold
        self.inlier_factor = inlier_factor

    def _threshold(self, median_sq: float) -> float:
        excess = self.n_samples - self.subset_size
        finite_sample = 1.0 + 5.0 / excess if excess > 0 else 1.0
        sigma = MAD_TO_SIGMA * finite_sample * math.sqrt(median_sq)
        return max(self.inlier_factor * sigma, math.sqrt(self.stop_threshold))

    @property
    def max_outliers(self) -> int:
        """Largest number of outliers the median criterion tolerates."""
        return max(self.n_samples // 2 - self.subset_size + 1, 0)

    def _score(self, residuals):
        median_sq = float(np.median(residuals ** 2))
        threshold = self._threshold(median_sq)
        n_inliers = int(np.count_nonzero(np.abs(residuals) <= threshold))
        return (median_sq,), min(n_inliers, self.n_samples - self.max_outliers)

    def _stop_reached(self, score):
        return score[0] <= self.stop_threshold

    def _inliers_data(self, residuals):
        threshold = self._threshold(float(np.median(residuals ** 2)))
        return InliersData(
            inliers=np.abs(residuals) <= threshold,
            residuals=residuals,
            threshold=threshold,
        )


class RANSACEstimator(RobustEstimator):
    """
    RANSAC estimator: the candidate with most residuals within threshold wins.

    Ties are broken by the sum of squared inlier residuals.

    Args:
        threshold: Residual threshold separating inliers from outliers.
    """

    method = RobustEstimatorMethod.RANSAC

    def __init__(self, *args, threshold: float = 1e-8, **kwargs):
        super().__init__(*args, **kwargs)
        if threshold <= 0.0:
            raise ConfigurationError(f"threshold must be > 0, got {threshold}")
        self.threshold = threshold

    def _score(self, residuals):
        inliers = np.abs(residuals) <= self.threshold
        n_inliers = int(np.count_nonzero(inliers))
        return (-n_inliers, float(np.sum(residuals[inliers] ** 2))), n_inliers

    def _inliers_data(self, residuals):
        return InliersData(
            inliers=np.abs(residuals) <= self.threshold,
            residuals=residuals,
            threshold=self.threshold,
        )


class MSACEstimator(RANSACEstimator):
    """MSAC estimator: truncated quadratic cost Σ min(r², t²)."""

    method = RobustEstimatorMethod.MSAC

    def _score(self, residuals):
        sq = residuals ** 2
        cost = float(np.sum(np.minimum(sq, self.threshold ** 2)))
        return (cost,), int(np.count_nonzero(np.abs(residuals) <= self.threshold))


class PROSACEstimator(RANSACEstimator):
    """RANSAC scoring with progressive sampling by quality score."""

    method = RobustEstimatorMethod.PROSAC
    progressive = True


class PROMedSEstimator(LMedSEstimator):
    """LMedS scoring with progressive sampling by quality score."""

    method = RobustEstimatorMethod.PROMEDS
    progressive = True


_ESTIMATORS = {
    RobustEstimatorMethod.LMEDS: LMedSEstimator,
    RobustEstimatorMethod.RANSAC: RANSACEstimator,
    RobustEstimatorMethod.MSAC: MSACEstimator,
    RobustEstimatorMethod.PROSAC: PROSACEstimator,
    RobustEstimatorMethod.PROMEDS: PROMedSEstimator,
}


def create_robust_estimator(method, *args, **kwargs) -> RobustEstimator:
    """
    Create a robust estimator for the given method.

    Args:
        method: RobustEstimatorMethod or its string value (e.g. "lmeds").
        *args, **kwargs: Forwarded to the estimator constructor.

    Raises:
        ConfigurationError: If the method is unknown.
    """
    try:
        method = RobustEstimatorMethod(method)
    except ValueError as e:
        raise ConfigurationError(f"Unknown robust estimator method: {method}") from e
    return _ESTIMATORS[method](*args, **kwargs)
