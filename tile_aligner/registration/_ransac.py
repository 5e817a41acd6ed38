"""Robust model estimation by random sample consensus.

The module includes:
- ``estimate_model``: RANSAC with local least-squares refinement of every
  promising sample
- ``estimate_best_model``: repeated RANSAC with a growing inlier threshold
"""
import logging
import threading
from typing import Optional, Sequence, Type

import numpy as np

from ._models import Model, PointMatch, match_arrays

# Configure logger
logger = logging.getLogger(__name__)

DEFAULT_RANDOM_SEED = 69997
DEFAULT_ITERATIONS = 1000
DEFAULT_EPSILON = 2.0            # Inlier distance threshold in pixels
DEFAULT_MIN_INLIER_RATIO = 0.05
MAX_NON_IMPROVING_ROUNDS = 4     # Epsilon sweep stops after this many rounds without gain


def _inlier_mask(model: Model, src: np.ndarray, dst: np.ndarray, epsilon: float) -> np.ndarray:
    return model.residuals(src, dst) < epsilon


def _error(num_inliers: int, total: int) -> float:
    return min(1.0, max(0.0, 1.0 - num_inliers / total))


def estimate_model(
    matches: Sequence[PointMatch],
    model_class: Type[Model],
    epsilon: float = DEFAULT_EPSILON,
    min_inlier_ratio: float = DEFAULT_MIN_INLIER_RATIO,
    iterations: int = DEFAULT_ITERATIONS,
    rng: Optional[np.random.Generator] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Optional[Model]:
    """Fit a model robustly to a set of correspondences.

    Every iteration draws ``MIN_NUM_MATCHES`` distinct correspondences, fits a
    candidate to them and counts the correspondences it maps to within
    ``epsilon``. A candidate whose inlier ratio exceeds ``min_inlier_ratio`` is
    refitted by least squares on its inliers for as long as that strictly
    increases the inlier count. The best candidate must have more than twice
    ``MIN_NUM_MATCHES`` inliers.

    Args:
        matches: Correspondences; ``p1.local`` is mapped onto ``p2.world``
        model_class: Transform family to estimate
        epsilon: Inlier distance threshold
        min_inlier_ratio: Minimum inlier fraction for a candidate to be refined
        iterations: Number of random samples
        rng: Random generator; a fresh one seeded with DEFAULT_RANDOM_SEED if None
        cancel_event: If set, stops sampling and returns the best model so far

    Returns:
        The best model with ``error`` and ``inliers`` set, or None if no
        candidate qualified
    """
    total = len(matches)
    min_matches = model_class.MIN_NUM_MATCHES
    if total < min_matches:
        logger.warning(
            f"Insufficient correspondences for {model_class.__name__}: "
            f"{total} < {min_matches}"
        )
        return None
    if rng is None:
        rng = np.random.default_rng(DEFAULT_RANDOM_SEED)

    src, dst, weights = match_arrays(matches)
    best: Optional[Model] = None
    best_error = float("inf")
    best_mask: Optional[np.ndarray] = None

    for iteration in range(iterations):
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"RANSAC cancelled after {iteration} iterations")
            break

        sample = rng.choice(total, size=min_matches, replace=False)
        candidate = model_class()
        if not candidate.fit_minimal(src[sample], dst[sample]):
            continue

        mask = _inlier_mask(candidate, src, dst, epsilon)
        good = mask.sum() / total > min_inlier_ratio
        num_inliers = 0
        while good and num_inliers < mask.sum():
            num_inliers = int(mask.sum())
            if not candidate.fit(src[mask], dst[mask], weights[mask]):
                break
            mask = _inlier_mask(candidate, src, dst, epsilon)
            good = mask.sum() / total > min_inlier_ratio

        count = int(mask.sum())
        error = _error(count, total)
        if good and error < best_error and count > 2 * min_matches:
            best = candidate
            best_error = error
            best_mask = mask

    if best is None:
        logger.debug(
            f"No {model_class.__name__} found among {total} correspondences "
            f"(epsilon={epsilon}, min_inlier_ratio={min_inlier_ratio})"
        )
        return None

    best.error = best_error
    best.inliers = [matches[i] for i in np.flatnonzero(best_mask)]
    return best


def estimate_best_model(
    matches: Sequence[PointMatch],
    model_class: Type[Model],
    min_epsilon: float,
    max_epsilon: float,
    min_inlier_ratio: float = DEFAULT_MIN_INLIER_RATIO,
    iterations: int = DEFAULT_ITERATIONS,
    rng: Optional[np.random.Generator] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Optional[Model]:
    """Run RANSAC with epsilon growing in steps of ``min_epsilon``.

    The model with the most inliers is kept; the sweep ends once
    ``max_epsilon`` is reached or a model was found and
    ``MAX_NON_IMPROVING_ROUNDS`` consecutive rounds brought no more inliers.

    Raises:
        ValueError: If the epsilon range is empty
    """
    if min_epsilon <= 0 or max_epsilon < min_epsilon:
        raise ValueError(f"Invalid epsilon range [{min_epsilon}, {max_epsilon}]")
    if rng is None:
        rng = np.random.default_rng(DEFAULT_RANDOM_SEED)

    best: Optional[Model] = None
    epsilon = 0.0
    non_improving = 0
    while epsilon < max_epsilon:
        epsilon += min_epsilon
        model = estimate_model(
            matches, model_class, epsilon, min_inlier_ratio, iterations, rng, cancel_event
        )
        if model is not None and (best is None or len(model.inliers) > len(best.inliers)):
            best = model
            non_improving = 0
            logger.debug(f"epsilon={epsilon:.2f}: {len(model.inliers)} inliers")
        else:
            non_improving += 1
        if best is not None and non_improving >= MAX_NON_IMPROVING_ROUNDS:
            break
        if cancel_event is not None and cancel_event.is_set():
            break
    return best
