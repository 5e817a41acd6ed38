"""Nearest-neighbour descriptor matching with ambiguity rejection."""
import logging
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np
from scipy.spatial.distance import cdist

from ._feature_extraction import Feature
from ._models import Point, PointMatch
from ._typing_utils import FloatArray

# Configure logger
logger = logging.getLogger(__name__)

DEFAULT_MAX_DISTANCE_RATIO = 0.8   # best / second best squared distance
SIMILAR_SCALE_TOLERANCE = 0.33     # Relative sigma difference allowed with similar_scale
MATCHING_CHUNK_SIZE = 512          # Source descriptors compared per block


@dataclass(frozen=True)
class FeatureMatch:
    """A correspondence between a feature of the first and of the second set."""
    feature1: Feature
    feature2: Feature
    distance: float
    """Squared descriptor distance."""


def descriptor_matrix(features: Sequence[Feature]) -> FloatArray:
    """Stack descriptors into an ``(n, 128)`` float64 array."""
    if not features:
        return np.zeros((0, 0), dtype=np.float64)
    return np.stack([f.descriptor for f in features]).astype(np.float64)


def match_features(
    features1: Sequence[Feature],
    features2: Sequence[Feature],
    max_distance_ratio: float = DEFAULT_MAX_DISTANCE_RATIO,
    similar_scale: bool = False,
) -> List[FeatureMatch]:
    """Match each feature of the first set to its nearest neighbour in the second.

    A match is kept if the nearest squared descriptor distance is less than
    ``max_distance_ratio`` times the second nearest. Sources without a finite
    second nearest candidate are not matched. Afterwards every match
    whose target is claimed by more than one source is dropped, including
    all of its duplicates.

    Args:
        features1: Source features
        features2: Target features
        max_distance_ratio: Distinctiveness threshold on squared distances
        similar_scale: Only consider targets whose sigma is within 33% of the source's

    Returns:
        Accepted matches in source order
    """
    if not features1 or len(features2) < 2:
        return []

    source = descriptor_matrix(features1)
    target = descriptor_matrix(features2)
    target_sigma = np.array([f.sigma for f in features2])

    candidates: List[FeatureMatch] = []
    targets: List[int] = []
    for start in range(0, len(features1), MATCHING_CHUNK_SIZE):
        block = slice(start, start + MATCHING_CHUNK_SIZE)
        distances = cdist(source[block], target, metric="sqeuclidean")
        if similar_scale:
            source_sigma = np.array([f.sigma for f in features1[block]])[:, None]
            too_different = np.abs(target_sigma[None, :] - source_sigma) > SIMILAR_SCALE_TOLERANCE * source_sigma
            distances[too_different] = np.inf

        rows = np.arange(distances.shape[0])
        best_index = np.argmin(distances, axis=1)
        best = distances[rows, best_index]
        distances[rows, best_index] = np.inf
        second = distances.min(axis=1)

        for row in range(len(rows)):
            if not np.isfinite(second[row]) or second[row] <= 0:
                continue
            if best[row] / second[row] < max_distance_ratio:
                index = int(best_index[row])
                candidates.append(FeatureMatch(features1[start + row], features2[index], float(best[row])))
                targets.append(index)

    claims = np.bincount(np.asarray(targets, dtype=int), minlength=len(features2))
    matches = [m for m, t in zip(candidates, targets) if claims[t] == 1]
    logger.debug(
        f"Matched {len(matches)} of {len(features1)} features "
        f"({len(candidates) - len(matches)} ambiguous targets dropped)"
    )
    return matches


def matches_to_point_matches(matches: Sequence[FeatureMatch]) -> List[PointMatch]:
    """Point correspondences between the world locations of matched features."""
    return [
        PointMatch(Point(m.feature1.location), Point(m.feature2.location))
        for m in matches
    ]
