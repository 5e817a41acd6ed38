"""Feature-based registration of image tiles.

This module chains the registration building blocks into one pipeline:

- Feature extraction for every tile, in worker processes with a bounded
  number of tasks in flight
- Pairwise descriptor matching and robust model estimation, with optional
  manual correspondences and a phase correlation fallback
- Tile graph construction, anchor selection and model initialization along a
  maximum spanning tree
- Iterative global optimization of all tile models
- Conversion of features, correspondences and tile transforms to pandas
  DataFrames and reading correspondences from CSV
"""
import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from multiprocessing import Pool, cpu_count
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import networkx as nx
import numpy as np
import pandas as pd
import psutil
from tqdm import tqdm

from ..benchmarking_util import debug_timing
from ..parameters import (
    CorrelationParameters,
    RansacParameters,
    RegistrationParameters,
    SiftParameters,
)
from ._feature_extraction import Feature, detect_features
from ._feature_matching import match_features, matches_to_point_matches
from ._global_optimization import (
    compute_maximum_spanning_tree,
    propagate_models,
    select_fixed_tiles,
)
from ._image_filter import validate_image
from ._models import Model, ModelType, Point, PointMatch, model_class
from ._ransac import estimate_best_model, estimate_model
from ._scale_space import build_scale_space
from ._tile_optimization import OptimizationResult, Tile, connect_tiles, optimize_tiles
from ._translation_computation import correlation_matches, phase_correlation
from ._typing_utils import NumArray

# Configure logger
logger = logging.getLogger(__name__)

# Approximate bytes held per input pixel while one tile is being processed:
# float32 levels and DoG images of the upscaled octave plus memoized gradients.
BYTES_PER_PIXEL_ESTIMATE = 4 * 4 * 12


class CorrespondenceSource(Enum):
    """Where the correspondences linking a tile pair came from."""
    FEATURES = "features"
    CORRELATION = "correlation"
    MANUAL = "manual"
    NONE = "none"


@dataclass
class TilePairResult:
    """Outcome of registering one pair of tiles."""
    index1: int
    index2: int
    num_candidates: int
    """Correspondences handed to model estimation."""
    model: Optional[Model]
    """Maps tile ``index1`` coordinates to tile ``index2`` coordinates."""
    source: CorrespondenceSource

    @property
    def inliers(self) -> List[PointMatch]:
        return self.model.inliers if self.model is not None else []


@dataclass
class RegistrationResult:
    tiles: List[Tile]
    fixed_tiles: List[int]
    pairs: List[TilePairResult]
    optimization: Optional[OptimizationResult]
    features: List[List[Feature]] = field(default_factory=list, repr=False)

    @property
    def models(self) -> List[Model]:
        return [tile.model for tile in self.tiles]


def extract_features(image: NumArray, params: Optional[SiftParameters] = None) -> List[Feature]:
    """Detect and describe the features of one image."""
    if params is None:
        params = SiftParameters()
    space = build_scale_space(
        image,
        image_sigma=params.image_sigma,
        initial_sigma=params.initial_sigma,
        steps=params.steps_per_octave,
        min_size=params.min_image_size,
    )
    features = detect_features(
        space, params.min_dog_contrast, params.max_curvature_ratio, max_size=params.max_image_size
    )
    logger.debug(f"Extracted {len(features)} features from {space.num_octaves} octaves")
    return features


def calculate_max_in_flight(
    image_shape: Tuple[int, ...],
    workers: int,
    lookahead: int,
    memory_fraction: float = 0.5,
) -> int:
    """Number of extraction tasks allowed in flight.

    At most ``lookahead`` tasks per worker, further limited by the memory
    currently available.
    """
    per_task = int(np.prod(image_shape)) * BYTES_PER_PIXEL_ESTIMATE
    available_memory = psutil.virtual_memory().available * memory_fraction
    by_memory = int(available_memory // max(per_task, 1))
    max_in_flight = max(1, min(lookahead * workers, by_memory))
    logger.debug(
        f"Up to {max_in_flight} extraction tasks in flight "
        f"({per_task / 1e6:.1f}MB estimated per task)"
    )
    return max_in_flight


def extract_features_batched(
    images: Sequence[NumArray],
    params: Optional[SiftParameters] = None,
    max_workers: Optional[int] = None,
    lookahead: int = 2,
    cancel_event: Optional[threading.Event] = None,
    show_progress: bool = True,
) -> List[List[Feature]]:
    """Extract features from many images in worker processes.

    Results are collected in input order. Images not yet submitted when
    ``cancel_event`` is set get no features.

    Args:
        images: 2-D grayscale images
        params: Extraction parameters shared by all images
        max_workers: Number of processes; every CPU if None. With a single
            worker extraction runs in the calling process.
        lookahead: Tasks in flight per worker beyond those already collected
        cancel_event: Stops submitting new images once set
        show_progress: Show a tqdm progress bar

    Returns:
        One feature list per image
    """
    if params is None:
        params = SiftParameters()
    for image in images:
        validate_image(image)

    num_images = len(images)
    results: List[List[Feature]] = [[] for _ in range(num_images)]
    if num_images == 0:
        return results
    workers = min(max_workers or cpu_count(), num_images)

    def cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    with tqdm(total=num_images, desc="Extracting features", disable=not show_progress) as progress:
        if workers <= 1:
            for index, image in enumerate(images):
                if cancelled():
                    logger.info(f"Feature extraction cancelled after {index} images")
                    break
                results[index] = extract_features(image, params)
                progress.update(1)
            return results

        max_in_flight = calculate_max_in_flight(images[0].shape, workers, lookahead)
        with Pool(processes=workers) as pool:
            pending: deque = deque()
            next_index = 0
            while next_index < num_images or pending:
                while next_index < num_images and len(pending) < max_in_flight:
                    if cancelled():
                        logger.info(f"Feature extraction cancelled after submitting {next_index} images")
                        next_index = num_images
                        break
                    pending.append(
                        (next_index, pool.apply_async(extract_features, (images[next_index], params)))
                    )
                    next_index += 1
                if not pending:
                    break
                index, async_result = pending.popleft()
                results[index] = async_result.get()
                progress.update(1)

    return results


def candidate_pairs(
    shapes: Sequence[Tuple[int, ...]],
    initial_models: Optional[Sequence[Model]] = None,
) -> List[Tuple[int, int]]:
    """Tile pairs worth matching.

    Without initial models every pair is a candidate. With them, only pairs
    whose transformed bounding boxes overlap are.
    """
    all_pairs = list(itertools.combinations(range(len(shapes)), 2))
    if initial_models is None:
        return all_pairs
    if len(initial_models) != len(shapes):
        raise ValueError(
            f"Expected {len(shapes)} initial models, got {len(initial_models)}"
        )

    boxes = []
    for shape, model in zip(shapes, initial_models):
        height, width = shape[:2]
        corners = np.array(
            [[0, 0], [width - 1, 0], [0, height - 1], [width - 1, height - 1]],
            dtype=np.float64,
        )
        world = model.apply_array(corners)
        boxes.append((world.min(axis=0), world.max(axis=0)))

    pairs = []
    for i, j in all_pairs:
        (min_i, max_i), (min_j, max_j) = boxes[i], boxes[j]
        if np.all(min_i <= max_j) and np.all(min_j <= max_i):
            pairs.append((i, j))
    logger.debug(f"{len(pairs)} of {len(all_pairs)} tile pairs overlap")
    return pairs


def _estimate_pair_model(
    matches: Sequence[PointMatch],
    model_type: ModelType,
    params: RansacParameters,
    rng: np.random.Generator,
    cancel_event: Optional[threading.Event],
) -> Optional[Model]:
    cls = model_class(model_type)
    if params.max_epsilon is not None:
        return estimate_best_model(
            matches,
            cls,
            params.epsilon,
            params.max_epsilon,
            params.min_inlier_ratio,
            params.iterations,
            rng,
            cancel_event,
        )
    return estimate_model(
        matches, cls, params.epsilon, params.min_inlier_ratio, params.iterations, rng, cancel_event
    )


def _correlate_pair(
    image1: NumArray,
    image2: NumArray,
    model_type: ModelType,
    params: CorrelationParameters,
) -> Tuple[int, Optional[Model]]:
    results = phase_correlation(
        image1,
        image2,
        num_peaks=params.num_peaks,
        min_overlap_ratio=params.min_overlap_ratio,
        subpixel=params.subpixel,
        upsample_factor=params.upsample_factor,
    )
    if not results or results[0].r < params.min_r:
        return 0, None
    matches = correlation_matches(results[0], image1.shape, image2.shape, params.match_spacing)
    model = model_class(model_type)()
    if not matches or not model.fit_matches(matches):
        return len(matches), None
    model.error = 0.0
    model.inliers = list(matches)
    return len(matches), model


def match_tile_pairs(
    features: Sequence[Sequence[Feature]],
    pairs: Sequence[Tuple[int, int]],
    params: Optional[RegistrationParameters] = None,
    images: Optional[Sequence[NumArray]] = None,
    manual_matches: Optional[Dict[Tuple[int, int], Sequence[PointMatch]]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> List[TilePairResult]:
    """Estimate a model for every tile pair.

    Manual correspondences replace descriptor matching for their pair. Pairs
    left without a model fall back to phase correlation when it is enabled
    and the images are given. A single random generator seeded from the
    parameters is shared by all pairs, in pair order.

    Args:
        features: Features per tile
        pairs: ``(i, j)`` tile index pairs
        params: Registration parameters
        images: Tile images, needed for the correlation fallback
        manual_matches: Correspondences keyed by ``(i, j)``; ``p1`` lies in
            tile ``i`` and ``p2`` in tile ``j``
        cancel_event: Stops processing further pairs once set

    Returns:
        One result per processed pair
    """
    if params is None:
        params = RegistrationParameters()
    manual_matches = manual_matches or {}
    model_type = params.ransac.model_type
    rng = np.random.default_rng(params.ransac.random_seed)

    results: List[TilePairResult] = []
    for i, j in pairs:
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Pair matching cancelled after {len(results)} of {len(pairs)} pairs")
            break

        if (i, j) in manual_matches:
            candidates = list(manual_matches[(i, j)])
            source = CorrespondenceSource.MANUAL
        else:
            feature_matches = match_features(
                features[i],
                features[j],
                params.matching.max_distance_ratio,
                params.matching.similar_scale,
            )
            candidates = matches_to_point_matches(feature_matches)
            source = CorrespondenceSource.FEATURES

        model = _estimate_pair_model(candidates, model_type, params.ransac, rng, cancel_event)
        num_candidates = len(candidates)

        if model is None and params.correlation.enabled and images is not None:
            num_candidates, model = _correlate_pair(images[i], images[j], model_type, params.correlation)
            source = CorrespondenceSource.CORRELATION

        if model is None:
            source = CorrespondenceSource.NONE
            logger.info(f"Tiles {i} and {j}: no model from {num_candidates} candidates")
        else:
            logger.info(
                f"Tiles {i} and {j}: {len(model.inliers)} of {num_candidates} "
                f"{source.value} correspondences are inliers"
            )
        results.append(TilePairResult(i, j, num_candidates, model, source))
    return results


def build_tiles(
    shapes: Sequence[Tuple[int, ...]],
    pair_results: Sequence[TilePairResult],
    model_type: ModelType = ModelType.RIGID,
    initial_models: Optional[Sequence[Model]] = None,
) -> List[Tile]:
    """Create one tile per image and link tiles through their pair inliers.

    Every link gets fresh points so that tiles never share positions with
    the correspondences stored in the pair results.
    """
    cls = model_class(model_type)
    tiles = []
    for index, shape in enumerate(shapes):
        height, width = shape[:2]
        if initial_models is not None:
            model = cls.from_matrix(initial_models[index].to_matrix())
        else:
            model = cls()
        tiles.append(Tile(width=float(width), height=float(height), model=model))

    for result in pair_results:
        if result.model is None:
            continue
        links = [
            PointMatch(Point(m.p1.local), Point(m.p2.local), m.weight)
            for m in result.model.inliers
        ]
        connect_tiles(tiles[result.index1], tiles[result.index2], links)
    return tiles


def _component_anchors(tree: nx.Graph, fixed_tiles: Sequence[int]) -> List[int]:
    """First fixed tile of every connected component, or its lowest index."""
    anchors = []
    fixed = set(fixed_tiles)
    for component in nx.connected_components(tree):
        in_component = sorted(component & fixed)
        anchors.append(in_component[0] if in_component else min(component))
    return anchors


def register_tiles(
    images: Sequence[NumArray],
    params: Optional[RegistrationParameters] = None,
    pairs: Optional[Sequence[Tuple[int, int]]] = None,
    initial_models: Optional[Sequence[Model]] = None,
    manual_matches: Optional[Dict[Tuple[int, int], Sequence[PointMatch]]] = None,
    cancel_event: Optional[threading.Event] = None,
    progress_callback: Optional[Callable[[int, float], None]] = None,
) -> RegistrationResult:
    """Register a set of overlapping tiles into one coordinate frame.

    Args:
        images: 2-D grayscale tiles
        params: Registration parameters; defaults apply if None
        pairs: Tile pairs to match; derived from the tile layout if None
        initial_models: Approximate tile transforms. If given they seed the
            optimization; otherwise models are chained along the maximum
            spanning tree of the pair graph.
        manual_matches: Correspondences that replace feature matching for
            their pair
        cancel_event: Checked between steps; a cancelled run returns the
            state reached so far
        progress_callback: Receives ``(iteration, mean_displacement)`` during
            optimization

    Returns:
        RegistrationResult with one tile per image
    """
    if params is None:
        params = RegistrationParameters()
    if len(images) == 0:
        raise ValueError("No images to register")
    for image in images:
        validate_image(image)
    shapes = [image.shape for image in images]

    with debug_timing("feature extraction"):
        features = extract_features_batched(
            images,
            params.sift,
            max_workers=params.max_workers,
            lookahead=params.lookahead,
            cancel_event=cancel_event,
            show_progress=params.show_progress,
        )
    logger.info(f"Extracted {sum(len(f) for f in features)} features from {len(images)} tiles")

    if pairs is None:
        pairs = candidate_pairs(shapes, initial_models)
    with debug_timing("pair matching"):
        pair_results = match_tile_pairs(
            features, pairs, params, images=images, manual_matches=manual_matches, cancel_event=cancel_event
        )

    tiles = build_tiles(shapes, pair_results, params.ransac.model_type, initial_models)
    if params.fixed_tiles is not None:
        for index in params.fixed_tiles:
            if not 0 <= index < len(tiles):
                raise ValueError(f"Fixed tile index {index} out of range for {len(tiles)} tiles")
        fixed = sorted(set(params.fixed_tiles))
    else:
        fixed = select_fixed_tiles(tiles)
    logger.info(f"Fixed tiles: {fixed}")

    if initial_models is None:
        tree = compute_maximum_spanning_tree(
            len(tiles),
            {(r.index1, r.index2): r.model for r in pair_results if r.model is not None},
        )
        propagate_models(tiles, tree, _component_anchors(tree, fixed))

    if cancel_event is not None and cancel_event.is_set():
        return RegistrationResult(tiles, fixed, pair_results, None, features)

    with debug_timing("tile optimization"):
        optimization = optimize_tiles(
            tiles,
            [tiles[i] for i in fixed],
            max_error=params.optimizer.max_error,
            max_iterations=params.optimizer.max_iterations,
            window=params.optimizer.convergence_window,
            progress_callback=progress_callback,
            report_interval=params.optimizer.report_interval,
            cancel_event=cancel_event,
        )
    return RegistrationResult(tiles, fixed, pair_results, optimization, features)


def features_to_dataframe(features: Sequence[Feature]) -> pd.DataFrame:
    """One row per feature; the descriptor is kept as an array per row."""
    return pd.DataFrame(
        {
            "x": [f.world_x for f in features],
            "y": [f.world_y for f in features],
            "sigma": [f.sigma for f in features],
            "orientation": [f.orientation for f in features],
            "octave": [f.octave for f in features],
            "scale": [f.scale for f in features],
            "descriptor": [f.descriptor for f in features],
        }
    )


def matches_to_dataframe(matches: Sequence[PointMatch]) -> pd.DataFrame:
    """Correspondences as ``x1, y1, x2, y2, weight`` rows of local coordinates."""
    rows = [
        (m.p1.local[0], m.p1.local[1], m.p2.local[0], m.p2.local[1], m.weight)
        for m in matches
    ]
    return pd.DataFrame(rows, columns=["x1", "y1", "x2", "y2", "weight"])


def read_correspondences_csv(csv_path: Union[str, Path]) -> List[PointMatch]:
    """Read correspondences from a CSV with columns ``x1, y1, x2, y2`` and an
    optional ``weight``.

    Raises:
        ValueError: If a required column is missing
    """
    df = pd.read_csv(csv_path)
    missing = [c for c in ("x1", "y1", "x2", "y2") if c not in df.columns]
    if missing:
        raise ValueError(f"Missing columns in {csv_path}: {missing}")
    weights = df["weight"] if "weight" in df.columns else pd.Series(1.0, index=df.index)
    return [
        PointMatch(Point((row.x1, row.y1)), Point((row.x2, row.y2)), float(weight))
        for row, weight in zip(df.itertuples(index=False), weights)
    ]


def tile_transforms_dataframe(tiles: Sequence[Tile]) -> pd.DataFrame:
    """Affine matrix entries and residual statistics of every tile model."""
    rows = []
    for index, tile in enumerate(tiles):
        matrix = tile.model.to_matrix()
        rows.append(
            {
                "tile": index,
                "model": tile.model.model_type.value,
                "m00": matrix[0, 0],
                "m01": matrix[0, 1],
                "m02": matrix[0, 2],
                "m10": matrix[1, 0],
                "m11": matrix[1, 1],
                "m12": matrix[1, 2],
                "num_matches": len(tile.matches),
                "distance": tile.distance,
            }
        )
    return pd.DataFrame(rows)
