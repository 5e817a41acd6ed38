"""Registration algorithms for overlapping image tiles.

This package provides the building blocks of feature-based tile registration:
scale space construction, feature detection and description, descriptor
matching, robust model estimation, phase correlation and global tile
optimization. The pipeline combining them lives in ``tile_registration``.
"""

from ._feature_extraction import Feature, detect_features
from ._feature_matching import FeatureMatch, match_features, matches_to_point_matches
from ._global_optimization import (
    compute_maximum_spanning_tree,
    propagate_models,
    select_fixed_tiles,
)
from ._models import (
    AffineModel,
    Model,
    ModelType,
    Point,
    PointMatch,
    RigidModel,
    SimilarityModel,
    TranslationModel,
    model_class,
)
from ._ransac import estimate_best_model, estimate_model
from ._scale_space import ScaleSpace, build_scale_space
from ._tile_optimization import OptimizationResult, Tile, connect_tiles, optimize_tiles
from ._translation_computation import (
    CrossCorrelationResult,
    cross_correlation_search,
    phase_correlation,
)

__all__ = [
    'AffineModel',
    'CrossCorrelationResult',
    'Feature',
    'FeatureMatch',
    'Model',
    'ModelType',
    'OptimizationResult',
    'Point',
    'PointMatch',
    'RigidModel',
    'ScaleSpace',
    'SimilarityModel',
    'Tile',
    'TranslationModel',
    'build_scale_space',
    'compute_maximum_spanning_tree',
    'connect_tiles',
    'cross_correlation_search',
    'detect_features',
    'estimate_best_model',
    'estimate_model',
    'match_features',
    'matches_to_point_matches',
    'model_class',
    'optimize_tiles',
    'phase_correlation',
    'propagate_models',
    'select_fixed_tiles',
]
