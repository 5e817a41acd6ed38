"""Tile Aligner Package.

This package registers overlapping image tiles with scale-invariant features,
robust model estimation and global optimization of all tile transforms.

Main functionality:
- Feature extraction: Difference-of-Gaussian features with gradient descriptors
- Pairwise registration: Descriptor matching and RANSAC model estimation
- Global optimization: Joint refinement of translation, rigid, similarity or
  affine tile models
- Phase correlation: Translation estimates for featureless tile pairs

The package exposes the registration pipeline at the top level for convenience.
"""

from .registration.tile_registration import (
    CorrespondenceSource,
    RegistrationResult,
    TilePairResult,
    build_tiles,
    extract_features,
    extract_features_batched,
    match_tile_pairs,
    read_correspondences_csv,
    register_tiles,
    tile_transforms_dataframe,
)
from .registration._models import ModelType
from .parameters import AlignmentParameters, RegistrationParameters

__all__ = [
    'AlignmentParameters',
    'CorrespondenceSource',
    'ModelType',
    'RegistrationParameters',
    'RegistrationResult',
    'TilePairResult',
    'build_tiles',
    'extract_features',
    'extract_features_batched',
    'match_tile_pairs',
    'read_correspondences_csv',
    'register_tiles',
    'tile_transforms_dataframe',
]
