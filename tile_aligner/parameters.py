import os
import pathlib
from typing import Annotated, List, Optional

from pydantic import AfterValidator, BaseModel, Field, model_validator

from .registration._models import ModelType
from .registration._ransac import DEFAULT_RANDOM_SEED


def input_path_exists(path: str) -> str:
    """Pydantic validator to check the path exists."""
    if not os.path.exists(path):
        raise ValueError(f"Input file does not exist: {path}")

    return path


class SiftParameters(
    BaseModel,
    use_attribute_docstrings=True,
):
    """Scale space construction and feature detection."""

    image_sigma: float = Field(default=0.5, gt=0)
    """Blur assumed to be present in the input images, in pixels."""

    initial_sigma: float = Field(default=1.6, gt=0)
    """Blur of the first level of every octave, in pixels of that octave."""

    steps_per_octave: int = Field(default=3, ge=1)
    """Number of Difference-of-Gaussian images per octave."""

    min_image_size: int = Field(default=32, ge=4)
    """Octaves are added while half the smaller image edge is at least this."""

    max_image_size: int = Field(default=1024, ge=4)
    """Features are only detected in octaves whose edges are at most this long.
    Larger octaves are still built to derive the smaller ones."""

    min_dog_contrast: float = Field(default=0.03, ge=0)
    """Minimum absolute DoG response of an accepted feature (images are normalized to [0, 1])."""

    max_curvature_ratio: float = Field(default=10.0, gt=0)
    """Edge rejection: upper bound of trace^2/det of the spatial Hessian."""

    @model_validator(mode="after")
    def _check_sigmas(self) -> "SiftParameters":
        if self.initial_sigma <= 2.0 * self.image_sigma:
            raise ValueError(
                f"initial_sigma ({self.initial_sigma}) must exceed twice image_sigma ({self.image_sigma})"
            )
        return self

    @model_validator(mode="after")
    def _check_sizes(self) -> "SiftParameters":
        if self.max_image_size < self.min_image_size:
            raise ValueError(
                f"max_image_size ({self.max_image_size}) is below min_image_size ({self.min_image_size})"
            )
        return self


class MatchingParameters(
    BaseModel,
    use_attribute_docstrings=True,
):
    """Descriptor matching."""

    max_distance_ratio: float = Field(default=0.8, gt=0, le=1)
    """Keep a match if best/second-best squared descriptor distance is below this."""

    similar_scale: bool = False
    """Only match features whose scales differ by at most 33%."""


class RansacParameters(
    BaseModel,
    use_attribute_docstrings=True,
):
    """Robust model estimation between tile pairs."""

    model_type: ModelType = ModelType.RIGID
    """Transform family estimated per pair and optimized per tile."""

    iterations: int = Field(default=1000, ge=1)
    """Number of random samples drawn per estimation."""

    epsilon: float = Field(default=2.0, gt=0)
    """Maximal alignment error of an inlier, in pixels."""

    max_epsilon: Optional[float] = None
    """If set, epsilon is swept in steps of `epsilon` up to this value and the
    model with the most inliers is kept."""

    min_inlier_ratio: float = Field(default=0.05, ge=0, le=1)
    """Minimal fraction of inliers for a candidate model to be considered."""

    random_seed: int = DEFAULT_RANDOM_SEED
    """Seed of the random generator shared by all estimations of a run."""

    @model_validator(mode="after")
    def _check_epsilon_range(self) -> "RansacParameters":
        if self.max_epsilon is not None and self.max_epsilon < self.epsilon:
            raise ValueError(f"max_epsilon ({self.max_epsilon}) is below epsilon ({self.epsilon})")
        return self


class OptimizerParameters(
    BaseModel,
    use_attribute_docstrings=True,
):
    """Global tile optimization."""

    max_error: float = Field(default=1.0, gt=0)
    """Target mean correspondence displacement, in pixels."""

    max_iterations: int = Field(default=100000, ge=1)
    """Hard cap on optimization passes."""

    convergence_window: int = Field(default=100, ge=2)
    """Number of recent per-pass changes used to detect that optimization stalls."""

    report_interval: int = Field(default=1000, ge=1)
    """Passes between progress reports."""


class CorrelationParameters(
    BaseModel,
    use_attribute_docstrings=True,
):
    """Phase correlation fallback for pairs without a feature-based model."""

    enabled: bool = False
    """Try phase correlation when feature matching yields no model."""

    num_peaks: int = Field(default=5, ge=1)
    """Number of phase correlation peaks verified by cross-correlation."""

    min_overlap_ratio: float = Field(default=0.01, ge=0, le=1)
    """Candidates overlapping less than this fraction of the smaller image are rejected."""

    min_r: float = Field(default=0.5, ge=-1, le=1)
    """Minimal correlation coefficient for a correlation result to link two tiles."""

    subpixel: bool = False
    """Refine the best translation with upsampled phase correlation (equal image shapes only)."""

    upsample_factor: int = Field(default=100, ge=1)
    """Sub-pixel precision is 1 / upsample_factor."""

    match_spacing: int = Field(default=16, ge=1)
    """Grid spacing of the correspondences synthesized from a translation."""


class RegistrationParameters(
    BaseModel,
    use_attribute_docstrings=True,
):
    """Parameters for feature-based registration of image tiles."""

    sift: SiftParameters = Field(default_factory=SiftParameters)
    """Scale space and feature detection."""

    matching: MatchingParameters = Field(default_factory=MatchingParameters)
    """Descriptor matching."""

    ransac: RansacParameters = Field(default_factory=RansacParameters)
    """Robust pairwise model estimation."""

    optimizer: OptimizerParameters = Field(default_factory=OptimizerParameters)
    """Global tile optimization."""

    correlation: CorrelationParameters = Field(default_factory=CorrelationParameters)
    """Phase correlation fallback."""

    max_workers: Optional[int] = Field(default=None, ge=1)
    """Worker processes for feature extraction. The default uses every CPU."""

    lookahead: int = Field(default=2, ge=1)
    """Extraction tasks in flight per worker beyond those already collected."""

    fixed_tiles: Optional[List[int]] = None
    """Indices of tiles that keep their model. The default fixes the tile with
    the most correspondences in every connected group of tiles."""

    show_progress: bool = True
    """Show a progress bar during feature extraction."""

    @classmethod
    def from_json_file(cls, json_path: str):
        """Create parameters from a JSON file.

        Args:
            json_path: Path to JSON file containing parameters

        Returns:
            New instance with values from JSON
        """
        with open(json_path) as f:
            return cls.model_validate_json(f.read())

    def to_json_file(self, json_path: str) -> None:
        """Save parameters to a JSON file.

        Args:
            json_path: Path where JSON file should be saved
        """
        with open(json_path, "w") as f:
            f.write(self.model_dump_json(indent=2))


class AlignmentParameters(RegistrationParameters):
    """Parameters for aligning a set of TIFF images from disk."""

    input_files: List[Annotated[str, AfterValidator(input_path_exists)]]
    """Image files on the local machine, one tile each."""

    output_csv: Optional[pathlib.Path] = None
    """If set, the optimized tile transforms are written to this CSV file."""

    verbose: bool = False
    """Show debug-level logging."""
