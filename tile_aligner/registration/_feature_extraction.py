"""Scale-invariant feature detection and description.

Features are strict extrema of the DoG scale space, refined to sub-pixel
accuracy, filtered for contrast and edge response, assigned one or more
dominant orientations and described by a 4x4 grid of 8-bin gradient
orientation histograms.

The module includes:
- Feature data structure
- Extremum detection across octave boundaries
- Quadratic sub-pixel refinement
- Contrast and curvature filtering
- Orientation assignment and descriptor computation
"""
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from ._image_filter import (
    SingularFitError,
    mirror_indices,
    octave_to_world,
    pseudo_inverse,
)
from ._scale_space import ScaleSpace
from ._typing_utils import Float32Array, FloatArray

# Configure logger
logger = logging.getLogger(__name__)

MIN_DOG_CONTRAST = 0.03
MAX_CURVATURE_RATIO = 10.0
MAX_REFINEMENT_STEPS = 5
PRELIMINARY_CONTRAST_FACTOR = 0.5  # Candidates this far below the contrast floor cannot recover

ORIENTATION_HISTOGRAM_BINS = 36
ORIENTATION_SIGMA_FACTOR = 1.5
SECONDARY_PEAK_RATIO = 0.8

FEATURE_DESCRIPTOR_SIZE = 4   # Cells per descriptor edge
FEATURE_DESCRIPTOR_CELL = 4   # Samples per cell edge
FEATURE_DESCRIPTOR_BINS = 8
DESCRIPTOR_CLIP = 0.2
DESCRIPTOR_LENGTH = FEATURE_DESCRIPTOR_SIZE * FEATURE_DESCRIPTOR_SIZE * FEATURE_DESCRIPTOR_BINS

_TWO_PI = 2.0 * math.pi


def _descriptor_geometry() -> Tuple[FloatArray, FloatArray, FloatArray, np.ndarray]:
    n = FEATURE_DESCRIPTOR_SIZE * FEATURE_DESCRIPTOR_CELL
    grid = np.arange(n, dtype=np.float64) - n / 2.0 + 0.5
    gy, gx = np.meshgrid(grid, grid, indexing="ij")
    two_sq_sigma = FEATURE_DESCRIPTOR_SIZE * FEATURE_DESCRIPTOR_SIZE * 8.0
    mask = np.exp(-(gx * gx + gy * gy) / two_sq_sigma)
    rows, cols = np.meshgrid(np.arange(n), np.arange(n), indexing="ij")
    cells = (rows // FEATURE_DESCRIPTOR_CELL) * FEATURE_DESCRIPTOR_SIZE + cols // FEATURE_DESCRIPTOR_CELL
    return gx, gy, mask, cells


_GRID_X, _GRID_Y, _DESCRIPTOR_MASK, _DESCRIPTOR_CELLS = _descriptor_geometry()


@dataclass(frozen=True)
class Feature:
    """An oriented, described scale-space extremum.

    ``x``, ``y`` are integer positions on the grid of ``octave``; ``world_x``,
    ``world_y`` and ``sigma`` are expressed in input image pixels.
    """
    x: int
    y: int
    scale: int
    octave: int
    dx: float
    dy: float
    dscale: float
    world_x: float
    world_y: float
    sigma: float
    orientation: float
    descriptor: Float32Array = field(repr=False, compare=False)

    @property
    def location(self) -> Tuple[float, float]:
        return self.world_x, self.world_y


@dataclass
class _Keypoint:
    x: int
    y: int
    scale: int
    octave: int
    step: int
    offset: FloatArray
    value: float


def _wrap_angle(theta):
    """Wrap angles (scalar or array) into [-pi, pi)."""
    return np.mod(theta + math.pi, _TWO_PI) - math.pi


def _octave_within(space: ScaleSpace, octave: int, max_size: Optional[int]) -> bool:
    return max_size is None or max(space.octaves[octave].shape) <= max_size


def find_extrema(
    space: ScaleSpace,
    min_contrast: float = MIN_DOG_CONTRAST,
    max_size: Optional[int] = None,
) -> List[Tuple[int, int, int]]:
    """Strict 26-neighbourhood extrema of the DoG pyramid.

    Scales run over ``1 .. num_scales - 2`` and positions over interior pixels.
    Any tie with a neighbour disqualifies the point. Octaves with an edge
    longer than ``max_size`` are skipped.

    Returns:
        List of ``(x, y, scale)`` candidates
    """
    floor = PRELIMINARY_CONTRAST_FACTOR * min_contrast
    candidates: List[Tuple[int, int, int]] = []
    for scale in range(1, space.num_scales - 1):
        if not _octave_within(space, space.locate(scale)[0], max_size):
            continue
        layers = space.neighbourhood(scale)
        center = layers[1]
        h, w = center.shape
        if h < 3 or w < 3:
            continue
        value = center[1:-1, 1:-1]
        is_max = np.abs(value) >= floor
        is_min = is_max.copy()
        for index, layer in enumerate(layers):
            for dy in range(3):
                for dx in range(3):
                    if index == 1 and dy == 1 and dx == 1:
                        continue
                    neighbour = layer[dy:dy + h - 2, dx:dx + w - 2]
                    is_max &= value > neighbour
                    is_min &= value < neighbour
        ys, xs = np.nonzero(is_max | is_min)
        candidates.extend(zip((xs + 1).tolist(), (ys + 1).tolist(), [scale] * len(xs)))
    logger.debug(f"Found {len(candidates)} scale-space extrema")
    return candidates


def _environment(space: ScaleSpace, x: int, y: int, scale: int) -> FloatArray:
    """3x3x3 DoG neighbourhood indexed ``[scale, y, x]``."""
    return np.stack(
        [layer[y - 1:y + 2, x - 1:x + 2] for layer in space.neighbourhood(scale)]
    ).astype(np.float64)


def derivatives(env: FloatArray) -> Tuple[FloatArray, FloatArray]:
    """Gradient and Hessian of a 3x3x3 neighbourhood, ordered (x, y, scale)."""
    c = env[1, 1, 1]
    gradient = np.array([
        (env[1, 1, 2] - env[1, 1, 0]) * 0.5,
        (env[1, 2, 1] - env[1, 0, 1]) * 0.5,
        (env[2, 1, 1] - env[0, 1, 1]) * 0.5,
    ])
    dxx = env[1, 1, 2] - 2.0 * c + env[1, 1, 0]
    dyy = env[1, 2, 1] - 2.0 * c + env[1, 0, 1]
    dss = env[2, 1, 1] - 2.0 * c + env[0, 1, 1]
    dxy = ((env[1, 2, 2] - env[1, 2, 0]) - (env[1, 0, 2] - env[1, 0, 0])) * 0.25
    dxs = ((env[2, 1, 2] - env[2, 1, 0]) - (env[0, 1, 2] - env[0, 1, 0])) * 0.25
    dys = ((env[2, 2, 1] - env[2, 0, 1]) - (env[0, 2, 1] - env[0, 0, 1])) * 0.25
    hessian = np.array([
        [dxx, dxy, dxs],
        [dxy, dyy, dys],
        [dxs, dys, dss],
    ])
    return gradient, hessian


def passes_curvature_test(hessian: FloatArray, max_ratio: float = MAX_CURVATURE_RATIO) -> bool:
    """Edge response test on the 2x2 spatial block of the Hessian.

    Saddle points (non-positive determinant) are rejected as well.
    """
    trace = hessian[0, 0] + hessian[1, 1]
    det = hessian[0, 0] * hessian[1, 1] - hessian[0, 1] * hessian[1, 0]
    if det <= 0:
        return False
    return trace * trace / det < max_ratio


def refine_extremum(space: ScaleSpace, x: int, y: int, scale: int) -> Optional[Tuple[_Keypoint, FloatArray]]:
    """Walk to the sub-pixel extremum of the local quadratic.

    Returns:
        The refined keypoint and its Hessian, or None if the walk leaves the
        valid interior or does not settle

    Raises:
        SingularFitError: If the local Hessian cannot be inverted
    """
    for _ in range(MAX_REFINEMENT_STEPS + 1):
        octave, step = space.locate(scale)
        h, w = space.octaves[octave].shape
        if not (1 <= x <= w - 2 and 1 <= y <= h - 2 and 1 <= scale <= space.num_scales - 2):
            return None

        env = _environment(space, x, y, scale)
        gradient, hessian = derivatives(env)
        offset = -pseudo_inverse(hessian) @ gradient

        moves = np.where(np.abs(offset) > 0.5, np.sign(offset), 0.0).astype(int)
        if not moves.any():
            value = float(env[1, 1, 1] + 0.5 * gradient @ offset)
            return _Keypoint(x, y, scale, octave, step, offset, value), hessian

        x += int(moves[0])
        y += int(moves[1])
        scale += int(moves[2])
        new_octave = scale // space.steps
        if new_octave > octave:
            x, y = x // 2, y // 2
        elif new_octave < octave:
            x, y = 2 * x + 1, 2 * y + 1
    return None


def _peak_orientation(histogram: FloatArray, index: int) -> float:
    bin_size = _TWO_PI / len(histogram)
    e0 = histogram[index - 1]
    e1 = histogram[index]
    e2 = histogram[(index + 1) % len(histogram)]
    denominator = e0 - 2.0 * e1 + e2
    offset = 0.5 * (e0 - e2) / denominator if denominator != 0 else 0.0
    return float(_wrap_angle((index + 0.5 + offset) * bin_size - math.pi))


def assign_orientations(space: ScaleSpace, keypoint: _Keypoint) -> List[float]:
    """Dominant gradient orientations around a keypoint.

    The first entry is the primary orientation; further entries come from
    secondary peaks of at least 80% of the maximum.
    """
    magnitude, angle = space.gradients(keypoint.octave, keypoint.step)
    h, w = magnitude.shape
    sigma = ORIENTATION_SIGMA_FACTOR * space.octave_sigma(keypoint.step + keypoint.offset[2])
    half = max(3, 2 * int(round(3.0 * sigma)) + 1) // 2
    steps = np.arange(-half, half + 1)
    ys = np.clip(keypoint.y + steps, 0, h - 1)
    xs = np.clip(keypoint.x + steps, 0, w - 1)

    gy = (steps - keypoint.offset[1])[:, None]
    gx = (steps - keypoint.offset[0])[None, :]
    weights = np.exp(-(gx * gx + gy * gy) / (2.0 * sigma * sigma)) * magnitude[np.ix_(ys, xs)]

    bin_size = _TWO_PI / ORIENTATION_HISTOGRAM_BINS
    bins = np.floor((angle[np.ix_(ys, xs)] + math.pi) / bin_size).astype(int) % ORIENTATION_HISTOGRAM_BINS
    histogram = np.bincount(bins.ravel(), weights=weights.ravel(), minlength=ORIENTATION_HISTOGRAM_BINS)

    peak = int(np.argmax(histogram))
    peak_value = histogram[peak]
    if peak_value <= 0:
        return []

    orientations = [_peak_orientation(histogram, peak)]
    n = ORIENTATION_HISTOGRAM_BINS
    for index in range(n):
        if index in (peak, (peak - 1) % n, (peak + 1) % n):
            continue
        value = histogram[index]
        if (
            value >= SECONDARY_PEAK_RATIO * peak_value
            and value > histogram[index - 1]
            and value > histogram[(index + 1) % n]
        ):
            orientations.append(_peak_orientation(histogram, index))
    return orientations


def normalize_descriptor(histogram: FloatArray) -> Float32Array:
    """Clip at 0.2x the maximum bin and rescale so that every bin lies in [0, 1]."""
    peak = float(histogram.max()) if histogram.size else 0.0
    if peak <= 0:
        return np.zeros(histogram.shape, dtype=np.float32)
    limit = DESCRIPTOR_CLIP * peak
    return (np.minimum(histogram, limit) / limit).astype(np.float32)


def compute_descriptor(space: ScaleSpace, keypoint: _Keypoint, orientation: float) -> Float32Array:
    """128-float gradient histogram descriptor sampled in the feature's frame."""
    magnitude, angle = space.gradients(keypoint.octave, keypoint.step)
    h, w = magnitude.shape
    spacing = space.octave_sigma(keypoint.step + keypoint.offset[2])
    cos = math.cos(orientation)
    sin = math.sin(orientation)

    sample_x = (cos * _GRID_X - sin * _GRID_Y) * spacing + keypoint.x + keypoint.offset[0]
    sample_y = (sin * _GRID_X + cos * _GRID_Y) * spacing + keypoint.y + keypoint.offset[1]
    xi = mirror_indices(np.rint(sample_x).astype(int), w)
    yi = mirror_indices(np.rint(sample_y).astype(int), h)

    weights = magnitude[yi, xi] * _DESCRIPTOR_MASK
    relative = _wrap_angle(angle[yi, xi] - orientation)
    bin_size = _TWO_PI / FEATURE_DESCRIPTOR_BINS
    location = (relative + math.pi) / bin_size - 0.5
    lower = np.floor(location)
    fraction = location - lower
    lower = lower.astype(int) % FEATURE_DESCRIPTOR_BINS
    upper = (lower + 1) % FEATURE_DESCRIPTOR_BINS

    histogram = np.zeros(DESCRIPTOR_LENGTH, dtype=np.float64)
    base = _DESCRIPTOR_CELLS * FEATURE_DESCRIPTOR_BINS
    np.add.at(histogram, (base + lower).ravel(), (weights * (1.0 - fraction)).ravel())
    np.add.at(histogram, (base + upper).ravel(), (weights * fraction).ravel())

    descriptor = normalize_descriptor(histogram)
    descriptor.flags.writeable = False
    return descriptor


def detect_features(
    space: ScaleSpace,
    min_contrast: float = MIN_DOG_CONTRAST,
    max_curvature_ratio: float = MAX_CURVATURE_RATIO,
    max_size: Optional[int] = None,
) -> List[Feature]:
    """Detect, refine, orient and describe features in a built scale space.

    Args:
        space: Scale space of the image
        min_contrast: Minimum absolute interpolated DoG response
        max_curvature_ratio: Upper bound on trace^2/det of the spatial Hessian
        max_size: Only octaves whose edges are at most this long yield
            features; None uses every octave

    Returns:
        Features in detection order, clones following their primary feature
    """
    features: List[Feature] = []
    rejected = {"singular": 0, "unstable": 0, "size": 0, "contrast": 0, "edge": 0, "orientation": 0}

    for x, y, scale in find_extrema(space, min_contrast, max_size):
        try:
            refined = refine_extremum(space, x, y, scale)
        except SingularFitError:
            rejected["singular"] += 1
            continue
        if refined is None:
            rejected["unstable"] += 1
            continue

        keypoint, hessian = refined
        if not _octave_within(space, keypoint.octave, max_size):
            rejected["size"] += 1
            continue
        if abs(keypoint.value) < min_contrast:
            rejected["contrast"] += 1
            continue
        if not passes_curvature_test(hessian, max_curvature_ratio):
            rejected["edge"] += 1
            continue

        orientations = assign_orientations(space, keypoint)
        if not orientations:
            rejected["orientation"] += 1
            continue

        dx, dy, dscale = (float(v) for v in keypoint.offset)
        world_x = octave_to_world(keypoint.x + dx, keypoint.octave)
        world_y = octave_to_world(keypoint.y + dy, keypoint.octave)
        sigma = space.world_sigma(keypoint.octave, keypoint.step + dscale)
        for orientation in orientations:
            features.append(
                Feature(
                    x=keypoint.x,
                    y=keypoint.y,
                    scale=keypoint.scale,
                    octave=keypoint.octave,
                    dx=dx,
                    dy=dy,
                    dscale=dscale,
                    world_x=world_x,
                    world_y=world_y,
                    sigma=sigma,
                    orientation=orientation,
                    descriptor=compute_descriptor(space, keypoint, orientation),
                )
            )

    logger.debug(f"Accepted {len(features)} features, rejected {rejected}")
    return features
