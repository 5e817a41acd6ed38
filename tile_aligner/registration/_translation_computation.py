"""Correlation-based translation estimation between two images.

Used as a coarse alternative to feature matching for low-texture pairs. All
translations follow the feature model convention: ``t`` maps image1
coordinates onto image2 coordinates, ``image2(p + t) ~ image1(p)``.

The module includes:
- Phase correlation matrix (PCM) and peak extraction
- Verification of wraparound candidates by cross-correlation on the overlap
- Brute-force cross-correlation search
- Optional sub-pixel refinement with scikit-image
- Synthesis of point correspondences from a translation
"""
import itertools
import logging
import warnings
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from skimage.registration import phase_cross_correlation

from ._image_filter import normalize
from ._models import Point, PointMatch
from ._typing_utils import FloatArray, IntArray, NumArray

# Configure logger
logger = logging.getLogger(__name__)

MAX_ARRAY_SIZE_GB = 2  # Maximum single array size in GB
DEFAULT_MIN_OVERLAP_RATIO = 0.01        # Phase correlation candidates
DEFAULT_SEARCH_MIN_OVERLAP_RATIO = 0.1  # Brute-force cross-correlation
DEFAULT_NUM_PEAKS = 5
DEFAULT_MATCH_SPACING = 16
WINDOW_STEEPNESS = 1000.0


@dataclass
class CrossCorrelationResult:
    """Score of one candidate translation."""
    tx: float
    ty: float
    r: float
    """Pearson correlation of the overlapping pixels."""
    ssq: float
    """Mean squared intensity difference of the overlapping pixels."""
    overlapping_pixels: int

    @property
    def translation(self) -> Tuple[float, float]:
        return self.tx, self.ty


def validate_image_pair(image1: NumArray, image2: NumArray, same_shape: bool = False) -> None:
    """Validate a pair of images for translation computation.

    Args:
        image1: First image
        image2: Second image
        same_shape: Require both images to have the same shape

    Raises:
        ValueError: If images are invalid or incompatible
    """
    if image1.ndim != 2 or image2.ndim != 2:
        raise ValueError("Images must be 2-dimensional")
    if same_shape and image1.shape != image2.shape:
        raise ValueError(f"Images must have same shape. Got {image1.shape} and {image2.shape}")
    if not np.isfinite(image1).all() or not np.isfinite(image2).all():
        raise ValueError("Images contain non-finite values")

    array_size_gb = max(image1.nbytes, image2.nbytes) / (1024**3)
    if array_size_gb > MAX_ARRAY_SIZE_GB:
        warnings.warn(f"Large image detected ({array_size_gb:.1f} GB). Consider downsampling.")


def _pad_to(image: NumArray, shape: Tuple[int, int]) -> FloatArray:
    padded = np.zeros(shape, dtype=np.float64)
    padded[:image.shape[0], :image.shape[1]] = image
    return padded


def exponential_window(shape: Tuple[int, int], steepness: float = WINDOW_STEEPNESS) -> FloatArray:
    """Separable window that falls from 1 in the center to 0 at every edge.

    The weight at relative position ``u`` in ``[0, 1]`` is
    ``1 - steepness ** (-2 * min(u, 1 - u))``.
    """
    weights = []
    for size in shape:
        rel = np.linspace(0.0, 1.0, size) if size > 1 else np.zeros(1)
        weights.append(1.0 - np.power(steepness, -2.0 * np.minimum(rel, 1.0 - rel)))
    return np.outer(weights[0], weights[1])


def extend_mirror(image: NumArray) -> Tuple[FloatArray, Tuple[int, int]]:
    """Extend an image by a mirrored border and fade it out with :func:`exponential_window`.

    Each axis grows by a quarter of its size, rounded up to an even number
    and split equally between both sides.

    Returns:
        The windowed image and the ``(y, x)`` position of the original
        image inside it
    """
    border = []
    for size in image.shape:
        extension = size // 4
        extension += extension % 2
        border.append(extension // 2)
    extended = np.pad(
        np.asarray(image, dtype=np.float64),
        ((border[0], border[0]), (border[1], border[1])),
        mode="reflect",
    )
    return extended * exponential_window(extended.shape), (border[0], border[1])


def pcm(image1: NumArray, image2: NumArray) -> FloatArray:
    """Compute the peak correlation matrix of two images.

    The PCM is computed using the normalized cross-power spectrum method:
    PCM = IFFT(F1 * conj(F2) / |F1 * conj(F2)|). Both images are zero-padded
    to their common bounding shape.

    Args:
        image1: First image (2D array)
        image2: Second image (2D array)

    Returns:
        Peak correlation matrix as a 2D float array
    """
    validate_image_pair(image1, image2)
    shape = (max(image1.shape[0], image2.shape[0]), max(image1.shape[1], image2.shape[1]))
    f1 = np.fft.fft2(_pad_to(image1, shape))
    f2 = np.fft.fft2(_pad_to(image2, shape))
    fc = f1 * np.conjugate(f2)
    # Normalize with epsilon for numerical stability
    epsilon = np.finfo(np.float64).eps * 100
    return np.fft.ifft2(fc / (np.abs(fc) + epsilon)).real


def multi_peak_max(pcm_matrix: FloatArray, max_peaks: Optional[int] = None) -> Tuple[IntArray, IntArray, FloatArray]:
    """Find the largest values of a peak correlation matrix.

    Parameters
    ----------
    pcm_matrix : FloatArray
        Peak correlation matrix as a 2D array.
    max_peaks : int, optional
        Maximum number of peaks to return. If None, returns all entries.

    Returns
    -------
    rows, cols, vals
        Peak positions and values in descending order of value. Ordering is
        stable for equal values.
    """
    if pcm_matrix.ndim != 2 or pcm_matrix.size == 0:
        raise ValueError(f"PCM must be a non-empty 2D array, got shape {pcm_matrix.shape}")
    if max_peaks is not None and max_peaks < 1:
        raise ValueError(f"max_peaks must be positive, got {max_peaks}")

    order = np.argsort(-pcm_matrix.ravel(), kind="stable")
    if max_peaks is not None:
        order = order[:max_peaks]
    rows, cols = np.unravel_index(order, pcm_matrix.shape)
    return rows.astype(np.int64), cols.astype(np.int64), pcm_matrix[rows, cols].astype(np.float64)


def ncc(image1: NumArray, image2: NumArray, min_overlap_pixels: int = 25) -> float:
    """Compute normalized cross-correlation between two equally shaped images.

    Returns:
        NCC value between -1 and 1, or -inf for too small or degenerate input
    """
    if image1.shape != image2.shape or image1.size < min_overlap_pixels:
        return float("-inf")
    centered1 = image1.astype(np.float64) - image1.mean()
    centered2 = image2.astype(np.float64) - image2.mean()
    var1 = float((centered1 * centered1).sum())
    var2 = float((centered2 * centered2).sum())
    denominator = np.sqrt(var1 * var2)
    if denominator == 0.0:
        # Two constant images correlate perfectly only if both are flat
        return 1.0 if var1 == 0.0 and var2 == 0.0 else float("-inf")
    return float(np.clip((centered1 * centered2).sum() / denominator, -1.0, 1.0))


def _overlap_slices(shape1: Tuple[int, int], shape2: Tuple[int, int], tx: int, ty: int):
    y0 = max(0, -ty)
    y1 = min(shape1[0], shape2[0] - ty)
    x0 = max(0, -tx)
    x1 = min(shape1[1], shape2[1] - tx)
    if y1 <= y0 or x1 <= x0:
        return None
    return (slice(y0, y1), slice(x0, x1)), (slice(y0 + ty, y1 + ty), slice(x0 + tx, x1 + tx))


def score_translation(
    image1: NumArray,
    image2: NumArray,
    tx: int,
    ty: int,
    min_overlap_ratio: float = DEFAULT_MIN_OVERLAP_RATIO,
) -> CrossCorrelationResult:
    """Score a translation by the correlation of the overlapping pixels.

    Overlaps of at most ``min_overlap_ratio`` of the smaller image area score
    ``r = 0`` and ``ssq = inf``.
    """
    min_pixels = min_overlap_ratio * min(image1.shape[0], image2.shape[0]) * min(image1.shape[1], image2.shape[1])
    slices = _overlap_slices(image1.shape, image2.shape, tx, ty)
    if slices is None:
        return CrossCorrelationResult(tx, ty, 0.0, float("inf"), 0)
    sub1 = image1[slices[0]].astype(np.float64)
    sub2 = image2[slices[1]].astype(np.float64)
    count = sub1.size
    if count <= min_pixels:
        return CrossCorrelationResult(tx, ty, 0.0, float("inf"), count)

    ssq = float(((sub1 - sub2) ** 2).mean())
    r = ncc(sub1, sub2, min_overlap_pixels=0)
    if not np.isfinite(r):
        r = 0.0
    return CrossCorrelationResult(tx, ty, r, ssq, count)


def phase_correlation(
    image1: NumArray,
    image2: NumArray,
    num_peaks: int = DEFAULT_NUM_PEAKS,
    min_overlap_ratio: float = DEFAULT_MIN_OVERLAP_RATIO,
    subpixel: bool = False,
    upsample_factor: int = 100,
) -> List[CrossCorrelationResult]:
    """Candidate translations from the phase correlation matrix.

    The PCM is computed on mirror-extended, windowed copies of the images
    (:func:`extend_mirror`) so that the image borders do not produce peaks.
    Every PCM peak ``p`` is ambiguous modulo the padded size ``n``; the four
    combinations ``t = -p`` and ``t = n - p`` per axis are verified with
    :func:`score_translation`.

    Args:
        image1: First image
        image2: Second image
        num_peaks: Number of PCM peaks to verify
        min_overlap_ratio: Overlap floor, see :func:`score_translation`
        subpixel: Refine the best candidate with upsampled phase correlation
            (images of equal shape only)
        upsample_factor: Sub-pixel precision is ``1 / upsample_factor``

    Returns:
        Verified candidates sorted by descending correlation
    """
    validate_image_pair(image1, image2)
    norm1 = normalize(image1).astype(np.float64)
    norm2 = normalize(image2).astype(np.float64)
    extended1, (top1, left1) = extend_mirror(norm1)
    extended2, (top2, left2) = extend_mirror(norm2)
    matrix = pcm(extended1, extended2)
    size_y, size_x = matrix.shape
    rows, cols, _ = multi_peak_max(matrix, num_peaks)

    # Peaks are measured between the extended images
    shift_y = top1 - top2
    shift_x = left1 - left2
    seen = set()
    results: List[CrossCorrelationResult] = []
    for row, col in zip(rows, cols):
        for ty, tx in itertools.product(
            (shift_y - int(row), shift_y + size_y - int(row)),
            (shift_x - int(col), shift_x + size_x - int(col)),
        ):
            if (tx, ty) in seen:
                continue
            seen.add((tx, ty))
            results.append(score_translation(norm1, norm2, tx, ty, min_overlap_ratio))
    results.sort(key=lambda result: result.r, reverse=True)

    if subpixel and results and image1.shape == image2.shape:
        results[0] = _refine_subpixel(norm1, norm2, results[0], upsample_factor)
    if results:
        logger.debug(
            f"Phase correlation best translation ({results[0].tx}, {results[0].ty}) "
            f"with r={results[0].r:.3f}"
        )
    return results


def _refine_subpixel(
    image1: FloatArray, image2: FloatArray, result: CrossCorrelationResult, upsample_factor: int
) -> CrossCorrelationResult:
    shift = phase_cross_correlation(image2, image1, upsample_factor=upsample_factor)[0]
    ty, tx = float(shift[0]), float(shift[1])
    if abs(tx - result.tx) >= 1.0 or abs(ty - result.ty) >= 1.0:
        logger.debug(
            f"Sub-pixel estimate ({tx:.2f}, {ty:.2f}) disagrees with ({result.tx}, {result.ty}); ignored"
        )
        return result
    return CrossCorrelationResult(tx, ty, result.r, result.ssq, result.overlapping_pixels)


def cross_correlation_search(
    image1: NumArray,
    image2: NumArray,
    search_radius: Optional[Tuple[int, int]] = None,
    center: Tuple[int, int] = (0, 0),
    min_overlap_ratio: float = DEFAULT_SEARCH_MIN_OVERLAP_RATIO,
) -> Optional[CrossCorrelationResult]:
    """Exhaustively search the integer translation with the highest correlation.

    Args:
        image1: First image
        image2: Second image
        search_radius: ``(rx, ry)`` around ``center``; defaults to every
            translation with any overlap
        center: ``(tx, ty)`` at the middle of the search window
        min_overlap_ratio: Overlap floor, see :func:`score_translation`

    Returns:
        The best scoring translation, or None if every candidate was degenerate
    """
    validate_image_pair(image1, image2)
    norm1 = normalize(image1).astype(np.float64)
    norm2 = normalize(image2).astype(np.float64)
    if search_radius is None:
        x_range = range(-image1.shape[1] + 1, image2.shape[1])
        y_range = range(-image1.shape[0] + 1, image2.shape[0])
    else:
        x_range = range(center[0] - search_radius[0], center[0] + search_radius[0] + 1)
        y_range = range(center[1] - search_radius[1], center[1] + search_radius[1] + 1)

    best: Optional[CrossCorrelationResult] = None
    for ty in y_range:
        for tx in x_range:
            result = score_translation(norm1, norm2, tx, ty, min_overlap_ratio)
            if result.overlapping_pixels == 0 or not np.isfinite(result.ssq):
                continue
            if best is None or result.r > best.r:
                best = result
    return best


def correlation_matches(
    result: CrossCorrelationResult,
    shape1: Sequence[int],
    shape2: Sequence[int],
    spacing: int = DEFAULT_MATCH_SPACING,
) -> List[PointMatch]:
    """Grid of exact correspondences over the overlap implied by a translation.

    Returns:
        Matches from image1 points to image2 points, empty if there is no overlap
    """
    tx, ty = result.translation
    x0 = max(0.0, -tx)
    x1 = min(shape1[1] - 1.0, shape2[1] - 1.0 - tx)
    y0 = max(0.0, -ty)
    y1 = min(shape1[0] - 1.0, shape2[0] - 1.0 - ty)
    if x1 < x0 or y1 < y0:
        return []
    xs = np.unique(np.append(np.arange(x0, x1, spacing), x1))
    ys = np.unique(np.append(np.arange(y0, y1, spacing), y1))
    return [
        PointMatch(Point((x, y)), Point((x + tx, y + ty)))
        for y in ys
        for x in xs
    ]
