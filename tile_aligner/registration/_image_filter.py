"""Low-level image filters used to build the scale space.

The module includes:
- Intensity normalization and input validation
- Separable Gaussian blur with mirrored boundaries
- 2x linear upscaling and 2x decimation
- Central-difference gradient magnitude/orientation
- SVD pseudo-inverse with a singular-value floor
"""
import logging
import math
from typing import Tuple

import numpy as np
from scipy import ndimage

from ._typing_utils import Float32Array, FloatArray, IntArray, NumArray

# Configure logger
logger = logging.getLogger(__name__)

SINGULAR_VALUE_THRESHOLD = 0.001  # Below this the local quadratic fit is rejected


class SingularFitError(ArithmeticError):
    """Raised when a matrix inversion hits a near-zero singular value."""


def validate_image(image: NumArray) -> None:
    """Validate a single grayscale image.

    Args:
        image: Input image

    Raises:
        TypeError: If image is not a numpy array
        ValueError: If image is not 2-D, empty or contains non-finite values
    """
    if not isinstance(image, np.ndarray):
        raise TypeError(f"Expected numpy array, got {type(image).__name__}")
    if image.ndim != 2:
        raise ValueError(f"Image must be 2-dimensional, got shape {image.shape}")
    if image.size == 0:
        raise ValueError("Image is empty")
    if not np.isfinite(image).all():
        raise ValueError("Image contains non-finite values")


def normalize(image: NumArray) -> Float32Array:
    """Rescale intensities linearly to [0, 1].

    A constant image maps to all zeros.
    """
    image = np.asarray(image, dtype=np.float32)
    lo = float(image.min())
    hi = float(image.max())
    if hi == lo:
        return np.zeros_like(image)
    return (image - lo) / (hi - lo)


def gaussian_kernel(sigma: float) -> FloatArray:
    """Normalized 1-D Gaussian kernel of size ``max(3, 2*int(3*sigma + 0.5) + 1)``."""
    size = max(3, 2 * int(3 * sigma + 0.5) + 1)
    half = size // 2
    x = np.arange(-half, half + 1, dtype=np.float64)
    kernel = np.exp(-(x * x) / (2.0 * sigma * sigma))
    return kernel / kernel.sum()


def gaussian_blur(image: NumArray, sigma: float) -> Float32Array:
    """Blur with a separable Gaussian, mirroring the image at its borders."""
    if sigma <= 0:
        return np.array(image, dtype=np.float32, copy=True)
    kernel = gaussian_kernel(sigma)
    blurred = ndimage.convolve1d(image, kernel, axis=1, mode="mirror", output=np.float32)
    return ndimage.convolve1d(blurred, kernel, axis=0, mode="mirror", output=np.float32)


def _upscale_axis(image: Float32Array, axis: int) -> Float32Array:
    src = np.moveaxis(image, axis, 0)
    n = src.shape[0]
    out = np.empty((2 * n,) + src.shape[1:], dtype=np.float32)
    # odd samples copy the source, even samples average their two source neighbours
    out[1::2] = src
    out[0] = src[0]
    out[2::2] = 0.5 * (src[1:] + src[:-1])
    return np.moveaxis(out, 0, axis)


def upscale(image: NumArray) -> Float32Array:
    """Upscale 2x with linear interpolation.

    Output pixel ``2x + 1`` holds input pixel ``x`` so that octave 1 of the
    pyramid samples the input grid exactly.
    """
    image = np.asarray(image, dtype=np.float32)
    return _upscale_axis(_upscale_axis(image, 1), 0)


def downsample(image: NumArray) -> Float32Array:
    """Decimate 2x by keeping pixel ``(2x + 1, 2y + 1)``."""
    return np.ascontiguousarray(image[1::2, 1::2], dtype=np.float32)


def gradients(image: NumArray) -> Tuple[Float32Array, Float32Array]:
    """Gradient magnitude and orientation from clamped central differences.

    Returns:
        Tuple of (magnitude, orientation) with orientation in radians in [-pi, pi]
    """
    padded = np.pad(np.asarray(image, dtype=np.float32), 1, mode="edge")
    dx = (padded[1:-1, 2:] - padded[1:-1, :-2]) * 0.5
    dy = (padded[2:, 1:-1] - padded[:-2, 1:-1]) * 0.5
    magnitude = np.sqrt(dx * dx + dy * dy).astype(np.float32)
    orientation = np.arctan2(dy, dx).astype(np.float32)
    return magnitude, orientation


def mirror_indices(indices: IntArray, size: int) -> IntArray:
    """Reflect integer indices into ``[0, size)`` without repeating the edge."""
    if size == 1:
        return np.zeros_like(indices)
    period = 2 * (size - 1)
    folded = np.mod(indices, period)
    return np.where(folded >= size, period - folded, folded)


def pseudo_inverse(matrix: FloatArray, threshold: float = SINGULAR_VALUE_THRESHOLD) -> FloatArray:
    """Invert a square matrix through its singular value decomposition.

    Raises:
        SingularFitError: If any singular value is below ``threshold``
    """
    u, s, vt = np.linalg.svd(matrix)
    if np.any(s < threshold):
        raise SingularFitError(f"Singular value {float(s.min()):.2e} below {threshold}")
    return (vt.T / s) @ u.T


def octave_to_world(position: float, octave: int) -> float:
    """Map a coordinate on an octave's grid to input image pixels.

    Octave 0 is the 2x upscaled image and octave 1 the input grid.
    """
    factor = math.ldexp(1.0, octave - 1)
    return factor * (position + 1.0) - 1.0
