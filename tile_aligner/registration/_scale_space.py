"""Gaussian and Difference-of-Gaussian scale space.

The pyramid is built eagerly: every Gaussian and DoG image of every octave is
materialized by :func:`build_scale_space`. Gradient images are the exception;
they are computed on first request and memoized per ``(octave, step)``.

The module includes:
- Octave and ScaleSpace containers
- Blur schedule computation
- Cross-octave DoG neighbourhoods used by extremum detection
"""
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import numpy as np
from scipy import ndimage

from ._image_filter import (
    downsample,
    gaussian_blur,
    gradients,
    normalize,
    upscale,
    validate_image,
)
from ._typing_utils import Float32Array, NumArray

# Configure logger
logger = logging.getLogger(__name__)

DEFAULT_IMAGE_SIGMA = 0.5     # Blur assumed to be present in the input
DEFAULT_INITIAL_SIGMA = 1.6   # Blur of the first level of each octave
DEFAULT_STEPS_PER_OCTAVE = 3
DEFAULT_MIN_IMAGE_SIZE = 32   # No octave is built below this edge length


@dataclass
class Octave:
    """One doubling level of the pyramid."""
    gauss: List[Float32Array]
    dog: List[Float32Array]

    @property
    def shape(self) -> Tuple[int, int]:
        return self.gauss[0].shape


@dataclass
class ScaleSpace:
    """Immutable Gaussian/DoG pyramid with a lazily filled gradient arena."""
    octaves: List[Octave]
    steps: int
    initial_sigma: float
    _gradients: Dict[Tuple[int, int], Tuple[Float32Array, Float32Array]] = field(
        default_factory=dict, repr=False
    )
    _neighbourhoods: Dict[int, Tuple[Float32Array, Float32Array, Float32Array]] = field(
        default_factory=dict, repr=False
    )
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def num_octaves(self) -> int:
        return len(self.octaves)

    @property
    def num_scales(self) -> int:
        """Number of DoG images across all octaves."""
        return self.num_octaves * self.steps

    def locate(self, scale: int) -> Tuple[int, int]:
        """Split a global scale index into ``(octave, step)``."""
        return divmod(scale, self.steps)

    def dog(self, scale: int) -> Float32Array:
        octave, step = self.locate(scale)
        return self.octaves[octave].dog[step]

    def octave_sigma(self, step: float) -> float:
        """Blur of a (possibly fractional) step in the pixels of its own octave."""
        return self.initial_sigma * 2.0 ** (step / self.steps)

    def world_sigma(self, octave: int, step: float) -> float:
        """Blur of a (possibly fractional) step in input image pixels."""
        return self.octave_sigma(step) * math.ldexp(1.0, octave - 1)

    def gradients(self, octave: int, step: int) -> Tuple[Float32Array, Float32Array]:
        """Gradient magnitude and orientation of one Gaussian level, memoized."""
        key = (octave, step)
        cached = self._gradients.get(key)
        if cached is not None:
            return cached
        with self._lock:
            if key not in self._gradients:
                magnitude, orientation = gradients(self.octaves[octave].gauss[step])
                magnitude.flags.writeable = False
                orientation.flags.writeable = False
                self._gradients[key] = (magnitude, orientation)
            return self._gradients[key]

    def neighbourhood(self, scale: int) -> Tuple[Float32Array, Float32Array, Float32Array]:
        """DoG images at ``scale - 1``, ``scale`` and ``scale + 1`` on the grid of ``scale``.

        A lower scale from the previous (larger) octave is sampled at
        ``(2x + 1, 2y + 1)``; a higher scale from the next (smaller) octave is
        bilinearly interpolated at ``((x - 1) / 2, (y - 1) / 2)``.
        """
        cached = self._neighbourhoods.get(scale)
        if cached is not None:
            return cached
        with self._lock:
            if scale not in self._neighbourhoods:
                self._neighbourhoods[scale] = self._build_neighbourhood(scale)
            return self._neighbourhoods[scale]

    def _build_neighbourhood(self, scale: int) -> Tuple[Float32Array, Float32Array, Float32Array]:
        octave, _ = self.locate(scale)
        center = self.dog(scale)
        h, w = center.shape

        below_octave, _ = self.locate(scale - 1)
        below = self.dog(scale - 1)
        if below_octave != octave:
            below = below[1::2, 1::2][:h, :w]

        above_octave, _ = self.locate(scale + 1)
        above = self.dog(scale + 1)
        if above_octave != octave:
            ys, xs = np.mgrid[0:h, 0:w].astype(np.float64)
            coords = np.stack([(ys - 1.0) * 0.5, (xs - 1.0) * 0.5])
            above = ndimage.map_coordinates(above, coords, order=1, mode="mirror").astype(np.float32)

        for array in (below, center, above):
            array.flags.writeable = False
        return below, center, above


def blur_schedule(
    initial_sigma: float, image_sigma: float, steps: int
) -> Tuple[List[float], List[float]]:
    """Absolute blur per level and the blur to apply to the base image for each level.

    Level 0 is blurred from the (upscaled) input, which already carries
    ``2 * image_sigma``. Level ``i > 0`` is blurred from level 0.

    Raises:
        ValueError: If ``initial_sigma`` does not exceed the upscaled input blur
    """
    upscaled_sigma = 2.0 * image_sigma
    if initial_sigma <= upscaled_sigma:
        raise ValueError(
            f"initial_sigma ({initial_sigma}) must exceed the upscaled input blur ({upscaled_sigma})"
        )
    k = 2.0 ** (1.0 / steps)
    sigma = [initial_sigma]
    for _ in range(steps):
        sigma.append(sigma[-1] * k)
    diff = [math.sqrt(initial_sigma ** 2 - upscaled_sigma ** 2)]
    diff.extend(math.sqrt(s ** 2 - initial_sigma ** 2) for s in sigma[1:])
    return sigma, diff


def _build_octave(base: Float32Array, diff: List[float], k: float) -> Octave:
    gauss = [base]
    for sigma in diff[1:]:
        gauss.append(gaussian_blur(base, sigma))
    norm = 1.0 / (k - 1.0)
    dog = [((gauss[i] - gauss[i - 1]) * norm).astype(np.float32) for i in range(1, len(gauss))]
    for array in gauss + dog:
        array.flags.writeable = False
    return Octave(gauss=gauss, dog=dog)


def build_scale_space(
    image: NumArray,
    image_sigma: float = DEFAULT_IMAGE_SIGMA,
    initial_sigma: float = DEFAULT_INITIAL_SIGMA,
    steps: int = DEFAULT_STEPS_PER_OCTAVE,
    min_size: int = DEFAULT_MIN_IMAGE_SIZE,
) -> ScaleSpace:
    """Build the Gaussian/DoG pyramid of a grayscale image.

    Args:
        image: 2-D input image, any numeric dtype
        image_sigma: Blur assumed to be present in the input
        initial_sigma: Blur of the first level of every octave
        steps: Number of DoG images per octave
        min_size: Octaves are added while half the smaller edge is at least this

    Returns:
        The fully built ScaleSpace

    Raises:
        ValueError: If the image is invalid or the blur parameters are inconsistent
    """
    validate_image(image)
    if steps < 1:
        raise ValueError(f"steps must be at least 1, got {steps}")

    sigma, diff = blur_schedule(initial_sigma, image_sigma, steps)
    k = 2.0 ** (1.0 / steps)

    base = gaussian_blur(upscale(normalize(image)), diff[0])
    octaves = [_build_octave(base, diff, k)]
    while min(octaves[-1].shape) // 2 >= min_size:
        base = downsample(octaves[-1].gauss[-1])
        octaves.append(_build_octave(base, diff, k))

    logger.debug(
        f"Built scale space with {len(octaves)} octaves from image of shape {image.shape}"
    )
    return ScaleSpace(octaves=octaves, steps=steps, initial_sigma=sigma[0])
