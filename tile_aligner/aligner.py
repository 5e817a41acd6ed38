import logging
import pathlib
import threading
from dataclasses import dataclass
from typing import Callable

import numpy as np
import tifffile
from skimage.color import rgb2gray

from .benchmarking_util import debug_timing
from .parameters import AlignmentParameters
from .registration.tile_registration import (
    RegistrationResult,
    register_tiles,
    tile_transforms_dataframe,
)

logger = logging.getLogger(__name__)


@dataclass
class ProgressCallbacks:
    update_progress: Callable[[int, float], None]
    loading_images: Callable[[int], None]
    starting_registration: Callable[[], None]
    finished_registration: Callable[[RegistrationResult], None]

    @classmethod
    def no_op(cls):
        return cls(
            update_progress=lambda _a, _b: None,
            loading_images=lambda _: None,
            starting_registration=lambda: None,
            finished_registration=lambda _: None,
        )


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Reduce a loaded image to a single 2-D plane.

    RGB(A) images are converted to luminance, stacks are collapsed with a
    maximum intensity projection.
    """
    if image.ndim == 2:
        return image
    if image.ndim == 3 and image.shape[-1] in (3, 4):
        return rgb2gray(image[..., :3])
    leading_axes = tuple(range(image.ndim - 2))
    logger.debug(f"Projecting image of shape {image.shape} along axes {leading_axes}")
    return image.max(axis=leading_axes)


class Aligner:
    def __init__(
        self,
        params: AlignmentParameters,
        callbacks: ProgressCallbacks = ProgressCallbacks.no_op(),
    ):
        self.params = params
        self.callbacks = callbacks
        self.cancel_event = threading.Event()

    def cancel(self) -> None:
        """Ask a running alignment to stop at the next opportunity."""
        self.cancel_event.set()

    def load_images(self) -> list[np.ndarray]:
        self.callbacks.loading_images(len(self.params.input_files))
        images = []
        with debug_timing("loading images"):
            for path in self.params.input_files:
                image = to_grayscale(tifffile.imread(path))
                logger.debug(f"Loaded {path} with shape {image.shape} and dtype {image.dtype}")
                images.append(image)
        return images

    def write_transforms(self, result: RegistrationResult, output_csv: pathlib.Path) -> None:
        df = tile_transforms_dataframe(result.tiles)
        df.insert(1, "file", [str(path) for path in self.params.input_files])
        df["fixed"] = df["tile"].isin(result.fixed_tiles)
        output_csv.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(output_csv, index=False)
        logger.info(f"Wrote {len(df)} tile transforms to {output_csv}")

    def run(self) -> RegistrationResult:
        images = self.load_images()
        self.callbacks.starting_registration()
        result = register_tiles(
            images,
            self.params,
            cancel_event=self.cancel_event,
            progress_callback=self.callbacks.update_progress,
        )
        if result.optimization is not None:
            logger.info(
                f"Registration finished after {result.optimization.iterations} iterations, "
                f"mean displacement {result.optimization.mean_displacement:.3f}px"
            )
        if self.params.output_csv is not None:
            self.write_transforms(result, self.params.output_csv)
        self.callbacks.finished_registration(result)
        return result
