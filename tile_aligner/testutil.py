import contextlib
import pathlib
import tempfile
from typing import Generator, Sequence

import numpy as np
import tifffile
from scipy import ndimage

from .registration._models import Model, Point, PointMatch

PARAMETERS_FIXTURE_FILE = (
    pathlib.Path(__file__).parent.parent
    / "test_fixtures"
    / "parameters_test"
    / "parameters.json"
)


def blob_canvas(
    height: int = 256,
    width: int = 256,
    num_blobs: int = 120,
    seed: int = 7,
) -> np.ndarray:
    """Textured uint16 test image made of Gaussian blobs of several sizes."""
    rng = np.random.default_rng(seed)
    canvas = np.zeros((height, width), dtype=np.float64)
    for sigma in (1.5, 2.5, 4.0):
        impulses = np.zeros_like(canvas)
        ys = rng.integers(0, height, size=num_blobs // 3)
        xs = rng.integers(0, width, size=num_blobs // 3)
        impulses[ys, xs] = rng.uniform(0.5, 1.0, size=len(ys))
        canvas += ndimage.gaussian_filter(impulses, sigma) * sigma**2
    canvas /= canvas.max()
    return (canvas * 60000).astype(np.uint16)


def crop(canvas: np.ndarray, x0: int, y0: int, width: int, height: int) -> np.ndarray:
    return np.ascontiguousarray(canvas[y0 : y0 + height, x0 : x0 + width])


def step_edge_image(height: int = 64, width: int = 64) -> np.ndarray:
    """Image that is dark on the left half and bright on the right half."""
    image = np.zeros((height, width), dtype=np.float32)
    image[:, width // 2 :] = 1.0
    return image


def synthetic_matches(
    model: Model,
    num_matches: int,
    outlier_fraction: float = 0.0,
    extent: float = 200.0,
    seed: int = 3,
) -> list[PointMatch]:
    """Correspondences following ``model``, with a share of random outliers."""
    rng = np.random.default_rng(seed)
    src = rng.uniform(0, extent, size=(num_matches, 2))
    dst = model.apply_array(src)
    num_outliers = int(round(num_matches * outlier_fraction))
    if num_outliers:
        dst[:num_outliers] = rng.uniform(0, extent, size=(num_outliers, 2))
    return [PointMatch(Point(s), Point(d)) for s, d in zip(src, dst)]


@contextlib.contextmanager
def temporary_tiff_files(
    images: Sequence[np.ndarray],
    name: str = "tiles",
) -> Generator[list[pathlib.Path], None, None]:
    """Write the images as TIFF files to a temporary directory."""
    with tempfile.TemporaryDirectory() as d:
        base_dir = pathlib.Path(d) / name
        base_dir.mkdir(parents=True)
        paths = []
        for index, image in enumerate(images):
            path = base_dir / f"tile_{index}.tiff"
            tifffile.imwrite(path, image)
            paths.append(path)
        yield paths
