"""Iterative refinement of many tile models against each other.

Every tile owns a model and point correspondences to its neighbours. A pass
refits each non-fixed tile to its neighbours' current world positions and
immediately re-applies it, so later tiles in the same pass see the update
(sequential coordinate descent).

The module includes:
- Tile data structure and tile connection
- Least-squares line fit used for convergence detection
- ``optimize_tiles`` with sliding-window convergence, progress reporting and
  cooperative cancellation
"""
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence, Set

import numpy as np

from ._models import Model, PointMatch, TranslationModel, match_arrays
from ._typing_utils import FloatArray

# Configure logger
logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 100000
DEFAULT_CONVERGENCE_WINDOW = 100
DEFAULT_REPORT_INTERVAL = 1000


@dataclass(eq=False)
class Tile:
    """A rectangular image region with its own transform."""
    width: float
    height: float
    model: Model = field(default_factory=TranslationModel)
    matches: List[PointMatch] = field(default_factory=list, repr=False)
    connected_tiles: Set["Tile"] = field(default_factory=set, repr=False)
    distance: float = 0.0
    """Mean world distance of this tile's correspondences."""
    error: float = 0.0
    """Mean squared world distance of this tile's correspondences."""

    def add_matches(self, matches: Iterable[PointMatch]) -> None:
        self.matches.extend(matches)

    def update(self) -> None:
        """Apply the model to the local points and refresh distance and error."""
        if not self.matches:
            self.distance = 0.0
            self.error = 0.0
            return
        src = np.array([m.p1.local for m in self.matches])
        world = self.model.apply_array(src)
        for match, position in zip(self.matches, world):
            match.p1.world = position
        dst = np.array([m.p2.world for m in self.matches])
        diff = world - dst
        squared = diff[:, 0] ** 2 + diff[:, 1] ** 2
        self.distance = float(np.sqrt(squared).mean())
        self.error = float(squared.mean())

    def fit_model(self) -> bool:
        """Refit the model to all correspondences.

        The model is replaced only if the refit strictly lowers the mean
        squared residual.

        Returns:
            True if the model was replaced
        """
        if not self.matches:
            return False
        src, dst, weights = match_arrays(self.matches)
        candidate = self.model.copy()
        if not candidate.fit(src, dst, weights):
            return False
        diff = candidate.apply_array(src) - dst
        candidate_error = float((diff[:, 0] ** 2 + diff[:, 1] ** 2).mean())
        diff = self.model.apply_array(src) - dst
        current_error = float((diff[:, 0] ** 2 + diff[:, 1] ** 2).mean())
        if candidate_error < current_error:
            self.model = candidate
            return True
        return False


def connect_tiles(tile1: Tile, tile2: Tile, matches: Sequence[PointMatch]) -> None:
    """Link two tiles through correspondences.

    ``p1`` of each match lies in ``tile1``, ``p2`` in ``tile2``. Both tiles
    share the same Point objects.
    """
    tile1.add_matches(matches)
    tile2.add_matches(m.flipped() for m in matches)
    tile1.connected_tiles.add(tile2)
    tile2.connected_tiles.add(tile1)


@dataclass
class LineFit:
    slope: float
    intercept: float
    r: float
    std_dev: float


def fit_line(values: Sequence[float]) -> LineFit:
    """Least-squares line through ``(i, values[i])``."""
    y = np.asarray(values, dtype=np.float64)
    x = np.arange(len(y), dtype=np.float64)
    if len(y) < 2:
        return LineFit(0.0, float(y[0]) if len(y) else 0.0, float("nan"), 0.0)
    slope, intercept = np.polyfit(x, y, 1)
    if np.std(y) == 0:
        r = float("nan")
    else:
        r = float(np.corrcoef(x, y)[0, 1])
    return LineFit(float(slope), float(intercept), r, float(np.std(y, ddof=1)))


@dataclass
class OptimizationResult:
    converged: bool
    cancelled: bool
    iterations: int
    mean_displacement: float
    min_displacement: float
    max_displacement: float
    history: List[float] = field(default_factory=list, repr=False)
    """Mean tile displacement after every pass."""


def _displacement_stats(tiles: Sequence[Tile]) -> FloatArray:
    for tile in tiles:
        tile.update()
    return np.array([tile.distance for tile in tiles], dtype=np.float64)


def optimize_tiles(
    tiles: Sequence[Tile],
    fixed_tiles: Iterable[Tile],
    max_error: float,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    window: int = DEFAULT_CONVERGENCE_WINDOW,
    progress_callback: Optional[Callable[[int, float], None]] = None,
    report_interval: int = DEFAULT_REPORT_INTERVAL,
    cancel_event: Optional[threading.Event] = None,
) -> OptimizationResult:
    """Minimize the mean correspondence displacement over all tiles.

    Stops once the mean displacement is below ``max_error`` and the line
    fitted to the last ``window`` changes of it has a non-negative slope.

    Args:
        tiles: All tiles
        fixed_tiles: Tiles whose models are never changed
        max_error: Target mean displacement
        max_iterations: Hard cap on the number of passes
        window: Number of per-pass changes used for the slope test
        progress_callback: Called as ``(iteration, mean_displacement)``
        report_interval: Passes between progress callbacks
        cancel_event: Checked between tile updates

    Returns:
        OptimizationResult describing the final state
    """
    fixed = set(fixed_tiles)
    movable = [tile for tile in tiles if tile not in fixed]

    distances = _displacement_stats(tiles)
    current = float(distances.mean()) if len(distances) else 0.0
    deltas: deque = deque(maxlen=window)
    history: List[float] = []
    converged = False
    cancelled = False
    iteration = 0

    while iteration < max_iterations:
        for tile in movable:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            tile.update()
            tile.fit_model()
            tile.update()
        if cancelled:
            logger.info(f"Tile optimization cancelled after {iteration} iterations")
            break

        iteration += 1
        distances = _displacement_stats(tiles)
        previous = current
        current = float(distances.mean()) if len(distances) else 0.0
        deltas.append(abs(previous - current))
        history.append(current)

        if progress_callback is not None and iteration % report_interval == 0:
            try:
                progress_callback(iteration, current)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

        if len(deltas) == window and current < max_error:
            if fit_line(deltas).slope >= 0:
                converged = True
                break

    distances = _displacement_stats(tiles)
    result = OptimizationResult(
        converged=converged,
        cancelled=cancelled,
        iterations=iteration,
        mean_displacement=float(distances.mean()) if len(distances) else 0.0,
        min_displacement=float(distances.min()) if len(distances) else 0.0,
        max_displacement=float(distances.max()) if len(distances) else 0.0,
        history=history,
    )
    if converged:
        logger.info(
            f"Optimized {len(tiles)} tiles in {iteration} iterations: "
            f"mean displacement {result.mean_displacement:.3f}px "
            f"(min {result.min_displacement:.3f}, max {result.max_displacement:.3f})"
        )
    elif not cancelled:
        logger.warning(
            f"Tile optimization did not converge within {max_iterations} iterations: "
            f"mean displacement {result.mean_displacement:.3f}px"
        )
    return result
