"""Tests for iterative tile optimization."""
import logging
import math
import threading

import numpy as np
import pytest

from .._models import Point, PointMatch, RigidModel, TranslationModel
from .._tile_optimization import Tile, connect_tiles, fit_line, optimize_tiles


def link(tile1, tile2, world1, world2, num_points=12, seed=0):
    """Connect two tiles with exact correspondences for the given world transforms."""
    rng = np.random.default_rng(seed)
    local1 = rng.uniform(0, 100, size=(num_points, 2))
    local2 = world2.inverse().apply_array(world1.apply_array(local1))
    connect_tiles(
        tile1, tile2, [PointMatch(Point(a), Point(b)) for a, b in zip(local1, local2)]
    )


@pytest.fixture
def chain():
    """Three rigid tiles in a row; the first one carries the identity."""
    truth = [
        RigidModel(),
        RigidModel(theta=0.02, tx=80.0, ty=3.0),
        RigidModel(theta=-0.01, tx=160.0, ty=-2.0),
    ]
    tiles = [Tile(width=100, height=100, model=RigidModel()) for _ in truth]
    link(tiles[0], tiles[1], truth[0], truth[1], seed=1)
    link(tiles[1], tiles[2], truth[1], truth[2], seed=2)
    return tiles, truth


def test_chain_converges(chain):
    tiles, truth = chain
    result = optimize_tiles(tiles, [tiles[0]], max_error=0.01, window=10, max_iterations=5000)

    assert result.converged
    assert not result.cancelled
    assert result.mean_displacement < 0.01
    assert result.history[-1] < result.history[0]
    for tile, expected in zip(tiles, truth):
        np.testing.assert_allclose(tile.model.to_matrix(), expected.to_matrix(), atol=0.05)


def test_chain_residual_is_monotone(chain):
    tiles, _ = chain
    result = optimize_tiles(tiles, [tiles[0]], max_error=0.1, window=10, max_iterations=500)

    late = result.history[10:]
    assert all(b <= a + 1e-9 for a, b in zip(late, late[1:]))
    assert min(result.history) < 0.1


def test_fixed_tile_is_untouched(chain):
    tiles, _ = chain
    anchor = tiles[0].model
    optimize_tiles(tiles, [tiles[0]], max_error=0.01, window=10, max_iterations=100)
    assert tiles[0].model is anchor
    assert tiles[0].model == RigidModel()


def test_translation_chain_history_decreases():
    truth = [TranslationModel(), TranslationModel(tx=50.0, ty=1.0), TranslationModel(tx=100.0, ty=2.0)]
    tiles = [Tile(width=60, height=60) for _ in truth]
    link(tiles[0], tiles[1], truth[0], truth[1], seed=3)
    link(tiles[1], tiles[2], truth[1], truth[2], seed=4)
    result = optimize_tiles(tiles, [tiles[0]], max_error=1e-6, window=5, max_iterations=500)

    assert result.converged
    assert all(b <= a + 1e-9 for a, b in zip(result.history, result.history[1:]))
    assert tiles[2].model.tx == pytest.approx(100.0, abs=1e-5)
    assert tiles[2].model.ty == pytest.approx(2.0, abs=1e-5)


def test_not_converged_warns(chain, caplog):
    tiles, _ = chain
    with caplog.at_level(logging.WARNING):
        result = optimize_tiles(tiles, [tiles[0]], max_error=1e-12, window=10, max_iterations=3)
    assert not result.converged
    assert result.iterations == 3
    assert len(result.history) == 3
    assert "did not converge" in caplog.text


def test_progress_callback(chain):
    tiles, _ = chain
    reports = []

    def callback(iteration, displacement):
        reports.append((iteration, displacement))
        raise RuntimeError("callback failures do not stop optimization")

    result = optimize_tiles(
        tiles, [tiles[0]], max_error=1e-12, window=10, max_iterations=6,
        progress_callback=callback, report_interval=2,
    )
    assert [iteration for iteration, _ in reports] == [2, 4, 6]
    assert result.iterations == 6


def test_cancel(chain):
    tiles, _ = chain
    event = threading.Event()
    event.set()
    result = optimize_tiles(tiles, [tiles[0]], max_error=0.01, cancel_event=event)
    assert result.cancelled
    assert not result.converged
    assert result.iterations == 0
    assert tiles[1].model == RigidModel()


def test_connect_tiles_shares_points():
    tile1 = Tile(width=10, height=10)
    tile2 = Tile(width=10, height=10)
    match = PointMatch(Point((1.0, 2.0)), Point((3.0, 4.0)))
    connect_tiles(tile1, tile2, [match])

    assert tile1.connected_tiles == {tile2}
    assert tile2.connected_tiles == {tile1}
    assert tile1.matches[0] is match
    assert tile2.matches[0].p1 is match.p2
    assert tile2.matches[0].p2 is match.p1


def test_fit_model_keeps_better_model():
    tile1 = Tile(width=10, height=10, model=TranslationModel(tx=2.0))
    tile2 = Tile(width=10, height=10)
    connect_tiles(tile1, tile2, [PointMatch(Point((0.0, 0.0)), Point((2.0, 0.0)))])
    tile1.update()
    assert tile1.distance == 0.0
    assert not tile1.fit_model()


def test_tile_update_statistics():
    tile1 = Tile(width=10, height=10)
    tile2 = Tile(width=10, height=10)
    connect_tiles(
        tile1,
        tile2,
        [
            PointMatch(Point((0.0, 0.0)), Point((3.0, 4.0))),
            PointMatch(Point((0.0, 0.0)), Point((0.0, 0.0))),
        ],
    )
    tile1.update()
    assert tile1.distance == pytest.approx(2.5)
    assert tile1.error == pytest.approx(12.5)


def test_fit_line():
    line = fit_line([1.0, 3.0, 5.0, 7.0])
    assert line.slope == pytest.approx(2.0)
    assert line.intercept == pytest.approx(1.0)
    assert line.r == pytest.approx(1.0)

    flat = fit_line([4.0, 4.0, 4.0])
    assert flat.slope == pytest.approx(0.0)
    assert math.isnan(flat.r)
    assert flat.std_dev == 0.0
