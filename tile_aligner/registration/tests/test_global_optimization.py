"""Tests for the tile graph and model initialization."""
import networkx as nx
import numpy as np
import pytest

from .._global_optimization import (
    build_tile_graph,
    compute_maximum_spanning_tree,
    propagate_models,
    select_fixed_tiles,
)
from .._models import Point, PointMatch, TranslationModel
from .._tile_optimization import Tile, connect_tiles


def dummy_matches(count):
    return [PointMatch(Point((i, 0.0)), Point((i, 0.0))) for i in range(count)]


def with_inliers(model, count):
    model.inliers = dummy_matches(count)
    return model


def test_select_fixed_tiles_per_component():
    tiles = [Tile(width=10, height=10) for _ in range(5)]
    connect_tiles(tiles[0], tiles[1], dummy_matches(4))
    connect_tiles(tiles[1], tiles[2], dummy_matches(4))
    connect_tiles(tiles[3], tiles[4], dummy_matches(2))

    # Tile 1 holds the most correspondences; tiles 3 and 4 tie and the lower index wins
    assert select_fixed_tiles(tiles) == [1, 3]


def test_isolated_tile_is_its_own_anchor():
    tiles = [Tile(width=10, height=10) for _ in range(2)]
    assert select_fixed_tiles(tiles) == [0, 1]


def test_build_tile_graph_rejects_foreign_tiles():
    tiles = [Tile(width=10, height=10)]
    connect_tiles(tiles[0], Tile(width=10, height=10), dummy_matches(1))
    with pytest.raises(ValueError):
        build_tile_graph(tiles)


def test_maximum_spanning_tree():
    pair_models = {
        (0, 1): with_inliers(TranslationModel(), 10),
        (1, 2): with_inliers(TranslationModel(), 8),
        (0, 2): with_inliers(TranslationModel(), 3),
    }
    tree = compute_maximum_spanning_tree(4, pair_models)
    assert sorted(tree.nodes) == [0, 1, 2, 3]
    assert {tuple(sorted(edge)) for edge in tree.edges} == {(0, 1), (1, 2)}
    assert tree.edges[1, 2]["f"] == 1
    assert tree.edges[1, 2]["weight"] == 8
    assert nx.number_connected_components(tree) == 2


def test_propagate_models():
    # Tile 1 sits 10px right of tile 0; tile 2 sits 20px below tile 1
    pair_models = {
        (0, 1): with_inliers(TranslationModel(tx=-10.0, ty=0.0), 5),
        (2, 1): with_inliers(TranslationModel(tx=0.0, ty=20.0), 5),
    }
    tiles = [Tile(width=10, height=10) for _ in range(3)]
    tree = compute_maximum_spanning_tree(3, pair_models)
    propagate_models(tiles, tree, [0])

    np.testing.assert_allclose(tiles[0].model.to_matrix(), np.eye(3))
    assert (tiles[1].model.tx, tiles[1].model.ty) == pytest.approx((10.0, 0.0))
    assert (tiles[2].model.tx, tiles[2].model.ty) == pytest.approx((10.0, 20.0))
