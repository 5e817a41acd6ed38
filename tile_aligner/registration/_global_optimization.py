"""Tile graph utilities for global optimization.

The tile graph has one node per tile and one edge per pair of tiles linked by
correspondences. It is used to pick one fixed anchor per connected component
and to initialize tile models before iterative optimization, by chaining
pairwise models along a maximum spanning tree weighted by inlier count.

The module includes:
- Tile graph construction
- Anchor selection per connected component
- Maximum spanning tree over pairwise models
- Model propagation from the anchors
"""
import logging
from typing import Dict, List, Sequence, Tuple

import networkx as nx

from ._models import Model
from ._tile_optimization import Tile

# Configure logger
logger = logging.getLogger(__name__)


def build_tile_graph(tiles: Sequence[Tile]) -> nx.Graph:
    """Graph of tile indices connected through shared correspondences."""
    index = {id(tile): i for i, tile in enumerate(tiles)}
    graph = nx.Graph()
    graph.add_nodes_from(range(len(tiles)))
    for i, tile in enumerate(tiles):
        for other in tile.connected_tiles:
            j = index.get(id(other))
            if j is None:
                raise ValueError(f"Tile {i} is connected to a tile outside the given set")
            graph.add_edge(i, j)
    return graph


def select_fixed_tiles(tiles: Sequence[Tile]) -> List[int]:
    """One anchor per connected component: the tile with the most correspondences.

    Ties go to the lowest index.
    """
    graph = build_tile_graph(tiles)
    components = list(nx.connected_components(graph))
    logger.info(f"Found {len(components)} connected components")
    anchors = [
        min(component, key=lambda i: (-len(tiles[i].matches), i))
        for component in components
    ]
    return sorted(anchors)


def compute_maximum_spanning_tree(
    num_tiles: int,
    pair_models: Dict[Tuple[int, int], Model],
) -> nx.Graph:
    """Maximum spanning tree over pairwise models weighted by inlier count.

    Args:
        num_tiles: Number of tiles (graph nodes)
        pair_models: Model mapping tile ``i`` coordinates to tile ``j``
            coordinates, keyed by ``(i, j)``

    Returns:
        Spanning forest whose edges carry ``weight``, ``f``, ``t`` and ``model``
    """
    graph = nx.Graph()
    graph.add_nodes_from(range(num_tiles))
    for (i, j), model in pair_models.items():
        weight = len(model.inliers)
        if graph.has_edge(i, j) and graph.edges[i, j]["weight"] >= weight:
            continue
        graph.add_edge(i, j, weight=weight, f=i, t=j, model=model)
    tree = nx.maximum_spanning_tree(graph)
    if not nx.is_connected(tree) and num_tiles > 0:
        logger.warning(
            f"Tile graph has {nx.number_connected_components(tree)} components; "
            f"each is anchored separately"
        )
    return tree


def propagate_models(
    tiles: Sequence[Tile],
    tree: nx.Graph,
    anchors: Sequence[int],
) -> None:
    """Initialize tile models by chaining pairwise models away from the anchors.

    For an edge ``f -> t`` with pairwise model ``M`` (tile ``f`` coordinates to
    tile ``t`` coordinates), ``W_t = W_f o M^-1`` and ``W_f = W_t o M``.
    Anchor models are left untouched.
    """
    for anchor in anchors:
        for current, neighbor in nx.bfs_edges(tree, anchor):
            edge = tree.edges[current, neighbor]
            pair_model: Model = edge["model"]
            step = pair_model.inverse() if current == edge["f"] else pair_model
            world = tiles[current].model.to_matrix() @ step.to_matrix()
            tiles[neighbor].model = type(tiles[neighbor].model).from_matrix(world)
