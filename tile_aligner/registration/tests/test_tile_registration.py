"""Tests for the tile registration pipeline."""
import threading

import numpy as np
import pandas as pd
import pytest

from ...parameters import (
    CorrelationParameters,
    OptimizerParameters,
    RansacParameters,
    RegistrationParameters,
)
from .._models import ModelType, TranslationModel
from ..tile_registration import (
    CorrespondenceSource,
    build_tiles,
    candidate_pairs,
    extract_features,
    extract_features_batched,
    features_to_dataframe,
    match_tile_pairs,
    matches_to_dataframe,
    read_correspondences_csv,
    register_tiles,
    tile_transforms_dataframe,
)
from ...testutil import blob_canvas, crop, synthetic_matches

# Top-left corners of the tiles on the canvas
OFFSETS = [(10, 10), (60, 14), (40, 60)]
TILE_SIZE = 112


@pytest.fixture(scope="module")
def tiles():
    canvas = blob_canvas(192, 192, num_blobs=150)
    return [crop(canvas, x, y, TILE_SIZE, TILE_SIZE) for x, y in OFFSETS]


@pytest.fixture
def params():
    return RegistrationParameters(
        ransac=RansacParameters(model_type=ModelType.TRANSLATION),
        optimizer=OptimizerParameters(max_error=1.0, convergence_window=10, max_iterations=2000),
        max_workers=1,
        show_progress=False,
    )


def test_register_tiles(tiles, params):
    params.fixed_tiles = [0]
    result = register_tiles(tiles, params)

    assert result.fixed_tiles == [0]
    assert len(result.pairs) == 3
    for pair in result.pairs:
        assert pair.source == CorrespondenceSource.FEATURES
        assert len(pair.inliers) >= 5
    assert result.optimization is not None
    assert result.optimization.converged

    for model, (x, y) in zip(result.models, OFFSETS):
        assert model.tx == pytest.approx(x - OFFSETS[0][0], abs=1.0)
        assert model.ty == pytest.approx(y - OFFSETS[0][1], abs=1.0)


def test_register_tiles_selects_anchor(tiles, params):
    result = register_tiles(tiles, params)
    assert len(result.fixed_tiles) == 1

    anchor = result.models[result.fixed_tiles[0]]
    assert (anchor.tx, anchor.ty) == (0.0, 0.0)
    relative = result.models[2].tx - result.models[1].tx
    assert relative == pytest.approx(OFFSETS[2][0] - OFFSETS[1][0], abs=1.0)


def test_register_tiles_validation(tiles, params):
    with pytest.raises(ValueError):
        register_tiles([], params)
    params.fixed_tiles = [5]
    with pytest.raises(ValueError):
        register_tiles(tiles, params)


def test_extract_features_batched_matches_serial(tiles, params):
    serial = [extract_features(tile, params.sift) for tile in tiles[:2]]
    parallel = extract_features_batched(tiles[:2], params.sift, max_workers=2, lookahead=1, show_progress=False)
    assert parallel == serial


def test_extract_features_batched_cancelled(tiles, params):
    event = threading.Event()
    event.set()
    features = extract_features_batched(tiles, params.sift, max_workers=1, cancel_event=event, show_progress=False)
    assert features == [[], [], []]


def test_manual_matches_bypass_features(params):
    truth = TranslationModel(tx=-7.0, ty=2.0)
    manual = {(0, 1): synthetic_matches(truth, 20)}
    [result] = match_tile_pairs([[], []], [(0, 1)], params, manual_matches=manual)

    assert result.source == CorrespondenceSource.MANUAL
    assert result.num_candidates == 20
    assert result.model.tx == pytest.approx(-7.0)
    assert result.model.ty == pytest.approx(2.0)


def test_correlation_fallback(tiles, params):
    params.correlation = CorrelationParameters(enabled=True)
    [result] = match_tile_pairs([[], []], [(0, 1)], params, images=tiles[:2])

    assert result.source == CorrespondenceSource.CORRELATION
    dx = OFFSETS[1][0] - OFFSETS[0][0]
    dy = OFFSETS[1][1] - OFFSETS[0][1]
    assert (result.model.tx, result.model.ty) == pytest.approx((-dx, -dy))


def test_no_model_without_correspondences(params):
    [result] = match_tile_pairs([[], []], [(0, 1)], params)
    assert result.source == CorrespondenceSource.NONE
    assert result.model is None
    assert result.inliers == []


def test_candidate_pairs():
    shapes = [(100, 100)] * 3
    assert candidate_pairs(shapes) == [(0, 1), (0, 2), (1, 2)]

    layout = [TranslationModel(), TranslationModel(tx=90.0), TranslationModel(tx=500.0)]
    assert candidate_pairs(shapes, layout) == [(0, 1)]
    with pytest.raises(ValueError):
        candidate_pairs(shapes, layout[:2])


def test_build_tiles(params):
    truth = TranslationModel(tx=-7.0, ty=2.0)
    [result] = match_tile_pairs(
        [[], []], [(0, 1)], params, manual_matches={(0, 1): synthetic_matches(truth, 10)}
    )
    tiles = build_tiles(
        [(50, 80), (50, 80)], [result], ModelType.RIGID, initial_models=[TranslationModel(), truth.inverse()]
    )

    assert (tiles[0].width, tiles[0].height) == (80.0, 50.0)
    assert len(tiles[0].matches) == len(tiles[1].matches) == 10
    assert tiles[1] in tiles[0].connected_tiles
    assert tiles[1].model.model_type == ModelType.RIGID
    assert (tiles[1].model.tx, tiles[1].model.ty) == pytest.approx((7.0, -2.0))
    # Tiles hold their own points
    assert tiles[0].matches[0].p1 is not result.inliers[0].p1


def test_correspondences_csv_roundtrip(tmp_path):
    matches = synthetic_matches(TranslationModel(tx=1.0, ty=2.0), 5)
    matches[0].weight = 0.25
    path = tmp_path / "matches.csv"
    matches_to_dataframe(matches).to_csv(path, index=False)

    loaded = read_correspondences_csv(path)
    assert len(loaded) == 5
    for original, match in zip(matches, loaded):
        np.testing.assert_allclose(match.p1.local, original.p1.local)
        np.testing.assert_allclose(match.p2.local, original.p2.local)
        assert match.weight == original.weight


def test_correspondences_csv_without_weights(tmp_path):
    path = tmp_path / "matches.csv"
    pd.DataFrame({"x1": [0.0], "y1": [1.0], "x2": [2.0], "y2": [3.0]}).to_csv(path, index=False)
    [match] = read_correspondences_csv(path)
    assert match.weight == 1.0

    pd.DataFrame({"x1": [0.0], "y1": [1.0]}).to_csv(path, index=False)
    with pytest.raises(ValueError):
        read_correspondences_csv(path)


def test_dataframes(tiles, params):
    features = extract_features(tiles[0], params.sift)
    df = features_to_dataframe(features)
    assert len(df) == len(features)
    assert list(df.columns) == ["x", "y", "sigma", "orientation", "octave", "scale", "descriptor"]

    built = build_tiles([tile.shape for tile in tiles], [], ModelType.AFFINE)
    transforms = tile_transforms_dataframe(built)
    assert transforms["tile"].tolist() == [0, 1, 2]
    assert (transforms["model"] == "affine").all()
    assert transforms["m00"].tolist() == [1.0, 1.0, 1.0]
    assert transforms["num_matches"].tolist() == [0, 0, 0]
