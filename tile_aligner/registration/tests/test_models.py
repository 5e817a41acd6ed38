"""Tests for the 2-D transform models."""
import math

import numpy as np
import pytest

from .._models import (
    AffineModel,
    ModelType,
    Point,
    PointMatch,
    RigidModel,
    SimilarityModel,
    TranslationModel,
    model_class,
)
from ...testutil import synthetic_matches

MODELS = [
    TranslationModel(tx=4.0, ty=-2.5),
    RigidModel(theta=0.3, tx=10.0, ty=-5.0),
    SimilarityModel(a=1.1 * math.cos(-0.2), b=1.1 * math.sin(-0.2), tx=-3.0, ty=7.0),
    AffineModel(1.05, 0.1, 2.0, -0.05, 0.95, -4.0),
]


@pytest.mark.parametrize("model", MODELS, ids=lambda m: m.model_type.value)
def test_least_squares_fit_recovers_model(model):
    matches = synthetic_matches(model, 20)
    fitted = type(model)()
    assert fitted.fit_matches(matches)
    np.testing.assert_allclose(fitted.to_matrix(), model.to_matrix(), atol=1e-9)


@pytest.mark.parametrize("model", MODELS, ids=lambda m: m.model_type.value)
def test_minimal_fit_recovers_model(model):
    matches = synthetic_matches(model, model.MIN_NUM_MATCHES, seed=11)
    src = np.array([m.p1.local for m in matches])
    dst = np.array([m.p2.world for m in matches])
    fitted = type(model)()
    assert fitted.fit_minimal(src, dst)
    np.testing.assert_allclose(fitted.apply_array(src), dst, atol=1e-9)


@pytest.mark.parametrize("model", MODELS, ids=lambda m: m.model_type.value)
def test_inverse_and_matrix_roundtrip(model):
    point = np.array([12.0, -7.0])
    np.testing.assert_allclose(model.apply_inverse(model.apply(point)), point, atol=1e-9)
    np.testing.assert_allclose(
        type(model).from_matrix(model.to_matrix()).to_matrix(), model.to_matrix(), atol=1e-12
    )


def test_concatenate_applies_other_first():
    rigid = RigidModel(theta=0.5, tx=1.0, ty=2.0)
    shift = RigidModel(theta=0.0, tx=10.0, ty=0.0)
    point = np.array([3.0, 4.0])
    np.testing.assert_allclose(
        rigid.concatenate(shift).apply(point), rigid.apply(shift.apply(point)), atol=1e-12
    )


def test_weighted_translation_fit():
    matches = [
        PointMatch(Point((0.0, 0.0)), Point((1.0, 0.0)), weight=3.0),
        PointMatch(Point((0.0, 0.0)), Point((5.0, 0.0)), weight=1.0),
    ]
    model = TranslationModel()
    assert model.fit_matches(matches)
    assert model.tx == pytest.approx(2.0)
    assert model.ty == pytest.approx(0.0)


def test_degenerate_samples():
    coincident = np.array([[1.0, 1.0], [1.0, 1.0]])
    assert not RigidModel().fit_minimal(coincident, coincident + 1)
    assert not SimilarityModel().fit_minimal(coincident, coincident + 1)

    collinear = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0]])
    assert not AffineModel().fit_minimal(collinear, collinear)
    assert not AffineModel().fit(collinear, collinear)
    assert not RigidModel().fit(collinear[:1], collinear[:1])


def test_similarity_properties():
    model = SimilarityModel(a=2.0 * math.cos(0.4), b=2.0 * math.sin(0.4))
    assert model.scale == pytest.approx(2.0)
    assert model.angle == pytest.approx(0.4)


def test_copy_is_independent():
    model = RigidModel(theta=0.1, tx=1.0, ty=1.0)
    copy = model.copy()
    copy.tx = 5.0
    assert model.tx == 1.0
    assert model.parameters() == {"theta": 0.1, "tx": 1.0, "ty": 1.0}


def test_point_match_flipped_shares_points():
    match = PointMatch(Point((1.0, 2.0)), Point((4.0, 6.0)), weight=0.5)
    flipped = match.flipped()
    assert flipped.p1 is match.p2
    assert flipped.p2 is match.p1
    assert flipped.weight == 0.5
    assert match.distance == pytest.approx(5.0)


def test_model_class():
    assert model_class(ModelType.AFFINE) is AffineModel
    assert model_class("rigid") is RigidModel
    with pytest.raises(ValueError):
        model_class("perspective")
