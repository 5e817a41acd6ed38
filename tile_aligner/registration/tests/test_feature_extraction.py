"""Tests for feature detection and description."""
import math

import numpy as np
import pytest

from .._feature_extraction import (
    DESCRIPTOR_LENGTH,
    derivatives,
    detect_features,
    find_extrema,
    normalize_descriptor,
    passes_curvature_test,
)
from .._scale_space import build_scale_space
from ...testutil import blob_canvas, step_edge_image


@pytest.fixture(scope="module")
def canvas():
    return blob_canvas(128, 128)


@pytest.fixture(scope="module")
def features(canvas):
    return detect_features(build_scale_space(canvas))


def test_detects_features(features, canvas):
    assert len(features) > 10
    height, width = canvas.shape
    for feature in features:
        assert -1.0 <= feature.world_x <= width
        assert -1.0 <= feature.world_y <= height
        assert feature.sigma > 0
        assert -math.pi <= feature.orientation < math.pi


def test_descriptor_bounds(features):
    for feature in features:
        assert feature.descriptor.shape == (DESCRIPTOR_LENGTH,)
        assert feature.descriptor.dtype == np.float32
        assert feature.descriptor.min() >= 0.0
        assert feature.descriptor.max() == pytest.approx(1.0)
        assert not feature.descriptor.flags.writeable


def test_refinement_offsets_are_bounded(features):
    for feature in features:
        assert abs(feature.dx) <= 0.5
        assert abs(feature.dy) <= 0.5
        assert abs(feature.dscale) <= 0.5


def test_detection_is_deterministic(canvas, features):
    again = detect_features(build_scale_space(canvas))
    assert again == features
    for a, b in zip(again, features):
        np.testing.assert_array_equal(a.descriptor, b.descriptor)


def test_step_edge_has_no_features():
    space = build_scale_space(step_edge_image())
    assert detect_features(space) == []


def test_blank_image_has_no_features():
    space = build_scale_space(np.zeros((64, 64), dtype=np.uint8))
    assert find_extrema(space) == []
    assert detect_features(space) == []


def test_higher_contrast_threshold_keeps_fewer(canvas, features):
    strict = detect_features(build_scale_space(canvas), min_contrast=0.1)
    assert len(strict) <= len(features)


def test_curvature_test():
    assert passes_curvature_test(np.diag([1.0, 1.0, 1.0]))
    # Strongly elongated response along an edge
    assert not passes_curvature_test(np.diag([1.0, 0.01, 1.0]))
    # Saddle point
    assert not passes_curvature_test(np.diag([1.0, -1.0, 1.0]))
    assert not passes_curvature_test(np.zeros((3, 3)))


def test_derivatives_of_quadratic():
    # f(x, y, s) = x^2 + 2 y^2 + 3 s^2 + x y sampled on a 3x3x3 grid indexed [s, y, x]
    s, y, x = np.mgrid[-1:2, -1:2, -1:2].astype(np.float64)
    env = x ** 2 + 2 * y ** 2 + 3 * s ** 2 + x * y + 0.5 * x
    gradient, hessian = derivatives(env)
    np.testing.assert_allclose(gradient, [0.5, 0.0, 0.0])
    np.testing.assert_allclose(hessian, [[2.0, 1.0, 0.0], [1.0, 4.0, 0.0], [0.0, 0.0, 6.0]])


def test_normalize_descriptor():
    histogram = np.zeros(DESCRIPTOR_LENGTH)
    histogram[0] = 10.0
    histogram[1] = 1.0
    descriptor = normalize_descriptor(histogram)
    assert descriptor[0] == pytest.approx(1.0)
    assert descriptor[1] == pytest.approx(0.5)
    assert descriptor[2] == 0.0

    assert not normalize_descriptor(np.zeros(DESCRIPTOR_LENGTH)).any()


def test_max_size_skips_large_octaves(canvas):
    space = build_scale_space(canvas)
    # The first octave is the 2x upscaled image
    assert space.octaves[0].shape == (256, 256)
    assert any(scale < space.steps for _, _, scale in find_extrema(space))

    capped = detect_features(space, max_size=128)
    assert len(capped) > 0
    assert all(feature.octave >= 1 for feature in capped)
    assert all(scale >= space.steps for _, _, scale in find_extrema(space, max_size=128))
