#!/usr/bin/env python3
"""
Unit tests for magnitude homogeneity correction.
"""

import logging

import numpy as np
import pytest

from mriphase.config import HomogeneityConfig
from mriphase.errors import ConvergenceError
from mriphase.homogeneity import (
    boxsegment,
    getsigma,
    makehomogeneous,
    makehomogeneous_inplace,
    threshold,
)

FAST = dict(nboxes=5)


def _make_biased_object(shape=(40, 40, 40), seed=0):
    """Uniform ball multiplied by a linear bias field, in low-level noise."""
    rng = np.random.RandomState(seed)
    grids = np.indices(shape).astype(np.float64)
    center = (np.array(shape) - 1) / 2
    radius = np.sqrt(sum((g - c) ** 2 for g, c in zip(grids, center)))
    ball = radius <= 14
    bias = 1 + 0.5 * grids[0] / shape[0]
    image = rng.rand(*shape)
    image[ball] = 100 * bias[ball]
    return image, radius


class TestHelpers:
    """Tests for sigma splitting and segmentation helpers."""

    def test_getsigma(self):
        sigma, sigma1, sigma2 = getsigma([1, 1, 2], 7)
        np.testing.assert_allclose(sigma, [7, 7, 3.5])
        np.testing.assert_allclose(sigma1 ** 2 + sigma2 ** 2, sigma ** 2)
        np.testing.assert_allclose(sigma2, 0.7 * sigma)

    def test_getsigma_per_axis(self):
        sigma, _, _ = getsigma([1, 1, 2], (7, 7, 5))
        np.testing.assert_allclose(sigma, [7, 7, 2.5])

    def test_threshold_selects_bright_tissue(self):
        image = np.concatenate([np.full(50, 1.0), np.full(50, 2.0)]).reshape(10, 10, 1)
        mask = np.ones(image.shape, dtype=bool)
        wm = threshold(image, mask)
        np.testing.assert_array_equal(wm, image == 2.0)

    def test_threshold_empty_mask(self):
        image = np.ones((4, 4, 4))
        assert not np.any(threshold(image, np.zeros(image.shape, dtype=bool)))

    def test_boxsegment_within_mask(self):
        rng = np.random.RandomState(0)
        image = 1 + 0.1 * rng.rand(20, 20, 20)
        mask = np.zeros(image.shape, dtype=bool)
        mask[5:15, 5:15, 5:15] = True
        segmented = boxsegment(image, mask, nboxes=4)
        assert not np.any(segmented[~mask])
        assert np.any(segmented)


class TestMakeHomogeneous:
    """Tests for makehomogeneous()."""

    def test_reduces_bias(self):
        image, radius = _make_biased_object()
        corrected = makehomogeneous(image, config=HomogeneityConfig(**FAST))
        inner = radius <= 10

        def cv(values):
            return values.std() / values.mean()

        assert cv(corrected[inner]) < 0.6 * cv(image[inner])

    def test_input_not_modified(self):
        image, _ = _make_biased_object()
        original = image.copy()
        makehomogeneous(image, config=HomogeneityConfig(**FAST))
        np.testing.assert_array_equal(image, original)

    def test_inplace_float(self):
        image, _ = _make_biased_object()
        result = makehomogeneous_inplace(image, config=HomogeneityConfig(**FAST))
        assert result is image

    def test_4d_corrects_all_echoes(self):
        image, radius = _make_biased_object()
        echoes = np.stack([image, 0.5 * image], axis=-1)
        corrected = makehomogeneous(echoes, config=HomogeneityConfig(**FAST))
        assert corrected.shape == echoes.shape
        inner = radius <= 10
        np.testing.assert_allclose(corrected[..., 1][inner], 0.5 * corrected[..., 0][inner])

    def test_integer_output(self):
        image, _ = _make_biased_object()
        corrected = makehomogeneous(image.astype(np.uint16), config=HomogeneityConfig(**FAST))
        assert corrected.dtype == np.uint16

    def test_datatype_conversion(self):
        image, _ = _make_biased_object()
        corrected = makehomogeneous(image.astype(np.uint16), config=HomogeneityConfig(**FAST),
                                    datatype=np.float32)
        assert corrected.dtype == np.float32

    def test_return_info(self):
        image, _ = _make_biased_object()
        config = HomogeneityConfig(max_iterations=4, **FAST)
        _, info = makehomogeneous(image, config=config, return_info=True)
        assert 1 <= info['iterations'] <= 4
        assert isinstance(info['converged'], bool)

    def test_iteration_cap_warns(self, caplog):
        image, _ = _make_biased_object()
        config = HomogeneityConfig(max_iterations=1, **FAST)
        with caplog.at_level(logging.WARNING, logger='mriphase.homogeneity'):
            _, info = makehomogeneous(image, config=config, return_info=True)
        assert not info['converged']
        assert 'did not converge' in caplog.text

    def test_iteration_cap_strict(self):
        image, _ = _make_biased_object()
        config = HomogeneityConfig(max_iterations=1, strict=True, **FAST)
        with pytest.raises(ConvergenceError):
            makehomogeneous(image, config=config)
