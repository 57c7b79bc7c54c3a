#!/usr/bin/env python3
"""
Unit tests for mask generation.

Tests:
- Noise estimation and quantiles
- robustmask on a half-signal, half-noise volume
- Hole filling and connected components
- Brain extraction and phase based masks
"""

import numpy as np
import pytest

from mriphase.config import MaskConfig
from mriphase.errors import DegenerateInputError
from mriphase.masking import (
    brain_mask,
    estimatenoise,
    estimatequantile,
    fill_holes,
    get_largest_connected_region,
    mask_from_voxelquality,
    phase_based_mask,
    robustmask,
    robustmask_inplace,
    sphere,
)


def _make_half_signal(shape=(60, 40, 20), seed=0):
    """Signal in the lower half along x, pure noise in the upper half."""
    rng = np.random.RandomState(seed)
    half = shape[0] // 2
    image = np.zeros(shape)
    image[:half] = 1 + 0.5 * rng.rand(half, *shape[1:])
    image[half:] = 0.3 * rng.rand(shape[0] - half, *shape[1:])
    signal = np.zeros(shape, dtype=bool)
    signal[:half] = True
    return image, signal


def _make_ball(shape, radius):
    center = [(n - 1) / 2 for n in shape]
    grids = np.meshgrid(*[np.arange(n) for n in shape], indexing='ij')
    return np.sqrt(sum((g - c) ** 2 for g, c in zip(grids, center))) <= radius


class TestNoiseEstimation:
    """Tests for estimatenoise() and estimatequantile()."""

    def test_quantile(self):
        assert estimatequantile(np.arange(1, 1001), 0.8) == pytest.approx(800, abs=1)

    def test_quantile_subsampled(self):
        values = np.arange(1, 1000001, dtype=np.float64)
        assert estimatequantile(values, 0.5) == pytest.approx(500000, rel=0.01)

    def test_quantile_ignores_nan(self):
        values = np.array([1.0, 2.0, np.nan, 3.0])
        assert estimatequantile(values, 0.5) == pytest.approx(2.0)

    def test_noise_from_darkest_corner(self):
        image, _ = _make_half_signal()
        mean, sigma = estimatenoise(image)
        assert mean == pytest.approx(0.15, abs=0.03)
        assert sigma == pytest.approx(0.3 / np.sqrt(12), abs=0.02)

    def test_zero_image_raises(self):
        with pytest.raises(DegenerateInputError):
            estimatenoise(np.zeros((10, 10, 10)))

    def test_empty_image_raises(self):
        with pytest.raises(DegenerateInputError):
            estimatenoise(np.zeros((0, 10, 10)))

    def test_all_nan_raises(self):
        with pytest.raises(DegenerateInputError):
            estimatenoise(np.full((10, 10, 10), np.nan))


class TestRobustMask:
    """Tests for robustmask()."""

    def test_separates_signal_from_noise(self):
        image, signal = _make_half_signal()
        mask = robustmask(image)
        assert mask.dtype == bool
        assert np.mean(~mask[~signal]) >= 0.9
        assert np.mean(mask[signal]) >= 0.9

    def test_zero_image_raises(self):
        with pytest.raises(DegenerateInputError):
            robustmask(np.zeros((10, 10, 10)))

    def test_constant_image_is_full(self):
        mask = robustmask(np.full((10, 10, 10), 2.0))
        assert np.all(mask)

    def test_threshold_monotonic(self):
        image = np.exp(-((np.indices((30, 30, 30)) - 14.5) ** 2).sum(axis=0) / 100)
        masks = [robustmask(image, threshold=t) for t in (0.2, 0.4, 0.6)]
        assert masks[0].sum() >= masks[1].sum() >= masks[2].sum()
        assert np.all(masks[0] | ~masks[1])
        assert np.all(masks[1] | ~masks[2])

    def test_threshold_from_config(self):
        image, _ = _make_half_signal()
        everything = robustmask(image, config=MaskConfig(threshold=-1.0))
        assert np.all(everything)

    def test_inplace_sets_nan(self):
        image, signal = _make_half_signal()
        result = robustmask_inplace(image)
        assert result is image
        assert np.mean(np.isnan(image[~signal])) >= 0.9
        assert not np.any(np.isnan(image[signal][:100]))

    def test_from_voxelquality(self):
        qmap, signal = _make_half_signal()
        qmap = qmap / qmap.max()
        mask = mask_from_voxelquality(qmap)
        assert np.mean(mask[signal]) >= 0.9


class TestMorphology:
    """Tests for hole filling and connected components."""

    def test_fill_small_hole(self):
        mask = np.zeros((15, 15, 15), dtype=bool)
        mask[3:12, 3:12, 3:12] = True
        mask[6:9, 6:9, 6:9] = False
        filled = fill_holes(mask, max_hole_size=27)
        assert np.all(filled[3:12, 3:12, 3:12])
        assert not np.any(filled[0])

    def test_large_hole_kept(self):
        mask = np.zeros((15, 15, 15), dtype=bool)
        mask[3:12, 3:12, 3:12] = True
        mask[6:9, 6:9, 6:9] = False
        filled = fill_holes(mask, max_hole_size=26)
        assert not np.any(filled[6:9, 6:9, 6:9])

    def test_largest_region(self):
        mask = np.zeros((20, 20, 20), dtype=bool)
        mask[1:4, 1:4, 1:4] = True
        mask[10:12, 10:12, 10:12] = True
        largest = get_largest_connected_region(mask)
        assert largest.sum() == 27
        assert not np.any(largest[10:12, 10:12, 10:12])

    def test_largest_region_empty(self):
        assert not np.any(get_largest_connected_region(np.zeros((5, 5, 5), dtype=bool)))

    def test_sphere(self):
        ball = sphere(2)
        assert ball.shape == (5, 5, 5)
        assert ball[2, 2, 2]
        assert not ball[0, 2, 2]
        assert ball[1, 2, 2]


class TestBrainMask:
    """Tests for brain_mask()."""

    def test_removes_skull(self):
        shape = (48, 48, 48)
        brain = _make_ball(shape, 12)
        skull = _make_ball(shape, 21) & ~_make_ball(shape, 18)
        result = brain_mask(brain | skull)

        assert not np.any(result[skull])
        assert np.mean(result[brain]) >= 0.85


class TestPhaseBasedMask:
    """Tests for phase_based_mask()."""

    def test_smooth_phase_is_inside(self):
        phase = np.full((30, 30, 30), 1.0)
        assert np.all(phase_based_mask(phase))

    def test_random_phase_is_outside(self):
        rng = np.random.RandomState(0)
        phase = rng.uniform(-np.pi, np.pi, size=(30, 30, 30))
        mask = phase_based_mask(phase)
        assert not mask[15, 15, 15]
        assert np.mean(mask[8:22, 8:22, 8:22]) < 0.1

    def test_morphology(self):
        rng = np.random.RandomState(0)
        phase = rng.uniform(-np.pi, np.pi, size=(30, 30, 30))
        phase[:15] = 1.0
        mask = phase_based_mask(phase, morphology=True)
        assert mask.dtype == bool
        assert mask.shape == phase.shape
        assert mask[5, 15, 15]
