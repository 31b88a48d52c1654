#!/usr/bin/env python
"""
Tests for the similarity metrics.
"""

import numpy as np
import pytest

from bsplinesyn.image_metrics import (
    ImageMetricBase,
    MeanSquaresImageMetric,
    NeighborhoodCorrelationImageMetric,
)
from bsplinesyn.registration_exceptions import DomainMismatchError


@pytest.fixture
def ramp(grid_2d):
    return np.tile(np.arange(32, dtype=np.float64), (32, 1))


class TestMeanSquaresImageMetric:
    """Test suite for MeanSquaresImageMetric."""

    def test_identical_images(self, grid_2d, blob_factory):
        image = blob_factory((32, 32), (16.0, 16.0), 4.0)
        value, gradient = MeanSquaresImageMetric().evaluate(image, image, grid_2d)
        assert value == 0.0
        assert gradient.shape == (32, 32, 2)
        assert not np.any(gradient)

    def test_gradient_is_a_descent_direction(self, grid_2d, ramp):
        """With b(x) = a(x + 1) the sampling points of a should move by +x."""
        metric = MeanSquaresImageMetric()
        value, gradient = metric.evaluate(ramp, ramp + 1.0, grid_2d)
        assert np.isclose(value, 1.0)
        assert np.allclose(gradient[..., 0], 1.0)
        assert np.allclose(gradient[..., 1], 0.0)
        print("\n✓ Mean squares gradient points toward the match")

    def test_mask_restricts_value_and_gradient(self, grid_2d, ramp):
        mask = np.zeros(grid_2d.shape)
        mask[:, :16] = 1.0
        b = ramp.copy()
        b[:, :16] += 2.0
        b[:, 16:] += 10.0
        value, gradient = MeanSquaresImageMetric().evaluate(ramp, b, grid_2d, mask)
        assert np.isclose(value, 4.0)
        assert not np.any(gradient[:, 16:])

    def test_empty_mask(self, grid_2d, ramp):
        value, gradient = MeanSquaresImageMetric().evaluate(
            ramp, ramp + 1.0, grid_2d, np.zeros(grid_2d.shape)
        )
        assert value == 0.0
        assert not np.any(gradient)

    def test_mask_shape_is_checked(self, grid_2d, ramp):
        with pytest.raises(DomainMismatchError):
            MeanSquaresImageMetric().evaluate(ramp, ramp, grid_2d, np.ones((4, 4)))


class TestNeighborhoodCorrelationImageMetric:
    """Test suite for NeighborhoodCorrelationImageMetric."""

    def test_identical_images_are_perfectly_correlated(self, grid_2d):
        rng = np.random.default_rng(3)
        image = rng.random(grid_2d.shape)
        value, gradient = NeighborhoodCorrelationImageMetric().evaluate(
            image, image, grid_2d
        )
        assert np.isclose(value, -1.0)
        assert np.allclose(gradient, 0.0)
        print(f"\n✓ Correlation of identical images: {value:.4f}")

    def test_invariant_to_linear_intensity_change(self, grid_2d):
        rng = np.random.default_rng(4)
        image = rng.random(grid_2d.shape)
        value, _ = NeighborhoodCorrelationImageMetric(radius=1).evaluate(
            image, 3.0 * image + 7.0, grid_2d
        )
        assert np.isclose(value, -1.0)

    def test_misaligned_images_correlate_less(self, grid_2d, blob_factory):
        a = blob_factory((32, 32), (16.0, 14.0), 3.0)
        b = blob_factory((32, 32), (16.0, 18.0), 3.0)
        metric = NeighborhoodCorrelationImageMetric()
        aligned, _ = metric.evaluate(a, a, grid_2d)
        shifted, gradient = metric.evaluate(a, b, grid_2d)
        assert shifted > aligned
        assert np.any(gradient)

    def test_flat_images_do_not_divide_by_zero(self, grid_2d):
        flat = np.ones(grid_2d.shape)
        value, gradient = NeighborhoodCorrelationImageMetric().evaluate(
            flat, flat, grid_2d
        )
        assert value == 0.0
        assert np.all(np.isfinite(gradient))

    def test_invalid_radius(self):
        with pytest.raises(ValueError):
            NeighborhoodCorrelationImageMetric(radius=0)


class TestImageMetricBase:
    def test_evaluate_is_abstract(self, grid_2d):
        with pytest.raises(NotImplementedError):
            ImageMetricBase().evaluate(np.zeros((32, 32)), np.zeros((32, 32)), grid_2d)
