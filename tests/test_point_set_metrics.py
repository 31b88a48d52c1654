#!/usr/bin/env python
"""
Tests for the landmark point-set metrics.
"""

import numpy as np
import pytest

from bsplinesyn.point_set_metrics import (
    EuclideanDistancePointSetMetric,
    PointSetMetricBase,
)
from bsplinesyn.registration_exceptions import DomainMismatchError


class TestEuclideanDistancePointSetMetric:
    """Test suite for EuclideanDistancePointSetMetric."""

    def test_value_and_gradient(self):
        points_a = np.array([[0.0, 0.0], [1.0, 1.0]])
        points_b = np.array([[3.0, 4.0], [1.0, 1.0]])
        value, gradient = EuclideanDistancePointSetMetric().evaluate(points_a, points_b)

        assert np.isclose(value, 12.5)
        assert gradient.shape == (2, 2)
        # The landmark itself moves by -gradient, toward b
        assert np.allclose(gradient, [[-3.0, -4.0], [0.0, 0.0]])
        print(f"\n✓ Mean squared landmark distance: {value}")

    def test_empty_point_sets(self):
        value, gradient = EuclideanDistancePointSetMetric().evaluate(
            np.zeros((0, 3)), np.zeros((0, 3))
        )
        assert value == 0.0
        assert gradient.shape == (0, 3)

    def test_point_sets_must_correspond(self):
        with pytest.raises(DomainMismatchError):
            EuclideanDistancePointSetMetric().evaluate(np.zeros((2, 2)), np.zeros((3, 2)))

    def test_base_class_is_abstract(self):
        with pytest.raises(NotImplementedError):
            PointSetMetricBase().evaluate(np.zeros((1, 2)), np.zeros((1, 2)))
