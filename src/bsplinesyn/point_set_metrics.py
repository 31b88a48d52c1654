"""Similarity metrics between two point sets mapped into the middle space.

Point-set metrics complement the image metrics of image_metrics.py. They
see the landmarks of both sides after both have been carried into the
middle space, and return a sparse descent direction that
UpdateFieldGenerator splats onto the grid next to the dense image terms.

Contract:
    ``evaluate(points_a, points_b) -> (value, gradient)``

    - ``points_a`` and ``points_b`` have shape (N, D), physical (x, y, z).
    - ``value`` is a cost: lower means better aligned.
    - ``gradient`` has shape (N, D) and holds, per point of ``points_a``,
      the displacement of the sampling points of side ``a`` at that point
      that decreases the cost. Moving the sampling points by ``g`` moves the
      landmark itself by ``-g`` in the middle space.
"""

import logging

import numpy as np
from numpy.typing import NDArray

from bsplinesyn.bsplinesyn_base import BSplineSyNBase
from bsplinesyn.registration_exceptions import DomainMismatchError


class PointSetMetricBase(BSplineSyNBase):
    """Interface of the point-set metrics used by UpdateFieldGenerator."""

    def __init__(self, log_level: int | str = logging.INFO):
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

    def evaluate(
        self, points_a: NDArray, points_b: NDArray
    ) -> tuple[float, NDArray[np.float64]]:
        """Return the cost and the descent direction at ``points_a``."""
        raise NotImplementedError("This method should be implemented by the subclass.")


class EuclideanDistancePointSetMetric(PointSetMetricBase):
    """Mean squared distance between corresponding landmarks.

    Row ``i`` of one set corresponds to row ``i`` of the other.

    value = mean of |a_i - b_i|^2
    gradient = a_i - b_i
    """

    def evaluate(self, points_a, points_b):
        points_a = np.asarray(points_a, dtype=np.float64)
        points_b = np.asarray(points_b, dtype=np.float64)
        if points_a.shape != points_b.shape:
            raise DomainMismatchError(
                f"Point sets of shape {points_a.shape} and {points_b.shape} "
                "do not correspond"
            )
        if len(points_a) == 0:
            return 0.0, np.zeros_like(points_a)

        difference = points_a - points_b
        value = float(np.mean(np.sum(difference**2, axis=-1)))
        return value, difference
