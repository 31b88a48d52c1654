"""Similarity metrics evaluated between two images sampled on a common grid.

The registration core only relies on the ``evaluate`` contract of
ImageMetricBase; the concrete metrics here are reference implementations.

Contract:
    ``evaluate(image_a, image_b, grid, mask=None) -> (value, gradient)``

    - ``value`` is a cost: lower means better aligned.
    - ``gradient`` has shape (*grid.shape, D) and holds, per voxel, the
      physical displacement of the sampling points of ``image_a`` that
      decreases the cost (a descent direction, not the raw derivative).
    - Voxels where ``mask`` is zero contribute neither to the value nor to
      the gradient.
"""

import logging

import numpy as np
from numpy.typing import NDArray
from scipy import ndimage

from bsplinesyn.bsplinesyn_base import BSplineSyNBase
from bsplinesyn.image_grid import ImageGrid


class ImageMetricBase(BSplineSyNBase):
    """Interface of the similarity metrics used by UpdateFieldGenerator."""

    def __init__(self, log_level: int | str = logging.INFO):
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

    def evaluate(
        self,
        image_a: NDArray,
        image_b: NDArray,
        grid: ImageGrid,
        mask: NDArray | None = None,
    ) -> tuple[float, NDArray[np.float64]]:
        """Return the cost and the descent direction for ``image_a``."""
        raise NotImplementedError("This method should be implemented by the subclass.")

    @staticmethod
    def _prepare_mask(grid: ImageGrid, mask: NDArray | None) -> NDArray[np.float64]:
        if mask is None:
            return np.ones(grid.shape, dtype=np.float64)
        mask = np.asarray(mask, dtype=np.float64)
        grid.check_array(mask)
        return mask


class MeanSquaresImageMetric(ImageMetricBase):
    """Mean squared intensity difference.

    value = mean over the mask of (a - b)^2
    gradient = -(a - b) * grad(a)
    """

    def evaluate(self, image_a, image_b, grid, mask=None):
        mask = self._prepare_mask(grid, mask)
        n_valid = float(mask.sum())
        if n_valid <= 0:
            return 0.0, np.zeros((*grid.shape, grid.dimension), dtype=np.float64)

        difference = (np.asarray(image_a, dtype=np.float64) - image_b) * mask
        value = float(np.sum(difference**2) / n_valid)
        gradient = -difference[..., np.newaxis] * grid.gradient(image_a)
        return value, gradient


class NeighborhoodCorrelationImageMetric(ImageMetricBase):
    """Local normalized cross correlation over a box neighborhood.

    value = -mean over the mask of the local squared correlation coefficient,
    so perfectly correlated images reach -1.

    Attributes:
        radius (int): Neighborhood radius in voxels (box of 2 * radius + 1).
        epsilon (float): Guard against flat neighborhoods.
    """

    def __init__(
        self,
        radius: int = 2,
        epsilon: float = 1e-5,
        log_level: int | str = logging.INFO,
    ):
        super().__init__(log_level=log_level)
        if radius < 1:
            raise ValueError(f"Invalid neighborhood radius: {radius}")
        self.radius = radius
        self.epsilon = epsilon

    def evaluate(self, image_a, image_b, grid, mask=None):
        mask = self._prepare_mask(grid, mask)
        n_valid = float(mask.sum())
        if n_valid <= 0:
            return 0.0, np.zeros((*grid.shape, grid.dimension), dtype=np.float64)

        a = np.asarray(image_a, dtype=np.float64)
        b = np.asarray(image_b, dtype=np.float64)
        size = 2 * self.radius + 1
        n_neighbors = float(size**grid.dimension)

        mean_a = ndimage.uniform_filter(a, size=size, mode="nearest")
        mean_b = ndimage.uniform_filter(b, size=size, mode="nearest")
        s_ab = n_neighbors * (
            ndimage.uniform_filter(a * b, size=size, mode="nearest") - mean_a * mean_b
        )
        s_aa = n_neighbors * (
            ndimage.uniform_filter(a * a, size=size, mode="nearest") - mean_a**2
        )
        s_bb = n_neighbors * (
            ndimage.uniform_filter(b * b, size=size, mode="nearest") - mean_b**2
        )

        denominator = s_aa * s_bb
        valid = (denominator > self.epsilon) & (mask > 0)
        safe_denominator = np.where(valid, denominator, 1.0)
        safe_s_aa = np.where(valid, s_aa, 1.0)

        correlation = np.where(valid, s_ab**2 / safe_denominator, 0.0)
        value = -float(np.sum(correlation * mask) / n_valid)

        centered_a = a - mean_a
        centered_b = b - mean_b
        factor = np.where(
            valid,
            2.0 * s_ab / safe_denominator * (centered_b - s_ab / safe_s_aa * centered_a),
            0.0,
        )
        gradient = (factor * mask)[..., np.newaxis] * grid.gradient(a)
        return value, gradient
