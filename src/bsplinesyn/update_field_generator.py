"""Symmetric update-field computation for one SyN iteration.

Neither image is privileged: the fixed images are pulled into the middle
space through the fixed half transform, the moving images through the moving
half transform, and every metric is evaluated once from each side. The raw
update returned is the symmetric combination of both descent directions;
TransformIntegrator applies it with a positive sign to the fixed half and a
negative sign to the moving half.

Landmark point sets take the opposite route: their points are carried into
the middle space through the inverse transforms, and the sparse point-set
gradients are splatted onto the grid before they join the image terms.
"""

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from bsplinesyn.bsplinesyn_base import BSplineSyNBase
from bsplinesyn.displacement_field import DisplacementField
from bsplinesyn.image_grid import ImageGrid
from bsplinesyn.image_metrics import ImageMetricBase, MeanSquaresImageMetric
from bsplinesyn.point_set_metrics import (
    EuclideanDistancePointSetMetric,
    PointSetMetricBase,
)
from bsplinesyn.registration_exceptions import DomainMismatchError


@dataclass
class GriddedImage:
    """Pixel array of an image together with its geometry."""

    array: NDArray
    grid: ImageGrid

    def __post_init__(self) -> None:
        self.array = np.asarray(self.array, dtype=np.float64)
        self.grid.check_array(self.array)


class UpdateFieldGenerator(BSplineSyNBase):
    """Compute the raw symmetric update field and the metric value.

    Attributes:
        metrics (list[ImageMetricBase]): One metric per image pair, or a
            single metric shared by all pairs.
        metric_weights (list[float] | None): Weight per metric. None gives
            every image pair the same weight (1 / number of pairs).
        point_set_metrics (list[PointSetMetricBase]): One metric per
            point-set pair, or a single metric shared by all pairs.
        point_set_weights (list[float] | None): Weight per point-set metric,
            normalized together with the image metric weights. None gives
            every point-set pair a weight of 1.
        initial_fixed_field (DisplacementField | None): Transform applied to
            fixed images after the fixed half transform.
        initial_moving_field (DisplacementField | None): Transform applied to
            moving images after the moving half transform.

    Example:
        >>> generator = UpdateFieldGenerator([MeanSquaresImageMetric()])
        >>> update, value = generator.compute_update_field(
        ...     [fixed], fixed_to_middle, [moving], moving_to_middle
        ... )
    """

    def __init__(
        self,
        metrics: list[ImageMetricBase] | None = None,
        metric_weights: list[float] | None = None,
        log_level: int | str = logging.INFO,
    ):
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

        self.metrics = None
        self.metric_weights = None
        self.set_metrics(metrics or [MeanSquaresImageMetric(log_level=log_level)],
                         metric_weights)

        self.point_set_metrics = [EuclideanDistancePointSetMetric(log_level=log_level)]
        self.point_set_weights = None

        self.initial_fixed_field = None
        self.initial_moving_field = None

    def set_metrics(
        self,
        metrics: list[ImageMetricBase],
        metric_weights: list[float] | None = None,
    ) -> None:
        """Set the metrics and, optionally, their weights."""
        if len(metrics) == 0:
            self.log_error("At least one metric is required")
            raise ValueError("At least one metric is required")
        if metric_weights is not None:
            if len(metric_weights) != len(metrics):
                self.log_error(
                    "Got %d metric weights for %d metrics",
                    len(metric_weights),
                    len(metrics),
                )
                raise ValueError(
                    f"Got {len(metric_weights)} metric weights for "
                    f"{len(metrics)} metrics"
                )
            if any(w < 0 for w in metric_weights) or sum(metric_weights) <= 0:
                raise ValueError(f"Invalid metric weights: {metric_weights}")
        self.metrics = list(metrics)
        self.metric_weights = None if metric_weights is None else list(metric_weights)

    def set_point_set_metrics(
        self,
        metrics: list[PointSetMetricBase],
        weights: list[float] | None = None,
    ) -> None:
        """Set the point-set metrics and, optionally, their weights."""
        if len(metrics) == 0:
            self.log_error("At least one point-set metric is required")
            raise ValueError("At least one point-set metric is required")
        if weights is not None:
            if len(weights) != len(metrics):
                self.log_error(
                    "Got %d point-set weights for %d metrics", len(weights), len(metrics)
                )
                raise ValueError(
                    f"Got {len(weights)} point-set weights for {len(metrics)} metrics"
                )
            if any(w < 0 for w in weights):
                raise ValueError(f"Invalid point-set weights: {weights}")
        self.point_set_metrics = list(metrics)
        self.point_set_weights = None if weights is None else list(weights)

    def set_initial_fields(
        self,
        initial_fixed_field: DisplacementField | None = None,
        initial_moving_field: DisplacementField | None = None,
    ) -> None:
        """Set the transforms applied before the half transforms."""
        self.initial_fixed_field = initial_fixed_field
        self.initial_moving_field = initial_moving_field

    def _weights_for(
        self, n_pairs: int, n_point_sets: int = 0
    ) -> tuple[list[float], list[float]]:
        """Normalized weights of the image pairs and the point-set pairs."""
        if self.metric_weights is not None:
            weights = self.metric_weights
            if len(self.metrics) == 1 and n_pairs > 1:
                weights = weights * n_pairs
        else:
            weights = [1.0] * n_pairs
        if self.point_set_weights is not None:
            point_weights = self.point_set_weights
            if len(self.point_set_metrics) == 1 and n_point_sets > 1:
                point_weights = point_weights * n_point_sets
        else:
            point_weights = [1.0] * n_point_sets
        total = float(sum(weights) + sum(point_weights))
        return [w / total for w in weights], [w / total for w in point_weights]

    def _metric_for(self, pair_index: int) -> ImageMetricBase:
        if len(self.metrics) == 1:
            return self.metrics[0]
        return self.metrics[pair_index]

    def _point_set_metric_for(self, pair_index: int) -> PointSetMetricBase:
        if len(self.point_set_metrics) == 1:
            return self.point_set_metrics[0]
        return self.point_set_metrics[pair_index]

    def map_points_to_middle(
        self,
        points: NDArray,
        half_transform: DisplacementField,
        initial_field: DisplacementField | None = None,
    ) -> NDArray:
        """Carry physical points of one side into the middle space.

        This inverts ``_source_points``: the initial field's cached inverse
        is applied first, then the half transform's cached inverse.
        """
        points = np.asarray(points, dtype=np.float64)
        if initial_field is not None:
            points = initial_field.inverse_transform_points(points)
        return half_transform.inverse_transform_points(points)

    def _source_points(
        self,
        half_transform: DisplacementField,
        initial_field: DisplacementField | None,
    ) -> NDArray:
        """Physical points sampled for each middle-space voxel."""
        points = half_transform.points + half_transform.field
        if initial_field is not None:
            points = initial_field.transform_points(points)
        return points

    def warp_image(
        self,
        image: GriddedImage,
        half_transform: DisplacementField,
        initial_field: DisplacementField | None = None,
    ) -> tuple[NDArray, NDArray]:
        """Resample an image into the middle space.

        Returns:
            (warped array on the half transform's grid, boolean mask of
            voxels whose sample fell inside the image domain)
        """
        points = self._source_points(half_transform, initial_field)
        continuous_index = image.grid.physical_to_continuous_index(points)
        inside = image.grid.inside_mask(continuous_index)
        warped = image.grid.sample_at_index(image.array, continuous_index, order=1)
        return warped, inside

    def compute_middle_mask(
        self,
        mask: GriddedImage | None,
        half_transform: DisplacementField,
        initial_field: DisplacementField | None = None,
        binary: bool = True,
    ) -> NDArray | None:
        """Warp a mask or weight image into the middle space.

        Voxels whose sample falls outside the mask domain get 0. With
        ``binary`` the result is thresholded at 0.5, otherwise the
        interpolated weights are kept.
        """
        if mask is None:
            return None
        warped, inside = self.warp_image(mask, half_transform, initial_field)
        if binary:
            return ((warped > 0.5) & inside).astype(np.float64)
        return np.where(inside, np.maximum(warped, 0.0), 0.0)

    def compute_update_field(
        self,
        fixed_images: list[GriddedImage],
        fixed_to_middle: DisplacementField,
        moving_images: list[GriddedImage],
        moving_to_middle: DisplacementField,
        fixed_mask: GriddedImage | None = None,
        moving_mask: GriddedImage | None = None,
        fixed_point_sets: list[NDArray] | None = None,
        moving_point_sets: list[NDArray] | None = None,
    ) -> tuple[NDArray[np.float64], float]:
        """Compute the raw (unsmoothed) symmetric update and the metric value.

        Args:
            fixed_images: Fixed images of every pair, smoothed for the level.
            fixed_to_middle: Fixed half transform (owned by the driver).
            moving_images: Moving images of every pair.
            moving_to_middle: Moving half transform (owned by the driver).
            fixed_mask: Optional binary mask in fixed space.
            moving_mask: Optional binary mask in moving space.
            fixed_point_sets: Optional landmarks in fixed space, one (N, D)
                array of physical points per point-set pair.
            moving_point_sets: Corresponding landmarks in moving space.

        Returns:
            (update field of shape (*grid.shape, D), weighted metric cost)
        """
        if len(fixed_images) != len(moving_images):
            raise DomainMismatchError(
                f"Got {len(fixed_images)} fixed and {len(moving_images)} moving images"
            )
        if len(self.metrics) not in (1, len(fixed_images)):
            raise DomainMismatchError(
                f"Got {len(self.metrics)} metrics for {len(fixed_images)} image pairs"
            )
        fixed_point_sets = list(fixed_point_sets or [])
        moving_point_sets = list(moving_point_sets or [])
        if len(fixed_point_sets) != len(moving_point_sets):
            raise DomainMismatchError(
                f"Got {len(fixed_point_sets)} fixed and {len(moving_point_sets)} "
                "moving point sets"
            )
        if fixed_point_sets and len(self.point_set_metrics) not in (
            1,
            len(fixed_point_sets),
        ):
            raise DomainMismatchError(
                f"Got {len(self.point_set_metrics)} point-set metrics for "
                f"{len(fixed_point_sets)} point-set pairs"
            )
        grid = fixed_to_middle.grid
        if not grid.is_same_grid(moving_to_middle.grid):
            raise DomainMismatchError("Half transforms are not on the same grid")

        valid = np.ones(grid.shape, dtype=bool)
        fixed_middle = []
        moving_middle = []
        for fixed_image, moving_image in zip(fixed_images, moving_images):
            warped, inside = self.warp_image(
                fixed_image, fixed_to_middle, self.initial_fixed_field
            )
            fixed_middle.append(warped)
            valid &= inside
            warped, inside = self.warp_image(
                moving_image, moving_to_middle, self.initial_moving_field
            )
            moving_middle.append(warped)
            valid &= inside

        mask = valid.astype(np.float64)
        for side_mask, half_transform, initial_field in (
            (fixed_mask, fixed_to_middle, self.initial_fixed_field),
            (moving_mask, moving_to_middle, self.initial_moving_field),
        ):
            middle_mask = self.compute_middle_mask(
                side_mask, half_transform, initial_field
            )
            if middle_mask is not None:
                mask *= middle_mask

        weights, point_weights = self._weights_for(
            len(fixed_images), len(fixed_point_sets)
        )
        update = np.zeros((*grid.shape, grid.dimension), dtype=np.float64)
        value = 0.0
        for index, weight in enumerate(weights):
            metric = self._metric_for(index)
            fixed_value, fixed_gradient = metric.evaluate(
                fixed_middle[index], moving_middle[index], grid, mask
            )
            moving_value, moving_gradient = metric.evaluate(
                moving_middle[index], fixed_middle[index], grid, mask
            )
            value += weight * 0.5 * (fixed_value + moving_value)
            update += weight * 0.5 * (fixed_gradient - moving_gradient)

        for index, weight in enumerate(point_weights):
            metric = self._point_set_metric_for(index)
            fixed_points = self.map_points_to_middle(
                fixed_point_sets[index], fixed_to_middle, self.initial_fixed_field
            )
            moving_points = self.map_points_to_middle(
                moving_point_sets[index], moving_to_middle, self.initial_moving_field
            )
            fixed_value, fixed_gradient = metric.evaluate(fixed_points, moving_points)
            moving_value, moving_gradient = metric.evaluate(moving_points, fixed_points)
            fixed_update, n_fixed_outside = grid.splat_points(fixed_points, fixed_gradient)
            moving_update, n_moving_outside = grid.splat_points(
                moving_points, moving_gradient
            )
            if n_fixed_outside or n_moving_outside:
                self.log_debug(
                    "Point set %d: %d landmarks outside the middle grid",
                    index,
                    n_fixed_outside + n_moving_outside,
                )
            value += weight * 0.5 * (fixed_value + moving_value)
            update += weight * 0.5 * (fixed_update - moving_update)

        self.log_debug("Metric value: %f", value)
        return update, value
