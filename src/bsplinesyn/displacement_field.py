"""Dense displacement fields with an explicitly maintained inverse.

A DisplacementField stores one physical displacement vector per voxel of an
ImageGrid, i.e. the map ``x -> x + field(x)``, together with a cached
approximation of its inverse. The cache is not kept valid by construction:
whoever changes ``field`` is responsible for refreshing ``inverse_field``
(see TransformIntegrator), and the drift between the two is measured with
``inverse_consistency_error``.

Sampling outside the grid clamps to the nearest boundary voxel; every call
that samples returns how many points were clamped so the caller can count
them.
"""

import numpy as np
from numpy.typing import NDArray

from bsplinesyn.image_grid import ImageGrid


class DisplacementField:
    """Displacement field on a regular grid plus its cached inverse.

    Attributes:
        grid (ImageGrid): Domain of both the field and its inverse.
        field (ndarray): Shape (*grid.shape, D), physical displacement vectors.
        inverse_field (ndarray): Same shape, approximation of the inverse map.
    """

    def __init__(
        self,
        grid: ImageGrid,
        field: NDArray | None = None,
        inverse_field: NDArray | None = None,
    ):
        self.grid = grid
        dim = grid.dimension
        if field is None:
            field = np.zeros((*grid.shape, dim), dtype=np.float64)
        if inverse_field is None:
            inverse_field = np.zeros((*grid.shape, dim), dtype=np.float64)
        field = np.asarray(field, dtype=np.float64)
        inverse_field = np.asarray(inverse_field, dtype=np.float64)
        grid.check_array(field, dim)
        grid.check_array(inverse_field, dim)
        self.field = field
        self.inverse_field = inverse_field
        self._points = None

    @classmethod
    def identity(cls, grid: ImageGrid) -> "DisplacementField":
        return cls(grid)

    def copy(self) -> "DisplacementField":
        return DisplacementField(
            self.grid.copy(), self.field.copy(), self.inverse_field.copy()
        )

    @property
    def points(self) -> NDArray[np.float64]:
        """Physical position of every voxel of the grid (cached)."""
        if self._points is None:
            self._points = self.grid.physical_points()
        return self._points

    def commit(self, field: NDArray, inverse_field: NDArray) -> None:
        """Replace the field and its inverse together."""
        self.grid.check_array(field, self.grid.dimension)
        self.grid.check_array(inverse_field, self.grid.dimension)
        self.field = field
        self.inverse_field = inverse_field

    def sample(self, array: NDArray, points: NDArray) -> tuple[NDArray, int]:
        """Interpolate a vector array of this grid at physical ``points``.

        Returns:
            (values, number of clamped points)
        """
        continuous_index = self.grid.physical_to_continuous_index(points)
        n_clamped = self.grid.count_outside(continuous_index)
        values = self.grid.sample_at_index(array, continuous_index, order=1)
        return values, n_clamped

    def transform_points(self, points: NDArray) -> NDArray[np.float64]:
        """Map physical points through ``x -> x + field(x)``."""
        displacement, _ = self.sample(self.field, points)
        return points + displacement

    def inverse_transform_points(self, points: NDArray) -> NDArray[np.float64]:
        """Map physical points through the cached inverse."""
        displacement, _ = self.sample(self.inverse_field, points)
        return points + displacement

    def compose_with(self, first: NDArray, second: NDArray) -> tuple[NDArray, int]:
        """Right-compose two fields of this grid.

        Returns ``first(x) + second(x + first(x))``, the displacement of the
        map ``(id + second) o (id + first)``.
        """
        displacement, n_clamped = self.sample(second, self.points + first)
        return first + displacement, n_clamped

    def compose_update(self, update: NDArray) -> tuple[NDArray, int]:
        """Displacement of ``(id + field) o (id + update)``."""
        return self.compose_with(update, self.field)

    def invert(
        self,
        field: NDArray | None = None,
        initial_inverse: NDArray | None = None,
        number_of_iterations: int = 20,
        tolerance: float = 1e-3,
    ) -> tuple[NDArray, int, float]:
        """Estimate the inverse of ``field`` by fixed-point iteration.

        Iterates ``inv(x) = -field(x + inv(x))`` starting from
        ``initial_inverse`` (the cached inverse by default) until the largest
        residual, in voxel units, drops below ``tolerance``.

        Returns:
            (inverse field, clamped samples in the last pass, max residual)
        """
        if field is None:
            field = self.field
        if initial_inverse is None:
            initial_inverse = self.inverse_field
        inverse = initial_inverse.copy()
        max_residual = np.inf
        n_clamped = 0
        for _ in range(number_of_iterations):
            displacement, n_clamped = self.sample(field, self.points + inverse)
            residual = inverse + displacement
            max_residual = float(self.grid.voxel_norm(residual).max())
            inverse = -displacement
            if max_residual < tolerance:
                break
        return inverse, n_clamped, max_residual

    def inverse_consistency_error(
        self, field: NDArray | None = None, inverse_field: NDArray | None = None
    ) -> tuple[float, float]:
        """Mean and max of ``|field(x) + inverse(x + field(x))|`` in voxels."""
        if field is None:
            field = self.field
        if inverse_field is None:
            inverse_field = self.inverse_field
        round_trip, _ = self.compose_with(field, inverse_field)
        error = self.grid.voxel_norm(round_trip)
        return float(error.mean()), float(error.max())

    def resample(self, grid: ImageGrid) -> "DisplacementField":
        """Resample the field and its inverse onto another grid.

        Displacements are physical vectors, so they are interpolated as is;
        points outside the current domain take the nearest boundary value.
        """
        if grid.dimension != self.grid.dimension:
            raise ValueError(
                f"Cannot resample a {self.grid.dimension}D field onto a "
                f"{grid.dimension}D grid"
            )
        if grid.is_same_grid(self.grid):
            return DisplacementField(grid, self.field.copy(), self.inverse_field.copy())
        points = grid.physical_points()
        field, _ = self.sample(self.field, points)
        inverse_field, _ = self.sample(self.inverse_field, points)
        return DisplacementField(grid, field, inverse_field)

    def max_displacement(self) -> float:
        """Largest displacement length in voxel units."""
        return float(self.grid.voxel_norm(self.field).max())
