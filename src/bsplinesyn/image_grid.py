"""Physical-space sampling grid shared by images and displacement fields.

An ImageGrid carries the geometry of an ITK image (size, spacing, origin and
direction cosines) next to the numpy array that holds its pixels. Arrays use
the itk.array_from_image layout: axes are stored slowest first ((z, y, x) in
3D) while spacing, origin, direction and vector components follow ITK's
physical (x, y, z) order.

The module also hosts the data-parallel interpolation engine used by every
per-voxel stage of the optimization (warping, composition, inversion): the
sample points are split into slabs that run on a bounded thread pool.
"""

import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import itk
import numpy as np
from numpy.typing import NDArray
from scipy import ndimage

from bsplinesyn.registration_exceptions import DomainMismatchError

_number_of_threads = None

# Below this many sample points the thread pool costs more than it saves
_MIN_POINTS_PER_THREAD = 16384


def set_number_of_threads(number_of_threads: int | None) -> None:
    """Set the worker count for voxel loops (None = all available cores)."""
    global _number_of_threads
    if number_of_threads is not None and number_of_threads < 1:
        raise ValueError(f"Invalid number of threads: {number_of_threads}")
    _number_of_threads = number_of_threads


def get_number_of_threads() -> int:
    """Return the worker count used for voxel loops."""
    if _number_of_threads is not None:
        return _number_of_threads
    return os.cpu_count() or 1


def parallel_map_coordinates(
    array: NDArray,
    coordinates: NDArray,
    order: int = 1,
    mode: str = "nearest",
    cval: float = 0.0,
) -> NDArray:
    """Interpolate a scalar array at continuous array-order coordinates.

    Args:
        array: Scalar array to sample.
        coordinates: Array of shape (ndim, N) with continuous indices in
            array axis order.
        order: Spline interpolation order passed to scipy.ndimage.
        mode: Boundary mode passed to scipy.ndimage ('nearest' clamps).
        cval: Fill value for mode='constant'.

    Returns:
        Array of shape (N,) with the interpolated values. All slabs are
        complete when the function returns.
    """
    n_points = coordinates.shape[1]
    n_threads = min(get_number_of_threads(), max(1, n_points // _MIN_POINTS_PER_THREAD))
    if n_threads <= 1:
        return ndimage.map_coordinates(
            array, coordinates, order=order, mode=mode, cval=cval, prefilter=False
        )

    bounds = np.linspace(0, n_points, n_threads + 1).astype(int)
    output = np.empty(n_points, dtype=np.float64)

    def _sample_slab(start, stop):
        output[start:stop] = ndimage.map_coordinates(
            array,
            coordinates[:, start:stop],
            order=order,
            mode=mode,
            cval=cval,
            prefilter=False,
        )

    with ThreadPoolExecutor(max_workers=n_threads) as executor:
        futures = [
            executor.submit(_sample_slab, bounds[i], bounds[i + 1])
            for i in range(n_threads)
        ]
        for future in futures:
            future.result()

    return output


@dataclass
class ImageGrid:
    """Geometry of a regular sampling grid in physical space.

    Attributes:
        shape: Number of voxels per array axis (slowest axis first).
        spacing: Voxel spacing in physical (x, y, z) order.
        origin: Physical position of the first voxel centre.
        direction: Direction cosine matrix, shape (D, D).
    """

    shape: tuple[int, ...]
    spacing: NDArray[np.float64]
    origin: NDArray[np.float64]
    direction: NDArray[np.float64]

    def __post_init__(self) -> None:
        self.shape = tuple(int(s) for s in self.shape)
        self.spacing = np.asarray(self.spacing, dtype=np.float64).reshape(-1)
        self.origin = np.asarray(self.origin, dtype=np.float64).reshape(-1)
        self.direction = np.asarray(self.direction, dtype=np.float64)
        dim = len(self.shape)
        if dim not in (2, 3):
            raise DomainMismatchError(f"Unsupported grid dimension: {dim}")
        if self.spacing.shape != (dim,) or self.origin.shape != (dim,):
            raise DomainMismatchError(
                f"Spacing {self.spacing} and origin {self.origin} do not match "
                f"a {dim}D grid"
            )
        if self.direction.shape != (dim, dim):
            raise DomainMismatchError(
                f"Direction matrix shape {self.direction.shape} does not match "
                f"a {dim}D grid"
            )
        if np.any(self.spacing <= 0):
            raise ValueError(f"Spacing must be positive, got {self.spacing}")

    @classmethod
    def from_itk_image(cls, image) -> "ImageGrid":
        """Read the geometry of an ITK image."""
        size = [int(s) for s in itk.size(image)]
        return cls(
            shape=tuple(reversed(size)),
            spacing=np.array(itk.spacing(image), dtype=np.float64),
            origin=np.array(itk.origin(image), dtype=np.float64),
            direction=np.array(itk.array_from_matrix(image.GetDirection())),
        )

    @property
    def dimension(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> tuple[int, ...]:
        """Number of voxels in ITK (x, y, z) order."""
        return tuple(reversed(self.shape))

    def copy(self) -> "ImageGrid":
        return ImageGrid(
            self.shape, self.spacing.copy(), self.origin.copy(), self.direction.copy()
        )

    def is_same_grid(self, other: "ImageGrid", tolerance: float = 1e-6) -> bool:
        """Return True when both grids describe the same voxels."""
        return (
            self.shape == other.shape
            and np.allclose(self.spacing, other.spacing, atol=tolerance)
            and np.allclose(self.origin, other.origin, atol=tolerance)
            and np.allclose(self.direction, other.direction, atol=tolerance)
        )

    def check_array(self, array: NDArray, n_components: int | None = None) -> None:
        """Raise DomainMismatchError if ``array`` does not live on this grid."""
        expected = self.shape if n_components is None else (*self.shape, n_components)
        if tuple(array.shape) != tuple(expected):
            raise DomainMismatchError(
                f"Array shape {array.shape} does not match grid shape {expected}"
            )

    def shrink(self, factor: int) -> "ImageGrid":
        """Return the grid of a level shrunk by an integer ``factor``.

        Follows ITK's shrink semantics: the new size is ``size // factor``
        (at least one voxel), spacing grows by ``factor``, and the new first
        voxel is centred on the block of input voxels it replaces.
        """
        if factor < 1:
            raise ValueError(f"Invalid shrink factor: {factor}")
        if factor == 1:
            return self.copy()
        size = np.array(self.size, dtype=np.int64)
        new_size = np.maximum(size // factor, 1)
        first_index = (size - new_size * factor) / 2.0 + (factor - 1) / 2.0
        new_origin = self.origin + self.direction @ (self.spacing * first_index)
        return ImageGrid(
            shape=tuple(int(s) for s in new_size[::-1]),
            spacing=self.spacing * factor,
            origin=new_origin,
            direction=self.direction.copy(),
        )

    def physical_points(self) -> NDArray[np.float64]:
        """Return the physical position of every voxel, shape (*shape, D)."""
        axes = [np.arange(n, dtype=np.float64) for n in self.shape]
        index_zyx = np.stack(np.meshgrid(*axes, indexing="ij"), axis=-1)
        index_xyz = index_zyx[..., ::-1]
        return self.origin + (index_xyz * self.spacing) @ self.direction.T

    def physical_to_continuous_index(self, points: NDArray) -> NDArray[np.float64]:
        """Map physical points (..., D) to continuous indices in array order."""
        inverse_direction = np.linalg.inv(self.direction)
        index_xyz = ((points - self.origin) @ inverse_direction.T) / self.spacing
        return index_xyz[..., ::-1]

    def count_outside(self, continuous_index: NDArray, tolerance: float = 1e-6) -> int:
        """Count points whose continuous index falls outside the voxel domain."""
        upper = np.array(self.shape, dtype=np.float64) - 1.0
        outside = np.any(
            (continuous_index < -tolerance) | (continuous_index > upper + tolerance),
            axis=-1,
        )
        return int(np.count_nonzero(outside))

    def inside_mask(self, continuous_index: NDArray, tolerance: float = 1e-6) -> NDArray:
        """Boolean mask of points that fall inside the voxel domain."""
        upper = np.array(self.shape, dtype=np.float64) - 1.0
        return np.all(
            (continuous_index >= -tolerance) & (continuous_index <= upper + tolerance),
            axis=-1,
        )

    def sample(
        self,
        array: NDArray,
        points: NDArray,
        order: int = 1,
        mode: str = "nearest",
        cval: float = 0.0,
    ) -> NDArray[np.float64]:
        """Interpolate an array defined on this grid at physical ``points``.

        ``array`` is either scalar (shape ``self.shape``) or vector valued
        (shape ``(*self.shape, C)``); the result has the leading shape of
        ``points`` (without its last axis) plus the component axis if any.
        """
        continuous_index = self.physical_to_continuous_index(points)
        return self.sample_at_index(array, continuous_index, order, mode, cval)

    def sample_at_index(
        self,
        array: NDArray,
        continuous_index: NDArray,
        order: int = 1,
        mode: str = "nearest",
        cval: float = 0.0,
    ) -> NDArray[np.float64]:
        """Interpolate ``array`` at continuous indices given in array order."""
        out_shape = continuous_index.shape[:-1]
        coordinates = continuous_index.reshape(-1, self.dimension).T
        if array.ndim == self.dimension:
            values = parallel_map_coordinates(
                np.asarray(array, dtype=np.float64), coordinates, order, mode, cval
            )
            return values.reshape(out_shape)
        components = [
            parallel_map_coordinates(
                np.asarray(array[..., c], dtype=np.float64),
                coordinates,
                order,
                mode,
                cval,
            ).reshape(out_shape)
            for c in range(array.shape[-1])
        ]
        return np.stack(components, axis=-1)

    def splat_points(
        self, points: NDArray, vectors: NDArray
    ) -> tuple[NDArray[np.float64], int]:
        """Spread vectors attached to physical points onto the grid.

        Each vector is distributed over the 2^D voxels around its point with
        multilinear weights, the adjoint of linear interpolation. Points
        outside the voxel domain are dropped.

        Returns:
            (field of shape (*shape, C), number of dropped points)
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, self.dimension)
        vectors = np.asarray(vectors, dtype=np.float64)
        vectors = vectors.reshape(points.shape[0], -1)
        field = np.zeros((*self.shape, vectors.shape[1]), dtype=np.float64)

        continuous_index = self.physical_to_continuous_index(points)
        inside = self.inside_mask(continuous_index)
        n_outside = int(np.count_nonzero(~inside))
        continuous_index = continuous_index[inside]
        vectors = vectors[inside]
        if len(vectors) == 0:
            return field, n_outside

        upper = np.array(self.shape) - 1
        continuous_index = np.clip(continuous_index, 0.0, upper)
        base = np.floor(continuous_index).astype(np.int64)
        fraction = continuous_index - base
        for corner in np.ndindex(*([2] * self.dimension)):
            offset = np.array(corner)
            weight = np.prod(np.where(offset == 1, fraction, 1.0 - fraction), axis=1)
            index = np.minimum(base + offset, upper)
            np.add.at(
                field, tuple(index.T), weight[:, np.newaxis] * vectors
            )
        return field, n_outside

    def gradient(self, array: NDArray) -> NDArray[np.float64]:
        """Physical-space gradient of a scalar array, shape (*shape, D)."""
        array = np.asarray(array, dtype=np.float64)
        axis_derivatives = []
        for axis, n in enumerate(self.shape):
            if n < 2:
                axis_derivatives.append(np.zeros_like(array))
            else:
                axis_derivatives.append(np.gradient(array, axis=axis))
        # derivative per unit index along x, y, z
        index_gradient = np.stack(axis_derivatives[::-1], axis=-1) / self.spacing
        inverse_direction = np.linalg.inv(self.direction)
        return index_gradient @ inverse_direction

    def voxel_norm(self, vectors: NDArray) -> NDArray[np.float64]:
        """Length of physical vectors measured in voxel units of this grid."""
        inverse_direction = np.linalg.inv(self.direction)
        index_vectors = (vectors @ inverse_direction.T) / self.spacing
        return np.sqrt(np.sum(index_vectors**2, axis=-1))
