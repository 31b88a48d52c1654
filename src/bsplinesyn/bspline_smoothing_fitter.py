"""B-spline control-point smoothing of dense vector fields.

The fitter regularizes a displacement (or update) field by projecting every
vector component onto a tensor-product B-spline basis defined on a coarse
control-point lattice, then reconstructing the dense field from the lattice.
It is the regularization strategy used by TransformIntegrator.

Fitting is a (weighted) least-squares problem over the voxel grid:

- Without a weight mask the normal equations separate per axis, so each axis
  is solved directly with the pseudo-inverse of its 1-D basis matrix. The
  result is an exact projection: smoothing a field that the basis already
  represents returns it unchanged.
- With a weight mask the tensor structure only survives in the operator, so
  the normal equations are solved with a matrix-free, Jacobi-preconditioned
  conjugate gradient. A small ridge term pins control points with no
  weighted voxel in their support to zero.

Multi-level fitting refines the lattice by doubling the number of spans per
level and fits the residual left by the previous levels; the output is the
sum of all levels. The fitter keeps no state between calls besides
diagnostic counters.
"""

import logging

import numpy as np
from numpy.typing import NDArray
from scipy.interpolate import BSpline
from scipy.sparse.linalg import LinearOperator, cg

from bsplinesyn.bsplinesyn_base import BSplineSyNBase
from bsplinesyn.registration_exceptions import DegenerateFitError


def _apply_along_axis(matrix: NDArray, tensor: NDArray, axis: int) -> NDArray:
    """Contract ``matrix`` (p, q) with axis ``axis`` (length q) of ``tensor``."""
    return np.moveaxis(np.tensordot(matrix, tensor, axes=([1], [axis])), 0, axis)


def _apply_separable(matrices: list[NDArray], tensor: NDArray) -> NDArray:
    for axis, matrix in enumerate(matrices):
        tensor = _apply_along_axis(matrix, tensor, axis)
    return tensor


class BSplineSmoothingFitter(BSplineSyNBase):
    """Fit dense vector fields to a B-spline control-point lattice.

    Attributes:
        ridge (float): Tikhonov weight, relative to the mean diagonal of the
            weighted normal equations.
        cg_tolerance (float): Relative residual tolerance of the conjugate
            gradient solver.
        max_cg_iterations (int): Iteration cap of the conjugate gradient solver.
        degenerate_fit_count (int): Number of fits that had no weighted voxel.
        unsupported_control_point_count (int): Control points without any
            weighted voxel in their support, summed over all fits.

    Example:
        >>> fitter = BSplineSmoothingFitter()
        >>> smooth_field = fitter.smooth(update_field, mesh_resolution=[4, 4])
    """

    def __init__(
        self,
        ridge: float = 1e-8,
        cg_tolerance: float = 1e-10,
        max_cg_iterations: int = 1000,
        log_level: int | str = logging.INFO,
    ):
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

        self.ridge = ridge
        self.cg_tolerance = cg_tolerance
        self.max_cg_iterations = max_cg_iterations

        self.degenerate_fit_count = 0
        self.unsupported_control_point_count = 0

    @staticmethod
    def basis_matrix(n_samples: int, n_spans: int, spline_order: int) -> NDArray:
        """Uniform B-spline basis sampled at every voxel of one axis.

        The parametric domain [0, n_spans] is stretched over the voxel centres
        of the axis, so the first and last voxel sit on the lattice boundary.

        Args:
            n_samples: Number of voxels along the axis.
            n_spans: Number of knot spans (mesh resolution). 0 selects a
                single constant basis function.
            spline_order: Polynomial degree of the B-spline.

        Returns:
            Array of shape (n_samples, n_spans + spline_order), or
            (n_samples, 1) when ``n_spans`` is 0.
        """
        if n_spans == 0:
            return np.ones((n_samples, 1), dtype=np.float64)
        if n_samples == 1:
            x = np.zeros(1, dtype=np.float64)
        else:
            x = np.linspace(0.0, float(n_spans), n_samples)
        knots = np.arange(-spline_order, n_spans + spline_order + 1, dtype=np.float64)
        return BSpline.design_matrix(x, knots, spline_order).toarray()

    def _mesh_per_axis(self, mesh_resolution, dimension: int) -> list[int]:
        """Convert an ITK-ordered (x, y, z) mesh resolution to array axis order."""
        if np.isscalar(mesh_resolution):
            mesh = [int(mesh_resolution)] * dimension
        else:
            mesh = [int(m) for m in mesh_resolution]
        if len(mesh) != dimension:
            raise ValueError(
                f"Mesh resolution {mesh_resolution} does not match a "
                f"{dimension}D field"
            )
        if any(m < 0 for m in mesh):
            raise ValueError(f"Mesh resolution must be non-negative: {mesh_resolution}")
        return mesh[::-1]

    def smooth(
        self,
        field: NDArray,
        mesh_resolution,
        spline_order: int = 3,
        number_of_fitting_levels: int = 1,
        weight_mask: NDArray | None = None,
    ) -> NDArray[np.float64]:
        """Smooth a dense field through the B-spline control-point lattice.

        Args:
            field: Vector field of shape (*shape, C) on a 2-D or 3-D grid.
                Use C = 1 for scalar data.
            mesh_resolution: Knot spans per axis in ITK (x, y, z) order, or a
                single integer for all axes. 0 on an axis gives a flat fit
                along that axis.
            spline_order: B-spline degree (>= 1). Default: 3
            number_of_fitting_levels: Number of lattice refinements; level l
                uses ``mesh_resolution * 2**l`` spans. Default: 1
            weight_mask: Optional non-negative confidence per voxel, shape
                ``shape``. Voxels with weight 0 never influence the fit.

        Returns:
            Smoothed field with the same shape as ``field``.
        """
        if spline_order < 1:
            raise ValueError(f"Invalid spline order: {spline_order}")
        if number_of_fitting_levels < 1:
            raise ValueError(
                f"Invalid number of fitting levels: {number_of_fitting_levels}"
            )

        field = np.asarray(field, dtype=np.float64)
        shape = field.shape[:-1]
        if len(shape) not in (2, 3):
            raise ValueError(f"Unsupported field shape: {field.shape}")
        if weight_mask is not None:
            weight_mask = np.asarray(weight_mask, dtype=np.float64)
            if weight_mask.shape != shape:
                raise ValueError(
                    f"Weight mask shape {weight_mask.shape} does not match "
                    f"field shape {shape}"
                )
            if np.any(weight_mask < 0):
                raise ValueError("Weight mask must be non-negative")

        mesh = self._mesh_per_axis(mesh_resolution, len(shape))

        smoothed = np.zeros_like(field)
        residual = field
        for level in range(number_of_fitting_levels):
            level_mesh = [m * 2**level for m in mesh]
            bases = [
                self.basis_matrix(n, spans, spline_order)
                for n, spans in zip(shape, level_mesh)
            ]
            try:
                smoothed = smoothed + self._fit_level(residual, bases, weight_mask)
            except DegenerateFitError as e:
                self.degenerate_fit_count += 1
                self.log_debug("Degenerate fit at level %d: %s", level, e)
                break
            residual = field - smoothed

        return smoothed

    def _fit_level(
        self, field: NDArray, bases: list[NDArray], weight_mask: NDArray | None
    ) -> NDArray:
        """Fit one lattice level and return its dense reconstruction."""
        uniform = weight_mask is None
        if not uniform:
            if not np.any(weight_mask > 0):
                raise DegenerateFitError("weight mask is zero everywhere")
            uniform = np.all(weight_mask == weight_mask.flat[0])

        if uniform:
            projections = [np.linalg.pinv(basis) for basis in bases]
            lattice = _apply_separable(projections, field)
        else:
            lattice = self._solve_weighted(field, bases, weight_mask)

        return _apply_separable(bases, lattice)

    def _solve_weighted(
        self, field: NDArray, bases: list[NDArray], weight_mask: NDArray
    ) -> NDArray:
        """Solve the weighted normal equations for every component."""
        lattice_shape = tuple(basis.shape[1] for basis in bases)
        n_unknowns = int(np.prod(lattice_shape))
        transposed = [basis.T for basis in bases]

        diagonal = _apply_separable([basis.T**2 for basis in bases], weight_mask)
        unsupported = int(np.count_nonzero(diagonal <= 0))
        if unsupported > 0:
            self.unsupported_control_point_count += unsupported
            self.log_debug(
                "%d of %d control points have no weighted support",
                unsupported,
                n_unknowns,
            )
        ridge = self.ridge * float(diagonal[diagonal > 0].mean())
        diagonal = diagonal.reshape(-1) + ridge

        def _normal_matvec(coefficients):
            dense = _apply_separable(bases, coefficients.reshape(lattice_shape))
            back = _apply_separable(transposed, weight_mask * dense)
            return back.reshape(-1) + ridge * coefficients

        normal_operator = LinearOperator(
            (n_unknowns, n_unknowns), matvec=_normal_matvec, dtype=np.float64
        )
        preconditioner = LinearOperator(
            (n_unknowns, n_unknowns), matvec=lambda r: r / diagonal, dtype=np.float64
        )

        n_components = field.shape[-1]
        lattice = np.zeros((*lattice_shape, n_components), dtype=np.float64)
        for component in range(n_components):
            rhs = _apply_separable(transposed, weight_mask * field[..., component])
            rhs = rhs.reshape(-1)
            if not np.any(rhs):
                continue
            solution, info = cg(
                normal_operator,
                rhs,
                rtol=self.cg_tolerance,
                maxiter=self.max_cg_iterations,
                M=preconditioner,
            )
            if info > 0:
                self.log_debug(
                    "Conjugate gradient stopped after %d iterations (component %d)",
                    info,
                    component,
                )
            lattice[..., component] = solution.reshape(lattice_shape)
        return lattice
