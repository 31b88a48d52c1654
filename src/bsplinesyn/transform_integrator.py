"""Apply a smoothed update to both SyN half transforms.

One call of TransformIntegrator.integrate() advances the optimization by one
iteration:

1. the raw update is regularized by the B-spline smoothing fitter,
2. it is scaled so its largest vector is one step length long; the step
   length starts at ``time_step`` voxels and is multiplied by the relaxation
   factor every time the smoothed update reverses direction,
3. it is composed into the fixed half (``+u``) and the moving half (``-u``),
4. optionally, both total fields are smoothed on a second lattice,
5. both cached inverses are refreshed from their previous values,
6. the inverse consistency is measured and, if it drifted, the inverses are
   recomputed exactly with SimpleITK.

All new arrays are built before anything is committed, so an error part-way
leaves the half transforms and the step length as they were.
"""

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from bsplinesyn.bspline_smoothing_fitter import BSplineSmoothingFitter
from bsplinesyn.bsplinesyn_base import BSplineSyNBase
from bsplinesyn.displacement_field import DisplacementField
from bsplinesyn.registration_exceptions import BSplineSyNError, DomainMismatchError
from bsplinesyn.transform_tools import TransformTools


@dataclass
class IntegrationReport:
    """Diagnostics of one integration step."""

    update_norm: float = 0.0
    step_length: float = 0.0
    boundary_clamp_count: int = 0
    reinverted: bool = False
    inverse_consistency_error: float = 0.0
    max_inverse_consistency_error: float = 0.0


class TransformIntegrator(BSplineSyNBase):
    """Smooth, scale and compose update fields into the half transforms.

    Attributes:
        fitter (BSplineSmoothingFitter): Regularization strategy.
        zero_boundary_update (bool): Force the update to zero on the outer
            voxels of the grid.
        number_of_inverse_iterations (int): Fixed-point iterations used to
            refresh a cached inverse.
        inverse_tolerance (float): Largest fixed-point residual, in voxels,
            at which the refresh stops early.
        inverse_drift_tolerance (float): Mean inverse-consistency error, in
            voxels, above which the inverse is recomputed exactly.
        relaxation_factor (float): Factor applied to the step length when
            the smoothed update reverses direction (1 keeps it fixed).
        step_length (float | None): Current step length in voxels; None
            until the first step, which uses ``time_step``.
        reinversion_count (int): Number of exact re-inversions performed.

    Example:
        >>> integrator = TransformIntegrator(BSplineSmoothingFitter())
        >>> report = integrator.integrate(
        ...     fixed_to_middle, moving_to_middle, update,
        ...     time_step=0.25, mesh_resolution=[4, 4],
        ... )
    """

    def __init__(
        self,
        fitter: BSplineSmoothingFitter | None = None,
        log_level: int | str = logging.INFO,
    ):
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

        self.fitter = fitter or BSplineSmoothingFitter(log_level=log_level)
        self.transform_tools = TransformTools(log_level=log_level)

        self.zero_boundary_update = True
        self.number_of_inverse_iterations = 20
        self.inverse_tolerance = 1e-3
        self.inverse_drift_tolerance = 0.1
        self.relaxation_factor = 0.5

        self.step_length = None
        self._previous_update = None

        self.reinversion_count = 0

    def set_inverse_drift_tolerance(self, tolerance: float) -> None:
        if tolerance <= 0:
            self.log_error("Inverse drift tolerance must be positive, got %s", tolerance)
            raise ValueError(f"Inverse drift tolerance must be positive, got {tolerance}")
        self.inverse_drift_tolerance = tolerance

    def set_zero_boundary_update(self, zero_boundary_update: bool) -> None:
        self.zero_boundary_update = zero_boundary_update

    def set_relaxation_factor(self, relaxation_factor: float) -> None:
        if not 0.0 < relaxation_factor <= 1.0:
            self.log_error("Relaxation factor must be in (0, 1], got %s", relaxation_factor)
            raise ValueError(
                f"Relaxation factor must be in (0, 1], got {relaxation_factor}"
            )
        self.relaxation_factor = relaxation_factor

    def reset_step_length(self, step_length: float | None = None) -> None:
        """Start a new level with ``step_length`` voxels (None: the time step).

        The direction history is cleared, so the first step of the level is
        never relaxed.
        """
        self.step_length = step_length
        self._previous_update = None

    def compute_step_length(self, update: NDArray, time_step: float) -> float:
        """Step length for ``update``, never longer than ``time_step``.

        The current step length is relaxed when ``update`` points against the
        previous update, i.e. the optimizer stepped over a minimum.
        """
        if self.step_length is None:
            step_length = time_step
        else:
            step_length = min(self.step_length, time_step)
        if self._previous_update is not None:
            if float(np.vdot(update, self._previous_update)) < 0.0:
                step_length *= self.relaxation_factor
                self.log_debug("Update reversed, step length %.4g voxels", step_length)
        return step_length

    def scale_update(self, update: NDArray, grid, time_step: float) -> tuple[NDArray, float]:
        """Scale ``update`` so its longest vector is ``time_step`` voxels.

        Returns:
            (scaled update, longest vector length before scaling in voxels)
        """
        norm = float(grid.voxel_norm(update).max()) if update.size else 0.0
        if norm <= 1e-12:
            return np.zeros_like(update), norm
        return update * (time_step / norm), norm

    @staticmethod
    def _zero_boundary(update: NDArray) -> NDArray:
        update = update.copy()
        for axis in range(update.ndim - 1):
            index = [slice(None)] * update.ndim
            index[axis] = 0
            update[tuple(index)] = 0.0
            index[axis] = -1
            update[tuple(index)] = 0.0
        return update

    def exact_inverse(self, half_transform: DisplacementField, field: NDArray) -> NDArray:
        """Invert ``field`` with SimpleITK's iterative inversion filter."""
        return self.transform_tools.invert_displacement_field(field, half_transform.grid)

    def _advance(
        self,
        half_transform: DisplacementField,
        update: NDArray,
        total_field_mesh,
        spline_order: int,
    ) -> tuple[NDArray, NDArray, int, bool, float, float]:
        """Compute the new field and inverse of one half without committing."""
        field, n_clamped = half_transform.compose_update(update)
        if total_field_mesh is not None:
            field = self.fitter.smooth(field, total_field_mesh, spline_order)

        inverse, n_inverse_clamped, residual = half_transform.invert(
            field,
            initial_inverse=half_transform.inverse_field,
            number_of_iterations=self.number_of_inverse_iterations,
            tolerance=self.inverse_tolerance,
        )
        n_clamped += n_inverse_clamped

        mean_error, max_error = half_transform.inverse_consistency_error(field, inverse)
        reinverted = False
        if mean_error > self.inverse_drift_tolerance:
            self.log_debug(
                "Inverse drift %.4f voxels (fixed-point residual %.4f), reinverting",
                mean_error,
                residual,
            )
            inverse = self.exact_inverse(half_transform, field)
            mean_error, max_error = half_transform.inverse_consistency_error(
                field, inverse
            )
            reinverted = True

        if not (np.all(np.isfinite(field)) and np.all(np.isfinite(inverse))):
            raise BSplineSyNError("Non-finite values in the updated transform")
        return field, inverse, n_clamped, reinverted, mean_error, max_error

    def integrate(
        self,
        fixed_to_middle: DisplacementField,
        moving_to_middle: DisplacementField,
        raw_update: NDArray,
        time_step: float,
        mesh_resolution,
        spline_order: int = 3,
        number_of_fitting_levels: int = 1,
        weight_mask: NDArray | None = None,
        total_field_mesh_resolution=None,
    ) -> IntegrationReport:
        """Advance both half transforms by one iteration.

        Args:
            fixed_to_middle: Fixed half transform, updated with ``+u``.
            moving_to_middle: Moving half transform, updated with ``-u``.
            raw_update: Unsmoothed update, shape (*grid.shape, D).
            time_step: Largest step length in voxels.
            mesh_resolution: Update smoothing lattice (ITK axis order).
            spline_order: B-spline degree. Default: 3
            number_of_fitting_levels: Fitter levels. Default: 1
            weight_mask: Optional confidence per voxel for the fit.
            total_field_mesh_resolution: Lattice used to smooth the total
                fields after composition; None or all zeros disables it.

        Returns:
            IntegrationReport: Diagnostics of the step.
        """
        grid = fixed_to_middle.grid
        if not grid.is_same_grid(moving_to_middle.grid):
            raise DomainMismatchError("Half transforms are not on the same grid")
        grid.check_array(raw_update, grid.dimension)
        if time_step <= 0:
            raise ValueError(f"Time step must be positive, got {time_step}")

        if total_field_mesh_resolution is not None and not np.any(
            np.asarray(total_field_mesh_resolution) > 0
        ):
            total_field_mesh_resolution = None

        smoothed = self.fitter.smooth(
            raw_update,
            mesh_resolution,
            spline_order,
            number_of_fitting_levels,
            weight_mask,
        )
        if self.zero_boundary_update:
            smoothed = self._zero_boundary(smoothed)
        step_length = self.compute_step_length(smoothed, time_step)
        update, update_norm = self.scale_update(smoothed, grid, step_length)

        fixed_result = self._advance(
            fixed_to_middle, update, total_field_mesh_resolution, spline_order
        )
        moving_result = self._advance(
            moving_to_middle, -update, total_field_mesh_resolution, spline_order
        )

        fixed_to_middle.commit(fixed_result[0], fixed_result[1])
        moving_to_middle.commit(moving_result[0], moving_result[1])

        moved = update_norm > 1e-12
        self.step_length = step_length
        if moved:
            self._previous_update = smoothed

        reinversions = int(fixed_result[3]) + int(moving_result[3])
        self.reinversion_count += reinversions

        return IntegrationReport(
            update_norm=update_norm,
            step_length=step_length if moved else 0.0,
            boundary_clamp_count=fixed_result[2] + moving_result[2],
            reinverted=reinversions > 0,
            inverse_consistency_error=max(fixed_result[4], moving_result[4]),
            max_inverse_consistency_error=max(fixed_result[5], moving_result[5]),
        )
