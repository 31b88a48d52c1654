"""Symmetric diffeomorphic registration with B-spline regularized updates.

This module provides RegisterImagesBSplineSyN, which registers one or more
moving images to fixed images of the same dimension (2D or 3D). Both images
are deformed toward a common middle space: two half transforms,
fixed-to-middle and moving-to-middle, are optimized together so that neither
image is privileged. At every iteration the symmetric update field is
regularized by fitting it to a B-spline control-point lattice before it is
composed into the half transforms.

The optimization runs coarse to fine over a MultiResolutionSchedule as a
small state machine::

    LEVEL_INIT -> ITERATING -> LEVEL_CONVERGED -> LEVEL_INIT | DONE

When done, the half transforms are composed into a Forward (fixed to moving)
and an Inverse (moving to fixed) displacement field on the full-resolution
fixed grid and returned as ITK transforms.

Each iteration moves the largest update vector by one step length. The step
length starts at the time step at every level and is halved (by default)
whenever the update reverses direction; a level whose step length fell below
the minimum step length stops as converged.
"""

import logging
import threading
import warnings
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable

import itk
import numpy as np

from bsplinesyn.bspline_smoothing_fitter import BSplineSmoothingFitter
from bsplinesyn.convergence_monitor import ConvergenceMonitor
from bsplinesyn.displacement_field import DisplacementField
from bsplinesyn.image_grid import ImageGrid
from bsplinesyn.image_metrics import ImageMetricBase
from bsplinesyn.point_set_metrics import PointSetMetricBase
from bsplinesyn.register_images_base import RegisterImagesBase
from bsplinesyn.registration_exceptions import (
    BoundaryClampWarning,
    DomainMismatchError,
    NonConvergenceWarning,
    RegistrationCancelled,
)
from bsplinesyn.registration_schedule import LevelSchedule, MultiResolutionSchedule
from bsplinesyn.transform_integrator import TransformIntegrator
from bsplinesyn.transform_tools import TransformTools
from bsplinesyn.update_field_generator import GriddedImage, UpdateFieldGenerator


class RegistrationState(Enum):
    LEVEL_INIT = "level_init"
    ITERATING = "iterating"
    LEVEL_CONVERGED = "level_converged"
    DONE = "done"


@dataclass
class RegistrationStatus:
    """Outcome of a registration run, filled level by level.

    Attributes:
        level_converged: Per level, True if the convergence monitor stopped
            the level before its iteration budget ran out.
        level_iterations: Per level, number of committed iterations.
        boundary_clamp_count: Per level, number of clamped samples.
        metric_values: Per level, the metric value of every iteration.
        degenerate_fit_count: B-spline fits that had no weighted voxel.
        reinversion_count: Exact re-inversions forced by inverse drift.
        inverse_consistency_error: Mean round-trip error of the final
            Forward/Inverse pair, in voxels of the fixed image.
        cancelled: The run was cancelled; the result holds the last
            committed state.
        completed: Every level ran to its end.
    """

    level_converged: list[bool] = field(default_factory=list)
    level_iterations: list[int] = field(default_factory=list)
    boundary_clamp_count: list[int] = field(default_factory=list)
    metric_values: list[list[float]] = field(default_factory=list)
    degenerate_fit_count: int = 0
    reinversion_count: int = 0
    inverse_consistency_error: float = 0.0
    cancelled: bool = False
    completed: bool = False


@dataclass
class IterationEvent:
    """Information passed to iteration observers after each iteration."""

    level: int
    iteration: int
    metric_value: float
    convergence_value: float
    update_norm: float
    step_length: float = 0.0
    inverse_consistency_error: float = 0.0
    max_inverse_consistency_error: float = 0.0


class CancellationToken:
    """Thread-safe cancellation flag checked between iterations."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RegistrationCancelled("Registration was cancelled")


@dataclass
class _LevelData:
    index: int
    schedule: LevelSchedule
    grid: ImageGrid
    fixed_images: list[GriddedImage]
    moving_images: list[GriddedImage]
    confidence_mask: GriddedImage | None = None
    iteration: int = 0
    converged: bool = False
    clamp_count: int = 0


class RegisterImagesBSplineSyN(RegisterImagesBase):
    """B-spline SyN registration between fixed and moving images.

    Attributes:
        schedule (MultiResolutionSchedule): Levels, coarsest first.
        time_step (float): Largest step length, in voxels of the active
            level; the first step of every level has this length.
        number_of_fitting_levels (int): B-spline fitting levels per update.
        update_field_generator (UpdateFieldGenerator): Metrics and warping.
        transform_integrator (TransformIntegrator): Smoothing and composition.
        convergence_monitor (ConvergenceMonitor): Per-level stop criterion.
        composite_transform (itk.CompositeTransform | None): Caller-owned
            stack the Forward transform is appended to.
        status (RegistrationStatus | None): Status of the last run.

    Example:
        >>> registrar = RegisterImagesBSplineSyN()
        >>> registrar.set_schedule(
        ...     MultiResolutionSchedule.from_lists([2, 1], [20, 20], [4, 4])
        ... )
        >>> registrar.set_fixed_image(fixed_image)
        >>> result = registrar.register(moving_image)
        >>> warped = TransformTools().transform_image(
        ...     moving_image, result["phi_MF"], fixed_image
        ... )
    """

    def __init__(self, log_level: int | str = logging.INFO):
        """Initialize the BSplineSyN registration.

        Args:
            log_level: Logging level (default: logging.INFO)
        """
        super().__init__(log_level=log_level)

        self.schedule = MultiResolutionSchedule.from_lists(
            shrink_factors=[4, 2, 1],
            number_of_iterations=[40, 20, 10],
            mesh_resolutions=[4, 4, 4],
            smoothing_sigmas=[2.0, 1.0, 0.0],
        )
        self.time_step = 0.25
        self.number_of_fitting_levels = 1

        self.fitter = BSplineSmoothingFitter(log_level=log_level)
        self.update_field_generator = UpdateFieldGenerator(log_level=log_level)
        self.transform_integrator = TransformIntegrator(self.fitter, log_level=log_level)
        self.convergence_monitor = ConvergenceMonitor(log_level=log_level)
        self.transform_tools = TransformTools(log_level=log_level)

        self.initial_fixed_transform = None
        self.confidence_masks = None
        self.fixed_point_sets = None
        self.moving_point_sets = None

        self.composite_transform = None
        self.append_inverse_to_composite = False

        self.cancellation_token = CancellationToken()
        self.iteration_observers = []

        self.state = None
        self.status = None

    def set_schedule(self, schedule: MultiResolutionSchedule) -> None:
        """Set the multi-resolution schedule.

        Args:
            schedule (MultiResolutionSchedule): Levels, coarsest first. A
                dict is accepted and passed to MultiResolutionSchedule.from_dict.
        """
        if isinstance(schedule, dict):
            schedule = MultiResolutionSchedule.from_dict(schedule)
        if not isinstance(schedule, MultiResolutionSchedule):
            self.log_error("Invalid schedule type: %s", type(schedule))
            raise ValueError(f"Invalid schedule type: {type(schedule)}")
        self.schedule = schedule

    def set_number_of_iterations(self, number_of_iterations):
        """Set the iteration budget of every level, or one value per level.

        Args:
            number_of_iterations (int | list[int]): Iterations per level.
        """
        super().set_number_of_iterations(number_of_iterations)
        if isinstance(number_of_iterations, (list, tuple)):
            if len(number_of_iterations) != len(self.schedule):
                self.log_error(
                    "Got %d iteration counts for %d levels",
                    len(number_of_iterations),
                    len(self.schedule),
                )
                raise ValueError(
                    f"Got {len(number_of_iterations)} iteration counts for "
                    f"{len(self.schedule)} levels"
                )
            counts = list(number_of_iterations)
        else:
            counts = [number_of_iterations] * len(self.schedule)
        self.schedule = replace(
            self.schedule,
            levels=[
                replace(level, number_of_iterations=int(count))
                for level, count in zip(self.schedule, counts)
            ],
        )

    def set_time_step(self, time_step: float) -> None:
        """Set the largest update length per iteration (voxels of the level)."""
        if time_step <= 0:
            self.log_error("Time step must be positive, got %s", time_step)
            raise ValueError(f"Time step must be positive, got {time_step}")
        self.time_step = time_step

    def set_number_of_fitting_levels(self, number_of_fitting_levels: int) -> None:
        if number_of_fitting_levels < 1:
            self.log_error(
                "Number of fitting levels must be >= 1, got %s",
                number_of_fitting_levels,
            )
            raise ValueError(
                f"Number of fitting levels must be >= 1, got {number_of_fitting_levels}"
            )
        self.number_of_fitting_levels = number_of_fitting_levels

    def set_convergence_window_size(self, window_size: int) -> None:
        self.convergence_monitor = ConvergenceMonitor(
            window_size=window_size,
            convergence_threshold=self.convergence_monitor.convergence_threshold,
            minimum_step_length=self.convergence_monitor.minimum_step_length,
            log_level=self.log_level,
        )

    def set_convergence_threshold(self, convergence_threshold: float) -> None:
        self.convergence_monitor = ConvergenceMonitor(
            window_size=self.convergence_monitor.window_size,
            convergence_threshold=convergence_threshold,
            minimum_step_length=self.convergence_monitor.minimum_step_length,
            log_level=self.log_level,
        )

    def set_minimum_step_length(self, minimum_step_length: float) -> None:
        """Set the step length (voxels) below which a level stops as converged."""
        self.convergence_monitor = ConvergenceMonitor(
            window_size=self.convergence_monitor.window_size,
            convergence_threshold=self.convergence_monitor.convergence_threshold,
            minimum_step_length=minimum_step_length,
            log_level=self.log_level,
        )

    def set_relaxation_factor(self, relaxation_factor: float) -> None:
        """Set the factor applied to the step length when the update reverses.

        Args:
            relaxation_factor (float): In (0, 1]; 1 keeps every step at the
                time step. Default: 0.5
        """
        self.transform_integrator.set_relaxation_factor(relaxation_factor)

    def set_metrics(
        self,
        metrics: list[ImageMetricBase],
        metric_weights: list[float] | None = None,
    ) -> None:
        """Set the similarity metric(s) and optional per-metric weights.

        Args:
            metrics: One metric per image pair, or a single metric shared
                by all pairs.
            metric_weights: Weight per metric; equal weights when None.
        """
        self.update_field_generator.set_metrics(metrics, metric_weights)

    def set_point_sets(
        self,
        fixed_point_sets,
        moving_point_sets,
        metrics: list[PointSetMetricBase] | None = None,
        metric_weights: list[float] | None = None,
    ) -> None:
        """Set corresponding landmarks that guide the registration.

        Args:
            fixed_point_sets (ndarray | list[ndarray] | None): Physical (x, y, z)
                points in fixed space, one (N, D) array per point-set pair.
                None removes the point sets.
            moving_point_sets (ndarray | list[ndarray] | None): Corresponding
                points in moving space.
            metrics: Point-set metrics, one per pair or one shared. Default:
                EuclideanDistancePointSetMetric
            metric_weights: Weight per point-set metric, normalized together
                with the image metric weights. Default: 1 per pair
        """
        if fixed_point_sets is None or moving_point_sets is None:
            self.fixed_point_sets = None
            self.moving_point_sets = None
            return

        def _as_list(point_sets):
            if isinstance(point_sets, np.ndarray) and point_sets.ndim == 2:
                point_sets = [point_sets]
            return [np.asarray(points, dtype=np.float64) for points in point_sets]

        fixed_point_sets = _as_list(fixed_point_sets)
        moving_point_sets = _as_list(moving_point_sets)
        if len(fixed_point_sets) != len(moving_point_sets):
            self.log_error(
                "Got %d fixed and %d moving point sets",
                len(fixed_point_sets),
                len(moving_point_sets),
            )
            raise ValueError(
                f"Got {len(fixed_point_sets)} fixed and {len(moving_point_sets)} "
                "moving point sets"
            )
        for fixed_points, moving_points in zip(fixed_point_sets, moving_point_sets):
            if fixed_points.ndim != 2 or fixed_points.shape != moving_points.shape:
                self.log_error(
                    "Point sets of shape %s and %s do not correspond",
                    fixed_points.shape,
                    moving_points.shape,
                )
                raise ValueError(
                    f"Point sets of shape {fixed_points.shape} and "
                    f"{moving_points.shape} do not correspond"
                )
        if metrics is not None:
            self.update_field_generator.set_point_set_metrics(metrics, metric_weights)
        elif metric_weights is not None:
            self.update_field_generator.set_point_set_metrics(
                self.update_field_generator.point_set_metrics, metric_weights
            )
        self.fixed_point_sets = fixed_point_sets
        self.moving_point_sets = moving_point_sets

    def set_inverse_drift_tolerance(self, tolerance: float) -> None:
        """Set the inverse-consistency error (voxels) that forces re-inversion."""
        self.transform_integrator.set_inverse_drift_tolerance(tolerance)

    def set_initial_fixed_transform(self, initial_fixed_transform) -> None:
        """Set a transform applied to the fixed images before the fixed half.

        Args:
            initial_fixed_transform (itk.Transform | None): Any ITK transform
                of the fixed image dimension.
        """
        self.initial_fixed_transform = initial_fixed_transform

    def set_confidence_masks(self, confidence_masks) -> None:
        """Set per-level confidence weights used by the B-spline fit.

        Args:
            confidence_masks (list[itk.image | None] | None): One weight image
                in fixed space per level (None entries use the fixed mask).
        """
        if confidence_masks is not None and len(confidence_masks) != len(
            self.schedule
        ):
            self.log_error(
                "Got %d confidence masks for %d levels",
                len(confidence_masks),
                len(self.schedule),
            )
            raise ValueError(
                f"Got {len(confidence_masks)} confidence masks for "
                f"{len(self.schedule)} levels"
            )
        self.confidence_masks = confidence_masks

    def set_composite_transform(
        self, composite_transform, append_inverse: bool = False
    ) -> None:
        """Set the caller-owned composite transform the result is appended to.

        Args:
            composite_transform (itk.CompositeTransform): Existing stack.
            append_inverse (bool): Also append the Inverse transform.
        """
        self.composite_transform = composite_transform
        self.append_inverse_to_composite = append_inverse

    def add_iteration_observer(self, observer: Callable[[IterationEvent], None]) -> None:
        """Register a callable invoked with an IterationEvent after each iteration."""
        self.iteration_observers.append(observer)

    def set_cancellation_token(self, token: CancellationToken) -> None:
        self.cancellation_token = token

    def cancel(self) -> None:
        """Request cancellation; honored before the next iteration starts."""
        self.cancellation_token.cancel()

    def _to_gridded(self, image) -> GriddedImage:
        array, grid = self.image_tools.convert_itk_image_to_array(image)
        return GriddedImage(array, grid)

    def _check_inputs(self, moving_image_mask, initial_phi_MF) -> int:
        dimension = self.fixed_image.GetImageDimension()
        self.schedule.check_dimension(dimension)
        for name, image in (
            ("fixed mask", self.fixed_image_mask),
            ("moving mask", moving_image_mask),
        ):
            if image is not None and image.GetImageDimension() != dimension:
                raise DomainMismatchError(
                    f"The {name} is {image.GetImageDimension()}D but the images "
                    f"are {dimension}D"
                )
        for name, tfm in (
            ("initial_phi_MF", initial_phi_MF),
            ("initial fixed transform", self.initial_fixed_transform),
        ):
            if tfm is not None and tfm.GetInputSpaceDimension() != dimension:
                raise DomainMismatchError(
                    f"The {name} is {tfm.GetInputSpaceDimension()}D but the "
                    f"images are {dimension}D"
                )
        if self.confidence_masks is not None:
            if len(self.confidence_masks) != len(self.schedule):
                raise DomainMismatchError(
                    f"Got {len(self.confidence_masks)} confidence masks for "
                    f"{len(self.schedule)} levels"
                )
            for mask in self.confidence_masks:
                if mask is not None and mask.GetImageDimension() != dimension:
                    raise DomainMismatchError(
                        f"Confidence mask is {mask.GetImageDimension()}D but the "
                        f"images are {dimension}D"
                    )
        for points in (self.fixed_point_sets or []) + (self.moving_point_sets or []):
            if points.shape[1] != dimension:
                raise DomainMismatchError(
                    f"Point set has {points.shape[1]}D points but the images "
                    f"are {dimension}D"
                )
        return dimension

    def _initialize_level(
        self,
        index: int,
        full_grid: ImageGrid,
        fixed_images: list[GriddedImage],
        moving_images: list[GriddedImage],
    ) -> _LevelData:
        level_schedule = self.schedule[index]
        grid = full_grid.shrink(level_schedule.shrink_factor)
        physical = self.schedule.smoothing_sigmas_in_physical_units

        def _smooth(image: GriddedImage) -> GriddedImage:
            array = self.image_tools.smooth_array(
                image.array, image.grid, level_schedule.smoothing_sigma, physical
            )
            return GriddedImage(array, image.grid)

        confidence_mask = None
        if self.confidence_masks is not None and self.confidence_masks[index] is not None:
            confidence_mask = self._to_gridded(self.confidence_masks[index])

        self.convergence_monitor.reset()
        self.transform_integrator.reset_step_length()
        self.log_info(
            "Level %d: shrink factor %d, grid %s, mesh %s, sigma %.2f",
            index,
            level_schedule.shrink_factor,
            grid.size,
            level_schedule.mesh_resolution,
            level_schedule.smoothing_sigma,
        )
        return _LevelData(
            index=index,
            schedule=level_schedule,
            grid=grid,
            fixed_images=[_smooth(image) for image in fixed_images],
            moving_images=[_smooth(image) for image in moving_images],
            confidence_mask=confidence_mask,
        )

    def _iterate(
        self,
        level: _LevelData,
        fixed_to_middle: DisplacementField,
        moving_to_middle: DisplacementField,
        fixed_mask: GriddedImage | None,
        moving_mask: GriddedImage | None,
    ) -> float:
        """Run one update/integrate step and return the metric value."""
        generator = self.update_field_generator
        update, value = generator.compute_update_field(
            level.fixed_images,
            fixed_to_middle,
            level.moving_images,
            moving_to_middle,
            fixed_mask=fixed_mask,
            moving_mask=moving_mask,
            fixed_point_sets=self.fixed_point_sets,
            moving_point_sets=self.moving_point_sets,
        )

        if level.confidence_mask is not None:
            weight_mask = generator.compute_middle_mask(
                level.confidence_mask,
                fixed_to_middle,
                generator.initial_fixed_field,
                binary=False,
            )
        else:
            weight_mask = generator.compute_middle_mask(
                fixed_mask, fixed_to_middle, generator.initial_fixed_field
            )

        dimension = level.grid.dimension
        total_field_mesh = None
        if level.schedule.smooths_total_field():
            total_field_mesh = level.schedule.total_field_mesh(dimension)

        report = self.transform_integrator.integrate(
            fixed_to_middle,
            moving_to_middle,
            update,
            self.time_step,
            level.schedule.update_mesh(dimension),
            spline_order=level.schedule.spline_order,
            number_of_fitting_levels=self.number_of_fitting_levels,
            weight_mask=weight_mask,
            total_field_mesh_resolution=total_field_mesh,
        )
        level.clamp_count += report.boundary_clamp_count

        self.convergence_monitor.add_value(value, report.step_length)
        convergence_value = self.convergence_monitor.get_convergence_value()
        self.log_debug(
            "Level %d iteration %d: metric %.6g, convergence %.3g, step %.4g",
            level.index,
            level.iteration,
            value,
            convergence_value,
            report.step_length,
        )

        event = IterationEvent(
            level=level.index,
            iteration=level.iteration,
            metric_value=value,
            convergence_value=convergence_value,
            update_norm=report.update_norm,
            step_length=report.step_length,
            inverse_consistency_error=report.inverse_consistency_error,
            max_inverse_consistency_error=report.max_inverse_consistency_error,
        )
        for observer in self.iteration_observers:
            observer(event)

        return value

    def _finish_level(self, level: _LevelData) -> None:
        self.status.level_converged.append(level.converged)
        self.status.level_iterations.append(level.iteration)
        self.status.boundary_clamp_count.append(level.clamp_count)

        if level.clamp_count > 0:
            warnings.warn(
                f"{level.clamp_count} samples were clamped to the domain "
                f"boundary at level {level.index}",
                BoundaryClampWarning,
                stacklevel=3,
            )
        if not level.converged and level.schedule.number_of_iterations > 0:
            self.log_warning(
                "Level %d did not converge in %d iterations",
                level.index,
                level.iteration,
            )
            if not self.status.cancelled:
                warnings.warn(
                    f"Level {level.index} did not converge in "
                    f"{level.iteration} iterations",
                    NonConvergenceWarning,
                    stacklevel=3,
                )

    def _compose_outputs(
        self,
        full_grid: ImageGrid,
        fixed_to_middle: DisplacementField,
        moving_to_middle: DisplacementField,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Compose the half transforms into Forward and Inverse fields."""
        fixed_half = fixed_to_middle.resample(full_grid)
        moving_half = moving_to_middle.resample(full_grid)

        # Forward: x -> middle (inverse of the fixed half) -> moving
        forward, _ = fixed_half.compose_with(
            fixed_half.inverse_field, moving_half.field
        )
        inverse, _ = moving_half.compose_with(
            moving_half.inverse_field, fixed_half.field
        )

        result = DisplacementField(full_grid, forward, inverse)
        mean_error, _ = result.inverse_consistency_error()
        self.status.inverse_consistency_error = mean_error
        return forward, inverse

    def _build_transforms(
        self,
        full_grid: ImageGrid,
        forward: np.ndarray,
        inverse: np.ndarray,
        initial_phi_MF,
        initial_fixed_field: DisplacementField | None = None,
    ):
        """Wrap the fields as ITK transforms and compose the initial transforms.

        With initial transforms ``T_f`` (fixed) and ``T_m`` (``initial_phi_MF``)
        the results are ``phi_MF = T_m o Forward o T_f^-1`` and
        ``phi_FM = T_f o Inverse o T_m^-1``. ITK applies the last transform
        added to a CompositeTransform first.
        """
        dimension = full_grid.dimension
        forward_tfm = self.transform_tools.convert_field_to_displacement_field_transform(
            forward, full_grid, inverse_field=inverse
        )
        inverse_tfm = self.transform_tools.convert_field_to_displacement_field_transform(
            inverse, full_grid, inverse_field=forward
        )

        if self.composite_transform is not None:
            self.composite_transform.AddTransform(forward_tfm)
            if self.append_inverse_to_composite:
                self.composite_transform.AddTransform(inverse_tfm)

        if initial_phi_MF is None and initial_fixed_field is None:
            return forward_tfm, inverse_tfm

        # point -> initial fixed^(-1) -> forward -> initial_phi_MF
        phi_MF = itk.CompositeTransform[itk.D, dimension].New()
        if initial_phi_MF is not None:
            phi_MF.AddTransform(initial_phi_MF)
        phi_MF.AddTransform(forward_tfm)
        if initial_fixed_field is not None:
            phi_MF.AddTransform(
                self.transform_tools.convert_field_to_displacement_field_transform(
                    initial_fixed_field.inverse_field,
                    full_grid,
                    inverse_field=initial_fixed_field.field,
                )
            )

        # point -> initial_phi_MF^(-1) -> inverse -> initial fixed
        phi_FM = itk.CompositeTransform[itk.D, dimension].New()
        if initial_fixed_field is not None:
            phi_FM.AddTransform(self.initial_fixed_transform)
        phi_FM.AddTransform(inverse_tfm)
        if initial_phi_MF is not None:
            moving_grid = ImageGrid.from_itk_image(self.moving_images[0])
            initial_field = self.transform_tools.convert_transform_to_displacement_field(
                initial_phi_MF, moving_grid
            )
            initial_inverse = self.transform_tools.invert_displacement_field(
                initial_field, moving_grid
            )
            phi_FM.AddTransform(
                self.transform_tools.convert_field_to_displacement_field_transform(
                    initial_inverse, moving_grid
                )
            )
        return phi_MF, phi_FM

    def _sample_initial_field(
        self, transform, grid: ImageGrid, with_inverse: bool
    ) -> DisplacementField:
        """Sample an initial transform on ``grid``, optionally with its inverse."""
        initial_field = self.transform_tools.convert_transform_to_displacement_field(
            transform, grid
        )
        initial_inverse = None
        if with_inverse:
            initial_inverse = self.transform_tools.invert_displacement_field(
                initial_field, grid
            )
        return DisplacementField(grid, initial_field, initial_inverse)

    def registration_method(
        self,
        moving_images,
        moving_image_mask=None,
        initial_phi_MF=None,
    ) -> dict:
        """Run the multi-resolution BSplineSyN optimization.

        Args:
            moving_images (list[itk.image]): Moving images, one per fixed image
            moving_image_mask (itk.image, optional): Binary mask in moving space
            initial_phi_MF (itk.Transform, optional): Initial transform used to
                warp the moving images into fixed space

        Returns:
            dict: Dictionary containing:
                - "phi_FM": Used to warp fixed image into moving space
                - "phi_MF": Used to warp moving image into fixed space
                - "forward_field": Forward displacement array on the fixed grid
                - "inverse_field": Inverse displacement array on the fixed grid
                - "loss": Final metric value (None if no iteration ran)
                - "status": RegistrationStatus of the run

        Raises:
            DomainMismatchError: If dimensions of images, masks, schedule or
                initial transforms do not agree
        """
        self._check_inputs(moving_image_mask, initial_phi_MF)

        full_grid = ImageGrid.from_itk_image(self.fixed_image)
        fixed_images = [self._to_gridded(image) for image in self.fixed_images]
        moving_images_gridded = [self._to_gridded(image) for image in moving_images]
        fixed_mask = (
            None
            if self.fixed_image_mask is None
            else self._to_gridded(self.fixed_image_mask)
        )
        moving_mask = (
            None if moving_image_mask is None else self._to_gridded(moving_image_mask)
        )

        # The fixed inverse is needed for phi_MF, the moving one only to carry
        # moving landmarks into the middle space
        initial_fixed_field = None
        if self.initial_fixed_transform is not None:
            initial_fixed_field = self._sample_initial_field(
                self.initial_fixed_transform, full_grid, with_inverse=True
            )
        initial_moving_field = None
        if initial_phi_MF is not None:
            initial_moving_field = self._sample_initial_field(
                initial_phi_MF,
                full_grid,
                with_inverse=self.moving_point_sets is not None,
            )
        self.update_field_generator.set_initial_fields(
            initial_fixed_field, initial_moving_field
        )

        self.status = RegistrationStatus()
        degenerate_fits_at_start = self.fitter.degenerate_fit_count
        reinversions_at_start = self.transform_integrator.reinversion_count

        self.log_section("BSplineSyN registration (%dD)", full_grid.dimension)

        fixed_to_middle = None
        moving_to_middle = None
        level = None
        loss = None
        self.state = RegistrationState.LEVEL_INIT
        next_level = 0
        try:
            while self.state != RegistrationState.DONE:
                if self.state == RegistrationState.LEVEL_INIT:
                    level = self._initialize_level(
                        next_level, full_grid, fixed_images, moving_images_gridded
                    )
                    self.status.metric_values.append([])
                    if fixed_to_middle is None:
                        fixed_to_middle = DisplacementField(level.grid)
                        moving_to_middle = DisplacementField(level.grid)
                    else:
                        fixed_to_middle = fixed_to_middle.resample(level.grid)
                        moving_to_middle = moving_to_middle.resample(level.grid)
                    self.state = RegistrationState.ITERATING

                elif self.state == RegistrationState.ITERATING:
                    if level.iteration >= level.schedule.number_of_iterations:
                        self.state = RegistrationState.LEVEL_CONVERGED
                        continue
                    self.cancellation_token.raise_if_cancelled()
                    loss = self._iterate(
                        level, fixed_to_middle, moving_to_middle, fixed_mask, moving_mask
                    )
                    self.status.metric_values[-1].append(loss)
                    level.iteration += 1
                    self.log_progress(
                        level.iteration,
                        level.schedule.number_of_iterations,
                        prefix=f"Level {level.index}",
                    )
                    if self.convergence_monitor.is_converged():
                        level.converged = True
                        self.log_info(
                            "Level %d converged after %d iterations",
                            level.index,
                            level.iteration,
                        )
                        self.state = RegistrationState.LEVEL_CONVERGED

                elif self.state == RegistrationState.LEVEL_CONVERGED:
                    self._finish_level(level)
                    level = None
                    next_level += 1
                    if next_level < len(self.schedule):
                        self.state = RegistrationState.LEVEL_INIT
                    else:
                        self.state = RegistrationState.DONE

            self.status.completed = True
        except RegistrationCancelled:
            self.log_warning("Registration cancelled, returning the last committed state")
            # The request is consumed by the run it stopped
            self.cancellation_token.reset()
            self.status.cancelled = True
            if level is not None:
                self._finish_level(level)
            self.state = RegistrationState.DONE

        self.status.degenerate_fit_count = (
            self.fitter.degenerate_fit_count - degenerate_fits_at_start
        )
        self.status.reinversion_count = (
            self.transform_integrator.reinversion_count - reinversions_at_start
        )

        forward, inverse = self._compose_outputs(
            full_grid, fixed_to_middle, moving_to_middle
        )
        phi_MF, phi_FM = self._build_transforms(
            full_grid, forward, inverse, initial_phi_MF, initial_fixed_field
        )

        self.log_info(
            "Registration finished: loss %s, inverse consistency %.4f voxels",
            loss,
            self.status.inverse_consistency_error,
        )

        return {
            "phi_FM": phi_FM,
            "phi_MF": phi_MF,
            "forward_field": forward,
            "inverse_field": inverse,
            "loss": loss,
            "status": self.status,
        }
