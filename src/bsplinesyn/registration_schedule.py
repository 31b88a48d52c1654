"""Multi-resolution schedule of a BSplineSyN registration.

A schedule is an ordered list of levels, coarsest first. Each level names the
grid shrink factor, the iteration budget and the B-spline smoothing settings
used while the level is active.
"""

from dataclasses import dataclass, field
from typing import Optional

from bsplinesyn.registration_exceptions import DomainMismatchError


@dataclass
class LevelSchedule:
    """Settings of one resolution level.

    Attributes:
        shrink_factor: Integer grid shrink factor relative to the fixed image.
        number_of_iterations: Iteration budget of the level.
        mesh_resolution: Knot spans of the update-field smoothing lattice,
            per axis in ITK (x, y, z) order or one value for all axes.
        spline_order: B-spline degree of the smoothing lattice.
        smoothing_sigma: Gaussian sigma applied to the images for this level
            (0 disables smoothing).
        total_field_mesh_resolution: Knot spans used to smooth the total half
            transforms after each update (0 disables total-field smoothing).
    """

    shrink_factor: int
    number_of_iterations: int
    mesh_resolution: int | list[int] = 4
    spline_order: int = 3
    smoothing_sigma: float = 0.0
    total_field_mesh_resolution: int | list[int] = 0

    def __post_init__(self) -> None:
        if int(self.shrink_factor) != self.shrink_factor or self.shrink_factor < 1:
            raise ValueError(
                f"shrink_factor must be a positive integer, got {self.shrink_factor}"
            )
        if self.number_of_iterations < 0:
            raise ValueError(
                f"number_of_iterations must be non-negative, got "
                f"{self.number_of_iterations}"
            )
        if self.spline_order < 1:
            raise ValueError(f"spline_order must be >= 1, got {self.spline_order}")
        if self.smoothing_sigma < 0:
            raise ValueError(
                f"smoothing_sigma must be non-negative, got {self.smoothing_sigma}"
            )
        self.shrink_factor = int(self.shrink_factor)
        self.number_of_iterations = int(self.number_of_iterations)
        self.mesh_resolution = self._check_mesh(self.mesh_resolution)
        self.total_field_mesh_resolution = self._check_mesh(
            self.total_field_mesh_resolution
        )

    @staticmethod
    def _check_mesh(mesh_resolution):
        if isinstance(mesh_resolution, (list, tuple)):
            mesh = [int(m) for m in mesh_resolution]
        else:
            mesh = int(mesh_resolution)
        values = mesh if isinstance(mesh, list) else [mesh]
        if any(m < 0 for m in values):
            raise ValueError(
                f"mesh resolution must be non-negative, got {mesh_resolution}"
            )
        return mesh

    def mesh_for_dimension(self, mesh_resolution, dimension: int) -> list[int]:
        """Expand a mesh resolution to one value per axis (ITK order)."""
        if isinstance(mesh_resolution, list):
            if len(mesh_resolution) != dimension:
                raise DomainMismatchError(
                    f"Mesh resolution {mesh_resolution} does not match a "
                    f"{dimension}D registration"
                )
            return list(mesh_resolution)
        return [mesh_resolution] * dimension

    def update_mesh(self, dimension: int) -> list[int]:
        return self.mesh_for_dimension(self.mesh_resolution, dimension)

    def total_field_mesh(self, dimension: int) -> list[int]:
        return self.mesh_for_dimension(self.total_field_mesh_resolution, dimension)

    def smooths_total_field(self) -> bool:
        mesh = self.total_field_mesh_resolution
        values = mesh if isinstance(mesh, list) else [mesh]
        return any(m > 0 for m in values)


@dataclass
class MultiResolutionSchedule:
    """Coarse-to-fine sequence of levels.

    Attributes:
        levels: Levels in execution order; shrink factors never increase.
        smoothing_sigmas_in_physical_units: When True the level sigmas are in
            millimeters, otherwise in voxels of the full-resolution image.

    Example:
        >>> schedule = MultiResolutionSchedule.from_lists(
        ...     shrink_factors=[2, 1],
        ...     number_of_iterations=[20, 20],
        ...     mesh_resolutions=[4, 4],
        ... )
    """

    levels: list[LevelSchedule] = field(default_factory=list)
    smoothing_sigmas_in_physical_units: bool = False

    def __post_init__(self) -> None:
        if len(self.levels) == 0:
            raise ValueError("A schedule needs at least one level")
        for previous, level in zip(self.levels[:-1], self.levels[1:]):
            if level.shrink_factor > previous.shrink_factor:
                raise ValueError(
                    "Levels must go from coarse to fine, got shrink factors "
                    f"{[lvl.shrink_factor for lvl in self.levels]}"
                )

    def __len__(self) -> int:
        return len(self.levels)

    def __iter__(self):
        return iter(self.levels)

    def __getitem__(self, index: int) -> LevelSchedule:
        return self.levels[index]

    @property
    def number_of_levels(self) -> int:
        return len(self.levels)

    def check_dimension(self, dimension: int) -> None:
        """Raise DomainMismatchError if a mesh does not fit ``dimension``."""
        for level in self.levels:
            level.update_mesh(dimension)
            level.total_field_mesh(dimension)

    @classmethod
    def from_lists(
        cls,
        shrink_factors: list[int],
        number_of_iterations: list[int],
        mesh_resolutions: Optional[list] = None,
        spline_order: int = 3,
        smoothing_sigmas: Optional[list[float]] = None,
        total_field_mesh_resolutions: Optional[list] = None,
        smoothing_sigmas_in_physical_units: bool = False,
    ) -> "MultiResolutionSchedule":
        """Build a schedule from parallel per-level lists.

        Args:
            shrink_factors: Shrink factor per level, coarsest first.
            number_of_iterations: Iteration budget per level.
            mesh_resolutions: Update-field mesh resolution per level.
                Default: 4 on every level.
            spline_order: B-spline degree shared by all levels. Default: 3
            smoothing_sigmas: Image smoothing sigma per level. Default: 0
            total_field_mesh_resolutions: Total-field mesh resolution per
                level. Default: 0 (off)
            smoothing_sigmas_in_physical_units: Unit of the sigmas.

        Returns:
            MultiResolutionSchedule: The validated schedule.
        """
        n_levels = len(shrink_factors)
        if mesh_resolutions is None:
            mesh_resolutions = [4] * n_levels
        if smoothing_sigmas is None:
            smoothing_sigmas = [0.0] * n_levels
        if total_field_mesh_resolutions is None:
            total_field_mesh_resolutions = [0] * n_levels

        lengths = {
            "number_of_iterations": len(number_of_iterations),
            "mesh_resolutions": len(mesh_resolutions),
            "smoothing_sigmas": len(smoothing_sigmas),
            "total_field_mesh_resolutions": len(total_field_mesh_resolutions),
        }
        for name, length in lengths.items():
            if length != n_levels:
                raise ValueError(
                    f"{name} has {length} entries but there are {n_levels} "
                    "shrink factors"
                )

        levels = [
            LevelSchedule(
                shrink_factor=shrink_factors[i],
                number_of_iterations=number_of_iterations[i],
                mesh_resolution=mesh_resolutions[i],
                spline_order=spline_order,
                smoothing_sigma=smoothing_sigmas[i],
                total_field_mesh_resolution=total_field_mesh_resolutions[i],
            )
            for i in range(n_levels)
        ]
        return cls(
            levels=levels,
            smoothing_sigmas_in_physical_units=smoothing_sigmas_in_physical_units,
        )

    @classmethod
    def from_dict(cls, config: dict) -> "MultiResolutionSchedule":
        """Build a schedule from a JSON-style dictionary.

        Accepts either ``{"levels": [{...}, ...]}`` with LevelSchedule fields
        per level, or the parallel-list keywords of ``from_lists``.
        """
        physical = bool(config.get("smoothing_sigmas_in_physical_units", False))
        if "levels" in config:
            levels = [LevelSchedule(**level) for level in config["levels"]]
            return cls(levels=levels, smoothing_sigmas_in_physical_units=physical)
        kwargs = {k: v for k, v in config.items()}
        kwargs["smoothing_sigmas_in_physical_units"] = physical
        return cls.from_lists(**kwargs)

    def to_dict(self) -> dict:
        return {
            "levels": [
                {
                    "shrink_factor": level.shrink_factor,
                    "number_of_iterations": level.number_of_iterations,
                    "mesh_resolution": level.mesh_resolution,
                    "spline_order": level.spline_order,
                    "smoothing_sigma": level.smoothing_sigma,
                    "total_field_mesh_resolution": level.total_field_mesh_resolution,
                }
                for level in self.levels
            ],
            "smoothing_sigmas_in_physical_units": self.smoothing_sigmas_in_physical_units,
        }
