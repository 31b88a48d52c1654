"""
BSplineSyN - Symmetric diffeomorphic image registration with B-spline
    regularized update fields.

Fixed and moving images are deformed toward a common middle space by two
half transforms that are optimized jointly, coarse to fine. Each iteration's
update field is smoothed by fitting it to a B-spline control-point lattice.
The result is a Forward/Inverse displacement field pair returned as ITK
transforms.

Main Components:
    - RegisterImagesBSplineSyN: Multi-resolution registration driver
    - UpdateFieldGenerator: Symmetric update fields from image and point-set
      metrics
    - TransformIntegrator: Smoothing and composition of the half transforms
    - BSplineSmoothingFitter: Control-point lattice fitting of vector fields
    - ConvergenceMonitor: Windowed convergence detection
    - Transform utilities: Tools for ITK transform and image conversions
    - BSplineSyNBase: Base class with standardized logging
"""

__version__ = "2025.05.0"

# Fitting and optimization components
from .bspline_smoothing_fitter import BSplineSmoothingFitter

# Base classes
from .bsplinesyn_base import BSplineSyNBase
from .convergence_monitor import ConvergenceMonitor
from .displacement_field import DisplacementField

# Geometry
from .image_grid import ImageGrid, set_number_of_threads

# Metrics
from .image_metrics import (
    ImageMetricBase,
    MeanSquaresImageMetric,
    NeighborhoodCorrelationImageMetric,
)
from .point_set_metrics import EuclideanDistancePointSetMetric, PointSetMetricBase

# Utility classes
from .image_tools import ImageTools

# Registration classes
from .register_images_base import RegisterImagesBase
from .register_images_bspline_syn import (
    CancellationToken,
    IterationEvent,
    RegisterImagesBSplineSyN,
    RegistrationState,
    RegistrationStatus,
)

# Errors and warnings
from .registration_exceptions import (
    BoundaryClampWarning,
    BSplineSyNError,
    DegenerateFitError,
    DomainMismatchError,
    NonConvergenceWarning,
    RegistrationCancelled,
)
from .registration_schedule import LevelSchedule, MultiResolutionSchedule
from .transform_integrator import IntegrationReport, TransformIntegrator
from .transform_tools import TransformTools
from .update_field_generator import GriddedImage, UpdateFieldGenerator

__all__ = [
    # Registration classes
    "RegisterImagesBase",
    "RegisterImagesBSplineSyN",
    "RegistrationState",
    "RegistrationStatus",
    "IterationEvent",
    "CancellationToken",
    "MultiResolutionSchedule",
    "LevelSchedule",
    # Optimization components
    "UpdateFieldGenerator",
    "TransformIntegrator",
    "IntegrationReport",
    "BSplineSmoothingFitter",
    "ConvergenceMonitor",
    # Metrics
    "ImageMetricBase",
    "MeanSquaresImageMetric",
    "NeighborhoodCorrelationImageMetric",
    "PointSetMetricBase",
    "EuclideanDistancePointSetMetric",
    # Geometry
    "ImageGrid",
    "GriddedImage",
    "DisplacementField",
    "set_number_of_threads",
    # Base classes
    "BSplineSyNBase",
    # Utility classes
    "ImageTools",
    "TransformTools",
    # Errors and warnings
    "BSplineSyNError",
    "DomainMismatchError",
    "DegenerateFitError",
    "RegistrationCancelled",
    "BoundaryClampWarning",
    "NonConvergenceWarning",
]
