"""
Transform Tools for BSplineSyN

Conversions between dense displacement-field arrays and ITK transforms, plus
the resampling and Jacobian diagnostics used on registration results.
"""

import logging

import itk
import numpy as np
import SimpleITK as sitk
from numpy.typing import NDArray

from bsplinesyn.bsplinesyn_base import BSplineSyNBase
from bsplinesyn.image_grid import ImageGrid
from bsplinesyn.image_tools import ImageTools
from bsplinesyn.registration_exceptions import DomainMismatchError


class TransformTools(BSplineSyNBase):
    """
    Utilities for converting and applying ITK transforms.

    Key capabilities:
    - Generate dense displacement fields from any ITK transform
    - Wrap displacement fields (and their inverses) as ITK transforms
    - Resample images through a transform
    - Compute Jacobian determinants and detect folding

    Example:
        >>> transform_tools = TransformTools()
        >>> field = transform_tools.convert_transform_to_displacement_field(
        ...     affine_tfm, grid
        ... )
        >>> tfm = transform_tools.convert_field_to_displacement_field_transform(
        ...     field, grid
        ... )
    """

    def __init__(self, log_level: int | str = logging.INFO):
        """Initialize the TransformTools class.

        Args:
            log_level: Logging level (default: logging.INFO)
        """
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

        self.image_tools = ImageTools(log_level=log_level)

    def convert_transform_to_displacement_field(
        self,
        tfm: itk.Transform,
        grid: ImageGrid,
    ) -> NDArray[np.float64]:
        """
        Generate a dense displacement field from an ITK transform.

        Any ITK transform (affine, B-spline, displacement field, composite) is
        evaluated at every voxel of ``grid``.

        Args:
            tfm (itk.Transform): Input transform. A list with a single
                transform (as returned by itk.transformread) is accepted.
            grid (ImageGrid): Spatial grid of the output field.

        Returns:
            ndarray: Shape (*grid.shape, D), displacement vectors in
                physical (x, y, z) order.

        Example:
            >>> field = transform_tools.convert_transform_to_displacement_field(
            ...     initial_tfm, fixed_grid
            ... )
        """
        # Handle case where tfm is a list (e.g., from itk.transformread)
        if isinstance(tfm, (list, tuple)):
            if len(tfm) == 1:
                tfm = tfm[0]
            else:
                raise ValueError(
                    f"Expected single transform, got list with {len(tfm)} transforms"
                )

        dim = grid.dimension
        if tfm.GetInputSpaceDimension() != dim:
            raise DomainMismatchError(
                f"Transform dimension {tfm.GetInputSpaceDimension()} does not "
                f"match a {dim}D grid"
            )

        TfmPrecision = itk.template(tfm)[1][0]

        reference_image = self.image_tools.convert_array_to_itk_image(
            np.zeros(grid.shape, dtype=np.float32), grid
        )
        field_filter = itk.TransformToDisplacementFieldFilter[
            itk.Image[itk.Vector[itk.F, dim], dim], TfmPrecision
        ].New()
        field_filter.SetTransform(tfm)
        field_filter.SetReferenceImage(reference_image)
        field_filter.SetUseReferenceImage(True)
        field_filter.Update()

        return itk.array_from_image(field_filter.GetOutput()).astype(np.float64)

    def convert_field_to_displacement_field_transform(
        self,
        field: NDArray,
        grid: ImageGrid,
        inverse_field: NDArray | None = None,
    ) -> itk.DisplacementFieldTransform:
        """
        Wrap a displacement field array as an ITK displacement field transform.

        Args:
            field: Array of shape (*grid.shape, D).
            grid: Geometry of the field.
            inverse_field: Optional inverse field on the same grid, attached
                with SetInverseDisplacementField.

        Returns:
            itk.DisplacementFieldTransform[itk.D, D]
        """
        dim = grid.dimension
        new_tfm = itk.DisplacementFieldTransform[itk.D, dim].New()
        new_tfm.SetDisplacementField(
            self.image_tools.convert_array_to_image_of_vectors(field, grid, itk.D)
        )
        if inverse_field is not None:
            new_tfm.SetInverseDisplacementField(
                self.image_tools.convert_array_to_image_of_vectors(
                    inverse_field, grid, itk.D
                )
            )
        return new_tfm

    def invert_displacement_field(
        self,
        field: NDArray,
        grid: ImageGrid,
        number_of_iterations: int = 50,
        mean_error_tolerance: float = 0.001,
        max_error_tolerance: float = 0.1,
    ) -> NDArray[np.float64]:
        """
        Invert a displacement field with SimpleITK's iterative inversion.

        Args:
            field: Array of shape (*grid.shape, D).
            grid: Geometry of the field.
            number_of_iterations: Iteration cap of the inversion filter.
            mean_error_tolerance: Mean residual (mm) at which it stops.
            max_error_tolerance: Max residual (mm) at which it stops.

        Returns:
            ndarray: Inverse field on the same grid.
        """
        field_sitk = self.image_tools.convert_field_to_sitk(field, grid)

        field_sitk_inv = sitk.InvertDisplacementField(
            field_sitk,
            maximumNumberOfIterations=number_of_iterations,
            maxErrorToleranceThreshold=max_error_tolerance,
            meanErrorToleranceThreshold=mean_error_tolerance,
            enforceBoundaryCondition=True,
        )

        return self.image_tools.convert_sitk_to_field(field_sitk_inv)

    def transform_image(
        self,
        img: itk.image,
        tfm: itk.Transform,
        reference_image: itk.image,
        interpolation_method: str = "linear",
    ) -> itk.image:
        """
        Transform an ITK image using a specified transform and interpolation.

        Args:
            img (itk.image): The input image to transform
            tfm (itk.Transform): The ITK transform to apply
            reference_image (itk.image): Defines output spacing, size, origin,
                and direction for the transformed image
            interpolation_method (str): "linear" (default) or "nearest"

        Returns:
            itk.image: The transformed image resampled to reference grid

        Raises:
            ValueError: If interpolation_method is not supported

        Example:
            >>> warped = transform_tools.transform_image(
            ...     moving_image, result["phi_MF"], fixed_image
            ... )
        """
        interpolator = None
        if interpolation_method == "linear":
            interpolator = itk.LinearInterpolateImageFunction.New(img)
        elif interpolation_method == "nearest":
            interpolator = itk.NearestNeighborInterpolateImageFunction.New(img)
        else:
            raise ValueError(f"Invalid interpolation method: {interpolation_method}")

        img_reg = itk.resample_image_filter(
            Input=img,
            Transform=tfm,
            Interpolator=interpolator,
            ReferenceImage=reference_image,
            UseReferenceImage=True,
        )
        return img_reg

    def compute_jacobian_determinant_from_field(
        self, field: NDArray, grid: ImageGrid
    ) -> NDArray[np.float64]:
        """Compute the Jacobian determinant of a displacement field.

        Values less than 0 indicate spatial folding, values between 0 and 1
        compression, and values greater than 1 expansion.

        Args:
            field: Array of shape (*grid.shape, D).
            grid: Geometry of the field.

        Returns:
            ndarray: Jacobian determinant per voxel, shape grid.shape.
        """
        field_image = self.image_tools.convert_array_to_image_of_vectors(
            field.astype(np.float32), grid, itk.F
        )
        jac_filter = itk.DisplacementFieldJacobianDeterminantFilter.New(field_image)
        jac_filter.SetUseImageSpacing(True)
        jac_filter.Update()
        return itk.array_from_image(jac_filter.GetOutput()).astype(np.float64)

    def detect_folding_in_field(
        self, jacobian_det: NDArray, threshold: float = 0.1
    ) -> bool:
        """Return True when the minimum Jacobian determinant is below ``threshold``.

        Example:
            >>> if transform_tools.detect_folding_in_field(jacobian, 0.1):
            ...     print('Spatial folding detected')
        """
        return float(np.min(jacobian_det)) < threshold
