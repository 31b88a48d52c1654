"""
Image Tools for BSplineSyN

This module converts between ITK images, SimpleITK images and the
(numpy array, ImageGrid) pairs the registration core works on, and provides
the per-level image preprocessing.
"""

import logging
from typing import Any

import itk
import numpy as np
import SimpleITK as sitk
from numpy.typing import NDArray
from scipy import ndimage

from bsplinesyn.bsplinesyn_base import BSplineSyNBase
from bsplinesyn.image_grid import ImageGrid
from bsplinesyn.registration_exceptions import DomainMismatchError


class ImageTools(BSplineSyNBase):
    """
    Utilities for image format conversions and processing.

    Arrays follow the itk.array_from_image layout (slowest axis first, vector
    components last in physical x, y, z order). Geometry travels next to the
    array as an ImageGrid.

    Example:
        >>> tools = ImageTools()
        >>> array, grid = tools.convert_itk_image_to_array(itk_image)
        >>> image = tools.convert_array_to_itk_image(array, grid)
    """

    def __init__(self, log_level: int | str = logging.INFO) -> None:
        """Initialize ImageTools.

        Args:
            log_level: Logging level (default: logging.INFO)
        """
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

    def convert_itk_image_to_array(
        self, itk_image: itk.Image
    ) -> tuple[NDArray[np.float64], ImageGrid]:
        """Copy the pixels of a scalar ITK image and read its geometry.

        Args:
            itk_image: 2D or 3D scalar ITK image.

        Returns:
            tuple: (float64 array in (z, y, x) order, ImageGrid)
        """
        if itk_image.GetNumberOfComponentsPerPixel() != 1:
            raise DomainMismatchError("Expected a scalar image")
        grid = ImageGrid.from_itk_image(itk_image)
        array = itk.array_from_image(itk_image).astype(np.float64)
        return array, grid

    def convert_array_to_itk_image(
        self, arr_data: NDArray, grid: ImageGrid, ptype: Any = itk.F
    ) -> itk.Image:
        """Create a scalar ITK image from an array and its grid."""
        grid.check_array(arr_data)
        dtype = np.float32 if ptype == itk.F else np.float64
        itk_image = itk.image_from_array(np.ascontiguousarray(arr_data, dtype=dtype))
        self._set_geometry(itk_image, grid)
        return itk_image

    def convert_array_to_image_of_vectors(
        self,
        arr_data: NDArray[Any],
        grid: ImageGrid,
        ptype: Any = itk.D,
    ) -> Any:
        """
        Convert a numpy array to an ITK image of vector type.

        This method is needed because itk in python does not support creating
        images of vectors with itk.D precision.   Luckily array_view_from_image
        does support itk.D precision vectors.

        Args:
            arr_data: Array of shape (*grid.shape, D).
            grid: Geometry of the output image.
            ptype: Component type, itk.F or itk.D (numpy float types accepted).

        Returns:
            itk.Image[itk.Vector[ptype, D], D]
        """
        if ptype not in [itk.F, itk.D]:
            if ptype == np.float32:
                ptype = itk.F
            elif ptype == np.float64:
                ptype = itk.D
            else:
                raise ValueError(f"Unsupported component type: {ptype}")

        dim = grid.dimension
        grid.check_array(arr_data, dim)

        itk_image = itk.Image[itk.Vector[ptype, dim], dim].New()
        region = itk.ImageRegion[dim]()
        region.SetSize([int(s) for s in grid.size])
        itk_image.SetRegions(region)
        self._set_geometry(itk_image, grid)
        itk_image.Allocate()
        itk.array_view_from_image(itk_image)[:] = arr_data

        return itk_image

    def _set_geometry(self, itk_image: itk.Image, grid: ImageGrid) -> None:
        itk_image.SetSpacing([float(s) for s in grid.spacing])
        itk_image.SetOrigin([float(o) for o in grid.origin])
        itk_image.SetDirection(itk.matrix_from_array(grid.direction.copy()))

    def convert_field_to_sitk(self, field: NDArray, grid: ImageGrid) -> sitk.Image:
        """
        Convert a displacement field array to a SimpleITK vector image.

        Args:
            field: Array of shape (*grid.shape, D), physical displacements.
            grid: Geometry of the field.

        Returns:
            SimpleITK image of pixel type sitkVectorFloat64
        """
        grid.check_array(field, grid.dimension)
        sitk_image = sitk.GetImageFromArray(
            np.ascontiguousarray(field, dtype=np.float64), isVector=True
        )
        sitk_image.SetOrigin(tuple(float(o) for o in grid.origin))
        sitk_image.SetSpacing(tuple(float(s) for s in grid.spacing))
        sitk_image.SetDirection(grid.direction.flatten().tolist())
        return sitk_image

    def convert_sitk_to_field(self, sitk_image: sitk.Image) -> NDArray[np.float64]:
        """Return the (z, y, x, D) array of a SimpleITK displacement field."""
        return sitk.GetArrayFromImage(sitk_image).astype(np.float64)

    def convert_itk_image_to_sitk(self, itk_image: itk.Image) -> sitk.Image:
        """
        Convert an ITK image to a SimpleITK image.

        Origin, spacing and direction are preserved. Works with both scalar
        and vector (multi-component) images.

        Args:
            itk_image: Input ITK image (can be scalar or vector image)

        Returns:
            SimpleITK image with identical data and metadata
        """
        array = itk.array_from_image(itk_image)
        is_vector = itk_image.GetNumberOfComponentsPerPixel() > 1

        sitk_image = sitk.GetImageFromArray(array, isVector=is_vector)
        sitk_image.SetOrigin(tuple(itk.origin(itk_image)))
        sitk_image.SetSpacing(tuple(itk.spacing(itk_image)))
        direction = itk.array_from_matrix(itk_image.GetDirection())
        sitk_image.SetDirection(direction.flatten().tolist())

        return sitk_image

    def smooth_array(
        self,
        arr_data: NDArray,
        grid: ImageGrid,
        sigma: float,
        sigma_in_physical_units: bool = False,
    ) -> NDArray[np.float64]:
        """Gaussian smoothing of a scalar array.

        Args:
            arr_data: Scalar array on ``grid``.
            grid: Geometry of the array.
            sigma: Standard deviation, in voxels or in physical units.
            sigma_in_physical_units: Interpret ``sigma`` as millimeters.

        Returns:
            Smoothed float64 array (a copy even when ``sigma`` is 0).
        """
        arr_data = np.asarray(arr_data, dtype=np.float64)
        if sigma <= 0:
            return arr_data.copy()
        if sigma_in_physical_units:
            # per array axis: spacing is in (x, y, z) order
            sigmas = [sigma / s for s in grid.spacing[::-1]]
        else:
            sigmas = [sigma] * grid.dimension
        return ndimage.gaussian_filter(arr_data, sigma=sigmas, mode="nearest")

    def binarize_mask(
        self, mask_image: itk.Image, dilation_mm: float = 0.0
    ) -> tuple[NDArray[np.float64], ImageGrid]:
        """Binarize a mask (non-zero is foreground) with optional dilation.

        Args:
            mask_image: ITK mask or label image.
            dilation_mm: Dilation radius in millimeters (0 disables).

        Returns:
            tuple: (array of 0.0 / 1.0, ImageGrid of the mask)
        """
        mask_arr, grid = self.convert_itk_image_to_array(mask_image)
        mask_arr = mask_arr > 0
        if dilation_mm > 0:
            # per array axis: spacing is in (x, y, z) order
            radius = [int(np.ceil(dilation_mm / s)) for s in grid.spacing[::-1]]
            axes = np.ogrid[tuple(slice(-r, r + 1) for r in radius)]
            ellipsoid = sum(
                (axis / max(r, 1)) ** 2 for axis, r in zip(axes, radius)
            ) <= 1.0
            mask_arr = ndimage.binary_dilation(mask_arr, structure=ellipsoid)
        return mask_arr.astype(np.float64), grid
