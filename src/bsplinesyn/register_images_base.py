"""Base class for image registration algorithms.

This module provides the RegisterImagesBase class that serves as a foundation
for implementing image registration algorithms on top of ITK images.

The base class handles common operations including:
- Fixed and moving image management (one or more images per side)
- Binary mask processing and dilation
- Standardized registration interface

Concrete implementations should inherit from RegisterImagesBase and implement
the registration_method() method with their specific algorithm.
"""

import logging

from bsplinesyn.bsplinesyn_base import BSplineSyNBase
from bsplinesyn.image_tools import ImageTools
from bsplinesyn.registration_exceptions import DomainMismatchError


class RegisterImagesBase(BSplineSyNBase):
    """Base class for deformable image registration algorithms.

    Attributes:
        fixed_images (list[itk.image]): The target/reference images. The
            first one defines the registration domain.
        fixed_image_mask (itk.image): Binary mask for the fixed image ROI
        mask_dilation_mm (float): Mask dilation amount in millimeters
        number_of_iterations (int | list[int]): Iterations per level

    Example:
        >>> class MyRegistration(RegisterImagesBase):
        ...     def registration_method(self, moving_images, **kwargs):
        ...         # Implement specific registration algorithm
        ...         return {"phi_FM": tfm_backward, "phi_MF": tfm_forward, "loss": 0}
        >>>
        >>> registrar = MyRegistration()
        >>> registrar.set_fixed_image(reference_image)
        >>> result = registrar.register(moving_image)
        >>> phi_FM = result["phi_FM"]
        >>> phi_MF = result["phi_MF"]
    """

    def __init__(self, log_level: int | str = logging.INFO):
        """Initialize the base image registration class.

        Args:
            log_level: Logging level (default: logging.INFO)
        """
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

        self.image_tools = ImageTools(log_level=log_level)

        self.fixed_images = None
        self.fixed_image_mask = None

        self.moving_images = None
        self.moving_image_mask = None

        self.mask_dilation_mm = 0.0

        self.number_of_iterations = 10

    @property
    def fixed_image(self):
        """The first fixed image, which defines the registration domain."""
        if self.fixed_images is None:
            return None
        return self.fixed_images[0]

    def set_number_of_iterations(self, number_of_iterations):
        """Set the number of iterations for registration.

        Args:
            number_of_iterations (int | list[int]): Iterations for every
                level, or one value per level.
        """
        values = (
            number_of_iterations
            if isinstance(number_of_iterations, (list, tuple))
            else [number_of_iterations]
        )
        if any(n < 0 for n in values):
            self.log_error("Invalid number of iterations: %s", number_of_iterations)
            raise ValueError(f"Invalid number of iterations: {number_of_iterations}")
        self.number_of_iterations = number_of_iterations

    def set_fixed_image(self, fixed_image):
        """Set the fixed/target image(s) for registration.

        The first fixed image serves as the reference coordinate system to
        which all moving images will be aligned. Setting new fixed images
        clears the fixed mask.

        Args:
            fixed_image (itk.image | list[itk.image]): 2D or 3D reference
                image, or one image per image pair (all of the same
                dimension)

        Example:
            >>> registrar.set_fixed_image(reference_frame)
        """
        images = list(fixed_image) if isinstance(fixed_image, (list, tuple)) else [
            fixed_image
        ]
        if len(images) == 0:
            self.log_error("At least one fixed image is required")
            raise ValueError("At least one fixed image is required")
        self._check_dimensions(images, "fixed")
        self.fixed_images = images
        self.fixed_image_mask = None

    def set_mask_dilation(self, mask_dilation_mm):
        """Set the dilation of the fixed and moving image masks.

        Args:
            mask_dilation_mm (float): The dilation in millimeters.
        """
        if mask_dilation_mm < 0:
            self.log_error("Mask dilation must be non-negative: %s", mask_dilation_mm)
            raise ValueError(f"Mask dilation must be non-negative: {mask_dilation_mm}")
        self.mask_dilation_mm = mask_dilation_mm

    def _check_dimensions(self, images, name: str) -> int:
        dimensions = {image.GetImageDimension() for image in images}
        if len(dimensions) != 1:
            raise DomainMismatchError(
                f"All {name} images must have the same dimension, got {sorted(dimensions)}"
            )
        dimension = dimensions.pop()
        if dimension not in (2, 3):
            raise DomainMismatchError(f"Unsupported {name} image dimension: {dimension}")
        return dimension

    def _binarize_mask(self, mask_image, reference_image):
        if mask_image.GetImageDimension() != reference_image.GetImageDimension():
            raise DomainMismatchError(
                f"Mask dimension {mask_image.GetImageDimension()} does not match "
                f"image dimension {reference_image.GetImageDimension()}"
            )
        mask_arr, grid = self.image_tools.binarize_mask(
            mask_image, dilation_mm=self.mask_dilation_mm
        )
        return self.image_tools.convert_array_to_itk_image(mask_arr, grid)

    def set_fixed_image_mask(self, fixed_image_mask):
        """Set a binary mask for the fixed image region of interest.

        The mask constrains registration to specific regions. It is converted
        to binary format (non-zero is foreground) and, if mask_dilation_mm is
        set, dilated by the specified amount.

        Args:
            fixed_image_mask (itk.image): Binary or label mask defining the
                region of interest in the fixed image, or None to clear it

        Example:
            >>> registrar.set_fixed_image_mask(heart_mask)
        """
        if fixed_image_mask is None:
            self.fixed_image_mask = None
            return

        if self.fixed_images is None:
            self.log_error("Set the fixed image before the fixed image mask")
            raise ValueError("Set the fixed image before the fixed image mask")

        self.fixed_image_mask = self._binarize_mask(fixed_image_mask, self.fixed_image)

    def registration_method(
        self,
        moving_images,
        moving_image_mask=None,
        initial_phi_MF=None,
    ) -> dict:
        """Main registration method to align moving images to fixed images.

        Args:
            moving_images (list[itk.image]): Moving images, one per fixed image
            moving_image_mask (itk.image, optional): Binary mask for moving image ROI
            initial_phi_MF (itk.Transform, optional): Initial transformation
                used to warp the moving image into fixed space
        Returns:
            dict: Dictionary containing:
                - "phi_FM": Used to warp fixed image into moving space
                - "phi_MF": Used to warp moving image into fixed space
                - "loss": Final metric value
        """
        raise NotImplementedError("This method should be implemented by the subclass.")

    def register(
        self,
        moving_image,
        moving_image_mask=None,
        initial_phi_MF=None,
    ) -> dict:
        """Register moving image(s) to the fixed image(s).

        Args:
            moving_image (itk.image | list[itk.image]): Image(s) to be
                registered to the fixed image(s)
            moving_image_mask (itk.image, optional): Binary mask for moving image ROI
            initial_phi_MF (itk.Transform, optional): Initial transformation
                used to warp the moving image into fixed space

        Returns:
            dict: The result of registration_method(); always contains
                "phi_FM", "phi_MF" and "loss".

        Raises:
            ValueError: If the fixed image is not set
            DomainMismatchError: If image dimensions or counts do not match
        """
        if self.fixed_images is None:
            self.log_error("Fixed image is not set")
            raise ValueError("Fixed image is not set")

        moving_images = (
            list(moving_image)
            if isinstance(moving_image, (list, tuple))
            else [moving_image]
        )
        if len(moving_images) != len(self.fixed_images):
            raise DomainMismatchError(
                f"Got {len(moving_images)} moving images for "
                f"{len(self.fixed_images)} fixed images"
            )
        fixed_dimension = self._check_dimensions(self.fixed_images, "fixed")
        moving_dimension = self._check_dimensions(moving_images, "moving")
        if fixed_dimension != moving_dimension:
            raise DomainMismatchError(
                f"Fixed images are {fixed_dimension}D but moving images are "
                f"{moving_dimension}D"
            )

        new_moving_image_mask = moving_image_mask
        if moving_image_mask is not None:
            new_moving_image_mask = self._binarize_mask(
                moving_image_mask, moving_images[0]
            )

        self.moving_images = moving_images
        self.moving_image_mask = new_moving_image_mask

        result = self.registration_method(
            moving_images,
            moving_image_mask=new_moving_image_mask,
            initial_phi_MF=initial_phi_MF,
        )

        for key in ("phi_FM", "phi_MF", "loss"):
            if key not in result:
                raise KeyError(f"registration_method() did not return '{key}'")

        return result
