#!/usr/bin/env python
"""
Tests for TransformTools conversions and diagnostics.
"""

import itk
import numpy as np
import pytest

from bsplinesyn.registration_exceptions import DomainMismatchError


def translation(offset):
    tfm = itk.TranslationTransform[itk.D, len(offset)].New()
    tfm.SetOffset([float(o) for o in offset])
    return tfm


class TestTransformTools:
    """Test suite for TransformTools."""

    def test_translation_to_field(self, transform_tools, grid_2d):
        field = transform_tools.convert_transform_to_displacement_field(
            translation([2.0, -1.0]), grid_2d
        )
        assert field.shape == (32, 32, 2)
        assert np.allclose(field[..., 0], 2.0)
        assert np.allclose(field[..., 1], -1.0)
        print("\n✓ Translation sampled as a constant field")

    def test_transform_list_is_unwrapped(self, transform_tools, grid_2d):
        field = transform_tools.convert_transform_to_displacement_field(
            [translation([1.0, 0.0])], grid_2d
        )
        assert np.allclose(field[..., 0], 1.0)

        with pytest.raises(ValueError):
            transform_tools.convert_transform_to_displacement_field(
                [translation([1.0, 0.0]), translation([1.0, 0.0])], grid_2d
            )

    def test_dimension_mismatch(self, transform_tools, grid_2d):
        with pytest.raises(DomainMismatchError):
            transform_tools.convert_transform_to_displacement_field(
                translation([1.0, 0.0, 0.0]), grid_2d
            )

    def test_field_to_transform(self, transform_tools, grid_3d):
        field = np.zeros((*grid_3d.shape, 3))
        field[..., 0] = 1.5
        field[..., 2] = -0.5
        inverse = -field
        tfm = transform_tools.convert_field_to_displacement_field_transform(
            field, grid_3d, inverse
        )

        point = [0.0, 10.0, 20.0]
        assert np.allclose(list(tfm.TransformPoint(point)), [1.5, 10.0, 19.5])
        assert np.allclose(
            itk.array_from_image(tfm.GetInverseDisplacementField()), inverse
        )

        # The field can be sampled back through the generic path
        resampled = transform_tools.convert_transform_to_displacement_field(tfm, grid_3d)
        assert np.allclose(resampled, field, atol=1e-5)

    def test_invert_displacement_field(self, transform_tools, grid_2d):
        field = np.zeros((32, 32, 2))
        field[..., 0] = 0.5
        inverse = transform_tools.invert_displacement_field(field, grid_2d)
        assert inverse.shape == (32, 32, 2)
        assert np.isclose(inverse[16, 16, 0], -0.5, atol=0.05)
        assert abs(inverse[16, 16, 1]) < 0.05

    def test_jacobian_determinant(self, transform_tools, grid_2d):
        identity = transform_tools.compute_jacobian_determinant_from_field(
            np.zeros((32, 32, 2)), grid_2d
        )
        assert identity.shape == (32, 32)
        assert np.allclose(identity, 1.0)

        stretch = np.zeros((32, 32, 2))
        stretch[..., 0] = 0.1 * np.arange(32, dtype=np.float64)[np.newaxis, :]
        jacobian = transform_tools.compute_jacobian_determinant_from_field(stretch, grid_2d)
        assert np.allclose(jacobian[5:-5, 5:-5], 1.1, atol=1e-4)
        assert not transform_tools.detect_folding_in_field(jacobian)

        fold = np.zeros((32, 32, 2))
        fold[..., 0] = -1.5 * np.arange(32, dtype=np.float64)[np.newaxis, :]
        folded = transform_tools.compute_jacobian_determinant_from_field(fold, grid_2d)
        assert transform_tools.detect_folding_in_field(folded)
        print("\n✓ Folding detected, min Jacobian:", float(folded.min()))

    def test_transform_image(self, transform_tools, itk_image_factory):
        ramp = np.tile(np.arange(32, dtype=np.float32), (32, 1))
        image = itk_image_factory(ramp)
        for method in ("linear", "nearest"):
            warped = transform_tools.transform_image(
                image, translation([2.0, 0.0]), image, interpolation_method=method
            )
            warped_arr = itk.array_from_image(warped)
            # Output samples the input at x + 2
            assert np.allclose(warped_arr[10, 10], ramp[10, 12])

        with pytest.raises(ValueError):
            transform_tools.transform_image(image, translation([0.0, 0.0]), image, "cubic")
