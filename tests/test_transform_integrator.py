#!/usr/bin/env python
"""
Tests for the TransformIntegrator update step.
"""

import numpy as np
import pytest

from bsplinesyn.displacement_field import DisplacementField
from bsplinesyn.registration_exceptions import BSplineSyNError, DomainMismatchError
from bsplinesyn.transform_integrator import IntegrationReport, TransformIntegrator


@pytest.fixture
def integrator():
    return TransformIntegrator()


@pytest.fixture
def halves(grid_2d):
    return DisplacementField.identity(grid_2d), DisplacementField.identity(grid_2d)


def x_update(grid, value=1.0):
    update = np.zeros((*grid.shape, grid.dimension))
    update[..., 0] = value
    return update


class TestTransformIntegrator:
    """Test suite for TransformIntegrator."""

    def test_zero_update_leaves_halves_unchanged(self, integrator, halves, grid_2d):
        fixed_to_middle, moving_to_middle = halves
        report = integrator.integrate(
            fixed_to_middle,
            moving_to_middle,
            np.zeros((32, 32, 2)),
            time_step=0.25,
            mesh_resolution=[4, 4],
        )
        assert isinstance(report, IntegrationReport)
        assert report.update_norm == 0.0
        assert not np.any(fixed_to_middle.field)
        assert not np.any(moving_to_middle.field)
        print("\n✓ Zero update is a no-op")

    def test_constant_update_moves_halves_apart(self, integrator, halves, grid_2d):
        """The fixed half gets +u and the moving half -u."""
        fixed_to_middle, moving_to_middle = halves
        report = integrator.integrate(
            fixed_to_middle,
            moving_to_middle,
            x_update(grid_2d, 3.0),
            time_step=0.25,
            mesh_resolution=[4, 4],
        )
        assert np.isclose(fixed_to_middle.field[16, 16, 0], 0.25, atol=1e-3)
        assert np.isclose(moving_to_middle.field[16, 16, 0], -0.25, atol=1e-3)
        assert np.isclose(fixed_to_middle.inverse_field[16, 16, 0], -0.25, atol=1e-3)
        assert report.inverse_consistency_error < 0.05
        print(f"\n✓ Inverse consistency after one step: {report.inverse_consistency_error:.4f}")

    def test_boundary_is_fixed(self, integrator, halves, grid_2d):
        fixed_to_middle, moving_to_middle = halves
        integrator.integrate(
            fixed_to_middle,
            moving_to_middle,
            x_update(grid_2d),
            time_step=0.25,
            mesh_resolution=[4, 4],
        )
        assert not np.any(fixed_to_middle.field[0])
        assert not np.any(fixed_to_middle.field[:, -1])

        integrator.set_zero_boundary_update(False)
        fixed_to_middle, moving_to_middle = (
            DisplacementField.identity(grid_2d),
            DisplacementField.identity(grid_2d),
        )
        integrator.integrate(
            fixed_to_middle,
            moving_to_middle,
            x_update(grid_2d),
            time_step=0.25,
            mesh_resolution=[4, 4],
        )
        assert np.allclose(fixed_to_middle.field[0, :, 0], 0.25)

    def test_steps_accumulate(self, integrator, halves, grid_2d):
        fixed_to_middle, moving_to_middle = halves
        for _ in range(4):
            integrator.integrate(
                fixed_to_middle,
                moving_to_middle,
                x_update(grid_2d),
                time_step=0.25,
                mesh_resolution=[4, 4],
            )
        assert np.isclose(fixed_to_middle.field[16, 16, 0], 1.0, atol=1e-2)
        assert np.isclose(moving_to_middle.field[16, 16, 0], -1.0, atol=1e-2)

    def test_scale_update(self, integrator, grid_2d):
        update = np.zeros((32, 32, 2))
        update[10, 10] = [3.0, 4.0]
        update[20, 20] = [1.0, 0.0]
        scaled, norm = integrator.scale_update(update, grid_2d, 0.5)
        assert np.isclose(norm, 5.0)
        assert np.isclose(grid_2d.voxel_norm(scaled).max(), 0.5)
        assert np.allclose(scaled[20, 20], [0.1, 0.0])

        zeros, norm = integrator.scale_update(np.zeros((32, 32, 2)), grid_2d, 0.5)
        assert norm == 0.0
        assert not np.any(zeros)

    def test_failed_step_commits_nothing(self, integrator, halves, grid_2d, monkeypatch):
        """An error in the moving half leaves the fixed half untouched."""
        fixed_to_middle, moving_to_middle = halves

        def failing_invert(*args, **kwargs):
            raise BSplineSyNError("inversion failed")

        monkeypatch.setattr(moving_to_middle, "invert", failing_invert)
        with pytest.raises(BSplineSyNError):
            integrator.integrate(
                fixed_to_middle,
                moving_to_middle,
                x_update(grid_2d),
                time_step=0.25,
                mesh_resolution=[4, 4],
            )
        assert not np.any(fixed_to_middle.field)
        assert not np.any(fixed_to_middle.inverse_field)
        print("\n✓ Failed step left both halves unchanged")

    def test_drift_triggers_exact_reinversion(self, integrator, halves, grid_2d):
        fixed_to_middle, moving_to_middle = halves
        integrator.set_inverse_drift_tolerance(1e-12)
        report = integrator.integrate(
            fixed_to_middle,
            moving_to_middle,
            x_update(grid_2d),
            time_step=0.25,
            mesh_resolution=[4, 4],
        )
        assert report.reinverted
        assert integrator.reinversion_count == 2
        assert np.isclose(fixed_to_middle.inverse_field[16, 16, 0], -0.25, atol=1e-2)

    def test_total_field_smoothing(self, integrator, grid_2d):
        fields = {}
        for total_mesh in ([0, 0], [1, 1]):
            fixed_to_middle = DisplacementField.identity(grid_2d)
            moving_to_middle = DisplacementField.identity(grid_2d)
            integrator.integrate(
                fixed_to_middle,
                moving_to_middle,
                x_update(grid_2d),
                time_step=0.25,
                mesh_resolution=[4, 4],
                total_field_mesh_resolution=total_mesh,
            )
            fields[tuple(total_mesh)] = fixed_to_middle.field

        # An all-zero lattice disables total-field smoothing
        assert not np.any(fields[(0, 0)][0])
        # A coarse lattice spreads the field over the zeroed boundary
        assert abs(fields[(1, 1)][0, 16, 0]) > 1e-6
        assert fields[(1, 1)][16, 16, 0] > 0.0

    def test_weighted_update(self, integrator, halves, grid_2d):
        fixed_to_middle, moving_to_middle = halves
        update = x_update(grid_2d)
        update[:, 16:, 0] = -50.0
        weights = np.zeros(grid_2d.shape)
        weights[:, :16] = 1.0
        integrator.integrate(
            fixed_to_middle,
            moving_to_middle,
            update,
            time_step=0.25,
            mesh_resolution=[4, 4],
            weight_mask=weights,
        )
        assert fixed_to_middle.field[16, 8, 0] > 0.0

    def test_invalid_arguments(self, integrator, halves, grid_2d):
        fixed_to_middle, moving_to_middle = halves
        with pytest.raises(ValueError):
            integrator.integrate(
                fixed_to_middle, moving_to_middle, x_update(grid_2d), 0.0, [4, 4]
            )
        with pytest.raises(DomainMismatchError):
            integrator.integrate(
                fixed_to_middle, moving_to_middle, np.zeros((32, 32, 3)), 0.25, [4, 4]
            )
        with pytest.raises(DomainMismatchError):
            integrator.integrate(
                fixed_to_middle,
                DisplacementField.identity(grid_2d.shrink(2)),
                x_update(grid_2d),
                0.25,
                [4, 4],
            )
        with pytest.raises(ValueError):
            integrator.set_inverse_drift_tolerance(0.0)

    def test_reversed_update_halves_step_length(self, integrator, halves, grid_2d):
        """Stepping back over a minimum shortens the step."""
        fixed_to_middle, moving_to_middle = halves
        steps = []
        for value in (1.0, -1.0, -1.0):
            report = integrator.integrate(
                fixed_to_middle,
                moving_to_middle,
                x_update(grid_2d, value),
                time_step=0.25,
                mesh_resolution=[4, 4],
            )
            steps.append(report.step_length)
        assert steps == [0.25, 0.125, 0.125]
        assert integrator.step_length == 0.125
        assert np.isclose(fixed_to_middle.field[16, 16, 0], 0.0, atol=1e-3)
        print("\n✓ Step lengths:", steps)

    def test_step_length_is_capped_by_time_step(self, integrator, halves, grid_2d):
        fixed_to_middle, moving_to_middle = halves
        integrator.reset_step_length(1.0)
        report = integrator.integrate(
            fixed_to_middle, moving_to_middle, x_update(grid_2d), 0.25, [4, 4]
        )
        assert report.step_length == 0.25

        integrator.reset_step_length(0.1)
        report = integrator.integrate(
            fixed_to_middle, moving_to_middle, x_update(grid_2d), 0.25, [4, 4]
        )
        assert np.isclose(report.step_length, 0.1)
        assert np.isclose(fixed_to_middle.field[16, 16, 0], 0.35, atol=1e-3)

    def test_reset_forgets_the_previous_direction(self, integrator, halves, grid_2d):
        fixed_to_middle, moving_to_middle = halves
        integrator.integrate(
            fixed_to_middle, moving_to_middle, x_update(grid_2d, 1.0), 0.25, [4, 4]
        )
        integrator.reset_step_length()
        report = integrator.integrate(
            fixed_to_middle, moving_to_middle, x_update(grid_2d, -1.0), 0.25, [4, 4]
        )
        assert report.step_length == 0.25

    def test_relaxation_factor_of_one_keeps_the_step(self, integrator, halves, grid_2d):
        fixed_to_middle, moving_to_middle = halves
        integrator.set_relaxation_factor(1.0)
        steps = [
            integrator.integrate(
                fixed_to_middle, moving_to_middle, x_update(grid_2d, value), 0.25, [4, 4]
            ).step_length
            for value in (1.0, -1.0, 1.0)
        ]
        assert steps == [0.25, 0.25, 0.25]

        with pytest.raises(ValueError):
            integrator.set_relaxation_factor(0.0)
        with pytest.raises(ValueError):
            integrator.set_relaxation_factor(1.5)

    def test_zero_update_reports_no_step(self, integrator, halves, grid_2d):
        fixed_to_middle, moving_to_middle = halves
        integrator.integrate(
            fixed_to_middle, moving_to_middle, x_update(grid_2d), 0.25, [4, 4]
        )
        report = integrator.integrate(
            fixed_to_middle, moving_to_middle, np.zeros((32, 32, 2)), 0.25, [4, 4]
        )
        assert report.step_length == 0.0
        # A zero update is no reversal
        report = integrator.integrate(
            fixed_to_middle, moving_to_middle, x_update(grid_2d), 0.25, [4, 4]
        )
        assert report.step_length == 0.25
