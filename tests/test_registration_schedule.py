#!/usr/bin/env python
"""
Tests for the multi-resolution schedule.
"""

import pytest

from bsplinesyn.registration_exceptions import DomainMismatchError
from bsplinesyn.registration_schedule import LevelSchedule, MultiResolutionSchedule


class TestLevelSchedule:
    """Test suite for LevelSchedule."""

    def test_defaults(self):
        level = LevelSchedule(shrink_factor=2, number_of_iterations=10)
        assert level.update_mesh(3) == [4, 4, 4]
        assert level.total_field_mesh(2) == [0, 0]
        assert not level.smooths_total_field()

    def test_mesh_per_axis(self):
        level = LevelSchedule(1, 5, mesh_resolution=(2, 3), total_field_mesh_resolution=[0, 6])
        assert level.update_mesh(2) == [2, 3]
        assert level.smooths_total_field()
        with pytest.raises(DomainMismatchError):
            level.update_mesh(3)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"shrink_factor": 0, "number_of_iterations": 1},
            {"shrink_factor": 1.5, "number_of_iterations": 1},
            {"shrink_factor": 1, "number_of_iterations": -1},
            {"shrink_factor": 1, "number_of_iterations": 1, "spline_order": 0},
            {"shrink_factor": 1, "number_of_iterations": 1, "smoothing_sigma": -1.0},
            {"shrink_factor": 1, "number_of_iterations": 1, "mesh_resolution": -2},
        ],
    )
    def test_invalid_levels(self, kwargs):
        with pytest.raises(ValueError):
            LevelSchedule(**kwargs)


class TestMultiResolutionSchedule:
    """Test suite for MultiResolutionSchedule."""

    def test_from_lists(self):
        schedule = MultiResolutionSchedule.from_lists(
            shrink_factors=[4, 2, 1],
            number_of_iterations=[40, 20, 10],
            mesh_resolutions=[4, [4, 6], 8],
            smoothing_sigmas=[2.0, 1.0, 0.0],
        )
        assert len(schedule) == 3
        assert schedule.number_of_levels == 3
        assert [level.shrink_factor for level in schedule] == [4, 2, 1]
        assert schedule[1].mesh_resolution == [4, 6]
        assert schedule[2].smoothing_sigma == 0.0
        print("\n✓ Schedule with", len(schedule), "levels")

    def test_levels_must_go_coarse_to_fine(self):
        with pytest.raises(ValueError):
            MultiResolutionSchedule.from_lists([1, 2], [10, 10])

    def test_requires_a_level(self):
        with pytest.raises(ValueError):
            MultiResolutionSchedule(levels=[])

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            MultiResolutionSchedule.from_lists([2, 1], [10])
        with pytest.raises(ValueError):
            MultiResolutionSchedule.from_lists([2, 1], [10, 10], mesh_resolutions=[4])

    def test_check_dimension(self):
        schedule = MultiResolutionSchedule.from_lists(
            [2, 1], [10, 10], mesh_resolutions=[[4, 4, 4], 4]
        )
        schedule.check_dimension(3)
        with pytest.raises(DomainMismatchError):
            schedule.check_dimension(2)

    def test_dict_round_trip(self):
        schedule = MultiResolutionSchedule.from_lists(
            [2, 1],
            [15, 5],
            mesh_resolutions=[3, [4, 5]],
            smoothing_sigmas=[1.0, 0.0],
            total_field_mesh_resolutions=[0, 2],
            smoothing_sigmas_in_physical_units=True,
        )
        restored = MultiResolutionSchedule.from_dict(schedule.to_dict())
        assert restored == schedule

    def test_from_dict_with_lists(self):
        schedule = MultiResolutionSchedule.from_dict(
            {
                "shrink_factors": [2, 1],
                "number_of_iterations": [10, 10],
                "smoothing_sigmas": [1.0, 0.0],
            }
        )
        assert schedule[0].smoothing_sigma == 1.0
        assert not schedule.smoothing_sigmas_in_physical_units
