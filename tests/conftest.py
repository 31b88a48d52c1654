#!/usr/bin/env python
"""
Shared pytest fixtures for BSplineSyN tests.

This file defines fixtures that are available to all test modules
in the tests directory via pytest's automatic fixture discovery.
All images are synthetic; no data is downloaded.
"""

from datetime import datetime, timedelta

import itk
import numpy as np
import pytest

from bsplinesyn.image_grid import ImageGrid
from bsplinesyn.image_tools import ImageTools
from bsplinesyn.transform_tools import TransformTools

# ============================================================================
# Pytest Configuration - Command Line Options
# ============================================================================

# Module-level variable to store config for access in hooks
_pytest_config = None


def pytest_addoption(parser):
    """Add custom command-line options for pytest."""
    parser.addoption(
        "--skip-slow",
        action="store_true",
        default=False,
        help="Skip slow end-to-end registration tests",
    )


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    global _pytest_config
    _pytest_config = config

    config.addinivalue_line(
        "markers",
        "slow: marks end-to-end registration tests (skip with --skip-slow)",
    )
    # Initialize test timing storage
    config._test_timings = {
        "tests": [],
        "total_time": 0.0,
        "start_time": datetime.now(),
    }


def pytest_collection_modifyitems(config, items):
    """Skip slow tests when --skip-slow is passed."""
    if not config.getoption("--skip-slow"):
        return

    skip_slow = pytest.mark.skip(reason="Skipped with --skip-slow")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


def pytest_runtest_logreport(report):
    """
    Collect test timing information after each test completes.

    We only collect timing from the 'call' phase which is the actual test execution.
    """
    if report.when == "call":
        if _pytest_config is None:
            return

        test_info = {
            "nodeid": report.nodeid,
            "duration": report.duration,
            "outcome": report.outcome,
            "is_slow": "slow" in report.keywords,
        }

        _pytest_config._test_timings["tests"].append(test_info)
        _pytest_config._test_timings["total_time"] += report.duration


def pytest_terminal_summary(terminalreporter, exitstatus, config):
    """Print a timing report after all tests complete."""
    timings = config._test_timings
    tests = timings["tests"]

    if not tests:
        return

    session_duration = datetime.now() - timings["start_time"]

    terminalreporter.write_sep("=", "TEST TIMING REPORT", bold=True)
    terminalreporter.write_line("")
    terminalreporter.write_line(f"Session Duration: {session_duration}")
    terminalreporter.write_line(
        f"Total Test Time: {timedelta(seconds=int(timings['total_time']))}"
    )
    terminalreporter.write_line(f"Total Tests: {len(tests)}")
    terminalreporter.write_line("")

    for title, selected in (
        ("Regular Tests", [t for t in tests if not t["is_slow"]]),
        ("Slow Tests", [t for t in tests if t["is_slow"]]),
    ):
        if not selected:
            continue
        terminalreporter.write_sep("-", title, bold=True)
        terminalreporter.write_line(f"Count: {len(selected)}")
        total = sum(t["duration"] for t in selected)
        terminalreporter.write_line(f"Total Time: {timedelta(seconds=int(total))}")
        terminalreporter.write_line("")

        # Show the ten longest tests
        for test in sorted(selected, key=lambda x: x["duration"], reverse=True)[:10]:
            outcome_symbol = "✓" if test["outcome"] == "passed" else "✗"
            duration_str = _format_duration(test["duration"])
            terminalreporter.write_line(
                f"  {outcome_symbol} {duration_str:>10s}  {test['nodeid']}"
            )
        terminalreporter.write_line("")

    passed = sum(1 for t in tests if t["outcome"] == "passed")
    failed = sum(1 for t in tests if t["outcome"] == "failed")
    skipped = sum(1 for t in tests if t["outcome"] == "skipped")

    terminalreporter.write_sep("-", "Test Outcomes", bold=True)
    terminalreporter.write_line(f"Passed:  {passed}")
    terminalreporter.write_line(f"Failed:  {failed}")
    terminalreporter.write_line(f"Skipped: {skipped}")
    terminalreporter.write_line("")


def _format_duration(seconds):
    """Format duration in a human-readable way."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    return f"{minutes}m {secs:.0f}s"


# ============================================================================
# Synthetic Image Helpers
# ============================================================================


def make_itk_image(array, spacing=None, origin=None):
    """Create a float ITK image from a numpy array in (z, y, x) order."""
    image = itk.image_from_array(np.ascontiguousarray(array, dtype=np.float32))
    dim = array.ndim
    image.SetSpacing([1.0] * dim if spacing is None else [float(s) for s in spacing])
    image.SetOrigin([0.0] * dim if origin is None else [float(o) for o in origin])
    return image


def gaussian_blob(shape, center, sigma):
    """Gaussian blob; ``center`` is given in array axis order."""
    axes = np.meshgrid(
        *[np.arange(n, dtype=np.float64) for n in shape], indexing="ij"
    )
    r2 = sum((axis - c) ** 2 for axis, c in zip(axes, center))
    return np.exp(-r2 / (2.0 * sigma**2))


@pytest.fixture
def itk_image_factory():
    """Return the make_itk_image helper."""
    return make_itk_image


@pytest.fixture
def grid_2d():
    """A 32x32 unit-spacing grid."""
    return ImageGrid(
        shape=(32, 32),
        spacing=[1.0, 1.0],
        origin=[0.0, 0.0],
        direction=np.eye(2),
    )


@pytest.fixture
def grid_3d():
    """A 12x14x16 grid (z, y, x) with anisotropic spacing."""
    return ImageGrid(
        shape=(12, 14, 16),
        spacing=[1.0, 1.5, 2.0],
        origin=[-5.0, 3.0, 10.0],
        direction=np.eye(3),
    )


@pytest.fixture
def blob_pair_2d():
    """Two 48x48 Gaussian blobs, the moving one shifted by +2 along x."""
    fixed = gaussian_blob((48, 48), center=(24.0, 24.0), sigma=5.0)
    moving = gaussian_blob((48, 48), center=(24.0, 26.0), sigma=5.0)
    return make_itk_image(fixed), make_itk_image(moving)


@pytest.fixture
def square_pair_2d():
    """64x64 images with an 8x8 square, the moving one shifted by (3, 0)."""
    fixed = np.zeros((64, 64), dtype=np.float32)
    fixed[28:36, 28:36] = 100.0
    moving = np.zeros((64, 64), dtype=np.float32)
    moving[28:36, 31:39] = 100.0
    return make_itk_image(fixed), make_itk_image(moving)


@pytest.fixture(scope="session")
def image_tools():
    """Create ImageTools instance."""
    return ImageTools()


@pytest.fixture(scope="session")
def transform_tools():
    """Create TransformTools instance."""
    return TransformTools()


@pytest.fixture
def blob_factory():
    """Return the gaussian_blob helper."""
    return gaussian_blob
