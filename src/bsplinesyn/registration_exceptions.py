"""Errors and warnings raised by the BSplineSyN registration core.

Structural problems (incompatible image, mask or transform dimensionality)
abort a run before any iteration starts. Numerical edge cases met during an
iteration are recovered where they happen and counted in the run status.
"""


class BSplineSyNError(Exception):
    """Root of all BSplineSyN exceptions."""


class DomainMismatchError(BSplineSyNError, ValueError):
    """Images, masks, schedule or initial transform disagree on dimensionality.

    Fatal: raised before the first iteration, no partial run is attempted.
    """


class DegenerateFitError(BSplineSyNError):
    """A B-spline fit has no voxel carrying weight.

    Raised inside BSplineSmoothingFitter and recovered there by substituting
    a zero contribution for the affected fit.
    """


class RegistrationCancelled(BSplineSyNError):
    """Cooperative cancellation was requested between two iterations."""


class BoundaryClampWarning(UserWarning):
    """Displacement samples fell outside the field domain and were clamped."""


class NonConvergenceWarning(UserWarning):
    """A level used its full iteration budget without converging."""
