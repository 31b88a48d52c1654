"""Windowed convergence detection for iterative registration.

The monitor keeps the most recent metric values of the active level and
fits a least-squares line through them. The convergence value is the slope
of that line normalized by the window's total magnitude, i.e. the relative
change of the metric per iteration. The optimization also stops once the
optimizer's step length has been relaxed below a minimum.
"""

import logging
from collections import deque

import numpy as np

from bsplinesyn.bsplinesyn_base import BSplineSyNBase


class ConvergenceMonitor(BSplineSyNBase):
    """Decide convergence from a sliding window of metric values.

    Attributes:
        window_size (int): Number of most recent values considered.
        convergence_threshold (float): Convergence value below which the
            optimization is considered converged.
        minimum_step_length (float): Step length, in voxels, below which a
            full window is considered converged.

    Example:
        >>> monitor = ConvergenceMonitor(window_size=10, convergence_threshold=1e-6)
        >>> for value in metric_values:
        ...     monitor.add_value(value)
        ...     if monitor.is_converged():
        ...         break
    """

    def __init__(
        self,
        window_size: int = 10,
        convergence_threshold: float = 1e-6,
        minimum_step_length: float = 0.01,
        log_level: int | str = logging.INFO,
    ):
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

        if window_size < 2:
            self.log_error("Window size must be at least 2, got %s", window_size)
            raise ValueError(f"Window size must be at least 2, got {window_size}")
        if convergence_threshold < 0:
            self.log_error(
                "Convergence threshold must be non-negative, got %s",
                convergence_threshold,
            )
            raise ValueError(
                f"Convergence threshold must be non-negative, got {convergence_threshold}"
            )

        if minimum_step_length < 0:
            self.log_error(
                "Minimum step length must be non-negative, got %s", minimum_step_length
            )
            raise ValueError(
                f"Minimum step length must be non-negative, got {minimum_step_length}"
            )

        self.window_size = window_size
        self.convergence_threshold = convergence_threshold
        self.minimum_step_length = minimum_step_length
        self._values = deque(maxlen=window_size)
        self._step_length = None

    def reset(self) -> None:
        """Forget all values (called at the start of every level)."""
        self._values.clear()
        self._step_length = None

    def add_value(self, value: float, step_length: float | None = None) -> None:
        self._values.append(float(value))
        if step_length is not None:
            self._step_length = float(step_length)

    @property
    def number_of_values(self) -> int:
        return len(self._values)

    def get_convergence_value(self) -> float:
        """Relative slope of the value window.

        Returns:
            float: ``|slope| / sum(|values|)`` over the window, 0 for a
            window of identical values, and ``inf`` while fewer than
            ``window_size`` values are available.
        """
        if len(self._values) < self.window_size:
            return np.inf

        window = np.array(self._values, dtype=np.float64)
        if np.all(window == window[0]):
            return 0.0

        steps = np.arange(self.window_size, dtype=np.float64)
        steps -= steps.mean()
        slope = float(np.dot(steps, window - window.mean()) / np.dot(steps, steps))
        magnitude = float(np.sum(np.abs(window)))
        if magnitude <= np.finfo(np.float64).tiny:
            return np.inf
        return abs(slope) / magnitude

    def is_converged(self) -> bool:
        if len(self._values) < self.window_size:
            return False
        if self._step_length is not None and self._step_length < self.minimum_step_length:
            return True
        return self.get_convergence_value() < self.convergence_threshold
