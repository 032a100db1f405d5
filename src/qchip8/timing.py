"""Fixed-timestep accumulator for driving the machine at 60 Hz.

Real elapsed time is accumulated and converted into whole logical steps, so
the number of steps taken depends only on total elapsed time, never on how
often the host happens to call in.

Totals are kept as exact fractions and steps are counted from the running
total rather than by repeated subtraction, so float rounding in ``1/60``
cannot drop or add a step depending on how the time was split up.
"""

import math
from fractions import Fraction

UPDATE_TIMESTEP = 1.0 / 60.0

# Tolerance, in steps, for elapsed values that land a hair below a boundary
STEP_TOLERANCE = Fraction(1, 10 ** 9)


class FixedTimestep:
    """Converts elapsed wall-clock time into a count of logical steps.

    Attributes:
        timestep: Seconds per logical step
        total: Exact elapsed seconds since the last reset
        steps_taken: Steps handed out since the last reset
    """

    def __init__(self, timestep: float = UPDATE_TIMESTEP):
        if timestep <= 0:
            raise ValueError(f"timestep must be positive, got {timestep}")
        self.timestep = timestep
        self._step = Fraction(timestep)
        self.reset()

    @property
    def accumulator(self) -> float:
        """Elapsed time not yet converted into steps."""
        return max(0.0, float(self.total - self.steps_taken * self._step))

    def advance(self, elapsed: float) -> int:
        """Add elapsed seconds and return how many steps are now due.

        Args:
            elapsed: Seconds since the previous call (must be >= 0)

        Returns:
            Number of whole timesteps consumed from the accumulator
        """
        if elapsed < 0:
            raise ValueError(f"elapsed time cannot be negative: {elapsed}")
        self.total += Fraction(elapsed)
        due = math.floor(self.total / self._step + STEP_TOLERANCE)
        steps = max(0, due - self.steps_taken)
        self.steps_taken += steps
        return steps

    def give_back(self, steps: int) -> None:
        """Return steps handed out by ``advance`` that were not run."""
        if not 0 <= steps <= self.steps_taken:
            raise ValueError(f"cannot give back {steps} step(s)")
        self.steps_taken -= steps

    def reset(self) -> None:
        self.total = Fraction(0)
        self.steps_taken = 0
