"""Exception taxonomy for the baseline correction engine.

Only :class:`InputShapeError` ever leaves :func:`kic_app.engine.baseline.correct_baseline`;
the remaining classes are raised and absorbed inside the engine so that a bad
trace degrades to a shape-correct result instead of halting a batch.
"""

from __future__ import annotations


class BaselineCorrectionError(Exception):
    """Base class for baseline correction failures."""


class InputShapeError(BaselineCorrectionError, ValueError):
    """Raised when ``locations``/``values`` are malformed or mismatched."""


class EstimationFailure(BaselineCorrectionError):
    """Peak detection failed or returned too few peaks to size windows."""

    def __init__(self, message: str, peak_count: int = 0):
        self.peak_count = peak_count
        super().__init__(message)


class RegressionFailure(BaselineCorrectionError):
    """A local baseline estimation pass could not produce a valid baseline."""


class ConvergenceNotReached(UserWarning):
    """Iteration cap reached before the convergence threshold was met."""

    def __init__(self, iterations: int, amplitude: float, reference: float):
        self.iterations = iterations
        self.amplitude = amplitude
        self.reference = reference
        super().__init__(
            f"No convergence after {iterations} pass(es): last correction amplitude "
            f"{amplitude:.4g} vs reference {reference:.4g}"
        )
