"""Step/window sizing for the sliding low-quantile baseline estimator."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

from kic_app.engine.audit import DiagnosticSink, emit
from kic_app.engine.correction_params import CorrectionParameters
from kic_app.engine.errors import RegressionFailure


def _round_half_up(value: float) -> int:
    return int(math.floor(float(value) + 0.5))


@dataclass(frozen=True)
class WindowPlan:
    step_size: int
    window_size: int

    def is_legal(self, signal_length: int) -> bool:
        return 1 <= self.step_size < self.window_size <= signal_length

    def check(self, signal_length: int) -> "WindowPlan":
        if not self.is_legal(signal_length):
            raise RegressionFailure(
                f"Illegal window plan step={self.step_size}, window={self.window_size} "
                f"for signal length {signal_length}"
            )
        return self


def _window_for_step(step: int, params: CorrectionParameters) -> int:
    window = max(params.min_window_size, _round_half_up(step * params.window_size_factor))
    if window <= step:
        window = max(params.min_window_size, _round_half_up(step * 1.5))
    return window


def size_windows(
    peak_distance: float,
    signal_length: int,
    params: CorrectionParameters,
    *,
    sink: Optional[DiagnosticSink] = None,
) -> WindowPlan:
    """Map a peak distance to a legal ``(step_size, window_size)`` plan.

    The plan always satisfies ``1 <= step < window <= signal_length``; the
    number of windows is bounded by ``params.max_num_windows``.
    """

    n = int(signal_length)
    if n < 2:
        raise ValueError(f"Window sizing needs at least 2 samples, got {n}")

    step = max(1, params.min_step_size, _round_half_up(peak_distance * params.step_size_factor))
    window = _window_for_step(step, params)

    estimated_windows = n / step
    if estimated_windows > params.max_num_windows:
        original_step = step
        step = max(1, math.ceil(n / params.max_num_windows))
        window = _window_for_step(step, params)
        emit(
            sink,
            logging.DEBUG,
            f"Baseline correction: estimated windows ({estimated_windows:.1f}) exceeded max "
            f"({params.max_num_windows}); stepSize {original_step} -> {step}, windowSize {window}",
        )

    if window > n:
        emit(
            sink,
            logging.DEBUG,
            f"Baseline correction: windowSize ({window}) exceeds signal length ({n}); clamping",
        )
        window = n
        if step >= window:
            step = max(1, math.floor(window / 1.5))

    return WindowPlan(step_size=step, window_size=window).check(n)


def iter_windows(signal_length: int, plan: WindowPlan) -> Iterator[Tuple[int, int]]:
    """Yield ``(start, stop)`` slices covering ``[0, signal_length)``.

    The final window is clipped to the signal end instead of being dropped.
    """

    start = 0
    while True:
        stop = min(start + plan.window_size, signal_length)
        yield start, stop
        if stop >= signal_length:
            return
        start += plan.step_size
