"""Adaptive baseline correction for optical electrophysiology traces.

:func:`correct_baseline` sizes its estimation windows from the trace's own
peak spacing, subtracts a sliding low-quantile baseline and, in the
``iterative`` strategy, repeats on the residual until the correction
amplitude falls below a percentage of the first pass.

Only malformed input raises (:class:`~kic_app.engine.errors.InputShapeError`).
Every other failure returns the identity result (corrected == input, zero
baseline) with :attr:`CorrectionResult.failure` describing what went wrong.
"""

from __future__ import annotations

import logging
from typing import List, Mapping, Optional, Sequence, Union

import numpy as np

from kic_app.engine.audit import DiagnosticSink, LoggerSink, emit
from kic_app.engine.correction_params import (
    CorrectionParameters,
    normalise_strategy,
    resolve_correction_params,
)
from kic_app.engine.errors import ConvergenceNotReached, InputShapeError
from kic_app.engine.local_regression import estimate_local_baseline
from kic_app.engine.peak_detection import PeakLocator
from kic_app.engine.period import estimate_peak_distance
from kic_app.engine.trace_model import CorrectionResult, IterationState, PassResult, PassSummary
from kic_app.engine.windowing import size_windows

__all__ = ["correct_baseline", "run_pass"]

logger = logging.getLogger(__name__)

ParamsLike = Union[CorrectionParameters, Mapping[str, object], None]


def _validate_inputs(locations: Sequence[float], values: Sequence[float]) -> tuple[np.ndarray, np.ndarray]:
    try:
        x = np.asarray(locations, dtype=float)
        y = np.asarray(values, dtype=float)
    except (TypeError, ValueError) as exc:
        raise InputShapeError(f"Locations and values must be numeric: {exc}") from exc
    if x.ndim != 1 or y.ndim != 1:
        raise InputShapeError(
            f"Locations and values must be 1-D, got shapes {x.shape} and {y.shape}"
        )
    if x.size != y.size:
        raise InputShapeError(
            f"Locations ({x.size}) and values ({y.size}) must have the same length"
        )
    return x.copy(), y.copy()


def _check_locations(x: np.ndarray) -> None:
    if not np.all(np.isfinite(x)):
        raise InputShapeError("Locations must be finite")
    if np.any(np.diff(x) < 0):
        raise InputShapeError("Locations must be non-decreasing")


def run_pass(
    locations: np.ndarray,
    values: np.ndarray,
    params: CorrectionParameters,
    *,
    peak_locator: Optional[PeakLocator] = None,
    sink: Optional[DiagnosticSink] = None,
) -> PassResult:
    """Single estimate → size → subtract pass over ``values``."""

    estimate = estimate_peak_distance(values, params, peak_locator=peak_locator, sink=sink)
    plan = size_windows(estimate.peak_distance, values.size, params, sink=sink)
    emit(
        sink,
        logging.DEBUG,
        f"Baseline correction: using stepSize={plan.step_size}, windowSize={plan.window_size}, "
        f"quantile={params.quantile_value:.3f}",
    )
    corrected, baseline = estimate_local_baseline(locations, values, plan, params)
    return PassResult(
        corrected=corrected,
        baseline_delta=baseline,
        peak_distance=estimate.peak_distance,
        step_size=plan.step_size,
        window_size=plan.window_size,
        used_default_distance=estimate.used_default,
    )


def _correct_single_pass(
    x: np.ndarray,
    y: np.ndarray,
    params: CorrectionParameters,
    peak_locator: Optional[PeakLocator],
    sink: Optional[DiagnosticSink],
) -> CorrectionResult:
    result = run_pass(x, y, params, peak_locator=peak_locator, sink=sink)
    return CorrectionResult(
        corrected=result.corrected,
        baseline=result.baseline_delta,
        strategy="single_pass",
        iterations=1,
        converged=True,
        passes=(result.summary(),),
    )


def _correct_iterative(
    x: np.ndarray,
    y: np.ndarray,
    params: CorrectionParameters,
    peak_locator: Optional[PeakLocator],
    sink: Optional[DiagnosticSink],
) -> CorrectionResult:
    state = IterationState()
    cumulative = np.zeros_like(y)
    residual = y
    summaries: List[PassSummary] = []
    notes: List[str] = []
    amplitude = 0.0
    aborted = False

    while state.iteration < params.iteration_cap:
        try:
            result = run_pass(x, residual, params, peak_locator=peak_locator, sink=sink)
        except Exception as exc:
            if state.iteration == 0:
                raise
            reason = f"{type(exc).__name__}: {exc}"
            notes.append(
                f"Pass {state.iteration + 1} aborted, keeping {state.iteration} pass(es): {reason}"
            )
            emit(sink, logging.WARNING, f"Baseline correction: {notes[-1]}")
            aborted = True
            break

        state.iteration += 1
        cumulative = cumulative + result.baseline_delta
        residual = result.corrected
        summaries.append(result.summary())
        amplitude = result.amplitude

        if state.reference_delta is None:
            state.reference_delta = amplitude
            if amplitude <= 0:
                state.converged = True
                break
            continue

        limit = params.convergence_fit_threshold / 100.0 * state.reference_delta
        emit(
            sink,
            logging.DEBUG,
            f"Baseline correction: pass {state.iteration} amplitude {amplitude:.4g} "
            f"(limit {limit:.4g})",
        )
        if amplitude <= limit:
            state.converged = True
            break

    if not state.converged and not aborted:
        warning = ConvergenceNotReached(state.iteration, amplitude, state.reference_delta or 0.0)
        notes.append(f"{type(warning).__name__}: {warning}")
        emit(sink, logging.WARNING, f"Baseline correction: {warning}")

    return CorrectionResult(
        corrected=y - cumulative,
        baseline=cumulative,
        strategy="iterative",
        iterations=state.iteration,
        converged=state.converged,
        warnings=tuple(notes),
        passes=tuple(summaries),
    )


def correct_baseline(
    locations: Sequence[float],
    values: Sequence[float],
    params: ParamsLike = None,
    *,
    peak_locator: Optional[PeakLocator] = None,
    sink: Optional[DiagnosticSink] = None,
) -> CorrectionResult:
    """Estimate and subtract the slow baseline of one trace.

    ``params`` may be a :class:`CorrectionParameters` or a config mapping
    (merged over the defaults).  ``sink`` receives leveled diagnostics and
    defaults to this module's logger.
    """

    x, y = _validate_inputs(locations, values)
    sink = sink if sink is not None else LoggerSink(logger)
    if isinstance(params, CorrectionParameters):
        strategy = params.strategy
    elif isinstance(params, Mapping) and params.get("strategy") is not None:
        strategy = normalise_strategy(params["strategy"])
    else:
        strategy = "single_pass"

    if y.size < 2:
        emit(sink, logging.INFO, "Baseline correction: input data is empty or too short.")
        return CorrectionResult.identity(y, strategy=strategy)
    _check_locations(x)

    try:
        if not isinstance(params, CorrectionParameters):
            params = resolve_correction_params(params)
        strategy = params.strategy
        problems = params.validate()
        if problems:
            raise ValueError("Invalid correction parameters: " + "; ".join(problems))
        emit(
            sink,
            logging.DEBUG,
            f"Baseline correction started. Signal length: {y.size}. "
            f"Method: {params.method_label}. Strategy: {params.strategy}.",
        )
        if params.strategy == "iterative":
            result = _correct_iterative(x, y, params, peak_locator, sink)
        elif params.strategy == "single_pass":
            result = _correct_single_pass(x, y, params, peak_locator, sink)
        else:
            raise ValueError(f"Unsupported correction strategy: {params.strategy!r}")
    except Exception as exc:
        reason = f"{type(exc).__name__}: {exc}"
        emit(sink, logging.ERROR, f"Baseline correction FAILED, returning input unchanged. {reason}")
        return CorrectionResult.identity(y, strategy=strategy, failure=reason)

    if result.corrected.shape != y.shape or result.baseline.shape != y.shape:
        reason = "RegressionFailure: final output size mismatch"
        emit(sink, logging.ERROR, f"Baseline correction: {reason}. Reverting to original.")
        return CorrectionResult.identity(y, strategy=strategy, failure=reason)

    emit(sink, logging.DEBUG, "Baseline correction: completed.")
    return result
