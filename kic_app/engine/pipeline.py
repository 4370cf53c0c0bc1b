"""Batch baseline correction over the traces of one or more wells.

Each trace is an independent :func:`~kic_app.engine.baseline.correct_baseline`
call, so traces can be fanned out to worker processes without coordination.
"""

from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
import logging
import multiprocessing
import os
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from kic_app.engine.audit import DiagnosticSink, emit
from kic_app.engine.baseline import correct_baseline
from kic_app.engine.correction_params import CorrectionParameters, resolve_correction_params
from kic_app.engine.peak_detection import PeakLocator
from kic_app.engine.plugin_api import Trace

__all__ = [
    "CorrectionTaskResult",
    "correct_trace",
    "run_pipeline",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CorrectionTaskResult:
    trace: Trace
    error: str | None = None


def correct_trace(
    trace: Trace,
    params: CorrectionParameters,
    *,
    peak_locator: Optional[PeakLocator] = None,
    sink: Optional[DiagnosticSink] = None,
) -> Trace:
    """Return a copy of ``trace`` holding the baseline-corrected values.

    The raw values and the estimated baseline are kept in
    ``meta["channels"]``; the correction diagnostics go to
    ``meta["baseline_correction"]``.
    """

    raw = np.asarray(trace.values, dtype=float)
    result = correct_baseline(trace.time, raw, params, peak_locator=peak_locator, sink=sink)
    meta = dict(trace.meta or {})
    channels = dict(meta.get("channels") or {})
    channels["raw"] = raw.copy()
    channels["baseline"] = np.asarray(result.baseline, dtype=float).copy()
    meta["channels"] = channels
    diagnostics = result.diagnostics()
    diagnostics["method"] = params.method_label
    meta["baseline_correction"] = diagnostics
    return Trace(
        time=np.asarray(trace.time, dtype=float).copy(),
        values=np.asarray(result.corrected, dtype=float).copy(),
        meta=meta,
    )


def _mark_failed(trace: Trace, error_text: str) -> Trace:
    values = np.asarray(trace.values, dtype=float)
    meta = dict(trace.meta or {})
    channels = dict(meta.get("channels") or {})
    channels["raw"] = values.copy()
    channels["baseline"] = np.zeros_like(values)
    meta["channels"] = channels
    meta["baseline_correction"] = {
        "iterations": 0,
        "converged": False,
        "fallback": True,
        "failure": error_text,
        "warnings": [],
    }
    return Trace(time=np.asarray(trace.time, dtype=float).copy(), values=values.copy(), meta=meta)


def _correct_trace_task(
    trace: Trace,
    params: CorrectionParameters,
    peak_locator: Optional[PeakLocator] = None,
) -> CorrectionTaskResult:
    try:
        return CorrectionTaskResult(trace=correct_trace(trace, params, peak_locator=peak_locator))
    except Exception as exc:
        error_text = f"{type(exc).__name__}: {exc}"
        return CorrectionTaskResult(trace=_mark_failed(trace, error_text), error=error_text)


def _default_parallel_workers() -> int:
    return max(1, min(4, os.cpu_count() or 1))


def _resolve_parallel_settings(parallel_cfg: Mapping[str, Any] | None) -> tuple[bool, int]:
    if not isinstance(parallel_cfg, Mapping):
        parallel_cfg = {}

    parallel_enabled = bool(parallel_cfg.get("enabled", False))

    workers_value = parallel_cfg.get("workers")
    try:
        workers = int(workers_value) if workers_value is not None else _default_parallel_workers()
    except (TypeError, ValueError):
        workers = _default_parallel_workers()
    if workers < 1:
        workers = _default_parallel_workers()

    return parallel_enabled, workers


def _run_parallel(
    traces: List[Trace],
    params: CorrectionParameters,
    peak_locator: Optional[PeakLocator],
    workers: int,
) -> List[CorrectionTaskResult]:
    ctx = multiprocessing.get_context("spawn")
    results: List[CorrectionTaskResult | None] = [None for _ in traces]
    with ProcessPoolExecutor(mp_context=ctx, max_workers=workers) as executor:
        future_map = {
            executor.submit(_correct_trace_task, trace, params, peak_locator): idx
            for idx, trace in enumerate(traces)
        }
        for future in as_completed(future_map):
            idx = future_map[future]
            try:
                results[idx] = future.result()
            except Exception as exc:
                error_text = f"{type(exc).__name__}: {exc}"
                logger.exception("Baseline correction task failed for trace %s: %s", idx, error_text)
                results[idx] = CorrectionTaskResult(
                    trace=_mark_failed(traces[idx], error_text), error=error_text
                )
    return [
        result
        if result is not None
        else CorrectionTaskResult(
            trace=_mark_failed(traces[idx], "task returned no result"),
            error="task returned no result",
        )
        for idx, result in enumerate(results)
    ]


def run_pipeline(
    traces: Iterable[Trace],
    recipe: Dict[str, Any],
    *,
    peak_locator: Optional[PeakLocator] = None,
    sink: Optional[DiagnosticSink] = None,
) -> Tuple[List[Trace], List[str]]:
    """Correct every trace; returns ``(traces, errors)`` in input order.

    A trace whose correction raised (malformed input) is passed through
    unchanged and reported in ``errors``.
    """

    traces_list = list(traces)
    if not traces_list:
        return [], []

    params = resolve_correction_params(dict(recipe.get("baseline", {})) if recipe else None)
    parallel_enabled, workers = _resolve_parallel_settings(recipe.get("parallel") if recipe else None)

    if parallel_enabled and len(traces_list) > 1 and workers > 1:
        logger.info("Correcting %d traces on %d worker processes", len(traces_list), workers)
        results = _run_parallel(traces_list, params, peak_locator, workers)
    else:
        results = []
        for trace in traces_list:
            try:
                corrected = correct_trace(trace, params, peak_locator=peak_locator, sink=sink)
                results.append(CorrectionTaskResult(trace=corrected))
            except Exception as exc:
                error_text = f"{type(exc).__name__}: {exc}"
                results.append(
                    CorrectionTaskResult(trace=_mark_failed(trace, error_text), error=error_text)
                )

    processed: List[Trace] = []
    errors: List[str] = []
    for result in results:
        trace = result.trace
        info = trace.meta.get("baseline_correction", {})
        if result.error:
            errors.append(f"Cell {trace.cell_id}: {result.error}")
            logger.error("Baseline correction failed for cell %s: %s", trace.cell_id, result.error)
            emit(sink, logging.ERROR, f"Cell {trace.cell_id}: correction failed ({result.error})")
        elif info.get("failure"):
            emit(sink, logging.WARNING, f"Cell {trace.cell_id}: fell back to raw trace ({info['failure']})")
        else:
            emit(
                sink,
                logging.INFO,
                f"Cell {trace.cell_id}: {info.get('strategy')} correction, "
                f"{info.get('iterations')} pass(es), step={info.get('step_size')}, "
                f"window={info.get('window_size')}",
            )
        processed.append(trace)
    return processed, errors
