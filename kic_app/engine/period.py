"""Characteristic peak spacing of a trace, used to size estimation windows."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.signal import detrend

from kic_app.engine.audit import DiagnosticSink, emit
from kic_app.engine.correction_params import CorrectionParameters
from kic_app.engine.errors import EstimationFailure
from kic_app.engine.peak_detection import PeakLocator, find_peaks_by_ratio


@dataclass(frozen=True)
class PeakDistanceEstimate:
    peak_distance: float
    peak_count: int
    used_default: bool = False
    reason: Optional[str] = None


def default_peak_distance(signal_length: int, params: CorrectionParameters) -> float:
    """Signal-length proportional spacing used when peaks cannot be measured.

    The default is raised when it would force the step below
    ``min_step_size`` so that a legal step size stays reachable.
    """

    distance = float(math.ceil(signal_length * params.default_peak_distance_factor))
    if distance < params.min_step_size:
        distance = params.min_step_size / params.step_size_factor
    return max(1.0, distance)


def _measure_peak_distance(
    detrended: np.ndarray,
    params: CorrectionParameters,
    peak_locator: PeakLocator,
) -> tuple[float, int]:
    try:
        peaks = peak_locator(
            detrended, params.selectivity_ratio, params.threshold_ratio, params.extrema
        )
    except Exception as exc:
        raise EstimationFailure(f"peak locator failed: {type(exc).__name__}: {exc}") from exc

    indices = np.asarray(peaks, dtype=float).ravel()
    count = int(indices.size)
    if count < params.min_peaks_for_distance:
        raise EstimationFailure(
            f"found {count} peak(s), need {params.min_peaks_for_distance}", peak_count=count
        )
    diffs = np.diff(np.sort(indices))
    diffs = diffs[diffs > 0]
    if diffs.size == 0:
        raise EstimationFailure("peaks share a single index", peak_count=count)
    if params.peak_distance_estimator == "mean":
        distance = float(np.mean(diffs))
    else:
        distance = float(np.median(diffs))
    if not np.isfinite(distance) or distance <= 0:
        raise EstimationFailure(f"invalid peak distance {distance!r}", peak_count=count)
    return distance, count


def estimate_peak_distance(
    values: np.ndarray,
    params: CorrectionParameters,
    *,
    peak_locator: Optional[PeakLocator] = None,
    sink: Optional[DiagnosticSink] = None,
) -> PeakDistanceEstimate:
    """Median (or mean) index spacing of prominent peaks in ``values``.

    Peaks are searched on a linearly detrended copy so the result does not
    depend on the drift direction.  Any :class:`EstimationFailure` is
    recovered here with :func:`default_peak_distance`.
    """

    y = np.asarray(values, dtype=float)
    locator = peak_locator or find_peaks_by_ratio
    try:
        finite = np.isfinite(y)
        if not np.all(finite):
            if not np.any(finite):
                raise EstimationFailure("signal has no finite samples")
            idx = np.arange(y.size)
            y = np.interp(idx, idx[finite], y[finite])
        detrended = detrend(y, type="linear")
        distance, count = _measure_peak_distance(detrended, params, locator)
    except EstimationFailure as exc:
        fallback = default_peak_distance(y.size, params)
        emit(
            sink,
            logging.INFO,
            f"Baseline correction: could not estimate peak distance reliably ({exc}); "
            f"using default based on signal length: {fallback:g}",
        )
        return PeakDistanceEstimate(
            peak_distance=fallback,
            peak_count=exc.peak_count,
            used_default=True,
            reason=str(exc),
        )

    emit(
        sink,
        logging.DEBUG,
        f"Baseline correction: found {count} peaks, {params.peak_distance_estimator} "
        f"peak distance {distance:.2f}",
    )
    return PeakDistanceEstimate(peak_distance=max(1.0, distance), peak_count=count)
