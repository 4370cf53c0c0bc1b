"""Quality control helpers for baseline-corrected traces."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

import numpy as np

from kic_app.engine.peak_detection import estimate_noise_sigma
from kic_app.engine.plugin_api import Trace

DEFAULT_QC_CONFIG: Dict[str, Any] = {
    "check_snr": True,
    "snr_threshold": 10.0,
    "drift": {"enabled": True, "max_relative_drift": 2.0},
}


@dataclass
class DriftResult:
    baseline_span: float
    signal_span: float
    relative_drift: float
    noise_sigma: float
    snr: float
    flag: bool
    reasons: List[str]


@dataclass
class CorrectionStatus:
    fallback: bool
    converged: bool
    iterations: int
    failure: str | None
    warnings: List[str]


def _span(values: np.ndarray) -> float:
    arr = np.asarray(values, dtype=float).ravel()
    finite = arr[np.isfinite(arr)]
    if finite.size == 0:
        return float("nan")
    return float(np.max(finite) - np.min(finite))


def assess_drift(
    corrected: np.ndarray,
    baseline: np.ndarray,
    *,
    max_relative_drift: float | None = None,
) -> DriftResult:
    """Compare the removed baseline against the remaining signal span.

    ``relative_drift`` is ``ptp(baseline) / ptp(corrected)``; a flat corrected
    trace leaves it undefined (NaN).
    """

    baseline_span = _span(baseline)
    signal_span = _span(corrected)
    if np.isfinite(signal_span) and signal_span > 0:
        relative = baseline_span / signal_span
    else:
        relative = float("nan")
    sigma = estimate_noise_sigma(corrected)
    if np.isfinite(sigma) and sigma > 0 and np.isfinite(signal_span):
        snr = signal_span / sigma
    else:
        snr = float("nan")

    reasons: List[str] = []
    if max_relative_drift is not None and np.isfinite(relative) and relative > max_relative_drift:
        reasons.append(
            f"Baseline drift {relative:.2f}x signal span exceeds limit {max_relative_drift:.2f}x"
        )
    return DriftResult(
        baseline_span=baseline_span,
        signal_span=signal_span,
        relative_drift=relative,
        noise_sigma=sigma,
        snr=snr,
        flag=bool(reasons),
        reasons=reasons,
    )


def correction_status(trace: Trace) -> CorrectionStatus:
    info = trace.meta.get("baseline_correction") or {}
    return CorrectionStatus(
        fallback=bool(info.get("fallback", False)),
        converged=bool(info.get("converged", False)),
        iterations=int(info.get("iterations") or 0),
        failure=info.get("failure"),
        warnings=list(info.get("warnings") or []),
    )


def resolve_qc_config(qc_cfg: Mapping[str, Any] | None) -> Dict[str, Any]:
    resolved = dict(DEFAULT_QC_CONFIG)
    resolved["drift"] = dict(DEFAULT_QC_CONFIG["drift"])
    if qc_cfg:
        for key, value in qc_cfg.items():
            if key == "drift" and isinstance(value, Mapping):
                resolved["drift"].update({k: v for k, v in value.items() if v is not None})
            elif value is not None:
                resolved[key] = value
    return resolved


def summarise_trace_metrics(drift: DriftResult, status: CorrectionStatus) -> str:
    parts: List[str] = []
    if status.fallback:
        parts.append("Baseline correction fell back to raw trace")
    elif status.iterations > 1:
        state = "converged" if status.converged else "not converged"
        parts.append(f"{status.iterations} passes ({state})")
    parts.append(f"SNR {drift.snr:.1f}" if np.isfinite(drift.snr) else "SNR n/a")
    if np.isfinite(drift.relative_drift):
        parts.append(f"Drift {drift.relative_drift:.2f}x span")
    return "; ".join(parts)


def build_qc_row(trace: Trace, qc_cfg: Mapping[str, Any] | None = None) -> Dict[str, Any]:
    cfg = resolve_qc_config(qc_cfg)
    drift_cfg = cfg["drift"]
    channels = trace.meta.get("channels") or {}
    baseline = channels.get("baseline")
    if baseline is None:
        baseline = np.zeros_like(np.asarray(trace.values, dtype=float))
    limit = drift_cfg.get("max_relative_drift") if drift_cfg.get("enabled") else None
    drift = assess_drift(
        trace.values,
        baseline,
        max_relative_drift=float(limit) if limit is not None else None,
    )
    status = correction_status(trace)

    flags: List[str] = []
    snr_threshold = float(cfg.get("snr_threshold", 10.0))
    if cfg.get("check_snr") and np.isfinite(drift.snr) and drift.snr < snr_threshold:
        flags.append("snr")
    if drift.flag:
        flags.append("drift")
    if status.fallback:
        flags.append("baseline_fallback")
    if status.iterations > 1 and not status.converged:
        flags.append("not_converged")

    return {
        "cell_id": trace.cell_id,
        "source": trace.meta.get("source"),
        "samples": int(np.asarray(trace.values).size),
        "baseline_span": drift.baseline_span,
        "signal_span": drift.signal_span,
        "relative_drift": drift.relative_drift,
        "noise_sigma": drift.noise_sigma,
        "snr": drift.snr,
        "iterations": status.iterations,
        "converged": status.converged,
        "failure": status.failure,
        "flags": flags,
        "summary": summarise_trace_metrics(drift, status),
    }
