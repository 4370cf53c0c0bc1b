"""Peak location helpers used to size the baseline estimation windows.

The correction engine only depends on the :class:`PeakLocator` call shape, so
any prominence/threshold based detector can be injected.  The default,
:func:`find_peaks_by_ratio`, expresses both criteria as fractions of the
signal span, which keeps it independent of the dye's absolute intensity.
"""

from __future__ import annotations

import logging
from typing import Protocol, Sequence

import numpy as np
from scipy.signal import find_peaks

logger = logging.getLogger(__name__)

MAD_SCALE = 1.4826
DEFAULT_NOISE_MULTIPLIER = 8.0


class PeakLocator(Protocol):
    def __call__(
        self,
        signal: Sequence[float],
        selectivity_ratio: float,
        threshold_ratio: float,
        extrema: int,
    ) -> Sequence[int]: ...


def _nan_safe(values: np.ndarray) -> np.ndarray:
    values = np.asarray(values, dtype=float)
    if np.all(np.isfinite(values)):
        return values
    idx = np.arange(values.size)
    mask = np.isfinite(values)
    if not np.any(mask):
        return np.zeros_like(values)
    filled = values.copy()
    filled[~mask] = np.interp(idx[~mask], idx[mask], values[mask])
    return filled


def estimate_noise_sigma(y: np.ndarray) -> float:
    """Robust white-noise sigma from first differences (MAD based)."""

    values = np.asarray(y, dtype=float)
    values = values[np.isfinite(values)]
    if values.size < 3:
        return float("nan")
    diffs = np.diff(values)
    median = float(np.median(diffs))
    mad = float(np.median(np.abs(diffs - median)))
    return MAD_SCALE * mad / np.sqrt(2.0)


def find_peaks_by_ratio(
    signal: Sequence[float],
    selectivity_ratio: float = 4.0,
    threshold_ratio: float = 6.0,
    extrema: int = 1,
    *,
    noise_multiplier: float = DEFAULT_NOISE_MULTIPLIER,
) -> np.ndarray:
    """Return sorted indices of prominent extrema.

    A candidate must rise at least ``span / selectivity_ratio`` above its
    surroundings (prominence) and sit at least ``span / threshold_ratio``
    above the signal minimum.  ``extrema=-1`` searches valleys instead.

    The prominence floor is also held above ``noise_multiplier`` times the
    white-noise sigma, otherwise the extremes of a flat noisy trace qualify
    as peaks because span-relative criteria scale with the noise itself.
    """

    if selectivity_ratio <= 0 or threshold_ratio <= 0:
        raise ValueError("Peak selectivity and threshold ratios must be positive")
    if extrema not in (1, -1):
        raise ValueError(f"Extrema must be 1 or -1, got {extrema!r}")

    y = np.asarray(signal, dtype=float).ravel()
    if y.size < 3:
        return np.empty(0, dtype=int)
    y = _nan_safe(y) * float(extrema)
    span = float(np.max(y) - np.min(y))
    if not np.isfinite(span) or span <= 0:
        return np.empty(0, dtype=int)

    prominence = span / float(selectivity_ratio)
    sigma = estimate_noise_sigma(y)
    if noise_multiplier > 0 and np.isfinite(sigma):
        prominence = max(prominence, float(noise_multiplier) * sigma)

    peaks, _ = find_peaks(
        y,
        prominence=prominence,
        height=float(np.min(y)) + span / float(threshold_ratio),
    )
    logger.debug(
        "find_peaks_by_ratio: %d peak(s) over %d samples (span=%.4g, noise=%.4g)",
        peaks.size,
        y.size,
        span,
        sigma,
    )
    return peaks.astype(int)
