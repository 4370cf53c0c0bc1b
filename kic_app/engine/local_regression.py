"""Sliding-window low-quantile baseline estimation.

Each window contributes one anchor: its low quantile placed at the midpoint
of the window's first and last location.  The sparse anchors are then
interpolated (or least-squares fitted) back onto every sample location.

Supported regression methods:

``linear``
    Piecewise linear interpolation through the anchors.
``pchip``
    Piecewise cubic Hermite interpolation; passes through the anchors without
    overshooting between them.
``spline``
    Natural cubic spline through the anchors.
``polynomial``
    Global least-squares polynomial of ``polynomial_order``.

Interpolating methods hold the first/last anchor value outside the anchor
range; only the polynomial is evaluated beyond it.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
from numpy.polynomial import Polynomial
from scipy.interpolate import CubicSpline, PchipInterpolator

from kic_app.engine.correction_params import REGRESSION_METHODS, CorrectionParameters
from kic_app.engine.errors import RegressionFailure
from kic_app.engine.windowing import WindowPlan, iter_windows


def window_anchors(
    locations: np.ndarray,
    values: np.ndarray,
    plan: WindowPlan,
    quantile: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Return sorted ``(anchor_x, anchor_y)`` low-quantile samples."""

    n = values.size
    xs = []
    ys = []
    for start, stop in iter_windows(n, plan):
        window = values[start:stop]
        if window.size == 0:
            raise RegressionFailure(f"Empty window [{start}, {stop}) at signal boundary")
        finite = window[np.isfinite(window)]
        if finite.size < 2:
            raise RegressionFailure(
                f"Window [{start}, {stop}) has {finite.size} finite sample(s)"
            )
        if np.max(finite) == np.min(finite):
            raise RegressionFailure(f"Window [{start}, {stop}) has zero variance")
        floor = float(np.quantile(finite, quantile))
        if not np.isfinite(floor):
            raise RegressionFailure(f"Window [{start}, {stop}) produced a non-finite quantile")
        xs.append(0.5 * (locations[start] + locations[stop - 1]))
        ys.append(floor)

    anchor_x = np.asarray(xs, dtype=float)
    anchor_y = np.asarray(ys, dtype=float)
    unique_x, inverse = np.unique(anchor_x, return_inverse=True)
    if unique_x.size == anchor_x.size:
        return anchor_x, anchor_y
    # windows centred on repeated locations collapse to their mean floor
    counts = np.bincount(inverse)
    merged_y = np.bincount(inverse, weights=anchor_y) / counts
    return unique_x, merged_y


def fit_baseline(
    method: str,
    anchor_x: np.ndarray,
    anchor_y: np.ndarray,
    locations: np.ndarray,
    polynomial_order: int = 2,
) -> np.ndarray:
    if method not in REGRESSION_METHODS:
        raise RegressionFailure(f"Unsupported regression method: {method!r}")
    if anchor_x.size == 0:
        raise RegressionFailure("No baseline anchors to fit")
    if anchor_x.size == 1:
        return np.full(locations.shape, anchor_y[0], dtype=float)

    if method == "polynomial":
        order = int(polynomial_order)
        if order < 1:
            raise RegressionFailure(f"Polynomial order must be at least 1, got {order}")
        order = min(order, anchor_x.size - 1)
        return Polynomial.fit(anchor_x, anchor_y, order)(locations)

    clamped = np.clip(locations, anchor_x[0], anchor_x[-1])
    if method == "linear":
        return np.interp(clamped, anchor_x, anchor_y)
    if method == "pchip":
        return PchipInterpolator(anchor_x, anchor_y)(clamped)
    return CubicSpline(anchor_x, anchor_y, bc_type="natural")(clamped)


def estimate_local_baseline(
    locations: np.ndarray,
    values: np.ndarray,
    plan: WindowPlan,
    params: CorrectionParameters,
) -> Tuple[np.ndarray, np.ndarray]:
    """Return ``(corrected, baseline)`` for one estimation pass.

    Raises :class:`RegressionFailure` when the pass cannot produce a finite,
    full-length baseline.
    """

    x = np.asarray(locations, dtype=float)
    y = np.asarray(values, dtype=float)
    if params.regression_method not in REGRESSION_METHODS:
        raise RegressionFailure(f"Unsupported regression method: {params.regression_method!r}")
    if not 0.0 < params.quantile_value < 1.0:
        raise RegressionFailure(f"Quantile value {params.quantile_value!r} outside (0, 1)")
    plan.check(y.size)

    anchor_x, anchor_y = window_anchors(x, y, plan, params.quantile_value)
    baseline = np.asarray(
        fit_baseline(
            params.regression_method, anchor_x, anchor_y, x, params.polynomial_order
        ),
        dtype=float,
    )

    if baseline.shape != y.shape:
        raise RegressionFailure(
            f"Baseline of unexpected size {baseline.shape} vs input {y.shape}"
        )
    if not np.all(np.isfinite(baseline)):
        raise RegressionFailure("Fitted baseline contains non-finite values")
    corrected = y - baseline
    return corrected, baseline
