"""Configuration for the adaptive baseline correction engine."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Mapping, Optional

REGRESSION_METHODS = ("linear", "polynomial", "spline", "pchip")
PEAK_DISTANCE_ESTIMATORS = ("median", "mean")
STRATEGIES = ("single_pass", "iterative")

DEFAULT_CORRECTION_CONFIG: Dict[str, object] = {
    "regression_method": "spline",
    "polynomial_order": 2,
    "selectivity_ratio": 4.0,
    "threshold_ratio": 6.0,
    "extrema": 1,
    "quantile_value": 0.025,
    "step_size_factor": 0.25,
    "window_size_factor": 4.5,
    "default_peak_distance_factor": 0.05,
    "min_step_size": 10,
    "min_window_size": 30,
    "max_num_windows": 1000,
    "min_peaks_for_distance": 3,
    "peak_distance_estimator": "median",
    "strategy": "single_pass",
    "iteration_cap": 10,
    "convergence_fit_threshold": 5.0,
}

_INT_FIELDS = {
    "polynomial_order",
    "extrema",
    "min_step_size",
    "min_window_size",
    "max_num_windows",
    "min_peaks_for_distance",
    "iteration_cap",
}
_STR_FIELDS = {"regression_method", "peak_distance_estimator", "strategy"}

# Accepted spellings from older recipes.
_STRATEGY_ALIASES = {
    "single": "single_pass",
    "singlepass": "single_pass",
    "single-pass": "single_pass",
    "robust": "single_pass",
    "iterate": "iterative",
    "multi_pass": "iterative",
    "multipass": "iterative",
}
_METHOD_ALIASES = {
    "piecewisecubichermite": "pchip",
    "piecewise_cubic_hermite": "pchip",
    "poly": "polynomial",
}


@dataclass(frozen=True)
class CorrectionParameters:
    regression_method: str = "spline"
    polynomial_order: int = 2
    selectivity_ratio: float = 4.0
    threshold_ratio: float = 6.0
    extrema: int = 1
    quantile_value: float = 0.025
    step_size_factor: float = 0.25
    window_size_factor: float = 4.5
    default_peak_distance_factor: float = 0.05
    min_step_size: int = 10
    min_window_size: int = 30
    max_num_windows: int = 1000
    min_peaks_for_distance: int = 3
    peak_distance_estimator: str = "median"
    strategy: str = "single_pass"
    iteration_cap: int = 10
    convergence_fit_threshold: float = 5.0

    @property
    def method_label(self) -> str:
        if self.regression_method == "polynomial":
            return f"polynomial order {self.polynomial_order}"
        return self.regression_method

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> List[str]:
        errs: List[str] = []
        if self.regression_method not in REGRESSION_METHODS:
            errs.append(
                f"Unsupported regression method '{self.regression_method}' "
                f"(expected one of {', '.join(REGRESSION_METHODS)})"
            )
        if self.regression_method == "polynomial" and self.polynomial_order < 1:
            errs.append("Polynomial order must be at least 1")
        if not 0.0 < self.quantile_value < 1.0:
            errs.append("Quantile value must lie strictly between 0 and 1")
        if self.selectivity_ratio <= 0 or self.threshold_ratio <= 0:
            errs.append("Peak selectivity and threshold ratios must be positive")
        if self.extrema not in (1, -1):
            errs.append("Extrema must be 1 (peaks) or -1 (valleys)")
        if self.step_size_factor <= 0 or self.window_size_factor <= 0:
            errs.append("Step and window size factors must be positive")
        if self.default_peak_distance_factor <= 0:
            errs.append("Default peak distance factor must be positive")
        if self.min_step_size < 1:
            errs.append("Minimum step size must be at least 1")
        if self.min_window_size < 2:
            errs.append("Minimum window size must be at least 2")
        if self.max_num_windows < 1:
            errs.append("Maximum number of windows must be at least 1")
        if self.min_peaks_for_distance < 2:
            errs.append("At least two peaks are needed to measure peak distance")
        if self.peak_distance_estimator not in PEAK_DISTANCE_ESTIMATORS:
            errs.append("Peak distance estimator must be 'median' or 'mean'")
        if self.strategy not in STRATEGIES:
            errs.append("Strategy must be 'single_pass' or 'iterative'")
        if self.iteration_cap < 1:
            errs.append("Iteration cap must be at least 1")
        if not math.isfinite(self.convergence_fit_threshold) or self.convergence_fit_threshold < 0:
            errs.append("Convergence fit threshold must be a non-negative percentage")
        return errs


def _normalise_token(value: object) -> str:
    return str(value).strip().lower().replace(" ", "_")


def normalise_strategy(value: object) -> str:
    token = _normalise_token(value)
    return _STRATEGY_ALIASES.get(token.replace("_", ""), _STRATEGY_ALIASES.get(token, token))


def _coerce(name: str, value: object) -> object:
    if name in _STR_FIELDS:
        if name == "strategy":
            return normalise_strategy(value)
        token = _normalise_token(value)
        if name == "regression_method":
            return _METHOD_ALIASES.get(token, token)
        return token
    if name in _INT_FIELDS:
        return int(value)  # type: ignore[arg-type]
    return float(value)  # type: ignore[arg-type]


def resolve_correction_params(cfg: Optional[Mapping[str, object]] = None) -> CorrectionParameters:
    """Return parameters with ``cfg`` merged over the shared defaults.

    ``None`` values and unknown keys are ignored.  A polynomial method may be
    given as ``("polynomial", order)`` or ``"polynomial:order"``.
    """

    resolved = dict(DEFAULT_CORRECTION_CONFIG)
    if cfg:
        known = {f.name for f in fields(CorrectionParameters)}
        for key, value in cfg.items():
            if value is None or key not in known:
                continue
            if key == "regression_method":
                if isinstance(value, (list, tuple)) and value:
                    if len(value) > 1:
                        resolved["polynomial_order"] = int(value[1])
                    value = value[0]
                elif isinstance(value, str) and ":" in value:
                    value, order = value.split(":", 1)
                    resolved["polynomial_order"] = int(order)
            resolved[key] = value
    coerced = {key: _coerce(key, value) for key, value in resolved.items()}
    return CorrectionParameters(**coerced)
