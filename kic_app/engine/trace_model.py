"""Value types produced by one baseline correction invocation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class PassResult:
    corrected: np.ndarray
    baseline_delta: np.ndarray
    peak_distance: float
    step_size: int
    window_size: int
    used_default_distance: bool = False

    @property
    def amplitude(self) -> float:
        """Peak-to-peak size of the correction applied by this pass."""
        delta = -np.asarray(self.baseline_delta, dtype=float)
        finite = delta[np.isfinite(delta)]
        if finite.size == 0:
            return 0.0
        return float(np.max(finite) - np.min(finite))

    def summary(self) -> "PassSummary":
        return PassSummary(
            peak_distance=float(self.peak_distance),
            used_default_distance=bool(self.used_default_distance),
            step_size=int(self.step_size),
            window_size=int(self.window_size),
            amplitude=self.amplitude,
        )


@dataclass(frozen=True)
class PassSummary:
    peak_distance: float
    used_default_distance: bool
    step_size: int
    window_size: int
    amplitude: float


@dataclass
class IterationState:
    iteration: int = 0
    reference_delta: Optional[float] = None
    converged: bool = False


@dataclass(frozen=True)
class CorrectionResult:
    corrected: np.ndarray
    baseline: np.ndarray
    strategy: str = "single_pass"
    iterations: int = 0
    converged: bool = False
    failure: Optional[str] = None
    warnings: Tuple[str, ...] = ()
    passes: Tuple[PassSummary, ...] = field(default_factory=tuple)

    @property
    def is_fallback(self) -> bool:
        return self.iterations == 0 and not np.any(self.baseline)

    @classmethod
    def identity(
        cls,
        values: np.ndarray,
        *,
        strategy: str = "single_pass",
        failure: Optional[str] = None,
        warnings: Tuple[str, ...] = (),
    ) -> "CorrectionResult":
        values = np.asarray(values, dtype=float).copy()
        return cls(
            corrected=values,
            baseline=np.zeros_like(values),
            strategy=strategy,
            iterations=0,
            converged=False,
            failure=failure,
            warnings=warnings,
        )

    def diagnostics(self) -> Dict[str, Any]:
        last = self.passes[-1] if self.passes else None
        return {
            "strategy": self.strategy,
            "iterations": self.iterations,
            "converged": self.converged,
            "fallback": self.is_fallback,
            "failure": self.failure,
            "warnings": list(self.warnings),
            "peak_distance": last.peak_distance if last else None,
            "used_default_distance": last.used_default_distance if last else None,
            "step_size": last.step_size if last else None,
            "window_size": last.window_size if last else None,
            "pass_amplitudes": [entry.amplitude for entry in self.passes],
        }
