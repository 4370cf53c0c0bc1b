from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any

import yaml

from kic_app.engine.correction_params import resolve_correction_params

PRESET_DIR = Path(__file__).resolve().parent.parent / "config" / "presets"
SECTIONS = ("time_window", "baseline", "qc", "parallel", "export")


@dataclass
class Recipe:
    module: str = "kic"
    params: Dict[str, Any] = field(default_factory=dict)
    version: str = "0.1.0"

    @classmethod
    def from_mapping(cls, data: Dict[str, Any] | None) -> "Recipe":
        data = dict(data or {})
        params = data.get("params") or {}
        if not isinstance(params, dict):
            raise ValueError("Recipe 'params' must be a mapping")
        return cls(
            module=str(data.get("module", "kic")),
            params=dict(params),
            version=str(data.get("version", "0.1.0")),
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Recipe":
        with Path(path).open("r", encoding="utf-8") as handle:
            try:
                data = yaml.safe_load(handle) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Recipe file {path} is not valid YAML: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Recipe file {path} must contain a mapping")
        return cls.from_mapping(data)

    def to_yaml(self, path: str | Path) -> None:
        payload = {"module": self.module, "version": self.version, "params": self.params}
        with Path(path).open("w", encoding="utf-8") as handle:
            yaml.safe_dump(payload, handle, sort_keys=False)

    def validate(self) -> list[str]:
        errs = []
        sections = {}
        for name in SECTIONS:
            value = self.params.get(name)
            if value is None:
                value = {}
            if not isinstance(value, dict):
                errs.append(f"Recipe section '{name}' must be a mapping")
                value = {}
            sections[name] = value

        baseline_cfg = sections["baseline"]
        if baseline_cfg:
            try:
                errs.extend(resolve_correction_params(baseline_cfg).validate())
            except (TypeError, ValueError) as exc:
                errs.append(f"Baseline settings are not numeric where required: {exc}")

        window_cfg = sections["time_window"]
        if window_cfg:
            start = window_cfg.get("start_ms")
            end = window_cfg.get("end_ms")
            try:
                if start is not None and end is not None and float(start) >= float(end):
                    errs.append("Analysis time window start must be before its end")
            except (TypeError, ValueError):
                errs.append("Analysis time window bounds must be numeric")

        qc_cfg = sections["qc"]
        if qc_cfg:
            threshold = qc_cfg.get("snr_threshold")
            if threshold is not None:
                try:
                    if float(threshold) <= 0:
                        errs.append("SNR threshold must be positive")
                except (TypeError, ValueError):
                    errs.append("SNR threshold must be numeric")
            drift_cfg = qc_cfg.get("drift") or {}
            if not isinstance(drift_cfg, dict):
                errs.append("Recipe section 'qc.drift' must be a mapping")
            elif drift_cfg.get("enabled"):
                limit = drift_cfg.get("max_relative_drift")
                if limit is not None:
                    try:
                        if float(limit) <= 0:
                            errs.append("Drift limit must be positive")
                    except (TypeError, ValueError):
                        errs.append("Drift limit must be numeric")

        parallel_cfg = sections["parallel"]
        if parallel_cfg.get("workers") is not None:
            try:
                if int(parallel_cfg["workers"]) < 1:
                    errs.append("Parallel worker count must be at least 1")
            except (TypeError, ValueError):
                errs.append("Parallel worker count must be an integer")
        return errs


def load_preset(name: str = "kic_default") -> Recipe:
    path = PRESET_DIR / f"{name}.yaml"
    if not path.is_file():
        raise FileNotFoundError(f"Recipe preset not found: {path}")
    return Recipe.from_yaml(path)
