from __future__ import annotations

import io
import logging
import math
from importlib import metadata
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
from matplotlib.figure import Figure

from kic_app.engine.audit import AuditTrail, log_step
from kic_app.engine.correction_params import resolve_correction_params
from kic_app.engine.pipeline import run_pipeline
from kic_app.engine.plugin_api import BatchResult, Trace, TracePlugin
from kic_app.engine.qc import build_qc_row
from kic_app.engine.recipe_model import Recipe
from .io_cyteseer import read_traces, traces_to_frame

logger = logging.getLogger(__name__)


class KicPlugin(TracePlugin):
    id = "kic"
    label = "KIC optical electrophysiology"
    xlabel = "Time (ms)"

    def __init__(self):
        self._audit = AuditTrail()
        self._pipeline_errors: List[str] = []
        self._sources: List[str] = []

    def _reset_run_state(self) -> None:
        self._audit = AuditTrail()
        self._pipeline_errors = []
        self._sources = []

    @property
    def pipeline_errors(self) -> List[str]:
        return list(self._pipeline_errors)

    def detect(self, paths):
        return any(str(p).lower().endswith((".csv", ".txt")) for p in paths)

    def load(self, paths: Iterable[str]) -> List[Trace]:
        self._reset_run_state()
        traces: List[Trace] = []
        for path_str in paths:
            path = Path(path_str)
            file_traces = read_traces(path)
            self._sources.append(str(path))
            log_step(self._audit.lines, f"Loaded {len(file_traces)} trace(s) from {path.name}")
            traces.extend(file_traces)
        return traces

    def validate(self, traces, recipe):
        errs = Recipe(params=dict(recipe or {})).validate()
        if not traces:
            errs.append("No cell traces were found in the input")
        return errs

    @staticmethod
    def _time_window(recipe: Mapping[str, Any] | None) -> Tuple[float, float]:
        window_cfg = dict((recipe or {}).get("time_window") or {})
        start = window_cfg.get("start_ms")
        end = window_cfg.get("end_ms")
        lower = -math.inf if start is None else float(start)
        upper = math.inf if end is None else float(end)
        return lower, upper

    @staticmethod
    def _crop(trace: Trace, lower: float, upper: float) -> Trace:
        time = np.asarray(trace.time, dtype=float)
        mask = (time >= lower) & (time <= upper)
        meta = dict(trace.meta)
        meta["time_window_ms"] = (lower, upper)
        return Trace(
            time=time[mask],
            values=np.asarray(trace.values, dtype=float)[mask],
            meta=meta,
        )

    def preprocess(self, traces, recipe):
        lower, upper = self._time_window(recipe)
        cropped: List[Trace] = []
        for trace in traces:
            windowed = self._crop(trace, lower, upper)
            if windowed.time.size < 2:
                logger.warning(
                    "Cell %s has no usable samples within [%s, %s] ms", trace.cell_id, lower, upper
                )
                log_step(self._audit.lines, f"Cell {trace.cell_id}: dropped, time window left <2 samples")
                continue
            cropped.append(windowed)

        params = resolve_correction_params((recipe or {}).get("baseline"))
        log_step(
            self._audit.lines,
            f"Baseline correction: strategy={params.strategy} method={params.method_label} "
            f"window=[{lower}, {upper}] ms",
        )
        processed, errors = run_pipeline(cropped, dict(recipe or {}), sink=self._audit)
        self._pipeline_errors.extend(errors)
        return processed

    def analyze(self, traces, recipe):
        qc_cfg = (recipe or {}).get("qc")
        qc_rows = [build_qc_row(trace, qc_cfg) for trace in traces]
        flagged = sum(1 for row in qc_rows if row["flags"])
        log_step(self._audit.lines, f"QC: {flagged} of {len(qc_rows)} trace(s) flagged")
        return traces, qc_rows

    @staticmethod
    def _sanitise_figure_name(*parts: str, ext: str = "png") -> str:
        tokens: List[str] = []
        for part in parts:
            if part is None:
                continue
            cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_"} else "_" for ch in str(part))
            cleaned = cleaned.strip("_")
            if cleaned:
                tokens.append(cleaned)
        if not tokens:
            tokens.append("figure")
        ext_str = str(ext or "").strip().lstrip(".")
        base = "_".join(tokens)
        return f"{base}.{ext_str}" if ext_str else base

    @staticmethod
    def _normalise_figure_formats(formats: object = None) -> Tuple[str, ...]:
        default = ("png",)
        if formats is None:
            return default
        if isinstance(formats, str):
            candidates = [formats]
        else:
            try:
                candidates = list(formats)  # type: ignore[arg-type]
            except TypeError:
                candidates = [str(formats)]
        normalised: List[str] = []
        for raw in candidates:
            token = str(raw or "").strip().lower().lstrip(".")
            if token in {"png", "svg"} and token not in normalised:
                normalised.append(token)
        return tuple(normalised) if normalised else default

    @staticmethod
    def _source_stem(trace: Trace) -> str:
        source = trace.meta.get("source")
        return Path(str(source)).stem if source else "traces"

    def _render_trace_figure(self, trace: Trace) -> Optional[Figure]:
        time = np.asarray(trace.time, dtype=float)
        if time.size == 0:
            return None
        channels = trace.meta.get("channels") or {}
        raw = np.asarray(channels.get("raw", trace.values), dtype=float)
        baseline = channels.get("baseline")
        fig, (ax_raw, ax_corr) = plt.subplots(2, 1, figsize=(7, 5), sharex=True)
        ax_raw.plot(time, raw, label="raw", linewidth=1.0)
        if baseline is not None:
            ax_raw.plot(time, np.asarray(baseline, dtype=float), label="baseline", linewidth=1.5)
        ax_raw.set_ylabel("Fluorescence")
        ax_raw.legend(loc="best")
        ax_raw.grid(True, alpha=0.2)
        ax_corr.plot(time, np.asarray(trace.values, dtype=float), color="tab:green", linewidth=1.0)
        ax_corr.set_xlabel(self.xlabel)
        ax_corr.set_ylabel("Corrected")
        ax_corr.grid(True, alpha=0.2)
        info = trace.meta.get("baseline_correction") or {}
        title = f"Cell {trace.cell_id}"
        if info.get("failure"):
            title += " (uncorrected)"
        ax_raw.set_title(title)
        fig.tight_layout()
        return fig

    def _generate_figures(self, traces: Sequence[Trace], formats: object = None) -> Dict[str, bytes]:
        figure_formats = self._normalise_figure_formats(formats)
        figures: Dict[str, bytes] = {}
        for trace in traces:
            fig = self._render_trace_figure(trace)
            if fig is None:
                continue
            try:
                for fmt in figure_formats:
                    name = self._sanitise_figure_name(
                        self._source_stem(trace), f"cell{trace.cell_id}", ext=fmt
                    )
                    buf = io.BytesIO()
                    save_kwargs = {"format": fmt}
                    if fmt == "png":
                        save_kwargs["dpi"] = 150
                    fig.savefig(buf, **save_kwargs)
                    figures[name] = buf.getvalue()
            finally:
                plt.close(fig)
        return figures

    def _build_tables(self, traces: Sequence[Trace], qc: Sequence[Dict[str, Any]]) -> Dict[str, str]:
        tables: Dict[str, str] = {}
        groups: Dict[str, List[Trace]] = {}
        for trace in traces:
            groups.setdefault(self._source_stem(trace), []).append(trace)
        for stem, group in groups.items():
            tables[f"{stem}_corrected.csv"] = traces_to_frame(group, "corrected").to_csv(index=False)
            tables[f"{stem}_baseline.csv"] = traces_to_frame(group, "baseline").to_csv(index=False)

        qc_groups: Dict[str, List[Dict[str, Any]]] = {}
        for row in qc:
            source = row.get("source")
            stem = Path(str(source)).stem if source else "traces"
            flat = dict(row)
            flat["flags"] = ";".join(flat.get("flags") or [])
            qc_groups.setdefault(stem, []).append(flat)
        for stem, rows in qc_groups.items():
            tables[f"{stem}_qc.csv"] = pd.DataFrame(rows).to_csv(index=False)
        return tables

    @staticmethod
    def _runtime_audit_tokens() -> List[str]:
        try:
            version = metadata.version("kic-app")
        except metadata.PackageNotFoundError:
            version = "unknown"
        return [f"Runtime library kic-app=={version}"]

    def _build_text_report(self, traces: Sequence[Trace], qc: Sequence[Dict[str, Any]]) -> str:
        lines = [f"Processed {len(traces)} trace(s) from {len(self._sources)} file(s)."]
        fallback = [row["cell_id"] for row in qc if "baseline_fallback" in row["flags"]]
        drift = [row["cell_id"] for row in qc if "drift" in row["flags"]]
        low_snr = [row["cell_id"] for row in qc if "snr" in row["flags"]]
        not_converged = [row["cell_id"] for row in qc if "not_converged" in row["flags"]]
        if fallback:
            lines.append(f"Left uncorrected: {', '.join(fallback)}.")
        if drift:
            lines.append(f"Residual drift flagged: {', '.join(drift)}.")
        if low_snr:
            lines.append(f"Low SNR: {', '.join(low_snr)}.")
        if not_converged:
            lines.append(f"Iterative correction did not converge: {', '.join(not_converged)}.")
        if self._pipeline_errors:
            lines.append(f"Errors: {len(self._pipeline_errors)}.")
        if len(lines) == 1:
            lines.append("No QC flags raised.")
        return "\n".join(lines)

    def export(self, traces, qc, recipe):
        export_cfg = dict((recipe or {}).get("export") or {})
        figures: Dict[str, bytes] = {}
        if export_cfg.get("figures", True):
            figures = self._generate_figures(traces, export_cfg.get("figure_formats"))
        tables = self._build_tables(traces, qc)

        audit_entries = list(self._audit.lines)
        audit_entries.extend(self._runtime_audit_tokens())
        audit_entries.append(f"Traces exported: {len(traces)}")
        audit_entries.extend(f"QC {row['cell_id']}: {row['summary']}" for row in qc)
        audit_entries.extend(f"Error: {err}" for err in self._pipeline_errors)
        if figures:
            audit_entries.append(f"Generated plots: {len(figures)}")
        return BatchResult(
            processed=list(traces),
            qc_table=list(qc),
            figures=figures,
            audit=audit_entries,
            report_text=self._build_text_report(traces, qc),
            tables=tables,
        )
