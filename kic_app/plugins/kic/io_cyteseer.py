"""Readers and writers for KIC trace tables.

Three layouts are recognised by their header row:

``generic``
    first column ``Time (ms)``, one column per cell.
``CyteSeer 3.0.0.1``
    ``id, T (index), T (msec), <cells...>`` preceded by a metadata block whose
    second and third rows hold the acquisition date and description.
``CyteSeer 3.0.1.0``
    ``id, Cell ID: <n>, Cell ID: <n>, ...`` with the time in a ``T (msec)``
    column and the same metadata block.
"""

from __future__ import annotations

import csv
import io
import logging
import math
import re
from datetime import datetime
from pathlib import Path
from typing import Dict, IO, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from kic_app.engine.plugin_api import Trace

logger = logging.getLogger(__name__)

GENERIC = "generic"
CYTESEER_3001 = "CyteSeer 3.0.0.1"
CYTESEER_3010 = "CyteSeer 3.0.1.0"

TIME_COLUMN = "Time (ms)"
CELL_COLUMN_PREFIX = "CellID_"
_TIME_HEADERS = {"time (ms)", "t (msec)", "t(msec)", "t (ms)"}
_DROP_HEADERS = {"id", "t (index)"}
_DATE_FORMATS = ("%B %d %Y %H:%M:%S", "%B %d %Y %H:%M")


def sniff_locale(sample: str) -> Dict[str, str]:
    """Infer delimiter and decimal separator from a text sample.

    Exports from European instrument PCs write decimal commas with semicolon
    or tab delimiters, so a comma decimal is only considered once a semicolon
    or tab delimiter has been found.
    """

    if not sample:
        return {"decimal": ".", "delimiter": ","}

    lines = [ln for ln in sample.splitlines() if ln.strip()]
    trimmed = "\n".join(lines)

    delimiter = None
    for sep in (";", "\t"):
        if sum(1 for ln in lines if sep in ln) >= max(1, len(lines) // 2):
            delimiter = sep
            break
    if delimiter is None:
        try:
            delimiter = csv.Sniffer().sniff(trimmed, delimiters=",;\t").delimiter
        except csv.Error:
            delimiter = ","

    if delimiter == ",":
        return {"decimal": ".", "delimiter": ","}
    dot_matches = re.findall(r"\d\.\d", trimmed)
    comma_matches = re.findall(r"\d,\d", trimmed)
    decimal = "," if len(comma_matches) > len(dot_matches) else "."
    return {"decimal": decimal, "delimiter": delimiter}


def _cell(row: Sequence[str], idx: int) -> str:
    return row[idx].strip() if idx < len(row) else ""


def detect_layout(rows: Sequence[Sequence[str]]) -> Tuple[str, int]:
    """Return ``(layout, header_row_index)`` for tokenised CSV rows."""

    for idx, row in enumerate(rows):
        first = _cell(row, 0)
        if first == TIME_COLUMN:
            return GENERIC, idx
        if first != "id":
            continue
        second, third = _cell(row, 1), _cell(row, 2)
        if second == "T (index)" and third == "T (msec)":
            return CYTESEER_3001, idx
        if second.startswith("Cell ID: ") and third.startswith("Cell ID: "):
            return CYTESEER_3010, idx
    raise ValueError("Could not determine file layout or find the header row")


def _parse_date(text: str) -> Optional[datetime]:
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text.strip(), fmt)
        except ValueError:
            continue
    return None


def _header_metadata(rows: Sequence[Sequence[str]], layout: str, path: Path) -> Dict[str, object]:
    meta: Dict[str, object] = {"version": layout, "description": path.stem, "date": None}
    if layout == GENERIC:
        return meta
    date_text = _cell(rows[1], 1) if len(rows) > 1 else ""
    date = _parse_date(date_text) if date_text else None
    if date is None:
        logger.warning("Could not parse acquisition date %r in '%s'", date_text, path)
    meta["date"] = date
    description = _cell(rows[2], 1) if len(rows) > 2 else ""
    if description:
        meta["description"] = description
    return meta


def cell_id_from_column(name: str, position: int) -> str:
    match = re.search(r"(\d+)\s*$", str(name))
    if match:
        return match.group(1)
    fallback = str(10000 + position)
    logger.info("Could not extract numeric ID from column '%s'; using %s", name, fallback)
    return fallback


def _split_columns(columns: Sequence[str]) -> Tuple[str, List[Tuple[int, str]]]:
    """Return the time column and ``(position, name)`` cell columns.

    Positions count the kept columns with time first, so the first cell is 2.
    """

    time_column: Optional[str] = None
    names: List[str] = []
    for name in columns:
        key = name.strip().lower()
        if key in _DROP_HEADERS:
            continue
        if key in _TIME_HEADERS or key.startswith("t (msec)"):
            if time_column is None:
                time_column = name
            continue
        names.append(name)
    if time_column is None:
        if not names:
            raise ValueError("Trace table has no columns")
        time_column = names.pop(0)
    return time_column, list(enumerate(names, start=2))


def read_traces(
    path: Union[str, Path],
    *,
    start_ms: Optional[float] = None,
    end_ms: Optional[float] = None,
) -> List[Trace]:
    """Load every cell trace of a KIC export, restricted to a time window."""

    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Trace file does not exist: {path}")

    text = path.read_text(encoding="utf-8", errors="ignore")
    locale = sniff_locale(text[:20000])
    lines = text.splitlines()
    rows = list(csv.reader(lines, delimiter=locale["delimiter"]))
    layout, header_idx = detect_layout(rows)
    meta = _header_metadata(rows, layout, path)

    df = pd.read_csv(
        io.StringIO("\n".join(lines[header_idx:])),
        sep=locale["delimiter"],
        decimal=locale["decimal"],
        engine="python",
        header=0,
    )
    df = df.dropna(axis=1, how="all")
    df.columns = [str(col).strip() for col in df.columns]
    time_column, cell_columns = _split_columns(list(df.columns))

    time = pd.to_numeric(df[time_column], errors="coerce")
    lower = -math.inf if start_ms is None else float(start_ms)
    upper = math.inf if end_ms is None else float(end_ms)
    mask = time.notna() & (time >= lower) & (time <= upper)
    if int(mask.sum()) < 2:
        logger.warning(
            "No usable data in '%s' within time window [%s, %s] ms", path, lower, upper
        )
        return []

    time_ms = time[mask].to_numpy(dtype=float)
    traces: List[Trace] = []
    for position, column in cell_columns:
        values = pd.to_numeric(df[column], errors="coerce")[mask].to_numpy(dtype=float)
        if not np.any(np.isfinite(values)):
            logger.info("Skipping empty column '%s' in '%s'", column, path)
            continue
        trace_meta = dict(meta)
        trace_meta.update(
            {
                "cell_id": cell_id_from_column(column, position),
                "column": column,
                "source": str(path),
                "time_window_ms": (lower, upper),
                "channels": {},
            }
        )
        traces.append(Trace(time=time_ms.copy(), values=values, meta=trace_meta))

    logger.info("Read %d trace(s) from '%s' (%s layout)", len(traces), path, layout)
    return traces


def _channel_values(trace: Trace, channel: str) -> np.ndarray:
    if channel == "corrected":
        return np.asarray(trace.values, dtype=float)
    channels = trace.meta.get("channels") or {}
    if channel not in channels:
        raise KeyError(f"Trace {trace.cell_id!r} has no '{channel}' channel")
    return np.asarray(channels[channel], dtype=float)


def traces_to_frame(traces: Iterable[Trace], channel: str = "corrected") -> pd.DataFrame:
    traces = list(traces)
    if not traces:
        return pd.DataFrame({TIME_COLUMN: []})
    columns: Dict[str, np.ndarray] = {TIME_COLUMN: np.asarray(traces[0].time, dtype=float)}
    for trace in traces:
        values = _channel_values(trace, channel)
        if values.shape != columns[TIME_COLUMN].shape:
            raise ValueError(
                f"Trace {trace.cell_id!r} does not share the time axis of the first trace"
            )
        columns[f"{CELL_COLUMN_PREFIX}{trace.cell_id}"] = values
    return pd.DataFrame(columns)


def write_traces_csv(
    traces: Iterable[Trace],
    target: Union[str, Path, IO[str]],
    channel: str = "corrected",
) -> None:
    traces_to_frame(traces, channel).to_csv(target, index=False)
