from datetime import datetime

import numpy as np
import pandas as pd
import pytest

from kic_app.plugins.kic.io_cyteseer import (
    CYTESEER_3001,
    CYTESEER_3010,
    GENERIC,
    cell_id_from_column,
    detect_layout,
    read_traces,
    sniff_locale,
    write_traces_csv,
)


def _data_rows(count=20, prefix_index=False):
    rows = []
    for i in range(count):
        values = [f"{50.0 * i:.1f}", f"{1.0 + 0.1 * i:.3f}", f"{2.0 - 0.05 * i:.3f}"]
        if prefix_index:
            values = [str(i), str(i)] + values
        rows.append(",".join(values))
    return rows


def test_generic_layout(tmp_path):
    path = tmp_path / "well_A1.csv"
    path.write_text("\n".join(["Time (ms),Cell 1,Cell 2"] + _data_rows()) + "\n", encoding="utf-8")

    traces = read_traces(path)

    assert [trace.cell_id for trace in traces] == ["1", "2"]
    first = traces[0]
    assert first.time.shape == (20,)
    assert np.allclose(first.time[:3], [0.0, 50.0, 100.0])
    assert np.allclose(first.values[:2], [1.0, 1.1])
    assert first.meta["version"] == GENERIC
    assert first.meta["description"] == "well_A1"
    assert first.meta["date"] is None
    assert first.meta["source"] == str(path)


def test_cyteseer_3001_layout(tmp_path):
    header = [
        "CyteSeer export,3.0.0.1",
        "Date,March 05 2020 14:22:10",
        "Description,Plate 7 well B3",
        "id,T (index),T (msec),Cell 12,Cell 40",
    ]
    path = tmp_path / "plate7.csv"
    path.write_text("\n".join(header + _data_rows(prefix_index=True)) + "\n", encoding="utf-8")

    traces = read_traces(path)

    assert [trace.cell_id for trace in traces] == ["12", "40"]
    meta = traces[0].meta
    assert meta["version"] == CYTESEER_3001
    assert meta["date"] == datetime(2020, 3, 5, 14, 22, 10)
    assert meta["description"] == "Plate 7 well B3"
    assert np.allclose(traces[1].time[-1], 950.0)
    assert np.allclose(traces[1].values[0], 2.0)


def test_unnamed_cells_are_numbered_after_dropped_columns(tmp_path):
    header = [
        "CyteSeer export,3.0.0.1",
        "Date,March 05 2020 14:22:10",
        "Description,Plate 7 well B3",
        "id,T (index),T (msec),Background,Cell 5",
    ]
    path = tmp_path / "plate7.csv"
    path.write_text("\n".join(header + _data_rows(prefix_index=True)) + "\n", encoding="utf-8")

    traces = read_traces(path)

    assert [trace.cell_id for trace in traces] == ["10002", "5"]
    assert traces[0].meta["column"] == "Background"


def test_cyteseer_3010_layout_drops_repeated_time_columns(tmp_path):
    header = [
        "CyteSeer export,3.0.1.0",
        "Date,not a date",
        "Description,Plate 9",
        "id,Cell ID: 3,Cell ID: 8,T (msec),T (msec)",
    ]
    rows = [f"{i},{1.0 + i:.1f},{3.0 - i:.1f},{10.0 * i:.1f},{10.0 * i:.1f}" for i in range(10)]
    path = tmp_path / "plate9.csv"
    path.write_text("\n".join(header + rows) + "\n", encoding="utf-8")

    traces = read_traces(path)

    assert [trace.cell_id for trace in traces] == ["3", "8"]
    assert traces[0].meta["version"] == CYTESEER_3010
    assert traces[0].meta["date"] is None
    assert np.allclose(traces[0].time, np.arange(10) * 10.0)
    assert np.allclose(traces[1].values, 3.0 - np.arange(10))


def test_time_window_is_inclusive(tmp_path):
    path = tmp_path / "well.csv"
    path.write_text("\n".join(["Time (ms),Cell 1,Cell 2"] + _data_rows()) + "\n", encoding="utf-8")

    traces = read_traces(path, start_ms=200.0, end_ms=600.0)

    assert np.allclose(traces[0].time, np.arange(200.0, 601.0, 50.0))
    assert traces[0].meta["time_window_ms"] == (200.0, 600.0)


def test_time_window_without_data_returns_no_traces(tmp_path):
    path = tmp_path / "well.csv"
    path.write_text("\n".join(["Time (ms),Cell 1,Cell 2"] + _data_rows()) + "\n", encoding="utf-8")

    assert read_traces(path, start_ms=5000.0) == []


def test_decimal_comma_export(tmp_path):
    path = tmp_path / "eu.csv"
    path.write_text("Time (ms);Cell 4\n0;1,5\n10;2,25\n20;3,125\n", encoding="utf-8")

    traces = read_traces(path)

    assert np.allclose(traces[0].time, [0.0, 10.0, 20.0])
    assert np.allclose(traces[0].values, [1.5, 2.25, 3.125])


def test_empty_columns_are_skipped(tmp_path):
    path = tmp_path / "gaps.csv"
    path.write_text("Time (ms),Cell 1,Cell 2\n0,1.0,\n10,2.0,\n20,3.0,\n", encoding="utf-8")

    traces = read_traces(path)

    assert [trace.cell_id for trace in traces] == ["1"]


def test_unknown_layout_is_rejected(tmp_path):
    path = tmp_path / "other.csv"
    path.write_text("Wavelength,Absorbance\n200,0.1\n201,0.2\n", encoding="utf-8")

    with pytest.raises(ValueError):
        read_traces(path)


def test_missing_file_is_rejected(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_traces(tmp_path / "absent.csv")


def test_detect_layout_finds_header_below_metadata():
    rows = [["Plate"], ["Date", "x"], ["Description", "y"], ["id", "T (index)", "T (msec)", "c"]]

    assert detect_layout(rows) == (CYTESEER_3001, 3)


def test_cell_id_uses_trailing_digits_or_position():
    assert cell_id_from_column("Cell ID: 17", 2) == "17"
    assert cell_id_from_column("Cell_0042", 3) == "0042"
    assert cell_id_from_column("Background", 4) == "10004"


def test_sniff_locale_variants():
    assert sniff_locale("a,b\n1.5,2.5\n") == {"decimal": ".", "delimiter": ","}
    assert sniff_locale("a;b\n1,5;2,5\n") == {"decimal": ",", "delimiter": ";"}
    assert sniff_locale("a\tb\n1.5\t2.5\n") == {"decimal": ".", "delimiter": "\t"}
    assert sniff_locale("") == {"decimal": ".", "delimiter": ","}


def test_written_table_uses_cell_id_columns(tmp_path):
    path = tmp_path / "well.csv"
    path.write_text("\n".join(["Time (ms),Cell 1,Cell 2"] + _data_rows()) + "\n", encoding="utf-8")
    traces = read_traces(path)

    target = tmp_path / "out.csv"
    write_traces_csv(traces, target)
    frame = pd.read_csv(target)

    assert list(frame.columns) == ["Time (ms)", "CellID_1", "CellID_2"]
    assert np.allclose(frame["CellID_2"], traces[1].values)


def test_writing_missing_channel_fails(tmp_path):
    path = tmp_path / "well.csv"
    path.write_text("\n".join(["Time (ms),Cell 1,Cell 2"] + _data_rows()) + "\n", encoding="utf-8")
    traces = read_traces(path)

    with pytest.raises(KeyError):
        write_traces_csv(traces, tmp_path / "baseline.csv", channel="baseline")
