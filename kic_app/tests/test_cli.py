import numpy as np
import pandas as pd

from kic_app.main import EXIT_BAD_RECIPE, EXIT_FILE_FAILED, EXIT_OK, main


def _write_well(path, n=1500):
    rng = np.random.default_rng(4)
    idx = np.arange(n, dtype=float)
    frame = pd.DataFrame(
        {
            "Time (ms)": idx * 10.0,
            "Cell 1": np.sin(2.0 * np.pi * idx / 60.0) + 2.0 * idx / n + rng.normal(0.0, 0.02, n),
            "Cell 2": np.cos(2.0 * np.pi * idx / 90.0) - idx / n + rng.normal(0.0, 0.02, n),
        }
    )
    frame.to_csv(path, index=False)


def test_cli_writes_tables_and_audit(tmp_path):
    source = tmp_path / "well.csv"
    _write_well(source)
    out = tmp_path / "out"

    code = main([str(source), "--output-dir", str(out), "--no-figures"])

    assert code == EXIT_OK
    corrected = pd.read_csv(out / "well_corrected.csv")
    baseline = pd.read_csv(out / "well_baseline.csv")
    qc = pd.read_csv(out / "well_qc.csv")
    assert list(corrected.columns) == ["Time (ms)", "CellID_1", "CellID_2"]
    assert corrected["Time (ms)"].min() >= 500.0
    assert baseline.shape == corrected.shape
    assert list(qc["cell_id"].astype(str)) == ["1", "2"]
    audit = (out / "well_audit.txt").read_text(encoding="utf-8")
    assert "Baseline correction: strategy=single_pass" in audit
    assert not list(out.glob("*.png"))


def test_cli_renders_figures_and_applies_overrides(tmp_path):
    source = tmp_path / "well.csv"
    _write_well(source)

    code = main(
        [str(tmp_path), "--strategy", "iterative", "--method", "linear", "--start-ms", "0"]
    )

    assert code == EXIT_OK
    assert (tmp_path / "well_cell1.png").read_bytes().startswith(b"\x89PNG")
    assert (tmp_path / "well_cell2.png").is_file()
    audit = (tmp_path / "well_audit.txt").read_text(encoding="utf-8")
    assert "strategy=iterative method=linear" in audit
    corrected = pd.read_csv(tmp_path / "well_corrected.csv")
    assert corrected["Time (ms)"].iloc[0] == 0.0


def test_cli_rejects_invalid_recipe(tmp_path):
    source = tmp_path / "well.csv"
    _write_well(source)

    assert main([str(source), "--start-ms", "900", "--end-ms", "100"]) == EXIT_BAD_RECIPE
    assert not (tmp_path / "well_corrected.csv").exists()


def test_cli_reports_failed_file_but_processes_others(tmp_path):
    good = tmp_path / "good.csv"
    _write_well(good)
    bad = tmp_path / "bad.csv"
    bad.write_text("Wavelength,Absorbance\n200,0.1\n", encoding="utf-8")
    out = tmp_path / "out"

    code = main([str(bad), str(good), "--output-dir", str(out), "--no-figures"])

    assert code == EXIT_FILE_FAILED
    assert (out / "good_corrected.csv").is_file()
    assert not (out / "bad_corrected.csv").exists()


def test_cli_missing_input(tmp_path):
    assert main([str(tmp_path / "absent.csv")]) == EXIT_FILE_FAILED


def test_cli_uses_recipe_file(tmp_path):
    source = tmp_path / "well.csv"
    _write_well(source)
    recipe = tmp_path / "recipe.yaml"
    recipe.write_text(
        "module: kic\nparams:\n  baseline:\n    regression_method: pchip\n"
        "  export:\n    figures: false\n",
        encoding="utf-8",
    )

    assert main([str(source), "--recipe", str(recipe)]) == EXIT_OK
    audit = (tmp_path / "well_audit.txt").read_text(encoding="utf-8")
    assert "method=pchip" in audit
    assert not list(tmp_path.glob("*.png"))


def test_cli_rejects_malformed_yaml_recipe(tmp_path):
    source = tmp_path / "well.csv"
    _write_well(source)
    recipe = tmp_path / "recipe.yaml"
    recipe.write_text("params:\n  baseline: {strategy: iterative\n", encoding="utf-8")

    assert main([str(source), "--recipe", str(recipe)]) == EXIT_BAD_RECIPE
    assert not (tmp_path / "well_corrected.csv").exists()


def test_cli_rejects_non_mapping_recipe_section(tmp_path):
    source = tmp_path / "well.csv"
    _write_well(source)
    recipe = tmp_path / "recipe.yaml"
    recipe.write_text("module: kic\nparams:\n  time_window: 500\n", encoding="utf-8")

    assert main([str(source), "--recipe", str(recipe)]) == EXIT_BAD_RECIPE
    assert main([str(source), "--recipe", str(recipe), "--start-ms", "0"]) == EXIT_BAD_RECIPE
    assert not (tmp_path / "well_corrected.csv").exists()


def test_cli_rejects_non_mapping_qc_section(tmp_path):
    source = tmp_path / "well.csv"
    _write_well(source)
    recipe = tmp_path / "recipe.yaml"
    recipe.write_text("module: kic\nparams:\n  qc: strict\n", encoding="utf-8")

    assert main([str(source), "--recipe", str(recipe)]) == EXIT_BAD_RECIPE
