import pytest

from kic_app.engine.correction_params import CorrectionParameters, resolve_correction_params
from kic_app.engine.recipe_model import Recipe, load_preset


def test_defaults_match_documented_values():
    params = resolve_correction_params()

    assert params == CorrectionParameters()
    assert params.regression_method == "spline"
    assert params.quantile_value == 0.025
    assert params.max_num_windows == 1000
    assert params.validate() == []


def test_resolve_ignores_unknown_and_missing_values():
    params = resolve_correction_params({"quantile_value": None, "colour": "blue", "min_step_size": "12"})

    assert params.quantile_value == 0.025
    assert params.min_step_size == 12


def test_resolve_accepts_polynomial_order_forms():
    assert resolve_correction_params({"regression_method": "polynomial:3"}).polynomial_order == 3
    params = resolve_correction_params({"regression_method": ("polynomial", 4)})
    assert params.regression_method == "polynomial"
    assert params.polynomial_order == 4
    assert params.method_label == "polynomial order 4"


def test_resolve_normalises_aliases():
    params = resolve_correction_params(
        {"regression_method": "PiecewiseCubicHermite", "strategy": "Robust"}
    )

    assert params.regression_method == "pchip"
    assert params.strategy == "single_pass"
    assert resolve_correction_params({"strategy": "Multi Pass"}).strategy == "iterative"


def test_parameter_validation_flags_bad_values():
    errs = CorrectionParameters(
        regression_method="cubic",
        quantile_value=1.5,
        extrema=0,
        strategy="forever",
        iteration_cap=0,
    ).validate()

    assert any("Unsupported regression method" in err for err in errs)
    assert "Quantile value must lie strictly between 0 and 1" in errs
    assert "Extrema must be 1 (peaks) or -1 (valleys)" in errs
    assert "Strategy must be 'single_pass' or 'iterative'" in errs
    assert "Iteration cap must be at least 1" in errs


def test_recipe_validation_passes_for_reasonable_recipe():
    params = {
        "baseline": {"regression_method": "linear", "strategy": "iterative"},
        "time_window": {"start_ms": 500, "end_ms": 9000},
        "qc": {"snr_threshold": 5, "drift": {"enabled": True, "max_relative_drift": 1.5}},
    }
    assert Recipe(params=params).validate() == []


def test_recipe_validation_flags_window_and_qc_issues():
    params = {
        "baseline": {"quantile_value": 0.0},
        "time_window": {"start_ms": 900, "end_ms": 100},
        "qc": {"snr_threshold": -1, "drift": {"enabled": True, "max_relative_drift": "lots"}},
        "parallel": {"workers": 0},
    }
    errs = Recipe(params=params).validate()

    assert "Quantile value must lie strictly between 0 and 1" in errs
    assert "Analysis time window start must be before its end" in errs
    assert "SNR threshold must be positive" in errs
    assert "Drift limit must be numeric" in errs
    assert "Parallel worker count must be at least 1" in errs


def test_recipe_validation_reports_non_numeric_baseline():
    errs = Recipe(params={"baseline": {"min_step_size": "ten"}}).validate()

    assert any("not numeric" in err for err in errs)


def test_bundled_presets_are_valid():
    default = load_preset()
    iterative = load_preset("kic_iterative")

    assert default.module == "kic"
    assert default.validate() == []
    assert iterative.validate() == []
    assert default.params["time_window"] == {"start_ms": 500.0, "end_ms": None}
    assert resolve_correction_params(default.params["baseline"]) == CorrectionParameters()
    assert resolve_correction_params(iterative.params["baseline"]).strategy == "iterative"


def test_recipe_round_trips_through_yaml(tmp_path):
    recipe = Recipe(params={"baseline": {"strategy": "iterative"}})
    path = tmp_path / "recipe.yaml"
    recipe.to_yaml(path)

    assert Recipe.from_yaml(path) == recipe


def test_recipe_validation_reports_non_mapping_sections():
    params = {
        "time_window": 500,
        "baseline": "spline",
        "qc": {"drift": True},
        "parallel": [2],
        "export": "png",
    }
    errs = Recipe(params=params).validate()

    for name in ("time_window", "baseline", "parallel", "export", "qc.drift"):
        assert f"Recipe section '{name}' must be a mapping" in errs
    assert "Recipe section 'qc' must be a mapping" not in errs


def test_malformed_yaml_raises_value_error(tmp_path):
    path = tmp_path / "recipe.yaml"
    path.write_text("params:\n  baseline: [spline\n", encoding="utf-8")

    with pytest.raises(ValueError, match="not valid YAML"):
        Recipe.from_yaml(path)


def test_non_mapping_params_raise_value_error(tmp_path):
    path = tmp_path / "recipe.yaml"
    path.write_text("module: kic\nparams: 3\n", encoding="utf-8")

    with pytest.raises(ValueError, match="'params' must be a mapping"):
        Recipe.from_yaml(path)
