"""Batch baseline correction of KIC trace exports."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Sequence

from kic_app.engine.correction_params import REGRESSION_METHODS, STRATEGIES
from kic_app.engine.plugin_api import BatchResult
from kic_app.engine.recipe_model import Recipe, load_preset
from kic_app.engine.run_controller import BatchRunner
from kic_app.plugins.kic.plugin import KicPlugin

logger = logging.getLogger("kic_app")

EXIT_OK = 0
EXIT_FILE_FAILED = 1
EXIT_BAD_RECIPE = 2


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="kic-app", description=__doc__)
    parser.add_argument("inputs", nargs="+", help="Trace CSV files or folders of them.")
    parser.add_argument("--recipe", help="YAML recipe file (overrides --preset).")
    parser.add_argument("--preset", default="kic_default", help="Bundled recipe preset name.")
    parser.add_argument(
        "--output-dir",
        dest="output_dir",
        help="Where to write results (default: next to each input file).",
    )
    parser.add_argument("--strategy", choices=STRATEGIES)
    parser.add_argument("--method", choices=REGRESSION_METHODS)
    parser.add_argument("--start-ms", dest="start_ms", type=float)
    parser.add_argument("--end-ms", dest="end_ms", type=float)
    parser.add_argument("--parallel", action="store_true", help="Correct traces in worker processes.")
    parser.add_argument("--workers", type=int)
    parser.add_argument("--no-figures", dest="no_figures", action="store_true")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def _section(params: Dict, name: str) -> Dict:
    value = params.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Recipe section '{name}' must be a mapping, got {type(value).__name__}")
    return dict(value)


def build_recipe(args: argparse.Namespace) -> Recipe:
    recipe = Recipe.from_yaml(args.recipe) if args.recipe else load_preset(args.preset)
    params = recipe.params
    baseline = _section(params, "baseline")
    if args.strategy:
        baseline["strategy"] = args.strategy
    if args.method:
        baseline["regression_method"] = args.method
    params["baseline"] = baseline

    window = _section(params, "time_window")
    if args.start_ms is not None:
        window["start_ms"] = args.start_ms
    if args.end_ms is not None:
        window["end_ms"] = args.end_ms
    params["time_window"] = window

    parallel = _section(params, "parallel")
    if args.parallel:
        parallel["enabled"] = True
    if args.workers is not None:
        parallel["workers"] = args.workers
    params["parallel"] = parallel

    if args.no_figures:
        export = _section(params, "export")
        export["figures"] = False
        params["export"] = export
    return recipe


def collect_inputs(inputs: Sequence[str]) -> tuple[List[Path], List[str]]:
    paths: List[Path] = []
    missing: List[str] = []
    for entry in inputs:
        path = Path(entry)
        if path.is_dir():
            paths.extend(sorted(p for p in path.iterdir() if p.suffix.lower() == ".csv"))
        elif path.is_file():
            paths.append(path)
        else:
            logger.error("Input not found: %s", path)
            missing.append(entry)
    return paths, missing


def write_outputs(result: BatchResult, source: Path, output_dir: Path | None) -> Dict[str, Path]:
    target_dir = output_dir or source.parent
    target_dir.mkdir(parents=True, exist_ok=True)
    written: Dict[str, Path] = {}
    for name, text in result.tables.items():
        path = target_dir / name
        path.write_text(text, encoding="utf-8")
        written[name] = path
    for name, payload in result.figures.items():
        path = target_dir / name
        path.write_bytes(payload)
        written[name] = path
    audit_path = target_dir / f"{source.stem}_audit.txt"
    lines = list(result.audit)
    if result.report_text:
        lines.extend(["", result.report_text])
    audit_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    written[audit_path.name] = audit_path
    return written


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )

    try:
        recipe = build_recipe(args)
    except (OSError, ValueError) as exc:
        logger.error("Could not load recipe: %s", exc)
        return EXIT_BAD_RECIPE
    errs = recipe.validate()
    if errs:
        for err in errs:
            logger.error("Recipe: %s", err)
        return EXIT_BAD_RECIPE

    paths, missing = collect_inputs(args.inputs)
    if not paths:
        logger.error("No input files to process")
        return EXIT_FILE_FAILED

    output_dir = Path(args.output_dir) if args.output_dir else None
    plugin = KicPlugin()
    failed = bool(missing)
    for path in paths:
        runner = BatchRunner(plugin, [str(path)], recipe.params, message=logger.debug)
        try:
            result = runner.run()
        except Exception as exc:
            logger.error("%s: %s: %s", path.name, type(exc).__name__, exc)
            failed = True
            continue
        written = write_outputs(result, path, output_dir)
        if plugin.pipeline_errors:
            failed = True
        logger.info(
            "%s: %d trace(s) corrected, %d file(s) written",
            path.name,
            len(result.processed),
            len(written),
        )
    return EXIT_FILE_FAILED if failed else EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
