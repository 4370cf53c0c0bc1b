from typing import Callable, Iterable, Optional

from kic_app.engine.plugin_api import BatchResult, TracePlugin


class BatchCancelled(RuntimeError):
    pass


class BatchRunner:
    """Drives one plugin through load, validate, preprocess, analyze and export.

    ``progress`` receives a percentage and ``message`` a status line; both are
    optional plain callables so the runner can sit behind a CLI or a GUI.
    """

    def __init__(
        self,
        plugin: TracePlugin,
        paths: Iterable[str],
        recipe: dict,
        *,
        progress: Optional[Callable[[int], None]] = None,
        message: Optional[Callable[[str], None]] = None,
    ):
        self.plugin, self.paths, self.recipe = plugin, list(paths), recipe
        self._progress = progress
        self._message = message
        self._cancelled = False

    def run(self) -> BatchResult:
        self._emit_message("Loading traces...")
        self._raise_if_cancelled()
        traces = self.plugin.load(self.paths)
        self._emit_progress(10)

        self._emit_message("Validating recipe...")
        errs = self.plugin.validate(traces, self.recipe)
        if errs:
            raise ValueError("; ".join(errs))
        self._emit_progress(20)

        self._emit_message("Correcting baselines...")
        self._raise_if_cancelled()
        traces = self.plugin.preprocess(traces, self.recipe)
        self._emit_progress(60)

        self._emit_message("Analyzing traces...")
        self._raise_if_cancelled()
        traces, qc = self.plugin.analyze(traces, self.recipe)
        self._emit_progress(80)

        self._emit_message("Exporting results...")
        self._raise_if_cancelled()
        result = self.plugin.export(traces, qc, self.recipe)
        self._emit_progress(100)
        return result

    def cancel(self):
        self._cancelled = True
        self._emit_message("Cancellation requested")

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _raise_if_cancelled(self):
        if self._cancelled:
            raise BatchCancelled("Cancelled")

    def _emit_progress(self, value: int):
        if self._progress is not None:
            self._progress(value)

    def _emit_message(self, message: str):
        if self._message is not None:
            self._message(message)

