import pytest

from kic_app.engine.plugin_api import BatchResult, TracePlugin
from kic_app.engine.run_controller import BatchCancelled, BatchRunner


class RecordingPlugin(TracePlugin):
    id = "recording"

    def __init__(self, errors=None, on_preprocess=None):
        self.calls = []
        self.errors = errors or []
        self.on_preprocess = on_preprocess

    def load(self, paths):
        self.calls.append("load")
        return ["trace"]

    def validate(self, traces, recipe):
        self.calls.append("validate")
        return list(self.errors)

    def preprocess(self, traces, recipe):
        self.calls.append("preprocess")
        if self.on_preprocess:
            self.on_preprocess()
        return traces

    def analyze(self, traces, recipe):
        self.calls.append("analyze")
        return traces, [{"cell_id": "1"}]

    def export(self, traces, qc, recipe):
        self.calls.append("export")
        return BatchResult(processed=traces, qc_table=qc, figures={}, audit=["done"])


def test_runner_walks_every_stage_and_reports_progress():
    plugin = RecordingPlugin()
    progress, messages = [], []
    runner = BatchRunner(plugin, ["a.csv"], {}, progress=progress.append, message=messages.append)

    result = runner.run()

    assert plugin.calls == ["load", "validate", "preprocess", "analyze", "export"]
    assert progress == [10, 20, 60, 80, 100]
    assert messages[0] == "Loading traces..."
    assert result.qc_table == [{"cell_id": "1"}]


def test_validation_errors_stop_the_batch():
    plugin = RecordingPlugin(errors=["bad window", "bad quantile"])

    with pytest.raises(ValueError, match="bad window; bad quantile"):
        BatchRunner(plugin, ["a.csv"], {}).run()
    assert "preprocess" not in plugin.calls


def test_cancel_before_start():
    plugin = RecordingPlugin()
    runner = BatchRunner(plugin, ["a.csv"], {})
    runner.cancel()

    with pytest.raises(BatchCancelled):
        runner.run()
    assert plugin.calls == []
    assert runner.cancelled


def test_cancel_between_stages():
    messages = []
    holder = {}
    plugin = RecordingPlugin(on_preprocess=lambda: holder["runner"].cancel())
    runner = BatchRunner(plugin, ["a.csv"], {}, message=messages.append)
    holder["runner"] = runner

    with pytest.raises(BatchCancelled):
        runner.run()
    assert plugin.calls == ["load", "validate", "preprocess"]
    assert "Cancellation requested" in messages
