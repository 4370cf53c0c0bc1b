from dataclasses import dataclass, field
from typing import Dict, Any, Iterable, List, Optional, Tuple
import numpy as np

@dataclass
class Trace:
    time: np.ndarray                # sample locations, ms
    values: np.ndarray              # fluorescence (calcium/voltage dye)
    meta: Dict[str, Any]

    @property
    def cell_id(self) -> str:
        return str(self.meta.get("cell_id", ""))

@dataclass
class BatchResult:
    processed: List[Trace]
    qc_table: List[Dict[str, Any]]
    figures: Dict[str, bytes]       # PNG bytes
    audit: List[str]
    report_text: Optional[str] = None
    tables: Dict[str, str] = field(default_factory=dict)   # CSV text

class TracePlugin:
    id: str = "base"
    label: str = "Base"
    xlabel: str = "Time (ms)"

    def detect(self, paths: Iterable[str]) -> bool:
        return False

    def load(self, paths: Iterable[str]) -> List[Trace]:
        raise NotImplementedError

    def validate(self, traces: List[Trace], recipe: Dict[str, Any]) -> List[str]:
        return []

    def preprocess(self, traces: List[Trace], recipe: Dict[str, Any]) -> List[Trace]:
        return traces

    def analyze(self, traces: List[Trace], recipe: Dict[str, Any]) -> Tuple[List[Trace], List[Dict[str, Any]]]:
        return traces, []

    def export(self, traces: List[Trace], qc: List[Dict[str, Any]], recipe: Dict[str, Any]) -> BatchResult:
        return BatchResult(processed=traces, qc_table=qc, figures={}, audit=[])
