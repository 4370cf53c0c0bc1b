"""Diagnostic sinks for the correction engine.

A sink is any callable accepting ``(level, message)`` where ``level`` is a
stdlib :mod:`logging` level.  Sinks are observability only: :func:`emit`
never lets a sink failure reach the caller.
"""

from __future__ import annotations

import logging
import platform
from datetime import datetime
from typing import List, Optional, Protocol

logger = logging.getLogger(__name__)


class DiagnosticSink(Protocol):
    def __call__(self, level: int, message: str) -> None: ...


class LoggerSink:
    def __init__(self, target: Optional[logging.Logger] = None):
        self.target = target or logging.getLogger("kic_app.engine.baseline")

    def __call__(self, level: int, message: str) -> None:
        self.target.log(level, message)


class AuditTrail:
    """Collects timestamped lines for the exported audit file."""

    def __init__(self, lines: Optional[List[str]] = None, *, min_level: int = logging.INFO):
        self.lines: List[str] = lines if lines is not None else start_audit()
        self.min_level = min_level

    def __call__(self, level: int, message: str) -> None:
        if level < self.min_level:
            return
        stamp = datetime.now().strftime("%H:%M:%S")
        self.lines.append(f"{stamp} [{logging.getLevelName(level)}] {message}")


def start_audit() -> list[str]:
    return [f"Session start: {datetime.now().isoformat()}",
            f"Platform: {platform.platform()}" ]


def log_step(audit: list[str], msg: str):
    audit.append(msg)


def emit(sink: Optional[DiagnosticSink], level: int, message: str) -> None:
    if sink is None:
        return
    try:
        sink(level, message)
    except Exception:  # sink failures must not change the correction outcome
        logger.debug("Diagnostic sink raised while handling %r", message, exc_info=True)
