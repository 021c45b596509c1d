"""
Structured logging for the call orchestrator.

Events are rendered as JSON lines (or coloured console output for the CLI).
Per-call background tasks bind the operator and session ids through
contextvars, so every poll or timer event can be traced back to its call.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

# Handlers added by setup_logging, removed again on the next call
_installed: list[logging.Handler] = []


def setup_logging(log_dir: Path, json_logs: bool = True, level: int = logging.INFO) -> None:
    """
    Configure structlog + stdlib logging.

    Safe to call more than once: the server and each CLI command call it, and
    only the handlers from the latest call stay attached.

    Parameters
    ----------
    log_dir : Path
        Directory for ``callops.jsonl``.
    json_logs : bool
        JSON renderer plus the JSON-lines file when True; console renderer
        without a file otherwise.
    level : int
        Minimum level for the root logger and for structlog.
    """
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    for handler in _installed:
        root.removeHandler(handler)
        handler.close()
    _installed.clear()
    root.setLevel(level)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    _installed.append(console)

    if json_logs:
        fh = logging.FileHandler(log_dir / "callops.jsonl", encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        _installed.append(fh)

    for handler in _installed:
        root.addHandler(handler)

    # httpx logs every Zoom status poll at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def call_log_context(operator_id: str, session_id: str, generation: Optional[int] = None):
    """Bind call identifiers for every event logged inside the ``with`` block."""
    fields = {"operator_id": operator_id, "session_id": session_id}
    if generation is not None:
        fields["generation"] = generation
    return structlog.contextvars.bound_contextvars(**fields)
