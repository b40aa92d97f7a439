"""loguru sinks for the converter: a human console stream and an optional JSON file.

Every record carries the run id bound at startup; job and preview-session
records additionally carry a `job_id`.
"""
from __future__ import annotations

import sys
import uuid
from typing import Any, Dict, Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> <level>{level: <7}</level> "
    "<cyan>{extra[job_id]}</cyan> {message}"
)


def setup_console(level: str = "INFO") -> None:
    """Replace all sinks with a stderr sink at `level`."""
    logger.remove()
    logger.configure(extra={"job_id": "-", "run_id": None})
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=CONSOLE_FORMAT,
        enqueue=True,
        backtrace=False,
        diagnose=False,
    )


def setup_json(path: str, level: str = "DEBUG") -> None:
    """Add a serialized sink; one JSON object per line."""
    logger.add(path, level=level.upper(), serialize=True, enqueue=True)


def bind_run(run_id: Optional[str] = None) -> str:
    rid = run_id or uuid.uuid4().hex[:12]
    logger.configure(extra={"job_id": "-", "run_id": rid})
    return rid


def job_logger(job_id: str, **extra: Any):
    """Return a logger bound to one conversion job or preview session."""
    return logger.bind(job_id=job_id, **extra)


def log_event(action: str, **fields: Any) -> None:
    # None values are dropped so JSON records stay compact
    payload: Dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
    message = payload.pop("msg", action)
    level = str(payload.pop("level", "INFO")).upper()
    logger.bind(action=action, **payload).log(level, message)


def truncate(text: str, max_len: int = 4096, max_lines: int = 20) -> str:
    """Keep the tail of encoder diagnostics, bounded by lines and characters.

    ffmpeg prints the actual error last, so the head is what gets dropped.
    """
    if not text:
        return ""
    marker = "... (truncated)"
    tail = text.strip().splitlines()
    if len(tail) > max_lines:
        text = "\n".join([marker, *tail[-max_lines:]])
    if len(text) > max_len:
        text = f"{marker}\n{text[-max_len:]}"
    return text
