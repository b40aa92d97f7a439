"""Incremental parsing of ffmpeg's stderr into progress events."""
from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_TIME_RE = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_LINE_SPLIT_RE = re.compile(r"[\r\n]")


@dataclass(frozen=True)
class ProgressEvent:
    fraction: float
    eta: Optional[str]
    current: float
    total: float


def _seconds(h: str, m: str, s: str) -> float:
    return int(h) * 3600 + int(m) * 60 + float(s)


def format_eta(seconds: float) -> str:
    """Format a remaining time as H:MM:SS, or MM:SS below one hour."""
    total = max(0, int(round(seconds)))
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m:02d}:{s:02d}"


class ProgressParser:
    """Turn stderr text into ProgressEvents.

    Feed arbitrary chunks; partial lines are buffered until a CR or LF
    arrives (ffmpeg rewrites its status line with CR).
    """

    def __init__(
        self,
        expected_duration: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.total: Optional[float] = _valid(expected_duration)
        self._clock = clock
        self._started = clock()
        self._buffer = ""

    def feed(self, text: str) -> List[ProgressEvent]:
        data = self._buffer + text
        lines = _LINE_SPLIT_RE.split(data)
        self._buffer = lines.pop()
        events = []
        for line in lines:
            ev = self.parse_line(line)
            if ev is not None:
                events.append(ev)
        return events

    def flush(self) -> List[ProgressEvent]:
        line, self._buffer = self._buffer, ""
        ev = self.parse_line(line) if line else None
        return [ev] if ev is not None else []

    def parse_line(self, line: str) -> Optional[ProgressEvent]:
        if self.total is None:
            m = _DURATION_RE.search(line)
            if m:
                self.total = _valid(_seconds(*m.groups()))
                return None
        m = _TIME_RE.search(line)
        if not m or self.total is None:
            return None
        current = _seconds(*m.groups())
        fraction = min(1.0, max(0.0, current / self.total))
        return ProgressEvent(fraction=fraction, eta=self._eta(fraction), current=current, total=self.total)

    def _eta(self, fraction: float) -> Optional[str]:
        if fraction <= 0:
            return None
        elapsed = self._clock() - self._started
        return format_eta(elapsed * (1.0 - fraction) / fraction)


def _valid(value: Optional[float]) -> Optional[float]:
    if value is None or not math.isfinite(value) or value <= 0:
        return None
    return float(value)
