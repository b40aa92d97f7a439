"""Watch folder: report files once their size has settled.

A file is stable when two consecutive polls see the same nonzero size.
Stable files are reported once and are not reported again unless their
size changes later. Age thresholds are measured from the date the file was
added to the folder (resolver hook, birth time, mtime, then "now").
"""
from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional

from loguru import logger

from .logging import log_event

SUPPORTED_EXTENSIONS: FrozenSet[str] = frozenset(
    """
    3g2 3gp 3gp2 3gpp aac aif aiff alac amv asf avi apv avs drc dv f4v flac
    flv gxf ismv m1v m2p m2t m2ts m2v m4a m4b m4v mk3d mkv mod mov mp2 mp2v
    mp3 mp4 mp4v mpe mpeg mpg mpv mts mxf oga ogg ogm ogv opus qt rm rmvb
    roq svi tod trp ts vob wav webm wma wmv wtv y4m
    """.split()
)

_UNIT_SECONDS = {
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 7 * 86400,
}
_UNIT_ALIASES = {"m": "minute", "min": "minute", "h": "hour", "hr": "hour", "d": "day", "w": "week"}
_THRESHOLD_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]+)\s*$")


@dataclass(frozen=True)
class AgeThreshold:
    value: float
    unit: str

    @classmethod
    def parse(cls, text: Optional[str]) -> Optional["AgeThreshold"]:
        """Parse '24 hours', '7 days', '30 min'. Empty or 'off' disables."""
        if text is None or text.strip().lower() in ("", "off", "none", "never"):
            return None
        m = _THRESHOLD_RE.match(text)
        if not m:
            raise ValueError(f"Invalid age threshold {text!r} (expected e.g. '24 hours')")
        unit = m.group(2).lower()
        unit = _UNIT_ALIASES.get(unit, unit.rstrip("s"))
        if unit not in _UNIT_SECONDS:
            raise ValueError(f"Unknown unit in age threshold {text!r}")
        return cls(float(m.group(1)), unit)

    @property
    def seconds(self) -> float:
        return self.value * _UNIT_SECONDS[self.unit]

    def __str__(self) -> str:
        plural = "" if self.value == 1 else "s"
        return f"{self.value:g} {self.unit}{plural}"


DateAddedResolver = Callable[[Path], Optional[float]]


class WatchFolderMonitor:
    def __init__(
        self,
        folder: Path,
        on_stable: Callable[[List[Path]], None],
        *,
        poll_interval: float = 5.0,
        ignore_older_than: Optional[AgeThreshold] = None,
        delete_older_than: Optional[AgeThreshold] = None,
        extensions: FrozenSet[str] = SUPPORTED_EXTENSIONS,
        date_added: Optional[DateAddedResolver] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.folder = Path(folder)
        self.on_stable = on_stable
        self.poll_interval = poll_interval
        self.ignore_older_than = ignore_older_than
        self.delete_older_than = delete_older_than
        self.extensions = frozenset(e.lower().lstrip(".") for e in extensions)
        self._date_added = date_added
        self._clock = clock
        self._tracked: Dict[Path, int] = {}
        self._reported: Dict[Path, int] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _added_at(self, path: Path, st) -> float:
        if self._date_added is not None:
            ts = self._date_added(path)
            if ts is not None:
                return ts
        birth = getattr(st, "st_birthtime", None)
        if birth:
            return birth
        if st.st_mtime:
            return st.st_mtime
        return self._clock()

    def _candidates(self) -> List[Path]:
        out = []
        for entry in sorted(self.folder.iterdir()):
            if entry.name.startswith("."):
                continue
            if entry.suffix.lower().lstrip(".") not in self.extensions:
                continue
            if entry.is_file():
                out.append(entry)
        return out

    def scan_once(self) -> List[Path]:
        now = self._clock()
        seen: Dict[Path, int] = {}
        stable: List[Path] = []
        for path in self._candidates():
            try:
                st = path.stat()
            except FileNotFoundError:
                continue
            age = now - self._added_at(path, st)

            if self.delete_older_than is not None and age > self.delete_older_than.seconds:
                try:
                    path.unlink()
                    log_event("watch_deleted", path=str(path), msg=f"Deleted old watch-folder file {path.name}")
                except OSError as e:
                    logger.warning("Could not delete {}: {}", path, e)
                self._reported.pop(path, None)
                continue
            if self.ignore_older_than is not None and age > self.ignore_older_than.seconds:
                self._reported.pop(path, None)
                continue

            size = st.st_size
            seen[path] = size
            if self._reported.get(path) == size:
                continue
            self._reported.pop(path, None)
            if size > 0 and self._tracked.get(path) == size:
                stable.append(path)
                self._reported[path] = size

        self._tracked = {p: s for p, s in seen.items() if p not in self._reported}
        self._reported = {p: s for p, s in self._reported.items() if p in seen}
        if stable:
            logger.info("Watch folder: {} stable file(s)", len(stable))
            self.on_stable(stable)
        return stable

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.scan_once()
            except OSError as e:
                logger.warning("Watch folder scan failed for {}: {}", self.folder, e)
            self._stop.wait(self.poll_interval)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="pmc-watch", daemon=True)
        self._thread.start()
        logger.info("Watching {} every {}s", self.folder, self.poll_interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
