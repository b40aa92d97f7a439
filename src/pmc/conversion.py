"""Conversion queue: one supervisor per job, overall progress across the queue."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from loguru import logger

from .command_builder import CommandBuilder, ConversionJob, trimmed_duration
from .logging import job_logger
from .scheduler import WorkerPool
from .supervisor import ConversionResult, ConversionState, ProcessSupervisor


class ItemStatus(str, Enum):
    WAITING = "waiting"
    CONVERTING = "converting"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL = {
    ConversionState.COMPLETED: ItemStatus.DONE,
    ConversionState.FAILED: ItemStatus.FAILED,
    ConversionState.CANCELLED: ItemStatus.CANCELLED,
}


@dataclass
class QueueItem:
    job: ConversionJob
    duration: Optional[float] = None
    status: ItemStatus = ItemStatus.WAITING
    progress: float = 0.0
    eta: Optional[str] = None
    result: Optional[ConversionResult] = None
    supervisor: Optional[ProcessSupervisor] = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return self.job.job_id


class ConversionQueue:
    def __init__(
        self,
        builder: CommandBuilder,
        *,
        ffmpeg_path: str = "ffmpeg",
        workers: int = 1,
        supervisor_factory: Optional[Callable[[], ProcessSupervisor]] = None,
    ) -> None:
        self.builder = builder
        self.workers = max(1, workers)
        self._new_supervisor = supervisor_factory or (lambda: ProcessSupervisor(ffmpeg_path))
        self._items: Dict[str, QueueItem] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()

    @property
    def items(self) -> List[QueueItem]:
        with self._lock:
            return list(self._items.values())

    def add(self, job: ConversionJob) -> QueueItem:
        total = job.expected_duration
        if total is None and self.builder.prober is not None:
            total = self.builder.prober.duration(job.source)
            job.expected_duration = total
        item = QueueItem(job=job, duration=trimmed_duration(total, job.trim_start, job.trim_end))
        with self._lock:
            self._items[item.id] = item
        return item

    def overall_progress(self) -> float:
        """Duration-weighted completion of everything not cancelled or failed."""
        total = 0.0
        done = 0.0
        for item in self.items:
            if item.status in (ItemStatus.CANCELLED, ItemStatus.FAILED):
                continue
            weight = item.duration or 0.0
            total += weight
            if item.status is ItemStatus.DONE:
                done += weight
            elif item.status is ItemStatus.CONVERTING:
                done += weight * item.progress
        if total <= 0:
            return 0.0
        return min(1.0, done / total)

    def run(self) -> List[QueueItem]:
        """Convert every waiting item; blocks until the queue drains."""
        self._stop.clear()
        waiting = [i for i in self.items if i.status is ItemStatus.WAITING]
        finished: List[QueueItem] = []
        with WorkerPool(self.workers) as pool:
            for item, _ in pool.imap_unordered_bounded(
                self._convert, waiting, max_pending=self.workers, stop_event=self._stop
            ):
                finished.append(item)
        return finished

    def cancel_item(self, item_id: str) -> bool:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                return False
            if item.status is ItemStatus.WAITING:
                item.status = ItemStatus.CANCELLED
                return True
            supervisor = item.supervisor if item.status is ItemStatus.CONVERTING else None
        return supervisor.cancel() if supervisor is not None else False

    def cancel_all(self) -> None:
        self._stop.set()
        for item in self.items:
            self.cancel_item(item.id)

    def _convert(self, item: QueueItem) -> ConversionResult:
        log = job_logger(item.id, source=str(item.job.source))
        command = self.builder.build(item.job)
        supervisor = self._new_supervisor()
        with self._lock:
            if item.status is not ItemStatus.WAITING:
                return item.result
            item.supervisor = supervisor
            item.status = ItemStatus.CONVERTING
        log.info("Converting {} -> {}", item.job.source.name, command.output_path.name)

        def on_progress(fraction: float, eta: Optional[str]) -> None:
            item.progress = fraction
            item.eta = eta

        result = supervisor.run(command, on_progress=on_progress)
        with self._lock:
            item.result = result
            item.status = _TERMINAL[result.state]
            item.supervisor = None
            if item.status is ItemStatus.DONE:
                item.progress = 1.0
        if item.status is ItemStatus.FAILED:
            logger.warning("Conversion failed: {} ({})", item.job.source.name, result.failure_kind)
        return result
