"""Thread pool shared by the conversion queue, preview asset generation and chunk transcodes.

`imap_unordered_bounded` feeds a queue of jobs through the pool while keeping
at most `max_pending` of them submitted, so a long queue never turns into a
long list of idle futures and cancellation only has to stop the feeder.
"""
from __future__ import annotations

import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Tuple

from loguru import logger


def default_workers() -> int:
    return max(1, os.cpu_count() or 1)


class WorkerPool:
    """Named ThreadPoolExecutor used as a context manager."""

    def __init__(self, max_workers: Optional[int] = None, *, name: str = "pmc-worker") -> None:
        self.max_workers = max_workers or default_workers()
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=name)

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        return self._executor.submit(fn, *args, **kwargs)

    def imap_unordered_bounded(
        self,
        fn: Callable[[Any], Any],
        jobs: Iterable[Any],
        max_pending: int,
        *,
        stop_event: Optional[threading.Event] = None,
    ) -> Iterator[Tuple[Any, Any]]:
        """Yield (job, fn(job)) in completion order.

        Once `stop_event` is set no further jobs are started; jobs already
        running are still drained and yielded.
        """
        if max_pending < 1:
            raise ValueError("max_pending must be >= 1")
        logger.debug("bounded window: {} of {} workers", max_pending, self.max_workers)

        feed = iter(jobs)
        in_flight: Dict[Future, Any] = {}

        def fill() -> None:
            while len(in_flight) < max_pending:
                if stop_event is not None and stop_event.is_set():
                    return
                job = next(feed, _EXHAUSTED)
                if job is _EXHAUSTED:
                    return
                in_flight[self._executor.submit(fn, job)] = job

        fill()
        while in_flight:
            finished, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for fut in finished:
                yield in_flight.pop(fut), fut.result()
            fill()

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=cancel_futures)

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()


_EXHAUSTED = object()
