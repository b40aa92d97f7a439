"""Process supervisor: owns one ffmpeg process per conversion.

IDLE -> STARTING -> RUNNING -> COMPLETED | FAILED | CANCELLED

The supervisor serializes access to its single process handle behind a
lock. Run one supervisor per concurrent job; reusing an instance while it
is still active raises SupervisorBusyError.
"""
from __future__ import annotations

import codecs
import subprocess
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .command_builder import EncoderCommand
from .errors import SupervisorBusyError
from .logging import log_event, truncate
from .progress import ProgressParser
from .runner import cmd_to_string, discard, finalize_output, temp_out_path, terminate_process

ProgressCallback = Callable[[float, Optional[str]], None]
CompletionCallback = Callable[[bool], None]


class ConversionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureKind(str, Enum):
    ENVIRONMENT = "environment"
    PROCESS = "process"
    IO = "io"
    # a callback raised while the process was running
    INTERRUPTED = "interrupted"


@dataclass
class ConversionResult:
    state: ConversionState
    output_path: Path
    returncode: Optional[int] = None
    diagnostics: str = ""
    failure_kind: Optional[FailureKind] = None
    elapsed: float = 0.0

    @property
    def success(self) -> bool:
        return self.state is ConversionState.COMPLETED


class ProcessSupervisor:
    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        *,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        clock: Callable[[], float] = time.monotonic,
        read_size: int = 4096,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self._popen = popen
        self._clock = clock
        self._read_size = read_size
        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None
        self._state = ConversionState.IDLE
        self._cancel_requested = False

    @property
    def state(self) -> ConversionState:
        with self._lock:
            return self._state

    @property
    def is_active(self) -> bool:
        return self.state in (ConversionState.STARTING, ConversionState.RUNNING)

    def submit(self, pool, command: EncoderCommand, **kwargs) -> Future:
        """Run on a WorkerPool; the future resolves to the ConversionResult."""
        return pool.submit(self.run, command, **kwargs)

    def cancel(self) -> bool:
        """Terminate the running process. No-op (returns False) when idle."""
        with self._lock:
            if self._state not in (ConversionState.STARTING, ConversionState.RUNNING):
                return False
            if self._cancel_requested:
                return True
            self._cancel_requested = True
            proc, self._proc = self._proc, None
        if proc is not None and proc.poll() is None:
            logger.info("Cancelling ffmpeg (pid {})", proc.pid)
            proc.terminate()
        return True

    def run(
        self,
        command: EncoderCommand,
        *,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompletionCallback] = None,
    ) -> ConversionResult:
        with self._lock:
            if self._state in (ConversionState.STARTING, ConversionState.RUNNING):
                raise SupervisorBusyError("supervisor already owns a running conversion")
            self._state = ConversionState.STARTING
            self._cancel_requested = False

        started = self._clock()
        dest = command.output_path
        out_tmp = temp_out_path(dest)

        def finish(state: ConversionState, **fields) -> ConversionResult:
            result = ConversionResult(state=state, output_path=dest, elapsed=self._clock() - started, **fields)
            with self._lock:
                self._state = state
                self._proc = None
            if on_complete is not None:
                on_complete(result.success)
            return result

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            if dest.exists():
                dest.unlink()
        except OSError as e:
            logger.error("Cannot prepare output {}: {}", dest, e)
            return finish(ConversionState.FAILED, diagnostics=str(e), failure_kind=FailureKind.IO)

        argv = command.with_output(out_tmp).argv(self.ffmpeg_path)
        logger.debug("Running ffmpeg: {}", cmd_to_string(argv))
        try:
            proc = self._popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as e:
            logger.error("ffmpeg not found at {}", self.ffmpeg_path)
            return finish(ConversionState.FAILED, diagnostics=str(e), failure_kind=FailureKind.ENVIRONMENT)
        except OSError as e:
            logger.error("Could not launch ffmpeg: {}", e)
            return finish(ConversionState.FAILED, diagnostics=str(e), failure_kind=FailureKind.ENVIRONMENT)

        with self._lock:
            cancel_early = self._cancel_requested
            self._proc = None if cancel_early else proc
            self._state = ConversionState.RUNNING
        if cancel_early:
            proc.terminate()

        try:
            stderr_text = self._pump_stderr(proc, command, on_progress)
            rc = proc.wait()
        except BaseException as e:
            if proc.poll() is None:
                terminate_process(proc)
            discard(out_tmp)
            logger.error("Conversion of {} aborted: {!r}", dest.name, e)
            result = finish(
                ConversionState.FAILED,
                returncode=proc.returncode,
                diagnostics=repr(e),
                failure_kind=FailureKind.INTERRUPTED,
            )
            if not isinstance(e, Exception):
                raise
            return result

        with self._lock:
            cancelled = self._cancel_requested

        if cancelled:
            discard(out_tmp)
            log_event("convert_cancelled", output=str(dest), level="INFO", msg=f"Cancelled: {dest.name}")
            return finish(ConversionState.CANCELLED, returncode=rc)

        if rc != 0:
            discard(out_tmp)
            logger.error("ffmpeg failed (rc={}) for {}:\n{}", rc, dest.name, truncate(stderr_text))
            return finish(
                ConversionState.FAILED,
                returncode=rc,
                diagnostics=stderr_text,
                failure_kind=FailureKind.PROCESS,
            )

        rc_mv, err_mv = finalize_output(out_tmp, dest)
        if rc_mv != 0:
            return finish(ConversionState.FAILED, returncode=rc, diagnostics=err_mv, failure_kind=FailureKind.IO)
        log_event("convert_done", output=str(dest), msg=f"Converted: {dest.name}")
        return finish(ConversionState.COMPLETED, returncode=rc, diagnostics=stderr_text)

    def _pump_stderr(
        self,
        proc: subprocess.Popen,
        command: EncoderCommand,
        on_progress: Optional[ProgressCallback],
    ) -> str:
        parser = ProgressParser(command.progress_duration, clock=self._clock)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        captured = []

        def emit(events) -> None:
            if on_progress is None:
                return
            for ev in events:
                on_progress(ev.fraction, ev.eta)

        stream = proc.stderr
        if stream is None:
            return ""
        try:
            while True:
                chunk = stream.read1(self._read_size)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                captured.append(text)
                emit(parser.feed(text))
            tail = decoder.decode(b"", final=True)
            if tail:
                captured.append(tail)
                emit(parser.feed(tail))
            emit(parser.flush())
        finally:
            stream.close()
        return "".join(captured)
