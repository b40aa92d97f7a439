"""Blocking ffmpeg execution helpers.

Implements atomic outputs by writing to a temporary file in the destination
directory and renaming on success, so truncated files aren't left behind on
failure. The temp name keeps the real extension last so ffmpeg can still
pick the muxer from it.
"""
from __future__ import annotations

import os
import shlex
import subprocess
import threading
import time
import uuid
from pathlib import Path
from typing import List, Optional, Sequence

from loguru import logger

from .errors import BinaryMissingError, GenerationCancelled


def cmd_to_string(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(p)) for p in cmd)


def temp_out_path(final_path: Path) -> Path:
    """Return a unique temp file path in the same directory as final_path."""
    marker = f".part-{os.getpid()}-{uuid.uuid4().hex[:8]}"
    return final_path.with_name(final_path.stem + marker + final_path.suffix)


def discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove {}: {}", path, e)


def finalize_output(out_tmp: Path, dest: Path) -> tuple[int, str]:
    """Move a finished temp file over `dest`.

    Returns (0, "") on success, (1, message) when the rename failed.
    """
    try:
        os.replace(str(out_tmp), str(dest))
    except OSError as e:
        err_str = f"Rename failed: {e}"
        logger.error(err_str)
        discard(out_tmp)
        return 1, err_str
    return 0, ""


def terminate_process(proc: subprocess.Popen, grace: float = 5.0) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def run_ffmpeg(
    cmd: List[str],
    *,
    stop_event: Optional[threading.Event] = None,
    timeout: Optional[float] = None,
    poll_interval: float = 0.2,
) -> tuple[int, str]:
    """Run ffmpeg to completion and return the exit code and stderr.

    With a stop_event the process is polled and terminated once the event
    is set, raising GenerationCancelled. A timeout kills the process and
    reports rc -1.
    """
    logger.debug("Running ffmpeg: {}", cmd_to_string(cmd))
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
    except FileNotFoundError as e:
        raise BinaryMissingError(Path(cmd[0]).name, cmd[0]) from e

    deadline = time.monotonic() + timeout if timeout is not None else None
    while True:
        try:
            _, err = proc.communicate(timeout=poll_interval)
            return proc.returncode, err or ""
        except subprocess.TimeoutExpired:
            pass
        if stop_event is not None and stop_event.is_set():
            terminate_process(proc)
            proc.communicate()
            raise GenerationCancelled(cmd_to_string(cmd[:1]))
        if deadline is not None and time.monotonic() > deadline:
            terminate_process(proc)
            _, err = proc.communicate()
            return -1, (err or "") + f"\nTimed out after {timeout}s"
