"""Error taxonomy shared by the conversion and preview pipeline.

Environment errors (a required binary is missing) and input errors (the
source cannot be probed) abort an operation. Process errors carry the
captured stderr so it can be logged. Cancellation is kept apart from
failure so callers can skip diagnostic noise for it.
"""
from __future__ import annotations

from typing import Optional


class PmcError(Exception):
    """Base class for errors raised by pmc."""


class BinaryMissingError(PmcError):
    def __init__(self, name: str, path: Optional[str] = None) -> None:
        self.name = name
        self.path = path
        where = f" at {path}" if path else " in PATH"
        super().__init__(f"{name} not found{where}")


class InputError(PmcError):
    """The source file is unreadable or could not be interpreted."""


class DurationUnavailableError(InputError):
    def __init__(self, source) -> None:
        self.source = source
        super().__init__(f"Could not determine duration of {source}")


class ProcessFailedError(PmcError):
    def __init__(self, cmd_name: str, returncode: int, stderr: str = "") -> None:
        self.cmd_name = cmd_name
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{cmd_name} exited with code {returncode}")


class GenerationCancelled(PmcError):
    """Raised when a cooperative stop flag was set between steps."""


class SupervisorBusyError(PmcError, RuntimeError):
    """A supervisor was asked to start while it still owns a process."""


class CaptureInProgressError(PmcError, RuntimeError):
    """A frame capture was requested while another one is still running."""


class CaptureOutputError(PmcError):
    """ffmpeg exited cleanly but left no usable image behind."""
