"""ffmpeg/ffprobe preflight checks.

Uses only the Python standard library.
"""
from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional

from .errors import BinaryMissingError


@dataclass
class BinaryStatus:
    name: str
    available: bool
    path: Optional[str] = None
    version: Optional[str] = None
    error: Optional[str] = None


@dataclass
class FFmpegStatus(BinaryStatus):
    has_libx264: Optional[bool] = None
    has_libx265: Optional[bool] = None
    has_prores_ks: Optional[bool] = None
    has_libsvtav1: Optional[bool] = None
    has_zscale: Optional[bool] = None


def _run(cmd: list[str], timeout: float = 10.0) -> tuple[int, str, str]:
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False,
            text=True,
            timeout=timeout,
        )
        return proc.returncode, proc.stdout, proc.stderr
    except (subprocess.TimeoutExpired, OSError) as exc:
        return 1, "", str(exc)


def resolve_binary(name: str, configured: Optional[str] = None) -> Optional[str]:
    """Return a usable path for `name`, preferring the configured one."""
    if configured:
        return shutil.which(configured)
    return shutil.which(name)


def require_binary(name: str, configured: Optional[str] = None) -> str:
    path = resolve_binary(name, configured)
    if not path:
        raise BinaryMissingError(name, configured)
    return path


def _first_line(text: str) -> Optional[str]:
    return text.splitlines()[0].strip() if text else None


def probe_ffmpeg(configured: Optional[str] = None) -> FFmpegStatus:
    path = resolve_binary("ffmpeg", configured)
    if not path:
        return FFmpegStatus(name="ffmpeg", available=False, error="ffmpeg not found in PATH")

    rc_v, out_v, err_v = _run([path, "-version"])
    rc_e, out_e, _ = _run([path, "-hide_banner", "-encoders"])
    rc_f, out_f, _ = _run([path, "-hide_banner", "-filters"])
    encoders = (out_e or "").lower() if rc_e == 0 else ""
    filters = (out_f or "").lower() if rc_f == 0 else ""

    return FFmpegStatus(
        name="ffmpeg",
        available=(rc_v == 0),
        path=path,
        version=_first_line(out_v),
        error=None if rc_v == 0 else (err_v or "ffmpeg -version failed"),
        has_libx264="libx264" in encoders,
        has_libx265="libx265" in encoders,
        has_prores_ks="prores_ks" in encoders,
        has_libsvtav1="libsvtav1" in encoders,
        has_zscale=" zscale " in filters,
    )


def probe_ffprobe(configured: Optional[str] = None) -> BinaryStatus:
    path = resolve_binary("ffprobe", configured)
    if not path:
        return BinaryStatus(name="ffprobe", available=False, error="ffprobe not found in PATH")
    rc, out, err = _run([path, "-version"])
    return BinaryStatus(
        name="ffprobe",
        available=(rc == 0),
        path=path,
        version=_first_line(out),
        error=None if rc == 0 else (err or "ffprobe -version failed"),
    )
