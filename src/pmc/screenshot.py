"""Single-frame captures at a playhead position.

`FrameCapture.capture` keeps the frame at source resolution in a format that
preserves its range: JPEG for SDR, 10/12-bit AVIF for HDR and 16-bit PNG for
ProRes RAW. The source colour description is copied onto the image.
`FrameCapture.still` renders a 1080p JPEG for positions the preview cannot
play yet.
"""
from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from loguru import logger

from .errors import CaptureInProgressError, CaptureOutputError, InputError, ProcessFailedError
from .filters import FRAME_DEINTERLACER, FilterChain
from .logging import log_event, truncate
from .paths import sanitize_segment
from .preview_assets import is_valid_image
from .probe import HDRType, MediaProber, VideoColorInfo, classify_hdr
from .runner import discard, finalize_output, run_ffmpeg, temp_out_path

SAR_SCALE = "scale=iw*sar:ih"
STILL_SCALE = "scale='if(gt(a,1),-2,1080)':'if(gt(a,1),1080,-2)'"

HDR_TRANSFERS = frozenset({"smpte2084", "arib-std-b67"})
MISSING_COLOR_VALUES = frozenset({"", "unknown", "unspecified", "na", "n/a"})


@dataclass(frozen=True)
class ScreenshotFormat:
    extension: str
    codec_args: Tuple[str, ...]
    pix_fmt: Optional[str] = None

    @property
    def decodable(self) -> bool:
        """Whether Pillow can be relied on to open the result."""
        return self.extension in ("jpg", "png")


JPEG_FORMAT = ScreenshotFormat("jpg", ("-c:v", "mjpeg", "-q:v", "1"), "yuvj444p")
PNG16_FORMAT = ScreenshotFormat("png", ("-c:v", "png", "-compression_level", "1"), "rgb48be")


def avif_format(bit_depth: int) -> ScreenshotFormat:
    pix_fmt = "yuv420p12le" if bit_depth >= 12 else "yuv420p10le"
    return ScreenshotFormat(
        "avif",
        (
            "-c:v", "libsvtav1",
            "-pix_fmt", pix_fmt,
            "-preset", "12",
            "-crf", "35",
            "-svtav1-params", "fast-decode=1:enable-overlays=0",
        ),
    )


def is_missing_color_value(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in MISSING_COLOR_VALUES


def is_prores_raw(info: VideoColorInfo) -> bool:
    if classify_hdr(info) is HDRType.PRORES_RAW:
        return True
    codec = info.codec_name.lower()
    return "prores" in codec and ("raw" in codec or "raw" in info.profile.lower())


def screenshot_format(info: Optional[VideoColorInfo]) -> ScreenshotFormat:
    if info is None:
        return JPEG_FORMAT
    if is_prores_raw(info):
        return PNG16_FORMAT
    tagged_hdr = (
        info.color_transfer.lower() in HDR_TRANSFERS
        or "2020" in info.color_primaries
        or "2020" in info.color_space
    )
    # >= 10 bit without primaries/transfer is treated as HDR, as for thumbnails
    untagged_deep = (
        info.bit_depth >= 10
        and is_missing_color_value(info.color_primaries)
        and is_missing_color_value(info.color_transfer)
    )
    if tagged_hdr or untagged_deep:
        return avif_format(info.bit_depth)
    return JPEG_FORMAT


_ColorTable = Tuple[FrozenSet[str], Dict[str, str]]

_PRIMARIES: _ColorTable = (
    frozenset({"bt709", "bt470bg", "smpte170m", "smpte240m", "bt2020", "smpte432"}),
    {"bt2020-10": "bt2020", "bt2020-12": "bt2020", "smpte432-1": "smpte432"},
)
_TRANSFERS: _ColorTable = (
    frozenset({"bt709", "smpte2084", "arib-std-b67", "iec61966-2-4", "bt470bg", "smpte170m", "bt2020-10", "bt2020-12"}),
    {},
)
_SPACES: _ColorTable = (
    frozenset({"bt709", "smpte170m", "smpte240m", "bt2020nc", "bt2020c"}),
    {"bt2020": "bt2020nc", "bt2020-ncl": "bt2020nc", "bt2020ncl": "bt2020nc", "bt2020-cl": "bt2020c"},
)
_RANGES: _ColorTable = (frozenset({"tv", "pc"}), {"limited": "tv", "full": "pc"})


def _normalize_color(value: str, table: _ColorTable) -> Optional[str]:
    allowed, aliases = table
    raw = value.strip().lower()
    if raw in aliases:
        return aliases[raw]
    return raw if raw in allowed else None


def color_arguments(info: Optional[VideoColorInfo]) -> List[str]:
    """Tag flags for the colour properties ffmpeg will accept verbatim."""
    if info is None:
        return []
    args: List[str] = []
    for flag, value, table in (
        ("-color_primaries", info.color_primaries, _PRIMARIES),
        ("-color_trc", info.color_transfer, _TRANSFERS),
        ("-colorspace", info.color_space, _SPACES),
        ("-color_range", info.color_range, _RANGES),
    ):
        if is_missing_color_value(value):
            continue
        normalized = _normalize_color(value, table)
        if normalized is not None:
            args += [flag, normalized]
    return args


def screenshot_filename(source: Path, t: float, extension: str, now: datetime) -> str:
    """`<stem>_<yyyyMMdd_HHmmss>_t<seconds with '-' for '.'>.<ext>`"""
    tail = f"_{now:%Y%m%d_%H%M%S}_t{t:.3f}".replace(".", "-") + f".{extension}"
    return sanitize_segment(source.stem, reserve=len(tail)) + tail


def _frame_filters(interlaced: bool, *extra: str) -> str:
    chain = FilterChain((SAR_SCALE, *extra))
    if interlaced:
        chain = chain.with_deinterlacer(FRAME_DEINTERLACER)
    return chain.render()


def capture_command(
    source: Path,
    t: float,
    dest: Path,
    fmt: ScreenshotFormat,
    info: Optional[VideoColorInfo],
    *,
    interlaced: bool,
    ffmpeg_path: str = "ffmpeg",
) -> List[str]:
    args = [
        ffmpeg_path, "-hide_banner", "-loglevel", "error",
        "-ss", f"{t:.6f}", "-i", str(source),
        "-frames:v", "1",
        "-vf", _frame_filters(interlaced),
    ]
    if fmt.pix_fmt:
        args += ["-pix_fmt", fmt.pix_fmt]
    args += color_arguments(info)
    args += fmt.codec_args
    args += ["-y", str(dest)]
    return args


def still_command(source: Path, t: float, dest: Path, *, interlaced: bool, ffmpeg_path: str = "ffmpeg") -> List[str]:
    return [
        ffmpeg_path, "-hide_banner", "-loglevel", "error",
        "-ss", f"{t:.6f}", "-i", str(source),
        "-frames:v", "1",
        "-vf", _frame_filters(interlaced, STILL_SCALE),
        "-q:v", "2",
        "-y", str(dest),
    ]


class FrameCapture:
    """Grabs frames with ffmpeg; one `capture` at a time per instance."""

    def __init__(
        self,
        prober: MediaProber,
        *,
        ffmpeg_path: str = "ffmpeg",
        run: Callable[..., tuple] = run_ffmpeg,
        now: Callable[[], datetime] = datetime.now,
        timeout: float = 60.0,
    ) -> None:
        self.prober = prober
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout
        self._run = run
        self._now = now
        self._busy = threading.Lock()

    def capture(self, source: Path, t: float, directory: Path) -> Path:
        """Save the frame at `t` into `directory`; returns the image path."""
        if not self._busy.acquire(blocking=False):
            raise CaptureInProgressError("a frame capture is already running")
        try:
            return self._capture(Path(source), _position(t), Path(directory))
        finally:
            self._busy.release()

    def still(self, source: Path, t: float, dest: Path) -> Path:
        source = Path(source)
        dest = Path(dest)
        self._require_video(source)
        interlaced = self.prober.is_interlaced(source) is True
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = temp_out_path(dest)
        cmd = still_command(source, _position(t), tmp, interlaced=interlaced, ffmpeg_path=self.ffmpeg_path)
        return self._render(cmd, tmp, dest, decodable=True)

    def _capture(self, source: Path, t: float, directory: Path) -> Path:
        info = self._require_video(source)
        fmt = screenshot_format(info)
        interlaced = self.prober.is_interlaced(source) is True
        directory.mkdir(parents=True, exist_ok=True)
        dest = directory / screenshot_filename(source, t, fmt.extension, self._now())
        tmp = temp_out_path(dest)
        cmd = capture_command(source, t, tmp, fmt, info, interlaced=interlaced, ffmpeg_path=self.ffmpeg_path)
        self._render(cmd, tmp, dest, decodable=fmt.decodable)
        log_event("screenshot_saved", source=str(source), output=str(dest), position=round(t, 3),
                  msg=f"Saved screenshot to {dest}")
        return dest

    def _require_video(self, source: Path) -> Optional[VideoColorInfo]:
        has_video, info = self.prober.video_info(source)
        if has_video is False:
            raise InputError(f"{source.name} has no video stream to capture")
        if has_video is None:
            logger.warning("ffprobe could not read {}; capturing with default settings", source.name)
        return info

    def _render(self, cmd: List[str], tmp: Path, dest: Path, *, decodable: bool) -> Path:
        try:
            rc, err = self._run(cmd, timeout=self.timeout)
        except BaseException:
            discard(tmp)
            raise
        if rc != 0:
            discard(tmp)
            logger.error("Frame capture failed for {}:\n{}", dest.name, truncate(err, max_lines=5))
            raise ProcessFailedError("ffmpeg", rc, (err or "").strip())
        if not tmp.exists() or tmp.stat().st_size == 0 or (decodable and not is_valid_image(tmp)):
            discard(tmp)
            raise CaptureOutputError(f"ffmpeg reported success but {dest.name} is missing or unreadable")
        rc_mv, err_mv = finalize_output(tmp, dest)
        if rc_mv != 0:
            raise CaptureOutputError(err_mv)
        return dest


def _position(t: float) -> float:
    if t is None or not math.isfinite(t) or t < 0:
        return 0.0
    return float(t)
