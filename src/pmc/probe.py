"""ffprobe wrapper.

Every query is bounded by a timeout and fails soft: a probe that cannot
answer returns None (or an empty list) and the caller treats the property
as unknown.
"""
from __future__ import annotations

import math
import re
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger


@dataclass(frozen=True)
class AudioStreamInfo:
    index: int
    channels: Optional[int] = None
    channel_layout: Optional[str] = None


@dataclass(frozen=True)
class VideoColorInfo:
    codec_name: str = ""
    pix_fmt: str = ""
    color_space: str = ""
    color_primaries: str = ""
    color_transfer: str = ""
    color_range: str = ""
    profile: str = ""

    @property
    def has_color_metadata(self) -> bool:
        values = (self.color_space, self.color_primaries, self.color_transfer)
        return any(v and v != "unknown" for v in values)

    @property
    def bit_depth(self) -> int:
        return pix_fmt_bit_depth(self.pix_fmt)


class HDRType(str, Enum):
    NONE = "none"
    PRORES_RAW = "prores_raw"
    HDR_10BIT = "hdr_10bit"


_HIGH_BIT_DEPTH_MARKERS = ("10", "12", "16", "p010", "p016")
_PACKED_16BIT_FORMATS = ("rgb48", "bgr48", "rgba64", "bgra64")
_DEPTH_SUFFIX_RE = re.compile(r"(\d+)(le|be)$")
_COMPONENT_DEPTHS = (9, 10, 12, 14, 16)


def pix_fmt_bit_depth(pix_fmt: str) -> int:
    """Bits per component of an ffmpeg pixel format name; 8 when not encoded in it."""
    fmt = (pix_fmt or "").lower()
    if fmt.startswith(_PACKED_16BIT_FORMATS):
        return 16
    if fmt in ("p010le", "p010be", "p010"):
        return 10
    if fmt in ("p016le", "p016be", "p016"):
        return 16
    m = _DEPTH_SUFFIX_RE.search(fmt)
    if m and int(m.group(1)[-2:]) in _COMPONENT_DEPTHS:
        return int(m.group(1)[-2:])
    return 8


def classify_hdr(info: Optional[VideoColorInfo]) -> HDRType:
    """Decide which colour adaptation thumbnails of this stream need."""
    if info is None:
        return HDRType.NONE
    if "prores" in info.codec_name and ("rgb" in info.pix_fmt or "bayer" in info.pix_fmt):
        return HDRType.PRORES_RAW
    high_depth = any(m in info.pix_fmt for m in _HIGH_BIT_DEPTH_MARKERS)
    if high_depth and not info.has_color_metadata:
        return HDRType.HDR_10BIT
    return HDRType.NONE


def parse_key_values(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep:
            out[key.strip()] = value.strip()
    return out


def parse_stream_blocks(text: str) -> List[Dict[str, str]]:
    """Parse ffprobe's default writer output into one dict per [STREAM] block."""
    blocks: List[Dict[str, str]] = []
    current: Optional[Dict[str, str]] = None
    for raw in text.splitlines():
        line = raw.strip()
        if line == "[STREAM]":
            current = {}
        elif line == "[/STREAM]":
            if current is not None:
                blocks.append(current)
            current = None
        elif current is not None:
            key, sep, value = line.partition("=")
            if sep:
                current[key.strip()] = value.strip()
    return blocks


def _to_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value not in (None, "", "N/A") else None
    except ValueError:
        return None


class MediaProber:
    def __init__(
        self,
        ffprobe_path: str = "ffprobe",
        *,
        timeout: float = 5.0,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout
        self._run = run

    def _query(self, args: List[str], source: Path) -> Optional[str]:
        cmd = [self.ffprobe_path, "-v", "error", *args, str(source)]
        try:
            proc = self._run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            logger.warning("ffprobe timed out after {}s on {}", self.timeout, source)
            return None
        except OSError as e:
            logger.warning("ffprobe could not run on {}: {}", source, e)
            return None
        if proc.returncode != 0:
            logger.debug("ffprobe rc={} on {}: {}", proc.returncode, source, (proc.stderr or "").strip())
            return None
        return proc.stdout or ""

    def duration(self, source: Path) -> Optional[float]:
        out = self._query(
            ["-show_entries", "format=duration", "-of", "default=noprint_wrappers=1:nokey=1"],
            source,
        )
        if not out:
            return None
        try:
            value = float(out.strip().splitlines()[0])
        except (ValueError, IndexError):
            return None
        if not math.isfinite(value) or value <= 0:
            return None
        return value

    def audio_streams(self, source: Path) -> List[AudioStreamInfo]:
        out = self._query(
            ["-select_streams", "a", "-show_entries", "stream=index,channels,channel_layout", "-of", "default"],
            source,
        )
        if not out:
            return []
        streams = []
        for block in parse_stream_blocks(out):
            index = _to_int(block.get("index"))
            if index is None:
                continue
            layout = block.get("channel_layout") or None
            streams.append(
                AudioStreamInfo(
                    index=index,
                    channels=_to_int(block.get("channels")),
                    channel_layout=None if layout in ("unknown", "N/A") else layout,
                )
            )
        return streams

    def field_order(self, source: Path) -> Optional[str]:
        out = self._query(
            ["-select_streams", "v:0", "-show_entries", "stream=field_order", "-of", "default=noprint_wrappers=1:nokey=1"],
            source,
        )
        if out is None:
            return None
        value = out.strip().splitlines()[0].strip() if out.strip() else ""
        return value or None

    def is_interlaced(self, source: Path) -> Optional[bool]:
        """True/False when the field order is known, None otherwise."""
        order = self.field_order(source)
        if order is None or order == "unknown":
            return None
        return order != "progressive"

    def video_info(self, source: Path) -> Tuple[Optional[bool], Optional[VideoColorInfo]]:
        """(has_video, colour info) of the first video stream.

        has_video is None when ffprobe itself failed, False when it ran and
        found no video stream.
        """
        out = self._query(
            [
                "-select_streams", "v:0",
                "-show_entries",
                "stream=codec_name,profile,pix_fmt,color_space,color_primaries,color_transfer,color_range",
                "-of", "default=noprint_wrappers=1",
            ],
            source,
        )
        if out is None:
            return None, None
        kv = parse_key_values(out)
        if not kv:
            return False, None
        return True, VideoColorInfo(
            codec_name=kv.get("codec_name", ""),
            pix_fmt=kv.get("pix_fmt", ""),
            color_space=kv.get("color_space", ""),
            color_primaries=kv.get("color_primaries", ""),
            color_transfer=kv.get("color_transfer", ""),
            color_range=kv.get("color_range", ""),
            profile=kv.get("profile", ""),
        )

    def color_info(self, source: Path) -> Optional[VideoColorInfo]:
        return self.video_info(source)[1]

    def hdr_type(self, source: Path) -> HDRType:
        kind = classify_hdr(self.color_info(source))
        if kind is not HDRType.NONE:
            logger.info("Detected {} content in {}", kind.value, source.name)
        return kind
