"""Argument builder: ConversionJob -> EncoderCommand.

The builder never rejects user input. Out-of-range trims are dropped,
missing probe answers leave the preset untouched, and the resulting vector
is always runnable.
"""
from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import date
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from loguru import logger

from .filters import FilterChain
from .presets import (
    Preset,
    apply_metadata_strategy,
    output_extension,
    remove_argument_pairs,
    resolve_arguments,
)
from .probe import MediaProber


WAVEFORM_STYLES = ("linear", "circular", "compressed", "fisheye", "spectrogram")
LOUDNORM = "loudnorm=I=-16:TP=-1.5:LRA=11"


def _hex_color(value: str, fallback: str) -> str:
    v = (value or "").strip().lstrip("#")
    if v.lower().startswith("0x"):
        v = v[2:]
    if len(v) == 6 and all(c in "0123456789abcdefABCDEF" for c in v):
        return v.upper()
    return fallback


@dataclass(frozen=True)
class WaveformRequest:
    style: str = "fisheye"
    width: int = 1920
    height: int = 1080
    fps: int = 25
    background: str = "000000"
    foreground: str = "FFFFFF"
    normalize: bool = True

    def __post_init__(self) -> None:
        if self.style not in WAVEFORM_STYLES:
            raise ValueError(f"Unknown waveform style {self.style!r}")
        object.__setattr__(self, "background", _hex_color(self.background, "000000"))
        object.__setattr__(self, "foreground", _hex_color(self.foreground, "FFFFFF"))
        object.__setattr__(self, "width", max(2, int(self.width) // 2 * 2))
        object.__setattr__(self, "height", max(2, int(self.height) // 2 * 2))
        object.__setattr__(self, "fps", max(1, int(self.fps)))

    @classmethod
    def for_preset(cls, preset: Preset, **kwargs) -> "WaveformRequest":
        w, h = preset.resolved_waveform_resolution()
        return cls(width=w, height=h, **kwargs)


@dataclass
class ConversionJob:
    source: Path
    destination: Path
    preset: Preset
    comment: str = ""
    include_date_tag: bool = False
    preserve_metadata: bool = True
    trim_start: Optional[float] = None
    trim_end: Optional[float] = None
    waveform: Optional[WaveformRequest] = None
    expected_duration: Optional[float] = None
    prores_profile: Optional[str] = None
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])


@dataclass(frozen=True)
class EncoderCommand:
    arguments: Tuple[str, ...]
    output_path: Path
    trim_start: Optional[float] = None
    trim_end: Optional[float] = None
    effective_duration: Optional[float] = None
    expected_duration: Optional[float] = None

    @property
    def progress_duration(self) -> Optional[float]:
        """Total used to turn encoded time into a fraction."""
        if self.effective_duration:
            return self.effective_duration
        return self.expected_duration

    def argv(self, binary: str = "ffmpeg") -> List[str]:
        return [binary, *self.arguments]

    def with_output(self, path: Path) -> "EncoderCommand":
        """Same command writing to `path` (used for temp outputs)."""
        return replace(self, arguments=self.arguments[:-1] + (str(path),), output_path=path)


# --- trim ---------------------------------------------------------------------

def _malformed(value: Optional[float]) -> bool:
    return value is not None and (not math.isfinite(value) or value < 0)


def normalize_trim(start: Optional[float], end: Optional[float]) -> Tuple[Optional[float], Optional[float]]:
    """Return (start, end) with unset bounds as None.

    A negative or non-finite bound makes the whole range unusable; a zero
    bound only unsets that side.
    """
    if _malformed(start) or _malformed(end):
        return None, None
    return (start if start and start > 0 else None), (end if end and end > 0 else None)


def effective_duration(start: Optional[float], end: Optional[float]) -> Optional[float]:
    start, end = normalize_trim(start, end)
    if start is not None and end is not None:
        return max(end - start, 0.0)
    if end is not None:
        return end
    return None


def trimmed_duration(total: Optional[float], start: Optional[float], end: Optional[float]) -> Optional[float]:
    """Length of the part of a `total`-second source that a job will encode."""
    start, end = normalize_trim(start, end)
    if end is not None:
        return effective_duration(start, end)
    if total is None:
        return None
    return max(total - (start or 0.0), 0.0)


def trim_arguments(start: Optional[float], end: Optional[float]) -> List[str]:
    if end is None:
        return []
    if start is None:
        return ["-to", f"{end:.3f}"]
    length = end - start
    if length > 0:
        return ["-t", f"{length:.3f}"]
    return []


# --- comment metadata ---------------------------------------------------------

def comment_value(comment: str, include_date_tag: bool, today: date) -> Optional[str]:
    text = (comment or "").strip()
    if include_date_tag:
        value = f"comment=Date generated: {today:%Y%m%d}"
        if text:
            value += f" | {text}"
        return value
    if text:
        return f"comment={text}"
    return None


def apply_comment(args: List[str], value: Optional[str]) -> None:
    """Write a single comment entry, replacing one from the preset in place."""
    positions = [
        i for i in range(len(args) - 1)
        if args[i] == "-metadata" and args[i + 1].startswith("comment=")
    ]
    # Later duplicates go first so earlier indices stay valid.
    for i in reversed(positions[1:]):
        del args[i : i + 2]
    if positions:
        if value is None:
            del args[positions[0] : positions[0] + 2]
        else:
            args[positions[0] + 1] = value
    elif value is not None:
        args.extend(["-metadata", value])


# --- waveform visualization ---------------------------------------------------

def _style_chain(req: WaveformRequest) -> str:
    size = f"{req.width}x{req.height}"
    fg = f"0x{req.foreground}"
    if req.style == "linear":
        return f"showwaves=s={size}:mode=line:rate={req.fps}:colors={fg}"
    if req.style == "circular":
        side = min(req.width, req.height)
        return f"avectorscope=s={side}x{side}:mode=polar:draw=line:rate={req.fps}:zoom=1.5"
    if req.style == "compressed":
        return (
            "compand=attacks=0:points=-80/-80|-45/-15|-27/-9|0/-7|20/-7,"
            f"showwaves=s={size}:mode=cline:rate={req.fps}:colors={fg}:scale=sqrt"
        )
    if req.style == "fisheye":
        return (
            f"showwaves=s={size}:mode=cline:rate={req.fps}:colors={fg},"
            "format=yuva444p,lenscorrection=k1=-0.5:k2=0.2"
        )
    return f"showspectrum=s={size}:mode=combined:slide=scroll:color=intensity:scale=log,fps={req.fps}"


def waveform_filter_graph(req: WaveformRequest) -> str:
    norm = f"{LOUDNORM}," if req.normalize else ""
    return ";".join(
        [
            f"[0:a]{norm}asplit=2[aout][aviz]",
            f"[aviz]{_style_chain(req)}[wave]",
            f"color=c=0x{req.background}:s={req.width}x{req.height}:r={req.fps}[bg]",
            "[bg][wave]overlay=(W-w)/2:(H-h)/2:shortest=1,format=yuv420p[vout]",
        ]
    )


# --- builder ------------------------------------------------------------------

class CommandBuilder:
    def __init__(
        self,
        prober: Optional[MediaProber] = None,
        *,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.prober = prober
        self._today = today

    def build(self, job: ConversionJob) -> EncoderCommand:
        start, end = normalize_trim(job.trim_start, job.trim_end)
        ext = "mp4" if job.waveform is not None else output_extension(job.preset, job.source)
        output = Path(f"{job.destination}.{ext}")

        args: List[str] = ["-y"]
        if start is not None:
            args += ["-ss", f"{start:.3f}"]
        args += ["-i", str(job.source)]
        args += trim_arguments(start, end)
        if job.waveform is not None:
            args += self._waveform_arguments(job)
        else:
            args += self._preset_arguments(job)
        args.append(str(output))

        return EncoderCommand(
            arguments=tuple(args),
            output_path=output,
            trim_start=start,
            trim_end=end,
            effective_duration=effective_duration(start, end),
            expected_duration=job.expected_duration,
        )

    def _preset_arguments(self, job: ConversionJob) -> List[str]:
        preset = job.preset
        args = resolve_arguments(
            preset,
            preserve_metadata=job.preserve_metadata,
            prores_profile=job.prores_profile,
        )
        if not preset.is_custom:
            apply_comment(args, comment_value(job.comment, job.include_date_tag, self._today()))
        if preset.merge_all_audio:
            self._merge_audio_streams(args, job.source)
        self._adapt_deinterlace(args, job.source)
        return args

    def _waveform_arguments(self, job: ConversionJob) -> List[str]:
        args = [
            "-filter_complex", waveform_filter_graph(job.waveform),
            "-map", "[vout]",
            "-map", "[aout]",
            "-c:v", "libx264",
            "-preset", "medium",
            "-crf", "20",
            "-pix_fmt", "yuv420p",
            "-c:a", "aac",
            "-b:a", "192k",
            "-movflags", "+faststart",
        ]
        apply_metadata_strategy(args, preserve=job.preserve_metadata, default_map="0")
        apply_comment(args, comment_value(job.comment, job.include_date_tag, self._today()))
        return args

    def _merge_audio_streams(self, args: List[str], source: Path) -> None:
        if self.prober is None:
            return
        streams = self.prober.audio_streams(source)
        if len(streams) <= 1:
            return
        n = len(streams)
        channels = sum(s.channels or 0 for s in streams)
        labels = "".join(f"[0:a:{i}]" for i in range(n))
        remove_argument_pairs(args, "-map", "0:a")
        args += ["-filter_complex", f"{labels}amerge=inputs={n}[aout]", "-map", "[aout]"]
        if channels > 0:
            args += ["-ac", str(channels)]
        logger.debug("Merging {} audio streams ({} channels) from {}", n, channels, source.name)

    def _adapt_deinterlace(self, args: List[str], source: Path) -> None:
        try:
            idx = args.index("-vf")
        except ValueError:
            return
        if idx + 1 >= len(args) or self.prober is None:
            return
        interlaced = self.prober.is_interlaced(source)
        if interlaced is None:
            return
        chain = FilterChain.parse(args[idx + 1])
        chain = chain.with_deinterlacer() if interlaced else chain.strip_deinterlace()
        if chain:
            args[idx + 1] = chain.render()
        else:
            del args[idx : idx + 2]
