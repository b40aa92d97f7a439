"""Export preset catalog.

A preset is a named bundle of ffmpeg output flags plus the file naming
rules (extension, suffix) and the tracks the output is expected to carry.
Presets are immutable; `resolve_arguments` returns a fresh list each time
with the metadata strategy applied for the job at hand.
"""
from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger


COMMON_ARGS: Tuple[str, ...] = ("-hide_banner",)

# ffmpeg writes "Lavf..." into the encoder tag unless it is overwritten.
BLANK_ENCODER_TAG = "encoder= "

# Scale to even dimensions honouring the display aspect, then bound the short edge.
def _scale_filter(short_edge: int) -> str:
    return (
        "scale='trunc(ih*dar/2)*2:trunc(ih/2)*2',setsar=1/1,"
        f"scale=w='if(lte(iw,ih),{short_edge},-2)':h='if(lte(iw,ih),-2,{short_edge})'"
    )


@dataclass(frozen=True)
class Preset:
    id: str
    display_name: str
    extension: str
    suffix: str
    base_args: Tuple[str, ...]
    outputs_video: bool = True
    outputs_audio: bool = True
    resolution: Optional[Tuple[int, int]] = None
    default_map: str = "-1"
    apply_metadata: bool = True
    merge_all_audio: bool = False
    keeps_source_extension: bool = False
    description: str = field(default="", compare=False)

    @property
    def is_custom(self) -> bool:
        return self.id.startswith("custom")

    def resolved_waveform_resolution(self, default: Tuple[int, int] = (1920, 1080)) -> Tuple[int, int]:
        return self.resolution or default


VIDEO_LOOP = "video_loop"
VIDEO_LOOP_AUDIO = "video_loop_audio"
TV_HD = "tv_hd"
TV_4K = "tv_4k"
PRORES = "prores"
STREAM_COPY = "stream_copy"
ANIMATED_AVIF = "animated_avif"
HEVC_PROXY = "hevc_proxy_1080p"
AUDIO_WAV = "audio_wav"
AUDIO_AAC = "audio_aac"

PRORES_PROFILES = ("proxy", "lt", "standard", "hq", "4444", "4444xq")

_LOOP_ARGS = (
    "-bitexact",
    "-bsf:v", "filter_units=remove_types=6",
    "-pix_fmt", "yuv420p",
    "-vcodec", "libx264",
    "-movflags", "+faststart",
    "-preset", "veryslow",
    "-crf", "23",
    "-minrate", "3000k",
    "-maxrate", "9000k",
    "-bufsize", "18000k",
    "-profile:v", "main",
    "-level:v", "4.0",
)


def _hevc_args(bitrate: str, short_edge: int) -> Tuple[str, ...]:
    return (
        "-pix_fmt", "yuv420p10le",
        "-c:v", "libx265",
        "-b:v", bitrate,
        "-profile:v", "main10",
        "-tag:v", "hvc1",
        "-c:a", "pcm_s24le",
        "-map", "0:v",
        "-map", "0:a",
        "-vf", _scale_filter(short_edge),
    )


_BUILTIN: Tuple[Preset, ...] = (
    Preset(
        id=VIDEO_LOOP,
        display_name="VideoLoop",
        extension="mp4",
        suffix="_loop",
        base_args=COMMON_ARGS + _LOOP_ARGS + ("-an", "-vf", _scale_filter(1080)),
        outputs_audio=False,
        description="Silent H.264 loop for web players",
    ),
    Preset(
        id=VIDEO_LOOP_AUDIO,
        display_name="VideoLoop w/Audio",
        extension="mp4",
        suffix="_loop_audio",
        base_args=COMMON_ARGS + _LOOP_ARGS + ("-c:a", "aac", "-b:a", "192k", "-vf", _scale_filter(1080)),
        description="H.264 loop with AAC audio",
    ),
    Preset(
        id=TV_HD,
        display_name="TV - HD",
        extension="mov",
        suffix="_tv_hd",
        base_args=COMMON_ARGS + _hevc_args("18M", 1080),
        resolution=(1920, 1080),
        default_map="0",
        description="10-bit HEVC at 1080p with PCM audio for broadcast",
    ),
    Preset(
        id=TV_4K,
        display_name="TV - 4K",
        extension="mov",
        suffix="_tv_4k",
        base_args=COMMON_ARGS + _hevc_args("60M", 2160),
        resolution=(3840, 2160),
        default_map="0",
        description="10-bit HEVC at 2160p with PCM audio for broadcast",
    ),
    Preset(
        id=PRORES,
        display_name="ProRes",
        extension="mov",
        suffix="_prores",
        base_args=COMMON_ARGS + (
            "-pix_fmt", "yuv422p10le",
            "-vcodec", "prores_ks",
            "-profile:v", "standard",
            "-c:a", "pcm_s24le",
            "-map", "0:v",
            "-map", "0:a",
        ),
        default_map="0",
        description="ProRes intermediate, profile from settings",
    ),
    Preset(
        id=STREAM_COPY,
        display_name="Stream Copy",
        extension="mp4",
        suffix="_copy",
        base_args=COMMON_ARGS + ("-map", "0", "-c", "copy"),
        outputs_video=False,
        default_map="0",
        keeps_source_extension=True,
        description="Remux without re-encoding",
    ),
    Preset(
        id=ANIMATED_AVIF,
        display_name="Animated AVIF",
        extension="avif",
        suffix="_avif",
        base_args=COMMON_ARGS + (
            "-pix_fmt", "p010le",
            "-vcodec", "libsvtav1",
            "-preset", "6",
            "-crf", "28",
            "-an",
            "-vf", _scale_filter(900),
        ),
        outputs_audio=False,
        description="Animated AV1 image",
    ),
    Preset(
        id=HEVC_PROXY,
        display_name="HEVC Proxy",
        extension="mov",
        suffix="_proxy_1080p",
        base_args=COMMON_ARGS + (
            "-pix_fmt", "yuv420p10le",
            "-c:v", "libx265",
            "-b:v", "6M",
            "-profile:v", "main10",
            "-tag:v", "hvc1",
            "-vf", _scale_filter(1080),
            "-map", "0:v",
            "-c:a", "pcm_s24le",
            "-map", "0:a",
        ),
        resolution=(1920, 1080),
        default_map="0",
        description="Lightweight 1080p editing proxy",
    ),
    Preset(
        id=AUDIO_WAV,
        display_name="Audio only WAV (all channels)",
        extension="wav",
        suffix="_audio_wav",
        base_args=COMMON_ARGS + ("-vn", "-map", "0:a", "-rf64", "auto", "-c:a", "pcm_s24le"),
        outputs_video=False,
        merge_all_audio=True,
        description="24-bit PCM with every channel of every audio stream",
    ),
    Preset(
        id=AUDIO_AAC,
        display_name="Audio only AAC (stereo downmix)",
        extension="m4a",
        suffix="_audio_aac",
        base_args=COMMON_ARGS + (
            "-vn",
            "-map", "0:a",
            "-ac", "2",
            "-c:a", "aac",
            "-b:a", "192k",
            "-movflags", "+faststart",
        ),
        outputs_video=False,
        description="Stereo AAC downmix",
    ),
)

CATALOG: Dict[str, Preset] = {p.id: p for p in _BUILTIN}


def list_presets(custom: Iterable[Preset] = ()) -> List[Preset]:
    return list(_BUILTIN) + list(custom)


def get_preset(preset_id: str, custom: Iterable[Preset] = ()) -> Preset:
    for p in custom:
        if p.id == preset_id:
            return p
    try:
        return CATALOG[preset_id]
    except KeyError:
        known = ", ".join(p.id for p in list_presets(custom))
        raise KeyError(f"Unknown preset {preset_id!r} (known: {known})") from None


def output_extension(preset: Preset, source: Optional[Path] = None) -> str:
    """Extension (no dot) for `preset` writing a file derived from `source`."""
    if preset.keeps_source_extension and source is not None:
        ext = source.suffix.lstrip(".")
        if ext:
            return ext.lower()
    return preset.extension


# --- argument-pair helpers -------------------------------------------------

def has_argument_pair(args: Sequence[str], flag: str, value: Optional[str] = None) -> bool:
    return any(
        args[i] == flag and (value is None or args[i + 1] == value)
        for i in range(len(args) - 1)
    )


def remove_argument_pairs(args: List[str], flag: str, value: Optional[str] = None) -> None:
    """Remove every `flag value` pair in place (any value when `value` is None)."""
    i = 0
    while i < len(args) - 1:
        if args[i] == flag and (value is None or args[i + 1] == value):
            del args[i : i + 2]
        else:
            i += 1


def append_argument_pair(args: List[str], flag: str, value: str) -> None:
    if not has_argument_pair(args, flag, value):
        args.extend([flag, value])


def set_argument_value(args: List[str], flag: str, value: str) -> bool:
    """Replace the value following the first `flag`; return False if absent."""
    for i in range(len(args) - 1):
        if args[i] == flag:
            args[i + 1] = value
            return True
    return False


def apply_metadata_strategy(args: List[str], *, preserve: bool, default_map: str = "-1") -> None:
    """Rewrite the metadata/chapter mapping flags of `args` in place.

    Earlier mappings and blank encoder tags are dropped first, so applying the
    strategy twice yields the same vector.
    """
    remove_argument_pairs(args, "-map_metadata")
    remove_argument_pairs(args, "-map_chapters")
    remove_argument_pairs(args, "-metadata", BLANK_ENCODER_TAG)
    remove_argument_pairs(args, "-metadata:s:v:0", BLANK_ENCODER_TAG)

    if preserve:
        # Presets with explicit -map lose global metadata unless re-mapped.
        if default_map != "-1":
            append_argument_pair(args, "-map_metadata", default_map)
            append_argument_pair(args, "-map_chapters", default_map)
        return

    append_argument_pair(args, "-map_metadata", "-1")
    append_argument_pair(args, "-map_chapters", "-1")
    append_argument_pair(args, "-metadata", BLANK_ENCODER_TAG)
    append_argument_pair(args, "-metadata:s:v:0", BLANK_ENCODER_TAG)


def resolve_arguments(
    preset: Preset,
    *,
    preserve_metadata: bool,
    prores_profile: Optional[str] = None,
) -> List[str]:
    args = list(preset.base_args)
    if preset.id == PRORES and prores_profile:
        if prores_profile not in PRORES_PROFILES:
            logger.warning("Unknown ProRes profile {!r}, using standard", prores_profile)
            prores_profile = "standard"
        set_argument_value(args, "-profile:v", prores_profile)
    if preset.apply_metadata:
        apply_metadata_strategy(args, preserve=preserve_metadata, default_map=preset.default_map)
    return args


# --- custom presets ---------------------------------------------------------

def parse_custom_command(text: str) -> List[str]:
    """Split a user-entered flag string like a POSIX shell would.

    Unbalanced quotes fall back to whitespace splitting rather than failing.
    """
    try:
        return shlex.split(text or "")
    except ValueError:
        return (text or "").split()


def make_custom_preset(
    slot: int,
    *,
    name: str = "",
    command: str = "",
    suffix: str = "",
    extension: str = "",
) -> Preset:
    if slot not in (1, 2, 3):
        raise ValueError(f"custom preset slot must be 1..3, got {slot}")
    suffix = suffix.strip() or f"_c{slot}"
    if not suffix.startswith("_"):
        suffix = "_" + suffix
    ext = extension.strip().lstrip(".").strip().lower() or "mp4"
    label = name.strip() or ("Custom" if slot == 1 else f"Custom {slot}")
    flags = parse_custom_command(command) if command.strip() else ["-c", "copy"]
    return Preset(
        id=f"custom{slot}",
        display_name=f"C{slot}: {label}",
        extension=ext,
        suffix=suffix,
        base_args=COMMON_ARGS + tuple(flags),
        apply_metadata=False,
        description="User-defined ffmpeg flags",
    )


def custom_presets_from_settings(configs: Sequence) -> List[Preset]:
    """Build custom presets from `CustomPresetConfig`-like objects, slot order."""
    return [
        make_custom_preset(
            i + 1,
            name=c.name,
            command=c.command,
            suffix=c.suffix,
            extension=c.extension,
        )
        for i, c in enumerate(configs[:3])
    ]
