from __future__ import annotations

import re
import unicodedata
from pathlib import Path
from typing import Optional

from .presets import Preset, output_extension


_ILLEGAL_CHARS_RE = re.compile(r'[\x00-\x1F\x7F<>:\/\\\|\?\*"]+')
_MULTIPLE_UNDERSCORES_RE = re.compile(r"_+")

# Many filesystems have a 255 byte/char filename limit per path segment.
_MAX_SEGMENT_LEN = 255


def sanitize_segment(name: str, *, reserve: int = 0) -> str:
    """Sanitize a single path segment to be cross-filesystem safe.

    - Normalize Unicode to NFC
    - Replace illegal characters with '_'
    - Trim trailing spaces/dots (NTFS/SMB safety)
    - Collapse multiple underscores
    - Leave `reserve` characters of the length limit for a suffix/extension
    """
    s = unicodedata.normalize("NFC", name)
    s = _ILLEGAL_CHARS_RE.sub("_", s)
    s = s.rstrip(" .")
    if not s:
        s = "_"
    s = _MULTIPLE_UNDERSCORES_RE.sub("_", s)
    limit = max(1, _MAX_SEGMENT_LEN - reserve)
    return s[:limit]


def output_base_path(source: Path, preset: Preset, out_dir: Optional[Path] = None) -> Path:
    """Destination path without extension: `<out_dir>/<stem><suffix>`.

    Defaults to the source's own folder.
    """
    folder = out_dir if out_dir is not None else source.parent
    ext = output_extension(preset, source)
    reserve = len(preset.suffix) + len(ext) + 1
    return folder / (sanitize_segment(source.stem, reserve=reserve) + preset.suffix)


def unique_base_path(base: Path, extension: str) -> Path:
    """Append " (n)" to `base` until `<base>.<extension>` does not exist."""
    if not Path(f"{base}.{extension}").exists():
        return base
    n = 1
    while True:
        candidate = base.with_name(f"{base.name} ({n})")
        if not Path(f"{candidate}.{extension}").exists():
            return candidate
        n += 1
