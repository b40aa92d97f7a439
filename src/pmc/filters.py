"""Minimal video filter-chain handling for `-vf` values.

Only what the argument builder needs: split a chain into filters without
breaking on commas inside quotes or parentheses, recognise deinterlacers,
and swap/strip them.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

FIELD_AWARE_DEINTERLACER = "bwdif=mode=send_field:parity=auto:deint=all"
# one output frame per input frame, for single-frame grabs
FRAME_DEINTERLACER = "yadif=mode=send_frame:parity=auto:deint=all"

DEINTERLACE_FILTERS = frozenset(
    {
        "yadif",
        "yadif_cuda",
        "yadif_videotoolbox",
        "bwdif",
        "bwdif_cuda",
        "bwdif_vulkan",
        "w3fdif",
        "estdif",
        "kerndeint",
        "nnedi",
    }
)


def split_chain(text: str) -> List[str]:
    parts: List[str] = []
    current: List[str] = []
    quote = None
    depth = 0
    escaped = False
    for ch in text:
        if escaped:
            current.append(ch)
            escaped = False
            continue
        if ch == "\\":
            current.append(ch)
            escaped = True
            continue
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(0, depth - 1)
        elif ch == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    tail = "".join(current).strip()
    if tail or parts:
        parts.append(tail)
    return [p for p in parts if p]


def filter_name(expr: str) -> str:
    return expr.split("=", 1)[0].strip().lower()


@dataclass(frozen=True)
class FilterChain:
    filters: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "FilterChain":
        return cls(tuple(split_chain(text)))

    def render(self) -> str:
        return ",".join(self.filters)

    def __bool__(self) -> bool:
        return bool(self.filters)

    def has_deinterlacer(self) -> bool:
        return any(filter_name(f) in DEINTERLACE_FILTERS for f in self.filters)

    def strip_deinterlace(self) -> "FilterChain":
        return FilterChain(tuple(f for f in self.filters if filter_name(f) not in DEINTERLACE_FILTERS))

    def with_deinterlacer(self, expr: str = FIELD_AWARE_DEINTERLACER) -> "FilterChain":
        """Replace existing deinterlacers with `expr`, or prepend it when there are none."""
        out: List[str] = []
        placed = False
        for f in self.filters:
            if filter_name(f) in DEINTERLACE_FILTERS:
                if not placed:
                    out.append(expr)
                    placed = True
                continue
            out.append(f)
        if not placed:
            out.insert(0, expr)
        return FilterChain(tuple(out))
