"""
Sparkline geometry — maps a window of (t, c) samples onto an SVG path.

The scale is always the current window's min/max, so the trace rescales as
old samples are evicted. There is no fixed axis.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

DEFAULT_WIDTH = 280
DEFAULT_HEIGHT = 80


@dataclass(frozen=True)
class StreamSample:
    t: float
    c: float


@dataclass(frozen=True)
class PathProjection:
    d: str
    w: float = DEFAULT_WIDTH
    h: float = DEFAULT_HEIGHT

    @property
    def is_empty(self) -> bool:
        return not self.d

    def as_dict(self) -> dict:
        return {"d": self.d, "w": self.w, "h": self.h}


EMPTY_PROJECTION = PathProjection(d="")

_TENTH = Decimal("0.1")


def _fixed1(value: float) -> str:
    """One decimal, ties away from zero on the exact binary value."""
    return str(Decimal(value).quantize(_TENTH, rounding=ROUND_HALF_UP))


def build_path(
    samples: Sequence[StreamSample],
    width: float = DEFAULT_WIDTH,
    height: float = DEFAULT_HEIGHT,
) -> PathProjection:
    """Project samples into ``M x y L x y ...`` commands for a width×height box."""
    if len(samples) < 2:
        return PathProjection(d="", w=width, h=height)

    ts = [s.t for s in samples]
    cs = [s.c for s in samples]
    min_t, min_c = min(ts), min(cs)
    # Floor of 1 keeps flat series (equal t or equal c) finite.
    range_t = max(1, max(ts) - min_t)
    range_c = max(1, max(cs) - min_c)

    commands = []
    for i, s in enumerate(samples):
        x = (s.t - min_t) / range_t * width
        y = height - (s.c - min_c) / range_c * height
        commands.append(f"{'M' if i == 0 else 'L'} {_fixed1(x)} {_fixed1(y)}")
    return PathProjection(d=" ".join(commands), w=width, h=height)
