"""Overlay (watermark) sizing, placement and opacity."""

import math
import re
from dataclasses import dataclass
from typing import Any, Optional, Union

from PIL import Image

from smartedit import engine
from smartedit.engine import ImageHandle
from smartedit.geometry import round_half_up

# Matches integers 0..100 written without sign, decimals or leading zeros.
ZERO_TO_HUNDRED = re.compile(r"^(100|[1-9]?[0-9])$")


@dataclass(frozen=True)
class Percentage:
    """Offset as a percentage of the base dimension; negative anchors to the far edge."""

    value: float


@dataclass(frozen=True)
class Absolute:
    """Offset in pixels; negative anchors to the far edge."""

    value: int


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset()

Placement = Union[Percentage, Absolute, _Unset]


def _is_plain_number(raw: str) -> bool:
    try:
        float(raw)
    except ValueError:
        return False
    return True


def parse_placement(raw: Any) -> Placement:
    """Parse a ``left``/``top`` option: ``"25p"``, ``"-10p"``, ``40``, ``"-30"``.

    Anything that is neither a percentage nor a number parses to ``UNSET``.
    """
    if raw is None or isinstance(raw, bool):
        return UNSET
    if isinstance(raw, int):
        return Absolute(raw)
    if isinstance(raw, float):
        return Absolute(int(raw)) if math.isfinite(raw) else UNSET

    text = str(raw).strip()
    if not _is_plain_number(text) and text.endswith("p"):
        try:
            value = float(text[:-1])
        except ValueError:
            return UNSET
        return Percentage(value) if math.isfinite(value) else UNSET
    try:
        return Absolute(int(float(text)))
    except (ValueError, OverflowError):
        return UNSET


def resolve_placement(placement: Placement, base_size: int, overlay_size: int) -> Optional[float]:
    """Pixel offset along one axis, or None when the placement is unset or not finite."""
    if isinstance(placement, Percentage):
        if placement.value < 0:
            offset = base_size + base_size * placement.value / 100 - overlay_size
        else:
            offset = base_size * placement.value / 100
    elif isinstance(placement, Absolute):
        if placement.value < 0:
            offset = base_size + placement.value - overlay_size
        else:
            offset = placement.value
    else:
        return None
    if isinstance(offset, float) and not math.isfinite(offset):
        return None
    return offset


def resolve_overlay_options(
    options: Optional[dict],
    base_w: int,
    base_h: int,
    overlay_w: int,
    overlay_h: int,
) -> dict:
    """Return a copy of ``options`` with ``left``/``top`` resolved to pixels.

    Offsets that do not parse are dropped so the engine's default placement
    applies. Other keys pass through untouched.
    """
    resolved = dict(options or {})
    for key, base_size, overlay_size in (("left", base_w, overlay_w), ("top", base_h, overlay_h)):
        if key not in resolved:
            continue
        offset = resolve_placement(parse_placement(resolved[key]), base_size, overlay_size)
        if offset is None:
            del resolved[key]
        else:
            resolved[key] = offset
    return resolved


def zero_to_hundred(value: Any) -> Optional[int]:
    """Return ``value`` as an int when it is a whole number 0..100, else None."""
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if isinstance(value, float) and value.is_integer():
        text = str(int(value))
    if not ZERO_TO_HUNDRED.match(text):
        return None
    return int(text)


def overlay_resize_options(w_ratio: Any, h_ratio: Any, base_w: int, base_h: int) -> dict:
    """Resize options sizing the overlay relative to the base image (fit inside)."""
    resize: dict = {"fit": "inside"}
    w_pct = zero_to_hundred(w_ratio)
    if w_pct is not None:
        resize["width"] = max(1, round_half_up(base_w * w_pct / 100))
    h_pct = zero_to_hundred(h_ratio)
    if h_pct is not None:
        resize["height"] = max(1, round_half_up(base_h * h_pct / 100))
    return resize


def build_alpha_mask(alpha: Any) -> Image.Image:
    """1x1 RGBA tile whose alpha keeps ``(100 - alpha)%`` of the overlay's opacity.

    ``alpha`` outside 0..100 leaves the overlay fully opaque.
    """
    pct = zero_to_hundred(alpha) or 0
    return Image.new("RGBA", (1, 1), (255, 255, 255, int(255 * (1 - pct / 100))))


def apply_alpha_mask(handle: ImageHandle, alpha: Any) -> ImageHandle:
    """Scale the handle's opacity by tiling the alpha mask over it with dest-in."""
    mask = build_alpha_mask(alpha)
    return engine.composite(handle, [{"input": mask, "tile": True, "blend": "dest-in"}])


def prepare_overlay(
    overlay_bytes: bytes,
    base_w: int,
    base_h: int,
    w_ratio: Any = None,
    h_ratio: Any = None,
    alpha: Any = None,
) -> bytes:
    """Resize and fade the overlay image, returning it encoded as PNG."""
    overlay = engine.decode(overlay_bytes, keep_metadata=False)
    engine.apply_operation(overlay, "resize", overlay_resize_options(w_ratio, h_ratio, base_w, base_h))
    apply_alpha_mask(overlay, alpha)
    return engine.encode(overlay, "png")
