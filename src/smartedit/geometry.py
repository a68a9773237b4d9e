"""Bounding-box math for smart cropping.

Detectors report subjects as fractional boxes (0.0-1.0 of the frame). The
helpers here turn those into pixel crop areas and fuse many detections into a
single covering box.
"""

import math
from dataclasses import dataclass
from typing import Iterable, Mapping


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in fractions of image width/height."""

    left: float
    top: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.left + self.width

    @property
    def bottom(self) -> float:
        return self.top + self.height

    @classmethod
    def from_dict(cls, payload: Mapping) -> "BoundingBox":
        """Build from a detector payload (``Left``/``Top``/``Width``/``Height`` keys)."""

        def _get(name: str) -> float:
            value = payload.get(name, payload.get(name.lower(), 0.0))
            return float(value or 0.0)

        return cls(left=_get("Left"), top=_get("Top"), width=_get("Width"), height=_get("Height"))

    def to_dict(self) -> dict[str, float]:
        return {"Left": self.left, "Top": self.top, "Width": self.width, "Height": self.height}


FULL_IMAGE = BoundingBox(left=0.0, top=0.0, width=1.0, height=1.0)


@dataclass(frozen=True)
class CropArea:
    """Axis-aligned rectangle in pixels."""

    left: int
    top: int
    width: int
    height: int

    def as_box(self) -> tuple[int, int, int, int]:
        """Return (x1, y1, x2, y2) as expected by ``PIL.Image.crop``."""
        return self.left, self.top, self.left + self.width, self.top + self.height

    def to_dict(self) -> dict[str, int]:
        return {"left": self.left, "top": self.top, "width": self.width, "height": self.height}


def round_half_up(value: float) -> int:
    """Round to the nearest int with .5 going up (``round`` would go to even)."""
    return int(math.floor(value + 0.5))


def crop_area_from_bounding_box(
    box: BoundingBox,
    padding: float,
    img_w: int,
    img_h: int,
) -> CropArea:
    """Expand a fractional box by ``padding`` pixels on every side and clamp to the frame.

    The origin is floored at zero and the size is capped so the area never runs
    past the right/bottom edge. Negative padding can still produce an empty or
    inverted area; run :func:`validate_crop_area` before extracting.
    """
    left = max(0, round_half_up(box.left * img_w - padding))
    top = max(0, round_half_up(box.top * img_h - padding))
    width = min(img_w - left, round_half_up(box.width * img_w + 2 * padding))
    height = min(img_h - top, round_half_up(box.height * img_h + 2 * padding))
    return CropArea(left=left, top=top, width=width, height=height)


def validate_crop_area(area: CropArea, img_w: int, img_h: int) -> bool:
    """True when ``area`` is a non-empty rectangle fully inside an img_w x img_h frame."""
    if area.width <= 0 or area.height <= 0:
        return False
    if area.left < 0 or area.top < 0:
        return False
    return area.left + area.width <= img_w and area.top + area.height <= img_h


@dataclass
class BoundingBoxAccumulator:
    """Running union of detected instances.

    Seeded as a zero-size box at the frame centre. Each instance pulls the
    top/left edges out to the running minimum, then grows height/width so the
    box reaches the instance's bottom/right edge measured from the updated
    top/left. With no instances the result is the full frame.
    """

    left: float = 0.5
    top: float = 0.5
    width: float = 0.0
    height: float = 0.0
    count: int = 0

    def add(self, box: BoundingBox) -> None:
        self.count += 1
        self.top = min(self.top, box.top)
        self.left = min(self.left, box.left)
        if box.bottom > self.top + self.height:
            self.height = box.bottom - self.top
        if box.right > self.left + self.width:
            self.width = box.right - self.left

    def extend(self, boxes: Iterable[BoundingBox]) -> "BoundingBoxAccumulator":
        for box in boxes:
            self.add(box)
        return self

    def result(self) -> BoundingBox:
        if self.count == 0:
            return FULL_IMAGE
        return BoundingBox(left=self.left, top=self.top, width=self.width, height=self.height)


def fuse_bounding_boxes(boxes: Iterable[BoundingBox]) -> BoundingBox:
    """Fuse all ``boxes`` into one covering box (full frame when empty)."""
    return BoundingBoxAccumulator().extend(boxes).result()
