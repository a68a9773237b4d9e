#!/usr/bin/env python3
"""
Image Edit Handler
=================================================

Applies an ordered set of edits to one image and returns the re-encoded
result as base64 text, bounded by a maximum payload size.

Edits:
  - Any registered engine operation (resize, rotate, flip, flop, blur, ...)
  - overlayWith: composite a watermark fetched from the object store, sized
    relative to the base image and placed by pixel/percentage offsets
  - smartCrop:  crop around the N-th detected face
  - smartCrop2: crop around the union of every detected object

Usage:
  smartedit photo.jpg --edits '{"resize": {"width": 400}, "smartCrop": {"padding": 20}}' -o out.jpg
  smartedit photo.jpg --edits edits.json --format webp > photo.webp.b64
"""

import argparse
import base64
import binascii
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from smartedit import config, engine
from smartedit.detectors import FaceDetector, LabelDetector, build_face_detector, build_label_detector
from smartedit.engine import ImageHandle
from smartedit.errors import (
    ImageHandlerError,
    face_index_out_of_range,
    invalid_parameter,
    padding_out_of_bounds,
    too_large_image,
    unsupported_operation,
    upstream_error,
)
from smartedit.geometry import (
    BoundingBox,
    BoundingBoxAccumulator,
    CropArea,
    crop_area_from_bounding_box,
    validate_crop_area,
)
from smartedit.overlay import prepare_overlay, resolve_overlay_options
from smartedit.storage import ObjectStore, build_object_store

SPECIAL_EDITS = {"overlayWith", "smartCrop", "smartCrop2"}
DEFAULT_RESIZE = {"fit": "inside"}


# ---------------------------------------------------------------------------
# Request / edit mapping
# ---------------------------------------------------------------------------


@dataclass
class ImageRequest:
    original_image: bytes
    edits: Optional[dict] = None
    output_format: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: dict) -> "ImageRequest":
        """Build from ``{"originalImage", "edits", "outputFormat"}``; image may be base64 text."""
        original = payload.get("originalImage")
        if isinstance(original, str):
            try:
                original = base64.b64decode(original, validate=True)
            except (binascii.Error, ValueError) as e:
                raise invalid_parameter("originalImage", "expected base64 text") from e
        if not isinstance(original, (bytes, bytearray)) or not original:
            raise invalid_parameter("originalImage", "image bytes are required")

        edits = payload.get("edits")
        if edits is not None and not isinstance(edits, dict):
            raise invalid_parameter("edits", "expected an object of edit name to parameters")
        return cls(original_image=bytes(original), edits=edits, output_format=payload.get("outputFormat"))


def with_default_resize(edits: dict) -> dict:
    """Return a new edit mapping with ``resize`` defaulted or its dimensions coerced.

    A missing resize becomes a dimensionless fit-inside resize appended last.
    The caller's mapping is never modified.
    """
    merged = dict(edits)
    resize = merged.get("resize")
    if resize is None:
        merged["resize"] = dict(DEFAULT_RESIZE)
        return merged
    if not isinstance(resize, dict):
        raise invalid_parameter("resize", "expected an object with width/height/fit")

    coerced = dict(resize)
    for dim in ("width", "height"):
        if coerced.get(dim):
            try:
                coerced[dim] = engine.coerce_number(coerced[dim])
            except (TypeError, ValueError) as e:
                raise invalid_parameter("resize", f"{dim} must be numeric") from e
    merged["resize"] = coerced
    return merged


def _changes_size(resize: dict) -> bool:
    """A resize without width/height keeps the current dimensions."""
    return bool(resize.get("width") or resize.get("height"))


def validate_edit_names(edits: dict) -> None:
    """Reject edit names that are neither special edits nor engine operations."""
    for name in edits:
        if name not in SPECIAL_EDITS and not engine.is_supported_operation(name):
            raise unsupported_operation(name)


def check_payload_size(payload: str | bytes, limit: int) -> None:
    """Raise TooLargeImageException when the payload is strictly longer than ``limit``."""
    if len(payload) > limit:
        raise too_large_image()


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


class ImageHandler:
    """Runs the edit pipeline for one request at a time.

    Collaborators are built from the environment on first use unless given.
    """

    def __init__(
        self,
        object_store: Optional[ObjectStore] = None,
        face_detector: Optional[FaceDetector] = None,
        label_detector: Optional[LabelDetector] = None,
        max_payload_bytes: Optional[int] = None,
        debug: bool = False,
    ):
        self._object_store = object_store
        self._face_detector = face_detector
        self._label_detector = label_detector
        self.max_payload_bytes = max_payload_bytes or config.resolve_max_payload_bytes()
        self.debug = debug

    @property
    def object_store(self) -> ObjectStore:
        if self._object_store is None:
            self._object_store = build_object_store()
        return self._object_store

    @property
    def face_detector(self) -> FaceDetector:
        if self._face_detector is None:
            self._face_detector = build_face_detector(debug=self.debug)
        return self._face_detector

    @property
    def label_detector(self) -> LabelDetector:
        if self._label_detector is None:
            self._label_detector = build_label_detector(debug=self.debug)
        return self._label_detector

    def process(self, request: ImageRequest) -> str:
        """Apply the request's edits and return the encoded image as base64 text."""
        edits = request.edits
        if edits:
            # rotate: null auto-orients, so the source orientation tag is not carried over.
            keep_metadata = not ("rotate" in edits and edits["rotate"] is None)
            handle = engine.decode(request.original_image, keep_metadata=keep_metadata)
            handle = self.apply_edits(handle, edits)
            payload = engine.encode(handle, request.output_format)
        else:
            payload = request.original_image

        encoded = base64.b64encode(payload).decode("ascii")
        check_payload_size(encoded, self.max_payload_bytes)
        return encoded

    def apply_edits(self, handle: ImageHandle, edits: dict) -> ImageHandle:
        """Apply ``edits`` to ``handle`` in order, mutating it in place."""
        edits = with_default_resize(edits)
        validate_edit_names(edits)
        if self.debug:
            print(f"🛠️ Applying {len(edits)} edit(s): {', '.join(edits)}")

        resize_applied = False
        pending_overlays: list[dict] = []
        for key, value in edits.items():
            if key == "overlayWith":
                # Overlays are sized and placed against the resized base, so an
                # overlay ahead of a dimension-changing resize waits for it.
                if not resize_applied and _changes_size(edits["resize"]):
                    if self.debug:
                        target = engine.resized_size(handle.width, handle.height, edits["resize"])
                        print(f"  ⏳ Overlay deferred until resize to {target[0]}x{target[1]}")
                    pending_overlays.append(value or {})
                else:
                    self._apply_overlay(handle, value or {})
            elif key == "smartCrop":
                options = value or {}
                box = self.get_bounding_box(engine.snapshot(handle), options.get("faceIndex"))
                self._apply_crop(handle, box, options)
            elif key == "smartCrop2":
                options = value or {}
                box = self.get_bounding_box2(engine.snapshot(handle), options.get("minConfidence"))
                self._apply_crop(handle, box, options)
            elif key == "resize":
                engine.apply_operation(handle, key, value)
                resize_applied = True
                for pending in pending_overlays:
                    self._apply_overlay(handle, pending)
                pending_overlays.clear()
            else:
                engine.apply_operation(handle, key, value)
        return handle

    # -- overlay ------------------------------------------------------------

    def _apply_overlay(self, handle: ImageHandle, value: dict) -> None:
        overlay = self.get_overlay_image(
            value.get("bucket"),
            value.get("key"),
            value.get("wRatio"),
            value.get("hRatio"),
            value.get("alpha"),
            handle.width,
            handle.height,
        )
        overlay_handle = engine.decode(overlay, keep_metadata=False)
        options = resolve_overlay_options(
            value.get("options"),
            handle.width,
            handle.height,
            overlay_handle.width,
            overlay_handle.height,
        )
        if self.debug:
            print(f"  🖇️ Overlay {value.get('bucket')}/{value.get('key')} at {options}")
        engine.composite(handle, [{**options, "input": overlay}])

    def get_overlay_image(
        self,
        bucket: Optional[str],
        key: Optional[str],
        w_ratio: Any,
        h_ratio: Any,
        alpha: Any,
        base_w: int,
        base_h: int,
    ) -> bytes:
        """Fetch the overlay and size/fade it for a base_w x base_h image."""
        try:
            overlay = self.object_store.get_object(bucket, key)
            return prepare_overlay(overlay, base_w, base_h, w_ratio=w_ratio, h_ratio=h_ratio, alpha=alpha)
        except ImageHandlerError:
            raise
        except Exception as e:
            raise upstream_error(e) from e

    # -- smart crop ---------------------------------------------------------

    def get_bounding_box(self, image_bytes: bytes, face_index: Any = None) -> BoundingBox:
        """Box of the ``face_index``-th face (0 = most confident)."""
        try:
            index = 0 if face_index is None else int(face_index)
        except (TypeError, ValueError) as e:
            raise invalid_parameter("faceIndex", "expected an integer") from e

        try:
            faces = self.face_detector.detect_faces(image_bytes)
        except ImageHandlerError:
            raise
        except Exception as e:
            raise upstream_error(e) from e

        if index < 0 or index >= len(faces):
            raise face_index_out_of_range()
        return faces[index]

    def get_bounding_box2(self, image_bytes: bytes, min_confidence: Any = None) -> BoundingBox:
        """Box covering every detected object instance (full frame when none)."""
        min_confidence = 0 if min_confidence is None else min_confidence
        try:
            labels = self.label_detector.detect_labels(image_bytes, min_confidence)
        except ImageHandlerError:
            raise
        except Exception as e:
            raise upstream_error(e) from e

        fused = BoundingBoxAccumulator()
        for label in labels:
            for instance in label.instances:
                if self.debug:
                    print(
                        f"  🔎 {label.name} (label conf={label.confidence:.1f}, "
                        f"instance conf={instance.confidence:.1f})"
                    )
                fused.add(instance.bounding_box)
        box = fused.result()
        if self.debug:
            print(f"  📦 Fused bounding box from {fused.count} instance(s): {box.to_dict()}")
        return box

    def get_crop_area(self, box: BoundingBox, options: dict, img_w: int, img_h: int) -> CropArea:
        padding = options.get("padding")
        try:
            padding = 0.0 if padding is None else float(padding)
        except (TypeError, ValueError) as e:
            raise invalid_parameter("padding", "expected a number") from e
        area = crop_area_from_bounding_box(box, padding, img_w, img_h)
        if self.debug:
            print(f"  ✂️ Crop {img_w}x{img_h} → {area.to_dict()}")
        return area

    def _apply_crop(self, handle: ImageHandle, box: BoundingBox, options: dict) -> None:
        area = self.get_crop_area(box, options, handle.width, handle.height)
        if not validate_crop_area(area, handle.width, handle.height):
            raise padding_out_of_bounds()
        engine.extract(handle, area)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class _HelpOnErrorArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that prints full help text on parse errors."""

    def error(self, message):
        self.print_help(sys.stderr)
        self.exit(2, f"\n{self.prog}: error: {message}\n")


def _load_edits(raw: Optional[str]) -> Optional[dict]:
    """Parse --edits as inline JSON or a path to a JSON file."""
    if raw is None:
        return None
    text = raw.strip()
    if not text.startswith("{"):
        path = Path(text).expanduser()
        if not path.exists():
            raise ValueError(f"--edits is neither JSON nor an existing file: {raw}")
        text = path.read_text(encoding="utf-8")
    try:
        edits = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"--edits is not valid JSON: {e}") from e
    if not isinstance(edits, dict):
        raise ValueError("--edits must be a JSON object")
    return edits


def main():
    parser = _HelpOnErrorArgumentParser(
        description="Apply ordered edits (resize, overlay, smart crop, ...) to an image.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s photo.jpg --edits '{"resize": {"width": 400}}' -o small.jpg
  %(prog)s photo.jpg --edits '{"smartCrop": {"faceIndex": 0, "padding": 40}}' -o face.jpg
  %(prog)s photo.jpg --edits edits.json --format webp --object-store-dir ./overlays
        """,
    )
    parser.add_argument("input", help="Path to the source image")
    parser.add_argument("--edits", "-e", default=None, help="Edits as a JSON object or a path to a JSON file")
    parser.add_argument("--format", "-f", dest="output_format", default=None, help="Output format (jpeg, png, webp, ...)")
    parser.add_argument(
        "--output", "-o", default=None, help="Write the image here (default: print base64 to stdout)"
    )
    parser.add_argument(
        "--object-store-dir",
        default=None,
        help=f"Base directory for overlay buckets (default from {config.OBJECT_STORE_DIR_ENV_VAR})",
    )
    parser.add_argument("--debug", action="store_true", help="Print pipeline details")

    args = parser.parse_args()

    try:
        edits = _load_edits(args.edits)
    except (OSError, ValueError) as e:
        parser.error(str(e))

    source = Path(args.input)
    try:
        original = source.read_bytes()
    except OSError as e:
        parser.error(f"cannot read {source}: {e}")

    object_store = build_object_store("local", base_dir=args.object_store_dir) if args.object_store_dir else None
    handler = ImageHandler(object_store=object_store, debug=args.debug)
    request = ImageRequest(original_image=original, edits=edits, output_format=args.output_format)

    try:
        encoded = handler.process(request)
    except ImageHandlerError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        raise SystemExit(1) from e

    if args.output:
        output = Path(args.output)
        output.write_bytes(base64.b64decode(encoded))
        print(f"✅ Wrote {output} ({output.stat().st_size} bytes)")
    else:
        print(encoded)


if __name__ == "__main__":
    main()
