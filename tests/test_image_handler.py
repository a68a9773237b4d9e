import base64
import io

import cv2
import numpy as np
import pytest
from PIL import Image

import smartedit.image_handler as image_handler
from smartedit.detectors import DetectedLabel, LabelInstance
from smartedit.errors import ImageHandlerError
from smartedit.geometry import BoundingBox
from smartedit.image_handler import ImageHandler, ImageRequest
from smartedit.storage import FileSystemObjectStore


def _image_bytes(width: int = 200, height: int = 100, bgr=(0, 0, 0)) -> bytes:
    img = np.full((height, width, 3), bgr, dtype=np.uint8)
    ok, encoded = cv2.imencode(".png", img)
    assert ok
    return encoded.tobytes()


def _decode_result(encoded: str) -> Image.Image:
    return Image.open(io.BytesIO(base64.b64decode(encoded))).convert("RGB")


class FakeFaceDetector:
    def __init__(self, faces):
        self.faces = faces
        self.calls = 0

    def detect_faces(self, image_bytes):
        self.calls += 1
        assert image_bytes
        return list(self.faces)


class FakeLabelDetector:
    def __init__(self, labels):
        self.labels = labels
        self.min_confidence = None

    def detect_labels(self, image_bytes, min_confidence=0):
        self.min_confidence = min_confidence
        return list(self.labels)


class FailingDetector:
    def detect_faces(self, image_bytes):
        raise RuntimeError("detector offline")

    def detect_labels(self, image_bytes, min_confidence=0):
        raise RuntimeError("detector offline")


@pytest.fixture
def overlay_store(tmp_path):
    store = FileSystemObjectStore(tmp_path / "objects")
    store.put_object("assets", "watermark.png", _image_bytes(40, 40, bgr=(0, 0, 255)))
    return store


def _process(handler: ImageHandler, edits, image: bytes = None, output_format: str = "png") -> Image.Image:
    request = ImageRequest(original_image=image or _image_bytes(), edits=edits, output_format=output_format)
    return _decode_result(handler.process(request))


# ---------------------------------------------------------------------------
# Edit mapping
# ---------------------------------------------------------------------------


def test_with_default_resize_appends_fit_inside_without_touching_input() -> None:
    edits = {"rotate": 90}

    merged = image_handler.with_default_resize(edits)

    assert list(merged) == ["rotate", "resize"]
    assert merged["resize"] == {"fit": "inside"}
    assert edits == {"rotate": 90}


def test_with_default_resize_coerces_dimensions() -> None:
    edits = {"resize": {"width": "100", "height": "50.5", "fit": "cover"}}

    merged = image_handler.with_default_resize(edits)

    assert merged["resize"] == {"width": 100, "height": 50.5, "fit": "cover"}
    assert edits["resize"]["width"] == "100"


def test_with_default_resize_rejects_non_numeric_dimensions() -> None:
    with pytest.raises(ImageHandlerError) as exc:
        image_handler.with_default_resize({"resize": {"width": "wide"}})
    assert exc.value.status == 400


def test_request_from_dict_accepts_base64_image() -> None:
    raw = _image_bytes(4, 4)
    request = ImageRequest.from_dict(
        {"originalImage": base64.b64encode(raw).decode(), "edits": {"flip": True}, "outputFormat": "jpeg"}
    )

    assert request.original_image == raw
    assert request.edits == {"flip": True}
    assert request.output_format == "jpeg"

    with pytest.raises(ImageHandlerError):
        ImageRequest.from_dict({"originalImage": raw, "edits": ["flip"]})


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def test_process_without_edits_returns_original_bytes() -> None:
    raw = _image_bytes()

    encoded = ImageHandler(max_payload_bytes=10_000_000).process(ImageRequest(original_image=raw))

    assert base64.b64decode(encoded) == raw


def test_generic_edits_are_applied_in_order() -> None:
    handler = ImageHandler(max_payload_bytes=10_000_000)

    rotate_first = _process(handler, {"rotate": 90, "resize": {"width": 100}})
    resize_first = _process(handler, {"resize": {"width": 100}, "rotate": 90})

    assert rotate_first.size == (100, 200)
    assert resize_first.size == (50, 100)


def test_resize_dimensions_given_as_strings() -> None:
    img = _process(ImageHandler(max_payload_bytes=10_000_000), {"resize": {"width": "100"}})
    assert img.size == (100, 50)


def test_caller_edits_are_not_mutated() -> None:
    edits = {"resize": {"width": "100"}}
    _process(ImageHandler(max_payload_bytes=10_000_000), edits)
    assert edits == {"resize": {"width": "100"}}


def test_unknown_edit_is_rejected_before_any_work() -> None:
    faces = FakeFaceDetector([BoundingBox(0, 0, 1, 1)])
    handler = ImageHandler(face_detector=faces, max_payload_bytes=10_000_000)

    with pytest.raises(ImageHandlerError) as exc:
        _process(handler, {"smartCrop": {}, "sepia": True})

    assert exc.value.status == 400
    assert exc.value.code == "ImageEdits::UnsupportedOperation"
    assert faces.calls == 0


def test_output_format_and_to_format() -> None:
    handler = ImageHandler(max_payload_bytes=10_000_000)

    encoded = handler.process(ImageRequest(original_image=_image_bytes(), edits={"toFormat": "jpeg"}))
    assert base64.b64decode(encoded)[:2] == b"\xff\xd8"

    encoded = handler.process(ImageRequest(original_image=_image_bytes(), edits={"flop": True}, output_format="webp"))
    assert base64.b64decode(encoded)[8:12] == b"WEBP"


# ---------------------------------------------------------------------------
# Payload ceiling
# ---------------------------------------------------------------------------


def test_payload_equal_to_limit_passes_and_one_more_byte_fails() -> None:
    image_handler.check_payload_size("a" * 10, 10)

    with pytest.raises(ImageHandlerError) as exc:
        image_handler.check_payload_size("a" * 11, 10)

    assert exc.value.status == 413
    assert exc.value.code == "TooLargeImageException"


def test_process_rejects_oversized_result() -> None:
    handler = ImageHandler(max_payload_bytes=16)

    with pytest.raises(ImageHandlerError) as exc:
        handler.process(ImageRequest(original_image=_image_bytes(), edits={"flip": True}))

    assert exc.value.status == 413


def test_max_payload_defaults_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("SMARTEDIT_MAX_PAYLOAD_BYTES", "1234")
    assert ImageHandler().max_payload_bytes == 1234


# ---------------------------------------------------------------------------
# Smart crop
# ---------------------------------------------------------------------------


def test_smart_crop_uses_selected_face_and_padding() -> None:
    faces = FakeFaceDetector(
        [
            BoundingBox(left=0.25, top=0.25, width=0.25, height=0.5),
            BoundingBox(left=0.0, top=0.0, width=0.1, height=0.1),
        ]
    )
    handler = ImageHandler(face_detector=faces, max_payload_bytes=10_000_000)

    first = _process(handler, {"smartCrop": {"padding": 10}})
    second = _process(handler, {"smartCrop": {"faceIndex": 1}})

    assert first.size == (70, 70)
    assert second.size == (20, 10)


def test_smart_crop_face_index_out_of_range() -> None:
    faces = FakeFaceDetector([BoundingBox(0, 0, 0.5, 0.5), BoundingBox(0.5, 0.5, 0.5, 0.5)])
    handler = ImageHandler(face_detector=faces, max_payload_bytes=10_000_000)

    with pytest.raises(ImageHandlerError) as exc:
        _process(handler, {"smartCrop": {"faceIndex": 5}})

    assert exc.value.status == 400
    assert exc.value.code == "SmartCrop::FaceIndexOutOfRange"


def test_smart_crop_padding_out_of_bounds() -> None:
    faces = FakeFaceDetector([BoundingBox(left=0.5, top=0.5, width=0.1, height=0.1)])
    handler = ImageHandler(face_detector=faces, max_payload_bytes=10_000_000)

    with pytest.raises(ImageHandlerError) as exc:
        _process(handler, {"smartCrop": {"padding": -60}})

    assert exc.value.status == 400
    assert exc.value.code == "SmartCrop::PaddingOutOfBounds"


def test_smart_crop_detector_failure_is_upstream_error() -> None:
    handler = ImageHandler(face_detector=FailingDetector(), max_payload_bytes=10_000_000)

    with pytest.raises(ImageHandlerError) as exc:
        _process(handler, {"smartCrop": {}})

    assert exc.value.status == 500
    assert exc.value.message == "detector offline"


def test_smart_crop2_fuses_all_instances_across_labels() -> None:
    labels = FakeLabelDetector(
        [
            DetectedLabel("Person", 98.0, [LabelInstance(BoundingBox(left=0.2, top=0.1, width=0.1, height=0.1), 97.0)]),
            DetectedLabel("Dog", 90.0, [LabelInstance(BoundingBox(left=0.1, top=0.3, width=0.2, height=0.2), 88.0)]),
            DetectedLabel("Outdoors", 80.0, []),
        ]
    )
    handler = ImageHandler(label_detector=labels, max_payload_bytes=10_000_000)

    img = _process(handler, {"smartCrop2": {"minConfidence": 75}})

    assert labels.min_confidence == 75
    assert img.size == (40, 40)


def test_smart_crop2_without_instances_keeps_full_image() -> None:
    labels = FakeLabelDetector([DetectedLabel("Outdoors", 80.0, [])])
    handler = ImageHandler(label_detector=labels, max_payload_bytes=10_000_000)

    img = _process(handler, {"smartCrop2": {}})

    assert labels.min_confidence == 0
    assert img.size == (200, 100)


def test_smart_crop2_padding_out_of_bounds() -> None:
    handler = ImageHandler(label_detector=FakeLabelDetector([]), max_payload_bytes=10_000_000)

    with pytest.raises(ImageHandlerError) as exc:
        _process(handler, {"smartCrop2": {"padding": -200}})

    assert exc.value.code == "SmartCrop::PaddingOutOfBounds"


def test_smart_crop_sees_previous_edits() -> None:
    faces = FakeFaceDetector([BoundingBox(left=0.0, top=0.0, width=0.5, height=0.5)])
    handler = ImageHandler(face_detector=faces, max_payload_bytes=10_000_000)

    img = _process(handler, {"rotate": 90, "smartCrop": {}})

    assert img.size == (50, 100)


# ---------------------------------------------------------------------------
# Overlay
# ---------------------------------------------------------------------------


def test_overlay_percentage_and_absolute_placement(overlay_store) -> None:
    handler = ImageHandler(object_store=overlay_store, max_payload_bytes=10_000_000)
    edits = {
        "overlayWith": {
            "bucket": "assets",
            "key": "watermark.png",
            "wRatio": 10,
            "options": {"left": "-10p", "top": "10"},
        }
    }

    img = _process(handler, edits)

    assert img.size == (200, 100)
    assert img.getpixel((170, 20)) == (255, 0, 0)
    assert img.getpixel((155, 20)) == (0, 0, 0)
    assert img.getpixel((170, 5)) == (0, 0, 0)


def test_overlay_is_sized_and_placed_against_resized_base(overlay_store) -> None:
    handler = ImageHandler(object_store=overlay_store, max_payload_bytes=10_000_000)
    edits = {
        "overlayWith": {"bucket": "assets", "key": "watermark.png", "wRatio": 10, "options": {"left": "-1", "top": 0}},
        "resize": {"width": 100},
    }

    img = _process(handler, edits)

    assert img.size == (100, 50)
    # 10px overlay anchored one pixel in from the right edge: x 89..98
    assert img.getpixel((94, 5)) == (255, 0, 0)
    assert img.getpixel((85, 5)) == (0, 0, 0)
    assert img.getpixel((99, 5)) == (0, 0, 0)


def test_overlay_before_resize_keeps_intervening_edits_in_order(overlay_store) -> None:
    handler = ImageHandler(object_store=overlay_store, max_payload_bytes=10_000_000)
    edits = {
        "overlayWith": {"bucket": "assets", "key": "watermark.png", "wRatio": 10, "options": {"left": "-1", "top": 0}},
        "rotate": 90,
        "resize": {"width": 100},
    }

    img = _process(handler, edits)

    # rotate 200x100 -> 100x200, then resize to width 100; overlay sized to the final 100px width
    assert img.size == (100, 200)
    assert img.getpixel((94, 5)) == (255, 0, 0)
    assert img.getpixel((85, 5)) == (0, 0, 0)
    assert img.getpixel((94, 15)) == (0, 0, 0)


def test_overlay_with_non_finite_offset_falls_back_to_origin(overlay_store) -> None:
    handler = ImageHandler(object_store=overlay_store, max_payload_bytes=10_000_000)
    edits = {"overlayWith": {"bucket": "assets", "key": "watermark.png", "options": {"left": "infp", "top": "nanp"}}}

    img = _process(handler, edits)

    assert img.getpixel((5, 5)) == (255, 0, 0)
    assert img.getpixel((45, 5)) == (0, 0, 0)


def test_overlay_alpha_scales_opacity(overlay_store) -> None:
    handler = ImageHandler(object_store=overlay_store, max_payload_bytes=10_000_000)
    edits = {"overlayWith": {"bucket": "assets", "key": "watermark.png", "alpha": 50, "options": {"left": 0, "top": 0}}}

    img = _process(handler, edits)

    r, g, b = img.getpixel((20, 20))
    assert 124 <= r <= 130
    assert g == 0 and b == 0


def test_overlay_without_valid_offsets_uses_origin(overlay_store) -> None:
    handler = ImageHandler(object_store=overlay_store, max_payload_bytes=10_000_000)
    edits = {"overlayWith": {"bucket": "assets", "key": "watermark.png", "options": {"left": "abc"}}}

    img = _process(handler, edits)

    assert img.getpixel((5, 5)) == (255, 0, 0)
    assert img.getpixel((45, 5)) == (0, 0, 0)


def test_overlay_missing_object_surfaces_store_error(overlay_store) -> None:
    handler = ImageHandler(object_store=overlay_store, max_payload_bytes=10_000_000)

    with pytest.raises(ImageHandlerError) as exc:
        _process(handler, {"overlayWith": {"bucket": "assets", "key": "missing.png"}})

    assert exc.value.status == 404
    assert exc.value.code == "NoSuchKey"


def test_overlay_store_exception_defaults_to_500() -> None:
    class BrokenStore:
        def get_object(self, bucket, key):
            raise ConnectionError("store unreachable")

    handler = ImageHandler(object_store=BrokenStore(), max_payload_bytes=10_000_000)

    with pytest.raises(ImageHandlerError) as exc:
        _process(handler, {"overlayWith": {"bucket": "b", "key": "k"}})

    assert exc.value.status == 500
    assert exc.value.to_dict() == {"status": 500, "code": "ConnectionError", "message": "store unreachable"}
