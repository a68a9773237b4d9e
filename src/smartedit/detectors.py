"""Face and label detectors used by smart crop.

Every detector reports boxes as fractions of the frame (:class:`BoundingBox`),
so results are independent of the resolution the model ran at.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol
from urllib.request import urlretrieve

import cv2
import numpy as np

from smartedit import config
from smartedit.errors import ImageHandlerError
from smartedit.geometry import BoundingBox
from smartedit.storage import client_error_to_handler_error

HAAR_CASCADE_FILENAME = "haarcascade_frontalface_default.xml"
YOLO_MODEL_FILENAME = "yolov8n.pt"
YOLO_MODEL_URL = "https://github.com/ultralytics/assets/releases/latest/download/yolov8n.pt"

_YOLO_MODEL = None
_FACE_CASCADE = None


@dataclass
class LabelInstance:
    bounding_box: BoundingBox
    confidence: float = 0.0


@dataclass
class DetectedLabel:
    name: str
    confidence: float = 0.0
    instances: list[LabelInstance] = field(default_factory=list)


class FaceDetector(Protocol):
    def detect_faces(self, image_bytes: bytes) -> list[BoundingBox]:
        """Face boxes ordered by descending confidence."""
        ...


class LabelDetector(Protocol):
    def detect_labels(self, image_bytes: bytes, min_confidence: float = 0) -> list[DetectedLabel]:
        """Labels (with located instances) at or above ``min_confidence`` percent."""
        ...


def _decode_bgr(image_bytes: bytes) -> np.ndarray:
    img = cv2.imdecode(np.frombuffer(image_bytes, dtype=np.uint8), cv2.IMREAD_COLOR)
    if img is None:
        raise ImageHandlerError(400, "ImageHandler::DecodeError", "Detector could not decode the image.")
    return img


def _normalized_box(x: float, y: float, w: float, h: float, img_w: int, img_h: int) -> BoundingBox:
    return BoundingBox(left=x / img_w, top=y / img_h, width=w / img_w, height=h / img_h)


# ---------------------------------------------------------------------------
# OpenCV Haar cascade (faces)
# ---------------------------------------------------------------------------


def _load_face_cascade():
    """Load and cache the bundled frontal-face cascade."""
    global _FACE_CASCADE
    if _FACE_CASCADE is not None:
        return _FACE_CASCADE

    cascade_path = Path(cv2.data.haarcascades) / HAAR_CASCADE_FILENAME
    cascade = cv2.CascadeClassifier(str(cascade_path))
    if cascade.empty():
        raise RuntimeError(f"Could not load Haar cascade from {cascade_path}")
    _FACE_CASCADE = cascade
    return _FACE_CASCADE


class HaarFaceDetector:
    """Frontal face detection with OpenCV's Haar cascade."""

    def __init__(self, scale_factor: float = 1.1, min_neighbors: int = 5, debug: bool = False):
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.debug = debug

    def detect_faces(self, image_bytes: bytes) -> list[BoundingBox]:
        img = _decode_bgr(image_bytes)
        img_h, img_w = img.shape[:2]
        gray = cv2.equalizeHist(cv2.cvtColor(img, cv2.COLOR_BGR2GRAY))

        rects, _levels, weights = _load_face_cascade().detectMultiScale3(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            outputRejectLevels=True,
        )
        if len(rects) == 0:
            return []

        # Level weights act as the detector's confidence.
        scored = sorted(
            zip(np.asarray(weights).ravel().tolist(), [tuple(r) for r in rects]),
            key=lambda item: item[0],
            reverse=True,
        )
        faces = [_normalized_box(x, y, w, h, img_w, img_h) for _weight, (x, y, w, h) in scored]
        if self.debug:
            print(f"Haar detected {len(faces)} face(s): {[f.to_dict() for f in faces]}")
        return faces


# ---------------------------------------------------------------------------
# YOLO (labels)
# ---------------------------------------------------------------------------


def resolve_yolo_model_path(debug: bool = False) -> Path:
    """
    Resolve YOLO model path from env override or runtime cache.

    Priority:
      1. SMARTEDIT_YOLO_MODEL (explicit local path)
      2. ~/.cache/smartedit/models/yolov8n.pt (downloaded on first use)
    """
    override = os.environ.get(config.YOLO_MODEL_ENV_VAR)
    if override:
        model_path = Path(override).expanduser()
        if debug:
            print(f"Using YOLO model from {config.YOLO_MODEL_ENV_VAR}: {model_path}")
        return model_path

    cache_dir = Path.home() / ".cache" / "smartedit" / "models"
    model_path = cache_dir / YOLO_MODEL_FILENAME
    if model_path.exists():
        return model_path

    cache_dir.mkdir(parents=True, exist_ok=True)
    print(f"  ⬇️ YOLO model not found; downloading to {model_path} ...")
    try:
        urlretrieve(YOLO_MODEL_URL, model_path)
    except Exception as e:
        raise RuntimeError(
            f"Could not download YOLO model to {model_path}. "
            f"Set {config.YOLO_MODEL_ENV_VAR} to a local model path to skip download."
        ) from e
    return model_path


def _load_yolo_model(debug: bool = False):
    """Load and cache YOLO model instance."""
    global _YOLO_MODEL
    if _YOLO_MODEL is not None:
        return _YOLO_MODEL

    from ultralytics import YOLO

    model_path = resolve_yolo_model_path(debug=debug)
    _YOLO_MODEL = YOLO(str(model_path))
    return _YOLO_MODEL


class YoloLabelDetector:
    """Object detection with ultralytics YOLO, grouped by class name."""

    def __init__(self, model=None, debug: bool = False):
        self._model = model
        self.debug = debug

    def _get_model(self):
        if self._model is None:
            self._model = _load_yolo_model(debug=self.debug)
        return self._model

    def detect_labels(self, image_bytes: bytes, min_confidence: float = 0) -> list[DetectedLabel]:
        img = _decode_bgr(image_bytes)
        img_h, img_w = img.shape[:2]
        results = self._get_model()(img, verbose=False)
        if not results:
            return []

        result = results[0]
        boxes = result.boxes
        if boxes is None or len(boxes) == 0:
            return []

        names = getattr(result, "names", None) or {}
        labels: dict[str, DetectedLabel] = {}
        for box in boxes:
            cls_id = int(box.cls[0])
            confidence = float(box.conf[0]) * 100.0
            if confidence < float(min_confidence or 0):
                continue
            x1, y1, x2, y2 = (float(v) for v in box.xyxy[0].cpu().numpy())
            name = names.get(cls_id, f"class_{cls_id}")
            label = labels.setdefault(name, DetectedLabel(name=name))
            label.confidence = max(label.confidence, confidence)
            label.instances.append(
                LabelInstance(_normalized_box(x1, y1, x2 - x1, y2 - y1, img_w, img_h), confidence)
            )

        detected = sorted(labels.values(), key=lambda label: label.confidence, reverse=True)
        if self.debug:
            for label in detected:
                print(f"YOLO detected: {label.name} (conf={label.confidence:.1f}) x{len(label.instances)}")
        return detected


# ---------------------------------------------------------------------------
# Amazon Rekognition (faces and labels)
# ---------------------------------------------------------------------------


def _rekognition_client(region_name: Optional[str] = None):
    import boto3

    return boto3.client("rekognition", region_name=region_name or config.resolve_aws_region())


class RekognitionFaceDetector:
    def __init__(self, client=None, debug: bool = False):
        self._client = client or _rekognition_client()
        self.debug = debug

    def detect_faces(self, image_bytes: bytes) -> list[BoundingBox]:
        from botocore.exceptions import ClientError

        try:
            response = self._client.detect_faces(Image={"Bytes": image_bytes})
        except ClientError as e:
            raise client_error_to_handler_error(e) from e

        details = sorted(
            response.get("FaceDetails", []),
            key=lambda face: float(face.get("Confidence", 0)),
            reverse=True,
        )
        if self.debug:
            print(f"Rekognition detected {len(details)} face(s)")
        return [BoundingBox.from_dict(face["BoundingBox"]) for face in details]


class RekognitionLabelDetector:
    def __init__(self, client=None, debug: bool = False):
        self._client = client or _rekognition_client()
        self.debug = debug

    def detect_labels(self, image_bytes: bytes, min_confidence: float = 0) -> list[DetectedLabel]:
        from botocore.exceptions import ClientError

        try:
            response = self._client.detect_labels(
                Image={"Bytes": image_bytes},
                MinConfidence=float(min_confidence or 0),
            )
        except ClientError as e:
            raise client_error_to_handler_error(e) from e

        labels = []
        for label in response.get("Labels", []):
            instances = [
                LabelInstance(BoundingBox.from_dict(inst["BoundingBox"]), float(inst.get("Confidence", 0)))
                for inst in label.get("Instances", [])
                if inst.get("BoundingBox")
            ]
            labels.append(
                DetectedLabel(name=label.get("Name", ""), confidence=float(label.get("Confidence", 0)), instances=instances)
            )
        if self.debug:
            print(f"Rekognition detected {len(labels)} label(s)")
        return labels


def build_face_detector(backend: Optional[str] = None, debug: bool = False) -> FaceDetector:
    backend = backend or config.resolve_face_detector_backend()
    if backend == "rekognition":
        return RekognitionFaceDetector(debug=debug)
    return HaarFaceDetector(debug=debug)


def build_label_detector(backend: Optional[str] = None, debug: bool = False) -> LabelDetector:
    backend = backend or config.resolve_label_detector_backend()
    if backend == "rekognition":
        return RekognitionLabelDetector(debug=debug)
    return YoloLabelDetector(debug=debug)
