"""Environment-driven settings for the image handler."""

import os
from pathlib import Path
from typing import Optional

DEFAULT_MAX_PAYLOAD_BYTES = 6 * 1024 * 1024  # serverless response payload hard limit
DEFAULT_OBJECT_STORE_DIR = "./object_store"

MAX_PAYLOAD_ENV_VAR = "SMARTEDIT_MAX_PAYLOAD_BYTES"
OBJECT_STORE_ENV_VAR = "SMARTEDIT_OBJECT_STORE"
OBJECT_STORE_DIR_ENV_VAR = "SMARTEDIT_OBJECT_STORE_DIR"
FACE_DETECTOR_ENV_VAR = "SMARTEDIT_FACE_DETECTOR"
LABEL_DETECTOR_ENV_VAR = "SMARTEDIT_LABEL_DETECTOR"
YOLO_MODEL_ENV_VAR = "SMARTEDIT_YOLO_MODEL"

OBJECT_STORE_CHOICES = {"local", "s3"}
FACE_DETECTOR_CHOICES = {"haar", "rekognition"}
LABEL_DETECTOR_CHOICES = {"yolo", "rekognition"}


def _read_env_file(env_path: Path) -> dict[str, str]:
    """Parse a simple .env file into key/value pairs."""
    values: dict[str, str] = {}
    try:
        content = env_path.read_text(encoding="utf-8")
    except OSError:
        return values

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if not key:
            continue

        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        values[key] = value

    return values


def _resolve_env_string(var_name: str, search_dir: Optional[Path] = None) -> Optional[str]:
    """Resolve a string env var from environment first, then .env files."""
    env_value = (os.environ.get(var_name) or "").strip()
    if env_value:
        return env_value

    candidates = [Path.cwd() / ".env"]
    if search_dir is not None:
        candidates.append(search_dir / ".env")

    seen: set[Path] = set()
    for env_file in candidates:
        resolved = env_file.resolve()
        if resolved in seen or not env_file.exists():
            continue
        seen.add(resolved)

        values = _read_env_file(env_file)
        value = (values.get(var_name) or "").strip()
        if value:
            os.environ.setdefault(var_name, value)
            return value
    return None


def _resolve_env_int(var_name: str, default: int, search_dir: Optional[Path] = None) -> int:
    raw = _resolve_env_string(var_name, search_dir=search_dir)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _resolve_env_choice(var_name: str, choices: set[str], default: str) -> str:
    raw = (_resolve_env_string(var_name) or "").lower()
    return raw if raw in choices else default


def resolve_max_payload_bytes(search_dir: Optional[Path] = None) -> int:
    """Resolve the ceiling for the encoded response payload."""
    return max(1, _resolve_env_int(MAX_PAYLOAD_ENV_VAR, DEFAULT_MAX_PAYLOAD_BYTES, search_dir=search_dir))


def resolve_object_store_backend() -> str:
    """Resolve which object store serves overlay images: 'local' or 's3'."""
    return _resolve_env_choice(OBJECT_STORE_ENV_VAR, OBJECT_STORE_CHOICES, "local")


def resolve_object_store_dir(search_dir: Optional[Path] = None) -> Path:
    """Resolve the base directory for the filesystem object store."""
    raw = _resolve_env_string(OBJECT_STORE_DIR_ENV_VAR, search_dir=search_dir) or DEFAULT_OBJECT_STORE_DIR
    return Path(raw).expanduser()


def resolve_face_detector_backend() -> str:
    return _resolve_env_choice(FACE_DETECTOR_ENV_VAR, FACE_DETECTOR_CHOICES, "haar")


def resolve_label_detector_backend() -> str:
    return _resolve_env_choice(LABEL_DETECTOR_ENV_VAR, LABEL_DETECTOR_CHOICES, "yolo")


def resolve_aws_region() -> Optional[str]:
    return _resolve_env_string("AWS_REGION") or _resolve_env_string("AWS_DEFAULT_REGION")
