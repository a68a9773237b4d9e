"""Object stores that serve overlay images by bucket/key."""

from pathlib import Path
from typing import Optional, Protocol

from smartedit import config
from smartedit.errors import ImageHandlerError


class ObjectStore(Protocol):
    def get_object(self, bucket: str, key: str) -> bytes:
        """Return the object's bytes or raise ImageHandlerError."""
        ...


class FileSystemObjectStore:
    """Objects stored as files under ``base_dir/<bucket>/<key>``."""

    def __init__(self, base_dir: Optional[str | Path] = None) -> None:
        self._base_dir = Path(base_dir or config.resolve_object_store_dir()).expanduser()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _object_path(self, bucket: str, key: str) -> Path:
        if not bucket or not key:
            raise ImageHandlerError(400, "InvalidRequest", "Both bucket and key are required.")
        root = self._base_dir.resolve()
        path = (root / bucket / key).resolve()
        if root not in path.parents:
            raise ImageHandlerError(403, "AccessDenied", f"Access denied for {bucket}/{key}.")
        return path

    def get_object(self, bucket: str, key: str) -> bytes:
        path = self._object_path(bucket, key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise ImageHandlerError(404, "NoSuchKey", "The specified key does not exist.") from e
        except OSError as e:
            raise ImageHandlerError(500, type(e).__name__, str(e)) from e

    def put_object(self, bucket: str, key: str, content: bytes) -> Path:
        """Write an object (used to seed local overlays)."""
        path = self._object_path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path


class S3ObjectStore:
    """Amazon S3 object store (requires boto3)."""

    def __init__(self, client=None, region_name: Optional[str] = None) -> None:
        if client is None:
            import boto3

            client = boto3.client("s3", region_name=region_name or config.resolve_aws_region())
        self._client = client

    def get_object(self, bucket: str, key: str) -> bytes:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            raise client_error_to_handler_error(e) from e
        except BotoCoreError as e:
            raise ImageHandlerError(500, type(e).__name__, str(e)) from e


def client_error_to_handler_error(error) -> ImageHandlerError:
    """Map a botocore ClientError onto status/code/message."""
    response = getattr(error, "response", None) or {}
    details = response.get("Error", {})
    status = response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 500
    return ImageHandlerError(
        int(status),
        details.get("Code") or type(error).__name__,
        details.get("Message") or str(error),
    )


def build_object_store(backend: Optional[str] = None, base_dir: Optional[str | Path] = None) -> ObjectStore:
    """Create the configured object store ('local' or 's3')."""
    backend = backend or config.resolve_object_store_backend()
    if backend == "s3":
        return S3ObjectStore()
    return FileSystemObjectStore(base_dir)
