"""Structured errors raised by the edit pipeline and its collaborators."""

from typing import Optional

PADDING_OUT_OF_BOUNDS_MESSAGE = (
    "The padding value you provided exceeds the boundaries of the original image. "
    "Please try choosing a smaller value or applying padding via edits for greater specificity."
)
FACE_INDEX_OUT_OF_RANGE_MESSAGE = (
    "You have provided a FaceIndex value that exceeds the length of the zero-based "
    "detectedFaces array. Please specify a value that is in-range."
)


class ImageHandlerError(RuntimeError):
    """Error carrying an HTTP-like status, a machine code and a message."""

    def __init__(self, status: int, code: Optional[str], message: str):
        super().__init__(message)
        self.status = int(status)
        self.code = code
        self.message = message

    def to_dict(self) -> dict:
        return {"status": self.status, "code": self.code, "message": self.message}

    def __repr__(self) -> str:
        return f"ImageHandlerError(status={self.status}, code={self.code!r}, message={self.message!r})"


def too_large_image() -> ImageHandlerError:
    return ImageHandlerError(413, "TooLargeImageException", "The converted image is too large to return.")


def padding_out_of_bounds() -> ImageHandlerError:
    return ImageHandlerError(400, "SmartCrop::PaddingOutOfBounds", PADDING_OUT_OF_BOUNDS_MESSAGE)


def face_index_out_of_range() -> ImageHandlerError:
    return ImageHandlerError(400, "SmartCrop::FaceIndexOutOfRange", FACE_INDEX_OUT_OF_RANGE_MESSAGE)


def unsupported_operation(name: str) -> ImageHandlerError:
    return ImageHandlerError(
        400,
        "ImageEdits::UnsupportedOperation",
        f"The edit '{name}' is not a supported image operation.",
    )


def invalid_parameter(name: str, detail: str) -> ImageHandlerError:
    return ImageHandlerError(400, "ImageEdits::InvalidParameter", f"Invalid value for '{name}': {detail}")


def upstream_error(error: Exception, default_status: int = 500) -> ImageHandlerError:
    """Wrap a collaborator failure, keeping its status/code when it carries them."""
    if isinstance(error, ImageHandlerError):
        return error
    status = getattr(error, "status", None) or getattr(error, "statusCode", None) or default_status
    code = getattr(error, "code", None) or type(error).__name__
    return ImageHandlerError(int(status), code, str(error))
