"""Pillow-backed image engine.

Decodes request bytes into a mutable :class:`ImageHandle`, applies named
operations from an explicit registry, composites layers and encodes the
result. Operation names and parameters follow the edit vocabulary clients
already send (``resize``, ``rotate``, ``flip``, ``flop``, ``toFormat``, ...).
"""

import io
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import numpy as np
from PIL import Image, ImageChops, ImageColor, ImageFilter, ImageOps, UnidentifiedImageError

from smartedit.errors import ImageHandlerError, invalid_parameter, unsupported_operation
from smartedit.geometry import CropArea, validate_crop_area

EXIF_ORIENTATION_TAG = 0x0112

OUTPUT_FORMATS = {
    "jpeg": "JPEG",
    "jpg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "tiff": "TIFF",
    "tif": "TIFF",
    "gif": "GIF",
}
EXIF_CAPABLE_FORMATS = {"JPEG", "PNG", "WEBP", "TIFF"}
RESIZE_FITS = {"cover", "contain", "fill", "inside", "outside"}
COMPOSITE_BLENDS = {"over", "dest-in", "multiply", "screen"}
GRAVITY_ANCHORS = {
    "northwest": (0.0, 0.0),
    "north": (0.5, 0.0),
    "northeast": (1.0, 0.0),
    "west": (0.0, 0.5),
    "centre": (0.5, 0.5),
    "center": (0.5, 0.5),
    "east": (1.0, 0.5),
    "southwest": (0.0, 1.0),
    "south": (0.5, 1.0),
    "southeast": (1.0, 1.0),
}


@dataclass
class ImageHandle:
    """Decoded pixels plus the metadata carried through to encode."""

    image: Image.Image
    format: Optional[str] = None
    orientation: Optional[int] = None
    exif: Optional[bytes] = None
    keep_metadata: bool = True
    output_format: Optional[str] = None
    output_options: dict = field(default_factory=dict)

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height


# ---------------------------------------------------------------------------
# Decode / metadata / encode
# ---------------------------------------------------------------------------


def decode(data: bytes, keep_metadata: bool = True) -> ImageHandle:
    """Decode image bytes. ``keep_metadata`` retains EXIF/orientation on encode."""
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ImageHandlerError(400, "ImageHandler::DecodeError", f"Could not decode image: {e}") from e

    orientation = img.getexif().get(EXIF_ORIENTATION_TAG)
    return ImageHandle(
        image=img,
        format=img.format,
        orientation=orientation,
        exif=img.info.get("exif"),
        keep_metadata=keep_metadata,
    )


def metadata(handle: ImageHandle) -> dict:
    img = handle.image
    return {
        "width": img.width,
        "height": img.height,
        "orientation": handle.orientation,
        "format": (handle.format or "").lower() or None,
        "channels": len(img.getbands()),
        "hasAlpha": "A" in img.getbands() or "transparency" in img.info,
    }


def resolve_output_format(name: Optional[str]) -> Optional[str]:
    """Map a client format name to a Pillow format id (None passes through)."""
    if name is None:
        return None
    pil_format = OUTPUT_FORMATS.get(str(name).strip().lower())
    if pil_format is None:
        raise ImageHandlerError(
            400,
            "ImageHandler::UnsupportedOutputFormat",
            f"The output format '{name}' is not supported.",
        )
    return pil_format


def _prepare_for_format(img: Image.Image, pil_format: str) -> Image.Image:
    if pil_format == "JPEG":
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            rgba = img.convert("RGBA")
            bg = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
            return Image.alpha_composite(bg, rgba).convert("RGB")
        if img.mode not in ("RGB", "L", "CMYK"):
            return img.convert("RGB")
    if pil_format in ("PNG", "WEBP") and img.mode not in ("RGB", "RGBA", "L", "LA", "P"):
        return img.convert("RGBA" if "A" in img.getbands() else "RGB")
    return img


def encode(handle: ImageHandle, output_format: Optional[str] = None) -> bytes:
    """Encode to bytes. Format precedence: argument, ``toFormat`` edit, source format, PNG."""
    pil_format = (
        resolve_output_format(output_format)
        or handle.output_format
        or (handle.format if handle.format in OUTPUT_FORMATS.values() else None)
        or "PNG"
    )
    img = _prepare_for_format(handle.image, pil_format)

    save_kwargs = dict(handle.output_options)
    if handle.keep_metadata and handle.exif and pil_format in EXIF_CAPABLE_FORMATS:
        save_kwargs["exif"] = handle.exif

    buffer = io.BytesIO()
    img.save(buffer, pil_format, **save_kwargs)
    return buffer.getvalue()


def snapshot(handle: ImageHandle, quality: int = 90) -> bytes:
    """JPEG of the current pixels for detectors; ignores output settings."""
    buffer = io.BytesIO()
    _prepare_for_format(handle.image, "JPEG").save(buffer, "JPEG", quality=quality)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Parameter helpers
# ---------------------------------------------------------------------------


def coerce_number(value: Any) -> Optional[float]:
    """Coerce ``"100"``/``100``/``100.0`` to a number; None and "" stay None."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"expected a number, got {value!r}")
    number = float(value)
    if number != number:
        raise ValueError(f"expected a number, got {value!r}")
    return int(number) if number.is_integer() else number


def parse_color(value: Any, default: tuple[int, int, int, int] = (0, 0, 0, 255)) -> tuple[int, int, int, int]:
    """Parse ``"#ff0000"``, ``"red"`` or ``{"r": .., "g": .., "b": .., "alpha": 0-1}`` to RGBA."""
    if value is None:
        return default
    if isinstance(value, dict):
        alpha = float(value.get("alpha", 1))
        return (
            int(value.get("r", 0)),
            int(value.get("g", 0)),
            int(value.get("b", 0)),
            int(round(255 * min(1.0, max(0.0, alpha)))),
        )
    if isinstance(value, (list, tuple)):
        rgba = tuple(int(v) for v in value)
        return rgba + (255,) if len(rgba) == 3 else rgba[:4]
    rgb = ImageColor.getrgb(str(value))
    return rgb if len(rgb) == 4 else rgb + (255,)


def _split_alpha(img: Image.Image) -> tuple[Image.Image, Optional[Image.Image]]:
    if img.mode in ("RGBA", "LA"):
        return img.convert("RGB" if img.mode == "RGBA" else "L"), img.getchannel("A")
    if img.mode == "P" and "transparency" in img.info:
        rgba = img.convert("RGBA")
        return rgba.convert("RGB"), rgba.getchannel("A")
    if img.mode not in ("RGB", "L"):
        return img.convert("RGB"), None
    return img, None


def _merge_alpha(img: Image.Image, alpha: Optional[Image.Image]) -> Image.Image:
    if alpha is None:
        return img
    merged = img.convert("LA" if img.mode == "L" else "RGBA")
    merged.putalpha(alpha)
    return merged


def _canvas_fill(img: Image.Image, color: tuple[int, int, int, int]) -> tuple[Image.Image, tuple]:
    """Bring ``img`` to RGB/RGBA so a background ``color`` can be painted onto it."""
    if color[3] < 255 or "A" in img.getbands():
        return img.convert("RGBA"), color
    if img.mode != "RGB":
        img = img.convert("RGB")
    return img, color[:3]


def _flag(value: Any) -> bool:
    """Bare ``true``/``null`` means apply with defaults; ``false`` skips."""
    return value is not False


# ---------------------------------------------------------------------------
# Resize
# ---------------------------------------------------------------------------


def resized_size(width: int, height: int, options: Optional[dict]) -> tuple[int, int]:
    """Dimensions a ``resize`` edit would produce for a width x height image."""
    options = options or {}
    target_w = coerce_number(options.get("width"))
    target_h = coerce_number(options.get("height"))
    fit = options.get("fit") or "cover"
    if fit not in RESIZE_FITS:
        raise ValueError(f"unknown fit '{fit}'")

    if target_w is None and target_h is None:
        return width, height
    if target_w is not None and target_w <= 0 or target_h is not None and target_h <= 0:
        raise ValueError("width and height must be positive")

    if target_h is None:
        new_w, new_h = target_w, height * target_w / width
    elif target_w is None:
        new_w, new_h = width * target_h / height, target_h
    elif fit in ("cover", "contain", "fill"):
        new_w, new_h = target_w, target_h
    else:
        pick = min if fit == "inside" else max
        scale = pick(target_w / width, target_h / height)
        new_w, new_h = width * scale, height * scale

    size = (max(1, int(round(new_w))), max(1, int(round(new_h))))
    if options.get("withoutEnlargement") and (size[0] > width or size[1] > height):
        return width, height
    return size


def _op_resize(handle: ImageHandle, options: Any) -> None:
    options = options or {}
    if not isinstance(options, dict):
        raise ValueError("expected an object with width/height/fit")
    size = resized_size(handle.width, handle.height, options)
    if size == handle.image.size:
        return

    target_w = coerce_number(options.get("width"))
    target_h = coerce_number(options.get("height"))
    fit = options.get("fit") or "cover"
    img = handle.image
    if target_w is not None and target_h is not None and fit == "cover":
        handle.image = ImageOps.fit(img, size, Image.LANCZOS)
    elif target_w is not None and target_h is not None and fit == "contain":
        img, fill = _canvas_fill(img, parse_color(options.get("background")))
        handle.image = ImageOps.pad(img, size, Image.LANCZOS, color=fill)
    else:
        handle.image = img.resize(size, Image.LANCZOS)


# ---------------------------------------------------------------------------
# Geometry operations
# ---------------------------------------------------------------------------


def _op_rotate(handle: ImageHandle, angle: Any) -> None:
    if angle is None:
        # Auto-orient from EXIF; the orientation tag is consumed.
        handle.image = ImageOps.exif_transpose(handle.image)
        handle.orientation = None
        handle.keep_metadata = False
        return
    degrees = coerce_number(angle)
    if degrees is None or degrees % 360 == 0:
        return
    fill = (0, 0, 0, 0) if handle.image.mode == "RGBA" else None
    handle.image = handle.image.rotate(-degrees, expand=True, fillcolor=fill)


def _op_flip(handle: ImageHandle, value: Any) -> None:
    if _flag(value):
        handle.image = ImageOps.flip(handle.image)


def _op_flop(handle: ImageHandle, value: Any) -> None:
    if _flag(value):
        handle.image = ImageOps.mirror(handle.image)


def _op_extract(handle: ImageHandle, region: Any) -> None:
    if not isinstance(region, dict):
        raise ValueError("expected an object with left/top/width/height")
    area = CropArea(
        left=int(region.get("left", 0)),
        top=int(region.get("top", 0)),
        width=int(region.get("width", 0)),
        height=int(region.get("height", 0)),
    )
    extract(handle, area)


def _op_extend(handle: ImageHandle, value: Any) -> None:
    if isinstance(value, (int, float, str)) and not isinstance(value, bool):
        pad = int(coerce_number(value) or 0)
        left = top = right = bottom = pad
        color = parse_color(None)
    elif isinstance(value, dict):
        left, top, right, bottom = (int(coerce_number(value.get(k)) or 0) for k in ("left", "top", "right", "bottom"))
        color = parse_color(value.get("background"))
    else:
        raise ValueError("expected a number or an object with top/bottom/left/right")
    if min(left, top, right, bottom) < 0:
        raise ValueError("extend values must be non-negative")

    img, fill = _canvas_fill(handle.image, color)
    handle.image = ImageOps.expand(img, border=(left, top, right, bottom), fill=fill)


# ---------------------------------------------------------------------------
# Colour / filter operations
# ---------------------------------------------------------------------------


def _op_flatten(handle: ImageHandle, value: Any) -> None:
    if value is False:
        return
    background = value.get("background") if isinstance(value, dict) else None
    rgb, alpha = _split_alpha(handle.image)
    if alpha is None:
        return
    color = parse_color(background)
    bg = Image.new("RGBA", handle.image.size, color[:3] + (255,))
    handle.image = Image.alpha_composite(bg, _merge_alpha(rgb.convert("RGB"), alpha)).convert("RGB")


def _op_negate(handle: ImageHandle, value: Any) -> None:
    if not _flag(value):
        return
    rgb, alpha = _split_alpha(handle.image)
    arr = np.asarray(rgb, dtype=np.uint8)
    handle.image = _merge_alpha(Image.fromarray(255 - arr), alpha)


def _op_normalize(handle: ImageHandle, value: Any) -> None:
    if not _flag(value):
        return
    rgb, alpha = _split_alpha(handle.image)
    handle.image = _merge_alpha(ImageOps.autocontrast(rgb, cutoff=1), alpha)


def _op_grayscale(handle: ImageHandle, value: Any) -> None:
    if not _flag(value):
        return
    rgb, alpha = _split_alpha(handle.image)
    handle.image = _merge_alpha(rgb.convert("L"), alpha)


def _op_blur(handle: ImageHandle, sigma: Any) -> None:
    if sigma is False:
        return
    if sigma is None or sigma is True:
        handle.image = handle.image.filter(ImageFilter.BoxBlur(1))
        return
    radius = coerce_number(sigma)
    if radius is None or radius <= 0:
        raise ValueError("sigma must be a positive number")
    handle.image = handle.image.filter(ImageFilter.GaussianBlur(radius))


def _op_sharpen(handle: ImageHandle, value: Any) -> None:
    if value is False:
        return
    if value is None or value is True:
        handle.image = handle.image.filter(ImageFilter.SHARPEN)
        return
    sigma = coerce_number(value.get("sigma") if isinstance(value, dict) else value)
    if sigma is None or sigma <= 0:
        raise ValueError("sigma must be a positive number")
    handle.image = handle.image.filter(ImageFilter.UnsharpMask(radius=sigma, percent=150, threshold=3))


def _op_median(handle: ImageHandle, size: Any) -> None:
    size = 3 if size is None or size is True else int(coerce_number(size) or 0)
    if size < 1 or size % 2 == 0:
        raise ValueError("median size must be a positive odd integer")
    handle.image = handle.image.filter(ImageFilter.MedianFilter(size))


def _op_threshold(handle: ImageHandle, value: Any) -> None:
    level = 128 if value is None or value is True else coerce_number(value)
    if level is None or not 0 <= level <= 255:
        raise ValueError("threshold must be between 0 and 255")
    rgb, alpha = _split_alpha(handle.image)
    arr = np.asarray(rgb.convert("L"), dtype=np.uint8)
    binary = np.where(arr >= level, 255, 0).astype(np.uint8)
    handle.image = _merge_alpha(Image.fromarray(binary), alpha)


def _op_gamma(handle: ImageHandle, value: Any) -> None:
    gamma = 2.2 if value is None or value is True else coerce_number(value)
    if gamma is None or not 1.0 <= gamma <= 3.0:
        raise ValueError("gamma must be between 1.0 and 3.0")
    rgb, alpha = _split_alpha(handle.image)
    lut = (np.power(np.arange(256) / 255.0, 1.0 / gamma) * 255.0).round().astype(np.uint8)
    arr = lut[np.asarray(rgb, dtype=np.uint8)]
    handle.image = _merge_alpha(Image.fromarray(arr), alpha)


def _op_tint(handle: ImageHandle, value: Any) -> None:
    color = parse_color(value)
    rgb, alpha = _split_alpha(handle.image)
    tinted = ImageOps.colorize(rgb.convert("L"), black=(0, 0, 0), white=color[:3])
    handle.image = _merge_alpha(tinted, alpha)


def _op_to_format(handle: ImageHandle, value: Any) -> None:
    if isinstance(value, dict):
        options = dict(value)
        name = options.pop("format", None) or options.pop("id", None)
    else:
        name, options = value, {}
    if not name:
        raise ValueError("expected a format name")
    handle.output_format = resolve_output_format(name)
    handle.output_options = options


OPERATIONS: dict[str, Callable[[ImageHandle, Any], None]] = {
    "resize": _op_resize,
    "rotate": _op_rotate,
    "flip": _op_flip,
    "flop": _op_flop,
    "extract": _op_extract,
    "extend": _op_extend,
    "flatten": _op_flatten,
    "negate": _op_negate,
    "normalize": _op_normalize,
    "normalise": _op_normalize,
    "grayscale": _op_grayscale,
    "greyscale": _op_grayscale,
    "blur": _op_blur,
    "sharpen": _op_sharpen,
    "median": _op_median,
    "threshold": _op_threshold,
    "gamma": _op_gamma,
    "tint": _op_tint,
    "toFormat": _op_to_format,
}


def is_supported_operation(name: str) -> bool:
    return name in OPERATIONS


def apply_operation(handle: ImageHandle, name: str, params: Any) -> ImageHandle:
    """Apply one registered operation in place and return the handle."""
    operation = OPERATIONS.get(name)
    if operation is None:
        raise unsupported_operation(name)
    try:
        operation(handle, params)
    except ImageHandlerError:
        raise
    except (ValueError, TypeError) as e:
        raise invalid_parameter(name, str(e)) from e
    return handle


def extract(handle: ImageHandle, area: CropArea) -> ImageHandle:
    """Crop to ``area``; raises ValueError when it does not fit inside the image."""
    if not validate_crop_area(area, handle.width, handle.height):
        raise ValueError(f"extract area {area.to_dict()} is outside a {handle.width}x{handle.height} image")
    handle.image = handle.image.crop(area.as_box())
    return handle


# ---------------------------------------------------------------------------
# Composite
# ---------------------------------------------------------------------------


def _layer_image(layer: dict) -> Image.Image:
    source = layer.get("input")
    raw = layer.get("raw")
    if isinstance(source, Image.Image):
        img = source
    elif raw:
        channels = int(raw.get("channels", 4))
        mode = {1: "L", 2: "LA", 3: "RGB", 4: "RGBA"}[channels]
        img = Image.frombytes(mode, (int(raw["width"]), int(raw["height"])), bytes(source))
    else:
        img = Image.open(io.BytesIO(source))
        img.load()
    return img.convert("RGBA")


def _tile(img: Image.Image, size: tuple[int, int]) -> Image.Image:
    if img.size == (1, 1):
        return img.resize(size, Image.NEAREST)
    tiled = Image.new("RGBA", size, (0, 0, 0, 0))
    for y in range(0, size[1], img.height):
        for x in range(0, size[0], img.width):
            tiled.paste(img, (x, y))
    return tiled


def _layer_position(layer: dict, base_size: tuple[int, int], layer_size: tuple[int, int]) -> tuple[int, int]:
    left = layer.get("left")
    top = layer.get("top")
    if left is not None or top is not None:
        return int(round(left or 0)), int(round(top or 0))
    gravity = str(layer.get("gravity") or "northwest").lower()
    if gravity not in GRAVITY_ANCHORS:
        raise ValueError(f"unknown gravity '{gravity}'")
    ax, ay = GRAVITY_ANCHORS[gravity]
    return int(round((base_size[0] - layer_size[0]) * ax)), int(round((base_size[1] - layer_size[1]) * ay))


def _blend(base: Image.Image, layer: Image.Image, blend: str) -> Image.Image:
    """Blend two same-size RGBA images."""
    if blend == "over":
        return Image.alpha_composite(base, layer)

    base_alpha = base.getchannel("A")
    layer_alpha = layer.getchannel("A")
    if blend == "dest-in":
        out = base.copy()
        out.putalpha(ImageChops.multiply(base_alpha, layer_alpha))
        return out

    base_rgb = base.convert("RGB")
    layer_rgb = layer.convert("RGB")
    if blend == "multiply":
        mixed = ImageChops.multiply(base_rgb, layer_rgb)
    else:
        mixed = ImageChops.screen(base_rgb, layer_rgb)
    # The layer's alpha decides how much of the blended colour replaces the base.
    out = Image.composite(mixed, base_rgb, layer_alpha)
    out.putalpha(base_alpha)
    return out


def composite(handle: ImageHandle, layers: list[dict]) -> ImageHandle:
    """Composite layers over the handle image, in order.

    Each layer is ``{"input": bytes | PIL.Image, "left"?, "top"?, "gravity"?,
    "blend"?, "tile"?, "raw"?}``. Without left/top the layer is anchored by
    ``gravity`` (default: top-left corner).
    """
    had_alpha = "A" in handle.image.getbands()
    base = handle.image.convert("RGBA")
    for layer in layers:
        blend = layer.get("blend") or "over"
        if blend not in COMPOSITE_BLENDS:
            raise invalid_parameter("blend", f"unsupported blend '{blend}'")
        try:
            img = _layer_image(layer)
            if layer.get("tile"):
                img = _tile(img, base.size)
            x, y = _layer_position(layer, base.size, img.size)
            # Pixels outside the layer have zero coverage (dest-in clears them).
            positioned = Image.new("RGBA", base.size, (0, 0, 0, 0))
            positioned.paste(img, (x, y))
        except (ValueError, KeyError, OSError, OverflowError) as e:
            raise invalid_parameter("composite", str(e)) from e

        base = _blend(base, positioned, blend)

    handle.image = base if had_alpha or _has_transparency(base) else base.convert("RGB")
    return handle


def _has_transparency(img: Image.Image) -> bool:
    lo, _hi = img.getchannel("A").getextrema()
    return lo < 255
