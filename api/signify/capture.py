"""Normalise captured signatures to a single representation.

A signature reaches the server either as text (a premade signature rendered
in a font) or as an image. Images arrive as a drawn stroke list, an uploaded
file, or a data URI; all of them end up as a PNG data URI.
"""
import binascii
import io
from typing import Iterable, Optional, Sequence, Tuple

from PIL import Image, ImageDraw, UnidentifiedImageError

from .errors import ValidationError
from .models import SIGNATURE_IMAGE, TEXT, Signature
from .utils import bytes_to_data_url, data_url_to_bytes

DEFAULT_CANVAS = (400, 150)
MAX_IMAGE_SIDE = 2000


def _png_bytes(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def image_to_png(data: bytes) -> bytes:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValidationError(f"unreadable signature image: {exc}")
    img = img.convert("RGBA")
    if max(img.size) > MAX_IMAGE_SIDE:
        img.thumbnail((MAX_IMAGE_SIDE, MAX_IMAGE_SIDE))
    return _png_bytes(img)


def normalize_data_url(payload: str) -> str:
    try:
        raw = data_url_to_bytes(payload)
    except (binascii.Error, ValueError):
        raise ValidationError("signature image is not valid base64")
    return bytes_to_data_url(image_to_png(raw))


def from_upload(data: bytes) -> str:
    return bytes_to_data_url(image_to_png(data))


def render_strokes(
    strokes: Iterable[Sequence[Tuple[float, float]]],
    size: Tuple[int, int] = DEFAULT_CANVAS,
    stroke_width: int = 3,
    color: Tuple[int, int, int] = (0, 0, 0),
) -> bytes:
    """Convert freehand strokes into a transparent PNG."""
    img = Image.new("RGBA", size, (0, 0, 0, 0))
    drw = ImageDraw.Draw(img)
    drawn = 0
    for poly in strokes:
        points = [(float(x), float(y)) for x, y in poly]
        if len(points) >= 2:
            drw.line(points, fill=color + (255,), width=stroke_width, joint="curve")
            drawn += 1
        elif len(points) == 1:
            x, y = points[0]
            r = stroke_width / 2
            drw.ellipse((x - r, y - r, x + r, y + r), fill=color + (255,))
            drawn += 1
    if not drawn:
        raise ValidationError("signature drawing is empty")
    return _png_bytes(img)


def from_strokes(strokes, size: Tuple[int, int] = DEFAULT_CANVAS, stroke_width: int = 3) -> str:
    return bytes_to_data_url(render_strokes(strokes, size=size, stroke_width=stroke_width))


def saved_value(sig_type: str, payload: str) -> Optional[dict]:
    """Tool value for a saved signature payload, or None when nothing is saved."""
    if not payload:
        return None
    if sig_type == "premade":
        return {"kind": TEXT, "value": payload}
    return {"kind": SIGNATURE_IMAGE, "value": normalize_data_url(payload)}


def from_saved(signature: Signature, initials: bool = False) -> Optional[dict]:
    return saved_value(signature.type, signature.initials if initials else signature.signature)


def normalize_value(kind: str, value: str) -> str:
    if kind == SIGNATURE_IMAGE:
        return normalize_data_url(value)
    value = (value or "").strip()
    if not value:
        raise ValidationError("text value is empty")
    return value
