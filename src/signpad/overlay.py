"""Coordinate mapping and overlay drawing.

Template positions use a top-left origin (y grows downward). PDF page
space uses a bottom-left origin (y grows upward). For an element of
height ``h`` whose top-left corner sits at ``(x, y)`` on a page of height
``H`` the PDF origin of the element is ``(x, H - y - h)``. Text is placed
on its baseline, so its height is 0.

Signature values are image payloads, usually a PNG data URL from a
signature pad. They are decoded with Pillow and drawn at a fixed fraction
of their native resolution.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
from dataclasses import dataclass
from typing import Optional, Union

from PIL import Image, UnidentifiedImageError
from reportlab.lib import colors
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .config import OverlaySettings
from .errors import OverlayDecodeError
from .models import FieldType, TemplateField

logger = logging.getLogger("signpad.overlay")


# ---------------------------------------------------------------------------
# Draw instructions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextDraw:
    """Draw ``text`` with its baseline starting at ``(x, y)`` in PDF space."""

    x: float
    y: float
    text: str
    font_name: str
    font_size: float


@dataclass(frozen=True)
class ImageDraw:
    """Blit ``image`` with its lower-left corner at ``(x, y)`` in PDF space."""

    x: float
    y: float
    width: float
    height: float
    image: Image.Image


DrawInstruction = Union[TextDraw, ImageDraw]


# ---------------------------------------------------------------------------
# Coordinates
# ---------------------------------------------------------------------------


def to_pdf_y(page_height: float, field_y: float, element_height: float = 0.0) -> float:
    """Convert a top-left-origin y to PDF's bottom-left-origin y."""
    return page_height - field_y - element_height


# ---------------------------------------------------------------------------
# Signature decoding
# ---------------------------------------------------------------------------


def decode_signature(value: str, field_id: Optional[str] = None) -> Image.Image:
    """Decode a signature payload into a Pillow image.

    Args:
        value: A ``data:image/...;base64,`` URL or bare base64 string.
        field_id: Field the payload belongs to, for error reporting.

    Returns:
        The fully loaded image.

    Raises:
        OverlayDecodeError: If the payload is not base64 or not an image.
    """
    payload = value.split(",", 1)[1] if value.startswith("data:") and "," in value else value
    try:
        raw = base64.b64decode(payload.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise OverlayDecodeError(f"Signature payload is not valid base64: {exc}", field_id) from exc
    if not raw:
        raise OverlayDecodeError("Signature payload is empty", field_id)

    try:
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        SyntaxError,
        ValueError,
    ) as exc:
        raise OverlayDecodeError(f"Signature payload is not a readable image: {exc}", field_id) from exc
    return image


# ---------------------------------------------------------------------------
# Instruction building
# ---------------------------------------------------------------------------


def build_instruction(
    field: TemplateField,
    value: Optional[str],
    page_height: float,
    settings: Optional[OverlaySettings] = None,
) -> Optional[DrawInstruction]:
    """Compute the draw operation for one field on its page.

    Args:
        field: The template field.
        value: The captured value ('' or None draws nothing).
        page_height: Height of the target page in PDF units.
        settings: Font and scaling settings.

    Returns:
        A ``TextDraw`` or ``ImageDraw``, or None when there is nothing to draw.

    Raises:
        OverlayDecodeError: If a signature payload cannot be decoded.
    """
    settings = settings or OverlaySettings()
    if not value:
        return None

    x = field.position.x
    if field.field_type == FieldType.SIGNATURE:
        image = decode_signature(value, field.id)
        width = image.width * settings.signature_scale
        height = image.height * settings.signature_scale
        return ImageDraw(
            x=x,
            y=to_pdf_y(page_height, field.position.y, height),
            width=width,
            height=height,
            image=image,
        )

    return TextDraw(
        x=x,
        y=to_pdf_y(page_height, field.position.y),
        text=value,
        font_name=settings.font_name,
        font_size=settings.font_size,
    )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_overlay_page(
    width: float,
    height: float,
    instructions: list[DrawInstruction],
) -> bytes:
    """Render instructions onto a single transparent page.

    The canvas runs in invariant mode so identical instructions always
    yield identical bytes.

    Args:
        width: Page width in PDF units.
        height: Page height in PDF units.
        instructions: Operations to draw, in order.

    Returns:
        A one-page PDF to merge over the source page.
    """
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=(width, height), invariant=1)
    for op in instructions:
        if isinstance(op, ImageDraw):
            c.drawImage(
                ImageReader(op.image),
                op.x,
                op.y,
                width=op.width,
                height=op.height,
                mask="auto",
            )
        else:
            c.setFillColor(colors.black)
            c.setFont(op.font_name, op.font_size)
            c.drawString(op.x, op.y, op.text)
    c.showPage()
    c.save()
    return buffer.getvalue()
