"""Shared fixtures for signpad tests."""

import base64
import io
import struct
import zlib

import pytest
from PIL import Image
from reportlab.pdfgen import canvas

from signpad.config import SignpadConfig
from signpad.models import FieldPosition, FieldType, Template, TemplateField

PAGE_WIDTH = 612
PAGE_HEIGHT = 792
SIGNATURE_SIZE = (200, 80)


def make_pdf(pages: int = 2) -> bytes:
    """Build a Letter-sized PDF with a heading on each page."""
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=(PAGE_WIDTH, PAGE_HEIGHT), invariant=1)
    for n in range(1, pages + 1):
        c.setFont("Helvetica", 18)
        c.drawString(72, PAGE_HEIGHT - 72, f"Agreement page {n}")
        c.showPage()
    c.save()
    return buffer.getvalue()


def make_signature(size: tuple[int, int] = SIGNATURE_SIZE) -> str:
    """PNG data URL like the one a signature pad produces."""
    image = Image.new("RGBA", size, (255, 255, 255, 0))
    for x in range(10, size[0] - 10):
        image.putpixel((x, size[1] // 2), (0, 0, 0, 255))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def make_oversized_png(width: int = 15000, height: int = 15000) -> str:
    """1-bit PNG data URL whose header declares far more pixels than Pillow allows."""

    def chunk(tag: bytes, data: bytes) -> bytes:
        crc = zlib.crc32(tag + data) & 0xFFFFFFFF
        return struct.pack(">I", len(data)) + tag + data + struct.pack(">I", crc)

    png = (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", struct.pack(">IIBBBBB", width, height, 1, 0, 0, 0, 0))
        + chunk(b"IDAT", zlib.compress(b""))
        + chunk(b"IEND", b"")
    )
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def sample_pdf() -> bytes:
    return make_pdf()


@pytest.fixture
def signature() -> str:
    return make_signature()


@pytest.fixture
def agreement() -> Template:
    """Name (text) then Sig (signature), both required, on page 1."""
    return Template(
        name="Agreement",
        file_path="templates/agreement.pdf",
        fields=[
            TemplateField(
                label="Name",
                field_type=FieldType.TEXT,
                required=True,
                position=FieldPosition(x=50, y=100, page_number=1),
            ),
            TemplateField(
                label="Sig",
                field_type=FieldType.SIGNATURE,
                required=True,
                position=FieldPosition(x=50, y=300, page_number=1),
            ),
        ],
    )


@pytest.fixture
def config(tmp_path) -> SignpadConfig:
    return SignpadConfig(
        data_dir=tmp_path,
        public_base_url="https://sign.example.test",
        handoff_timeout_seconds=2,
    )


@pytest.fixture
def service(config, agreement, sample_pdf):
    """A SigningService with the agreement template published."""
    from signpad.service import SigningService

    svc = SigningService(config)
    svc.objects.upload(agreement.file_path, sample_pdf)
    svc.records.save_template(agreement)
    return svc
