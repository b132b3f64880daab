"""Tests for coordinate mapping and draw instructions."""

import base64

import pytest

from signpad.config import OverlaySettings
from signpad.errors import OverlayDecodeError
from signpad.models import FieldPosition, FieldType, TemplateField
from signpad.overlay import (
    ImageDraw,
    TextDraw,
    build_instruction,
    decode_signature,
    render_overlay_page,
    to_pdf_y,
)

from conftest import PAGE_HEIGHT, PAGE_WIDTH, SIGNATURE_SIZE, make_oversized_png


def _field(field_type: FieldType, x: float = 50, y: float = 100) -> TemplateField:
    return TemplateField(
        label=field_type.value.title(),
        field_type=field_type,
        position=FieldPosition(x=x, y=y, page_number=1),
    )


class TestCoordinates:
    """Top-left origin maps onto PDF's bottom-left origin."""

    @pytest.mark.parametrize("height,y", [(792, 100), (842, 0), (612.5, 612.5)])
    def test_zero_height_element(self, height, y):
        assert to_pdf_y(height, y) == height - y

    def test_element_height_is_subtracted(self):
        assert to_pdf_y(792, 300, 40) == 452


class TestDecodeSignature:

    def test_data_url(self, signature):
        image = decode_signature(signature)
        assert image.size == SIGNATURE_SIZE

    def test_bare_base64(self, signature):
        image = decode_signature(signature.split(",", 1)[1])
        assert image.size == SIGNATURE_SIZE

    def test_not_base64(self):
        with pytest.raises(OverlayDecodeError):
            decode_signature("data:image/png;base64,%%%not-base64%%%")

    def test_not_an_image(self):
        payload = base64.b64encode(b"definitely not a png").decode("ascii")
        with pytest.raises(OverlayDecodeError) as info:
            decode_signature(f"data:image/png;base64,{payload}", field_id="f-1")
        assert info.value.field_id == "f-1"

    def test_oversized_image(self):
        with pytest.raises(OverlayDecodeError) as info:
            decode_signature(make_oversized_png(), field_id="f-2")
        assert info.value.field_id == "f-2"


class TestBuildInstruction:

    def test_text_on_baseline(self):
        op = build_instruction(_field(FieldType.TEXT), "Jane Doe", PAGE_HEIGHT)
        assert isinstance(op, TextDraw)
        assert (op.x, op.y) == (50, PAGE_HEIGHT - 100)
        assert op.text == "Jane Doe"
        assert (op.font_name, op.font_size) == ("Helvetica", 12)

    def test_date_draws_like_text(self):
        op = build_instruction(_field(FieldType.DATE, y=200), "2025-03-14", PAGE_HEIGHT)
        assert isinstance(op, TextDraw)
        assert op.y == PAGE_HEIGHT - 200

    @pytest.mark.parametrize("value", ["", None])
    def test_empty_value_draws_nothing(self, value):
        assert build_instruction(_field(FieldType.TEXT), value, PAGE_HEIGHT) is None
        assert build_instruction(_field(FieldType.SIGNATURE), value, PAGE_HEIGHT) is None

    def test_signature_half_scale(self, signature):
        op = build_instruction(_field(FieldType.SIGNATURE, y=300), signature, PAGE_HEIGHT)
        assert isinstance(op, ImageDraw)
        assert (op.width, op.height) == (SIGNATURE_SIZE[0] / 2, SIGNATURE_SIZE[1] / 2)
        assert op.x == 50
        assert op.y == PAGE_HEIGHT - 300 - SIGNATURE_SIZE[1] / 2

    def test_custom_settings(self, signature):
        settings = OverlaySettings(font_name="Courier", font_size=9, signature_scale=1.0)
        text = build_instruction(_field(FieldType.TEXT), "x", PAGE_HEIGHT, settings)
        image = build_instruction(_field(FieldType.SIGNATURE), signature, PAGE_HEIGHT, settings)
        assert (text.font_name, text.font_size) == ("Courier", 9)
        assert (image.width, image.height) == SIGNATURE_SIZE

    def test_malformed_signature_raises(self):
        with pytest.raises(OverlayDecodeError):
            build_instruction(_field(FieldType.SIGNATURE), "data:image/png;base64,AAAA", PAGE_HEIGHT)


class TestRenderOverlayPage:

    def test_output_is_deterministic(self, signature):
        ops = [
            build_instruction(_field(FieldType.TEXT), "Jane Doe", PAGE_HEIGHT),
            build_instruction(_field(FieldType.SIGNATURE, y=300), signature, PAGE_HEIGHT),
        ]
        first = render_overlay_page(PAGE_WIDTH, PAGE_HEIGHT, ops)
        second = render_overlay_page(PAGE_WIDTH, PAGE_HEIGHT, ops)
        assert first.startswith(b"%PDF")
        assert first == second
