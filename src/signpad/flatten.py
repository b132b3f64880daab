"""Document flattening pipeline.

Burns captured values into the page content of a template's source PDF:
the source is loaded once, each field becomes a draw instruction on its
page, every touched page gets one reportlab overlay merged on top with
pypdf, and the result is written once.

A malformed signature never aborts the pass. Each field's outcome is
collected into a ``FlattenResult`` so callers can surface partial
failures instead of only logging them.
"""

from __future__ import annotations

import io
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Mapping, Optional

from pypdf import PdfReader, PdfWriter

from .config import OverlaySettings
from .errors import OverlayDecodeError, RenderError
from .models import Template
from .overlay import DrawInstruction, build_instruction, render_overlay_page

logger = logging.getLogger("signpad.flatten")


class OverlayStatus(str, Enum):
    """What happened to one field during flattening."""

    DRAWN = "drawn"
    EMPTY = "empty"
    PAGE_OUT_OF_RANGE = "page_out_of_range"
    DECODE_FAILED = "decode_failed"


@dataclass(frozen=True)
class FieldOverlayResult:
    field_id: str
    label: str
    page_number: int
    status: OverlayStatus
    error: Optional[str] = None


@dataclass
class FlattenResult:
    """Flattened bytes plus a per-field report."""

    pdf_bytes: bytes
    results: list[FieldOverlayResult] = field(default_factory=list)

    @property
    def failures(self) -> list[FieldOverlayResult]:
        return [r for r in self.results if r.status == OverlayStatus.DECODE_FAILED]

    def result_for(self, field_id: str) -> Optional[FieldOverlayResult]:
        for r in self.results:
            if r.field_id == field_id:
                return r
        return None


class Flattener:
    """Overlays form values onto a template's PDF.

    Stateless apart from its drawing settings.

    Args:
        settings: Font and signature scaling settings.
    """

    def __init__(self, settings: Optional[OverlaySettings] = None) -> None:
        self.settings = settings or OverlaySettings()

    def flatten(
        self,
        pdf_bytes: bytes,
        template: Template,
        form_values: Mapping[str, str],
    ) -> bytes:
        """Produce the final PDF bytes. See ``flatten_with_report``."""
        return self.flatten_with_report(pdf_bytes, template, form_values).pdf_bytes

    def flatten_with_report(
        self,
        pdf_bytes: bytes,
        template: Template,
        form_values: Mapping[str, str],
    ) -> FlattenResult:
        """Overlay every field of ``template`` onto ``pdf_bytes``.

        Args:
            pdf_bytes: The template's source PDF.
            template: Field geometry, iterated in template order.
            form_values: Field id -> value.

        Returns:
            FlattenResult with the output bytes and one entry per field.

        Raises:
            RenderError: If the source bytes are not a readable PDF.
        """
        reader = self._load(pdf_bytes)
        page_count = len(reader.pages)

        results: list[FieldOverlayResult] = []
        per_page: dict[int, list[DrawInstruction]] = defaultdict(list)

        for f in template.fields:
            page_number = f.position.page_number
            if page_number > page_count:
                logger.warning(
                    "Field %r targets page %d but document has %d pages; skipping",
                    f.label,
                    page_number,
                    page_count,
                )
                results.append(
                    FieldOverlayResult(f.id, f.label, page_number, OverlayStatus.PAGE_OUT_OF_RANGE)
                )
                continue

            page = reader.pages[page_number - 1]
            try:
                op = build_instruction(
                    f,
                    form_values.get(f.id),
                    float(page.mediabox.height),
                    self.settings,
                )
            except OverlayDecodeError as exc:
                logger.warning("Skipping signature for field %r: %s", f.label, exc)
                results.append(
                    FieldOverlayResult(
                        f.id, f.label, page_number, OverlayStatus.DECODE_FAILED, str(exc)
                    )
                )
                continue

            if op is None:
                results.append(FieldOverlayResult(f.id, f.label, page_number, OverlayStatus.EMPTY))
                continue

            per_page[page_number - 1].append(op)
            results.append(FieldOverlayResult(f.id, f.label, page_number, OverlayStatus.DRAWN))

        writer = PdfWriter()
        for page in reader.pages:
            writer.add_page(page)

        for page_index in sorted(per_page):
            target = writer.pages[page_index]
            overlay = render_overlay_page(
                float(target.mediabox.width),
                float(target.mediabox.height),
                per_page[page_index],
            )
            target.merge_page(PdfReader(io.BytesIO(overlay)).pages[0])

        out = io.BytesIO()
        writer.write(out)

        drawn = sum(1 for r in results if r.status == OverlayStatus.DRAWN)
        logger.info(
            "Flattened template %s: %d of %d fields drawn",
            template.id[:8],
            drawn,
            len(results),
        )
        return FlattenResult(pdf_bytes=out.getvalue(), results=results)

    @staticmethod
    def _load(pdf_bytes: bytes) -> PdfReader:
        try:
            reader = PdfReader(io.BytesIO(pdf_bytes))
            # Touch the page tree so structural damage surfaces here.
            len(reader.pages)
        except Exception as exc:
            raise RenderError(f"Cannot parse source PDF: {exc}") from exc
        return reader


def signed_filename(template_name: str, created_at: datetime) -> str:
    """Download name for a flattened copy, e.g. ``NDA_signed_03-14-2025.pdf``."""
    return f"{template_name}_signed_{created_at.strftime('%m-%d-%Y')}.pdf"
