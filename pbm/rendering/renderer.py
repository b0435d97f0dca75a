"""Turn sheet rendering.

The core treats rendering as a pluggable service: anything implementing
``Renderer.render`` can be installed under ``app.extensions["pbm_renderer"]``.
The bundled ``PillowPdfRenderer`` paints an A4 page (150 DPI) with the
background image, the sheet text and options, and the printed sheet code,
then lets Pillow write it out as a one-page PDF.
"""

from __future__ import annotations

import io
import textwrap
from typing import Any, Dict, Optional, Protocol

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from pbm.errors import RenderFailed, RenderTimeout
from pbm.models.turn_sheet import SheetType
from pbm.utils.deadline import CallContext

PAGE_SIZE = (1240, 1754)  # A4 at 150 DPI
PAGE_DPI = 150
MARGIN = 90
LINE_HEIGHT = 28
BOX_SIZE = 26

JOIN_FIELD_LABELS = (
    "Name",
    "Email",
    "Address",
    "Address (cont.)",
    "State / Province",
    "Country",
    "Postal code",
    "Character name",
)


class Renderer(Protocol):
    def render(
        self,
        ctx: CallContext,
        sheet_type: str,
        sheet_data: Dict[str, Any],
        background: Optional[bytes],
        code: str,
    ) -> bytes:
        ...


class PillowPdfRenderer:
    def __init__(self) -> None:
        self._font = ImageFont.load_default()

    def render(
        self,
        ctx: CallContext,
        sheet_type: str,
        sheet_data: Dict[str, Any],
        background: Optional[bytes],
        code: str,
    ) -> bytes:
        if ctx.expired():
            raise RenderTimeout("render deadline elapsed before starting")
        page = self._page(background)
        draw = ImageDraw.Draw(page)
        y = MARGIN
        y = self._text(draw, sheet_data.get("title") or sheet_type.replace("_", " ").title(), y)
        y = self._text(draw, sheet_data.get("instructions", ""), y + LINE_HEIGHT)

        if sheet_type == SheetType.LOCATION_CHOICE.value:
            y = self._location_choice(draw, sheet_data, y + LINE_HEIGHT)
        elif sheet_type == SheetType.JOIN_GAME.value:
            y = self._join_game(draw, y + LINE_HEIGHT)
        for event in sheet_data.get("turn_events", []):
            y = self._text(draw, f"* {event.get('message', '')}", y)

        # Sheet code footer, read back by the scanner
        draw.text((MARGIN, PAGE_SIZE[1] - MARGIN), code, fill="black", font=self._font)
        if ctx.expired():
            raise RenderTimeout("render deadline elapsed")
        out = io.BytesIO()
        try:
            page.save(out, format="PDF", resolution=PAGE_DPI)
        except (OSError, ValueError) as exc:
            raise RenderFailed(f"could not write PDF: {exc}") from exc
        return out.getvalue()

    def _page(self, background: Optional[bytes]) -> Image.Image:
        page = Image.new("RGB", PAGE_SIZE, "white")
        if not background:
            return page
        try:
            with Image.open(io.BytesIO(background)) as img:
                page.paste(img.convert("RGB").resize(PAGE_SIZE))
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise RenderFailed(f"background image unusable: {exc}") from exc
        return page

    def _text(self, draw: ImageDraw.ImageDraw, text: str, y: int) -> int:
        for line in textwrap.wrap(str(text), width=90) or [""]:
            draw.text((MARGIN, y), line, fill="black", font=self._font)
            y += LINE_HEIGHT
        return y

    def _location_choice(self, draw: ImageDraw.ImageDraw, data: Dict[str, Any], y: int) -> int:
        y = self._text(draw, f"You are at {data.get('location_name', '')}.", y)
        y = self._text(draw, data.get("location_description", ""), y)
        y += LINE_HEIGHT
        for option in data.get("options", []):
            draw.rectangle((MARGIN, y, MARGIN + BOX_SIZE, y + BOX_SIZE), outline="black", width=3)
            draw.text((MARGIN + BOX_SIZE * 2, y + 4), option.get("name", ""), fill="black", font=self._font)
            y += BOX_SIZE + LINE_HEIGHT
        return y

    def _join_game(self, draw: ImageDraw.ImageDraw, y: int) -> int:
        for label in JOIN_FIELD_LABELS:
            draw.text((MARGIN, y), label, fill="black", font=self._font)
            draw.line((MARGIN + 260, y + 20, PAGE_SIZE[0] - MARGIN, y + 20), fill="black", width=2)
            y += LINE_HEIGHT * 2
        return y
