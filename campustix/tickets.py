"""Rendering of the ticket artifacts: QR image and a one-page PDF."""
from __future__ import annotations
import io
from typing import Iterable, Tuple

import qrcode
from qrcode.constants import ERROR_CORRECT_M
from PIL import Image, ImageDraw, ImageFont

PAGE_SIZE = (1240, 1754)  # A5 at 150 dpi
MARGIN = 80


def render_qr(data: str, box_size: int = 8) -> bytes:
    qr = qrcode.QRCode(
        version=None, error_correction=ERROR_CORRECT_M,
        box_size=box_size, border=2,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf)
    return buf.getvalue()


def render_ticket_pdf(qr_png: bytes, title: str,
                      lines: Iterable[Tuple[str, str]]) -> bytes:
    page = Image.new("RGB", PAGE_SIZE, "white")
    draw = ImageDraw.Draw(page)
    font = ImageFont.load_default()

    y = MARGIN
    draw.text((MARGIN, y), title, fill="black", font=font)
    y += 40
    draw.line((MARGIN, y, PAGE_SIZE[0] - MARGIN, y), fill="black", width=2)
    y += 30
    for label, value in lines:
        draw.text((MARGIN, y), f"{label}: {value}", fill="black", font=font)
        y += 28

    qr = Image.open(io.BytesIO(qr_png)).convert("RGB")
    side = min(PAGE_SIZE[0] - 2 * MARGIN, PAGE_SIZE[1] - y - 2 * MARGIN)
    qr = qr.resize((side, side), Image.Resampling.NEAREST)
    page.paste(qr, ((PAGE_SIZE[0] - side) // 2, y + MARGIN))

    buf = io.BytesIO()
    page.save(buf, format="PDF", resolution=150.0)
    return buf.getvalue()
