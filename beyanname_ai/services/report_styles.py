"""
report_styles.py
~~~~~~~~~~~~~~~~
Brand palette, paragraph styles, table helper and page callbacks for the
analysis PDF. Kept apart from artifact_renderer.py so layout and parsing can
change independently.
"""
from __future__ import annotations

import logging
import os
from typing import Optional

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY, TA_LEFT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.platypus import Table, TableStyle

# ─── Logger ──────────────────────────────────────────────────────────────────
logger = logging.getLogger(__name__)

REPORT_TITLE = "Beyanname AI Analiz Raporu"


# ─── Brand Color Palette ─────────────────────────────────────────────────────
class Brand:
    ACCENT        = colors.HexColor("#0f4c81")   # headings, header bar
    ACCENT_LIGHT  = colors.HexColor("#9cc3e6")   # sub-accents
    TABLE_HEADER  = colors.HexColor("#1d6fa5")   # table header row
    TABLE_ROW_ALT = colors.HexColor("#eef5fb")   # alternating row fill
    TABLE_ROW     = colors.white                 # default row
    TEXT_DARK     = colors.HexColor("#1b2430")   # body text
    TEXT_LIGHT    = colors.white                 # text on dark backgrounds
    DIVIDER       = colors.HexColor("#c9dcec")   # horizontal rule color
    CODE_BG       = colors.HexColor("#f4f6f8")   # preformatted blocks


# ─── Fonts ───────────────────────────────────────────────────────────────────
_REGISTERED_FONT = "ReportFont"


def resolve_fonts(font_path: Optional[str]) -> tuple[str, str]:
    """
    Return (regular, bold) font names.
    The built-in Helvetica has no glyphs for ş, ğ, ı and İ; a TTF path fixes that.
    """
    if not font_path:
        return "Helvetica", "Helvetica-Bold"
    if not os.path.exists(font_path):
        logger.warning("PDF_FONT_PATH '%s' does not exist; falling back to Helvetica.", font_path)
        return "Helvetica", "Helvetica-Bold"
    if _REGISTERED_FONT not in pdfmetrics.getRegisteredFontNames():
        pdfmetrics.registerFont(TTFont(_REGISTERED_FONT, font_path))
        pdfmetrics.registerFontFamily(
            _REGISTERED_FONT,
            normal=_REGISTERED_FONT,
            bold=_REGISTERED_FONT,
            italic=_REGISTERED_FONT,
            boldItalic=_REGISTERED_FONT,
        )
        logger.info("Registered PDF font from %s.", font_path)
    return _REGISTERED_FONT, _REGISTERED_FONT


# ─── Style Factory ───────────────────────────────────────────────────────────
def build_styles(regular: str = "Helvetica", bold: str = "Helvetica-Bold") -> dict[str, ParagraphStyle]:
    """Branded style sheet keyed by style name."""
    base = getSampleStyleSheet()
    custom: dict[str, ParagraphStyle] = {}

    custom["ReportTitle"] = ParagraphStyle(
        "ReportTitle",
        parent=base["Title"],
        fontName=bold,
        fontSize=20,
        textColor=Brand.ACCENT,
        alignment=TA_CENTER,
        spaceAfter=14,
    )

    # Markdown heading levels 1-3
    for level, size in ((1, 16), (2, 13), (3, 11)):
        custom[f"Heading{level}"] = ParagraphStyle(
            f"Heading{level}",
            parent=base[f"Heading{level}"],
            fontName=bold,
            fontSize=size,
            leading=size + 4,
            textColor=Brand.ACCENT if level < 3 else Brand.TEXT_DARK,
            spaceBefore=10,
            spaceAfter=4,
            alignment=TA_LEFT,
        )

    custom["Body"] = ParagraphStyle(
        "Body",
        parent=base["Normal"],
        fontName=regular,
        fontSize=10,
        textColor=Brand.TEXT_DARK,
        alignment=TA_JUSTIFY,
        leading=14,
        spaceAfter=6,
    )

    custom["Bullet"] = ParagraphStyle(
        "Bullet",
        parent=custom["Body"],
        alignment=TA_LEFT,
        leftIndent=14,
        bulletIndent=4,
        spaceAfter=2,
    )

    custom["TableCell"] = ParagraphStyle(
        "TableCell",
        parent=base["Normal"],
        fontName=regular,
        fontSize=8.5,
        leading=11,
        textColor=Brand.TEXT_DARK,
    )

    custom["Code"] = ParagraphStyle(
        "Code",
        parent=base["Code"],
        fontSize=8,
        leading=10,
        backColor=Brand.CODE_BG,
        leftIndent=6,
        spaceAfter=6,
    )
    return custom


# ─── Styled Table Builder ────────────────────────────────────────────────────
def build_styled_table(data: list[list], col_widths: list[float] | None = None) -> Table:
    """Branded table; data[0] is the header row."""
    t = Table(data, colWidths=col_widths, repeatRows=1)

    style_commands = [
        ("BACKGROUND", (0, 0), (-1, 0), Brand.TABLE_HEADER),
        ("TEXTCOLOR", (0, 0), (-1, 0), Brand.TEXT_LIGHT),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("TOPPADDING", (0, 0), (-1, -1), 4),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
        ("GRID", (0, 0), (-1, -1), 0.5, Brand.DIVIDER),
    ]
    for row_idx in range(1, len(data)):
        fill = Brand.TABLE_ROW_ALT if row_idx % 2 == 0 else Brand.TABLE_ROW
        style_commands.append(("BACKGROUND", (0, row_idx), (-1, row_idx), fill))

    t.setStyle(TableStyle(style_commands))
    return t


# ─── Page Header / Footer Callbacks ──────────────────────────────────────────
def page_callback(canvas, doc) -> None:
    """Accent bar with the report title on top, page number at the bottom."""
    width, height = A4
    canvas.saveState()
    canvas.setFillColor(Brand.ACCENT)
    canvas.rect(0, height - 0.35 * inch, width, 0.35 * inch, fill=1, stroke=0)
    canvas.setFillColor(Brand.TEXT_LIGHT)
    canvas.setFont("Helvetica-Bold", 9)
    canvas.drawString(0.5 * inch, height - 0.22 * inch, "Beyanname AI")
    canvas.setFillColor(colors.grey)
    canvas.setFont("Helvetica", 8)
    canvas.drawCentredString(width / 2, 0.3 * inch, f"Sayfa {doc.page}")
    canvas.restoreState()
