"""
artifact_renderer.py
~~~~~~~~~~~~~~~~~~~~
Turns the markdown-like analysis text returned by the provider into a PDF.

Supported: ``#``/``##``/``###`` headings, ``-``/``*``/``•`` bullets, numbered
items, ``**bold**``, ``*italic*``, pipe tables, fenced code blocks, ``---``
rules and blank-line separated paragraphs. Anything else is kept as body text.
Output is byte-for-byte stable for the same input (ReportLab invariant mode).
"""
from __future__ import annotations

import logging
import re
import time
from io import BytesIO
from typing import Any, Optional

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.platypus import (
    HRFlowable,
    Paragraph,
    Preformatted,
    SimpleDocTemplate,
    Spacer,
)
from reportlab.platypus.flowables import Flowable

from beyanname_ai.services.report_styles import (
    REPORT_TITLE,
    Brand,
    build_styled_table,
    build_styles,
    page_callback,
    resolve_fonts,
)

logger = logging.getLogger(__name__)

_HEADING_RE  = re.compile(r"^(#{1,6})\s+(.*)$")
_BULLET_RE   = re.compile(r"^\s*[-*•]\s+(.*)$")
_NUMBERED_RE = re.compile(r"^\s*(\d+)[.)]\s+(.*)$")
_RULE_RE     = re.compile(r"^\s*(-{3,}|\*{3,}|_{3,})\s*$")
_TABLE_SEP_RE = re.compile(r"^\s*\|?\s*:?-{2,}:?\s*(\|\s*:?-{2,}:?\s*)*\|?\s*$")
_BOLD_RE     = re.compile(r"\*\*(.+?)\*\*")
_ITALIC_RE   = re.compile(r"(?<![*\w])\*(?!\s)(.+?)(?<!\s)\*(?![*\w])")


# ─── Custom Exceptions ───────────────────────────────────────────────────────
class RenderError(ValueError):
    """Raised when the analysis text cannot be turned into a PDF."""


# ─── Inline Markup ───────────────────────────────────────────────────────────
def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _inline(text: str) -> str:
    """Escape XML special characters, then map **bold** and *italic* to ReportLab markup."""
    escaped = _escape(text)
    escaped = _BOLD_RE.sub(r"<b>\1</b>", escaped)
    return _ITALIC_RE.sub(r"<i>\1</i>", escaped)


def _paragraph(text: str, style: Any, **kwargs: Any) -> Paragraph:
    """
    Paragraph with inline markup. Overlapping markers such as ``**a *b** c*``
    produce tags ReportLab cannot nest; that block is then kept as plain text.
    """
    try:
        return Paragraph(_inline(text), style, **kwargs)
    except ValueError:
        logger.warning("Unbalanced inline markup, rendering block as plain text: %.40r", text)
        return Paragraph(_escape(text), style, **kwargs)


def _split_row(line: str) -> list[str]:
    return [cell.strip() for cell in line.strip().strip("|").split("|")]


# ─── Block Parser ────────────────────────────────────────────────────────────
def _build_story(text: str, styles: dict[str, Any]) -> list[Flowable]:
    story: list[Flowable] = [Paragraph(REPORT_TITLE, styles["ReportTitle"])]
    paragraph: list[str] = []
    table_rows: list[list[str]] = []
    code_lines: list[str] = []
    in_code = False

    def flush_paragraph() -> None:
        if paragraph:
            story.append(_paragraph(" ".join(paragraph), styles["Body"]))
            paragraph.clear()

    def flush_table() -> None:
        if not table_rows:
            return
        width = max(len(r) for r in table_rows)
        cells = [
            [_paragraph(c, styles["TableCell"]) for c in row + [""] * (width - len(row))]
            for row in table_rows
        ]
        usable = A4[0] - 40 * mm
        story.append(build_styled_table(cells, col_widths=[usable / width] * width))
        story.append(Spacer(1, 6))
        table_rows.clear()

    for raw_line in text.splitlines():
        line = raw_line.rstrip()

        if line.strip().startswith("```"):
            if in_code:
                story.append(Preformatted("\n".join(code_lines), styles["Code"]))
                code_lines.clear()
                in_code = False
            else:
                flush_paragraph()
                flush_table()
                in_code = True
            continue
        if in_code:
            code_lines.append(raw_line)
            continue

        if line.strip().startswith("|"):
            flush_paragraph()
            if not _TABLE_SEP_RE.match(line):
                table_rows.append(_split_row(line))
            continue
        flush_table()

        if not line.strip():
            flush_paragraph()
            continue

        heading = _HEADING_RE.match(line)
        if heading:
            flush_paragraph()
            level = min(len(heading.group(1)), 3)
            story.append(_paragraph(heading.group(2), styles[f"Heading{level}"]))
            continue

        if _RULE_RE.match(line):
            flush_paragraph()
            story.append(HRFlowable(width="100%", thickness=1, color=Brand.DIVIDER, spaceBefore=4, spaceAfter=4))
            continue

        bullet = _BULLET_RE.match(line)
        if bullet:
            flush_paragraph()
            story.append(_paragraph(bullet.group(1), styles["Bullet"], bulletText="•"))
            continue

        numbered = _NUMBERED_RE.match(line)
        if numbered:
            flush_paragraph()
            story.append(_paragraph(numbered.group(2), styles["Bullet"], bulletText=f"{numbered.group(1)}."))
            continue

        paragraph.append(line.strip())

    # Unterminated fence: keep the content rather than dropping it
    if code_lines:
        story.append(Preformatted("\n".join(code_lines), styles["Code"]))
    flush_paragraph()
    flush_table()
    return story


class ArtifactRenderer:
    """render(result_text) -> PDF bytes."""

    def __init__(self, font_path: Optional[str] = None):
        self.regular_font, self.bold_font = resolve_fonts(font_path)

    def render(self, result_text: str) -> bytes:
        """
        Raises:
            RenderError: input is not a non-empty string, or ReportLab failed to lay it out.
        """
        if not isinstance(result_text, str):
            raise RenderError(f"result_text must be a string, got {type(result_text).__name__}.")
        if not result_text.strip():
            raise RenderError("result_text is empty.")

        start_time = time.perf_counter()
        styles = build_styles(self.regular_font, self.bold_font)
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=20 * mm,
            leftMargin=20 * mm,
            topMargin=22 * mm,
            bottomMargin=18 * mm,
            title=REPORT_TITLE,
            author="Beyanname AI",
            invariant=1,
        )
        try:
            doc.build(_build_story(result_text, styles), onFirstPage=page_callback, onLaterPages=page_callback)
        except Exception as e:
            logger.error("PDF layout failed: %s", str(e))
            raise RenderError(f"PDF layout failed: {e}") from e

        pdf_bytes = buffer.getvalue()
        logger.info(
            "PDF rendered: %d bytes, %.2f ms.",
            len(pdf_bytes), (time.perf_counter() - start_time) * 1000,
        )
        return pdf_bytes
