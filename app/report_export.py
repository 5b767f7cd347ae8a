"""
Render report dicts from app.reporting as PDF (reportlab) or XLSX (openpyxl).
"""
from __future__ import annotations

import io
import logging
from datetime import datetime

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from app.config import Config

logger = logging.getLogger(__name__)

EXPORT_FORMATS = {
    "pdf": "application/pdf",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

BRAND_COLOR = colors.HexColor("#1f6feb")
DARK_GRAY = colors.HexColor("#333333")
LIGHT_GRAY = colors.HexColor("#f2f2f2")


def _label(key: str) -> str:
    return key.replace("_", " ").capitalize()


def _cell(value) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:,.2f}"
    return str(value)


def _period_text(report: dict) -> str:
    start = datetime.fromisoformat(report["start"]).strftime("%d/%m/%Y")
    end = datetime.fromisoformat(report["end"]).strftime("%d/%m/%Y")
    return f"{start} - {end}"


# ---------------------------
# PDF
# ---------------------------

class ReportPDFBuilder:
    margin = 0.75 * inch

    def __init__(self, report: dict):
        self.report = report
        self.page_width, self.page_height = A4

    def build(self) -> bytes:
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=self.margin,
            leftMargin=self.margin,
            topMargin=self.margin,
            bottomMargin=self.margin,
            title=f"{self.report['title']} - {Config.APP_NAME}",
        )

        styles = getSampleStyleSheet()
        title_style = ParagraphStyle(
            "ReportTitle",
            parent=styles["Heading1"],
            fontSize=20,
            textColor=BRAND_COLOR,
            spaceAfter=6,
        )
        heading_style = ParagraphStyle(
            "ReportHeading",
            parent=styles["Heading2"],
            fontSize=13,
            textColor=DARK_GRAY,
            spaceBefore=16,
            spaceAfter=8,
        )
        body_style = ParagraphStyle("ReportBody", parent=styles["Normal"], fontSize=9, textColor=DARK_GRAY)

        story = [
            Paragraph(self.report["title"], title_style),
            Paragraph(f"{Config.APP_NAME} | Period: {_period_text(self.report)}", body_style),
            Spacer(1, 0.25 * inch),
            Paragraph("Summary", heading_style),
        ]

        summary_rows = [[_label(k), _cell(v)] for k, v in self.report.get("summary", {}).items()]
        if summary_rows:
            summary_table = Table(summary_rows, colWidths=[2.5 * inch, 2.5 * inch])
            summary_table.setStyle(
                TableStyle(
                    [
                        ("FONT", (0, 0), (0, -1), "Helvetica-Bold", 10),
                        ("FONT", (1, 0), (1, -1), "Helvetica", 10),
                        ("TEXTCOLOR", (0, 0), (-1, -1), DARK_GRAY),
                        ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
                    ]
                )
            )
            story.append(summary_table)

        for section in self.report.get("sections", []):
            story.append(Paragraph(section["title"], heading_style))
            if not section["rows"]:
                story.append(Paragraph("No data for this period.", body_style))
                continue
            data = [section["columns"]] + [[_cell(v) for v in row] for row in section["rows"]]
            table = Table(data, repeatRows=1)
            table.setStyle(
                TableStyle(
                    [
                        ("BACKGROUND", (0, 0), (-1, 0), BRAND_COLOR),
                        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                        ("FONT", (0, 0), (-1, 0), "Helvetica-Bold", 9),
                        ("FONT", (0, 1), (-1, -1), "Helvetica", 8),
                        ("TEXTCOLOR", (0, 1), (-1, -1), DARK_GRAY),
                        ("VALIGN", (0, 0), (-1, -1), "TOP"),
                        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, LIGHT_GRAY]),
                        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                        ("TOPPADDING", (0, 0), (-1, -1), 5),
                        ("BOTTOMPADDING", (0, 0), (-1, -1), 5),
                    ]
                )
            )
            story.append(table)

        doc.build(story, onFirstPage=self._add_page_number, onLaterPages=self._add_page_number)
        return buffer.getvalue()

    def _add_page_number(self, canvas_obj, doc):
        canvas_obj.saveState()
        canvas_obj.setFont("Helvetica", 8)
        canvas_obj.setFillColor(colors.grey)
        canvas_obj.drawString(self.margin, self.margin / 2, f"Generated {self.report['generated_at'][:16]}")
        canvas_obj.drawRightString(
            self.page_width - self.margin, self.margin / 2, f"Page {canvas_obj.getPageNumber()}"
        )
        canvas_obj.restoreState()


def render_pdf(report: dict) -> bytes:
    return ReportPDFBuilder(report).build()


# ---------------------------
# XLSX
# ---------------------------

def render_xlsx(report: dict) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Summary"
    header_font = Font(bold=True, color="FFFFFF")
    header_fill = PatternFill("solid", fgColor="1F6FEB")

    ws.append([report["title"]])
    ws["A1"].font = Font(bold=True, size=14)
    ws.append(["Period", _period_text(report)])
    ws.append([])
    for key, value in report.get("summary", {}).items():
        ws.append([_label(key), value])
    ws.column_dimensions["A"].width = 30
    ws.column_dimensions["B"].width = 20

    for index, section in enumerate(report.get("sections", []), start=1):
        # Sheet titles are capped at 31 characters
        sheet = wb.create_sheet(title=section["title"][:31] or f"Sheet{index}")
        sheet.append(section["columns"])
        for cell in sheet[1]:
            cell.font = header_font
            cell.fill = header_fill
        for row in section["rows"]:
            sheet.append(list(row))
        for column_cells in sheet.columns:
            width = max(len(_cell(c.value)) for c in column_cells)
            sheet.column_dimensions[column_cells[0].column_letter].width = min(width + 2, 50)

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def export_report(report: dict, fmt: str) -> tuple[bytes, str, str]:
    """Return (content, mimetype, filename) for the requested format."""
    fmt = (fmt or "").lower()
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Format must be one of {', '.join(EXPORT_FORMATS)}")
    content = render_pdf(report) if fmt == "pdf" else render_xlsx(report)
    filename = f"{report['type']}-report-{report['generated_at'][:10]}.{fmt}"
    logger.info("Exported %s report as %s (%s bytes)", report["type"], fmt, len(content))
    return content, EXPORT_FORMATS[fmt], filename
