"""Response exports: CSV, PDF table document, Word table.

All three containers are filled from the same ``build_table`` output, so they
can only differ in layout, never in data.
"""
from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from typing import Sequence
from xml.sax.saxutils import escape

import pandas as pd
from docx import Document
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle

from eligibility import as_utc
from models import Question, Response, Survey
from normalizer import answer_values, load_stored_answers

EXPORT_FORMATS = ("csv", "table-document", "word-table")
BASE_COLUMNS = ["Respondent Name", "Respondent Email", "Submitted At"]
MULTI_SEPARATOR = "; "


@dataclass
class ExportFile:
    content: bytes
    media_type: str
    filename: str


def format_timestamp(response: Response) -> str:
    return as_utc(response.submitted_at).strftime("%Y-%m-%d %H:%M:%S UTC")


def build_table(questions: Sequence[Question], responses: Sequence[Response]) -> tuple[list[str], list[list[str]]]:
    """Header row and data rows shared by every export format.

    Columns: respondent name, respondent contact, submission time, then one
    column per question in display order. Empty answers stay as empty cells.
    """
    ordered = sorted(questions, key=lambda q: q.order_index)
    headers = BASE_COLUMNS + [q.text.replace("\n", " ") for q in ordered]
    rows = []
    for r in responses:
        answers = load_stored_answers(r.answers)
        person = r.respondent
        row = [
            person.full_name if person else "",
            person.email if person else "",
            format_timestamp(r),
        ]
        for q in ordered:
            row.append(MULTI_SEPARATOR.join(answer_values(answers.get(str(q.id)))))
        rows.append(row)
    return headers, rows


def to_csv(headers: list[str], rows: list[list[str]]) -> bytes:
    df = pd.DataFrame(rows, columns=headers)
    return df.to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator="\r\n").encode("utf-8")


def to_pdf(title: str, headers: list[str], rows: list[list[str]]) -> bytes:
    buf = io.BytesIO()
    page = landscape(A4)
    doc = SimpleDocTemplate(buf, pagesize=page, leftMargin=24, rightMargin=24, topMargin=24, bottomMargin=24,
                            title=title)
    styles = getSampleStyleSheet()
    cell = styles["BodyText"].clone("cell", fontSize=7, leading=9)
    head = cell.clone("head", fontName="Helvetica-Bold")

    story = [Paragraph(escape(title), styles["Title"]), Spacer(1, 8)]
    data = [[Paragraph(escape(h), head) for h in headers]]
    data += [[Paragraph(escape(v), cell) for v in row] for row in rows]
    width = (page[0] - doc.leftMargin - doc.rightMargin) / max(len(headers), 1)
    tbl = Table(data, colWidths=[width] * len(headers), repeatRows=1, hAlign="LEFT")
    tbl.setStyle(TableStyle([
        ('BACKGROUND', (0,0), (-1,0), colors.lightgrey),
        ('GRID', (0,0), (-1,-1), 0.25, colors.grey),
        ('VALIGN', (0,0), (-1,-1), 'TOP'),
    ]))
    story.append(tbl)
    doc.build(story)
    return buf.getvalue()


def to_docx(title: str, headers: list[str], rows: list[list[str]]) -> bytes:
    doc = Document()
    doc.add_heading(title, level=1)
    table = doc.add_table(rows=1, cols=len(headers))
    table.style = "Table Grid"
    for cell, text in zip(table.rows[0].cells, headers):
        cell.paragraphs[0].add_run(text).bold = True
    for row in rows:
        cells = table.add_row().cells
        for cell, text in zip(cells, row):
            cell.text = text
    buf = io.BytesIO()
    doc.save(buf)
    return buf.getvalue()


def export_filename(title: str, ext: str) -> str:
    return f"{re.sub(r'[^a-z0-9]', '_', title, flags=re.I)}_responses.{ext}"


def export_responses(survey: Survey, questions: Sequence[Question], responses: Sequence[Response],
                     fmt: str) -> ExportFile:
    """Render a response set in one of EXPORT_FORMATS.

    Raises:
        ValueError: unknown format.
    """
    headers, rows = build_table(questions, responses)
    if fmt == "csv":
        return ExportFile(to_csv(headers, rows), "text/csv; charset=utf-8", export_filename(survey.title, "csv"))
    if fmt == "table-document":
        return ExportFile(to_pdf(survey.title, headers, rows), "application/pdf",
                          export_filename(survey.title, "pdf"))
    if fmt == "word-table":
        return ExportFile(
            to_docx(survey.title, headers, rows),
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            export_filename(survey.title, "docx"),
        )
    raise ValueError(f"Unsupported export format: {fmt}")
