"""Export helpers to build patient estimate documents (DOCX / PDF) with an embedded split chart."""
from __future__ import annotations

import io
import re
import unicodedata

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
from docx import Document  # noqa: E402
from docx.shared import Inches  # noqa: E402
from fpdf import FPDF  # noqa: E402

from dermbill.billing_calculator import format_currency  # noqa: E402
from dermbill.copywriter import explain_estimate  # noqa: E402
from dermbill.models import CalculationResult  # noqa: E402

_ALLOCATION_HEADERS = ["Charge", "Code", "Fee", "Deductible", "Copay", "Coinsurance", "Not covered", "Insurance", "Patient"]
_PERSONA_HEADERS = {"patient": "Your estimate:", "staff": "Checkout summary:"}


def _render_split_chart(result: CalculationResult) -> bytes | None:
    """Return a donut PNG of patient vs insurer share, or None when there is nothing to plot."""
    patient = result.totals.patient_responsibility
    insurer = result.totals.insurer_paid
    if patient <= 0 and insurer <= 0:
        return None

    fig, ax = plt.subplots(figsize=(4, 3))
    try:
        ax.pie(
            [patient, insurer],
            labels=[f"Patient {format_currency(patient)}", f"Insurance {format_currency(insurer)}"],
            colors=["#ef4444", "#2563eb"],
            wedgeprops=dict(width=0.4),
        )
        ax.set_aspect("equal")
        buf = io.BytesIO()
        fig.savefig(buf, format="png", bbox_inches="tight")
    finally:
        plt.close(fig)
    return buf.getvalue()


def _allocation_rows(result: CalculationResult) -> list[list[str]]:
    rows = []
    for charge in result.charges:
        rows.append(
            [
                charge.id,
                charge.code or charge.category.value,
                format_currency(charge.amount),
                format_currency(charge.to_deductible),
                format_currency(charge.to_copay),
                format_currency(charge.to_coinsurance),
                format_currency(charge.to_not_covered),
                format_currency(charge.insurer_paid),
                format_currency(charge.patient_responsibility),
            ]
        )
    return rows


def _totals_rows(result: CalculationResult) -> list[tuple[str, str]]:
    totals = result.totals
    rows = [
        ("Total charges", format_currency(totals.amount)),
        ("Applied to deductible", format_currency(totals.deductible)),
        ("Copays", format_currency(totals.copay)),
        ("Coinsurance", format_currency(totals.coinsurance)),
        ("Not covered", format_currency(totals.not_covered)),
        ("Insurance pays", format_currency(totals.insurer_paid)),
        ("Patient responsibility", format_currency(totals.patient_responsibility)),
    ]
    if result.updated_benefits.is_hdhp:
        rows.append(("HSA eligible", format_currency(totals.hsa_eligible)))
    return rows


def _title(patient_name: str | None) -> str:
    return f"Visit estimate - {patient_name}" if patient_name else "Visit estimate"


def build_estimate_docx(
    result: CalculationResult,
    persona: str = "patient",
    language: str = "en",
    patient_name: str | None = None,
) -> bytes:
    """Return DOCX bytes with the narrative, per-charge allocations, totals, waterfall and split chart."""
    narrative = explain_estimate(result, persona=persona, language=language)

    doc = Document()
    doc.add_heading(_title(patient_name), level=1)

    doc.add_paragraph(_PERSONA_HEADERS.get(persona, "Summary:"), style="Intense Quote")
    for bullet in narrative.splitlines():
        doc.add_paragraph(bullet.removeprefix("- "), style="List Bullet")

    chart_png = _render_split_chart(result)
    if chart_png:
        doc.add_paragraph("Who pays what:")
        doc.add_picture(io.BytesIO(chart_png), width=Inches(4))

    doc.add_heading("Charges", level=2)
    table = doc.add_table(rows=1, cols=len(_ALLOCATION_HEADERS))
    for cell, header in zip(table.rows[0].cells, _ALLOCATION_HEADERS):
        cell.text = header
    for row in _allocation_rows(result):
        for cell, value in zip(table.add_row().cells, row):
            cell.text = value

    doc.add_heading("Totals", level=2)
    totals_table = doc.add_table(rows=0, cols=2)
    for label, value in _totals_rows(result):
        cells = totals_table.add_row().cells
        cells[0].text = label
        cells[1].text = value

    if result.deductible_waterfall:
        doc.add_heading("Deductible flow", level=2)
        for step in result.deductible_waterfall:
            doc.add_paragraph(
                f"{step.label}: {format_currency(step.deductible_applied)} of "
                f"{format_currency(step.charges_in_category)} applied, "
                f"{format_currency(step.remaining_after)} deductible remaining",
                style="List Number",
            )

    if result.summary:
        doc.add_heading("Notes", level=2)
        for note in result.summary:
            doc.add_paragraph(note, style="List Bullet")

    doc.add_paragraph("Estimate only. Final patient responsibility is set by the payer's adjudication.")

    bio = io.BytesIO()
    doc.save(bio)
    return bio.getvalue()


def _normalize_pdf_output(out: object) -> bytes:
    """Normalize FPDF output to bytes; older releases return str, fpdf2 returns bytearray."""
    if isinstance(out, bytes):
        return out
    if isinstance(out, bytearray):
        return bytes(out)
    return str(out).encode("latin-1")


def _safe_pdf_text(s: str) -> str:
    """Return a latin-1 string the core PDF fonts can render."""
    s = s.replace("—", "-").replace("–", "-")
    s = s.replace("‘", "'").replace("’", "'")
    s = s.replace("“", '"').replace("”", '"')
    s = unicodedata.normalize("NFC", s)
    # FPDF cannot wrap very long unbroken tokens
    s = re.sub(r"(\S{40})", r"\1 ", s)
    return s.encode("latin-1", errors="ignore").decode("latin-1")


def build_estimate_pdf(
    result: CalculationResult,
    persona: str = "patient",
    language: str = "en",
    patient_name: str | None = None,
) -> bytes:
    """Generate a PDF estimate mirroring the DOCX export."""
    narrative = explain_estimate(result, persona=persona, language=language)

    pdf = FPDF()
    pdf.set_auto_page_break(auto=True, margin=12)
    pdf.add_page()

    def write(text: str, size: int = 10, style: str = "", height: float = 6) -> None:
        pdf.set_font("Helvetica", style=style, size=size)
        pdf.multi_cell(0, height, _safe_pdf_text(text), new_x="LMARGIN", new_y="NEXT")

    write(_title(patient_name), size=14, style="B", height=8)
    pdf.ln(2)
    write(_PERSONA_HEADERS.get(persona, "Summary:"), size=11, style="B")
    for bullet in narrative.splitlines():
        write(bullet)

    chart_png = _render_split_chart(result)
    if chart_png:
        pdf.ln(2)
        pdf.image(io.BytesIO(chart_png), w=100)

    pdf.ln(4)
    write("Charges", size=11, style="B")
    for row in _allocation_rows(result):
        charge_id, code, fee, deductible, copay, coinsurance, not_covered, insurer, patient = row
        write(
            f"{charge_id} ({code}) fee {fee}: deductible {deductible}, copay {copay}, "
            f"coinsurance {coinsurance}, not covered {not_covered}, insurance {insurer}, patient {patient}",
            size=9,
            height=5,
        )

    pdf.ln(4)
    write("Totals", size=11, style="B")
    for label, value in _totals_rows(result):
        write(f"{label}: {value}")

    if result.deductible_waterfall:
        pdf.ln(4)
        write("Deductible flow", size=11, style="B")
        for position, step in enumerate(result.deductible_waterfall, start=1):
            write(
                f"{position}. {step.label}: {format_currency(step.deductible_applied)} of "
                f"{format_currency(step.charges_in_category)} applied, "
                f"{format_currency(step.remaining_after)} deductible remaining",
                size=9,
                height=5,
            )

    if result.summary:
        pdf.ln(4)
        write("Notes", size=11, style="B")
        for note in result.summary:
            write(f"- {note}", size=9, height=5)

    pdf.ln(4)
    write("Estimate only. Final patient responsibility is set by the payer's adjudication.", size=8, height=4)

    return _normalize_pdf_output(pdf.output())
