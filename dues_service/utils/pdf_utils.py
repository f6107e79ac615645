from pathlib import Path
from textwrap import wrap
from typing import Iterable

from reportlab.lib.pagesizes import LETTER
from reportlab.pdfgen import canvas

from ..config import settings

MARGIN_X = 72  # 1 inch
MARGIN_Y = 72
MAX_CHARS_PER_LINE = 90
AMOUNT_COLUMN = 60


def _output_path(filename: str) -> Path:
    base = Path(settings.pdf_output_dir)
    base.mkdir(parents=True, exist_ok=True)
    return base / filename


def _write_pdf(filename: str, lines: Iterable[str]) -> str:
    path = _output_path(filename)
    pdf_canvas = canvas.Canvas(str(path), pagesize=LETTER)
    width, height = LETTER
    text_stream = pdf_canvas.beginText(MARGIN_X, height - MARGIN_Y)
    text_stream.setFont("Courier", 11)

    for line in lines:
        if line is None:
            line = ""
        normalized = str(line)
        if normalized.strip() == "":
            text_stream.textLine("")
            continue
        wrapped_lines = wrap(normalized, MAX_CHARS_PER_LINE) or [normalized]
        for chunk in wrapped_lines:
            text_stream.textLine(chunk)

    pdf_canvas.drawText(text_stream)
    pdf_canvas.showPage()
    pdf_canvas.save()
    return str(path)


def _amount_row(label: str, amount) -> str:
    return f"{label[:AMOUNT_COLUMN - 2]:<{AMOUNT_COLUMN}}${amount:>10}"


def generate_dues_invoice_pdf(invoice) -> str:
    issued = invoice.issued_at.strftime("%Y-%m-%d %H:%M") if invoice.issued_at else "Pending"
    lines = [
        "Resident Dues Receipt",
        "",
        f"Invoice #: {invoice.invoice_number}",
        f"Issued: {issued}",
        f"Billing Period: {invoice.period}",
        f"Resident: {invoice.resident_name} <{invoice.resident_email}>",
        "",
    ]
    lines.extend(_amount_row(item.label, item.amount) for item in invoice.line_items)
    lines.extend(
        [
            "",
            _amount_row("Subtotal", invoice.subtotal),
            _amount_row("Penalty", invoice.penalty_amount),
            _amount_row("Total Paid", invoice.total),
            "",
        ]
    )
    if invoice.payment_method:
        reference = f" ({invoice.payment_reference})" if invoice.payment_reference else ""
        lines.append(f"Payment method: {invoice.payment_method}{reference}")
    if invoice.configuration_version is not None:
        lines.append(f"Dues configuration version: {invoice.configuration_version}")
    return _write_pdf(f"{invoice.invoice_number}.pdf", lines)
