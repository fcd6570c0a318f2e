"""Client invoices built from completed walks.

:func:`compile_invoice` produces an immutable :class:`InvoiceDocument` with its
lines already split into pages; :func:`render_invoice_pdf` draws that document
with reportlab.
"""

from __future__ import annotations

import datetime as dt
import io
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import BinaryIO, Iterable, Mapping

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from .dates import format_display_date, parse_date_key
from .errors import InvalidDate
from .records import COMPLETED, OVERNIGHT, ZERO, Client, Walk, format_currency, parse_amount

logger = logging.getLogger(__name__)

PAGE_WIDTH, PAGE_HEIGHT = letter
MARGIN = 54
ROW_HEIGHT = 20
FIRST_PAGE_TABLE_TOP = 500
CONTINUATION_TABLE_TOP = PAGE_HEIGHT - MARGIN - 40
SUMMARY_HEIGHT = 170

FIRST_PAGE_ROWS = int((FIRST_PAGE_TABLE_TOP - ROW_HEIGHT - MARGIN) // ROW_HEIGHT)
CONTINUATION_ROWS = int((CONTINUATION_TABLE_TOP - ROW_HEIGHT - MARGIN) // ROW_HEIGHT)

TABLE_LEFT = 58
TABLE_WIDTH = PAGE_WIDTH - 2 * TABLE_LEFT
AMOUNT_RIGHT = TABLE_LEFT + TABLE_WIDTH - 8
COLUMNS = (("Date", 64), ("Service", 150), ("Pet", 262), ("Duration", 340), ("Status", 420))

BRAND_COLOR = colors.HexColor("#bd7f8a")
HEADER_FILL = colors.HexColor("#f0f0f0")
STRIPE_FILL = colors.HexColor("#fafafa")

DEFAULT_DUE_DAYS = 15
SERVICE_NAME = "Dog Walking"


@dataclass(frozen=True)
class BusinessDetails:
    name: str = "Dog Walking Co."
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    phone: str = ""
    email: str = ""
    payment_methods: tuple[str, ...] = ("Cash", "Check", "Venmo", "Zelle")

    @property
    def locality(self) -> str:
        return f"{self.city}, {self.state} {self.zip_code}".strip(", ")


@dataclass(frozen=True)
class InvoiceLine:
    walk_id: int
    date: str
    service: str
    pet: str
    duration: str
    status: str
    amount: Decimal


@dataclass(frozen=True)
class InvoicePage:
    number: int
    lines: tuple[InvoiceLine, ...]


@dataclass(frozen=True)
class InvoiceDocument:
    invoice_number: str
    issue_date: dt.date
    due_date: dt.date
    business: BusinessDetails
    client_id: int
    bill_to: tuple[str, ...]
    pages: tuple[InvoicePage, ...]
    total: Decimal
    balance: Decimal
    notes: tuple[str, ...] = field(default_factory=tuple)

    @property
    def lines(self) -> list[InvoiceLine]:
        return [line for page in self.pages for line in page.lines]

    @property
    def filename(self) -> str:
        return f"invoice_{self.client_id}_{self.invoice_number}.pdf"

    def to_dict(self) -> dict:
        return {
            "invoice_number": self.invoice_number,
            "issue_date": self.issue_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "client_id": self.client_id,
            "bill_to": list(self.bill_to),
            "page_count": len(self.pages),
            "lines": [
                {
                    "walk_id": line.walk_id,
                    "date": line.date,
                    "service": line.service,
                    "pet": line.pet,
                    "duration": line.duration,
                    "status": line.status,
                    "amount": str(line.amount),
                }
                for line in self.lines
            ],
            "total": format_currency(self.total),
            "balance": format_currency(self.balance),
        }


def _walk_day(walk: Walk) -> dt.date | None:
    try:
        return parse_date_key(walk.date)
    except InvalidDate:
        logger.warning("Walk %s has an unreadable date %r", walk.id, walk.date)
        return None


def _duration_label(duration: int | str | None) -> str:
    if duration == OVERNIGHT:
        return "Overnight"
    return f"{duration or 0} min"


def paginate(lines: list[InvoiceLine]) -> tuple[InvoicePage, ...]:
    """Split lines into pages; the first page has room for fewer rows."""

    pages: list[InvoicePage] = []
    remaining = lines
    capacity = FIRST_PAGE_ROWS
    while True:
        chunk, remaining = remaining[:capacity], remaining[capacity:]
        pages.append(InvoicePage(number=len(pages) + 1, lines=tuple(chunk)))
        if not remaining:
            return tuple(pages)
        capacity = CONTINUATION_ROWS


def compile_invoice(
    client: Client,
    walks: Iterable[Walk],
    business: BusinessDetails | None = None,
    *,
    issue_date: dt.date | None = None,
    invoice_number: str | None = None,
    pet_names: Mapping[int, str] | None = None,
    due_days: int = DEFAULT_DUE_DAYS,
) -> InvoiceDocument:
    """Build the invoice for ``client`` from its completed walks."""

    business = business or BusinessDetails()
    issue_date = issue_date or dt.date.today()
    pet_names = pet_names or {}

    billed = [
        (_walk_day(walk), walk)
        for walk in walks
        if walk.client_id == client.id and walk.status == COMPLETED
    ]
    # Walks with unreadable dates go last.
    billed.sort(key=lambda item: (item[0] is None, item[0] or dt.date.min, item[1].id))

    lines: list[InvoiceLine] = []
    for day, walk in billed:
        amount = parse_amount(walk.billing_amount)
        if amount is None:
            logger.warning("Walk %s has no usable billing amount; billing 0.00", walk.id)
            amount = ZERO
        lines.append(
            InvoiceLine(
                walk_id=walk.id,
                date=format_display_date(day) if day else str(walk.date),
                service=SERVICE_NAME,
                pet=pet_names.get(walk.pet_id) or f"Pet #{walk.pet_id}",
                duration=_duration_label(walk.duration),
                status=walk.status,
                amount=amount,
            )
        )

    total = sum((line.amount for line in lines), ZERO)
    bill_to = (
        client.name or f"Client #{client.id}",
        client.address or "No address provided",
        client.email or "No email provided",
        client.phone or "No phone provided",
    )
    notes = (
        f"Payment Due: Within {due_days} days",
        "Payment Methods: " + ", ".join(business.payment_methods),
        f"Make checks payable to: {business.name}",
        f"Current balance: {format_currency(client.balance)}",
    )
    return InvoiceDocument(
        invoice_number=invoice_number or f"INV-{issue_date:%Y%m%d}-{client.id:04d}",
        issue_date=issue_date,
        due_date=issue_date + dt.timedelta(days=due_days),
        business=business,
        client_id=client.id,
        bill_to=bill_to,
        pages=paginate(lines),
        total=total,
        balance=client.balance,
        notes=notes,
    )


# ----------------------------------------------------------------------
# PDF rendering
# ----------------------------------------------------------------------
def _draw_lines(pdf: canvas.Canvas, lines: Iterable[str], x: float, y: float, leading: float = 13) -> float:
    for text in lines:
        pdf.drawString(x, y, text)
        y -= leading
    return y


def _draw_header(pdf: canvas.Canvas, document: InvoiceDocument) -> None:
    business = document.business
    top = PAGE_HEIGHT - MARGIN

    pdf.setFont("Helvetica-Bold", 20)
    pdf.setFillColor(BRAND_COLOR)
    pdf.drawCentredString(PAGE_WIDTH / 2, top, business.name)

    pdf.setFillColor(colors.black)
    pdf.setFont("Helvetica", 10)
    _draw_lines(
        pdf,
        [
            business.name,
            business.address,
            business.locality,
            f"Phone: {business.phone}",
            f"Email: {business.email}",
        ],
        TABLE_LEFT,
        top - 40,
    )

    pdf.setFont("Helvetica-Bold", 16)
    pdf.drawRightString(AMOUNT_RIGHT, top - 40, f"INVOICE #{document.invoice_number}")
    pdf.setFont("Helvetica", 10)
    pdf.drawRightString(AMOUNT_RIGHT, top - 60, f"Invoice Date: {format_display_date(document.issue_date)}")
    pdf.drawRightString(AMOUNT_RIGHT, top - 73, f"Due Date: {format_display_date(document.due_date)}")

    pdf.setFont("Helvetica-Bold", 12)
    pdf.drawString(TABLE_LEFT, top - 130, "Bill To:")
    pdf.setFont("Helvetica", 10)
    _draw_lines(pdf, document.bill_to, TABLE_LEFT, top - 146)


def _draw_table_header(pdf: canvas.Canvas, y: float) -> float:
    pdf.setFillColor(HEADER_FILL)
    pdf.rect(TABLE_LEFT, y - 6, TABLE_WIDTH, ROW_HEIGHT, stroke=0, fill=1)
    pdf.setFillColor(colors.black)
    pdf.setFont("Helvetica-Bold", 10)
    for title, x in COLUMNS:
        pdf.drawString(x, y, title)
    pdf.drawRightString(AMOUNT_RIGHT, y, "Amount")
    pdf.setFont("Helvetica", 10)
    return y - ROW_HEIGHT


def _draw_row(pdf: canvas.Canvas, line: InvoiceLine, y: float, striped: bool) -> None:
    if striped:
        pdf.setFillColor(STRIPE_FILL)
        pdf.rect(TABLE_LEFT, y - 6, TABLE_WIDTH, ROW_HEIGHT, stroke=0, fill=1)
        pdf.setFillColor(colors.black)
    values = (line.date, line.service, line.pet, line.duration, line.status)
    for (_, x), value in zip(COLUMNS, values):
        pdf.drawString(x, y, value)
    pdf.drawRightString(AMOUNT_RIGHT, y, format_currency(line.amount))


def _draw_page_number(pdf: canvas.Canvas) -> None:
    pdf.setFont("Helvetica", 9)
    pdf.setFillColor(colors.grey)
    pdf.drawRightString(PAGE_WIDTH - MARGIN, MARGIN / 2, f"Page {pdf.getPageNumber()}")
    pdf.setFillColor(colors.black)


def _draw_summary(pdf: canvas.Canvas, document: InvoiceDocument, y: float) -> None:
    y -= ROW_HEIGHT / 2
    pdf.setFillColor(HEADER_FILL)
    pdf.rect(AMOUNT_RIGHT - 200, y - 6, 208, ROW_HEIGHT, stroke=0, fill=1)
    pdf.setFillColor(colors.black)
    pdf.setFont("Helvetica-Bold", 10)
    pdf.drawString(AMOUNT_RIGHT - 190, y, "Total Due:")
    pdf.drawRightString(AMOUNT_RIGHT, y, format_currency(document.total))

    y -= 40
    pdf.setFont("Helvetica-Bold", 11)
    pdf.drawString(TABLE_LEFT, y, "Payment Information")
    pdf.setFont("Helvetica", 10)
    y = _draw_lines(pdf, document.notes, TABLE_LEFT, y - 16)

    pdf.drawCentredString(PAGE_WIDTH / 2, y - 24, "Thank you for your business!")


def render_invoice_pdf(document: InvoiceDocument, target: str | Path | BinaryIO) -> None:
    """Draw ``document`` as a PDF into a file path or binary buffer."""

    if isinstance(target, Path):
        target = str(target)
    pdf = canvas.Canvas(target, pagesize=letter)
    pdf.setTitle(f"Invoice {document.invoice_number}")

    y = FIRST_PAGE_TABLE_TOP
    for page in document.pages:
        if page.number == 1:
            _draw_header(pdf, document)
            y = FIRST_PAGE_TABLE_TOP
        else:
            _draw_page_number(pdf)
            pdf.showPage()
            pdf.setFont("Helvetica-Bold", 12)
            pdf.drawString(TABLE_LEFT, PAGE_HEIGHT - MARGIN, f"Invoice #{document.invoice_number} (continued)")
            y = CONTINUATION_TABLE_TOP
        y = _draw_table_header(pdf, y)
        for index, line in enumerate(page.lines):
            _draw_row(pdf, line, y, striped=index % 2 == 0)
            y -= ROW_HEIGHT

    if y - SUMMARY_HEIGHT < MARGIN:
        _draw_page_number(pdf)
        pdf.showPage()
        y = PAGE_HEIGHT - MARGIN
    _draw_summary(pdf, document, y)
    _draw_page_number(pdf)
    pdf.showPage()
    pdf.save()
    logger.info("Rendered invoice %s (%d pages)", document.invoice_number, pdf.getPageNumber() - 1)


def invoice_pdf_bytes(document: InvoiceDocument) -> bytes:
    buffer = io.BytesIO()
    render_invoice_pdf(document, buffer)
    return buffer.getvalue()
