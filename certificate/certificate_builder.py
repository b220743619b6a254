"""
Product Certificate (PDF) Builder

The manufacturer uploads a base PDF when creating a product. The first
certificate version is that PDF plus a "Product Details" page; every purchase
appends a "Product Journey & Ownership Update" page and pins the result as a
new version. Each version records the CID it supersedes in its document info
(``/PreviousVersion``).

Appending is not idempotent: two calls with the same input add two pages.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from io import BytesIO
from typing import Any, Dict, List, Optional, Sequence

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError
from reportlab.lib.colors import Color
from reportlab.pdfgen import canvas

from ipfs.pinning import PinningError, PinResult, PinStatus, extract_cid, ipfs_uri

logger = logging.getLogger(__name__)

PAGE_SIZE = (600, 800)
LEFT_MARGIN = 50
FONT = "Helvetica"

DETAILS_TITLE = "Product Details"
JOURNEY_TITLE = "Product Journey & Ownership Update"


class CertificateError(ValueError):
    """Certificate PDF could not be read or written."""


@dataclass
class OwnershipDetails:
    """Content of one journey/ownership page."""
    token_id: int
    manufacturer: str
    buyer: str
    delivery: str
    journey: List[Any] = field(default_factory=list)


def _step_pair(step: Any) -> tuple:
    if isinstance(step, dict):
        return step["step"], step["location"]
    return step.step, step.location


def _render(draw) -> bytes:
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=PAGE_SIZE)
    draw(pdf)
    pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def render_details_page(fields: Dict[str, Any]) -> bytes:
    """Single-page PDF listing ``key: value`` lines."""
    def draw(pdf):
        y = 750
        pdf.setFillColor(Color(0, 0.53, 0.71))
        pdf.setFont(FONT, 18)
        pdf.drawString(LEFT_MARGIN, y, DETAILS_TITLE)
        y -= 40
        pdf.setFillColor(Color(0, 0, 0))
        pdf.setFont(FONT, 12)
        for key, value in fields.items():
            pdf.drawString(LEFT_MARGIN, y, f"{key}: {value}")
            y -= 20

    return _render(draw)


def render_journey_page(details: OwnershipDetails, updated_at: Optional[datetime] = None) -> bytes:
    """Single-page PDF recording an ownership transfer and its journey."""
    updated_at = updated_at or datetime.now(timezone.utc)

    def draw(pdf):
        y = 760
        pdf.setFillColor(Color(0, 0.5, 0.2))
        pdf.setFont(FONT, 16)
        pdf.drawString(LEFT_MARGIN, y, JOURNEY_TITLE)
        y -= 30

        pdf.setFillColor(Color(0, 0, 0))
        pdf.setFont(FONT, 12)
        for line in (
            f"Token ID: {details.token_id}",
            f"Manufacturer: {details.manufacturer}",
            f"Buyer: {details.buyer}",
            f"Delivery Location: {details.delivery}",
        ):
            pdf.drawString(LEFT_MARGIN, y, line)
            y -= 20
        y -= 10

        pdf.setFillColor(Color(0, 0.3, 0.7))
        pdf.setFont(FONT, 14)
        pdf.drawString(LEFT_MARGIN, y, "Tracking Journey:")
        y -= 25

        pdf.setFillColor(Color(0, 0, 0))
        pdf.setFont(FONT, 11)
        for index, step in enumerate(details.journey, start=1):
            name, location = _step_pair(step)
            pdf.drawString(LEFT_MARGIN + 10, y, f"{index}. {name} — {location}")
            y -= 20

        pdf.setFont(FONT, 10)
        pdf.drawString(LEFT_MARGIN, y - 10, f"Updated: {updated_at.strftime('%Y-%m-%d %H:%M:%S %Z')}")

    return _render(draw)


def _load(pdf_bytes: bytes) -> PdfReader:
    if not pdf_bytes:
        raise CertificateError("Certificate PDF is empty")
    try:
        reader = PdfReader(BytesIO(pdf_bytes))
        len(reader.pages)
    except (PyPdfError, ValueError, KeyError, TypeError, OSError) as e:
        raise CertificateError(f"Failed to parse certificate PDF: {e}") from e
    return reader


def _append_page(base: bytes, page: bytes, previous_cid: Optional[str] = None) -> bytes:
    reader = _load(base)
    writer = PdfWriter()
    for existing in reader.pages:
        writer.add_page(existing)
    writer.add_page(PdfReader(BytesIO(page)).pages[0])

    info = {}
    if reader.metadata:
        info.update({key: str(value) for key, value in reader.metadata.items()})
    if previous_cid:
        info["/PreviousVersion"] = ipfs_uri(previous_cid)
    info["/ModDate"] = datetime.now(timezone.utc).strftime("D:%Y%m%d%H%M%SZ")
    writer.add_metadata(info)

    output = BytesIO()
    writer.write(output)
    return output.getvalue()


def generate_certificate(base_document: bytes, fields: Dict[str, Any]) -> bytes:
    """
    Append a "Product Details" page to the manufacturer's PDF.

    Args:
        base_document: PDF bytes supplied by the manufacturer
        fields: Category and category-specific attributes

    Returns:
        New PDF bytes with exactly one more page
    """
    return _append_page(base_document, render_details_page(fields))


def append_journey_page(
    existing: bytes,
    details: OwnershipDetails,
    previous_cid: Optional[str] = None,
    updated_at: Optional[datetime] = None
) -> bytes:
    """Append one ownership/journey page to an existing certificate."""
    return _append_page(existing, render_journey_page(details, updated_at), previous_cid)


def page_count(pdf_bytes: bytes) -> int:
    return len(_load(pdf_bytes).pages)


def extract_text(pdf_bytes: bytes) -> str:
    return "\n".join(page.extract_text() or "" for page in _load(pdf_bytes).pages)


def document_info(pdf_bytes: bytes) -> Dict[str, str]:
    metadata = _load(pdf_bytes).metadata or {}
    return {key: str(value) for key, value in metadata.items()}


class CertificateBuilder:
    """Builds certificate versions and pins them."""

    def __init__(self, pinning_client):
        self.pinning = pinning_client

    def create(self, base_document: bytes, fields: Dict[str, Any]) -> PinResult:
        """Generate and pin the first certificate version."""
        pdf_bytes = generate_certificate(base_document, fields)
        filename = f"Product_{int(time.time() * 1000)}.pdf"
        return self.pinning.upload(pdf_bytes, filename, "application/pdf").unwrap()

    def append(self, existing_url: str, details: OwnershipDetails) -> PinResult:
        """
        Fetch the current certificate, append a journey page and pin it.

        Args:
            existing_url: Gateway URL or ipfs:// URI of the current certificate
            details: Ownership transfer and journey to record

        Returns:
            PinResult of the new certificate version

        Raises:
            PinningError: If fetching or uploading fails
            CertificateError: If the existing PDF cannot be parsed
        """
        started = time.perf_counter()
        result = self.pinning.fetch_bytes(existing_url)
        if not result.ok:
            raise PinningError(
                f"Failed to fetch existing PDF: {result.error}",
                transient=result.status == PinStatus.TRANSIENT_FAILURE
            )

        try:
            previous_cid = extract_cid(existing_url)
        except ValueError:
            previous_cid = None

        pdf_bytes = append_journey_page(result.data, details, previous_cid)
        filename = f"Updated_{int(time.time() * 1000)}.pdf"
        upload = self.pinning.upload(pdf_bytes, filename, "application/pdf").unwrap()

        elapsed = (time.perf_counter() - started) * 1000
        logger.info(f"[PERF] Certificate append for token {details.token_id}: {elapsed:.2f} ms (new CID: {upload.cid})")
        return upload


def journey_rows(pdf_bytes: bytes) -> Sequence[str]:
    """Numbered journey rows of the last page, in order."""
    reader = _load(pdf_bytes)
    text = reader.pages[-1].extract_text() or ""
    rows = []
    for line in text.splitlines():
        line = line.strip()
        head, _, rest = line.partition(". ")
        if head.isdigit() and rest:
            rows.append(line)
    return rows
