"""Product certificate PDFs and QR links"""

from .certificate_builder import (
    CertificateBuilder,
    CertificateError,
    OwnershipDetails,
    generate_certificate,
    append_journey_page,
    render_journey_page,
    page_count,
    extract_text,
    document_info,
    journey_rows,
)
from .qrcode_gen import generate_certificate_qr, generate_qr_png_bytes

__all__ = [
    'CertificateBuilder',
    'CertificateError',
    'OwnershipDetails',
    'generate_certificate',
    'append_journey_page',
    'render_journey_page',
    'page_count',
    'extract_text',
    'document_info',
    'journey_rows',
    'generate_certificate_qr',
    'generate_qr_png_bytes',
]
