"""
QR Code Generator for Product Certificates

Generates QR codes that link to a product's current certificate PDF on the
IPFS gateway, so buyers can scan a printed label to read its history.
"""

import io
import base64
from pathlib import Path
from typing import Optional

import qrcode


def _build_qr(url: str, size: int = 10, border: int = 2) -> qrcode.QRCode:
    qr = qrcode.QRCode(
        version=1,  # Auto-adjust size
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=size,
        border=border,
    )
    qr.add_data(url)
    qr.make(fit=True)
    return qr


def generate_qr_png_bytes(url: str, size: int = 10, border: int = 2) -> bytes:
    """PNG bytes of a QR code encoding ``url``."""
    img = _build_qr(url, size, border).make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def generate_certificate_qr(
    certificate_url: str,
    output_file: Optional[Path] = None,
    size: int = 10,
    border: int = 2
) -> tuple[str, Optional[Path]]:
    """
    Generate QR code for a certificate link.

    Args:
        certificate_url: Gateway URL of the certificate PDF
        output_file: Optional path to save QR code image
        size: QR code box size (pixels per box)
        border: Border size (boxes)

    Returns:
        Tuple of (base64_encoded_image, output_file_path)
    """
    if not certificate_url:
        raise ValueError("Certificate URL is required")

    png = generate_qr_png_bytes(certificate_url, size, border)
    base64_image = base64.b64encode(png).decode()

    saved_path = None
    if output_file:
        output_file = Path(output_file)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.write_bytes(png)
        saved_path = output_file

    return base64_image, saved_path
