"""
Tests for the certificate PDF builder
"""

import base64
import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import make_pdf
from certificate.certificate_builder import (
    CertificateBuilder,
    CertificateError,
    OwnershipDetails,
    append_journey_page,
    document_info,
    extract_text,
    generate_certificate,
    journey_rows,
    page_count,
)
from certificate.qrcode_gen import generate_certificate_qr, generate_qr_png_bytes
from ipfs.pinning import PinStatus, PinningError
from journey.simulator import build_journey


def paris_details():
    return OwnershipDetails(
        token_id=1,
        manufacturer="0x" + "11" * 20,
        buyer="0x" + "22" * 20,
        delivery="Paris",
        journey=build_journey("Paris"),
    )


def test_generate_adds_details_page():
    base = make_pdf(pages=2)

    certificate = generate_certificate(base, {"category": "Tools", "toolType": "Wrench"})

    assert page_count(certificate) == 3
    text = extract_text(certificate)
    assert "Product Details" in text
    assert "toolType: Wrench" in text


def test_append_records_journey_and_previous_version():
    base = make_pdf()

    updated = append_journey_page(base, paris_details(), previous_cid="QmCert1")

    assert page_count(updated) == 2
    rows = journey_rows(updated)
    assert len(rows) == 5
    assert rows[0].startswith("1. Manufactured")
    assert rows[-1].startswith("5. Delivered")
    assert rows[-1].endswith("Paris")
    assert document_info(updated)["/PreviousVersion"] == "ipfs://QmCert1"


def test_append_is_not_idempotent():
    base = make_pdf()

    once = append_journey_page(base, paris_details())
    twice = append_journey_page(once, paris_details())

    assert page_count(twice) == 3


def test_unreadable_pdf():
    with pytest.raises(CertificateError):
        generate_certificate(b"not a pdf", {})
    with pytest.raises(CertificateError):
        page_count(b"")


def test_builder_append_pins_new_version(pinning):
    first = pinning.upload(make_pdf(), "base.pdf", "application/pdf")

    pinned = CertificateBuilder(pinning).append(first.url, paris_details())

    assert pinned.cid != first.cid
    assert page_count(pinning.blobs[pinned.cid]) == 2
    assert document_info(pinning.blobs[pinned.cid])["/PreviousVersion"] == f"ipfs://{first.cid}"


def test_builder_append_fetch_failure(pinning):
    pinning.fetch_failures.append(PinStatus.TRANSIENT_FAILURE)

    with pytest.raises(PinningError) as exc:
        CertificateBuilder(pinning).append("ipfs://QmCert1", paris_details())
    assert exc.value.transient


def test_certificate_qr(tmp_path):
    png = generate_qr_png_bytes("https://gateway.test/ipfs/QmCert1")
    assert png.startswith(b"\x89PNG")

    qr_base64, saved = generate_certificate_qr("https://gateway.test/ipfs/QmCert1", tmp_path / "qr.png")
    assert base64.b64decode(qr_base64) == saved.read_bytes()

    with pytest.raises(ValueError):
        generate_certificate_qr("")
