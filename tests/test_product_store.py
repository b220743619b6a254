"""
Tests for the keyed product store
"""

import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import CUSTOMER, MANUFACTURER, OTHER_CUSTOMER
from marketplace.product_store import (
    DOCUMENTATION_CURRENT,
    DOCUMENTATION_PENDING,
    Product,
    ProductStore,
)


def widget(**overrides):
    values = dict(
        token_id=1,
        name="Widget",
        location="Lyon",
        category="Tools",
        certificate_url="https://gateway.test/ipfs/QmCert1",
        metadata_uri="ipfs://QmMeta1",
        owner=MANUFACTURER,
        manufacturer=MANUFACTURER,
        available=True,
    )
    values.update(overrides)
    return Product(**values)


def test_upsert_merges_without_clearing_fields(store):
    store.upsert(widget())

    merged = store.upsert(Product(token_id=1, available=False, name=None))

    assert merged.name == "Widget"
    assert merged.available is False
    assert len(store) == 1


def test_reload_cannot_restore_superseded_documents(store):
    store.upsert(widget())
    store.update_documents(1, certificate_url="https://gateway.test/ipfs/QmCert2", metadata_uri="ipfs://QmMeta2")

    # a slow reload that still saw the old documents
    store.merge([widget(certificate_url="ipfs://QmCert1", metadata_uri="https://gateway.test/ipfs/QmMeta1")])

    product = store.get(1)
    assert product.certificate_url == "https://gateway.test/ipfs/QmCert2"
    assert product.metadata_uri == "ipfs://QmMeta2"
    assert store.is_superseded(1, "QmCert1")
    assert not store.is_superseded(1, "QmCert2")


def test_mark_purchased_once(store):
    store.upsert(widget())

    assert store.mark_purchased(1, CUSTOMER) is True
    assert store.mark_purchased(1, CUSTOMER) is False

    product = store.get(1)
    assert product.owner == CUSTOMER
    assert product.seller == MANUFACTURER
    assert product.available is False


def test_views(store):
    store.merge([
        widget(token_id=1),
        widget(token_id=2, name="Seeds", category="Seeds"),
        widget(token_id=3, owner=CUSTOMER, available=False),
    ])

    assert [p.token_id for p in store.available_for(CUSTOMER)] == [1, 2]
    assert store.available_for(MANUFACTURER) == []
    assert [p.token_id for p in store.owned_by(CUSTOMER)] == [3]
    assert store.owned_by(OTHER_CUSTOMER) == []
    assert [p.token_id for p in store.listed_by(MANUFACTURER)] == [1, 2, 3]


def test_documentation_status_is_local(store):
    store.upsert(widget())
    store.mark_documentation_pending(1)

    store.upsert(widget(documentation_status=DOCUMENTATION_CURRENT))

    assert [p.token_id for p in store.pending_documentation()] == [1]
    store.update_documents(1, certificate_url="https://gateway.test/ipfs/QmCert2")
    assert store.get(1).documentation_status == DOCUMENTATION_CURRENT


def test_unknown_product(store):
    with pytest.raises(KeyError):
        store.mark_unavailable(99)
    with pytest.raises(KeyError):
        store.mark_documentation_pending(99)


def test_tracking_starts_at_processing(store):
    state = store.start_tracking(1, "Paris")
    assert (state.step, state.location, state.progress) == ("Purchase Confirmed", "Processing", 10)

    store.update_tracking(1, "Delivered", "Paris", 100)

    assert store.tracking(1).to_dict()["progress"] == 100
    assert store.tracking(1).delivery_location == "Paris"
    assert store.get(1) is None


def test_to_dict_keys():
    data = widget().to_dict()
    assert data["tokenId"] == 1
    assert data["certificateUrl"].endswith("QmCert1")
    assert data["documentationStatus"] == DOCUMENTATION_CURRENT
    assert DOCUMENTATION_PENDING != DOCUMENTATION_CURRENT
