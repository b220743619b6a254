"""
End-to-end workflow: manufacturer lists a Widget made in Lyon, a customer
buys it for delivery to Paris and the delivery journey is walked on chain.
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import CUSTOMER, MANUFACTURER
from certificate.certificate_builder import journey_rows
from ipfs.pinning import extract_cid
from journey.simulator import JourneySimulator, JourneyStatus
from marketplace.catalog import ProductCatalog
from metadata.metadata_builder import find_attribute


def test_widget_from_lyon_to_paris(listed_product, catalog, customer, orchestrator, pinning, store, chain):
    print("\n📦 Manufacturer lists Widget (Lyon)")
    assert find_attribute(listed_product.metadata, "Manufacturing Location") == "Lyon"
    assert listed_product.token_id in customer.get_available_products()

    customer_catalog = ProductCatalog(customer, pinning, store)
    before = customer_catalog.load_customer_products(CUSTOMER)
    assert [p.token_id for p in before["available"]] == [listed_product.token_id]
    print(f"✅ Token {listed_product.token_id} available to customer")

    print("🛒 Customer buys for delivery to Paris")
    outcome = orchestrator.purchase(listed_product.token_id, "Paris", CUSTOMER)

    assert listed_product.token_id not in customer.get_available_products()
    assert listed_product.token_id in customer.get_products_by_owner(CUSTOMER)

    after = customer_catalog.load_customer_products(CUSTOMER)
    assert after["available"] == []
    assert [p.token_id for p in after["owned"]] == [listed_product.token_id]
    owned = after["owned"][0]
    assert owned.certificate_url == outcome.certificate_url
    assert owned.manufacturer == MANUFACTURER

    rows = journey_rows(pinning.blobs[extract_cid(outcome.certificate_url)])
    assert len(rows) == 5
    assert rows[-1].startswith("5. Delivered")
    assert rows[-1].endswith("Paris")
    print(f"✅ Certificate updated: {outcome.certificate_url}")

    print("🚚 Delivery journey")
    simulator = JourneySimulator(customer, interval_seconds=0)
    journey = asyncio.run(simulator.run(listed_product.token_id, "Paris", customer=CUSTOMER))

    assert journey.status == JourneyStatus.COMPLETED
    history = catalog.tracking_history(listed_product.token_id)
    assert [(c.step, c.location) for c in history][-1] == ("Delivered", "Paris")
    print("✅ Delivered to Paris")
