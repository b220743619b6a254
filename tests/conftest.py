"""
Shared fixtures: in-memory chain, in-memory pinning service, SQLite journal.
"""

import hashlib
import json
import sys
import os
from io import BytesIO
from types import SimpleNamespace

import pytest
from reportlab.pdfgen import canvas
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from blockchain.contracts import (
    CheckpointRecord,
    ContractRevertError,
    MintResult,
    RegistryListing,
    TransactionResult,
)
from database import init_db
from ipfs.pinning import PinataClient, PinResult, PinStatus, FetchResult, extract_cid, ipfs_uri
from marketplace.catalog import ProductCatalog, ProductImage
from marketplace.product_store import ProductStore
from marketplace.purchase import PurchaseOrchestrator, RetryPolicy
from metadata.metadata_builder import ProductForm

MANUFACTURER = "0x" + "11" * 20
CUSTOMER = "0x" + "22" * 20
OTHER_CUSTOMER = "0x" + "33" * 20
REGISTRY = "0x" + "99" * 20
ZERO_ADDRESS = "0x" + "00" * 20


class FakePinning(PinataClient):
    """Content-addressed in-memory store behind the real client's fetch logic"""

    def __init__(self):
        super().__init__(jwt="test-jwt", api_url="https://pinata.test", gateway="gateway.test")
        self.blobs = {}
        self.uploads = []
        self.upload_failures = []
        self.fetch_failures = []

    def upload(self, content, filename, mime_type=None):
        if isinstance(content, (dict, list)):
            content = json.dumps(content, separators=(",", ":")).encode("utf-8")
        if self.upload_failures:
            status = self.upload_failures.pop(0)
            return PinResult(status=status, error=f"Injected {status.value}")
        cid = "Qm" + hashlib.sha256(content).hexdigest()[:44]
        self.blobs[cid] = content
        self.uploads.append(filename)
        return PinResult(status=PinStatus.SUCCESS, cid=cid, url=self.gateway_url(cid))

    def _get(self, url):
        if self.fetch_failures:
            status = self.fetch_failures.pop(0)
            return FetchResult(status=status, url=url, status_code=503, error=f"Injected {status.value}")
        cid = extract_cid(url)
        if cid not in self.blobs:
            return FetchResult(status=PinStatus.PERMANENT_FAILURE, url=url, status_code=404, error=f"Failed to fetch {url}: HTTP 404")
        return SimpleNamespace(content=self.blobs[cid], status_code=200)


class FakeChain:
    """State of the three contracts"""

    def __init__(self):
        self.next_token = 1
        self.next_tx = 1
        self.block_time = 1_700_000_000
        self.tokens = {}
        self.operators = set()
        self.listings = {}
        self.tracking = {}
        self.transactions = []
        self.failures = {}

    def tx(self, account, name, *args):
        failure = self.failures.pop(name, None)
        if failure is not None:
            raise failure
        self.transactions.append((account, name, args))
        tx_hash = "0x%064x" % self.next_tx
        self.next_tx += 1
        self.block_time += 1
        return TransactionResult(tx_hash=tx_hash, receipt={"status": 1, "logs": []}, gas_used=50000)


class FakeContracts:
    """Same surface as SupplyChainContracts, signing as ``account``"""

    def __init__(self, chain: FakeChain, account: str):
        self.chain = chain
        self.account_address = account
        self.registry_address = REGISTRY

    def with_signer(self, account):
        return FakeContracts(self.chain, account)

    def _owned(self, token_id):
        token = self.chain.tokens.get(token_id)
        if token is None:
            raise ContractRevertError("ERC721: invalid token ID", "ownerOf")
        return token

    def mint_product(self, metadata_cid):
        token_id = self.chain.next_token
        result = self.chain.tx(self.account_address, "mintProduct", metadata_cid)
        self.chain.next_token += 1
        self.chain.tokens[token_id] = {
            "owner": self.account_address,
            "manufacturer": self.account_address,
            "uri": metadata_cid,
            "approved": ZERO_ADDRESS,
        }
        return MintResult(token_id=token_id, transaction=result)

    def set_approval_for_all(self, operator=None, approved=True):
        operator = operator or REGISTRY
        result = self.chain.tx(self.account_address, "setApprovalForAll", operator, approved)
        key = (self.account_address.lower(), operator.lower())
        if approved:
            self.chain.operators.add(key)
        else:
            self.chain.operators.discard(key)
        return result

    def register_product(self, token_id):
        token = self._owned(token_id)
        if token["owner"] != self.account_address:
            raise ContractRevertError("Not the owner", "registerProduct")
        if not self.registry_approved(token_id):
            raise ContractRevertError("Registry not approved", "registerProduct")
        result = self.chain.tx(self.account_address, "registerProduct", token_id)
        self.chain.listings[token_id] = {
            "manufacturer": token["manufacturer"],
            "available": True,
            "listed_at": self.chain.block_time,
        }
        return result

    def remove_product(self, token_id):
        token = self._owned(token_id)
        if token["owner"] != self.account_address:
            raise ContractRevertError("Not the owner", "removeProduct")
        result = self.chain.tx(self.account_address, "removeProduct", token_id)
        self.chain.listings[token_id]["available"] = False
        return result

    def buy_product(self, token_id):
        listing = self.chain.listings.get(token_id)
        if not listing or not listing["available"]:
            raise ContractRevertError("Product not available", "buyProduct")
        if not self.registry_approved(token_id):
            raise ContractRevertError("ERC721: caller is not token owner or approved", "buyProduct")
        result = self.chain.tx(self.account_address, "buyProduct", token_id)
        self.chain.tokens[token_id]["owner"] = self.account_address
        listing["available"] = False
        return result

    def update_token_uri(self, token_id, metadata_cid):
        token = self._owned(token_id)
        if token["owner"] != self.account_address:
            raise ContractRevertError("Not the owner", "updateTokenURI")
        result = self.chain.tx(self.account_address, "updateTokenURI", token_id, metadata_cid)
        token["uri"] = ipfs_uri(metadata_cid)
        return result

    def start_tracking(self, token_id, customer):
        result = self.chain.tx(self.account_address, "startTracking", token_id, customer)
        self.chain.tracking[token_id] = []
        return result

    def add_checkpoint(self, token_id, step, location):
        result = self.chain.tx(self.account_address, "addCheckpoint", token_id, step, location)
        self.chain.tracking.setdefault(token_id, []).append(
            CheckpointRecord(token_id=token_id, step=step, location=location, timestamp=self.chain.block_time)
        )
        return result

    def get_available_products(self):
        return [t for t, listing in sorted(self.chain.listings.items()) if listing["available"]]

    def get_products_by_owner(self, owner):
        return [t for t, token in sorted(self.chain.tokens.items()) if token["owner"].lower() == owner.lower()]

    def get_product(self, token_id):
        listing = self.chain.listings.get(token_id, {"manufacturer": ZERO_ADDRESS, "available": False, "listed_at": 0})
        return RegistryListing(token_id, listing["manufacturer"], listing["available"], listing["listed_at"])

    def owner_of(self, token_id):
        return self._owned(token_id)["owner"]

    def token_uri(self, token_id):
        return self._owned(token_id)["uri"]

    def get_approved(self, token_id):
        return self._owned(token_id)["approved"]

    def is_approved_for_all(self, owner, operator=None):
        return (owner.lower(), (operator or REGISTRY).lower()) in self.chain.operators

    def registry_approved(self, token_id, owner=None):
        if self.get_approved(token_id).lower() == REGISTRY.lower():
            return True
        return self.is_approved_for_all(owner or self.owner_of(token_id), REGISTRY)

    def get_tracking_history(self, token_id):
        return list(self.chain.tracking.get(token_id, []))

    def get_latest_checkpoint(self, token_id):
        return self.chain.tracking[token_id][-1]

    def is_product_tracking(self, token_id):
        return token_id in self.chain.tracking


def make_pdf(pages: int = 1, text: str = "Manufacturer documentation") -> bytes:
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=(600, 800))
    for number in range(pages):
        pdf.drawString(50, 750, f"{text} page {number + 1}")
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def manufacturer(chain):
    return FakeContracts(chain, MANUFACTURER)


@pytest.fixture
def customer(chain):
    return FakeContracts(chain, CUSTOMER)


@pytest.fixture
def pinning():
    return FakePinning()


@pytest.fixture
def store():
    return ProductStore()


@pytest.fixture
def base_pdf():
    return make_pdf()


@pytest.fixture
def widget_form():
    return ProductForm(
        title="Widget",
        location="Lyon",
        category="Tools",
        extra_fields={"toolType": "Wrench", "warrantyPeriod": "2 years"},
    )


@pytest.fixture
def catalog(manufacturer, pinning, store, session_factory):
    return ProductCatalog(manufacturer, pinning, store, session_factory)


@pytest.fixture
def orchestrator(customer, pinning, store, session_factory):
    return PurchaseOrchestrator(
        customer,
        pinning,
        store,
        session_factory=session_factory,
        retry=RetryPolicy(max_attempts=3, backoff_seconds=0, sleep=lambda _: None),
    )


@pytest.fixture
def listed_product(catalog, widget_form, base_pdf):
    """Widget made in Lyon, minted, approved and listed with a certificate"""
    image = ProductImage(b"\x89PNG fake widget image", "widget.png", "image/png")
    return catalog.create_product(widget_form, image, MANUFACTURER, base_pdf)
