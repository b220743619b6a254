"""
Product Catalog - create, list, load and remove products

Creation flow:
1. Pin the product image
2. If the manufacturer supplied a base PDF, generate and pin the certificate
3. Build and pin the metadata document
4. Mint the NFT (token id from the ProductMinted event)
5. Approve the registry as operator (once per manufacturer) and register

Loading reads token ids from the registry, then owner, tokenURI and listing
per token, fetches the metadata from the gateway and merges the result into
the ProductStore. A token that fails to load is logged and skipped.
"""

import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from blockchain.contracts import ContractCallError
from certificate.certificate_builder import CertificateBuilder
from database import (
    CERTIFICATE,
    METADATA,
    get_db,
    record_document_version,
)
from ipfs.pinning import PinningError, extract_cid, ipfs_uri
from metadata.metadata_builder import (
    ProductForm,
    build_metadata,
    find_attribute,
    summarize_metadata,
    DOCUMENTATION_TRAIT,
    MANUFACTURER_TRAIT,
)
from marketplace.product_store import Product, ProductStore, same_account

logger = logging.getLogger(__name__)


class ProductOwnershipError(PermissionError):
    """Caller does not own the product."""


def require_signer(contracts, account: Optional[str], error=None) -> str:
    """
    Resolve the acting account. Transactions are always signed by
    ``contracts.account_address``, so a different claimed account is rejected.
    """
    signer = contracts.account_address
    if account and not same_account(account, signer):
        raise (error or ProductOwnershipError)(f"Account {account} is not the signing account {signer}")
    return signer


@dataclass
class ProductImage:
    content: bytes
    filename: str
    mime_type: Optional[str] = None


@dataclass
class CreatedProduct:
    token_id: int
    image_cid: str
    metadata_cid: str
    certificate_cid: Optional[str]
    metadata: dict
    mint_tx_hash: str
    register_tx_hash: str
    product: Product


class ProductCatalog:
    """Manufacturer and customer product operations over chain + IPFS"""

    def __init__(self, contracts, pinning, store: Optional[ProductStore] = None, session_factory=None):
        self.contracts = contracts
        self.pinning = pinning
        self.store = store if store is not None else ProductStore()
        self.session_factory = session_factory
        self.certificates = CertificateBuilder(pinning)

    def create_product(
        self,
        form: ProductForm,
        image: ProductImage,
        manufacturer: Optional[str] = None,
        base_pdf: Optional[bytes] = None
    ) -> CreatedProduct:
        """
        Pin, mint and list a new product.

        Raises:
            ProductFormError: Invalid form (before anything is uploaded)
            PinningError: An upload failed
            ContractCallError: Mint, approval or registration failed
        """
        form.validate()
        if not image or not image.content:
            raise ValueError("Product image is required")
        manufacturer = require_signer(self.contracts, manufacturer)
        started = time.perf_counter()

        image_cid = self.pinning.upload(image.content, image.filename, image.mime_type).unwrap().cid
        logger.info(f"Image pinned: {image_cid}")

        certificate_cid = None
        if base_pdf:
            certificate_cid = self.certificates.create(base_pdf, form.certificate_fields()).cid
            logger.info(f"Certificate pinned: {certificate_cid}")

        metadata = build_metadata(form, image_cid, manufacturer, certificate_cid)
        metadata_cid = self.pinning.upload_json(metadata, f"{form.title}_metadata.json").unwrap().cid
        logger.info(f"Metadata pinned: {metadata_cid}")

        minted = self.contracts.mint_product(metadata_cid)
        token_id = minted.token_id

        if not self.contracts.is_approved_for_all(manufacturer, self.contracts.registry_address):
            self.contracts.set_approval_for_all(self.contracts.registry_address, True)
            logger.info(f"Registry approved as operator for {manufacturer}")

        registered = self.contracts.register_product(token_id)

        product = Product(
            token_id=token_id,
            name=form.title,
            description=metadata["description"],
            image_url=self.pinning.gateway_url(image_cid),
            location=form.location,
            category=form.category,
            certificate_url=self.pinning.gateway_url(certificate_cid) if certificate_cid else None,
            metadata_uri=ipfs_uri(metadata_cid),
            owner=manufacturer,
            manufacturer=manufacturer,
            available=True,
        )
        product = self.store.upsert(product)

        with get_db(self.session_factory) as db:
            record_document_version(db, token_id, METADATA, metadata_cid)
            if certificate_cid:
                record_document_version(db, token_id, CERTIFICATE, certificate_cid)

        elapsed = (time.perf_counter() - started) * 1000
        logger.info(f"[PERF] Product creation for token {token_id}: {elapsed:.2f} ms")

        return CreatedProduct(
            token_id=token_id,
            image_cid=image_cid,
            metadata_cid=metadata_cid,
            certificate_cid=certificate_cid,
            metadata=metadata,
            mint_tx_hash=minted.transaction.tx_hash,
            register_tx_hash=registered.tx_hash,
            product=product,
        )

    def load_product(self, token_id: int) -> Product:
        """Read one token from chain and its metadata from the gateway."""
        owner = self.contracts.owner_of(token_id)
        token_uri = self.contracts.token_uri(token_id)
        listing = self.contracts.get_product(token_id)

        started = time.perf_counter()
        document = self.pinning.fetch_json(token_uri).unwrap()
        elapsed = (time.perf_counter() - started) * 1000
        logger.info(f"[PERF] Metadata fetch for token {token_id}: {elapsed:.2f} ms")

        summary = summarize_metadata(document)
        documentation = find_attribute(document, DOCUMENTATION_TRAIT)
        image = summary["image"]

        return Product(
            token_id=token_id,
            name=summary["name"],
            description=summary["description"],
            image_url=self.pinning.resolve(image) if image else None,
            location=summary["location"],
            category=summary["category"],
            certificate_url=self.pinning.resolve(documentation) if documentation else None,
            metadata_uri=ipfs_uri(extract_cid(token_uri)),
            owner=owner,
            manufacturer=listing.manufacturer or find_attribute(document, MANUFACTURER_TRAIT),
            available=listing.available,
            listed_at=listing.listed_at,
        )

    def _load(self, token_ids: List[int]) -> List[Product]:
        loaded = []
        for token_id in token_ids:
            try:
                loaded.append(self.load_product(token_id))
            except (PinningError, ContractCallError, ValueError) as e:
                logger.warning(f"Skipping token {token_id}: {e}")
        return self.store.merge(loaded)

    def load_manufacturer_products(self, account: str) -> List[Product]:
        """Products the manufacturer still owns, listed or not."""
        started = time.perf_counter()
        token_ids = sorted(set(self.contracts.get_available_products()) | set(self.contracts.get_products_by_owner(account)))
        self._load(token_ids)
        elapsed = (time.perf_counter() - started) * 1000
        logger.info(f"[PERF] Manufacturer load: {elapsed:.2f} ms ({len(token_ids)} tokens)")
        return [p for p in self.store.listed_by(account) if p.owner and p.owner.lower() == account.lower()]

    def load_customer_products(self, account: str) -> dict:
        """
        Returns:
            {"available": [...], "owned": [...]} for the customer
        """
        started = time.perf_counter()
        available_ids = self.contracts.get_available_products()
        owned_ids = self.contracts.get_products_by_owner(account)
        self._load(sorted(set(available_ids) | set(owned_ids)))
        elapsed = (time.perf_counter() - started) * 1000
        logger.info(f"[PERF] Customer load: {elapsed:.2f} ms ({len(available_ids) + len(owned_ids)} tokens)")
        return {
            "available": self.store.available_for(account),
            "owned": self.store.owned_by(account),
        }

    def remove_product(self, token_id: int, account: Optional[str] = None) -> Product:
        """
        Delist a product. Only its current owner may do so.

        Raises:
            ProductOwnershipError: If ``account`` does not own the token
        """
        account = require_signer(self.contracts, account)
        owner = self.contracts.owner_of(token_id)
        if not same_account(owner, account):
            raise ProductOwnershipError("You can only remove products you own.")

        self.contracts.remove_product(token_id)
        if token_id not in self.store:
            self.store.upsert(Product(token_id=token_id, owner=owner))
        product = self.store.mark_unavailable(token_id)
        logger.info(f"Product {token_id} removed from registry")
        return product

    def tracking_history(self, token_id: int):
        return self.contracts.get_tracking_history(token_id)
