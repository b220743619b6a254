"""
Purchase Orchestrator

Buys a listed product and brings its documents up to date:

    idle -> approving -> buying -> appending_certificate
         -> updating_metadata -> updating_uri -> done

Every transition is journaled in ``purchase_records``. Before the buy
transaction any failure ends in ``failed`` and nothing has changed hands. Once
the buy is confirmed the token belongs to the buyer, so a later failure does
not undo it: the purchase is parked in ``documentation_pending``, the product
is marked accordingly, and ``resume_documentation`` finishes the remaining
steps, reusing any CIDs already produced.

Only transient pinning failures are retried, here and nowhere else.
On-chain transactions are never retried.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

from dotenv import load_dotenv

from certificate.certificate_builder import CertificateBuilder, OwnershipDetails
from database import (
    CERTIFICATE,
    METADATA,
    create_purchase,
    get_db,
    get_pending_purchases,
    record_document_version,
    update_purchase,
)
from ipfs.pinning import PinningError, extract_cid, ipfs_uri
from journey.simulator import JourneyError, build_journey
from metadata.metadata_builder import update_metadata
from marketplace.catalog import require_signer
from marketplace.product_store import ProductStore, same_account

load_dotenv()

logger = logging.getLogger(__name__)


class PurchaseState(str, Enum):
    IDLE = "idle"
    APPROVING = "approving"
    BUYING = "buying"
    APPENDING_CERTIFICATE = "appending_certificate"
    UPDATING_METADATA = "updating_metadata"
    UPDATING_URI = "updating_uri"
    DONE = "done"
    FAILED = "failed"
    DOCUMENTATION_PENDING = "documentation_pending"


class PurchaseValidationError(ValueError):
    """Purchase request rejected before any transaction."""


class ProductNotFoundError(PurchaseValidationError):
    """Token is not in the product store."""


class RegistryNotApprovedError(Exception):
    """Registry may not transfer the token; nothing was submitted."""

    def __init__(self, token_id: int, owner: str, registry: str):
        super().__init__("Manufacturer has not approved registry for transfer.")
        self.token_id = token_id
        self.owner = owner
        self.registry = registry


class DocumentationPendingError(Exception):
    """Token changed hands but its documents could not be updated."""

    def __init__(self, token_id: int, failed_step: str, cause: Exception, record: Optional[dict] = None):
        super().__init__(f"Purchase of token {token_id} completed on chain; documentation pending ({failed_step}: {cause})")
        self.token_id = token_id
        self.failed_step = failed_step
        self.cause = cause
        self.record = record or {}


@dataclass
class RetryPolicy:
    """Capped retry for transient pinning failures"""
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    sleep: Callable[[float], Any] = time.sleep

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(
            max_attempts=int(os.getenv("PURCHASE_MAX_ATTEMPTS", "3")),
            backoff_seconds=float(os.getenv("PURCHASE_RETRY_BACKOFF_SECONDS", "2")),
        )

    def run(self, fn: Callable[[], Any], label: str, on_attempt: Optional[Callable[[int], Any]] = None) -> Any:
        for attempt in range(1, self.max_attempts + 1):
            if on_attempt is not None:
                on_attempt(attempt)
            try:
                return fn()
            except PinningError as e:
                if not e.transient or attempt >= self.max_attempts:
                    raise
                delay = self.backoff_seconds * attempt
                logger.warning(f"{label} failed ({e}); retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_attempts})")
                self.sleep(delay)


@dataclass
class PurchaseOutcome:
    token_id: int
    state: PurchaseState
    certificate_url: Optional[str] = None
    metadata_uri: Optional[str] = None
    previous_certificate_url: Optional[str] = None
    buy_tx_hash: Optional[str] = None
    update_uri_tx_hash: Optional[str] = None
    purchase_id: Optional[int] = None
    journey_steps: List[Any] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "tokenId": self.token_id,
            "state": self.state.value,
            "certificateUrl": self.certificate_url,
            "metadataUri": self.metadata_uri,
            "previousCertificateUrl": self.previous_certificate_url,
            "buyTxHash": self.buy_tx_hash,
            "updateUriTxHash": self.update_uri_tx_hash,
            "purchaseId": self.purchase_id,
            "journey": [{"step": s.step, "location": s.location, "progress": s.progress} for s in self.journey_steps],
        }


@dataclass
class _Saga:
    purchase_id: int
    token_id: int
    buyer: str
    seller: Optional[str]
    delivery_location: str
    previous_certificate_url: str
    previous_metadata_uri: str
    new_certificate_cid: Optional[str] = None
    new_metadata_cid: Optional[str] = None
    buy_tx_hash: Optional[str] = None
    update_uri_tx_hash: Optional[str] = None
    attempts: int = 0

    @classmethod
    def from_record(cls, record) -> "_Saga":
        return cls(
            purchase_id=record.id,
            token_id=record.token_id,
            buyer=record.buyer,
            seller=record.seller,
            delivery_location=record.delivery_location,
            previous_certificate_url=record.previous_certificate_url,
            previous_metadata_uri=record.previous_metadata_uri,
            new_certificate_cid=record.new_certificate_cid,
            new_metadata_cid=record.new_metadata_cid,
            buy_tx_hash=record.buy_tx_hash,
            update_uri_tx_hash=record.update_uri_tx_hash,
            attempts=record.attempts or 0,
        )


class PurchaseOrchestrator:
    """Runs purchases as a journaled saga"""

    def __init__(
        self,
        contracts,
        pinning,
        store: ProductStore,
        session_factory=None,
        retry: Optional[RetryPolicy] = None,
        journeys=None
    ):
        self.contracts = contracts
        self.pinning = pinning
        self.store = store
        self.session_factory = session_factory
        self.retry = retry or RetryPolicy.from_env()
        self.journeys = journeys
        self.certificates = CertificateBuilder(pinning)

    def _journal(self, purchase_id: int, **fields) -> dict:
        with get_db(self.session_factory) as db:
            record = update_purchase(db, purchase_id, **fields)
            return record.to_dict() if record else {}

    def _count_attempt(self, saga: _Saga) -> Callable[[int], None]:
        def record(attempt: int):
            saga.attempts += 1
            self._journal(saga.purchase_id, attempts=saga.attempts)
        return record

    def _park(self, saga: _Saga, step: PurchaseState, error: Exception) -> DocumentationPendingError:
        """Journal a post-buy failure as documentation_pending."""
        record = self._journal(
            saga.purchase_id,
            state=PurchaseState.DOCUMENTATION_PENDING.value,
            failed_step=step.value,
            error=str(error),
            buy_tx_hash=saga.buy_tx_hash,
        )
        if saga.token_id in self.store:
            self.store.mark_documentation_pending(saga.token_id)
        logger.error(f"Token {saga.token_id}: documentation pending after {step.value} failed: {error}", exc_info=True)
        return DocumentationPendingError(saga.token_id, step.value, error, record)

    def _validate(self, token_id: int, delivery_location: str):
        if not (delivery_location or "").strip():
            raise PurchaseValidationError("Please enter your delivery location")
        product = self.store.get(token_id)
        if product is None:
            raise ProductNotFoundError(f"Unknown product: {token_id}")
        if not product.available:
            raise PurchaseValidationError(f"Product {token_id} is not available for purchase")
        if not product.certificate_url:
            raise PurchaseValidationError(f"Product {token_id} has no certificate to update")
        if not product.metadata_uri:
            raise PurchaseValidationError(f"Product {token_id} has no metadata URI")
        return product

    def purchase(
        self,
        token_id: int,
        delivery_location: str,
        buyer: Optional[str] = None,
        simulate_journey: bool = False
    ) -> PurchaseOutcome:
        """
        Buy ``token_id`` and record the journey to ``delivery_location``.

        Raises:
            PurchaseValidationError: Bad input or product state (nothing submitted)
            RegistryNotApprovedError: Registry cannot transfer (nothing submitted)
            ContractCallError: The buy transaction failed
            DocumentationPendingError: Bought, but documents not yet updated
        """
        started = time.perf_counter()
        delivery_location = (delivery_location or "").strip()
        product = self._validate(token_id, delivery_location)
        # buyProduct transfers to msg.sender
        buyer = require_signer(self.contracts, buyer, PurchaseValidationError)

        with get_db(self.session_factory) as db:
            record = create_purchase(db, {
                "token_id": token_id,
                "buyer": buyer,
                "seller": product.owner,
                "delivery_location": delivery_location,
                "state": PurchaseState.IDLE.value,
                "previous_certificate_url": product.certificate_url,
                "previous_metadata_uri": product.metadata_uri,
            })
            purchase_id = record.id

        step = PurchaseState.APPROVING
        try:
            self._journal(purchase_id, state=step.value)
            owner = self.contracts.owner_of(token_id)
            if not same_account(owner, buyer) and not self.contracts.registry_approved(token_id, owner):
                raise RegistryNotApprovedError(token_id, owner, self.contracts.registry_address)

            step = PurchaseState.BUYING
            self._journal(purchase_id, state=step.value, seller=owner)
            bought = self.contracts.buy_product(token_id)
        except Exception as e:
            self._journal(purchase_id, state=PurchaseState.FAILED.value, failed_step=step.value, error=str(e))
            logger.warning(f"Purchase of token {token_id} failed while {step.value}: {e}")
            raise

        saga = _Saga(
            purchase_id=purchase_id,
            token_id=token_id,
            buyer=buyer,
            seller=owner,
            delivery_location=delivery_location,
            previous_certificate_url=product.certificate_url,
            previous_metadata_uri=product.metadata_uri,
            buy_tx_hash=bought.tx_hash,
        )
        try:
            self.store.mark_purchased(token_id, buyer, seller=owner)
            self._journal(purchase_id, buy_tx_hash=bought.tx_hash)
        except Exception as e:
            raise self._park(saga, PurchaseState.BUYING, e) from e
        logger.info(f"Token {token_id} bought by {buyer} (tx {bought.tx_hash}, gas {bought.gas_used})")

        outcome = self._document(saga)

        if simulate_journey:
            outcome.journey_steps = self.start_journey(token_id, delivery_location, buyer)

        elapsed = (time.perf_counter() - started) * 1000
        logger.info(f"[PERF] Total purchase time for token {token_id}: {elapsed:.2f} ms")
        return outcome

    def _document(self, saga: _Saga) -> PurchaseOutcome:
        step = PurchaseState.APPENDING_CERTIFICATE
        try:
            if not saga.new_certificate_cid:
                self._journal(saga.purchase_id, state=step.value)
                details = OwnershipDetails(
                    token_id=saga.token_id,
                    manufacturer=saga.seller,
                    buyer=saga.buyer,
                    delivery=saga.delivery_location,
                    journey=build_journey(saga.delivery_location),
                )
                pinned = self.retry.run(
                    lambda: self.certificates.append(saga.previous_certificate_url, details),
                    "Certificate append",
                    self._count_attempt(saga)
                )
                saga.new_certificate_cid = pinned.cid
                self._journal(saga.purchase_id, new_certificate_cid=pinned.cid)

            step = PurchaseState.UPDATING_METADATA
            if not saga.new_metadata_cid:
                self._journal(saga.purchase_id, state=step.value)

                def pin_metadata():
                    document = update_metadata(saga.previous_metadata_uri, saga.new_certificate_cid, self.pinning)
                    filename = f"updated_metadata_{int(time.time() * 1000)}.json"
                    return self.pinning.upload_json(document, filename).unwrap()

                pinned = self.retry.run(pin_metadata, "Metadata update", self._count_attempt(saga))
                saga.new_metadata_cid = pinned.cid
                self._journal(saga.purchase_id, new_metadata_cid=pinned.cid)

            step = PurchaseState.UPDATING_URI
            self._journal(saga.purchase_id, state=step.value)
            updated = self.contracts.update_token_uri(saga.token_id, saga.new_metadata_cid)
            saga.update_uri_tx_hash = updated.tx_hash
        except Exception as e:
            raise self._park(saga, step, e) from e

        certificate_url = self.pinning.gateway_url(saga.new_certificate_cid)
        metadata_uri = ipfs_uri(saga.new_metadata_cid)

        self._journal(
            saga.purchase_id,
            state=PurchaseState.DONE.value,
            update_uri_tx_hash=saga.update_uri_tx_hash,
            failed_step=None,
            error=None,
        )
        with get_db(self.session_factory) as db:
            record_document_version(db, saga.token_id, CERTIFICATE, saga.new_certificate_cid,
                                    previous_cid=_cid_or_none(saga.previous_certificate_url))
            record_document_version(db, saga.token_id, METADATA, saga.new_metadata_cid,
                                    previous_cid=_cid_or_none(saga.previous_metadata_uri))

        if saga.token_id in self.store:
            self.store.update_documents(saga.token_id, certificate_url=certificate_url, metadata_uri=metadata_uri)

        logger.info(f"Token {saga.token_id} documents updated: certificate {saga.new_certificate_cid}, metadata {saga.new_metadata_cid}")
        return PurchaseOutcome(
            token_id=saga.token_id,
            state=PurchaseState.DONE,
            certificate_url=certificate_url,
            metadata_uri=metadata_uri,
            previous_certificate_url=saga.previous_certificate_url,
            buy_tx_hash=saga.buy_tx_hash,
            update_uri_tx_hash=saga.update_uri_tx_hash,
            purchase_id=saga.purchase_id,
        )

    def start_journey(self, token_id: int, delivery_location: str, customer: str) -> list:
        """Start delivery tracking; without a registry only local progress is set."""
        self.store.start_tracking(token_id, delivery_location)
        if self.journeys is None:
            return build_journey(delivery_location)
        try:
            return self.journeys.start(token_id, delivery_location, customer=customer)
        except JourneyError as e:
            logger.warning(f"Journey for token {token_id} not started: {e}")
            return build_journey(delivery_location)

    def resume_documentation(self, token_id: int) -> PurchaseOutcome:
        """
        Finish the document updates of a purchase parked in documentation_pending.

        Raises:
            PurchaseValidationError: If nothing is pending for the token
            DocumentationPendingError: If a step fails again
        """
        with get_db(self.session_factory) as db:
            pending = get_pending_purchases(db, token_id)
            if not pending:
                raise PurchaseValidationError(f"No documentation pending for token {token_id}")
            saga = _Saga.from_record(pending[-1])

        product = self.store.get(token_id)
        if product is not None and product.available:
            self.store.mark_purchased(token_id, saga.buyer, seller=saga.seller)

        logger.info(f"Resuming documentation for token {token_id} (purchase {saga.purchase_id})")
        return self._document(saga)

    def pending_documentation(self) -> List[dict]:
        with get_db(self.session_factory) as db:
            return [record.to_dict() for record in get_pending_purchases(db)]


def _cid_or_none(reference: Optional[str]) -> Optional[str]:
    if not reference:
        return None
    try:
        return extract_cid(reference)
    except ValueError:
        return None
