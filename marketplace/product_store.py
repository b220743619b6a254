"""
Keyed product store

Products are kept by token id and merged field-by-field when they are
reloaded from chain and IPFS. Document pointers replaced by a local update are
remembered as superseded, so a reload that started before the update cannot
put the old certificate or metadata back.
"""

import logging
import threading
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from ipfs.pinning import extract_cid
from journey.simulator import INITIAL_STEP, INITIAL_LOCATION, INITIAL_PROGRESS

logger = logging.getLogger(__name__)

DOCUMENTATION_CURRENT = "current"
DOCUMENTATION_PENDING = "pending"

# Fields a reload may never roll back to a superseded value
DOCUMENT_FIELDS = ("certificate_url", "metadata_uri")
# Fields only changed by local actions
LOCAL_FIELDS = ("documentation_status",)


@dataclass
class Product:
    token_id: int
    name: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    location: Optional[str] = None
    category: Optional[str] = None
    certificate_url: Optional[str] = None
    metadata_uri: Optional[str] = None
    owner: Optional[str] = None
    manufacturer: Optional[str] = None
    available: Optional[bool] = None
    listed_at: Optional[int] = None
    buyer: Optional[str] = None
    seller: Optional[str] = None
    documentation_status: str = DOCUMENTATION_CURRENT

    def to_dict(self) -> dict:
        data = asdict(self)
        return {
            "tokenId": data["token_id"],
            "name": data["name"],
            "description": data["description"],
            "image": data["image_url"],
            "location": data["location"],
            "category": data["category"],
            "certificateUrl": data["certificate_url"],
            "metadataUri": data["metadata_uri"],
            "owner": data["owner"],
            "manufacturer": data["manufacturer"],
            "available": data["available"],
            "listedAt": data["listed_at"],
            "buyer": data["buyer"],
            "seller": data["seller"],
            "documentationStatus": data["documentation_status"],
        }


@dataclass
class TrackingState:
    token_id: int
    step: str
    location: str
    progress: int
    delivery_location: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "tokenId": self.token_id,
            "step": self.step,
            "location": self.location,
            "progress": self.progress,
            "deliveryLocation": self.delivery_location,
            "updatedAt": self.updated_at.isoformat(),
        }


def same_account(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def _cid(reference: Optional[str]) -> Optional[str]:
    if not reference:
        return None
    try:
        return extract_cid(reference)
    except ValueError:
        return reference


class ProductStore:
    """Products by token id, safe to share between request threads"""

    def __init__(self):
        self._products: Dict[int, Product] = {}
        self._superseded: Dict[int, Set[str]] = {}
        self._tracking: Dict[int, TrackingState] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._products)

    def __contains__(self, token_id: int) -> bool:
        return token_id in self._products

    def get(self, token_id: int) -> Optional[Product]:
        return self._products.get(token_id)

    def all(self) -> List[Product]:
        with self._lock:
            return sorted(self._products.values(), key=lambda p: p.token_id)

    def is_superseded(self, token_id: int, reference: Optional[str]) -> bool:
        cid = _cid(reference)
        return cid is not None and cid in self._superseded.get(token_id, set())

    def supersede(self, token_id: int, *references: Optional[str]) -> None:
        with self._lock:
            chain = self._superseded.setdefault(token_id, set())
            chain.update(cid for cid in map(_cid, references) if cid)

    def upsert(self, incoming: Product) -> Product:
        """
        Insert or merge a product.

        None values never overwrite; document pointers already superseded for
        this token are ignored; local-only fields are kept.
        """
        with self._lock:
            current = self._products.get(incoming.token_id)
            if current is None:
                self._products[incoming.token_id] = incoming
                return incoming

            for f in fields(Product):
                if f.name == "token_id" or f.name in LOCAL_FIELDS:
                    continue
                value = getattr(incoming, f.name)
                if value is None:
                    continue
                if f.name in DOCUMENT_FIELDS and self.is_superseded(incoming.token_id, value):
                    logger.debug(f"Ignoring superseded {f.name} for token {incoming.token_id}: {value}")
                    continue
                setattr(current, f.name, value)
            return current

    def merge(self, products: List[Product]) -> List[Product]:
        return [self.upsert(product) for product in products]

    def update_documents(
        self,
        token_id: int,
        certificate_url: Optional[str] = None,
        metadata_uri: Optional[str] = None
    ) -> Product:
        """Point a product at new document versions and retire the old ones."""
        with self._lock:
            product = self._require(token_id)
            if certificate_url and certificate_url != product.certificate_url:
                self.supersede(token_id, product.certificate_url)
                product.certificate_url = certificate_url
            if metadata_uri and metadata_uri != product.metadata_uri:
                self.supersede(token_id, product.metadata_uri)
                product.metadata_uri = metadata_uri
            product.documentation_status = DOCUMENTATION_CURRENT
            return product

    def _require(self, token_id: int) -> Product:
        product = self._products.get(token_id)
        if product is None:
            raise KeyError(f"Unknown product: {token_id}")
        return product

    # Views

    def available_for(self, account: Optional[str] = None) -> List[Product]:
        """Listed products the account could buy (not its own listings)."""
        return [
            p for p in self.all()
            if p.available and not (account and same_account(p.manufacturer, account))
        ]

    def owned_by(self, account: str) -> List[Product]:
        return [p for p in self.all() if same_account(p.owner, account) and not p.available]

    def listed_by(self, manufacturer: str) -> List[Product]:
        return [p for p in self.all() if same_account(p.manufacturer, manufacturer)]

    def pending_documentation(self) -> List[Product]:
        return [p for p in self.all() if p.documentation_status == DOCUMENTATION_PENDING]

    # Local transitions

    def mark_purchased(self, token_id: int, buyer: str, seller: Optional[str] = None) -> bool:
        """
        Move a product from available to owned.

        Returns:
            False if it was already recorded as owned by ``buyer``
        """
        with self._lock:
            product = self._require(token_id)
            if same_account(product.owner, buyer) and product.available is False:
                return False
            product.seller = seller or product.owner or product.manufacturer
            product.owner = buyer
            product.buyer = buyer
            product.available = False
            return True

    def mark_unavailable(self, token_id: int) -> Product:
        with self._lock:
            product = self._require(token_id)
            product.available = False
            return product

    def mark_documentation_pending(self, token_id: int) -> Product:
        with self._lock:
            product = self._require(token_id)
            product.documentation_status = DOCUMENTATION_PENDING
            return product

    # Tracking

    def start_tracking(self, token_id: int, delivery_location: str) -> TrackingState:
        state = TrackingState(
            token_id=token_id,
            step=INITIAL_STEP,
            location=INITIAL_LOCATION,
            progress=INITIAL_PROGRESS,
            delivery_location=delivery_location
        )
        with self._lock:
            self._tracking[token_id] = state
        return state

    def update_tracking(self, token_id: int, step: str, location: str, progress: int) -> TrackingState:
        with self._lock:
            state = self._tracking.get(token_id)
            if state is None:
                state = TrackingState(token_id=token_id, step=step, location=location, progress=progress)
                self._tracking[token_id] = state
            else:
                state.step, state.location, state.progress = step, location, progress
                state.updated_at = datetime.now(timezone.utc)
            return state

    def tracking(self, token_id: int) -> Optional[TrackingState]:
        return self._tracking.get(token_id)
