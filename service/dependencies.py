"""
Shared service objects for the API and dashboard.

Each getter builds its object on first use, so importing the service never
needs RPC or pinning credentials. Tests replace them through
``app.dependency_overrides``.
"""

import os
from typing import Optional

from fastapi import Depends
from dotenv import load_dotenv

from blockchain.contracts import SupplyChainContracts, get_contracts as _get_contracts
from database import SessionLocal, init_db
from ipfs.pinning import PinataClient, get_pinning_client
from journey.simulator import JourneyRegistry, JourneyUpdate, default_interval
from marketplace.catalog import ProductCatalog
from marketplace.product_store import ProductStore
from marketplace.purchase import PurchaseOrchestrator, RetryPolicy

load_dotenv()

_store: Optional[ProductStore] = None
_journeys: Optional[JourneyRegistry] = None
_db_ready = False


def get_store() -> ProductStore:
    """Get singleton product store"""
    global _store
    if _store is None:
        _store = ProductStore()
    return _store


def get_pinning() -> PinataClient:
    return get_pinning_client()


def get_contracts() -> SupplyChainContracts:
    return _get_contracts()


def contracts_for_role(role: str) -> SupplyChainContracts:
    """Contracts signing with the manufacturer or customer key (dashboard roles)."""
    base = _get_contracts()
    key = os.getenv(f"{role.upper()}_PRIVATE_KEY")
    return base.with_signer(key) if key else base


def get_session_factory():
    """Session factory with tables created on first use"""
    global _db_ready
    if not _db_ready:
        init_db()
        _db_ready = True
    return SessionLocal


def journey_registry() -> JourneyRegistry:
    """Get singleton journey registry (contracts attached on first request)"""
    global _journeys
    if _journeys is None:
        store = get_store()

        def track(update: JourneyUpdate):
            store.update_tracking(update.token_id, update.step, update.location, update.progress)

        _journeys = JourneyRegistry(interval_seconds=default_interval(on_chain=True), on_update=track)
    return _journeys


def running_journey_registry() -> Optional[JourneyRegistry]:
    return _journeys


def get_journey_registry(contracts: SupplyChainContracts = Depends(get_contracts)) -> JourneyRegistry:
    registry = journey_registry()
    if registry.contracts is None:
        registry.contracts = contracts
    return registry


def get_catalog(
    contracts: SupplyChainContracts = Depends(get_contracts),
    pinning: PinataClient = Depends(get_pinning),
    store: ProductStore = Depends(get_store),
    session_factory=Depends(get_session_factory),
) -> ProductCatalog:
    return ProductCatalog(contracts, pinning, store, session_factory)


def get_orchestrator(
    contracts: SupplyChainContracts = Depends(get_contracts),
    pinning: PinataClient = Depends(get_pinning),
    store: ProductStore = Depends(get_store),
    session_factory=Depends(get_session_factory),
    journeys: JourneyRegistry = Depends(get_journey_registry),
) -> PurchaseOrchestrator:
    return PurchaseOrchestrator(
        contracts,
        pinning,
        store,
        session_factory=session_factory,
        retry=RetryPolicy.from_env(),
        journeys=journeys,
    )
