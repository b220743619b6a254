"""
Database package: purchase journal and document version chain
"""

from .models import Base, PurchaseRecord, DocumentVersion
from .connection import get_db, engine, make_engine, SessionLocal
from .crud import (
    METADATA,
    CERTIFICATE,
    create_purchase,
    get_purchase,
    update_purchase,
    get_latest_purchase,
    get_pending_purchases,
    record_document_version,
    get_document_chain,
)


def init_db(bind=None):
    """Create all tables."""
    Base.metadata.create_all(bind or engine)


__all__ = [
    "Base",
    "PurchaseRecord",
    "DocumentVersion",
    "get_db",
    "engine",
    "make_engine",
    "SessionLocal",
    "init_db",
    "METADATA",
    "CERTIFICATE",
    "create_purchase",
    "get_purchase",
    "update_purchase",
    "get_latest_purchase",
    "get_pending_purchases",
    "record_document_version",
    "get_document_chain",
]
