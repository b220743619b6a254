"""
CRUD operations for purchases and document versions
"""

from sqlalchemy.orm import Session
from database.models import PurchaseRecord, DocumentVersion
from datetime import datetime
from typing import Optional, List

METADATA = "metadata"
CERTIFICATE = "certificate"


def create_purchase(db: Session, purchase_data: dict) -> PurchaseRecord:
    """Open a purchase journal entry."""
    record = PurchaseRecord(**purchase_data)
    db.add(record)
    db.flush()
    db.refresh(record)
    return record


def get_purchase(db: Session, purchase_id: int) -> Optional[PurchaseRecord]:
    return db.query(PurchaseRecord).filter(PurchaseRecord.id == purchase_id).first()


def update_purchase(db: Session, purchase_id: int, **fields) -> Optional[PurchaseRecord]:
    """Write a state transition (and any produced values) to the journal."""
    record = get_purchase(db, purchase_id)
    if record:
        for key, value in fields.items():
            setattr(record, key, value)
        record.updated_at = datetime.utcnow()
        db.flush()
    return record


def get_latest_purchase(db: Session, token_id: int) -> Optional[PurchaseRecord]:
    return db.query(PurchaseRecord)\
        .filter(PurchaseRecord.token_id == token_id)\
        .order_by(PurchaseRecord.id.desc())\
        .first()


def get_pending_purchases(db: Session, token_id: Optional[int] = None) -> List[PurchaseRecord]:
    """Purchases whose token changed hands but whose documents were not updated."""
    query = db.query(PurchaseRecord).filter(PurchaseRecord.state == "documentation_pending")
    if token_id is not None:
        query = query.filter(PurchaseRecord.token_id == token_id)
    return query.order_by(PurchaseRecord.created_at).all()


def record_document_version(
    db: Session,
    token_id: int,
    kind: str,
    cid: str,
    previous_cid: Optional[str] = None
) -> DocumentVersion:
    """Append a version; an existing (token, kind, cid) row is returned as is."""
    existing = db.query(DocumentVersion).filter(
        DocumentVersion.token_id == token_id,
        DocumentVersion.kind == kind,
        DocumentVersion.cid == cid
    ).first()
    if existing:
        return existing

    version = DocumentVersion(token_id=token_id, kind=kind, cid=cid, previous_cid=previous_cid)
    db.add(version)
    db.flush()
    return version


def get_document_chain(db: Session, token_id: int, kind: str) -> List[DocumentVersion]:
    """Versions of one document, oldest first."""
    return db.query(DocumentVersion)\
        .filter(DocumentVersion.token_id == token_id, DocumentVersion.kind == kind)\
        .order_by(DocumentVersion.id)\
        .all()

