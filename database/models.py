"""
SQLAlchemy models for the purchase journal and document version chain
"""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class PurchaseRecord(Base):
    """One purchase saga: every state transition is written here"""
    __tablename__ = "purchase_records"

    id = Column(Integer, primary_key=True)
    token_id = Column(Integer, nullable=False, index=True)
    buyer = Column(String(42), nullable=False, index=True)
    seller = Column(String(42))
    delivery_location = Column(String(200), nullable=False)

    # idle, approving, buying, appending_certificate, updating_metadata,
    # updating_uri, done, failed, documentation_pending
    state = Column(String(40), nullable=False, default="idle", index=True)
    failed_step = Column(String(40))
    error = Column(Text)
    # Pinning attempts across the purchase and any resumes
    attempts = Column(Integer, default=0)

    # Document pointers before the purchase
    previous_certificate_url = Column(Text)
    previous_metadata_uri = Column(Text)

    # Produced along the way; reused when documentation is resumed
    new_certificate_cid = Column(String(100))
    new_metadata_cid = Column(String(100))

    buy_tx_hash = Column(String(66))
    update_uri_tx_hash = Column(String(66))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tokenId": self.token_id,
            "buyer": self.buyer,
            "seller": self.seller,
            "deliveryLocation": self.delivery_location,
            "state": self.state,
            "failedStep": self.failed_step,
            "error": self.error,
            "attempts": self.attempts or 0,
            "previousCertificateUrl": self.previous_certificate_url,
            "previousMetadataUri": self.previous_metadata_uri,
            "newCertificateCid": self.new_certificate_cid,
            "newMetadataCid": self.new_metadata_cid,
            "buyTxHash": self.buy_tx_hash,
            "updateUriTxHash": self.update_uri_tx_hash,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class DocumentVersion(Base):
    """
    Append-only version chain of a token's documents.

    ``previous_cid`` is a back-reference to the version this one supersedes.
    The current metadata version is whatever the NFT's tokenURI points at.
    """
    __tablename__ = "document_versions"
    __table_args__ = (Index("ix_document_versions_token_kind", "token_id", "kind"),)

    id = Column(Integer, primary_key=True)
    token_id = Column(Integer, nullable=False)
    kind = Column(String(20), nullable=False)  # metadata, certificate
    cid = Column(String(100), nullable=False)
    previous_cid = Column(String(100))
    created_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "tokenId": self.token_id,
            "kind": self.kind,
            "cid": self.cid,
            "previousCid": self.previous_cid,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
