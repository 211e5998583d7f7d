"""
Scan tracking models
Owner sessions, scan lifecycle records and the matched items they produce
"""

import uuid
from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Text, JSON, Index, Float, Boolean
)
from sqlalchemy.orm import relationship
from datetime import datetime, timedelta
from photo_extractor.core.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class ScanStatus:
    """Scan lifecycle states"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    TERMINAL = frozenset({COMPLETED, FAILED, CANCELLED})


class OwnerSession(Base):
    """Reference fingerprints of the identity an owner wants collected"""
    __tablename__ = "sessions"

    id = Column(String(36), primary_key=True, default=_new_id)
    creator_name = Column(String(255))
    creator_email = Column(String(255))

    # List of numeric face fingerprints
    reference_fingerprints = Column(JSON, nullable=False)

    # active, expired
    status = Column(String(20), default="active")
    created_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, default=lambda: datetime.utcnow() + timedelta(days=30))

    scans = relationship("Scan", back_populates="session")

    __table_args__ = (
        Index("idx_sessions_status", "status"),
        Index("idx_sessions_expires_at", "expires_at"),
    )

    def is_expired(self, now: datetime = None) -> bool:
        now = now or datetime.utcnow()
        return self.status != "active" or (
            self.expires_at is not None and self.expires_at < now
        )


class Scan(Base):
    """One execution of the scan pipeline for one session"""
    __tablename__ = "scans"

    id = Column(String(36), primary_key=True, default=_new_id)
    session_id = Column(String(36), ForeignKey("sessions.id", ondelete="CASCADE"))
    # One-to-one with the queue entry
    job_id = Column(String(100), unique=True)

    friend_email = Column(String(255))
    # Fernet token holding the OAuth credential
    credential_encrypted = Column(Text, nullable=False)

    # pending, processing, completed, failed, cancelled
    status = Column(String(20), default=ScanStatus.PENDING, nullable=False)
    cancel_requested = Column(Boolean, default=False, nullable=False)

    # Counters
    total_items = Column(Integer, default=0, nullable=False)
    scanned_items = Column(Integer, default=0, nullable=False)
    matched_items = Column(Integer, default=0, nullable=False)
    uploaded_items = Column(Integer, default=0, nullable=False)

    # Set only on transition to failed
    error_message = Column(Text)

    # Timing
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Relationships
    session = relationship("OwnerSession", back_populates="scans")
    matches = relationship("MatchedItem", back_populates="scan")

    __table_args__ = (
        Index("idx_scans_session_id", "session_id"),
        Index("idx_scans_status", "status"),
        Index("idx_scans_created_at", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in ScanStatus.TERMINAL

    def to_dict(self) -> dict:
        """Public view; the credential never leaves the worker"""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "job_id": self.job_id,
            "status": self.status,
            "total_items": self.total_items,
            "scanned_items": self.scanned_items,
            "matched_items": self.matched_items,
            "uploaded_items": self.uploaded_items,
            "error": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class MatchedItem(Base):
    """A confirmed match whose original was uploaded. Append-only."""
    __tablename__ = "matched_items"

    id = Column(String(36), primary_key=True, default=_new_id)
    scan_id = Column(String(36), ForeignKey("scans.id", ondelete="CASCADE"), nullable=False)

    # Unique within the remote library only
    remote_id = Column(String(255), nullable=False)
    remote_url = Column(Text)

    blob_url = Column(Text, nullable=False)
    blob_key = Column(Text, nullable=False)

    confidence = Column(Float)
    # Dimensions, capture time, mime type; passed through untouched
    item_metadata = Column("metadata", JSON)
    detected_at = Column(DateTime, default=datetime.utcnow)

    scan = relationship("Scan", back_populates="matches")

    __table_args__ = (
        Index("idx_matched_items_scan_id", "scan_id"),
        Index("idx_matched_items_remote_id", "remote_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scan_id": self.scan_id,
            "remote_id": self.remote_id,
            "remote_url": self.remote_url,
            "blob_url": self.blob_url,
            "blob_key": self.blob_key,
            "confidence": self.confidence,
            "metadata": self.item_metadata or {},
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
        }
