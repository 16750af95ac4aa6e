"""
SQLAlchemy ORM Models — Processing Sessions & Chunks

Using SQLAlchemy 2.x mapped classes for full async support.

Schema: uwia (set via __table_args__)
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# ProcessingSession: uwia.processing_sessions
# ---------------------------------------------------------------------------

class ProcessingSession(Base):
    """
    Durable handle for one uploaded document's processing lifecycle.

    State machine (status column):
        processing — chunks are being planned / stored by a worker
        ready      — every planned chunk is stored; queryable
        error      — unrecoverable batch failure (see error_message)
        expired    — past expires_at; about to be swept

    Counters:
        total_chunks is 0 until the chunk plan exists, then set once.
        processed_chunks only moves by whole batches and never passes total_chunks.

    Lease:
        worker_id / lease_expires_at name the worker currently storing chunks.
        Another run may claim the session only once the lease has lapsed.
    """

    __tablename__ = "processing_sessions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'ready', 'error', 'expired')",
            name="processing_sessions_status_check",
        ),
        CheckConstraint(
            "processed_chunks <= total_chunks OR total_chunks = 0",
            name="processing_sessions_counter_check",
        ),
        Index("idx_sessions_status_expires", "status", "expires_at"),
        {"schema": "uwia"},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    file_name: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Original sanitized filename provided by the client",
    )
    file_size: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Upload size in bytes — drives the size-adaptive config",
    )

    total_chunks: Mapped[int]     = mapped_column(Integer, nullable=False, default=0, server_default="0")
    processed_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="processing",
        server_default="processing",
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='error'",
    )

    session_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="Selected processing config, extraction strategy, staged upload location",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    worker_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    chunks: Mapped[list["Chunk"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<ProcessingSession id={self.id} status={self.status} "
            f"chunks={self.processed_chunks}/{self.total_chunks} file={self.file_name!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk: uwia.pdf_chunks
# ---------------------------------------------------------------------------

class Chunk(Base):
    """
    One content-addressed fragment of a session's extracted text.
    id is "<session_id>-<chunk_index>" so re-storing a chunk is a no-op.
    """

    __tablename__ = "pdf_chunks"
    __table_args__ = (
        UniqueConstraint("session_id", "chunk_index", name="uq_chunks_position"),
        Index("idx_chunks_session_id", "session_id"),
        {"schema": "uwia"},
    )

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("uwia.processing_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index: Mapped[int]  = mapped_column(Integer, nullable=False)
    content: Mapped[str]      = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    byte_size: Mapped[int]    = mapped_column(Integer, nullable=False)
    page_start: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    page_end: Mapped[Optional[int]]   = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    session: Mapped[ProcessingSession] = relationship(back_populates="chunks")

    def __repr__(self) -> str:
        return (
            f"<Chunk id={self.id} pages={self.page_start}-{self.page_end} "
            f"bytes={self.byte_size}>"
        )
