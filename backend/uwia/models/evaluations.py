"""
ORM Model — Claim Evaluations

One row per consolidated prompt answered for a session, written whether the
prompt produced an answer or failed. Rows are an audit trail; nothing in the
request path reads them back.

Table layout: uwia.claim_evaluations

  session_id          processing session the answer was computed from
  claim_reference     caller-supplied claim id (optional)
  document_name       e.g. "POLICY.pdf"
  pmc_field           logical answer slot
  question            the question after %variable% resolution
  answer              fused semicolon-joined answer vector
  confidence          fused confidence in [0, 1]
  error_message       per-path failure reasons, NULL on a clean answer
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from uwia.models.sessions import Base


class ClaimEvaluation(Base):

    __tablename__ = "claim_evaluations"
    __table_args__ = (
        Index("idx_claim_evaluations_session", "session_id"),
        Index("idx_claim_evaluations_claim", "claim_reference"),
        {"schema": "uwia"},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # No FK: evaluations outlive the session's TTL sweep
    session_id: Mapped[str] = mapped_column(String(36), nullable=False)
    claim_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    document_name: Mapped[str] = mapped_column(String(255), nullable=False)
    pmc_field: Mapped[str]     = mapped_column(String(255), nullable=False)
    question: Mapped[str]      = mapped_column(Text, nullable=False)

    answer: Mapped[Optional[str]]       = mapped_column(Text, nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    expected_type: Mapped[str]          = mapped_column(String(16), nullable=False)
    used_vision: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )
    processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<ClaimEvaluation session={self.session_id} field={self.pmc_field!r} "
            f"confidence={self.confidence} error={self.error_message is not None}>"
        )
