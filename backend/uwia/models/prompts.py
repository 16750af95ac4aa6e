"""
ORM Model — Consolidated Document Prompts

One row per (document_name, pmc_field). A consolidated prompt asks a single
question that yields several named answers, returned as one semicolon-joined
string whose positions are defined by ``field_names``.

Table layout: uwia.document_prompts

  document_name   e.g. "POLICY.pdf", "LOP.pdf"
  pmc_field       logical answer slot, e.g. "policy_responses"
  question        template with %variable% placeholders
  expected_type   text | boolean | date | number
  field_names     ordered JSON array — the answer vector's positional contract
  prompt_order    evaluation order within a document
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from uwia.models.sessions import Base


class DocumentPrompt(Base):
    """Read-only configuration consumed by the consolidated evaluation."""

    __tablename__ = "document_prompts"
    __table_args__ = (
        CheckConstraint(
            "expected_type IN ('text', 'boolean', 'date', 'number')",
            name="document_prompts_type_check",
        ),
        CheckConstraint(
            "expected_fields_count = jsonb_array_length(field_names)",
            name="document_prompts_field_count_check",
        ),
        UniqueConstraint("document_name", "pmc_field", name="uq_document_prompts_field"),
        Index("idx_document_prompts_active", "document_name", "is_active"),
        {"schema": "uwia"},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    document_name: Mapped[str] = mapped_column(String(255), nullable=False)
    pmc_field: Mapped[str]     = mapped_column(String(255), nullable=False)

    question: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Question template. %variable% placeholders resolved per claim.",
    )
    expected_type: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="text",
        server_default="text",
    )
    field_names: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default="[]",
    )
    expected_fields_count: Mapped[int] = mapped_column(Integer, nullable=False)

    prompt_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
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

    def __repr__(self) -> str:
        return (
            f"<DocumentPrompt document={self.document_name!r} field={self.pmc_field!r} "
            f"fields={self.expected_fields_count} active={self.is_active}>"
        )
