"""
Consolidated Prompts — loading and %variable% resolution

A consolidated prompt is one question per (document_name, pmc_field) that
yields several answers in a fixed order (field_names). Question templates
carry %variable% placeholders filled from the claim the document belongs to:

    "Does the policy name %insured_name% as insured; what is the policy number?"
            │
            ▼  variables = {"insured_name": "JOHN DOE"}
    "Does the policy name JOHN DOE as insured; what is the policy number?"

A comparison against an empty variable is meaningless, so
"compare with %x% ...." with x == "" becomes an extraction instruction
instead of a comparison against nothing.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from uwia.models.prompts import DocumentPrompt

logger = logging.getLogger(__name__)

EXPECTED_TYPES = frozenset({"text", "boolean", "date", "number"})

_PLACEHOLDER_RE = re.compile(r"%([A-Za-z_][A-Za-z0-9_]*)%")

_EXTRACT_INSTEAD = "extract and return the value found in the document."

# Used to recover a variable from document text when the caller did not supply it.
_CONTENT_PATTERNS: dict[str, list[re.Pattern]] = {
    "insurance_company": [
        re.compile(r"(?:Insurance Company|Carrier|Insurer):\s*([^\n]+)", re.IGNORECASE),
        re.compile(r"([A-Z][A-Za-z&\s]+(?:Insurance|Assurance|Mutual)[A-Za-z\s]*(?:Company|Co\.?|Inc\.?)?)"),
    ],
    "insured_name": [
        re.compile(r"(?:Insured|Policyholder|Named Insured):\s*([^\n]+)", re.IGNORECASE),
    ],
    "policy_number": [
        re.compile(r"(?:Policy\s*(?:No\.?|Number|#)):?\s*([A-Z0-9][A-Z0-9\-]+)", re.IGNORECASE),
    ],
    "claim_number": [
        re.compile(r"(?:Claim\s*(?:No\.?|Number|#)):?\s*([A-Z0-9][A-Z0-9\-]+)", re.IGNORECASE),
    ],
}


# ---------------------------------------------------------------------------
# Prompt value object
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConsolidatedPrompt:
    document_name:         str
    pmc_field:             str
    question:              str
    expected_type:         str
    field_names:           tuple[str, ...]
    expected_fields_count: int
    prompt_order:          int = 0

    def __post_init__(self) -> None:
        if self.expected_type not in EXPECTED_TYPES:
            raise ValueError(
                f"Prompt {self.pmc_field!r}: unknown expected_type {self.expected_type!r}"
            )
        if self.expected_fields_count != len(self.field_names):
            raise ValueError(
                f"Prompt {self.pmc_field!r}: expected_fields_count={self.expected_fields_count} "
                f"but {len(self.field_names)} field_names"
            )

    @classmethod
    def from_row(cls, row: DocumentPrompt) -> "ConsolidatedPrompt":
        return cls(
            document_name=row.document_name,
            pmc_field=row.pmc_field,
            question=row.question,
            expected_type=row.expected_type,
            field_names=tuple(row.field_names or ()),
            expected_fields_count=row.expected_fields_count,
            prompt_order=row.prompt_order,
        )

    def resolve(self, variables: dict[str, str]) -> str:
        return substitute_variables(self.question, variables)


async def load_consolidated_prompts(db: AsyncSession, document_name: str) -> list[ConsolidatedPrompt]:
    """
    Active prompts for a document, in evaluation order.
    Rows that violate the field-count contract are skipped with an error log.
    """
    result = await db.execute(
        select(DocumentPrompt)
        .where(
            DocumentPrompt.document_name == document_name,
            DocumentPrompt.is_active.is_(True),
        )
        .order_by(DocumentPrompt.prompt_order, DocumentPrompt.id)
    )

    prompts: list[ConsolidatedPrompt] = []
    for row in result.scalars().all():
        try:
            prompts.append(ConsolidatedPrompt.from_row(row))
        except ValueError as exc:
            logger.error("Invalid prompt skipped | document=%s error=%s", document_name, exc)

    logger.info("Prompts loaded | document=%s count=%d", document_name, len(prompts))
    return prompts


# ---------------------------------------------------------------------------
# Variable substitution
# ---------------------------------------------------------------------------

def _normalize_variables(variables: dict[str, str]) -> dict[str, str]:
    """Accept keys with or without surrounding %; values are stringified and trimmed."""
    return {
        key.strip("%"): ("" if value is None else str(value).strip())
        for key, value in (variables or {}).items()
    }


def find_placeholders(template: str) -> list[str]:
    seen: list[str] = []
    for name in _PLACEHOLDER_RE.findall(template):
        if name not in seen:
            seen.append(name)
    return seen


def missing_variables(template: str, variables: dict[str, str]) -> list[str]:
    values = _normalize_variables(variables)
    return [name for name in find_placeholders(template) if name not in values]


def substitute_variables(template: str, variables: dict[str, str]) -> str:
    """
    Replace %name% placeholders.

    - "compare with %name% ...." where name is empty → extraction instruction
    - empty value elsewhere → placeholder removed
    - unknown placeholder → left in place, logged
    """
    values = _normalize_variables(variables)

    for name in find_placeholders(template):
        if name in values and not values[name]:
            template = re.sub(
                rf"compare\s+(?:it\s+)?with\s+%{name}%[^.]*\.{{1,4}}",
                _EXTRACT_INSTEAD,
                template,
                flags=re.IGNORECASE,
            )

    missing = [name for name in find_placeholders(template) if name not in values]
    if missing:
        logger.warning("Unresolved prompt variables | missing=%s", missing)

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        return values[name] if name in values else match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, template)


def extract_variable_from_content(name: str, content: str) -> str | None:
    """Best-effort recovery of a claim variable from document text."""
    for pattern in _CONTENT_PATTERNS.get(name.strip("%"), []):
        match = pattern.search(content)
        if match:
            value = match.group(1).strip()
            if value:
                return value
    return None


def fill_missing_variables(template: str, variables: dict[str, str], content: str) -> dict[str, str]:
    """
    Variables for template, with placeholders the caller did not supply
    recovered from the document text where a pattern matches.
    """
    filled = _normalize_variables(variables)
    for name in missing_variables(template, filled):
        value = extract_variable_from_content(name, content)
        if value is not None:
            filled[name] = value
            logger.info("Variable recovered from document | name=%s", name)
    return filled
