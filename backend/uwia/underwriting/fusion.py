"""
Consolidated Answer Fusion
══════════════════════════

A consolidated prompt yields one semicolon-joined answer whose positions are
fixed by the prompt's field_names. The text path and the vision path each
produce such a vector; fuse_answers() reconciles them field by field.

Per field i (t = text value, v = vision value, missing → NOT_FOUND):

    t == NOT_FOUND, v == NOT_FOUND   →  NOT_FOUND
    exactly one is NOT_FOUND         →  the other
    t == v                           →  t
    {t, v} == {YES, NO}              →  YES        (presence bias, case-insensitive)
    otherwise                        →  the longer; equal length → t

Length policy for each input vector:
    longer than field_names  → truncated
    shorter than field_names → padded with NOT_FOUND
    each mismatch is logged; strict=True raises AnswerFieldCountMismatch

Confidence:
    max of the confidences reported by the paths that ran,
    else the fraction of fused fields that are not NOT_FOUND.

Page merge (vision path, one answer per page):
    per field priority   data > YES > NO > NOT_FOUND
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from uwia.core.exceptions import AnswerFieldCountMismatch

logger = logging.getLogger(__name__)

NOT_FOUND = "NOT_FOUND"
YES       = "YES"
NO        = "NO"
SEPARATOR = ";"


@dataclass
class FusedAnswer:
    answer:     str
    values:     list[str]
    confidence: float
    mismatches: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Vector helpers
# ---------------------------------------------------------------------------

def is_sentinel(value: str | None) -> bool:
    return value is None or not value.strip() or value.strip().upper() == NOT_FOUND


def split_answer(answer: str | list[str] | None) -> list[str]:
    """Split a semicolon-joined answer into trimmed values; blanks become NOT_FOUND."""
    if answer is None:
        return []
    parts = answer if isinstance(answer, list) else answer.split(SEPARATOR)
    return [NOT_FOUND if is_sentinel(p) else p.strip() for p in parts]


def normalize_answer_vector(
    answer:         str | list[str] | None,
    expected_count: int,
    source:         str = "answer",
    strict:         bool = False,
) -> list[str]:
    """
    Split and force the vector to expected_count entries.

    A missing answer (None) becomes all NOT_FOUND without counting as a
    mismatch.
    """
    if answer is None:
        return [NOT_FOUND] * expected_count

    values = split_answer(answer)
    if len(values) != expected_count:
        mismatch = AnswerFieldCountMismatch(expected_count, len(values), source)
        if strict:
            raise mismatch
        logger.warning("Field count mismatch | %s", mismatch.message)
        values = (values + [NOT_FOUND] * expected_count)[:expected_count]
    return values


# ---------------------------------------------------------------------------
# Field-level rules
# ---------------------------------------------------------------------------

def fuse_field(text_value: str | None, vision_value: str | None) -> str:
    t_missing = is_sentinel(text_value)
    v_missing = is_sentinel(vision_value)

    if t_missing and v_missing:
        return NOT_FOUND
    if v_missing:
        return text_value.strip()
    if t_missing:
        return vision_value.strip()

    t, v = text_value.strip(), vision_value.strip()
    if t == v:
        return t
    if {t.upper(), v.upper()} == {YES, NO}:
        return t if t.upper() == YES else v
    return v if len(v) > len(t) else t


def fuse_answers(
    field_names:       list[str],
    text_answer:       str | list[str] | None,
    vision_answer:     str | list[str] | None,
    text_confidence:   float | None = None,
    vision_confidence: float | None = None,
    strict:            bool = False,
) -> FusedAnswer:
    """Reconcile the text and vision vectors into one answer of len(field_names)."""
    expected   = len(field_names)
    mismatches = []

    for source, answer in (("text", text_answer), ("vision", vision_answer)):
        if answer is not None and len(split_answer(answer)) != expected:
            mismatches.append(source)

    text_values   = normalize_answer_vector(text_answer, expected, "text", strict)
    vision_values = normalize_answer_vector(vision_answer, expected, "vision", strict)

    fused = [fuse_field(t, v) for t, v in zip(text_values, vision_values)]

    reported = [
        c for a, c in ((text_answer, text_confidence), (vision_answer, vision_confidence))
        if a is not None and c is not None
    ]
    if reported:
        confidence = max(reported)
    else:
        found = sum(1 for v in fused if v != NOT_FOUND)
        confidence = found / expected if expected else 0.0

    if logger.isEnabledFor(logging.DEBUG):
        for name, t, v, f in zip(field_names, text_values, vision_values, fused):
            logger.debug("Fusion | field=%s text=%r vision=%r fused=%r", name, t, v, f)

    return FusedAnswer(
        answer=SEPARATOR.join(fused),
        values=fused,
        confidence=confidence,
        mismatches=mismatches,
    )


# ---------------------------------------------------------------------------
# Page-level merge for the vision path
# ---------------------------------------------------------------------------

def _value_priority(value: str) -> int:
    upper = value.strip().upper()
    if is_sentinel(value):
        return 0
    if upper == NO:
        return 1
    if upper == YES:
        return 2
    return 3


def merge_page_answers(expected_count: int, page_answers: list[str]) -> list[str]:
    """
    Merge per-page answer vectors field by field.
    Priority: data > YES > NO > NOT_FOUND; earlier pages win ties.
    """
    merged = [NOT_FOUND] * expected_count
    for answer in page_answers:
        values = normalize_answer_vector(answer, expected_count, "vision-page")
        for i, value in enumerate(values):
            if _value_priority(value) > _value_priority(merged[i]):
                merged[i] = value
    return merged
