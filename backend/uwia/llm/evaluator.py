"""
Evaluator — question answering over a text or image context

Every provider response is normalized at this boundary into one of:

    EvaluationSuccess(answer, confidence, model_used)
    EvaluationFailure(reason)

so callers (retrieval synthesis, consolidated evaluation, fusion) never
branch on provider-specific shapes or exceptions.

Response contract requested from the model:
    {"answer": "<value or NOT_FOUND>", "confidence": 0.0-1.0}

Dual validation (optional):
    A second, highest-quality call answers the same question.
      agree    → confidence = min(0.98, mean + 0.10)
      disagree → the more confident answer, confidence × 0.85
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Union

from uwia.llm.gateway import LLMGateway
from uwia.llm.router import ModelRequirements, RoutingStrategy

logger = logging.getLogger(__name__)

NOT_FOUND = "NOT_FOUND"

DEFAULT_CONFIDENCE = 0.5

_SYSTEM_PROMPT = """\
You are an insurance underwriting analyst reviewing claim documents.
Answer the question using ONLY the provided document content.

Respond with a single JSON object and nothing else:
{{"answer": "<answer>", "confidence": <number between 0 and 1>}}

Rules:
- If the information is not present, answer "NOT_FOUND".
- If the question asks for several values separated by semicolons, return
  exactly that many values in that order, joined by ";" with no spaces.
- {type_rule}
"""

_TYPE_RULES = {
    "boolean": "Answer YES or NO for each requested value.",
    "date":    "Format dates as MM-DD-YY.",
    "number":  "Return numbers with digits only, no currency symbols or units.",
    "text":    "Keep each value concise; copy names and identifiers exactly as written.",
}


# ---------------------------------------------------------------------------
# Normalized result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EvaluationSuccess:
    answer:     str
    confidence: float
    model_used: str = ""
    kind:       str = "success"


@dataclass(frozen=True)
class EvaluationFailure:
    reason: str
    kind:   str = "failure"


EvaluationResult = Union[EvaluationSuccess, EvaluationFailure]


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

_FENCE_RE       = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def parse_evaluation(raw: str) -> tuple[str, float]:
    """
    Extract (answer, confidence) from a model response.

    Accepts bare JSON, fenced JSON, or JSON embedded in prose. Anything else
    is taken verbatim as the answer with DEFAULT_CONFIDENCE.
    """
    text = _FENCE_RE.sub("", raw.strip()).strip()

    data = None
    try:
        data = json.loads(text)
    except ValueError:
        match = _JSON_OBJECT_RE.search(text)
        if match:
            try:
                data = json.loads(match.group(0))
            except ValueError:
                data = None

    if not isinstance(data, dict) or "answer" not in data:
        return text, DEFAULT_CONFIDENCE

    answer = data["answer"]
    if isinstance(answer, list):
        answer = ";".join(str(a).strip() for a in answer)
    answer = str(answer).strip()

    try:
        confidence = _clamp(float(data.get("confidence", DEFAULT_CONFIDENCE)))
    except (TypeError, ValueError):
        confidence = DEFAULT_CONFIDENCE
    return answer, confidence


def normalize_for_type(answer: str, expected_type: str) -> str:
    """Canonicalize single boolean answers to YES / NO; leave others as given."""
    if expected_type != "boolean" or ";" in answer:
        return answer
    upper = answer.strip().upper()
    if upper.startswith("YES"):
        return "YES"
    if upper.startswith("NO") and upper != NOT_FOUND:
        return "NO"
    return answer


def analyze_consensus(
    primary:    EvaluationSuccess,
    validation: EvaluationSuccess,
) -> EvaluationSuccess:
    agree = primary.answer.strip().upper() == validation.answer.strip().upper()
    if agree:
        mean = (primary.confidence + validation.confidence) / 2
        return EvaluationSuccess(primary.answer, min(0.98, mean + 0.1), primary.model_used)

    winner = validation if validation.confidence > primary.confidence else primary
    confidence = max(primary.confidence, validation.confidence) * 0.85
    logger.info(
        "Dual validation disagreement | primary=%r validation=%r chosen=%r",
        primary.answer, validation.answer, winner.answer,
    )
    return EvaluationSuccess(winner.answer, confidence, winner.model_used)


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------

class Evaluator:
    """
    Provider-agnostic evaluator over the LLM gateway.

    Usage::

        evaluator = Evaluator()
        result = await evaluator.evaluate_text(document_text, question, "date")
        if isinstance(result, EvaluationSuccess):
            ...
    """

    def __init__(
        self,
        gateway:         LLMGateway | None = None,
        dual_validation: bool | None = None,
    ) -> None:
        if dual_validation is None:
            from uwia.core.config import settings
            dual_validation = settings.enable_dual_validation
        self._gateway         = gateway or LLMGateway()
        self._dual_validation = dual_validation

    async def evaluate_text(
        self,
        context:       str,
        question:      str,
        expected_type: str = "text",
    ) -> EvaluationResult:
        user = f"DOCUMENT CONTENT:\n{context}\n\nQUESTION:\n{question}"
        messages = LLMGateway.build_messages(self._system_prompt(expected_type), user)

        primary = await self._run(messages, ModelRequirements(), expected_type)
        if not self._dual_validation or not isinstance(primary, EvaluationSuccess):
            return primary

        validation = await self._run(
            messages,
            ModelRequirements(strategy=RoutingStrategy.HIGHEST_QUALITY),
            expected_type,
        )
        if not isinstance(validation, EvaluationSuccess):
            logger.warning("Dual validation failed; keeping primary | reason=%s", validation.reason)
            return primary
        return analyze_consensus(primary, validation)

    async def evaluate_image(
        self,
        images:        list[bytes],
        question:      str,
        expected_type: str = "text",
    ) -> EvaluationResult:
        if not images:
            return EvaluationFailure("no page images supplied")
        user = (
            "The attached images are pages of the claim document. Inspect signatures, "
            "stamps, checkboxes and handwriting carefully.\n\nQUESTION:\n" + question
        )
        messages = LLMGateway.build_vision_messages(self._system_prompt(expected_type), user, images)
        return await self._run(
            messages,
            ModelRequirements(strategy=RoutingStrategy.HIGHEST_QUALITY, require_vision=True),
            expected_type,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _system_prompt(expected_type: str) -> str:
        return _SYSTEM_PROMPT.format(type_rule=_TYPE_RULES.get(expected_type, _TYPE_RULES["text"]))

    async def _run(self, messages, requirements: ModelRequirements, expected_type: str) -> EvaluationResult:
        try:
            response = await self._gateway.invoke(messages, requirements=requirements)
        except Exception as exc:
            logger.warning("Evaluation call failed | error=%s: %s", type(exc).__name__, exc)
            return EvaluationFailure(f"{type(exc).__name__}: {exc}")

        answer, confidence = parse_evaluation(response.content)
        if not answer:
            return EvaluationFailure("model returned an empty answer")
        return EvaluationSuccess(
            answer=normalize_for_type(answer, expected_type),
            confidence=confidence,
            model_used=response.model_used,
        )
