"""
Consolidated Evaluation
═══════════════════════

Answers every active consolidated prompt of a document against a ready
session, returning one fused, field-ordered answer per prompt.

  EvaluateRequest(document_name, variables, claim_reference)
     │
     ▼
  session gate ──────────── SessionNotFound / SessionNotReady
     │
     ▼
  prompts = load_consolidated_prompts(document_name)
  text    = stored chunks joined in chunk_index order
          (staged upload gone → StagedFileMissing when vision is needed)
     │
     ▼  per prompt
  ┌──────────────────────────────────────────────────────────────┐
  │ variables   = caller values + values recovered from the text │
  │ question    = substitute %variables%                         │
  │ text path   → keyword-dense windows of text under the budget │
  │               → Evaluator.evaluate_text(context, question)   │
  │ classifier  → needs vision?                                  │
  │ vision path → rasterize hinted + leading pages               │
  │                 ConversionTimeout → first page only          │
  │                 ConversionTimeout → text only                │
  │               evaluate page by page, merge, early exit       │
  │ fuse_answers(field_names, text, vision)                      │
  └──────────────────────────────────────────────────────────────┘
     │
     ▼
  EvaluationStore.record(results)   every answer and every failure

Early exit per page: a boolean answer stops once every field is YES with
confidence ≥ 0.7; any other type stops once no field is NOT_FOUND with
confidence ≥ 0.85.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from uwia.core.exceptions import ConversionTimeout, SessionNotFound, SessionNotReady
from uwia.llm.evaluator import EvaluationSuccess, Evaluator
from uwia.processing.rasterizer import PageRasterizer
from uwia.rag.context import ContextBuilder
from uwia.rag.keywords import fallback_keywords
from uwia.schemas.sessions import FieldAnswer, SessionStatus
from uwia.services.chunk_storage import ChunkStorageService
from uwia.services.evaluation_store import EvaluationStore
from uwia.storage.staging import UploadStaging
from uwia.underwriting.classification import VisualClassifier
from uwia.underwriting.fusion import (
    NOT_FOUND,
    YES,
    fuse_answers,
    merge_page_answers,
    split_answer,
)
from uwia.underwriting.prompts import ConsolidatedPrompt, fill_missing_variables

logger = logging.getLogger(__name__)

BOOLEAN_EXIT_CONFIDENCE = 0.70
VALUE_EXIT_CONFIDENCE   = 0.85

CONTEXT_KEYWORDS = 12

PromptLoader = Callable[[str], Awaitable[list[ConsolidatedPrompt]]]


@dataclass
class PathAnswer:
    answer:     str | None
    confidence: float | None
    error:      str | None = None


def should_stop_early(answer: str, confidence: float, expected_type: str) -> bool:
    values = split_answer(answer)
    if not values:
        return False
    if expected_type == "boolean":
        return confidence >= BOOLEAN_EXIT_CONFIDENCE and all(v.upper() == YES for v in values)
    return confidence >= VALUE_EXIT_CONFIDENCE and all(v != NOT_FOUND for v in values)


class ConsolidatedEvaluator:

    def __init__(
        self,
        store:            ChunkStorageService,
        staging:          UploadStaging,
        prompt_loader:    PromptLoader,
        evaluator:        Evaluator | None = None,
        rasterizer:       PageRasterizer | None = None,
        classifier:       VisualClassifier | None = None,
        max_vision_pages: int | None = None,
        render_scale:     float | None = None,
        context:          ContextBuilder | None = None,
        recorder:         EvaluationStore | None = None,
    ) -> None:
        from uwia.core.config import settings

        self._store         = store
        self._staging       = staging
        self._load_prompts  = prompt_loader
        self._evaluator     = evaluator or Evaluator()
        self._rasterizer    = rasterizer or PageRasterizer(settings.vision_render_scale)
        self._classifier    = classifier or VisualClassifier()
        self._max_pages     = max_vision_pages or settings.max_vision_pages
        self._render_scale  = render_scale or settings.vision_render_scale
        self._context       = context or ContextBuilder.from_settings()
        self._recorder      = recorder

    async def evaluate(
        self,
        session_id:      str,
        document_name:   str,
        variables:       dict[str, str] | None = None,
        claim_reference: str | None = None,
    ) -> list[FieldAnswer]:
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.status != SessionStatus.READY.value:
            raise SessionNotReady(session_id, session.status)

        prompts = await self._load_prompts(document_name)
        if not prompts:
            logger.warning("No active prompts | document=%s", document_name)
            return []

        chunks = await self._store.get_chunks(session_id)
        text   = "".join(c.content for c in chunks)
        pdf_bytes: bytes | None = None

        results: list[FieldAnswer] = []
        for prompt in prompts:
            requirement = self._classifier.classify(prompt.pmc_field, prompt.question)
            if requirement.requires_visual and pdf_bytes is None:
                pdf_bytes = await self._staging.load(session_id)
            resolved = fill_missing_variables(prompt.question, variables or {}, text)
            results.append(
                await self._evaluate_prompt(prompt, resolved, text, pdf_bytes, requirement)
            )

        logger.info(
            "Consolidated evaluation | session=%s document=%s prompts=%d vision=%d",
            session_id, document_name, len(results), sum(1 for r in results if r.used_vision),
        )
        if self._recorder is not None:
            await self._recorder.record(session_id, document_name, results, claim_reference)
        return results

    # ------------------------------------------------------------------
    # Per prompt
    # ------------------------------------------------------------------

    async def _evaluate_prompt(self, prompt, variables, text, pdf_bytes, requirement) -> FieldAnswer:
        t0       = time.monotonic()
        question = prompt.resolve(variables)

        text_path = PathAnswer(None, None)
        if requirement.needs_text or not requirement.requires_visual:
            text_path = await self._text_path(text, question, prompt)

        vision_path = PathAnswer(None, None)
        if requirement.requires_visual and pdf_bytes is not None:
            vision_path = await self._vision_path(pdf_bytes, question, prompt, requirement)

        fused = fuse_answers(
            list(prompt.field_names),
            text_path.answer,
            vision_path.answer,
            text_path.confidence,
            vision_path.confidence,
        )

        errors = [e for e in (text_path.error, vision_path.error) if e]
        return FieldAnswer(
            pmc_field=prompt.pmc_field,
            question=question,
            answer=fused.answer,
            confidence=round(fused.confidence, 3),
            expected_type=prompt.expected_type,
            field_names=list(prompt.field_names),
            used_vision=vision_path.answer is not None,
            processing_time_ms=int((time.monotonic() - t0) * 1000),
            error="; ".join(errors) if errors else None,
        )

    async def _text_path(self, text: str, question: str, prompt: ConsolidatedPrompt) -> PathAnswer:
        if not text.strip():
            return PathAnswer(None, None, "no document text")
        hints    = " ".join(prompt.field_names).replace("_", " ")
        keywords = fallback_keywords(f"{question} {hints}", CONTEXT_KEYWORDS)
        context  = self._context.build([text], keywords)
        result = await self._evaluator.evaluate_text(context, question, prompt.expected_type)
        if isinstance(result, EvaluationSuccess):
            return PathAnswer(result.answer, result.confidence)
        return PathAnswer(None, None, f"text: {result.reason}")

    async def _vision_path(self, pdf_bytes, question, prompt, requirement) -> PathAnswer:
        images = await self._render(pdf_bytes, requirement)
        if not images:
            return PathAnswer(None, None, "vision: no pages rendered")

        answers: list[str] = []
        confidence = 0.0
        failures: list[str] = []

        for page in images:
            result = await self._evaluator.evaluate_image([images[page]], question, prompt.expected_type)
            if not isinstance(result, EvaluationSuccess):
                failures.append(result.reason)
                continue

            answers.append(result.answer)
            confidence = max(confidence, result.confidence)
            merged = ";".join(merge_page_answers(prompt.expected_fields_count, answers))
            if should_stop_early(merged, confidence, prompt.expected_type):
                logger.info(
                    "Vision early exit | field=%s page=%d confidence=%.2f",
                    prompt.pmc_field, page, confidence,
                )
                break

        if not answers:
            return PathAnswer(None, None, f"vision: {failures[0]}" if failures else None)
        merged = ";".join(merge_page_answers(prompt.expected_fields_count, answers))
        return PathAnswer(merged, confidence)

    async def _render(self, pdf_bytes: bytes, requirement) -> dict[int, bytes]:
        page_count = await self._rasterizer.page_count(pdf_bytes)
        pages = requirement.resolve_pages(page_count)
        for page in range(1, page_count + 1):
            if len(pages) >= self._max_pages:
                break
            if page not in pages:
                pages.append(page)

        try:
            images = await self._rasterizer.rasterize(pdf_bytes, pages, self._render_scale)
        except ConversionTimeout as exc:
            logger.warning("Rasterization degraded to first page | %s", exc.message)
            try:
                images = await self._rasterizer.rasterize(pdf_bytes, [1], self._render_scale)
            except ConversionTimeout:
                logger.warning("Rasterization failed; text only | pages=%d", page_count)
                return {}

        return {page: images[page] for page in pages if page in images}
