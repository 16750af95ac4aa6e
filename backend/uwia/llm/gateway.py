"""
LLM Gateway — Unified Entry Point for all LLM Requests

The gateway is the single call site for keyword extraction, answer synthesis
and consolidated evaluation. It composes:

  ┌─────────────────────────────────────────────────────┐
  │  LLMGateway.invoke()                                │
  │       │                                             │
  │       ▼                                             │
  │  ModelRouter.select()        ← pick best model      │
  │       │                                             │
  │       ▼                                             │
  │  FallbackChain.ainvoke       ← auto-failover        │
  │       │                                             │
  │       ▼                                             │
  │  structured log line         ← model, tokens, ms    │
  │       │                                             │
  │       ▼                                             │
  │  GatewayResponse                                    │
  └─────────────────────────────────────────────────────┘

Usage::

    gateway = LLMGateway()
    response = await gateway.invoke(
        LLMGateway.build_messages(system_prompt, question),
        requirements=ModelRequirements(strategy=RoutingStrategy.LOWEST_LATENCY),
    )

    # Page images (vision path)
    messages = LLMGateway.build_vision_messages(system_prompt, question, [png_bytes])
    response = await gateway.invoke(messages, requirements=ModelRequirements(require_vision=True))
"""

from __future__ import annotations

import base64
import logging
import time
import uuid
from dataclasses import dataclass, replace

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from uwia.llm.fallback import FallbackChain
from uwia.llm.router import ModelRequirements, ModelRouter

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Token usage estimation (approximate: real count from API response)
# ---------------------------------------------------------------------------

def _estimate_tokens(messages: list[BaseMessage]) -> int:
    """
    Rough token count: 4 chars ≈ 1 token (OpenAI heuristic).
    Image parts are not counted; used only for routing and logging.
    """
    total_chars = 0
    for m in messages:
        if isinstance(m.content, str):
            total_chars += len(m.content)
        else:
            total_chars += sum(
                len(part.get("text", "")) for part in m.content if isinstance(part, dict)
            )
    return max(1, total_chars // 4)


# ---------------------------------------------------------------------------
# Response dataclass
# ---------------------------------------------------------------------------

@dataclass
class GatewayResponse:
    """The result of a single LLM gateway call."""
    content:       str
    model_used:    str
    provider:      str
    input_tokens:  int
    output_tokens: int
    latency_ms:    float
    request_id:    str


# ---------------------------------------------------------------------------
# LLMGateway
# ---------------------------------------------------------------------------

class LLMGateway:
    """
    Provider-agnostic LLM interface with routing and fallback.

    Instantiate once per application or per-request.
    All public methods are async and safe for concurrent use.
    """

    def __init__(self, router: ModelRouter | None = None) -> None:
        self._router = router or ModelRouter()

    async def invoke(
        self,
        messages:     list[BaseMessage],
        requirements: ModelRequirements | None = None,
    ) -> GatewayResponse:
        """
        Invoke an LLM with automatic provider routing and fallback.

        Returns:
            GatewayResponse with content, model_used, token counts, latency.
        """
        reqs = requirements or ModelRequirements()
        reqs = replace(reqs, max_input_tokens=max(reqs.max_input_tokens, _estimate_tokens(messages)))
        chain = FallbackChain(requirements=reqs, router=self._router)

        t0            = time.perf_counter()
        content, spec = await chain.ainvoke(messages)
        latency       = (time.perf_counter() - t0) * 1000

        response = GatewayResponse(
            content       = content,
            model_used    = spec.model_id,
            provider      = spec.provider.value,
            input_tokens  = _estimate_tokens(messages),
            output_tokens = max(1, len(content) // 4),
            latency_ms    = latency,
            request_id    = str(uuid.uuid4()),
        )

        logger.info(
            "LLMGateway | model=%s provider=%s tokens_in=%d tokens_out=%d latency_ms=%.1f",
            response.model_used, response.provider,
            response.input_tokens, response.output_tokens, response.latency_ms,
        )
        return response

    # -----------------------------------------------------------------------
    # Convenience: build message lists
    # -----------------------------------------------------------------------

    @staticmethod
    def build_messages(system_prompt: str, user_question: str) -> list[BaseMessage]:
        """Build a standard [SystemMessage, HumanMessage] list."""
        return [
            SystemMessage(content=system_prompt),
            HumanMessage(content=user_question),
        ]

    @staticmethod
    def build_vision_messages(
        system_prompt: str,
        user_question: str,
        images:        list[bytes],
    ) -> list[BaseMessage]:
        """Attach PNG page images as base64 data-URI content parts."""
        parts: list[dict] = [{"type": "text", "text": user_question}]
        for png in images:
            encoded = base64.b64encode(png).decode("ascii")
            parts.append({
                "type": "image_url",
                "image_url": {"url": f"data:image/png;base64,{encoded}", "detail": "high"},
            })
        return [
            SystemMessage(content=system_prompt),
            HumanMessage(content=parts),
        ]
