"""
LLM Fallback Chain — Automatic Provider Failover

When the primary LLM provider returns a transient error (server error, rate
limit, timeout), the FallbackChain tries the next admissible model until one
succeeds or all are exhausted.

Chain order:
  1. The router's pick for the requirements (primary)
  2. Every other admissible model, highest quality first

Retry policy:
  - Retryable:     HTTP 5xx, RateLimitError, APITimeoutError, connection errors
  - Non-retryable: HTTP 4xx (bad request, auth failure) — fail immediately
  - Per-attempt timeout: settings.llm_timeout_seconds

Circuit breaker pattern:
  If a provider fails N consecutive times, it is skipped until its window
  resets. Implemented as an in-process counter per provider.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from langchain_core.messages import BaseMessage

from uwia.llm.router import ModelRequirements, ModelRouter, ModelSpec, Provider

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Retryable exception detection
# ---------------------------------------------------------------------------

_RETRYABLE_EXCEPTION_TYPES = (
    # openai
    "RateLimitError",
    "ServiceUnavailableError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    # httpx / generic
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
)


def _is_retryable(exc: Exception) -> bool:
    """True if the exception class name suggests a transient provider error."""
    name = type(exc).__name__
    return any(name.endswith(r) for r in _RETRYABLE_EXCEPTION_TYPES)


# ---------------------------------------------------------------------------
# Circuit breaker (in-process)
# ---------------------------------------------------------------------------

@dataclass
class _CircuitState:
    failures:       int   = 0
    open_until:     float = 0.0        # monotonic time after which to retry
    OPEN_THRESHOLD: int   = 3          # consecutive failures before opening
    RESET_SECONDS:  int   = 60         # how long circuit stays open


_CIRCUIT_STATES: dict[Provider, _CircuitState] = {
    p: _CircuitState() for p in Provider
}


def _is_circuit_open(provider: Provider) -> bool:
    state = _CIRCUIT_STATES[provider]
    if state.failures < state.OPEN_THRESHOLD:
        return False
    if time.monotonic() >= state.open_until:
        state.failures = 0     # half-open
        return False
    return True


def _record_failure(provider: Provider) -> None:
    state = _CIRCUIT_STATES[provider]
    state.failures  += 1
    state.open_until = time.monotonic() + state.RESET_SECONDS
    logger.warning(
        "Circuit breaker | provider=%s failures=%d open_until=+%ds",
        provider, state.failures, state.RESET_SECONDS,
    )


def _record_success(provider: Provider) -> None:
    _CIRCUIT_STATES[provider].failures = 0


def reset_circuits() -> None:
    for state in _CIRCUIT_STATES.values():
        state.failures   = 0
        state.open_until = 0.0


# ---------------------------------------------------------------------------
# FallbackChain
# ---------------------------------------------------------------------------

class FallbackChain:
    """
    Ordered chain of LLM providers with automatic failover.

    Usage::

        chain = FallbackChain(requirements=ModelRequirements())
        content, spec = await chain.ainvoke(messages)

    The chain is stateless per request and safe to reuse across requests.
    """

    def __init__(
        self,
        requirements:        ModelRequirements | None = None,
        per_attempt_timeout: float | None = None,
        router:              ModelRouter | None = None,
    ) -> None:
        if per_attempt_timeout is None:
            from uwia.core.config import settings
            per_attempt_timeout = settings.llm_timeout_seconds
        self._requirements        = requirements or ModelRequirements()
        self._per_attempt_timeout = per_attempt_timeout
        self._router              = router or ModelRouter()
        self._specs               = self._build_fallback_list()

    @property
    def specs(self) -> list[ModelSpec]:
        return list(self._specs)

    def _build_fallback_list(self) -> list[ModelSpec]:
        primary = self._router.select(self._requirements)
        others  = [
            s for s in self._router.candidates(self._requirements)
            if s.model_id != primary.model_id or s.provider != primary.provider
        ]
        others.sort(key=lambda s: s.quality_score, reverse=True)
        return [primary] + others

    async def ainvoke(self, messages: list[BaseMessage]) -> tuple[str, ModelSpec]:
        """
        Invoke the chain with automatic fallback.

        Returns the response text and the spec that produced it.

        Raises:
            RuntimeError: If all providers fail.
        """
        errors: list[str] = []

        for spec in self._specs:
            if _is_circuit_open(spec.provider):
                logger.debug("Skipping provider=%s (circuit open)", spec.provider)
                continue

            llm = self._router.build_llm(spec)
            try:
                logger.debug("FallbackChain | trying provider=%s model=%s", spec.provider, spec.model_id)
                result = await asyncio.wait_for(
                    llm.ainvoke(messages),
                    timeout=self._per_attempt_timeout,
                )
                _record_success(spec.provider)
                return result.content, spec  # type: ignore[return-value]

            except asyncio.TimeoutError:
                err = f"{spec.provider}/{spec.model_id}: timed out after {self._per_attempt_timeout}s"
                logger.warning("FallbackChain | %s", err)
                _record_failure(spec.provider)
                errors.append(err)

            except Exception as exc:
                if not _is_retryable(exc):
                    raise   # 4xx, auth failure: non-retryable, surface immediately
                err = f"{spec.provider}/{spec.model_id}: {type(exc).__name__}: {exc}"
                logger.warning("FallbackChain | retryable error — %s", err)
                _record_failure(spec.provider)
                errors.append(err)

        raise RuntimeError(
            "All LLM providers failed. Errors:\n" + "\n".join(f"  - {e}" for e in errors)
        )
