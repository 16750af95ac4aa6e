"""
LLM Model Router — Provider Selection by Cost / Latency / Capability

The router is the decision engine that answers:
  "Which model should I use for this request?"

Routing axes:

  1. Routing strategy:
       LOWEST_COST     → cheapest model that fits the token budget
       LOWEST_LATENCY  → smallest p50 time-to-first-token
       HIGHEST_QUALITY → most capable model regardless of cost

  2. Hard constraints:
       max_input_tokens   → must fit in the model's context window
       require_json_mode  → only models supporting JSON mode
       require_vision     → only models accepting image inputs

Design principles:
  - The router is pure Python (no I/O, no network) — fast and testable.
  - Model ids and credentials are resolved from settings at build time.
  - The LangChain model object is returned, not a raw string — the fallback
    chain calls .ainvoke() directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from langchain_core.language_models.chat_models import BaseChatModel

from uwia.core.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RoutingStrategy(str, Enum):
    """Model selection optimisation objective."""
    LOWEST_COST     = "lowest_cost"
    LOWEST_LATENCY  = "lowest_latency"
    HIGHEST_QUALITY = "highest_quality"


class Provider(str, Enum):
    OPENAI       = "openai"
    AZURE_OPENAI = "azure_openai"


# ---------------------------------------------------------------------------
# ModelSpec: metadata for each registered model
# ---------------------------------------------------------------------------

@dataclass
class ModelSpec:
    """
    Static metadata for one LLM model/provider combination.

    cost_input_per_1k:   USD per 1 000 input tokens
    cost_output_per_1k:  USD per 1 000 output tokens
    context_window:      Maximum total tokens (input + output)
    p50_latency_ms:      Approximate median time-to-first-token in ms
    quality_score:       Subjective 0-10 quality ranking (for HIGHEST_QUALITY)
    supports_json_mode:  Whether structured JSON output is guaranteed
    supports_vision:     Whether image_url content parts are accepted
    """
    model_id:            str
    provider:            Provider
    context_window:      int
    cost_input_per_1k:   float
    cost_output_per_1k:  float
    p50_latency_ms:      int
    quality_score:       float
    supports_json_mode:  bool                    = True
    supports_vision:     bool                    = False


# ---------------------------------------------------------------------------
# Registered model catalogue
# ---------------------------------------------------------------------------

def registered_models() -> list[ModelSpec]:
    """
    Catalogue built from settings so deployments can swap model ids.
    Azure is registered only when an endpoint is configured.
    """
    specs = [
        ModelSpec(
            model_id           = settings.vision_model,
            provider           = Provider.OPENAI,
            context_window     = 128_000,
            cost_input_per_1k  = 0.0025,
            cost_output_per_1k = 0.010,
            p50_latency_ms     = 900,
            quality_score      = 9.5,
            supports_vision    = True,
        ),
        ModelSpec(
            model_id           = settings.llm_model,
            provider           = Provider.OPENAI,
            context_window     = 128_000,
            cost_input_per_1k  = 0.00015,
            cost_output_per_1k = 0.0006,
            p50_latency_ms     = 400,
            quality_score      = 8.0,
            supports_vision    = True,
        ),
    ]
    if settings.azure_openai_endpoint:
        # Azure OpenAI: same model family, region-pinned endpoint
        specs.append(ModelSpec(
            model_id           = settings.azure_openai_deployment,
            provider           = Provider.AZURE_OPENAI,
            context_window     = 128_000,
            cost_input_per_1k  = 0.0025,
            cost_output_per_1k = 0.010,
            p50_latency_ms     = 1_100,
            quality_score      = 9.4,
            supports_vision    = True,
        ))
    return specs


# ---------------------------------------------------------------------------
# ModelRequirements: caller-specified constraints
# ---------------------------------------------------------------------------

@dataclass
class ModelRequirements:
    """
    Constraints provided by the caller to influence model selection.

    All fields are optional with sensible defaults.
    """
    strategy:           RoutingStrategy = RoutingStrategy.LOWEST_COST
    max_input_tokens:   int             = 4_096
    require_json_mode:  bool            = False
    require_vision:     bool            = False

    def admits(self, spec: ModelSpec) -> bool:
        return (
            spec.context_window >= self.max_input_tokens
            and (not self.require_json_mode or spec.supports_json_mode)
            and (not self.require_vision or spec.supports_vision)
        )


# ---------------------------------------------------------------------------
# ModelRouter
# ---------------------------------------------------------------------------

class ModelRouter:
    """
    Pure-Python routing logic.  No I/O — fast and fully unit-testable.

    Usage::

        router = ModelRouter()
        spec   = router.select(ModelRequirements(require_vision=True))
        llm    = router.build_llm(spec)
    """

    def __init__(self, catalogue: list[ModelSpec] | None = None) -> None:
        self._catalogue = catalogue if catalogue is not None else registered_models()

    @property
    def catalogue(self) -> list[ModelSpec]:
        return list(self._catalogue)

    def candidates(self, requirements: ModelRequirements) -> list[ModelSpec]:
        """Every admissible spec, best first according to the strategy."""
        specs = [spec for spec in self._catalogue if requirements.admits(spec)]

        if requirements.strategy == RoutingStrategy.LOWEST_COST:
            specs.sort(key=lambda s: (s.cost_input_per_1k, s.cost_output_per_1k))
        elif requirements.strategy == RoutingStrategy.LOWEST_LATENCY:
            specs.sort(key=lambda s: s.p50_latency_ms)
        else:   # HIGHEST_QUALITY
            specs.sort(key=lambda s: s.quality_score, reverse=True)
        return specs

    def select(self, requirements: ModelRequirements) -> ModelSpec:
        """
        Select the best ModelSpec for the given requirements.

        Raises:
            RuntimeError: If no registered model satisfies all constraints.
        """
        specs = self.candidates(requirements)
        if not specs:
            raise RuntimeError(
                f"No LLM satisfies constraints: "
                f"tokens={requirements.max_input_tokens}, vision={requirements.require_vision}"
            )

        selected = specs[0]
        logger.info(
            "ModelRouter | selected model_id=%s provider=%s strategy=%s vision=%s",
            selected.model_id, selected.provider,
            requirements.strategy, requirements.require_vision,
        )
        return selected

    def build_llm(self, spec: ModelSpec) -> BaseChatModel:
        """Instantiate the LangChain chat model for a given ModelSpec."""
        if spec.provider == Provider.OPENAI:
            return self._build_openai(spec)

        if spec.provider == Provider.AZURE_OPENAI:
            return self._build_azure_openai(spec)

        raise ValueError(f"Unsupported provider: {spec.provider}")   # pragma: no cover

    # -----------------------------------------------------------------------
    # Provider-specific builders
    # -----------------------------------------------------------------------

    @staticmethod
    def _build_openai(spec: ModelSpec) -> BaseChatModel:
        from langchain_openai import ChatOpenAI
        return ChatOpenAI(
            model=spec.model_id,
            api_key=settings.openai_api_key,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_timeout_seconds,
        )

    @staticmethod
    def _build_azure_openai(spec: ModelSpec) -> BaseChatModel:
        from langchain_openai import AzureChatOpenAI
        return AzureChatOpenAI(
            azure_deployment=spec.model_id,
            azure_endpoint=settings.azure_openai_endpoint,
            api_key=settings.azure_openai_api_key,   # type: ignore
            api_version=settings.azure_openai_api_version,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_timeout_seconds,
        )
