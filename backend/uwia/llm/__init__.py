"""
LLM Gateway Package

Provides a provider-agnostic interface over the chat-model backends:
  - OpenAI           (gpt-4o, gpt-4o-mini; both accept page images)
  - Azure OpenAI     (same models, region-pinned endpoint — failover target)

Public API::

    from uwia.llm import Evaluator, EvaluationSuccess

    evaluator = Evaluator()
    result = await evaluator.evaluate_text(context, question, expected_type="boolean")
"""

from uwia.llm.evaluator import (
    EvaluationFailure,
    EvaluationResult,
    EvaluationSuccess,
    Evaluator,
)
from uwia.llm.gateway import GatewayResponse, LLMGateway
from uwia.llm.router import ModelRequirements, ModelSpec, RoutingStrategy

__all__ = [
    "EvaluationFailure",
    "EvaluationResult",
    "EvaluationSuccess",
    "Evaluator",
    "GatewayResponse",
    "LLMGateway",
    "ModelRequirements",
    "ModelSpec",
    "RoutingStrategy",
]
