"""
Underwriting package — consolidated prompts, visual classification,
text/vision answer fusion.
"""

from uwia.underwriting.classification import (
    BoundedClassificationCache,
    ClassificationCache,
    VisualClassifier,
    VisualRequirement,
)
from uwia.underwriting.evaluation import ConsolidatedEvaluator
from uwia.underwriting.fusion import NOT_FOUND, FusedAnswer, fuse_answers, normalize_answer_vector
from uwia.underwriting.prompts import ConsolidatedPrompt, load_consolidated_prompts, substitute_variables

__all__ = [
    "BoundedClassificationCache",
    "ClassificationCache",
    "ConsolidatedEvaluator",
    "ConsolidatedPrompt",
    "FusedAnswer",
    "NOT_FOUND",
    "VisualClassifier",
    "VisualRequirement",
    "fuse_answers",
    "load_consolidated_prompts",
    "normalize_answer_vector",
    "substitute_variables",
]
