from __future__ import annotations

from .categories import DecisionCategoryRegistry, contrast_text_color, load_categories
from .dsl import CompiledCondition, compile_condition
from .dsl_errors import (
    ConfigurationMismatch,
    DslError,
    DslRuntimeError,
    DslTimeoutError,
    DslValidationError,
)
from .evaluator import evaluate
from .labels import normalize_label, risk_label
from .loader import load_decision_config, load_rules, rule_key
from .types import (
    AssignmentResult,
    DecisionCategory,
    DslPolicy,
    EvaluationFailure,
    PackageDecisionState,
    RuleDefinition,
    RuleKind,
)

__all__ = [
    "AssignmentResult",
    "CompiledCondition",
    "ConfigurationMismatch",
    "DecisionCategory",
    "DecisionCategoryRegistry",
    "DslError",
    "DslPolicy",
    "DslRuntimeError",
    "DslTimeoutError",
    "DslValidationError",
    "EvaluationFailure",
    "PackageDecisionState",
    "RuleDefinition",
    "RuleKind",
    "compile_condition",
    "contrast_text_color",
    "evaluate",
    "load_categories",
    "load_decision_config",
    "load_rules",
    "normalize_label",
    "risk_label",
    "rule_key",
]
