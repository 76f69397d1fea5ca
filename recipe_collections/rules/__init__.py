from recipe_collections.rules.describe import describe_rule
from recipe_collections.rules.errors import CollectionError, RulesValidationError
from recipe_collections.rules.evaluator import evaluate, evaluate_item
from recipe_collections.rules.models import (
    AutoRule,
    Condition,
    ConditionResult,
    ContentFacts,
    CustomRule,
    EvaluationResult,
    RuleConfig,
    RuleGroup,
)
from recipe_collections.rules.validator import ValidationResult, parse_rule_config, validate

__all__ = [
    "AutoRule",
    "CollectionError",
    "Condition",
    "ConditionResult",
    "ContentFacts",
    "CustomRule",
    "EvaluationResult",
    "RuleConfig",
    "RuleGroup",
    "RulesValidationError",
    "ValidationResult",
    "describe_rule",
    "evaluate",
    "evaluate_item",
    "parse_rule_config",
    "validate",
]
