"""
Activity categorization package.

This package contains:

- the rule store that backs every classification strategy
- the embedding clients and the similarity/pattern matcher
- the prompt builder and the generative classifier (prompt + parsing + LLM calls)
- the categorizer that combines them into one result
- the command-line entrypoint
"""

from .errors import (
    ClassificationError,
    ConfigError,
    DecodeError,
    SchemaError,
    ServiceError,
    ServiceTimeout,
    ServiceUnavailable,
    UnparsableResponse,
    ValidationError,
)
from .generative import CategoryResult, parse_category_response
from .matcher import (
    UNKNOWN_RULE,
    ConfidenceGrade,
    MatchResult,
    cosine_similarity,
    find_best_match,
    score_to_confidence,
)
from .pipeline import BatchReport, Categorizer
from .prompt import PromptBuilder
from .rules import NO_RULES_TEXT, Rule, RuleStore

__all__ = [
    "BatchReport",
    "CategoryResult",
    "Categorizer",
    "ClassificationError",
    "ConfidenceGrade",
    "ConfigError",
    "DecodeError",
    "MatchResult",
    "NO_RULES_TEXT",
    "PromptBuilder",
    "Rule",
    "RuleStore",
    "SchemaError",
    "ServiceError",
    "ServiceTimeout",
    "ServiceUnavailable",
    "UNKNOWN_RULE",
    "UnparsableResponse",
    "ValidationError",
    "cosine_similarity",
    "find_best_match",
    "parse_category_response",
    "score_to_confidence",
]
