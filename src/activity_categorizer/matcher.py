"""
Rule Matching
=============

Deterministic strategies that pick a rule for a description without asking
the generative model:

- pattern matching: a rule's pattern or one of its keywords appears in the
  description as a whole word or phrase;
- similarity matching: the rule whose embedding has the highest cosine
  similarity with the description's embedding.

Both return a `MatchResult` carrying a confidence grade. When nothing can be
scored, `find_best_match` returns the `UNKNOWN_RULE` sentinel with score 0
and grade F.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Sequence

import numpy as np
import structlog

from .rules import Rule

log = structlog.get_logger(__name__)


class ConfidenceGrade(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    F = "F"


# Lower bounds, inclusive, checked best grade first.
GRADE_THRESHOLDS = (
    (0.9, ConfidenceGrade.A),
    (0.8, ConfidenceGrade.B),
    (0.7, ConfidenceGrade.C),
    (0.6, ConfidenceGrade.D),
)

GRADE_ORDER = [grade for _, grade in GRADE_THRESHOLDS] + [ConfidenceGrade.F]

# Returned when no rule can be scored. Never stored in a RuleStore.
UNKNOWN_RULE_ID = "unknown"
UNKNOWN_RULE = Rule(
    id=UNKNOWN_RULE_ID,
    pattern="",
    task="Unknown",
    description="No rule matched",
)


@dataclass(frozen=True)
class MatchResult:
    rule: Rule
    score: float
    grade: ConfidenceGrade
    method: str = "embedding"

    @property
    def is_unknown(self) -> bool:
        return self.rule.id == UNKNOWN_RULE_ID


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two equal-length vectors.

    Returns 0.0 when either vector has zero norm.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Vector dimensions differ: {a.size} != {b.size}")
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    # Clamp floating-point drift so the score stays within [-1, 1]
    return float(np.clip(np.dot(a, b) / (norm_a * norm_b), -1.0, 1.0))


def score_to_confidence(score: float) -> ConfidenceGrade:
    """Map a similarity score onto a letter grade."""
    for lower_bound, grade in GRADE_THRESHOLDS:
        if score >= lower_bound:
            return grade
    return ConfidenceGrade.F


def grade_at_least(grade: ConfidenceGrade | str, threshold: ConfidenceGrade | str) -> bool:
    """Return True if ``grade`` is as good as or better than ``threshold``."""
    return GRADE_ORDER.index(ConfidenceGrade(grade)) <= GRADE_ORDER.index(
        ConfidenceGrade(threshold)
    )


def unknown_match() -> MatchResult:
    return MatchResult(
        rule=UNKNOWN_RULE, score=0.0, grade=ConfidenceGrade.F, method="none"
    )


def find_best_match(query: Sequence[float], rules: Iterable[Rule]) -> MatchResult:
    """
    Return the rule whose embedding is most similar to ``query``.

    Rules without an embedding, or with one of a different dimensionality,
    are skipped. Ties go to the earliest rule.
    """
    query = np.asarray(query, dtype=np.float64)
    candidates = []
    for rule in rules:
        if rule.embedding is None:
            continue
        if len(rule.embedding) != query.size:
            log.warning(
                "Skipping rule with mismatched embedding dimension",
                rule_id=rule.id,
                rule_dimension=len(rule.embedding),
                query_dimension=query.size,
            )
            continue
        candidates.append(rule)

    if not candidates:
        return unknown_match()

    matrix = np.asarray([rule.embedding for rule in candidates], dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)
    scores = np.clip(scores, -1.0, 1.0)

    # argmax returns the first maximum, so the earliest rule wins ties
    index = int(np.argmax(scores))
    score = float(scores[index])
    return MatchResult(rule=candidates[index], score=score, grade=score_to_confidence(score))


def _phrase_regex(phrase: str) -> re.Pattern:
    words = phrase.split()
    body = r"\s+".join(re.escape(word) for word in words)
    return re.compile(rf"(?<!\w){body}(?!\w)", re.IGNORECASE)


def find_pattern_match(description: str, rules: Iterable[Rule]) -> MatchResult | None:
    """
    Return the first rule whose pattern or a keyword occurs in ``description``.

    Matching is case-insensitive on whole words, so "standup" matches
    "Daily standup call" but not "standups". A hit is graded A with score 1.0.
    """
    if not description.strip():
        return None
    for rule in rules:
        phrases = [rule.pattern, *sorted(rule.keywords)]
        for phrase in phrases:
            if phrase.strip() and _phrase_regex(phrase).search(description):
                return MatchResult(
                    rule=rule, score=1.0, grade=ConfidenceGrade.A, method="pattern"
                )
    return None
