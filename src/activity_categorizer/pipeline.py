"""
Classification Pipeline
=======================

This module defines the `Categorizer`, which turns an activity description
into one `CategoryResult` by combining rule matching with the generative
classifier.

Rule matching tries the pattern/keyword strategy first and falls back to
embedding similarity. How the rule match and the generative answer are
combined depends on ``CLASSIFY_STRATEGY``:

- ``merge``: the generative classifier always runs. A confident rule match
  supplies the ticket reference, and stands in for the generative answer if
  that call fails.
- ``rules_first``: a confident rule match is returned as-is; the generative
  classifier only runs when no rule is confident.
- ``generative``: rule matching is skipped.

A match is confident when its grade is at or above
``MATCH_CONFIDENCE_THRESHOLD``.
"""

from __future__ import annotations

import re
from collections.abc import Hashable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace

import structlog

from .config import Settings
from .embeddings import EmbeddingClient
from .errors import ClassificationError, ValidationError
from .generative import CategoryResult, GenerativeClassifier
from .matcher import MatchResult, find_best_match, find_pattern_match, grade_at_least
from .prompt import PromptBuilder
from .rules import Rule, RuleStore, rule_from_spec

log = structlog.get_logger(__name__)

_DURATION_PART = r"(\d+(?:[.,]\d+)?)\s*(hours?|hrs?|h|minutes?|mins?|m)"

DURATION_PART_RE = re.compile(_DURATION_PART, re.IGNORECASE)
# One duration, possibly compound ("2h30m", "1 hour 15 min")
TIMESPAN_RE = re.compile(
    rf"(?<![\w.,]){_DURATION_PART}(?:\s*{_DURATION_PART})*(?!\w)",
    re.IGNORECASE,
)


def extract_timespan(description: str) -> str:
    """
    Pull durations such as "2h", "30 min" or "1.5 hours" out of a note.

    Returns them in compact form ("2h", "30m", "1.5h", "2h30m"),
    space-separated when there are several, or "" when the note mentions none.
    """
    spans = []
    for match in TIMESPAN_RE.finditer(description):
        span = ""
        for part in DURATION_PART_RE.finditer(match.group(0)):
            amount = part.group(1).replace(",", ".")
            unit = "h" if part.group(2).lower().startswith("h") else "m"
            span += f"{amount}{unit}"
        spans.append(span)
    return " ".join(spans)


@dataclass
class BatchReport:
    """Outcome of a categorization sweep, keyed by the caller's item keys."""

    total: int = 0
    results: dict[Hashable, CategoryResult] = field(default_factory=dict)
    errors: dict[Hashable, ClassificationError] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return len(self.results)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict:
        errors = {}
        for key, error in self.errors.items():
            detail = {"type": type(error).__name__, "message": error.message}
            raw_text = getattr(error, "raw_text", "")
            if raw_text:
                detail["raw_text"] = raw_text
            errors[str(key)] = detail
        return {
            "total": self.total,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "results": {str(key): result.to_dict() for key, result in self.results.items()},
            "errors": errors,
        }


class Categorizer:
    """
    Orchestrates rule matching and generative classification.
    """

    def __init__(
        self,
        settings: Settings,
        rule_store: RuleStore,
        generative: GenerativeClassifier,
        embedder: EmbeddingClient | None = None,
        prompt_builder: PromptBuilder | None = None,
    ):
        self.settings = settings
        self.rule_store = rule_store
        self.generative = generative
        self.embedder = embedder
        self.prompt_builder = prompt_builder or PromptBuilder()

    def classify(self, description: str, rule_context: str | None = None) -> CategoryResult:
        """
        Classify one description.

        ``rule_context`` replaces the rule store's rendered rules in the prompt
        when given.
        """
        if not isinstance(description, str) or not description.strip():
            raise ValidationError("Description must not be empty")
        description = description.strip()
        strategy = self.settings.CLASSIFY_STRATEGY

        match = None if strategy == "generative" else self.match_rules(description)
        confident = self._is_confident(match)

        if strategy == "rules_first" and confident:
            log.info(
                "Classified by rule match",
                rule_id=match.rule.id,
                method=match.method,
                grade=match.grade.value,
            )
            return self._result_from_match(description, match)

        if rule_context is None:
            rule_context = self.rule_store.all_rules_as_text()
        system_prompt = self.prompt_builder.build(rule_context)

        try:
            result = self.generative.classify(description, system_prompt)
        except ClassificationError as e:
            if not confident:
                raise
            log.warning(
                "Generative classification failed; using rule match",
                error=e.message,
                error_type=type(e).__name__,
                rule_id=match.rule.id,
            )
            return self._result_from_match(description, match)

        if confident and match.rule.ticket_ref and match.rule.ticket_ref != result.ticket_ref:
            log.info(
                "Ticket reference taken from rule match",
                rule_id=match.rule.id,
                model_ticket_ref=result.ticket_ref or None,
                rule_ticket_ref=match.rule.ticket_ref,
            )
            result = replace(result, ticket_ref=match.rule.ticket_ref, strategy="merged")

        log.info(
            "Classified description",
            task=result.task,
            ticket_ref=result.ticket_ref or None,
            confidence=result.confidence,
            strategy=result.strategy,
        )
        return result

    def match_rules(self, description: str) -> MatchResult | None:
        """
        Find the rule that fits ``description`` best without the generative model.

        Returns None when there are no rules, or when no pattern matched and
        embedding matching is disabled or unavailable.
        """
        rules = self.rule_store.rules()
        if not rules:
            return None

        match = find_pattern_match(description, rules)
        if match is not None:
            log.debug("Pattern match", rule_id=match.rule.id, pattern=match.rule.pattern)
            return match

        if self.embedder is None:
            return None

        try:
            query = self.embedder.embed(description)
            self.rule_store.ensure_embeddings(self.embedder.embed, dimension=len(query))
        except ClassificationError as e:
            log.warning(
                "Embedding match unavailable",
                error=e.message,
                error_type=type(e).__name__,
            )
            return None

        match = find_best_match(query, self.rule_store.rules())
        log.info(
            "Embedding match",
            rule_id=match.rule.id,
            task=match.rule.task,
            score=round(match.score, 4),
            grade=match.grade.value,
        )
        return match

    def add_rule(self, spec: Mapping) -> Rule:
        """Create and persist a rule from a mapping of rule fields."""
        return self.rule_store.add_rule(rule_from_spec(spec))

    def classify_batch(self, items: Mapping[Hashable, str]) -> BatchReport:
        """
        Classify many descriptions concurrently.

        A failure on one item is recorded in the report and never stops the
        others. Results and errors keep the order of ``items``.
        """
        report = BatchReport(total=len(items))
        if not items:
            return report

        results: dict[Hashable, CategoryResult] = {}
        errors: dict[Hashable, ClassificationError] = {}
        max_workers = min(self.settings.BATCH_WORKERS, len(items))

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_key = {
                executor.submit(self.classify, description): key
                for key, description in items.items()
            }
            for future in as_completed(future_to_key):
                key = future_to_key[future]
                try:
                    results[key] = future.result()
                except ClassificationError as e:
                    log.warning(
                        "Item classification failed",
                        item=str(key),
                        error=e.message,
                        error_type=type(e).__name__,
                    )
                    errors[key] = e
                except Exception as e:
                    log.exception("Unexpected error classifying item", item=str(key))
                    errors[key] = ClassificationError(f"Unexpected error: {e}")

        report.results = {key: results[key] for key in items if key in results}
        report.errors = {key: errors[key] for key in items if key in errors}
        log.info(
            "Batch classified",
            total=report.total,
            success_count=report.success_count,
            error_count=report.error_count,
        )
        return report

    def close(self) -> None:
        self.generative.close()
        if self.embedder is not None:
            self.embedder.close()

    def _is_confident(self, match: MatchResult | None) -> bool:
        if match is None or match.is_unknown:
            return False
        return grade_at_least(match.grade, self.settings.MATCH_CONFIDENCE_THRESHOLD)

    def _result_from_match(self, description: str, match: MatchResult) -> CategoryResult:
        rule = match.rule
        if match.method == "pattern":
            reason = f"Description matches rule '{rule.pattern}'"
        else:
            reason = f"Closest rule '{rule.pattern}' (similarity {match.score:.2f})"
        return CategoryResult(
            task=rule.task,
            ticket_ref=rule.ticket_ref,
            timespan=extract_timespan(description),
            confidence=match.grade.value,
            reason=reason,
            strategy="rules",
        )
