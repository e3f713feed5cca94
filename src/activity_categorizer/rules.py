"""
Categorization Rules
====================

This module owns the rule set that backs every classification strategy.

A `Rule` pairs a pattern (and optional keywords) with the canonical task it
should be filed under, an optional ticket reference, and a cached embedding.
The `RuleStore` keeps rules in insertion order, persists them as CSV, and
renders them as the natural-language context that goes into the system
prompt.

Writes replace the whole file: the collection is written to a temporary file
in the same directory, flushed to disk, and moved over the old file with
`os.replace`, so a crash mid-write leaves the previous file intact.
"""

from __future__ import annotations

import contextlib
import csv
import datetime as dt
import json
import os
import tempfile
import threading
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Iterable, Iterator

import structlog

from .errors import ConfigError, ValidationError

log = structlog.get_logger(__name__)

CSV_HEADER = [
    "id",
    "pattern",
    "task",
    "ticketRef",
    "createdAt",
    "keywords",
    "description",
    "embedding",
]
REQUIRED_COLUMNS = ("id", "pattern", "task")

RULES_TEXT_HEADER = "Categorization Rules:\n"
NO_RULES_TEXT = "No categorization rules defined."


@dataclass
class Rule:
    pattern: str
    task: str
    ticket_ref: str = ""
    keywords: frozenset[str] = frozenset()
    description: str = ""
    id: str = ""
    created_at: str = ""
    embedding: list[float] | None = None

    def __post_init__(self):
        self.keywords = frozenset(
            str(keyword).strip() for keyword in self.keywords if str(keyword).strip()
        )

    def embedding_text(self) -> str:
        """Text used to compute this rule's embedding."""
        if self.description.strip():
            return self.description.strip()
        parts = [self.pattern.strip(), *sorted(self.keywords)]
        return " ".join(part for part in parts if part)

    def to_row(self) -> list[str]:
        return [
            self.id,
            self.pattern,
            self.task,
            self.ticket_ref,
            self.created_at,
            json.dumps(sorted(self.keywords)) if self.keywords else "",
            self.description,
            json.dumps(self.embedding) if self.embedding is not None else "",
        ]

    @classmethod
    def from_row(cls, row: Mapping[str, str | None]) -> Rule:
        """Build a rule from a CSV row, raising ValueError on malformed cells."""

        def cell(name: str) -> str:
            return (row.get(name) or "").strip()

        rule_id = cell("id")
        if not rule_id:
            raise ValueError("rule row has an empty id")

        keywords_raw = cell("keywords")
        keywords = json.loads(keywords_raw) if keywords_raw else []
        if not isinstance(keywords, list):
            raise ValueError(f"keywords for rule {rule_id!r} are not a list")

        embedding_raw = cell("embedding")
        embedding = None
        if embedding_raw:
            embedding = _coerce_vector(json.loads(embedding_raw))
            if embedding is None:
                raise ValueError(f"embedding for rule {rule_id!r} is not a list of numbers")

        return cls(
            id=rule_id,
            pattern=cell("pattern"),
            task=cell("task"),
            ticket_ref=cell("ticketRef"),
            created_at=cell("createdAt"),
            keywords=frozenset(str(keyword) for keyword in keywords),
            description=cell("description"),
            embedding=embedding,
        )


def _coerce_vector(value: object) -> list[float] | None:
    """Return value as a list of floats, or None if it is not a numeric list."""
    if not isinstance(value, list) or not value:
        return None
    vector = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (int, float)):
            return None
        vector.append(float(item))
    return vector


def rule_from_spec(spec: Mapping) -> Rule:
    """
    Build an unsaved rule from a caller-supplied mapping.

    Accepts ``pattern`` (or ``name``), ``task``, ``ticketRef`` (or
    ``ticket_ref`` / ``jira``), ``keywords`` (list or comma-separated string),
    ``description`` and an optional ``id`` or ``embedding``.
    """
    if not isinstance(spec, Mapping):
        raise ValidationError("Rule spec must be a mapping")

    def text(*keys: str) -> str:
        for key in keys:
            value = spec.get(key)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (str, int, float)):
                raise ValidationError(f"Rule field '{key}' must be a string")
            return str(value).strip()
        return ""

    keywords = spec.get("keywords") or []
    if isinstance(keywords, str):
        keywords = keywords.split(",")
    elif not isinstance(keywords, (list, tuple, set, frozenset)):
        raise ValidationError("Rule field 'keywords' must be a list of strings")

    embedding = None
    if spec.get("embedding"):
        embedding = _coerce_vector(spec.get("embedding"))
        if embedding is None:
            raise ValidationError("Rule field 'embedding' must be a list of numbers")

    return Rule(
        id=text("id"),
        pattern=text("pattern", "name"),
        task=text("task"),
        ticket_ref=text("ticketRef", "ticket_ref", "jira"),
        keywords=frozenset(str(keyword) for keyword in keywords),
        description=text("description"),
        embedding=embedding,
    )


def _embedding_dimension(rules: Iterable[Rule]) -> int | None:
    """Length of the first cached embedding, or None when no rule has one."""
    for rule in rules:
        if rule.embedding is not None:
            return len(rule.embedding)
    return None


def _needs_embedding(rule: Rule, dimension: int | None) -> bool:
    if rule.embedding is None:
        return True
    return dimension is not None and len(rule.embedding) != dimension


def _utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec="seconds")


class ReadWriteLock:
    """
    Many concurrent readers or a single writer.

    Writers waiting for the lock block new readers so a steady stream of
    classifications cannot starve rule additions. Not reentrant.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextlib.contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextlib.contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class RuleStore:
    """
    Ordered, persisted collection of categorization rules.

    The in-memory list is replaced (never mutated in place) on every add, so
    snapshots handed to readers stay stable.
    """

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)
        self.load_error: ConfigError | None = None
        self._lock = ReadWriteLock()
        self._rules: list[Rule] = []
        self._ids: set[str] = set()
        self._quarantine_pending = False
        # Held while rule embeddings are computed
        self._embed_lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._rules)

    def load(self) -> list[Rule]:
        """
        Load rules from disk, creating the file with a header row if missing.

        A file that cannot be parsed leaves the store empty and records the
        problem in ``load_error``; the store keeps working. Failure to create a
        missing file raises ConfigError.
        """
        with self._lock.write():
            self._rules = []
            self._ids = set()
            self.load_error = None
            self._quarantine_pending = False

            if not self.path.exists():
                log.info("Rule file not found; creating it", path=str(self.path))
                self._write_rules([])
                return []

            try:
                rules = self._read_rules()
            except (OSError, ValueError, csv.Error) as e:
                self.load_error = ConfigError(f"Could not read rules from {self.path}: {e}")
                self._quarantine_pending = True
                log.error(
                    "Failed to load rules; continuing with an empty rule set",
                    path=str(self.path),
                    error=str(e),
                )
                return []

            self._rules = rules
            self._ids = {rule.id for rule in rules}
            log.info("Loaded rules", path=str(self.path), rule_count=len(rules))
            return list(rules)

    def rules(self) -> list[Rule]:
        """Return a snapshot of the rules in insertion order."""
        with self._lock.read():
            return list(self._rules)

    def add_rule(self, rule: Rule) -> Rule:
        """
        Validate, assign an id and timestamp if unset, and persist a new rule.
        """
        with self._lock.write():
            stored = self._prepare(rule, self._ids, _embedding_dimension(self._rules))
            updated = self._rules + [stored]
            self._persist(updated)
            self._rules = updated
            self._ids.add(stored.id)

        log.info(
            "Added rule",
            rule_id=stored.id,
            pattern=stored.pattern,
            task=stored.task,
            ticket_ref=stored.ticket_ref or None,
        )
        return stored

    def import_seed_rules(self, path: str | os.PathLike) -> int:
        """
        Import rules from a JSON seed file, skipping ids that already exist.

        The file holds ``{"rules": [...]}`` (or a bare list) with entries using
        ``name``/``pattern``, ``task``, ``jira``/``ticketRef``, ``description``,
        ``keywords`` and an optional precomputed ``embedding``. When ``task`` is
        missing the entry's ``name`` is used.
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Could not read seed rules from {path}: {e}") from e

        entries = data.get("rules", []) if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise ConfigError(f"Seed rules in {path} must be a list")

        candidates = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                log.warning("Skipping seed rule that is not an object", index=index)
                continue
            spec = dict(entry)
            if not spec.get("task"):
                spec["task"] = spec.get("name", "")
            try:
                candidates.append(rule_from_spec(spec))
            except ValidationError as e:
                log.warning("Skipping invalid seed rule", index=index, error=e.message)

        with self._lock.write():
            taken = set(self._ids)
            dimension = _embedding_dimension(self._rules)
            added = []
            for rule in candidates:
                if rule.id and rule.id in taken:
                    continue
                try:
                    stored = self._prepare(rule, taken, dimension)
                except ValidationError as e:
                    log.warning("Skipping invalid seed rule", pattern=rule.pattern, error=e.message)
                    continue
                taken.add(stored.id)
                added.append(stored)
                if dimension is None and stored.embedding is not None:
                    dimension = len(stored.embedding)
            if added:
                updated = self._rules + added
                self._persist(updated)
                self._rules = updated
                self._ids = taken

        log.info("Imported seed rules", path=str(path), imported=len(added))
        return len(added)

    def all_rules_as_text(self) -> str:
        """
        Render the rules as numbered statements for the system prompt.

        Returns NO_RULES_TEXT when the store is empty.
        """
        with self._lock.read():
            rules = self._rules

        if not rules:
            return NO_RULES_TEXT

        lines = [RULES_TEXT_HEADER]
        for number, rule in enumerate(rules, start=1):
            line = (
                f"{number}. When a task matches pattern '{rule.pattern}', "
                f"categorize it as '{rule.task}'"
            )
            if rule.ticket_ref:
                line += f" with ticket '{rule.ticket_ref}'"
            lines.append(line + "\n")
        return "".join(lines)

    def ensure_embeddings(
        self, embed: Callable[[str], list[float]], dimension: int | None = None
    ) -> int:
        """
        Compute and cache embeddings for rules that do not have a usable one.

        A rule needs one when it has no embedding, or when ``dimension`` is
        given and its cached vector has a different length (for example after
        the embedding model changed). Such rules are re-embedded and the file
        is rewritten.

        The embedding calls run without holding the read/write lock, so
        classifications keep reading the store meanwhile. Vectors computed
        before a failure are still cached; the failure is then re-raised.
        Returns the number of rules that received an embedding.
        """
        with self._embed_lock:
            with self._lock.read():
                pending = [
                    rule for rule in self._rules if _needs_embedding(rule, dimension)
                ]
            if not pending:
                return 0

            stale = sum(1 for rule in pending if rule.embedding is not None)
            if stale:
                log.warning(
                    "Re-embedding rules with stale embedding dimension",
                    count=stale,
                    dimension=dimension,
                )

            computed: dict[str, list[float]] = {}
            try:
                for rule in pending:
                    computed[rule.id] = list(embed(rule.embedding_text()))
            except Exception:
                self._cache_embeddings(computed, dimension)
                raise
            return self._cache_embeddings(computed, dimension)

    def _cache_embeddings(
        self, computed: dict[str, list[float]], dimension: int | None
    ) -> int:
        if not computed:
            return 0
        with self._lock.write():
            cached = 0
            for rule in self._rules:
                vector = computed.get(rule.id)
                if vector is not None and _needs_embedding(rule, dimension):
                    rule.embedding = vector
                    cached += 1
            if cached:
                try:
                    self._persist(self._rules)
                except ConfigError as e:
                    log.warning(
                        "Could not persist rule embeddings; keeping them in memory",
                        error=e.message,
                    )
        log.info("Cached rule embeddings", count=cached)
        return cached

    def _prepare(self, rule: Rule, taken_ids: set[str], dimension: int | None) -> Rule:
        pattern = rule.pattern.strip()
        task = rule.task.strip()
        if not pattern:
            raise ValidationError("Rule pattern must not be empty")
        if not task:
            raise ValidationError("Rule task must not be empty")
        if (
            rule.embedding is not None
            and dimension is not None
            and len(rule.embedding) != dimension
        ):
            raise ValidationError(
                f"Rule embedding has {len(rule.embedding)} dimensions; "
                f"stored rules use {dimension}"
            )

        rule_id = rule.id.strip()
        if rule_id and rule_id in taken_ids:
            raise ValidationError(f"Rule id '{rule_id}' already exists")
        while not rule_id or rule_id in taken_ids:
            rule_id = str(uuid.uuid4())

        return replace(
            rule,
            id=rule_id,
            pattern=pattern,
            task=task,
            ticket_ref=rule.ticket_ref.strip(),
            description=rule.description.strip(),
            created_at=rule.created_at or _utc_now(),
        )

    def _read_rules(self) -> list[Rule]:
        with self.path.open(newline="", encoding="utf-8") as f:
            reader = csv.DictReader(f)
            columns = reader.fieldnames or []
            missing = [name for name in REQUIRED_COLUMNS if name not in columns]
            if missing:
                raise ValueError(f"missing columns: {', '.join(missing)}")

            rules = []
            seen: set[str] = set()
            for line_number, row in enumerate(reader, start=2):
                try:
                    rule = Rule.from_row(row)
                except ValueError as e:
                    raise ValueError(f"line {line_number}: {e}") from e
                if rule.id in seen:
                    raise ValueError(f"line {line_number}: duplicate rule id {rule.id!r}")
                seen.add(rule.id)
                rules.append(rule)
            return rules

    def _persist(self, rules: Iterable[Rule]) -> None:
        if self._quarantine_pending:
            aside = self.path.with_name(self.path.name + ".corrupt")
            try:
                os.replace(self.path, aside)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise ConfigError(f"Could not move unreadable rule file aside: {e}") from e
            else:
                log.warning(
                    "Moved unreadable rule file aside",
                    path=str(self.path),
                    moved_to=str(aside),
                )
            self._quarantine_pending = False
        self._write_rules(rules)

    def _write_rules(self, rules: Iterable[Rule]) -> None:
        """Write all rules to a temporary file and atomically replace the rule file."""
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=directory
            )
            try:
                with os.fdopen(fd, "w", newline="", encoding="utf-8") as f:
                    writer = csv.writer(f)
                    writer.writerow(CSV_HEADER)
                    writer.writerows(rule.to_row() for rule in rules)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise ConfigError(f"Could not write rules to {self.path}: {e}") from e
