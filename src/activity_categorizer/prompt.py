"""
System Prompt
=============

Builds the system prompt for the generative classifier from three parts:
the instruction block, the rule context, and the output format with a worked
example. The result depends only on the rules text passed in.
"""

from __future__ import annotations

import os

import structlog

from .errors import ConfigError
from .rules import NO_RULES_TEXT

log = structlog.get_logger(__name__)

INSTRUCTIONS = """
You are a time-tracking assistant that categorizes activity descriptions.

The user message is a short free-text note describing work that was done.
Classify it and return these fields:

- task:       the task category the activity belongs to
- ticketRef:  the ticket reference (e.g. a Jira key such as "ABC-123"), or "" if none applies
- timespan:   the time spent as written in the note (e.g. "1h", "30m"), or "" if not mentioned
- confidence: "high", "medium" or "low"
- reason:     one short sentence explaining the choice
""".strip()

NO_RULES_INSTRUCTIONS = """
No categorization rules are defined yet. Use your judgement to choose a short,
reasonable task category (for example "Development", "Meetings", "Code Review",
"Support" or "Administration") and leave ticketRef empty unless the note
mentions one.
""".strip()

RULES_PREAMBLE = (
    "Apply the following rules. When a rule matches, use its task and ticket exactly."
)

OUTPUT_FORMAT = """
Output format
-------------
Reply only with a single valid JSON object containing exactly the keys
task, ticketRef, timespan, confidence and reason. Do not wrap it in markdown
and do not add explanations.

Example:
{"task": "Development", "ticketRef": "ABC-1", "timespan": "1h", "confidence": "high", "reason": "The note describes coding work on ABC-1."}
""".strip()


def load_instructions(path: str | os.PathLike | None) -> str:
    """
    Return the instruction block, read from ``path`` when given.

    An unreadable or empty file is logged and the built-in instructions are
    used instead.
    """
    if not path:
        return INSTRUCTIONS
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read().strip()
    except (OSError, UnicodeDecodeError) as e:
        error = ConfigError(f"Could not read prompt template {path}: {e}")
    else:
        if text:
            log.info("Loaded prompt template", path=str(path))
            return text
        error = ConfigError(f"Prompt template {path} is empty")
    log.warning("Using built-in instructions", path=str(path), error=error.message)
    return INSTRUCTIONS


class PromptBuilder:
    """Composes the system prompt for the generative classifier."""

    def __init__(self, instructions: str = INSTRUCTIONS):
        self.instructions = instructions

    def build(self, rules_text: str) -> str:
        if not rules_text.strip() or rules_text == NO_RULES_TEXT:
            context = NO_RULES_INSTRUCTIONS
        else:
            context = f"{RULES_PREAMBLE}\n\n{rules_text.rstrip()}"
        return f"{self.instructions}\n\n{context}\n\n{OUTPUT_FORMAT}\n"
