"""
Activity Categorizer CLI
========================

Entry point that wires the classification pipeline together from the
environment and exposes it on the command line:

    activity-categorizer classify "Daily standup call 15m"
    activity-categorizer add-rule --pattern standup --task Meetings
    activity-categorizer rules
    activity-categorizer sweep notes.txt

Results are printed to stdout as JSON; logs go to stderr.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Sequence

import structlog

from .config import Settings
from .embeddings import create_embedding_client
from .errors import ClassificationError, ConfigError
from .generative import create_generative_classifier
from .logging_config import configure_logging
from .pipeline import Categorizer
from .prompt import PromptBuilder, load_instructions
from .rules import RuleStore

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_categorizer(settings: Settings) -> Categorizer:
    """
    Create the rule store and model clients and wire them into a Categorizer.

    Raises ConfigError when the rule store cannot be initialised at all.
    """
    rule_store = RuleStore(settings.RULES_PATH)
    rule_store.load()
    if settings.SEED_RULES_PATH:
        rule_store.import_seed_rules(settings.SEED_RULES_PATH)

    return Categorizer(
        settings,
        rule_store,
        create_generative_classifier(settings),
        embedder=create_embedding_client(settings),
        prompt_builder=PromptBuilder(load_instructions(settings.SYSTEM_PROMPT_PATH)),
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="activity-categorizer",
        description="Categorize time-tracking notes with rules and an LLM.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    classify = commands.add_parser("classify", help="classify one or more descriptions")
    classify.add_argument("descriptions", nargs="+", metavar="TEXT")
    classify.add_argument(
        "--rules-context",
        default=None,
        help="rule text to use in the prompt instead of the stored rules",
    )

    add_rule = commands.add_parser("add-rule", help="add a categorization rule")
    add_rule.add_argument("--pattern", required=True)
    add_rule.add_argument("--task", required=True)
    add_rule.add_argument("--ticket", default="", help="ticket reference, e.g. ABC-123")
    add_rule.add_argument("--keyword", action="append", default=[], dest="keywords")
    add_rule.add_argument("--description", default="")

    commands.add_parser("rules", help="print the rules as they appear in the prompt")

    sweep = commands.add_parser("sweep", help="classify every line of a file")
    sweep.add_argument("path", help="file with one description per line ('-' for stdin)")

    return parser


def _print_json(payload: object) -> None:
    json.dump(payload, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")


def _read_descriptions(path: str) -> dict[int, str]:
    if path == "-":
        lines = sys.stdin.read().splitlines()
    else:
        with open(path, encoding="utf-8") as f:
            lines = f.read().splitlines()
    return {number: line for number, line in enumerate(lines, start=1) if line.strip()}


def _run(categorizer: Categorizer, args: argparse.Namespace) -> int:
    log = structlog.get_logger(__name__)

    if args.command == "rules":
        sys.stdout.write(categorizer.rule_store.all_rules_as_text())
        sys.stdout.write("\n")
        return EXIT_OK

    if args.command == "add-rule":
        rule = categorizer.add_rule(
            {
                "pattern": args.pattern,
                "task": args.task,
                "ticketRef": args.ticket,
                "keywords": args.keywords,
                "description": args.description,
            }
        )
        _print_json(
            {
                "id": rule.id,
                "pattern": rule.pattern,
                "task": rule.task,
                "ticketRef": rule.ticket_ref,
                "createdAt": rule.created_at,
            }
        )
        return EXIT_OK

    if args.command == "sweep":
        try:
            items = _read_descriptions(args.path)
        except OSError as e:
            log.error("Could not read descriptions", path=args.path, error=str(e))
            return EXIT_FAILED
        report = categorizer.classify_batch(items)
        _print_json(report.to_dict())
        return EXIT_OK if not report.errors else EXIT_FAILED

    # classify
    exit_code = EXIT_OK
    for description in args.descriptions:
        try:
            result = categorizer.classify(description, rule_context=args.rules_context)
        except ClassificationError as e:
            log.error(
                "Classification failed",
                description=description,
                error=e.message,
                error_type=type(e).__name__,
            )
            exit_code = EXIT_FAILED
            continue
        _print_json(result.to_dict())
    return exit_code


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, build the pipeline and run the requested command."""
    args = _build_parser().parse_args(argv)
    # Until settings are loaded, keep structlog's default renderer but write
    # to stderr; stdout carries only command output.
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))
    log = structlog.get_logger(__name__)

    try:
        settings = Settings()
        configure_logging(settings)
    except ValueError as e:
        log.error("Configuration error", error=str(e))
        return EXIT_CONFIG

    try:
        categorizer = build_categorizer(settings)
    except ConfigError as e:
        log.error("Could not initialise the rule store", error=e.message)
        return EXIT_CONFIG

    try:
        return _run(categorizer, args)
    except ClassificationError as e:
        log.error("Command failed", error=e.message, error_type=type(e).__name__)
        return EXIT_FAILED
    finally:
        categorizer.close()


if __name__ == "__main__":
    sys.exit(main())
