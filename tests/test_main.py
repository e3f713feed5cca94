import json
import os

import pytest
import structlog

from activity_categorizer import main as main_module
from activity_categorizer.errors import ConfigError, ServiceUnavailable
from activity_categorizer.generative import CategoryResult
from activity_categorizer.pipeline import BatchReport
from activity_categorizer.rules import Rule


@pytest.fixture
def env(mocker, tmp_path):
    mocker.patch.dict(
        os.environ,
        {"RULES_PATH": str(tmp_path / "rules.csv"), "EMBEDDINGS_ENABLED": "false"},
        clear=True,
    )
    mocker.patch.object(main_module, "configure_logging")
    yield
    structlog.reset_defaults()


@pytest.fixture
def categorizer(mocker, env):
    categorizer = mocker.MagicMock()
    mocker.patch.object(main_module, "build_categorizer", return_value=categorizer)
    return categorizer


def test_main_invalid_config_returns_config_exit(mocker, env, capsys):
    mocker.patch.dict(os.environ, {"LLM_PROVIDER": "nope"})
    build = mocker.patch.object(main_module, "build_categorizer")

    assert main_module.main(["rules"]) == main_module.EXIT_CONFIG
    build.assert_not_called()
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "Configuration error" in captured.err


def test_main_rule_store_error_returns_config_exit(mocker, env):
    mocker.patch.object(
        main_module, "build_categorizer", side_effect=ConfigError("cannot create rules file")
    )

    assert main_module.main(["rules"]) == main_module.EXIT_CONFIG


def test_main_classify_prints_json(categorizer, capsys):
    categorizer.classify.return_value = CategoryResult(
        task="Meetings", timespan="15m", confidence="high", reason="standup"
    )

    exit_code = main_module.main(["classify", "Daily standup call 15m"])

    assert exit_code == main_module.EXIT_OK
    assert json.loads(capsys.readouterr().out) == {
        "task": "Meetings",
        "ticketRef": "",
        "timespan": "15m",
        "confidence": "high",
        "reason": "standup",
        "strategy": "generative",
    }
    categorizer.classify.assert_called_once_with("Daily standup call 15m", rule_context=None)
    categorizer.close.assert_called_once()


def test_main_classify_failure_returns_failed_exit(categorizer, capsys):
    categorizer.classify.side_effect = ServiceUnavailable("down", service="ollama")

    assert main_module.main(["classify", "standup"]) == main_module.EXIT_FAILED
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "Classification failed" in captured.err
    categorizer.close.assert_called_once()


def test_main_add_rule(categorizer, capsys):
    categorizer.add_rule.return_value = Rule(
        id="r1",
        pattern="standup",
        task="Meetings",
        ticket_ref="MEET-1",
        created_at="2025-01-01T00:00:00+00:00",
    )

    exit_code = main_module.main(
        ["add-rule", "--pattern", "standup", "--task", "Meetings", "--ticket", "MEET-1",
         "--keyword", "daily", "--keyword", "sync"]
    )

    assert exit_code == main_module.EXIT_OK
    spec = categorizer.add_rule.call_args.args[0]
    assert spec["pattern"] == "standup"
    assert spec["ticketRef"] == "MEET-1"
    assert spec["keywords"] == ["daily", "sync"]
    assert json.loads(capsys.readouterr().out)["id"] == "r1"


def test_main_sweep_reads_file(categorizer, tmp_path, capsys):
    notes = tmp_path / "notes.txt"
    notes.write_text("Daily standup\n\nCode review 2h\n", encoding="utf-8")
    categorizer.classify_batch.return_value = BatchReport(
        total=2,
        results={1: CategoryResult(task="Meetings"), 3: CategoryResult(task="Code Review")},
    )

    exit_code = main_module.main(["sweep", str(notes)])

    assert exit_code == main_module.EXIT_OK
    categorizer.classify_batch.assert_called_once_with({1: "Daily standup", 3: "Code review 2h"})
    payload = json.loads(capsys.readouterr().out)
    assert payload["results"]["3"]["task"] == "Code Review"


def test_main_sweep_missing_file(categorizer, tmp_path):
    assert main_module.main(["sweep", str(tmp_path / "missing.txt")]) == main_module.EXIT_FAILED
    categorizer.classify_batch.assert_not_called()


def test_main_rules_with_real_store(env, capsys):
    assert main_module.main(["rules"]) == main_module.EXIT_OK
    assert capsys.readouterr().out == "No categorization rules defined.\n"


def test_build_categorizer_imports_seed_rules(mocker, env, tmp_path):
    seed = tmp_path / "seed.json"
    seed.write_text(json.dumps({"rules": [{"id": "s1", "name": "standup", "task": "Meetings"}]}))
    mocker.patch.dict(os.environ, {"SEED_RULES_PATH": str(seed)})

    categorizer = main_module.build_categorizer(main_module.Settings())

    assert [rule.id for rule in categorizer.rule_store.rules()] == ["s1"]
    assert categorizer.embedder is None
