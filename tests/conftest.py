"""
Shared pytest fixtures.

Package code lives in ``src/activity_categorizer``. When the package is not
installed (or an editable install's ``.pth`` file is skipped, as happens with
hidden virtualenv folders on some macOS setups), ``src/`` is put on
``sys.path`` so the tests still import it.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


def _ensure_src_on_path() -> None:
    try:
        import activity_categorizer  # noqa: F401
        return
    except ModuleNotFoundError:
        pass

    sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))


_ensure_src_on_path()

from activity_categorizer.config import Settings  # noqa: E402
from activity_categorizer.rules import RuleStore  # noqa: E402


@pytest.fixture
def rules_path(tmp_path):
    return tmp_path / "rules.csv"


@pytest.fixture
def store(rules_path):
    store = RuleStore(rules_path)
    store.load()
    return store


@pytest.fixture
def openai_settings(mocker):
    mocker.patch.dict(
        os.environ,
        {"LLM_PROVIDER": "openai", "OPENAI_API_KEY": "test_api_key"},
        clear=True,
    )
    return Settings()
