import logging
import os
import sys

import pytest
import structlog

from activity_categorizer.config import Settings
from activity_categorizer.logging_config import configure_logging


def _structlog_handlers(logger):
    """Handlers installed by configure_logging, ignoring pytest's capture handlers."""
    return [
        handler
        for handler in logger.handlers
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter)
    ]


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    root.handlers[:] = []
    yield root
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    structlog.reset_defaults()


@pytest.mark.parametrize(
    "log_format, log_level, renderer, level",
    [
        ("console", "debug", structlog.dev.ConsoleRenderer, logging.DEBUG),
        ("json", "warning", structlog.processors.JSONRenderer, logging.WARNING),
    ],
)
def test_configure_logging_selects_renderer(
    mocker, root_logger, log_format, log_level, renderer, level
):
    mocker.patch.dict(
        os.environ, {"LOG_FORMAT": log_format, "LOG_LEVEL": log_level}, clear=True
    )

    configure_logging(Settings())

    assert root_logger.getEffectiveLevel() == level
    (handler,) = _structlog_handlers(root_logger)
    assert handler.stream is sys.stderr
    formatter = handler.formatter
    assert any(isinstance(proc, renderer) for proc in formatter.processors)


def test_configure_logging_quiets_client_libraries(mocker, root_logger):
    mocker.patch.dict(os.environ, {"LOG_LEVEL": "DEBUG"}, clear=True)

    configure_logging(Settings())

    for name in ("httpx", "urllib3", "openai"):
        assert logging.getLogger(name).level == logging.WARNING


def test_configure_logging_replaces_existing_handlers(mocker, root_logger):
    mocker.patch.dict(os.environ, {}, clear=True)
    settings = Settings()

    configure_logging(settings)
    configure_logging(settings)

    assert len(_structlog_handlers(root_logger)) == 1
