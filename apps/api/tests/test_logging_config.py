import json
import logging
from decimal import Decimal

import pytest

from brewery_core.logging_config import LogContext, StructuredFormatter, configure_logging, reset_logging


@pytest.fixture(autouse=True)
def clean_logging():
    reset_logging()
    yield
    reset_logging()


def make_record(msg="lot_completed", **extra):
    record = logging.LogRecord("brewery_core.lots_api", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_renders_json_with_context_and_extras():
    LogContext.set(correlation_id="req-1", tenant_id="tenant-a", actor_id="brewer-1")
    out = json.loads(StructuredFormatter().format(make_record(lot_id=7, released_tanks=[1, 2])))

    assert out["message"] == "lot_completed"
    assert out["level"] == "INFO"
    assert out["logger"] == "brewery_core.lots_api"
    assert out["correlation_id"] == "req-1"
    assert out["tenant_id"] == "tenant-a"
    assert out["actor_id"] == "brewer-1"
    assert out["lot_id"] == 7
    assert out["released_tanks"] == [1, 2]


def test_context_set_ignores_none_and_clear_resets():
    LogContext.set(correlation_id="req-2")
    LogContext.set(tenant_id="tenant-b")
    assert LogContext.get_all() == {"correlation_id": "req-2", "tenant_id": "tenant-b"}

    LogContext.clear()
    assert LogContext.get_all() == {}


def test_non_json_values_are_stringified():
    out = json.loads(StructuredFormatter().format(make_record(balance=Decimal("-1.5"))))
    assert out["balance"] == "-1.5"


def test_configure_logging_installs_one_handler():
    logger = configure_logging("DEBUG", "json")
    configure_logging("WARNING", "json")

    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0].formatter, StructuredFormatter)
    assert logger.level == logging.WARNING
    assert logger.propagate is False
