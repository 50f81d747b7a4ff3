import logging
import re

import pytest

from meme_collection.config import Settings, configure_logging, LocalISOFormatter

from tests._helpers import restore_logging, snapshot_logging


@pytest.fixture
def clean_logging():
    snap = snapshot_logging()
    logging.getLogger().handlers[:] = []
    try:
        yield
    finally:
        restore_logging(snap)


def test_configure_logging_unknown_level_defaults_to_info(clean_logging):
    configure_logging(Settings(logging_level="NOT_A_LEVEL"))
    assert logging.getLogger().level == logging.INFO


def test_configure_logging_debug_enables_sql_echo(clean_logging):
    configure_logging(Settings(logging_level="DEBUG"))
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger('sqlalchemy.engine').level == logging.INFO


def test_configure_logging_info_quiets_sql(clean_logging):
    configure_logging(Settings(logging_level="info"))
    assert logging.getLogger('sqlalchemy.engine').level == logging.WARNING


def test_configure_logging_does_not_add_duplicate_handlers(clean_logging):
    s = Settings(logging_level="INFO")
    configure_logging(s)
    assert len(logging.getLogger().handlers) == 1
    configure_logging(s)
    assert len(logging.getLogger().handlers) == 1


def test_configure_logging_sets_noisy_loggers_to_warning(clean_logging):
    configure_logging(Settings(logging_level="DEBUG"))
    for n in ['httpx', 'httpcore', 'authlib', 'urllib3']:
        assert logging.getLogger(n).level == logging.WARNING


def test_configure_logging_with_none_settings_defaults_info(clean_logging):
    configure_logging(None)
    assert logging.getLogger().level == logging.INFO
    assert len(logging.getLogger().handlers) == 1


def test_uvicorn_handlers_cleared_and_propagate_set(clean_logging):
    for name in ('uvicorn', 'uvicorn.error'):
        lg = logging.getLogger(name)
        lg.addHandler(logging.StreamHandler())
        lg.propagate = False

    configure_logging(Settings(logging_level="INFO"))

    for name in ('uvicorn', 'uvicorn.error'):
        assert logging.getLogger(name).handlers == []
        assert logging.getLogger(name).propagate is True


def test_handler_uses_local_iso_formatter(clean_logging):
    configure_logging(Settings(timezone="UTC"))
    handler = logging.getLogger().handlers[0]
    assert isinstance(handler.formatter, LocalISOFormatter)


def test_localisoformatter_with_valid_and_invalid_tz():
    class R:
        created = 1673000000.0

    f = LocalISOFormatter(tz_name="UTC")
    s = f.formatTime(R())
    assert "T" in s
    assert re.search(r"[+-]\d{2}:\d{2}$", s)

    f2 = LocalISOFormatter(tz_name="NoSuchTimeZone")
    assert isinstance(f2.formatTime(R()), str)

    f3 = LocalISOFormatter(tz_name=None)
    assert isinstance(f3.formatTime(R()), str)
