# tests/test_logging_utils.py

import logging
import pytest

from sccontrast.logging_utils import init_logging


def _get_handler_types():
    return tuple(type(h) for h in logging.root.handlers)


@pytest.fixture
def reset_logging():
    """Ensure clean logging handlers before/after each test."""
    orig = logging.root.handlers[:]
    orig_level = logging.root.level
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
    yield
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
    for h in orig:
        logging.root.addHandler(h)
    logging.root.setLevel(orig_level)


def test_init_logging_stream_only(reset_logging):
    init_logging(logfile=None, level=logging.DEBUG)
    assert _get_handler_types() == (logging.StreamHandler,)


def test_init_logging_stream_and_file(tmp_path, reset_logging):
    log_path = tmp_path / "log" / "de.log"
    init_logging(logfile=log_path, level=logging.INFO)

    # Order: StreamHandler then FileHandler
    assert _get_handler_types() == (logging.StreamHandler, logging.FileHandler)

    logging.getLogger("sccontrast.test").info("Estimating DE per cell type")
    txt = log_path.read_text()
    assert "Estimating DE per cell type" in txt
    assert "[INFO]" in txt


def test_init_logging_overwrites_previous_handlers(reset_logging):
    logging.root.addHandler(logging.StreamHandler())
    logging.root.addHandler(logging.StreamHandler())

    init_logging(None)
    assert _get_handler_types() == (logging.StreamHandler,)


def test_init_logging_respects_level(tmp_path, reset_logging):
    log_path = tmp_path / "test.log"
    init_logging(logfile=log_path, level=logging.WARNING)

    logger = logging.getLogger("x")
    logger.info("info msg")
    logger.warning("warn msg")

    txt = log_path.read_text()
    assert "warn msg" in txt
    assert "info msg" not in txt


def test_init_logging_quiets_third_party_loggers(reset_logging):
    init_logging(None, level=logging.DEBUG)
    assert logging.getLogger("pydeseq2").level == logging.WARNING
    assert logging.getLogger("anndata").level == logging.WARNING


def test_init_logging_accepts_str_path(tmp_path, reset_logging):
    log_path = tmp_path / "nested" / "deeper" / "log.txt"
    init_logging(logfile=str(log_path))
    assert log_path.exists()
