import logging

import pytest

from shop_queue.logging_setup import setup_logging


@pytest.fixture
def restore_logger():
    logger = logging.getLogger("shop_queue")
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield logger
    for handler in logger.handlers:
        if handler not in saved[0]:
            handler.close()
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


def test_level_argument_wins(restore_logger, monkeypatch):
    monkeypatch.setenv("SHOPQUEUE_LOG_LEVEL", "ERROR")
    monkeypatch.delenv("SHOPQUEUE_LOG_FILE", raising=False)
    setup_logging("debug")
    assert restore_logger.level == logging.DEBUG
    assert restore_logger.propagate is False


def test_level_from_env(restore_logger, monkeypatch):
    monkeypatch.setenv("SHOPQUEUE_LOG_LEVEL", "warning")
    monkeypatch.delenv("SHOPQUEUE_LOG_FILE", raising=False)
    setup_logging()
    assert restore_logger.level == logging.WARNING


def test_log_file(restore_logger, monkeypatch, tmp_path):
    path = tmp_path / "logs" / "queue.log"
    monkeypatch.setenv("SHOPQUEUE_LOG_FILE", str(path))
    setup_logging("INFO")

    logging.getLogger("shop_queue.manager").info("entry joined")
    for handler in restore_logger.handlers:
        handler.flush()

    assert "entry joined" in path.read_text(encoding="utf-8")
