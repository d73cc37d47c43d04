import sys
import logging
import logging.handlers
import queue

import pytest

import main
from downlink.logging_config import setup_logging


@pytest.fixture
def root_logger(monkeypatch):
    """Drops the handlers a test installed and restores the level and excepthook."""
    root = logging.getLogger()
    level = root.level
    monkeypatch.setattr(sys, 'excepthook', sys.excepthook)
    yield root
    for handler in list(root.handlers):
        if isinstance(handler, (logging.FileHandler, logging.handlers.QueueHandler)):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


def test_latest_log_is_archived_on_startup(root_logger, tmp_path):
    (tmp_path / 'latest.log').write_text('previous run\n', encoding='utf-8')

    log_path = setup_logging(None, 'INFO', tmp_path)

    assert log_path == tmp_path / 'latest.log'
    archived = [p for p in tmp_path.glob('*.log') if p.name != 'latest.log']
    assert len(archived) == 1
    assert archived[0].read_text(encoding='utf-8') == 'previous run\n'


def test_queue_handler_is_only_added_when_a_queue_is_given(root_logger, tmp_path):
    log_queue = queue.Queue()
    setup_logging(log_queue, 'INFO', tmp_path)
    assert any(isinstance(h, logging.handlers.QueueHandler) for h in root_logger.handlers)

    setup_logging(None, 'INFO', tmp_path)
    assert not any(isinstance(h, logging.handlers.QueueHandler) for h in root_logger.handlers)


def test_cli_logging_keeps_nothing_in_memory(root_logger, tmp_path):
    log_path = main._init_logging('INFO', tmp_path)

    for n in range(500):
        logging.getLogger('downlink.process').debug(f"engine line {n}")

    assert [type(h) for h in root_logger.handlers] == [logging.FileHandler]
    assert root_logger.handlers[0].level == logging.INFO
    assert sys.excepthook is main.handle_exception
    assert 'engine line' not in log_path.read_text(encoding='utf-8')
