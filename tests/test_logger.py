import logging
from logging.handlers import RotatingFileHandler

from cli_code.logger import get_logger, setup_logger


def test_file_and_console_handlers(tmp_path):
    log_file = tmp_path / "logs" / "test.log"

    logger = setup_logger("cli_code_test", verbose=False, log_file=str(log_file))
    get_logger("cli_code_test.chat").info("stream started")
    for handler in logger.handlers:
        handler.flush()

    assert any(isinstance(h, RotatingFileHandler) for h in logger.handlers)
    console = next(h for h in logger.handlers if not isinstance(h, RotatingFileHandler))
    assert console.level == logging.WARNING
    assert "cli_code_test.chat: stream started" in log_file.read_text()


def test_reconfigure_replaces_handlers(tmp_path):
    setup_logger("cli_code_test2", log_file=str(tmp_path / "a.log"))
    logger = setup_logger("cli_code_test2", verbose=True, log_file=False)

    assert len(logger.handlers) == 1
    assert logger.handlers[0].level == logging.INFO
