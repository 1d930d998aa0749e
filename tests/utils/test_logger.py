import logging
from unittest.mock import MagicMock

from loki.util import logger as logger_module
from loki.util.logger import ColorFormatter, get_log_filepath, get_logger, handle_exception, setup_logger, should_use_color


class DummyStream:
    def __init__(self):
        self.written = []
    def write(self, msg):
        self.written.append(msg)
    def isatty(self):
        return True


def test_get_logger_returns_namespaced_logger():
    logger = get_logger("test_logger")
    assert isinstance(logger, logging.Logger)
    assert logger.name == "loki.test_logger"
    assert any(isinstance(h, logging.Handler) for h in logger.handlers)


def test_setup_logger_idempotent():
    logger1 = setup_logger("test_logger_idem")
    logger2 = setup_logger("test_logger_idem")
    assert logger1 is logger2
    assert len(logger1.handlers) == 2


def test_color_formatter_applies_color():
    formatter = ColorFormatter("%(levelname)s %(message)s")
    record = logging.LogRecord("test", logging.ERROR, "", 0, "error occurred", None, None)
    formatted = formatter.format(record)
    assert "\033[31m" in formatted and "error occurred" in formatted


def test_should_use_color_true(monkeypatch):
    monkeypatch.setattr("sys.stderr", DummyStream())
    assert should_use_color() is True


def test_get_log_filepath_is_stable():
    path = get_log_filepath()
    assert path.parent.exists()
    assert get_log_filepath() == path


def test_handle_exception_logs_error(monkeypatch):
    fake_logger = MagicMock()
    monkeypatch.setattr(logger_module, "get_logger", lambda name: fake_logger)

    class DummyException(Exception):
        pass

    try:
        raise DummyException("fail")
    except DummyException as exc:
        handle_exception(DummyException, exc, exc.__traceback__)

    fake_logger.error.assert_called_once()
    assert fake_logger.error.call_args.args[0] == "Uncaught exception"


def test_handle_exception_passes_keyboard_interrupt_through(monkeypatch):
    default_hook = MagicMock()
    fake_logger = MagicMock()
    monkeypatch.setattr("sys.__excepthook__", default_hook)
    monkeypatch.setattr(logger_module, "get_logger", lambda name: fake_logger)

    handle_exception(KeyboardInterrupt, KeyboardInterrupt(), None)

    default_hook.assert_called_once()
    fake_logger.error.assert_not_called()
