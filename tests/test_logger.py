import logging

from cocoinbox_mail.logger import configure_logging, get_logger


def test_get_logger_reuses_existing_logger():
    logger = get_logger("TestLogger")
    handler_count = len(logger.handlers)

    same_logger = get_logger("TestLogger")
    assert logger is same_logger
    assert len(same_logger.handlers) == handler_count


def test_default_logger_name():
    assert get_logger().name == "CocoinboxMail"


def test_configure_logging_reads_level_from_env(monkeypatch):
    root = logging.getLogger()
    previous_level = root.level
    previous_handlers = list(root.handlers)
    monkeypatch.setenv("COCO_LOG_LEVEL", "warning")
    try:
        configure_logging()
        assert root.level == logging.WARNING
        configure_logging("debug")
        assert root.level == logging.DEBUG
    finally:
        root.handlers[:] = previous_handlers
        root.setLevel(previous_level)
