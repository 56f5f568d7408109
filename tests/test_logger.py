import logging

from delivery_queue.logger import configure_logging, get_logger


def test_get_logger_reuses_existing_logger():
    logger = get_logger("TestLogger")
    handler_count = len(logger.handlers)

    same_logger = get_logger("TestLogger")
    assert logger is same_logger
    assert len(same_logger.handlers) == handler_count


def test_default_logger_name():
    assert get_logger().name == "DeliveryQueue"


def test_configure_logging_accepts_names(monkeypatch):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

    configure_logging("debug")
    configure_logging("bogus")
    configure_logging(logging.ERROR)

    assert [c["level"] for c in calls] == [logging.DEBUG, logging.INFO, logging.ERROR]
