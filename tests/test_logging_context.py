"""Tests for request correlation logging."""

import logging

from booking_engine.logging_context import (
    RequestIdFilter,
    get_request_id,
    get_request_logger,
    new_request_id,
    set_request_id,
)


class TestRequestId:
    def test_ids_are_unique(self):
        assert new_request_id() != new_request_id()

    def test_set_and_get(self):
        set_request_id("abc123")
        assert get_request_id() == "abc123"

    def test_filter_injects_id(self):
        set_request_id("feedbeef")
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
        assert RequestIdFilter().filter(record)
        assert record.request_id == "feedbeef"

    def test_request_logger_filter_attached_once(self):
        logger = get_request_logger("booking_engine.test_logger")
        get_request_logger("booking_engine.test_logger")
        assert sum(isinstance(f, RequestIdFilter) for f in logger.filters) == 1
