import json
import logging
import sys

import pytest

from courier.core.logging_setup import JSONFormatter, setup_logging


def make_record(msg, *args):
    return logging.LogRecord(
        name="courier.dispatch_service",
        level=logging.INFO,
        pathname="dispatch_service.py",
        lineno=1,
        msg=msg,
        args=args,
        exc_info=None,
    )


@pytest.mark.unit
class TestJSONFormatter:
    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(make_record("Order %s cancelled", 7)))

        assert data["level"] == "INFO"
        assert data["logger"] == "courier.dispatch_service"
        assert data["message"] == "Order 7 cancelled"
        assert data["service_name"] == "courier-dispatch"
        assert "timestamp" in data

    def test_quotes_in_message_stay_valid_json(self):
        output = JSONFormatter().format(make_record('Rider said "no" to order %s', 3))

        assert json.loads(output)["message"] == 'Rider said "no" to order 3'

    def test_extra_ids(self):
        record = make_record("Offer sent")
        record.order_id = 11
        record.rider_id = 4

        data = json.loads(JSONFormatter().format(record))

        assert (data["order_id"], data["rider_id"]) == (11, 4)

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("courier", logging.ERROR, "x.py", 1, "failed", (), sys.exc_info())

        data = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in data["exception"]


@pytest.mark.unit
def test_setup_logging_switches_formatter():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging("debug", json_output=True)
        assert isinstance(root.handlers[-1].formatter, JSONFormatter)
        assert root.level == logging.DEBUG

        setup_logging("INFO")
        assert not isinstance(root.handlers[-1].formatter, JSONFormatter)
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
