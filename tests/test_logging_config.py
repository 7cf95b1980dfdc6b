"""
Log formatters: the JSON line for aggregation and the readable line for
development both carry the lifecycle context services attach via ``extra``.
"""

import json
import logging
import sys

from radiopharm.middleware.logging_config import JSONFormatter, ReadableFormatter


def _record(msg="Order 5: QP_REVIEW → RELEASED", level=logging.INFO, **extra):
    record = logging.LogRecord(
        "radiopharm.services.fulfillment_service", level, __file__, 1, msg, None, None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_carries_entity_context(self):
        line = JSONFormatter().format(_record(
            event_type="order.transition", entity_type="order", entity_id=5, actor="qp.bob",
        ))
        entry = json.loads(line)

        assert entry["level"] == "INFO"
        assert entry["logger"] == "radiopharm.services.fulfillment_service"
        assert entry["message"] == "Order 5: QP_REVIEW → RELEASED"
        assert {k: entry[k] for k in ("event_type", "entity_type", "entity_id", "actor")} == {
            "event_type": "order.transition", "entity_type": "order", "entity_id": 5, "actor": "qp.bob",
        }
        assert "request_id" not in entry

    def test_request_fields_and_exception(self):
        try:
            raise RuntimeError("db down")
        except RuntimeError:
            record = _record("boom", logging.ERROR, request_id="abc-123", status=500)
            record.exc_info = sys.exc_info()

        entry = json.loads(JSONFormatter().format(record))
        assert entry["request_id"] == "abc-123"
        assert entry["status"] == 500
        assert "RuntimeError: db down" in entry["exception"]


class TestReadableFormatter:
    def test_appends_entity_and_actor(self):
        line = ReadableFormatter().format(_record(entity_type="order", entity_id=5, actor="qp.bob"))
        assert line.endswith("Order 5: QP_REVIEW → RELEASED [order:5 qp.bob]")
        assert " INFO     radiopharm.services.fulfillment_service: " in line

    def test_plain_message_has_no_tags(self):
        line = ReadableFormatter().format(_record("db.create_all() completed successfully"))
        assert line.endswith("radiopharm.services.fulfillment_service: db.create_all() completed successfully")
