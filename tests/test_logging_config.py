"""Tests for structured logging setup."""

import json
import logging

from patchwatch.logging_config import PatchwatchJsonFormatter, setup_logging


def test_context_fields_are_promoted():
    formatter = PatchwatchJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    record = logging.LogRecord("patchwatch.worker.sweep", logging.INFO, __file__, 10, "Committed update", None, None)
    record.entity_id = "hollow-knight"
    record.adapter = "gogdb"

    payload = json.loads(formatter.format(record))

    assert payload["message"] == "Committed update"
    assert payload["level"] == "INFO"
    assert payload["entity_id"] == "hollow-knight"
    assert payload["adapter"] == "gogdb"
    assert "approval_id" not in payload


def test_setup_writes_json_files(tmp_path):
    root = setup_logging(tmp_path / "logs", level="debug")
    try:
        logging.getLogger("patchwatch.review.consensus").error("Approval a1 could not be saved",
                                                                extra={"approval_id": "a1"})
        for handler in root.handlers:
            handler.flush()

        lines = (tmp_path / "logs" / "patchwatch.log").read_text().splitlines()
        assert json.loads(lines[-1])["approval_id"] == "a1"
        assert (tmp_path / "logs" / "error.log").read_text().strip()
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        for handler in list(root.handlers):
            handler.close()
            root.removeHandler(handler)
