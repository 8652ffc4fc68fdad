"""
Tests for structured logging of workflow transitions
"""

import logging

import pytest
from structlog.testing import capture_logs

from qbank.core.logging_config import configure_logging, get_logger
from qbank.workflow.exceptions import Forbidden


class TestLoggingConfig:

    def test_level_normalised(self):
        assert configure_logging("debug", json_logs=False) == "DEBUG"
        assert configure_logging("info") == "INFO"

    def test_bound_values_are_kept(self):
        with capture_logs() as logs:
            get_logger("qbank.tests", submission_id="abc").info("heartbeat", extra="value")

        assert logs == [
            {
                "event": "heartbeat",
                "log_level": "info",
                "logger_name": "qbank.tests",
                "submission_id": "abc",
                "extra": "value",
            }
        ]

    def test_logger_created_before_reconfigure_follows_it(self):
        early = get_logger("qbank.tests.early")
        configure_logging("info", json_logs=True)

        with capture_logs() as logs:
            early.info("after_reconfigure")

        assert logs == [{"event": "after_reconfigure", "log_level": "info", "logger_name": "qbank.tests.early"}]

    def test_unknown_level_falls_back_to_info(self):
        assert configure_logging("chatty") == "CHATTY"
        assert logging.getLogger().level == logging.INFO
        with capture_logs() as logs:
            get_logger("qbank.tests").debug("hidden")
            get_logger("qbank.tests").info("shown")
        assert [entry["event"] for entry in logs] == ["shown"]


class TestTransitionLogging:

    def test_transitions_are_logged(self, memory_engine, gatherer, processor, make_draft):
        with capture_logs() as logs:
            submission = memory_engine.create_submission(gatherer, make_draft())
            memory_engine.approve(processor, submission.id)

        events = {entry["event"]: entry for entry in logs}
        assert events["submission_created"]["submission_id"] == submission.id

        transition = events["submission_transition"]
        assert transition["submission_id"] == submission.id
        assert transition["operation"] == "approve"
        assert transition["actor"] == processor.user_id
        assert transition["from_status"] == "awaiting_processor"
        assert transition["to_status"] == "awaiting_author"

    def test_ownership_refusal_is_logged(self, memory_engine, gatherer, other_gatherer, make_draft):
        submission = memory_engine.create_submission(gatherer, make_draft())
        with capture_logs() as logs:
            with pytest.raises(Forbidden):
                memory_engine.get_by_id(other_gatherer, submission.id)

        assert logs[-1]["event"] == "ownership_denied"
        assert logs[-1]["log_level"] == "warning"
