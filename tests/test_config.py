"""Tests for settings, score caps and structured logging."""

import io
import json
import logging

import pytest

from trustlink.config import DEFAULT_DB_PATH, ScoreCaps, Settings
from trustlink.log import LOGGER_NAME, flow_id_var, new_flow_id, setup_structured_logging


class TestScoreCaps:
    def test_defaults(self):
        caps = ScoreCaps()
        assert caps.as_dict() == {"handshakes": 30, "wallet": 20, "social": 20, "events": 20, "community": 10}
        assert caps.total == 100

    def test_parse_partial(self):
        caps = ScoreCaps.parse("handshakes=20, community=20")
        assert caps.handshakes == 20
        assert caps.community == 20
        assert caps.wallet == 20

    @pytest.mark.parametrize("raw", ["bogus=1", "wallet", "wallet=x", "wallet=-1", "handshakes=90"])
    def test_parse_rejects(self, raw):
        with pytest.raises(ValueError):
            ScoreCaps.parse(raw)


class TestSettings:
    def test_from_empty_env(self):
        settings = Settings.from_env({})
        assert settings.db_path == DEFAULT_DB_PATH
        assert settings.score_caps == ScoreCaps()
        assert settings.social_configured is False

    def test_from_env(self):
        settings = Settings.from_env({
            "TRUSTLINK_BOT_TOKEN": "1:abc",
            "TRUSTLINK_MESSAGING_MAX_AGE_S": "60",
            "TRUSTLINK_SCORE_CAPS": "events=10",
            "TRUSTLINK_SOCIAL_CLIENT_ID": "cid",
            "TRUSTLINK_SOCIAL_CALLBACK_URL": "https://app.example/cb",
            "TRUSTLINK_STATE_SECRET": "s",
            "TRUSTLINK_DB": "/tmp/x.db",
        })
        assert settings.bot_token == "1:abc"
        assert settings.messaging_max_age_s == 60
        assert settings.score_caps.events == 10
        assert settings.social_configured is True
        assert settings.db_path == "/tmp/x.db"

    def test_bad_caps_in_env(self):
        with pytest.raises(ValueError):
            Settings.from_env({"TRUSTLINK_SCORE_CAPS": "handshakes=99"})


class TestLogging:
    @pytest.fixture
    def logger(self):
        stream = io.StringIO()
        logger = setup_structured_logging("DEBUG", stream=stream)
        yield logger, stream
        logger.handlers.clear()
        flow_id_var.set("")

    def test_json_lines_carry_flow_id(self, logger):
        log, stream = logger
        fid = new_flow_id()
        logging.getLogger("trustlink.merge").info("merge started", extra={"source": "a"})
        line = json.loads(stream.getvalue().strip())
        assert line["message"] == "merge started"
        assert line["flow_id"] == fid
        assert line["source"] == "a"
        assert line["level"] == "INFO"
        assert line["service"] == "trustlink"
        assert "timestamp" in line

    def test_explicit_flow_id_wins(self, logger):
        log, stream = logger
        new_flow_id("ctx")
        logging.getLogger("trustlink.merge").info("resumed", extra={"flow_id": "stored"})
        assert json.loads(stream.getvalue().strip())["flow_id"] == "stored"

    def test_setup_is_idempotent(self, logger):
        log, first = logger
        second = io.StringIO()
        setup_structured_logging("INFO", stream=second)
        assert len(logging.getLogger(LOGGER_NAME).handlers) == 1
        assert logging.getLogger(LOGGER_NAME).level == logging.INFO

        logging.getLogger("trustlink.flows").info("after re-target")
        assert first.getvalue() == ""
        assert "after re-target" in second.getvalue()

    def test_new_flow_id_explicit(self):
        assert new_flow_id("abc") == "abc"
        assert flow_id_var.get() == "abc"
        flow_id_var.set("")
