"""JSON 로깅 / 인증 협력자 테스트."""

from __future__ import annotations

import json
import logging

import pytest

from release_feed.auth import EnvTokenProvider, user_id_for_token
from release_feed.logging_config import JsonFormatter, setup_logging


class TestJsonFormatter:
    def test_extra_fields_included(self) -> None:
        record = logging.LogRecord("release_feed.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.event_code = "FETCH_COMPLETE"
        record.rate_limit_remaining = 0
        record.counts = {"releases": 3}

        entry = json.loads(JsonFormatter().format(record))

        assert entry["message"] == "hello world"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "release_feed.test"
        assert entry["event_code"] == "FETCH_COMPLETE"
        assert entry["rate_limit_remaining"] == 0
        assert entry["counts"] == {"releases": 3}
        assert "cache_status" not in entry

    def test_setup_logging_replaces_handlers(self) -> None:
        logger = logging.getLogger("release_feed")
        try:
            setup_logging()
            setup_logging(json_format=False)
            assert len(logger.handlers) == 1
            assert not isinstance(logger.handlers[0].formatter, JsonFormatter)
        finally:
            logger.handlers.clear()


class TestEnvTokenProvider:
    def test_reads_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RF_TOKEN", "ghp_env")
        assert EnvTokenProvider("RF_TOKEN").get_access_token() == "ghp_env"

    def test_empty_env_is_none(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RF_TOKEN", "")
        assert EnvTokenProvider("RF_TOKEN").get_access_token() is None

    def test_invalidated_token_not_reused(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RF_TOKEN", "ghp_env")
        provider = EnvTokenProvider("RF_TOKEN")
        provider.on_session_invalid()
        assert provider.get_access_token() is None

    def test_user_id_is_stable_hash(self) -> None:
        assert user_id_for_token("ghp_a") == user_id_for_token("ghp_a")
        assert user_id_for_token("ghp_a") != user_id_for_token("ghp_b")
        assert len(user_id_for_token("ghp_a")) == 16
