"""Tests for logging, metrics, CORS origins and token decoding."""

import json
import logging
from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException
from jose import jwt

from taskwatch.config import Settings, get_settings
from taskwatch.middleware.auth import JWT_ALGORITHM, CurrentUser, decode_token, verify_user_access
from taskwatch.middleware.cors import LOCAL_ORIGINS, allowed_origins
from taskwatch.utils.logger import get_logger
from taskwatch.utils.metrics import RULES_CREATED, SYNC_PUSHES, MetricsCollector


class TestStructuredLogger:
    def test_bound_fields_are_merged_into_each_line(self, caplog) -> None:
        audit = get_logger("taskwatch.audit.test").bind(user_id="user-1")
        with caplog.at_level(logging.INFO, logger="taskwatch.audit.test"):
            audit.info("Pushed repeating rules", rules=2)

        record = json.loads(caplog.records[-1].getMessage())
        assert record["event"] == "Pushed repeating rules"
        assert record["component"] == "taskwatch.audit.test"
        assert record["user_id"] == "user-1"
        assert record["rules"] == 2

    def test_disabled_level_emits_nothing(self, caplog) -> None:
        with caplog.at_level(logging.ERROR, logger="taskwatch.audit.quiet"):
            get_logger("taskwatch.audit.quiet").info("ignored")
        assert caplog.records == []


class TestMetricsCollector:
    def test_reported_counters_start_at_zero(self) -> None:
        counters = MetricsCollector().get_metrics()["counters"]
        assert counters[RULES_CREATED] == 0
        assert SYNC_PUSHES not in counters

    def test_timer_records_failed_calls(self) -> None:
        collector = MetricsCollector()

        @collector.time_operation("op_seconds")
        def boom():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            boom()
        assert collector.get_metrics()["timer_calls"]["op_seconds"] == 1
        assert boom.__name__ == "boom"

    def test_reset_clears_everything(self) -> None:
        collector = MetricsCollector()
        collector.increment_counter(SYNC_PUSHES, 3)
        collector.record_timer("op_seconds", 0.5)
        collector.reset()
        snapshot = collector.get_metrics()
        assert collector.get_counter(SYNC_PUSHES) == 0
        assert snapshot["timers"] == {}


class TestCorsOrigins:
    def test_frontend_url_is_appended_once(self) -> None:
        settings = Settings(frontend_url="https://app.example.com")
        assert allowed_origins(settings) == list(LOCAL_ORIGINS) + ["https://app.example.com"]

    def test_local_frontend_is_not_duplicated(self) -> None:
        settings = Settings(frontend_url=LOCAL_ORIGINS[0])
        assert allowed_origins(settings) == list(LOCAL_ORIGINS)


class TestTokens:
    def test_expired_token_is_rejected(self) -> None:
        token = jwt.encode(
            {"sub": "user-1", "exp": datetime.utcnow() - timedelta(minutes=5)},
            get_settings().auth_secret,
            algorithm=JWT_ALGORITHM,
        )
        with pytest.raises(HTTPException) as excinfo:
            decode_token(token)
        assert excinfo.value.status_code == 401
        assert excinfo.value.detail == "Token has expired"

    def test_wrong_secret_is_rejected(self) -> None:
        token = jwt.encode({"sub": "user-1"}, "not-the-secret", algorithm=JWT_ALGORITHM)
        with pytest.raises(HTTPException) as excinfo:
            decode_token(token)
        assert excinfo.value.status_code == 401

    def test_other_users_path_is_forbidden(self) -> None:
        with pytest.raises(HTTPException) as excinfo:
            verify_user_access("user-2", CurrentUser(user_id="user-1"))
        assert excinfo.value.status_code == 403
