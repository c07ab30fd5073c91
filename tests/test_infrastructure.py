"""Tests for the cache, event publisher, settings and schema bootstrap."""

from sqlalchemy import inspect
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from taskwatch.cache.state_store import GUEST_USER_ID, InMemoryStateStore, normalize_user_scope
from taskwatch.config import Settings
from taskwatch.db.init import init_db
from taskwatch.events.publisher import RULES_UPDATED, RoutineEventPublisher


class TestStateStore:
    def test_blank_users_share_the_guest_scope(self) -> None:
        assert normalize_user_scope(None) == GUEST_USER_ID
        assert normalize_user_scope("   ") == GUEST_USER_ID
        assert normalize_user_scope(" user-1 ") == "user-1"

    def test_values_are_copied(self) -> None:
        store = InMemoryStateStore()
        rules = [{"id": "a"}]
        store.set("user-1", "rules", rules)
        rules.append({"id": "b"})
        fetched = store.get("user-1", "rules")
        fetched.append({"id": "c"})
        assert store.get("user-1", "rules") == [{"id": "a"}]

    def test_clear_key_and_scope(self) -> None:
        store = InMemoryStateStore()
        store.set("user-1", "a", 1)
        store.set("user-1", "b", 2)
        store.clear("user-1", "a")
        assert store.get("user-1", "a", "missing") == "missing"
        store.clear("user-1")
        assert store.get("user-1", "b") is None


class TestPublisher:
    def test_dev_mode_only_records(self) -> None:
        publisher = RoutineEventPublisher(Settings(dapr_enabled=False))
        result = publisher.publish_rules_updated("user-1", ["r1"])
        assert result["success"] is True
        assert publisher.published[-1]["type"] == RULES_UPDATED
        assert publisher.published[-1]["data"] == {"user_id": "user-1", "rule_ids": ["r1"]}


class TestSettings:
    def test_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("ENABLE_REMOTE_EXCEPTIONS", "yes")
        monkeypatch.setenv("SYNC_LOCK_TTL_SECONDS", "not-a-number")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        settings = Settings.from_env()
        assert settings.enable_remote_exceptions is True
        assert settings.sync_lock_ttl_seconds == Settings.sync_lock_ttl_seconds
        assert settings.log_level == "DEBUG"


class TestInitDb:
    def test_creates_every_table(self) -> None:
        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        init_db(engine)
        tables = set(inspect(engine).get_table_names())
        assert {"repeating_sessions", "repeating_exceptions", "session_history", "sync_lock"} <= tables
        engine.dispose()
