"""Tests for per-occurrence skips and reschedules."""

import pytest
from sqlmodel import Session, select

from taskwatch.cache.state_store import InMemoryStateStore
from taskwatch.config import Settings
from taskwatch.errors import RuleValidationError
from taskwatch.events.publisher import EXCEPTIONS_UPDATED
from taskwatch.models.repeating_exception import RepeatingExceptionRecord
from taskwatch.services.exception_store import ExceptionStore

USER_ID = "user-1"


@pytest.fixture
def remote_settings():
    return Settings(enable_remote_exceptions=True)


@pytest.fixture
def mirrored_store(state_store, engine, publisher, remote_settings):
    return ExceptionStore(state_store, engine, publisher, remote_settings)


def remote_records(engine):
    with Session(engine) as session:
        return session.exec(select(RepeatingExceptionRecord)).all()


class TestLocalExceptions:
    """The cache is the source of truth when mirroring is off."""

    def test_skip_is_recorded(self, exception_store, publisher, engine) -> None:
        saved = exception_store.upsert_exception(USER_ID, "r1", "2024-01-02", "skipped")
        assert exception_store.has_exception(USER_ID, "r1", "2024-01-02")
        assert not exception_store.has_exception(USER_ID, "r1", "2024-01-03")
        assert publisher.published[-1]["type"] == EXCEPTIONS_UPDATED
        assert saved.key == "r1:2024-01-02"
        assert remote_records(engine) == []

    def test_same_key_and_action_updates_in_place(self, exception_store) -> None:
        first = exception_store.upsert_exception(USER_ID, "r1", "2024-01-02", "rescheduled", 1000, 2000)
        second = exception_store.upsert_exception(USER_ID, "r1", "2024-01-02", "rescheduled", 3000, 4000)
        items = exception_store.list_exceptions(USER_ID)
        assert len(items) == 1
        assert second.id == first.id
        assert items[0].new_started_at == 3000
        assert items[0].created_at_ms == first.created_at_ms

    def test_latest_write_wins(self, exception_store) -> None:
        exception_store.upsert_exception(USER_ID, "r1", "2024-01-02", "skipped")
        exception_store.upsert_exception(USER_ID, "r1", "2024-01-02", "rescheduled", 1000, 2000)
        assert exception_store.find_exception(USER_ID, "r1", "2024-01-02").action == "rescheduled"

    def test_unknown_action_raises(self, exception_store) -> None:
        with pytest.raises(RuleValidationError):
            exception_store.upsert_exception(USER_ID, "r1", "2024-01-02", "postponed")

    def test_malformed_date_raises(self, exception_store) -> None:
        with pytest.raises(RuleValidationError):
            exception_store.upsert_exception(USER_ID, "r1", "tomorrow", "skipped")

    def test_delete_reschedule_keeps_skips(self, exception_store) -> None:
        exception_store.upsert_exception(USER_ID, "r1", "2024-01-02", "skipped")
        exception_store.upsert_exception(USER_ID, "r1", "2024-01-02", "rescheduled", 1000, 2000)
        assert exception_store.delete_reschedule_exception(USER_ID, "r1", "2024-01-02")
        assert [item.action for item in exception_store.list_exceptions(USER_ID)] == ["skipped"]
        assert not exception_store.delete_reschedule_exception(USER_ID, "r1", "2024-01-02")

    def test_remap_routine_ids(self, exception_store) -> None:
        exception_store.upsert_exception(USER_ID, "local-1-aaaaaa", "2024-01-02", "skipped")
        exception_store.upsert_exception(USER_ID, "r2", "2024-01-02", "skipped")
        assert exception_store.remap_routine_ids(USER_ID, {"local-1-aaaaaa": "r1"}) == 1
        assert {item.routine_id for item in exception_store.list_exceptions(USER_ID)} == {"r1", "r2"}

    def test_exceptions_are_scoped_per_user(self, exception_store) -> None:
        exception_store.upsert_exception(USER_ID, "r1", "2024-01-02", "skipped")
        assert exception_store.list_exceptions("user-2") == []


class TestMirroredExceptions:
    """With remote exceptions enabled every write reaches the database."""

    def test_writes_are_mirrored(self, mirrored_store, engine) -> None:
        saved = mirrored_store.upsert_exception(USER_ID, "r1", "2024-01-02", "skipped", notes="sick")
        records = remote_records(engine)
        assert [record.id for record in records] == [saved.id]
        assert records[0].notes == "sick"

    def test_reschedule_delete_is_mirrored(self, mirrored_store, engine) -> None:
        mirrored_store.upsert_exception(USER_ID, "r1", "2024-01-02", "rescheduled", 1000, 2000)
        mirrored_store.delete_reschedule_exception(USER_ID, "r1", "2024-01-02")
        assert remote_records(engine) == []

    def test_remote_rows_merge_into_a_fresh_cache(self, mirrored_store, engine, publisher, remote_settings) -> None:
        saved = mirrored_store.upsert_exception(USER_ID, "r1", "2024-01-02", "skipped")
        other_device = ExceptionStore(InMemoryStateStore(), engine, publisher, remote_settings)
        assert [item.id for item in other_device.list_exceptions(USER_ID)] == [saved.id]

    def test_guest_is_never_mirrored(self, mirrored_store, engine) -> None:
        mirrored_store.upsert_exception(None, "r1", "2024-01-02", "skipped")
        assert remote_records(engine) == []
