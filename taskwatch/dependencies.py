"""FastAPI dependencies wiring stores and services per request."""
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.engine import Engine

from taskwatch.cache.advisory_lock import DatabaseAdvisoryLock
from taskwatch.cache.state_store import InMemoryStateStore, StateStore
from taskwatch.config import get_settings
from taskwatch.db.config import get_engine
from taskwatch.events.publisher import RoutineEventPublisher
from taskwatch.services.exception_store import ExceptionStore
from taskwatch.services.guide_service import GuideService
from taskwatch.services.history_store import HistoryStore
from taskwatch.services.repeating_session_service import RepeatingSessionService
from taskwatch.services.rule_store import RuleStore
from taskwatch.services.rule_window_resolver import RuleWindowResolver

# process-level cache shared by every request
_state_store = InMemoryStateStore()


def get_state_store() -> StateStore:
    return _state_store


@lru_cache(maxsize=1)
def get_publisher() -> RoutineEventPublisher:
    return RoutineEventPublisher(get_settings())


def get_rule_store(
    cache: StateStore = Depends(get_state_store),
    engine: Engine = Depends(get_engine),
    publisher: RoutineEventPublisher = Depends(get_publisher),
) -> RuleStore:
    """Dependency for getting RuleStore instance."""
    return RuleStore(cache, engine, publisher)


def get_history_store(engine: Engine = Depends(get_engine)) -> HistoryStore:
    return HistoryStore(engine)


def get_exception_store(
    cache: StateStore = Depends(get_state_store),
    engine: Engine = Depends(get_engine),
    publisher: RoutineEventPublisher = Depends(get_publisher),
) -> ExceptionStore:
    return ExceptionStore(cache, engine, publisher, get_settings())


def get_repeating_session_service(
    engine: Engine = Depends(get_engine),
    rule_store: RuleStore = Depends(get_rule_store),
    history_store: HistoryStore = Depends(get_history_store),
    exception_store: ExceptionStore = Depends(get_exception_store),
) -> RepeatingSessionService:
    """Dependency for getting RepeatingSessionService instance."""
    return RepeatingSessionService(
        rule_store,
        history_store,
        exception_store,
        DatabaseAdvisoryLock(engine),
        get_settings(),
    )


def get_guide_service(
    rule_store: RuleStore = Depends(get_rule_store),
    history_store: HistoryStore = Depends(get_history_store),
    exception_store: ExceptionStore = Depends(get_exception_store),
) -> GuideService:
    """Dependency for getting GuideService instance."""
    resolver = RuleWindowResolver(rule_store, history_store, exception_store)
    return GuideService(rule_store, history_store, exception_store, resolver)
