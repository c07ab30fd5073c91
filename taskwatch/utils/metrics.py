"""
In-process metrics for the routine engine.

Counters cover the rule lifecycle (create, retire, delete), remote
store fallbacks and sync pushes. Timers accumulate seconds and call
counts per operation.
"""

import functools
import threading
import time
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict

RULES_CREATED = "routine_rules_created_total"
RULES_CREATED_LOCAL = "routine_rules_created_local_total"
RULES_DELETED = "routine_rules_deleted_total"
RULES_RETIRED = "routine_rules_retired_total"
RULES_DEACTIVATED = "routine_rules_deactivated_total"
REMOTE_FALLBACKS = "routine_remote_fallbacks_total"
SYNC_PUSHES = "routine_sync_pushes_total"
SYNC_SKIPPED_LOCKED = "routine_sync_skipped_locked_total"
IDS_REMAPPED = "routine_ids_remapped_total"
GUIDE_SYNTHESIS_SECONDS = "routine_guide_synthesis_seconds"

# Always reported, even before the first increment
REPORTED_COUNTERS = (RULES_CREATED, RULES_DELETED, RULES_RETIRED, REMOTE_FALLBACKS)


class MetricsCollector:
    """Thread-safe counters and timers shared by the services."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Counter = Counter()
        self._timer_seconds: Dict[str, float] = {}
        self._timer_calls: Counter = Counter()

    def increment_counter(self, metric_name: str, value: int = 1):
        with self._lock:
            self._counters[metric_name] += value

    def record_timer(self, metric_name: str, duration: float):
        with self._lock:
            self._timer_seconds[metric_name] = self._timer_seconds.get(metric_name, 0.0) + duration
            self._timer_calls[metric_name] += 1

    def get_counter(self, metric_name: str) -> int:
        with self._lock:
            return self._counters[metric_name]

    def get_metrics(self) -> Dict[str, Any]:
        """Snapshot of counters, accumulated timer seconds and timer call counts."""
        with self._lock:
            counters = {name: 0 for name in REPORTED_COUNTERS}
            counters.update(self._counters)
            return {
                "counters": counters,
                "timers": dict(self._timer_seconds),
                "timer_calls": dict(self._timer_calls),
                "timestamp": datetime.utcnow().isoformat(),
            }

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._timer_seconds.clear()
            self._timer_calls.clear()

    def time_operation(self, metric_name: str) -> Callable:
        """Decorator recording the wall time of each call, including failed ones."""
        def decorator(func):
            @functools.wraps(func)
            def wrapper(*args, **kwargs):
                started = time.perf_counter()
                try:
                    return func(*args, **kwargs)
                finally:
                    self.record_timer(metric_name, time.perf_counter() - started)
            return wrapper
        return decorator


metrics_collector = MetricsCollector()
