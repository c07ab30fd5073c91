"""Recurrence rule schema and the normalizer applied at every ingestion boundary.

Remote rows (snake_case, ISO/datetime bounds) and local cache rows (camelCase
or snake_case, epoch-ms bounds) both go through ``normalize_rule``. Anything
recoverable is clamped; only a row without an id is rejected.
"""
from __future__ import annotations

from datetime import datetime
import math
import re
import uuid
from typing import Any, Mapping, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
import pytz

from taskwatch.core.calendar_math import now_ms, weekday_of
from taskwatch.errors import RuleValidationError

FREQUENCIES = ("daily", "weekly", "monthly", "annually")
MONTHLY_PATTERNS = ("day", "first", "last")
DEFAULT_DURATION_MINUTES = 60
DEFAULT_TASK_NAME = "Session"

_CANONICAL_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_canonical_rule_id(value: Optional[str]) -> bool:
    """True for server-shaped (UUID) ids; anything else is a pending local id."""
    return isinstance(value, str) and bool(_CANONICAL_ID_RE.match(value))


def new_canonical_rule_id() -> str:
    return str(uuid.uuid4())


def new_local_rule_id() -> str:
    return f"local-{now_ms()}-{uuid.uuid4().hex[:6]}"


def derive_task_name(
    task_name: Optional[str] = None,
    bucket_name: Optional[str] = None,
    goal_name: Optional[str] = None,
) -> str:
    """First non-blank of task, bucket, goal; "Session" when all are blank."""
    for candidate in (task_name, bucket_name, goal_name):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return DEFAULT_TASK_NAME


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def normalize_weekdays(value: Any) -> Optional[Tuple[int, ...]]:
    """Deduplicated ascending weekdays in 0..6; None stays None."""
    if value is None:
        return None
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
    else:
        items = [value]
    days = set()
    for item in items:
        number = _finite_number(item)
        if number is None:
            continue
        day = int(round(number))
        if 0 <= day <= 6:
            days.add(day)
    return tuple(sorted(days))


def coerce_timestamp_ms(value: Any) -> Optional[int]:
    """Epoch ms from an int/float, an aware or naive datetime, or an ISO string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return max(0, int(round(value.timestamp() * 1000)))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return max(0, int(round(parsed.timestamp() * 1000)))
    number = _finite_number(value)
    if number is None:
        return None
    return max(0, int(number))


class RecurrenceRule(BaseModel):
    """A repeating schedule derived from a logged session.

    Instances are treated as immutable per version: mutate with
    ``model_copy(update=...)``.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    is_active: bool = Field(default=True, validation_alias=AliasChoices("is_active", "isActive"))
    frequency: str = Field(default="daily")
    repeat_every: int = Field(default=1, validation_alias=AliasChoices("repeat_every", "repeatEvery"))
    day_of_week: Optional[Tuple[int, ...]] = Field(
        default=None, validation_alias=AliasChoices("day_of_week", "dayOfWeek")
    )
    monthly_pattern: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("monthly_pattern", "monthlyPattern")
    )
    time_of_day_minutes: int = Field(
        default=0, validation_alias=AliasChoices("time_of_day_minutes", "timeOfDayMinutes")
    )
    duration_minutes: int = Field(
        default=DEFAULT_DURATION_MINUTES, validation_alias=AliasChoices("duration_minutes", "durationMinutes")
    )
    task_name: str = Field(default="", validation_alias=AliasChoices("task_name", "taskName"))
    goal_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("goal_name", "goalName"))
    bucket_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("bucket_name", "bucketName"))
    timezone: Optional[str] = Field(default=None, validation_alias=AliasChoices("timezone", "timeZone"))
    created_at_ms: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("created_at_ms", "createdAtMs", "created_at")
    )
    start_at_ms: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("start_at_ms", "startAtMs", "start_date")
    )
    end_at_ms: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("end_at_ms", "endAtMs", "end_date")
    )

    @field_validator("is_active", mode="before")
    @classmethod
    def _coerce_active(cls, value: Any) -> bool:
        return value if isinstance(value, bool) else True

    @field_validator("frequency", mode="before")
    @classmethod
    def _coerce_frequency(cls, value: Any) -> str:
        return value if value in FREQUENCIES else "daily"

    @field_validator("repeat_every", mode="before")
    @classmethod
    def _coerce_repeat_every(cls, value: Any) -> int:
        number = _finite_number(value)
        return max(1, math.floor(number)) if number is not None else 1

    @field_validator("day_of_week", mode="before")
    @classmethod
    def _coerce_day_of_week(cls, value: Any) -> Optional[Tuple[int, ...]]:
        return normalize_weekdays(value)

    @field_validator("monthly_pattern", mode="before")
    @classmethod
    def _coerce_monthly_pattern(cls, value: Any) -> Optional[str]:
        return value if value in MONTHLY_PATTERNS else None

    @field_validator("time_of_day_minutes", mode="before")
    @classmethod
    def _clamp_time_of_day(cls, value: Any) -> int:
        number = _finite_number(value)
        if number is None:
            return 0
        return max(0, min(1439, math.floor(number)))

    @field_validator("duration_minutes", mode="before")
    @classmethod
    def _clamp_duration(cls, value: Any) -> int:
        number = _finite_number(value)
        if number is None:
            return DEFAULT_DURATION_MINUTES
        return max(1, math.floor(number))

    @field_validator("task_name", mode="before")
    @classmethod
    def _coerce_task_name(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("goal_name", "bucket_name", mode="before")
    @classmethod
    def _coerce_label(cls, value: Any) -> Optional[str]:
        # blank labels are stored as NULL so equality matching treats them alike
        return value if isinstance(value, str) and value.strip() else None

    @field_validator("timezone", mode="before")
    @classmethod
    def _coerce_timezone(cls, value: Any) -> Optional[str]:
        # best effort only; never used for arithmetic
        if isinstance(value, str) and value in pytz.all_timezones_set:
            return value
        return None

    @field_validator("created_at_ms", "start_at_ms", "end_at_ms", mode="before")
    @classmethod
    def _coerce_timestamps(cls, value: Any) -> Optional[int]:
        return coerce_timestamp_ms(value)

    @model_validator(mode="after")
    def _apply_frequency_shape(self) -> "RecurrenceRule":
        self.task_name = derive_task_name(self.task_name, self.bucket_name, self.goal_name)
        anchor = self.anchor_ms
        if self.frequency != "monthly":
            self.monthly_pattern = None
        elif self.monthly_pattern is None:
            self.monthly_pattern = "day"

        if self.frequency == "weekly":
            if not self.day_of_week and anchor is not None:
                self.day_of_week = (weekday_of(anchor),)
            elif self.day_of_week is None:
                self.day_of_week = ()
        elif self.frequency == "monthly" and self.monthly_pattern in ("first", "last"):
            if self.day_of_week:
                self.day_of_week = self.day_of_week[:1]
            else:
                self.day_of_week = (weekday_of(anchor),) if anchor is not None else None
        else:
            self.day_of_week = None
        return self

    @property
    def anchor_ms(self) -> Optional[int]:
        """The arithmetic anchor: start_at_ms, else created_at_ms."""
        return self.start_at_ms if self.start_at_ms is not None else self.created_at_ms

    @property
    def is_pending(self) -> bool:
        return not is_canonical_rule_id(self.id)

    def to_cache_dict(self) -> dict:
        return self.model_dump(mode="json")


def normalize_rule(raw: Any) -> RecurrenceRule:
    """Canonical rule from a remote row, a cache row, or an existing rule.

    Raises:
        RuleValidationError: the row has no usable id or is not a mapping.
    """
    if isinstance(raw, RecurrenceRule):
        return raw
    if not isinstance(raw, Mapping):
        raise RuleValidationError("Repeating rule row must be a mapping", {"type": type(raw).__name__})
    rule_id = raw.get("id")
    if not isinstance(rule_id, str) or not rule_id.strip():
        raise RuleValidationError("Repeating rule row has no id", {"field": "id"})
    try:
        return RecurrenceRule.model_validate(dict(raw))
    except ValidationError as e:
        raise RuleValidationError(
            "Repeating rule row could not be normalized",
            {"rule_id": rule_id, "errors": [err.get("msg") for err in e.errors()]},
        ) from e
