"""Per-occurrence override schema (skip / reschedule)."""
from __future__ import annotations

from typing import Any, Iterable, List, Optional

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from taskwatch.schemas.recurrence_rule import coerce_timestamp_ms

EXCEPTION_ACTIONS = ("skipped", "rescheduled")


class RoutineException(BaseModel):
    """A skip or reschedule recorded against one generated occurrence."""

    id: str
    routine_id: str = Field(validation_alias=AliasChoices("routine_id", "routineId"))
    # local calendar date of the occurrence, YYYY-MM-DD
    occurrence_date: str = Field(
        pattern=r"^\d{4}-\d{2}-\d{2}$",
        validation_alias=AliasChoices("occurrence_date", "occurrenceDate"),
    )
    action: str = Field(pattern=r"^(skipped|rescheduled)$")
    new_started_at: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("new_started_at", "newStartedAt")
    )
    new_ended_at: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("new_ended_at", "newEndedAt")
    )
    notes: Optional[str] = None
    created_at_ms: int = Field(default=0, validation_alias=AliasChoices("created_at_ms", "createdAtMs", "created_at"))
    updated_at_ms: int = Field(default=0, validation_alias=AliasChoices("updated_at_ms", "updatedAtMs", "updated_at"))

    @field_validator("new_started_at", "new_ended_at", mode="before")
    @classmethod
    def _coerce_optional_ms(cls, value: Any) -> Optional[int]:
        return coerce_timestamp_ms(value)

    @field_validator("created_at_ms", "updated_at_ms", mode="before")
    @classmethod
    def _coerce_ms(cls, value: Any) -> int:
        return coerce_timestamp_ms(value) or 0

    @field_validator("notes", mode="before")
    @classmethod
    def _coerce_notes(cls, value: Any) -> Optional[str]:
        return value if isinstance(value, str) else None

    @property
    def key(self) -> str:
        return f"{self.routine_id}:{self.occurrence_date}"


def sanitize_exceptions(rows: Optional[Iterable[Any]]) -> List[RoutineException]:
    """Valid exceptions from raw cache rows; malformed rows are dropped."""
    result: List[RoutineException] = []
    for row in rows or []:
        if isinstance(row, RoutineException):
            result.append(row)
            continue
        if not isinstance(row, dict):
            continue
        try:
            result.append(RoutineException.model_validate(row))
        except ValidationError:
            continue
    return result
