"""Request and response schemas for the routines API."""
from pydantic import BaseModel, Field, model_validator
from typing import Optional, List


class HistoryEntryIn(BaseModel):
    """A logged session a rule is derived from or matched against."""
    started_at: int = Field(..., ge=0)  # epoch ms
    ended_at: int = Field(..., ge=0)  # epoch ms
    task_name: str = Field(default="", max_length=200)
    goal_name: Optional[str] = Field(None, max_length=200)
    bucket_name: Optional[str] = Field(None, max_length=200)

    @model_validator(mode="after")
    def _check_order(self) -> "HistoryEntryIn":
        if self.ended_at < self.started_at:
            raise ValueError("ended_at must not be before started_at")
        return self


class RoutineCreate(BaseModel):
    """Schema for turning a logged session into a repeating rule."""
    entry: HistoryEntryIn
    frequency: str = Field(..., pattern=r"^(daily|weekly|monthly|annually)$")
    weekly_days: Optional[List[int]] = Field(None, max_length=7)  # 0=Sunday .. 6=Saturday
    monthly_pattern: Optional[str] = Field(None, pattern=r"^(day|first|last)$")
    end_date_ms: Optional[int] = Field(None, ge=0)  # exclusive boundary
    end_after_occurrences: Optional[int] = Field(None, ge=1)
    repeat_every: int = Field(default=1, ge=1)
    timezone: Optional[str] = Field(None, max_length=64)  # IANA name, informational


class EntryMatch(BaseModel):
    """Schema for deactivating or deleting the rules that match an entry."""
    entry: HistoryEntryIn


class EndBoundaryUpdate(BaseModel):
    """Exactly one way of stopping a rule: explicit end, after a date, or after an occurrence."""
    end_at_ms: Optional[int] = Field(None, ge=0)
    after_occurrence_date: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    after_timestamp_ms: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def _exactly_one(self) -> "EndBoundaryUpdate":
        provided = [
            value for value in (self.end_at_ms, self.after_occurrence_date, self.after_timestamp_ms)
            if value is not None
        ]
        if len(provided) != 1:
            raise ValueError("Provide exactly one of end_at_ms, after_occurrence_date, after_timestamp_ms")
        return self


class ActiveUpdate(BaseModel):
    """Schema for toggling a rule's active flag."""
    is_active: bool


class OccurrenceSkip(BaseModel):
    occurrence_date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    notes: Optional[str] = Field(None, max_length=1000)


class OccurrenceReschedule(BaseModel):
    occurrence_date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    new_started_at: int = Field(..., ge=0)
    new_ended_at: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)


class OccurrenceConfirm(BaseModel):
    original_time: int = Field(..., ge=0)  # scheduled start being confirmed
    started_at: Optional[int] = Field(None, ge=0)  # actual start, defaults to the scheduled one
    ended_at: Optional[int] = Field(None, ge=0)


class OccurrenceGuide(BaseModel):
    """A synthesized occurrence that has not been confirmed yet."""
    rule_id: str
    occurrence_date: str  # local YYYY-MM-DD of the scheduled start
    original_time: int  # scheduled start
    started_at: int
    ended_at: int
    task_name: str
    goal_name: Optional[str] = None
    bucket_name: Optional[str] = None
    rescheduled: bool = False
