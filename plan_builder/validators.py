"""Pydantic validation models for every input the engines accept."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DAY_TO_INDEX = {"Mon": 0, "Tue": 1, "Wed": 2, "Thu": 3, "Fri": 4, "Sat": 5, "Sun": 6}
INDEX_TO_DAY = {v: k for k, v in DAY_TO_INDEX.items()}


def _parse_day(value) -> int:
    if isinstance(value, bool):
        raise ValueError(f"invalid weekday: {value!r}")
    if isinstance(value, int):
        if 0 <= value <= 6:
            return value
        raise ValueError(f"weekday index must be 0 (Mon) .. 6 (Sun), got {value}")
    key = str(value or "").strip()[:3].title()
    if key not in DAY_TO_INDEX:
        raise ValueError(f"invalid weekday: {value!r}")
    return DAY_TO_INDEX[key]


def week_start_index(week_start: str) -> int:
    return 6 if week_start == "sunday" else 0


def day_sort_key(day_of_week: int, week_start: str) -> int:
    """Position of a weekday (0=Mon) inside a week that begins on ``week_start``."""
    return (day_of_week - week_start_index(week_start)) % 7


def start_of_week(day: date, week_start: str) -> date:
    return day - timedelta(days=day_sort_key(day.weekday(), week_start))


class PlanSetup(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_date: date
    start_date: Optional[date] = None
    weeks_to_event: int = Field(ge=1, le=52)
    week_start: Literal["monday", "sunday"] = "monday"
    weekly_availability_days: tuple[int, ...] = Field(min_length=1)
    weekly_availability_minutes: int = Field(gt=0, le=3000)
    discipline_emphasis: Literal["balanced", "swim", "bike", "run"] = "balanced"
    risk_tolerance: Literal["low", "med", "high"] = "med"
    max_intensity_days_per_week: int = Field(default=2, ge=0, le=3)
    max_doubles_per_week: int = Field(default=0, ge=0, le=3)
    long_session_day: Optional[int] = None
    weekly_minutes_by_week: Optional[tuple[int, ...]] = None
    recovery_every_n_weeks: Optional[int] = Field(default=None, ge=2, le=8)
    recovery_week_multiplier: float = Field(default=0.8, ge=0.5, le=1.0)
    sessions_per_week_override: Optional[int] = Field(default=None, ge=1, le=14)
    coach_guidance_text: str = Field(default="", max_length=2000)

    @field_validator("weekly_availability_days", mode="before")
    @classmethod
    def normalize_days(cls, v):
        if not isinstance(v, (list, tuple, set, frozenset)):
            raise ValueError("weekly_availability_days must be a list of weekdays")
        return tuple(sorted({_parse_day(d) for d in v}))

    @field_validator("long_session_day", mode="before")
    @classmethod
    def normalize_long_day(cls, v):
        if v is None or v == "":
            return None
        return _parse_day(v)

    @field_validator("weekly_minutes_by_week")
    @classmethod
    def positive_week_minutes(cls, v):
        if v is not None and any(m <= 0 for m in v):
            raise ValueError("weekly_minutes_by_week entries must be positive")
        return v

    @model_validator(mode="after")
    def start_before_event(self):
        if self.start_date is not None and self.start_date > self.event_date:
            raise ValueError("start_date must not be after event_date")
        return self

    @property
    def effective_start_date(self) -> date:
        """Explicit start date, or the week start that puts the event in the final week."""
        if self.start_date is not None:
            return start_of_week(self.start_date, self.week_start)
        last_week = start_of_week(self.event_date, self.week_start)
        return last_week - timedelta(weeks=self.weeks_to_event - 1)


class FeedbackRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    created_at: datetime
    session_id: str = Field(min_length=1)
    session_type: str = "endurance"
    session_duration_minutes: int = Field(default=0, ge=0)
    session_notes: Optional[str] = None
    completed_status: Literal["DONE", "PARTIAL", "SKIPPED"] = "DONE"
    feel: Optional[Literal["EASY", "OK", "HARD", "TOO_HARD"]] = None
    rpe: Optional[int] = Field(default=None, ge=1, le=10)
    soreness_flag: bool = False
    soreness_notes: Optional[str] = None


class ActivityRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    start_time: datetime
    rpe: Optional[int] = Field(default=None, ge=1, le=10)
    pain_flag: bool = False
    duration_minutes: int = Field(default=0, ge=0)
