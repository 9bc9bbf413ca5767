from __future__ import annotations

import datetime
import re
import uuid
from typing import Optional

from pydantic import BaseModel, Field, field_validator

SET_FIELDS = ("weight", "reps", "time", "distance", "incline", "duration")
OVERRIDE_FIELDS = ("weight", "reps", "time", "distance", "incline")

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def new_id() -> str:
    return uuid.uuid4().hex


class ExerciseSettings(BaseModel):
    """Category specific defaults used to seed the first set of an exercise."""

    sets: Optional[float] = None
    reps: Optional[float] = None
    weight: Optional[float] = None
    time: Optional[float] = None
    distance: Optional[float] = None
    incline: Optional[float] = None
    duration: Optional[float] = None


class ExerciseDescriptor(BaseModel):
    id: str
    name: str
    category: str
    default_settings: ExerciseSettings = Field(default_factory=ExerciseSettings)


class WorkoutSet(BaseModel):
    id: str = Field(default_factory=new_id)
    exercise_id: str
    weight: Optional[float] = None
    reps: Optional[float] = None
    time: Optional[float] = None
    distance: Optional[float] = None
    incline: Optional[float] = None
    duration: Optional[float] = None
    completed: bool = False
    timestamp: datetime.datetime


class PlanOverride(BaseModel):
    """Per exercise targets taken from a custom plan.

    Plans store their values as free text. The numeric fields are parsed
    once here, blank or unparsable input becomes ``None``.
    """

    exercise_id: str
    sets: Optional[float] = None
    reps: Optional[float] = None
    weight: Optional[float] = None
    distance: Optional[float] = None
    time: Optional[float] = None
    incline: Optional[float] = None

    @field_validator("sets", "reps", "weight", "distance", "time", "incline", mode="before")
    @classmethod
    def _parse_number(cls, value):
        if value is None or isinstance(value, (int, float)):
            return value
        text = str(value).strip()
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            return None


class WorkoutSession(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    workout_type: str
    exercises: list[str]
    sets: list[WorkoutSet] = Field(default_factory=list)
    start_time: datetime.datetime
    end_time: Optional[datetime.datetime] = None
    total_time: Optional[int] = None
    notes: str = ""
    plan_overrides: Optional[list[PlanOverride]] = None
    current_exercise_index: int = 0
    scheduled_workout_id: Optional[str] = None
    calories_burned: Optional[int] = None

    def find_set(self, set_id: str) -> Optional[WorkoutSet]:
        return next((s for s in self.sets if s.id == set_id), None)

    def override_for(self, exercise_id: str) -> Optional[PlanOverride]:
        for override in self.plan_overrides or []:
            if override.exercise_id == exercise_id:
                return override
        return None


class SavedTemplate(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    exercises: list[str]
    workout_type: str
    created_at: datetime.datetime
    plan_overrides: Optional[list[PlanOverride]] = None


class PlanDay(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    exercises: list[PlanOverride] = Field(default_factory=list)


class CustomPlan(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    days: list[PlanDay] = Field(default_factory=list)
    created_at: datetime.datetime


class ScheduledWorkout(BaseModel):
    id: str = Field(default_factory=new_id)
    date: datetime.date
    workout_type: str
    time: Optional[str] = None
    template_id: Optional[str] = None
    plan_id: Optional[str] = None
    existing_workout_id: Optional[str] = None
    exercises: Optional[list[str]] = None
    completed: bool = False
    missed: bool = False

    @field_validator("date", mode="before")
    @classmethod
    def _calendar_day(cls, value):
        if isinstance(value, datetime.datetime):
            return value.date()
        return value

    @field_validator("time", mode="before")
    @classmethod
    def _check_time(cls, value):
        if value is None:
            return None
        text = str(value).strip()
        if not text:
            return None
        if not _TIME_RE.match(text):
            raise ValueError("time must be HH:MM")
        return text


class BodyMeasurement(BaseModel):
    id: str = Field(default_factory=new_id)
    date: datetime.date
    weight: Optional[float] = None
    height: Optional[float] = None
    neck: Optional[float] = None
    shoulders: Optional[float] = None
    chest: Optional[float] = None
    lats: Optional[float] = None
    upper_back: Optional[float] = None
    waist: Optional[float] = None
    hips: Optional[float] = None
    biceps: Optional[float] = None
    triceps: Optional[float] = None
    forearms: Optional[float] = None
    thighs: Optional[float] = None
    calves: Optional[float] = None

    @field_validator("date", mode="before")
    @classmethod
    def _calendar_day(cls, value):
        if isinstance(value, datetime.datetime):
            return value.date()
        return value


class Performable(BaseModel):
    """What a scheduled workout resolves to when it is performed."""

    workout_type: str
    exercise_ids: list[str]
    plan_overrides: Optional[list[PlanOverride]] = None
    name: Optional[str] = None
