from __future__ import annotations
import datetime
from typing import Iterable, Optional

from db import BodyMeasurementRepository, HistoryRepository, SettingsRepository
from models import BodyMeasurement, WorkoutSession
from tools import MathTools, TimeTools

DEFAULT_BODY_WEIGHT = 70.0
CARDIO_TYPES = ("Cardio", "Slide Board")
CARDIO_MET = 6.0
STRENGTH_MET = 3.5


def select_body_weight(
    measurements: Iterable[BodyMeasurement],
    workout_date: datetime.date | datetime.datetime,
    default_weight: float = DEFAULT_BODY_WEIGHT,
) -> float:
    """Return the body weight in effect on ``workout_date``.

    The latest weighed measurement on or before the workout wins. When every
    measurement is newer than the workout the closest one, i.e. the
    earliest, is used instead. Without any weighed entry the default applies.

    The earliest-weight fallback is deliberate: it does not fall back to the
    most recent measurement, which would date from well after the workout.
    """
    moment = TimeTools.as_datetime(workout_date)
    weighed = [m for m in measurements if m.weight is not None]
    prior = [m for m in weighed if TimeTools.as_datetime(m.date) <= moment]
    if prior:
        return max(prior, key=lambda m: m.date).weight
    if weighed:
        return min(weighed, key=lambda m: m.date).weight
    return default_weight


def estimate_calories(
    duration_seconds: float,
    workout_type: str,
    measurements: Iterable[BodyMeasurement],
    workout_date: datetime.date | datetime.datetime,
    default_weight: float = DEFAULT_BODY_WEIGHT,
    cardio_types: Iterable[str] = CARDIO_TYPES,
) -> int:
    """Estimate calories burned with a MET model: MET x kg x hours."""
    weight = select_body_weight(measurements, workout_date, default_weight)
    cardio = {t.strip() for t in cardio_types}
    met = CARDIO_MET if (workout_type or "").strip() in cardio else STRENGTH_MET
    return MathTools.round_half_up(met * weight * duration_seconds / 3600)


class StatisticsService:
    """Compute workout statistics over the session history."""

    def __init__(
        self,
        history_repo: HistoryRepository,
        measurement_repo: BodyMeasurementRepository,
        settings_repo: SettingsRepository | None = None,
    ) -> None:
        self.history = history_repo
        self.measurements = measurement_repo
        self.settings = settings_repo

    def _default_weight(self) -> float:
        if self.settings is not None:
            return self.settings.get_float("default_body_weight", DEFAULT_BODY_WEIGHT)
        return DEFAULT_BODY_WEIGHT

    def _cardio_types(self) -> list[str]:
        if self.settings is not None:
            return self.settings.get_list("cardio_types") or list(CARDIO_TYPES)
        return list(CARDIO_TYPES)

    def session_calories(
        self,
        session: WorkoutSession,
        measurements: Optional[list[BodyMeasurement]] = None,
    ) -> int:
        if not session.total_time:
            return 0
        if measurements is None:
            measurements = self.measurements.fetch_all()
        return estimate_calories(
            session.total_time,
            session.workout_type,
            measurements,
            session.start_time,
            self._default_weight(),
            self._cardio_types(),
        )

    def workout_calories(self, workout_id: str) -> int:
        """Estimate calories burned for a finished workout."""
        workout = self.history.fetch(workout_id)
        if workout is None:
            raise ValueError("workout not found")
        return self.session_calories(workout)

    def workout_stats(self) -> dict[str, int]:
        """Return totals over every finished workout."""
        measurements = self.measurements.fetch_all()
        stats = {
            "total_workouts": 0,
            "total_time": 0,
            "total_sets": 0,
            "total_reps": 0,
            "total_calories": 0,
        }
        for workout in self.history.fetch_all():
            completed = [s for s in workout.sets if s.completed]
            stats["total_workouts"] += 1
            stats["total_time"] += workout.total_time or 0
            stats["total_sets"] += len(completed)
            stats["total_reps"] += int(sum(s.reps or 0 for s in completed))
            stats["total_calories"] += self.session_calories(workout, measurements)
        return stats
