from __future__ import annotations
import datetime
import threading
from typing import Callable, Iterable, Optional

from loguru import logger

from db import (
    HistoryRepository,
    NotifiedRepository,
    ScheduleRepository,
    SettingsRepository,
    TemplateRepository,
)
from errors import BrokenLinkage, FutureWorkoutNotPerformable, PlanLinkageUnsupported
from models import Performable, ScheduledWorkout, WorkoutSession
from session_service import PendingStart, SessionService
from tools import TimeTools, synchronized

NOTIFICATION_WINDOW_SECONDS = 60


def find_missed(
    entries: Iterable[ScheduledWorkout], reference: datetime.datetime
) -> list[str]:
    """Return ids of open entries dated before the day of ``reference``."""
    today = TimeTools.start_of_day(reference).date()
    return [
        e.id for e in entries if not e.completed and not e.missed and e.date < today
    ]


def find_due(
    entries: Iterable[ScheduledWorkout],
    reference: datetime.datetime,
    already_notified: Iterable[str],
    window_seconds: int = NOTIFICATION_WINDOW_SECONDS,
) -> list[str]:
    """Return ids whose start time fell within the last ``window_seconds``."""
    notified = set(already_notified)
    due = []
    for entry in entries:
        if entry.completed or entry.missed or not entry.time:
            continue
        if entry.id in notified:
            continue
        try:
            moment = TimeTools.combine(entry.date, entry.time)
        except ValueError:
            continue
        elapsed = (reference - moment).total_seconds()
        if 0 <= elapsed < window_seconds:
            due.append(entry.id)
    return due


class ScheduleService:
    """Calendar of planned workouts with derived completed/missed status."""

    def __init__(
        self,
        store,
        sessions: SessionService | None = None,
        notify: Callable[[str], None] | None = None,
        clock: Callable[[], datetime.datetime] | None = None,
        settings: SettingsRepository | None = None,
        lock=None,
    ) -> None:
        if lock is None:
            lock = sessions.lock if sessions is not None else threading.RLock()
        self.lock = lock
        self.schedule = ScheduleRepository(store)
        self.notified = NotifiedRepository(store)
        self.history = HistoryRepository(store)
        self.templates = TemplateRepository(store)
        self.sessions = sessions
        self.notify = notify
        self.clock = clock or datetime.datetime.now
        self.settings = settings

    def _window(self) -> int:
        if self.settings is not None:
            return self.settings.get_int(
                "notification_window_seconds", NOTIFICATION_WINDOW_SECONDS
            )
        return NOTIFICATION_WINDOW_SECONDS

    def _require(self, entry_id: str) -> ScheduledWorkout:
        entry = self.schedule.fetch(entry_id)
        if entry is None:
            raise ValueError("scheduled workout not found")
        return entry

    # ------------------------------------------------------------------
    # Calendar entries
    # ------------------------------------------------------------------

    @synchronized
    def schedule_workout(
        self,
        date: datetime.date | str,
        workout_type: str,
        template_id: str | None = None,
        plan_id: str | None = None,
        existing_workout_id: str | None = None,
        time: str | None = None,
        exercises: list[str] | None = None,
    ) -> ScheduledWorkout:
        if existing_workout_id:
            existing = self.history.fetch(existing_workout_id)
            if existing is not None:
                workout_type = f"Existing: {existing.name}"
        entry = ScheduledWorkout(
            date=TimeTools.as_date(date),
            workout_type=workout_type,
            time=time,
            template_id=template_id,
            plan_id=plan_id,
            existing_workout_id=existing_workout_id,
            exercises=exercises,
        )
        self.schedule.save_all([*self.schedule.fetch_all(), entry])
        logger.info("Scheduled {} on {}", entry.workout_type, entry.date)
        self.reconcile_missed()
        return self.schedule.fetch(entry.id) or entry

    @synchronized
    def update_scheduled(self, entry_id: str, **changes) -> ScheduledWorkout:
        entries = self.schedule.fetch_all()
        for idx, entry in enumerate(entries):
            if entry.id == entry_id:
                data = {**entry.model_dump(), **changes, "id": entry_id}
                entries[idx] = ScheduledWorkout.model_validate(data)
                self.schedule.save_all(entries)
                self.reconcile_missed()
                return self.schedule.fetch(entry_id) or entries[idx]
        raise ValueError("scheduled workout not found")

    @synchronized
    def delete_scheduled(self, entry_id: str) -> None:
        try:
            self.schedule.delete(entry_id)
        except ValueError:
            raise ValueError("scheduled workout not found")

    def fetch_all(self) -> list[ScheduledWorkout]:
        return self.schedule.fetch_all()

    def workouts_for_day(
        self, day: datetime.date | str
    ) -> tuple[list[ScheduledWorkout], list[WorkoutSession]]:
        """Return the scheduled entries and finished sessions of one day."""
        day = TimeTools.as_date(day)
        scheduled = [e for e in self.schedule.fetch_all() if e.date == day]
        return scheduled, self.history.fetch_for_day(day)

    def statuses_for_day(self, day: datetime.date | str) -> set[str]:
        day = TimeTools.as_date(day)
        statuses: set[str] = set()
        if self.history.fetch_for_day(day):
            statuses.add("completed")
        for entry in self.schedule.fetch_all():
            if entry.date != day:
                continue
            if entry.completed:
                statuses.add("completed")
            elif entry.missed:
                statuses.add("missed")
            else:
                statuses.add("scheduled")
        return statuses

    # ------------------------------------------------------------------
    # Reconciliation and notifications
    # ------------------------------------------------------------------

    def missed_ids(self, reference: datetime.datetime) -> list[str]:
        return find_missed(self.schedule.fetch_all(), reference)

    @synchronized
    def reconcile_missed(
        self, reference: datetime.datetime | None = None
    ) -> list[str]:
        """Flag open entries from earlier days as missed and persist them."""
        entries = self.schedule.fetch_all()
        missed = set(find_missed(entries, reference or self.clock()))
        if not missed:
            return []
        updated = [
            e.model_copy(update={"missed": True}) if e.id in missed else e
            for e in entries
        ]
        self.schedule.save_all(updated)
        logger.info("Marked {} scheduled workout(s) as missed", len(missed))
        return [e.id for e in entries if e.id in missed]

    def due_notifications(
        self, reference: datetime.datetime, already_notified: Iterable[str]
    ) -> list[str]:
        return find_due(
            self.schedule.fetch_all(), reference, already_notified, self._window()
        )

    @synchronized
    def dispatch_due(self, reference: datetime.datetime | None = None) -> list[str]:
        """Send one reminder per entry whose start time just arrived.

        Ids are recorded before sending so a reminder goes out at most once.
        """
        if self.settings is not None and not self.settings.get_bool(
            "notifications_enabled", True
        ):
            return []
        reference = reference or self.clock()
        due = self.due_notifications(reference, self.notified.fetch_all())
        if not due:
            return []
        self.notified.add(due)
        entries = {e.id: e for e in self.schedule.fetch_all()}
        for entry_id in due:
            message = f"Time for your workout: {entries[entry_id].workout_type}"
            if self.notify is not None:
                self.notify(message)
            else:
                logger.info(message)
        return due

    @synchronized
    def prune_notified(self) -> list[str]:
        """Forget reminder ids whose entry is finished, missed or deleted."""
        open_ids = {
            e.id for e in self.schedule.fetch_all() if not e.completed and not e.missed
        }
        current = self.notified.fetch_all()
        removed = [i for i in current if i not in open_ids]
        if removed:
            self.notified.replace([i for i in current if i in open_ids])
            logger.info("Pruned {} reminder id(s)", len(removed))
        return removed

    # ------------------------------------------------------------------
    # Performing
    # ------------------------------------------------------------------

    def resolve_performable(
        self,
        entry_or_id: ScheduledWorkout | str,
        reference: datetime.datetime | None = None,
    ) -> Performable:
        entry = (
            self._require(entry_or_id) if isinstance(entry_or_id, str) else entry_or_id
        )
        today = TimeTools.as_date(reference or self.clock())
        if entry.date > today:
            raise FutureWorkoutNotPerformable()
        if entry.template_id:
            template = self.templates.fetch(entry.template_id)
            if template is None:
                raise BrokenLinkage("saved workout template not found")
            return Performable(
                workout_type=template.workout_type,
                exercise_ids=template.exercises,
                plan_overrides=template.plan_overrides,
                name=template.name,
            )
        if entry.existing_workout_id:
            workout = self.history.fetch(entry.existing_workout_id)
            if workout is None:
                raise BrokenLinkage("linked workout not found")
            return Performable(
                workout_type=workout.workout_type, exercise_ids=workout.exercises
            )
        if entry.plan_id:
            raise PlanLinkageUnsupported(
                "plan workouts are started from the plan itself"
            )
        return Performable(
            workout_type=entry.workout_type, exercise_ids=entry.exercises or []
        )

    @synchronized
    def request_perform(
        self, entry_id: str, reference: datetime.datetime | None = None
    ) -> PendingStart:
        """Park a start for the workout a calendar entry points at."""
        if self.sessions is None:
            raise RuntimeError("no session service configured")
        performable = self.resolve_performable(entry_id, reference)
        return self.sessions.request_start(
            performable.workout_type,
            performable.exercise_ids,
            performable.plan_overrides,
            performable.name,
            scheduled_workout_id=entry_id,
        )

    @synchronized
    def perform(
        self,
        entry_id: str,
        confirm: Callable[[str], bool] | None = None,
        reference: datetime.datetime | None = None,
    ) -> Optional[WorkoutSession]:
        """Start the workout a calendar entry points at."""
        pending = self.request_perform(entry_id, reference)
        return self.sessions.settle(pending, confirm)

    @synchronized
    def mark_completed(self, entry_id: str) -> bool:
        entries = self.schedule.fetch_all()
        for idx, entry in enumerate(entries):
            if entry.id != entry_id:
                continue
            if entry.completed and not entry.missed:
                return True
            entries[idx] = entry.model_copy(update={"completed": True, "missed": False})
            self.schedule.save_all(entries)
            logger.info("Scheduled workout {} completed", entry_id)
            return True
        logger.warning("Cannot mark completed: scheduled workout {} not found", entry_id)
        return False
