from __future__ import annotations
import datetime
import threading
from typing import Callable, Optional

from loguru import logger
from pydantic import BaseModel

from catalog import ExerciseCatalog
from db import (
    ActiveSessionRepository,
    BodyMeasurementRepository,
    HistoryRepository,
    PlanRepository,
    TemplateRepository,
)
from errors import BrokenLinkage, EmptyExerciseSet, NoActiveSession, StoreWriteFailure
from models import (
    OVERRIDE_FIELDS,
    SET_FIELDS,
    ExerciseSettings,
    PlanOverride,
    SavedTemplate,
    WorkoutSession,
    WorkoutSet,
    new_id,
)
from stats_service import StatisticsService
from tools import MathTools, synchronized

CONFIRM_REPLACE_MESSAGE = (
    "An active workout is in progress. Are you sure you want to start a new "
    "one? This will end the current workout."
)


class PendingStart(BaseModel):
    """A start request waiting for the user to confirm replacing a session."""

    token: str
    workout_type: str
    exercise_ids: list[str]
    plan_overrides: Optional[list[PlanOverride]] = None
    name: str
    scheduled_workout_id: Optional[str] = None
    replaces_session_id: Optional[str] = None

    @property
    def needs_confirmation(self) -> bool:
        return self.replaces_session_id is not None


def _as_dict(source) -> dict:
    if isinstance(source, BaseModel):
        return source.model_dump()
    return dict(source)


class SessionService:
    """Owns the single in-progress workout and the path into history.

    Every mutation builds a new copy of the session, writes it to the store
    and only then swaps it in, so a failed write leaves the in-memory state
    as it was. Mutations hold ``lock``; pass a shared lock when other
    services write to the same store.
    """

    def __init__(
        self,
        store,
        catalog: ExerciseCatalog | None = None,
        clock: Callable[[], datetime.datetime] | None = None,
        confirm: Callable[[str], bool] | None = None,
        statistics: StatisticsService | None = None,
        lock=None,
    ) -> None:
        self.lock = lock or threading.RLock()
        self.active = ActiveSessionRepository(store)
        self.history = HistoryRepository(store)
        self.templates = TemplateRepository(store)
        self.plans = PlanRepository(store)
        self.catalog = catalog
        self.clock = clock or datetime.datetime.now
        self.confirm = confirm
        self.statistics = statistics or StatisticsService(
            self.history, BodyMeasurementRepository(store)
        )
        self._pending: dict[str, PendingStart] = {}
        self.session: WorkoutSession | None = None
        self.recover()

    @synchronized
    def recover(self) -> WorkoutSession | None:
        """Reload the in-progress workout snapshot from the store."""
        self.session = self.active.load()
        if self.session is not None:
            logger.info("Recovered in-progress workout {}", self.session.name)
        return self.session

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.session is not None

    @property
    def current_exercise_index(self) -> int:
        return self.session.current_exercise_index if self.session else 0

    def _commit(self, session: WorkoutSession) -> WorkoutSession:
        self.active.save(session)
        self.session = session
        return session

    def _working_copy(self, action: str) -> WorkoutSession | None:
        if self.session is None:
            logger.warning("Cannot {}: no active workout", action)
            return None
        return self.session.model_copy(deep=True)

    @staticmethod
    def _default_name(workout_type: str, display_name: str | None) -> str:
        if display_name:
            return display_name
        if workout_type == "Custom":
            return "Custom Workout"
        return f"{workout_type} Workout"

    # ------------------------------------------------------------------
    # Starting
    # ------------------------------------------------------------------

    @synchronized
    def request_start(
        self,
        workout_type: str,
        exercise_ids: list[str],
        plan_overrides: list[PlanOverride | dict] | None = None,
        display_name: str | None = None,
        scheduled_workout_id: str | None = None,
    ) -> PendingStart:
        """Validate a start request and park it until it is confirmed.

        Only the newest request per replaced session stays parked; older
        tokens for the same session stop being valid.
        """
        valid = [i.strip() for i in exercise_ids if i and i.strip()]
        if not valid:
            raise EmptyExerciseSet("no valid exercises to start a workout")
        overrides = None
        if plan_overrides is not None:
            overrides = [PlanOverride.model_validate(_as_dict(o)) for o in plan_overrides]
        pending = PendingStart(
            token=new_id(),
            workout_type=workout_type,
            exercise_ids=valid,
            plan_overrides=overrides,
            name=self._default_name(workout_type, display_name),
            scheduled_workout_id=scheduled_workout_id,
            replaces_session_id=self.session.id if self.session else None,
        )
        self._pending = {
            token: parked
            for token, parked in self._pending.items()
            if parked.replaces_session_id != pending.replaces_session_id
        }
        self._pending[pending.token] = pending
        return pending

    @synchronized
    def request_template(self, template_id: str) -> PendingStart:
        template = self.templates.fetch(template_id)
        if template is None:
            raise BrokenLinkage("saved workout template not found")
        return self.request_start(
            template.workout_type,
            template.exercises,
            template.plan_overrides,
            template.name,
        )

    @synchronized
    def request_plan_day(self, plan_id: str, day_id: str) -> PendingStart:
        """Park a start for the exercises of one custom plan day."""
        plan = self.plans.fetch(plan_id)
        if plan is None:
            raise ValueError("plan not found")
        day = next((d for d in plan.days if d.id == day_id), None)
        if day is None:
            raise ValueError("plan day not found")
        overrides = [o for o in day.exercises if o.exercise_id]
        if not overrides:
            raise EmptyExerciseSet("no valid exercises found in plan day")
        return self.request_start(
            "Custom",
            [o.exercise_id for o in overrides],
            overrides,
            f"{day.name} Workout",
        )

    @synchronized
    def confirm_start(self, token: str) -> WorkoutSession:
        pending = self._pending.pop(token, None)
        if pending is None:
            raise ValueError("pending start not found")
        current_id = self.session.id if self.session else None
        if current_id != pending.replaces_session_id:
            logger.warning(
                "Active workout changed while start {} awaited confirmation", token
            )
        session = WorkoutSession(
            name=pending.name,
            workout_type=pending.workout_type,
            exercises=pending.exercise_ids,
            start_time=self.clock(),
            plan_overrides=pending.plan_overrides,
            scheduled_workout_id=pending.scheduled_workout_id,
        )
        self._commit(session)
        logger.info("Started {}", session.name)
        return session

    @synchronized
    def cancel_start(self, token: str) -> None:
        if self._pending.pop(token, None) is None:
            raise ValueError("pending start not found")

    @synchronized
    def settle(
        self, pending: PendingStart, confirm: Callable[[str], bool] | None = None
    ) -> WorkoutSession | None:
        """Confirm ``pending``, asking ``confirm`` first if it replaces a session.

        Returns ``None`` when the replacement is declined or nobody can be
        asked.
        """
        if pending.needs_confirmation:
            ask = confirm or self.confirm
            if ask is None or not ask(CONFIRM_REPLACE_MESSAGE):
                self.cancel_start(pending.token)
                logger.warning("Start of {} declined, keeping current workout", pending.name)
                return None
        return self.confirm_start(pending.token)

    @synchronized
    def start_session(
        self,
        workout_type: str,
        exercise_ids: list[str],
        plan_overrides: list[PlanOverride | dict] | None = None,
        display_name: str | None = None,
        confirm: Callable[[str], bool] | None = None,
        scheduled_workout_id: str | None = None,
    ) -> WorkoutSession | None:
        """Start a workout, asking ``confirm`` before replacing an active one."""
        pending = self.request_start(
            workout_type,
            exercise_ids,
            plan_overrides,
            display_name,
            scheduled_workout_id,
        )
        return self.settle(pending, confirm)

    @synchronized
    def start_template(
        self, template_id: str, confirm: Callable[[str], bool] | None = None
    ) -> WorkoutSession | None:
        return self.settle(self.request_template(template_id), confirm)

    @synchronized
    def start_plan_day(
        self,
        plan_id: str,
        day_id: str,
        confirm: Callable[[str], bool] | None = None,
    ) -> WorkoutSession | None:
        """Start the exercises of one custom plan day with its targets."""
        return self.settle(self.request_plan_day(plan_id, day_id), confirm)

    # ------------------------------------------------------------------
    # Sets
    # ------------------------------------------------------------------

    def _seed_values(
        self,
        session: WorkoutSession,
        exercise_id: str,
        previous_set: WorkoutSet | dict | None,
        exercise_settings: ExerciseSettings | dict | None,
    ) -> dict:
        if previous_set is not None:
            source, fields = _as_dict(previous_set), SET_FIELDS
        else:
            override = session.override_for(exercise_id)
            if override is not None:
                source, fields = override.model_dump(), OVERRIDE_FIELDS
            else:
                if exercise_settings is None and self.catalog is not None:
                    descriptor = self.catalog.get_exercise_by_id(exercise_id)
                    if descriptor is not None:
                        exercise_settings = descriptor.default_settings
                if exercise_settings is None:
                    return {}
                source, fields = _as_dict(exercise_settings), SET_FIELDS
        return {f: source[f] for f in fields if source.get(f) is not None}

    @synchronized
    def add_set(
        self,
        exercise_id: str,
        previous_set: WorkoutSet | dict | None = None,
        exercise_settings: ExerciseSettings | dict | None = None,
    ) -> str | None:
        """Append a set for ``exercise_id`` and return its id.

        Values come from one source, highest priority first: the previous
        set, the plan override for the exercise, the exercise settings.
        """
        session = self._working_copy("add set")
        if session is None:
            return None
        values = self._seed_values(session, exercise_id, previous_set, exercise_settings)
        new_set = WorkoutSet(exercise_id=exercise_id, timestamp=self.clock(), **values)
        session.sets.append(new_set)
        self._commit(session)
        return new_set.id

    @synchronized
    def _replace_set(self, action: str, set_id: str, change) -> bool:
        session = self._working_copy(action)
        if session is None:
            return False
        for idx, item in enumerate(session.sets):
            if item.id == set_id:
                replacement = change(item)
                if replacement is None:
                    del session.sets[idx]
                else:
                    session.sets[idx] = replacement
                self._commit(session)
                return True
        logger.warning("Cannot {}: set {} not found", action, set_id)
        return False

    def complete_set(self, set_id: str) -> bool:
        return self._replace_set(
            "complete set", set_id, lambda s: s.model_copy(update={"completed": True})
        )

    def skip_set(self, set_id: str) -> bool:
        return self._replace_set("skip set", set_id, lambda s: None)

    def update_set(self, set_id: str, **fields) -> bool:
        changes = {k: v for k, v in fields.items() if k not in ("id", "completed")}
        return self._replace_set(
            "update set",
            set_id,
            lambda s: WorkoutSet.model_validate({**s.model_dump(), **changes}),
        )

    @synchronized
    def set_notes(self, notes: str) -> bool:
        session = self._working_copy("update notes")
        if session is None:
            return False
        session.notes = notes
        self._commit(session)
        return True

    # ------------------------------------------------------------------
    # Exercise cursor
    # ------------------------------------------------------------------

    @synchronized
    def _move_cursor(self, action: str, index: int) -> bool:
        session = self._working_copy(action)
        if session is None:
            return False
        last = len(session.exercises) - 1
        index = int(MathTools.clamp(index, 0, max(last, 0)))
        if index == session.current_exercise_index:
            return False
        session.current_exercise_index = index
        self._commit(session)
        return True

    @synchronized
    def navigate_to_exercise(self, exercise_id: str) -> bool:
        if self.session is None or exercise_id not in self.session.exercises:
            return False
        return self._move_cursor(
            "navigate", self.session.exercises.index(exercise_id)
        )

    @synchronized
    def navigate_to_next_exercise(self) -> bool:
        return self._move_cursor("navigate", self.current_exercise_index + 1)

    @synchronized
    def navigate_to_previous_exercise(self) -> bool:
        return self._move_cursor("navigate", self.current_exercise_index - 1)

    # ------------------------------------------------------------------
    # Ending
    # ------------------------------------------------------------------

    @synchronized
    def end_session(self) -> WorkoutSession | None:
        """Finalize the active workout and prepend it to the history."""
        session = self._working_copy("end workout")
        if session is None:
            return None
        session.end_time = self.clock()
        session.total_time = MathTools.elapsed_seconds(
            session.start_time, session.end_time
        )
        session.calories_burned = self.statistics.session_calories(session)
        previous = self.history.fetch_all()
        self.history.prepend(session)
        try:
            self.active.clear()
        except StoreWriteFailure:
            self.history.save_all(previous)
            raise
        self.session = None
        logger.info("Workout {} completed in {}s", session.name, session.total_time)
        return session

    @synchronized
    def cancel_session(self) -> bool:
        if self.session is None:
            logger.warning("Cannot cancel workout: no active workout")
            return False
        self.active.clear()
        logger.info("Workout {} cancelled", self.session.name)
        self.session = None
        return True

    # ------------------------------------------------------------------
    # Templates and history
    # ------------------------------------------------------------------

    @synchronized
    def save_as_template(self, name: str) -> SavedTemplate:
        """Save the active workout as a template. This ends the workout."""
        if self.session is None:
            raise NoActiveSession("no active workout to save")
        if not self.session.exercises:
            raise EmptyExerciseSet("cannot save workout with no exercises")
        template = SavedTemplate(
            name=name.strip(),
            exercises=list(self.session.exercises),
            workout_type=self.session.workout_type,
            created_at=self.clock(),
            plan_overrides=self.session.model_copy(deep=True).plan_overrides,
        )
        previous = self.templates.fetch_all()
        self.templates.save_all([template, *previous])
        try:
            self.active.clear()
        except StoreWriteFailure:
            self.templates.save_all(previous)
            raise
        self.session = None
        logger.info("Workout saved as template {}", template.name)
        return template

    @synchronized
    def save_template(
        self, name: str, exercise_ids: list[str], workout_type: str
    ) -> SavedTemplate:
        valid = [i.strip() for i in exercise_ids if i and i.strip()]
        if not valid:
            raise EmptyExerciseSet("cannot save a template with no exercises")
        template = SavedTemplate(
            name=name.strip(),
            exercises=valid,
            workout_type=workout_type,
            created_at=self.clock(),
        )
        self.templates.add(template)
        return template

    @synchronized
    def delete_template(self, template_id: str) -> None:
        self.templates.delete(template_id)

    @synchronized
    def delete_workout(self, workout_id: str) -> None:
        self.history.delete(workout_id)

    def fetch_history(self) -> list[WorkoutSession]:
        return self.history.fetch_all()
