import datetime
import threading
from typing import Callable

from fastapi import APIRouter, Body, FastAPI, HTTPException
from loguru import logger

from catalog import ExerciseCatalog
from db import (
    BodyMeasurementRepository,
    HistoryRepository,
    KeyValueStore,
    NotificationRepository,
    PlanRepository,
    SettingsRepository,
)
from errors import BrokenLinkage, NoActiveSession, PlanLinkageUnsupported
from models import PlanDay, PlanOverride
from notification_service import NotificationService
from schedule_service import ScheduleService
from session_service import CONFIRM_REPLACE_MESSAGE, PendingStart, SessionService
from stats_service import StatisticsService
from tools import TimeTools


def _http_error(e: ValueError) -> HTTPException:
    if isinstance(e, NoActiveSession):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, PlanLinkageUnsupported):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, BrokenLinkage) or "not found" in str(e):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _split(value: str | None) -> list[str]:
    return [v for v in (value or "").split("|") if v]


class ReconcileScheduler(threading.Thread):
    """Background thread flagging missed workouts and sending reminders."""

    def __init__(self, api: "TrackerAPI", interval_seconds: int | None = None) -> None:
        super().__init__(daemon=True)
        self.api = api
        self.interval = interval_seconds or api.settings.get_int(
            "reconcile_interval_seconds", 60
        )
        self._stopped = threading.Event()

    def tick(self) -> None:
        try:
            with self.api.lock:
                self.api.schedule.reconcile_missed()
                self.api.schedule.dispatch_due()
        except Exception:
            logger.exception("Schedule reconciliation failed")

    def run(self) -> None:
        while not self._stopped.is_set():
            self.tick()
            self._stopped.wait(self.interval)

    def stop(self) -> None:
        self._stopped.set()


class TrackerAPI:
    """Provides REST endpoints for the workout session and calendar.

    Routes and the reconcile thread share one re-entrant ``lock`` so every
    read-modify-write of the store runs alone.
    """

    def __init__(
        self,
        db_path: str = "workout.db",
        yaml_path: str = "settings.yaml",
        *,
        catalog: ExerciseCatalog | None = None,
        clock: Callable[[], datetime.datetime] | None = None,
        start_scheduler: bool = False,
    ) -> None:
        self.db_path = db_path
        self.clock = clock or datetime.datetime.now
        self.lock = threading.RLock()
        self.settings = SettingsRepository(db_path, yaml_path)
        self.store = KeyValueStore(db_path)
        self.catalog = catalog or ExerciseCatalog()
        self.history = HistoryRepository(self.store)
        self.measurements = BodyMeasurementRepository(self.store)
        self.plans = PlanRepository(self.store)
        self.statistics = StatisticsService(
            self.history, self.measurements, self.settings
        )
        self.notifications = NotificationService(
            NotificationRepository(db_path), self.settings
        )
        self.sessions = SessionService(
            self.store,
            self.catalog,
            self.clock,
            statistics=self.statistics,
            lock=self.lock,
        )
        self.schedule = ScheduleService(
            self.store,
            self.sessions,
            self.notifications.notify,
            self.clock,
            self.settings,
            lock=self.lock,
        )
        self.app = FastAPI(
            title="Gym Tracker API",
            description="REST API for workout sessions and scheduling",
        )
        self.scheduler: ReconcileScheduler | None = None
        if start_scheduler:
            self.scheduler = ReconcileScheduler(self)
            self.scheduler.start()
        self._setup_routes()

    def _start(self, request: Callable[[], PendingStart]):
        """Run ``request`` and start it, or answer 409 with its token."""
        with self.lock:
            try:
                pending = request()
            except ValueError as e:
                raise _http_error(e)
            if pending.needs_confirmation:
                raise HTTPException(
                    status_code=409,
                    detail={"message": CONFIRM_REPLACE_MESSAGE, "token": pending.token},
                )
            return self.sessions.confirm_start(pending.token)

    def end_session(self):
        """Finish the active workout and close its calendar entry."""
        with self.lock:
            finished = self.sessions.end_session()
            if finished is not None and finished.scheduled_workout_id:
                self.schedule.mark_completed(finished.scheduled_workout_id)
            return finished

    def _setup_routes(self) -> None:
        session_router = APIRouter(prefix="/session", tags=["Session"])
        schedule_router = APIRouter(prefix="/schedule", tags=["Schedule"])

        @self.app.get(
            "/health",
            summary="Health check",
            description="Verify API and database connectivity.",
        )
        def health():
            """Return API and database connection status."""
            try:
                self.store.keys()
                return {"status": "ok"}
            except Exception as e:  # pragma: no cover - connectivity failure
                raise HTTPException(status_code=500, detail=str(e))

        @session_router.get("")
        def get_session():
            return self.sessions.session

        @session_router.delete("")
        def cancel_session():
            if not self.sessions.cancel_session():
                raise HTTPException(status_code=409, detail="no active workout")
            return {"status": "cancelled"}

        @session_router.post("/start")
        def start_session(
            workout_type: str,
            exercises: str,
            name: str | None = None,
            plan_overrides: list[PlanOverride] | None = Body(None),
        ):
            return self._start(
                lambda: self.sessions.request_start(
                    workout_type, _split(exercises), plan_overrides, name
                )
            )

        @session_router.post("/start/{token}/confirm")
        def confirm_start(token: str):
            try:
                return self.sessions.confirm_start(token)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @session_router.post("/start/{token}/cancel")
        def cancel_start(token: str):
            try:
                self.sessions.cancel_start(token)
                return {"status": "cancelled"}
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @session_router.post("/sets")
        def add_set(exercise_id: str, previous_set_id: str | None = None):
            with self.lock:
                session = self.sessions.session
                if session is None:
                    raise HTTPException(status_code=409, detail="no active workout")
                previous = None
                if previous_set_id:
                    previous = session.find_set(previous_set_id)
                    if previous is None:
                        raise HTTPException(status_code=404, detail="set not found")
                sid = self.sessions.add_set(exercise_id, previous)
            return {"id": sid}

        @session_router.put("/sets/{set_id}")
        def update_set(
            set_id: str,
            weight: float | None = None,
            reps: float | None = None,
            time: float | None = None,
            distance: float | None = None,
            incline: float | None = None,
            duration: float | None = None,
        ):
            fields = {
                "weight": weight,
                "reps": reps,
                "time": time,
                "distance": distance,
                "incline": incline,
                "duration": duration,
            }
            changes = {k: v for k, v in fields.items() if v is not None}
            if not self.sessions.update_set(set_id, **changes):
                raise HTTPException(status_code=404, detail="set not found")
            return {"status": "updated"}

        @session_router.post("/sets/{set_id}/complete")
        def complete_set(set_id: str):
            if not self.sessions.complete_set(set_id):
                raise HTTPException(status_code=404, detail="set not found")
            return {"status": "completed"}

        @session_router.post("/sets/{set_id}/skip")
        def skip_set(set_id: str):
            if not self.sessions.skip_set(set_id):
                raise HTTPException(status_code=404, detail="set not found")
            return {"status": "skipped"}

        @session_router.post("/navigate")
        def navigate_to(exercise_id: str):
            with self.lock:
                if self.sessions.session is None:
                    raise HTTPException(status_code=409, detail="no active workout")
                moved = self.sessions.navigate_to_exercise(exercise_id)
                return {"moved": moved, "index": self.sessions.current_exercise_index}

        @session_router.post("/navigate/{direction}")
        def navigate(direction: str):
            if direction not in ("next", "previous"):
                raise HTTPException(
                    status_code=400, detail="direction must be next or previous"
                )
            with self.lock:
                if self.sessions.session is None:
                    raise HTTPException(status_code=409, detail="no active workout")
                if direction == "next":
                    moved = self.sessions.navigate_to_next_exercise()
                else:
                    moved = self.sessions.navigate_to_previous_exercise()
                return {"moved": moved, "index": self.sessions.current_exercise_index}

        @session_router.put("/notes")
        def set_notes(notes: str = Body(...)):
            if not self.sessions.set_notes(notes):
                raise HTTPException(status_code=409, detail="no active workout")
            return {"status": "updated"}

        @session_router.post("/end")
        def end_session():
            finished = self.end_session()
            if finished is None:
                raise HTTPException(status_code=409, detail="no active workout")
            return finished

        @session_router.post("/template")
        def save_session_template(name: str):
            try:
                return self.sessions.save_as_template(name)
            except ValueError as e:
                raise _http_error(e)

        @self.app.get("/workouts")
        def list_workouts(date: str | None = None):
            if not date:
                return self.history.fetch_all()
            try:
                return self.history.fetch_for_day(TimeTools.as_date(date))
            except ValueError:
                raise HTTPException(
                    status_code=400, detail="date must be in YYYY-MM-DD format"
                )

        @self.app.delete("/workouts/{workout_id}")
        def delete_workout(workout_id: str):
            try:
                self.sessions.delete_workout(workout_id)
                return {"status": "deleted"}
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @self.app.get("/workouts/{workout_id}/calories")
        def workout_calories(workout_id: str):
            try:
                return {"calories": self.statistics.workout_calories(workout_id)}
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @self.app.get("/templates")
        def list_templates():
            return self.sessions.templates.fetch_all()

        @self.app.post("/templates")
        def create_template(name: str, workout_type: str, exercises: str):
            try:
                return self.sessions.save_template(
                    name, _split(exercises), workout_type
                )
            except ValueError as e:
                raise _http_error(e)

        @self.app.delete("/templates/{template_id}")
        def delete_template(template_id: str):
            try:
                self.sessions.delete_template(template_id)
                return {"status": "deleted"}
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @self.app.post("/templates/{template_id}/start")
        def start_template(template_id: str):
            return self._start(lambda: self.sessions.request_template(template_id))

        @self.app.get("/plans")
        def list_plans():
            return self.plans.fetch_all()

        @self.app.post("/plans")
        def create_plan(name: str, days: list[PlanDay] | None = Body(None)):
            with self.lock:
                return self.plans.add(name, days)

        @self.app.put("/plans/{plan_id}")
        def update_plan(
            plan_id: str,
            name: str | None = None,
            days: list[PlanDay] | None = Body(None),
        ):
            changes = {}
            if name is not None:
                changes["name"] = name
            if days is not None:
                changes["days"] = days
            try:
                with self.lock:
                    return self.plans.update(plan_id, **changes)
            except ValueError as e:
                raise _http_error(e)

        @self.app.delete("/plans/{plan_id}")
        def delete_plan(plan_id: str):
            try:
                with self.lock:
                    self.plans.delete(plan_id)
                return {"status": "deleted"}
            except ValueError:
                raise HTTPException(status_code=404, detail="plan not found")

        @self.app.post("/plans/{plan_id}/days/{day_id}/start")
        def start_plan_day(plan_id: str, day_id: str):
            return self._start(
                lambda: self.sessions.request_plan_day(plan_id, day_id)
            )

        @schedule_router.get("")
        def list_schedule():
            return self.schedule.fetch_all()

        @schedule_router.post("")
        def schedule_workout(
            date: str,
            workout_type: str,
            time: str | None = None,
            template_id: str | None = None,
            plan_id: str | None = None,
            existing_workout_id: str | None = None,
            exercises: str | None = None,
        ):
            try:
                return self.schedule.schedule_workout(
                    date,
                    workout_type,
                    template_id=template_id,
                    plan_id=plan_id,
                    existing_workout_id=existing_workout_id,
                    time=time,
                    exercises=_split(exercises) or None,
                )
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        @schedule_router.post("/reconcile")
        def reconcile():
            return {"missed": self.schedule.reconcile_missed()}

        @schedule_router.get("/day/{date}")
        def day_overview(date: str):
            try:
                day = TimeTools.as_date(date)
            except ValueError:
                raise HTTPException(
                    status_code=400, detail="date must be in YYYY-MM-DD format"
                )
            scheduled, workouts = self.schedule.workouts_for_day(day)
            return {
                "statuses": sorted(self.schedule.statuses_for_day(day)),
                "scheduled": scheduled,
                "workouts": workouts,
            }

        @schedule_router.delete("/{entry_id}")
        def delete_scheduled(entry_id: str):
            try:
                self.schedule.delete_scheduled(entry_id)
                return {"status": "deleted"}
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @schedule_router.post("/{entry_id}/perform")
        def perform_scheduled(entry_id: str):
            return self._start(lambda: self.schedule.request_perform(entry_id))

        @schedule_router.post("/{entry_id}/complete")
        def complete_scheduled(entry_id: str):
            if not self.schedule.mark_completed(entry_id):
                raise HTTPException(
                    status_code=404, detail="scheduled workout not found"
                )
            return {"status": "completed"}

        @self.app.get("/measurements")
        def list_measurements(start_date: str | None = None, end_date: str | None = None):
            try:
                start = TimeTools.as_date(start_date) if start_date else None
                end = TimeTools.as_date(end_date) if end_date else None
            except ValueError:
                raise HTTPException(
                    status_code=400, detail="date must be in YYYY-MM-DD format"
                )
            return self.measurements.fetch_history(start, end)

        @self.app.post("/measurements")
        def add_measurement(
            date: str,
            weight: float | None = None,
            waist: float | None = None,
            hips: float | None = None,
            chest: float | None = None,
        ):
            try:
                with self.lock:
                    mid = self.measurements.add(
                        date, weight, waist=waist, hips=hips, chest=chest
                    )
                return {"id": mid}
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        @self.app.put("/measurements/{entry_id}")
        def update_measurement(
            entry_id: str,
            date: str | None = None,
            weight: float | None = None,
            waist: float | None = None,
            hips: float | None = None,
            chest: float | None = None,
        ):
            fields = {
                "date": date,
                "weight": weight,
                "waist": waist,
                "hips": hips,
                "chest": chest,
            }
            changes = {k: v for k, v in fields.items() if v is not None}
            try:
                with self.lock:
                    self.measurements.update(entry_id, **changes)
                return {"status": "updated"}
            except ValueError as e:
                raise _http_error(e)

        @self.app.delete("/measurements/{entry_id}")
        def delete_measurement(entry_id: str):
            try:
                with self.lock:
                    self.measurements.delete(entry_id)
                return {"status": "deleted"}
            except ValueError:
                raise HTTPException(status_code=404, detail="log not found")

        @self.app.get("/stats")
        def workout_stats():
            return self.statistics.workout_stats()

        @self.app.get("/settings/general")
        def get_general_settings():
            return self.settings.schema()

        @self.app.post("/settings/general")
        def update_general_settings(
            default_body_weight: float = None,
            notification_window_seconds: int = None,
            reconcile_interval_seconds: int = None,
            notifications_enabled: bool = None,
            webhook_url: str = None,
            cardio_types: str = None,
        ):
            if default_body_weight is not None and default_body_weight <= 0:
                raise HTTPException(
                    status_code=400, detail="default_body_weight must be positive"
                )
            with self.lock:
                if default_body_weight is not None:
                    self.settings.set_float("default_body_weight", default_body_weight)
                if notification_window_seconds is not None:
                    self.settings.set_int(
                        "notification_window_seconds", notification_window_seconds
                    )
                if reconcile_interval_seconds is not None:
                    self.settings.set_int(
                        "reconcile_interval_seconds", reconcile_interval_seconds
                    )
                if notifications_enabled is not None:
                    self.settings.set_bool("notifications_enabled", notifications_enabled)
                if webhook_url is not None:
                    self.settings.set_text("webhook_url", webhook_url)
                if cardio_types is not None:
                    self.settings.set_list("cardio_types", _split(cardio_types))
            return {"status": "updated"}

        @self.app.get("/notifications")
        def get_notifications(unread_only: bool = False):
            return self.notifications.fetch_all(unread_only)

        @self.app.put("/notifications/{nid}/read")
        def mark_notification_read(nid: int):
            try:
                self.notifications.mark_read(nid)
                return {"status": "read"}
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @self.app.get("/notifications/unread_count")
        def unread_count():
            return {"count": self.notifications.unread_count()}

        self.app.include_router(session_router)
        self.app.include_router(schedule_router)


if __name__ == "__main__":
    import uvicorn

    api = TrackerAPI(start_scheduler=True)
    uvicorn.run(api.app)
