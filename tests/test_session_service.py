import os
import sys
import datetime
import threading
import time
import unittest

from loguru import logger

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from catalog import ExerciseCatalog
from db import KeyValueStore, PlanRepository
from errors import BrokenLinkage, EmptyExerciseSet, NoActiveSession, StoreWriteFailure
from models import ExerciseSettings, PlanDay, PlanOverride
from session_service import CONFIRM_REPLACE_MESSAGE, SessionService


class FakeClock:
    def __init__(self, start: datetime.datetime) -> None:
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


class FailingStore:
    """KeyValueStore wrapper whose writes can be switched off."""

    def __init__(self, inner: KeyValueStore) -> None:
        self.inner = inner
        self.fail_set = False
        self.fail_remove = False

    def get(self, key):
        return self.inner.get(key)

    def set(self, key, data):
        if self.fail_set:
            raise StoreWriteFailure("disk full")
        self.inner.set(key, data)

    def remove(self, key):
        if self.fail_remove:
            raise StoreWriteFailure("disk full")
        self.inner.remove(key)


class SessionServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_session.db"
        if os.path.exists(self.db_path):
            os.remove(self.db_path)
        self.store = KeyValueStore(self.db_path)
        self.clock = FakeClock(datetime.datetime(2024, 3, 1, 9, 0, 0))
        self.catalog = ExerciseCatalog()
        self.catalog.add_exercise("bench", "Bench Press", "Weights")
        self.catalog.add_exercise("row", "Rower", "Cardio")
        self.service = SessionService(self.store, self.catalog, self.clock)

    def tearDown(self) -> None:
        if os.path.exists(self.db_path):
            os.remove(self.db_path)

    def test_start_requires_exercises(self) -> None:
        asked = []
        with self.assertRaises(EmptyExerciseSet):
            self.service.start_session("Weights", ["", "  "], confirm=asked.append)
        self.assertIsNone(self.service.session)
        self.assertEqual(asked, [])

    def test_default_names(self) -> None:
        session = self.service.start_session("Weights", [" bench "])
        self.assertEqual(session.name, "Weights Workout")
        self.assertEqual(session.exercises, ["bench"])
        self.assertEqual(session.sets, [])
        self.assertEqual(session.current_exercise_index, 0)
        self.assertEqual(session.start_time, self.clock.now)
        self.service.cancel_session()
        self.assertEqual(
            self.service.start_session("Custom", ["bench"]).name, "Custom Workout"
        )
        self.service.cancel_session()
        self.assertEqual(
            self.service.start_session("Weights", ["bench"], display_name="Push").name,
            "Push",
        )

    def test_declined_replacement_keeps_session(self) -> None:
        first = self.service.start_session("Weights", ["bench", "row"])
        self.service.add_set("bench")
        self.service.navigate_to_next_exercise()
        prompts = []

        def decline(message):
            prompts.append(message)
            return False

        result = self.service.start_session("Cardio", ["row"], confirm=decline)
        self.assertIsNone(result)
        self.assertEqual(prompts, [CONFIRM_REPLACE_MESSAGE])
        self.assertEqual(self.service.session.id, first.id)
        self.assertEqual(len(self.service.session.sets), 1)
        self.assertEqual(self.service.current_exercise_index, 1)

    def test_replacement_without_prompt_is_declined(self) -> None:
        first = self.service.start_session("Weights", ["bench"])
        self.assertIsNone(self.service.start_session("Cardio", ["row"]))
        self.assertEqual(self.service.session.id, first.id)

    def test_accepted_replacement_discards_session(self) -> None:
        self.service.start_session("Weights", ["bench"])
        self.service.add_set("bench")
        second = self.service.start_session("Cardio", ["row"], confirm=lambda m: True)
        self.assertEqual(self.service.session.id, second.id)
        self.assertEqual(self.service.session.sets, [])
        self.assertEqual(self.service.fetch_history(), [])

    def test_two_phase_start(self) -> None:
        first = self.service.start_session("Weights", ["bench"])
        pending = self.service.request_start("Cardio", ["row"])
        self.assertTrue(pending.needs_confirmation)
        self.assertEqual(pending.replaces_session_id, first.id)
        self.assertEqual(self.service.session.id, first.id)

        self.service.cancel_start(pending.token)
        with self.assertRaises(ValueError):
            self.service.confirm_start(pending.token)
        self.assertEqual(self.service.session.id, first.id)

        pending = self.service.request_start("Cardio", ["row"])
        started = self.service.confirm_start(pending.token)
        self.assertEqual(self.service.session.id, started.id)
        self.assertEqual(started.workout_type, "Cardio")

    def test_start_race_last_write_wins(self) -> None:
        first = self.service.start_session("Weights", ["bench"])
        pending = self.service.request_start("Cardio", ["row"])
        self.assertEqual(pending.replaces_session_id, first.id)
        self.service.end_session()
        warnings = []
        sink = logger.add(warnings.append, level="WARNING")
        try:
            started = self.service.confirm_start(pending.token)
        finally:
            logger.remove(sink)
        self.assertEqual(self.service.session.id, started.id)
        self.assertEqual(self.service.session.workout_type, "Cardio")
        self.assertEqual(len(warnings), 1)
        self.assertIn("awaited confirmation", warnings[0])

    def test_newer_request_replaces_parked_start(self) -> None:
        self.service.start_session("Weights", ["bench"])
        older = self.service.request_start("Cardio", ["row"])
        newer = self.service.request_start("Cardio", ["row"], display_name="Intervals")
        self.assertEqual(list(self.service._pending), [newer.token])
        with self.assertRaises(ValueError):
            self.service.confirm_start(older.token)
        self.assertEqual(self.service.confirm_start(newer.token).name, "Intervals")
        self.assertEqual(self.service._pending, {})

    def test_parked_starts_stay_bounded(self) -> None:
        for _ in range(5):
            self.service.request_start("Weights", ["bench"])
        self.assertEqual(len(self.service._pending), 1)
        self.service.start_session("Weights", ["bench"])
        self.service.request_start("Cardio", ["row"])
        self.assertEqual(len(self.service._pending), 1)

    def test_previous_set_wins_whole_source(self) -> None:
        self.service.start_session(
            "Weights",
            ["bench"],
            plan_overrides=[PlanOverride(exercise_id="bench", reps=5, weight=100)],
        )
        sid = self.service.add_set("bench", previous_set={"weight": 60})
        new_set = self.service.session.find_set(sid)
        self.assertEqual(new_set.weight, 60)
        self.assertIsNone(new_set.reps)
        self.assertFalse(new_set.completed)
        self.assertEqual(new_set.timestamp, self.clock.now)

    def test_override_beats_exercise_settings(self) -> None:
        self.service.start_session(
            "Weights",
            ["bench"],
            plan_overrides=[{"exercise_id": "bench", "reps": "8", "weight": " "}],
        )
        sid = self.service.add_set(
            "bench", exercise_settings=ExerciseSettings(weight=40, reps=12, duration=30)
        )
        new_set = self.service.session.find_set(sid)
        self.assertEqual(new_set.reps, 8)
        self.assertIsNone(new_set.weight)
        self.assertIsNone(new_set.duration)

    def test_exercise_settings_and_catalog_fallback(self) -> None:
        self.service.start_session("Weights", ["bench", "row"])
        sid = self.service.add_set("bench", exercise_settings={"weight": 40, "duration": 30})
        new_set = self.service.session.find_set(sid)
        self.assertEqual(new_set.weight, 40)
        self.assertEqual(new_set.duration, 30)
        self.assertIsNone(new_set.reps)

        sid = self.service.add_set("bench")
        new_set = self.service.session.find_set(sid)
        self.assertEqual((new_set.weight, new_set.reps), (20, 10))

        sid = self.service.add_set("row")
        new_set = self.service.session.find_set(sid)
        self.assertEqual((new_set.time, new_set.distance), (10, 1))

    def test_no_source_leaves_values_empty(self) -> None:
        self.service.start_session("Weights", ["unknown"])
        sid = self.service.add_set("unknown")
        new_set = self.service.session.find_set(sid)
        self.assertIsNone(new_set.weight)
        self.assertIsNone(new_set.reps)

    def test_set_operations_without_session(self) -> None:
        self.assertIsNone(self.service.add_set("bench"))
        self.assertFalse(self.service.complete_set("x"))
        self.assertFalse(self.service.skip_set("x"))
        self.assertFalse(self.service.navigate_to_next_exercise())
        self.assertIsNone(self.service.end_session())
        self.assertFalse(self.service.cancel_session())

    def test_complete_versus_skip(self) -> None:
        self.service.start_session("Weights", ["bench"])
        first = self.service.add_set("bench")
        second = self.service.add_set("bench")
        self.assertTrue(self.service.complete_set(first))
        self.assertEqual(len(self.service.session.sets), 2)
        self.assertTrue(self.service.session.find_set(first).completed)
        self.assertTrue(self.service.skip_set(second))
        self.assertEqual([s.id for s in self.service.session.sets], [first])
        self.assertFalse(self.service.skip_set("missing"))
        self.assertFalse(self.service.complete_set("missing"))

    def test_update_set_keeps_identity_and_completion(self) -> None:
        self.service.start_session("Weights", ["bench"])
        sid = self.service.add_set("bench")
        self.assertTrue(self.service.update_set(sid, weight=90, completed=True, id="other"))
        updated = self.service.session.find_set(sid)
        self.assertEqual(updated.weight, 90)
        self.assertFalse(updated.completed)

    def test_cursor_is_bounded(self) -> None:
        self.service.start_session("Weights", ["a", "b", "c"])
        self.assertFalse(self.service.navigate_to_previous_exercise())
        self.assertEqual(self.service.current_exercise_index, 0)
        self.assertTrue(self.service.navigate_to_next_exercise())
        self.assertTrue(self.service.navigate_to_next_exercise())
        self.assertFalse(self.service.navigate_to_next_exercise())
        self.assertEqual(self.service.current_exercise_index, 2)
        self.assertFalse(self.service.navigate_to_exercise("zzz"))
        self.assertEqual(self.service.current_exercise_index, 2)
        self.assertTrue(self.service.navigate_to_exercise("a"))
        self.assertEqual(self.service.current_exercise_index, 0)

    def test_end_session_finalizes_into_history(self) -> None:
        self.service.start_session("Weights", ["bench"])
        older = self.service.end_session()
        self.clock.advance(60)
        started = self.service.start_session("Weights", ["bench"])
        self.clock.advance(125.9)
        finished = self.service.end_session()
        self.assertEqual(finished.id, started.id)
        self.assertEqual(finished.end_time, self.clock.now)
        self.assertEqual(finished.total_time, 125)
        self.assertEqual(finished.calories_burned, 9)
        self.assertIsNone(self.service.session)
        self.assertIsNone(self.store.get("currentWorkout"))
        self.assertEqual([w.id for w in self.service.fetch_history()], [finished.id, older.id])

    def test_cancel_does_not_write_history(self) -> None:
        self.service.start_session("Weights", ["bench"])
        self.assertTrue(self.service.cancel_session())
        self.assertIsNone(self.service.session)
        self.assertEqual(self.service.fetch_history(), [])

    def test_recover_from_store(self) -> None:
        started = self.service.start_session("Weights", ["bench"])
        self.service.add_set("bench")
        self.service.set_notes("felt strong")
        restored = SessionService(self.store, self.catalog, self.clock)
        self.assertEqual(restored.session.id, started.id)
        self.assertEqual(len(restored.session.sets), 1)
        self.assertEqual(restored.session.notes, "felt strong")

    def test_save_as_template(self) -> None:
        with self.assertRaises(NoActiveSession):
            self.service.save_as_template("Push")
        older = self.service.save_template("Legs", ["squat"], "Weights")
        self.service.start_session(
            "Weights", ["bench"], plan_overrides=[PlanOverride(exercise_id="bench", reps=5)]
        )
        template = self.service.save_as_template(" Push ")
        self.assertEqual(template.name, "Push")
        self.assertEqual(template.exercises, ["bench"])
        self.assertEqual(template.plan_overrides[0].reps, 5)
        self.assertIsNone(self.service.session)
        self.assertEqual(
            [t.id for t in self.service.templates.fetch_all()], [template.id, older.id]
        )

    def test_start_template(self) -> None:
        template = self.service.save_template("Legs", ["squat", "lunge"], "Weights")
        session = self.service.start_template(template.id)
        self.assertEqual(session.name, "Legs")
        self.assertEqual(session.exercises, ["squat", "lunge"])
        with self.assertRaises(BrokenLinkage):
            self.service.start_template("missing")

    def test_request_template_parks_replacement(self) -> None:
        template = self.service.save_template("Legs", ["squat"], "Weights")
        current = self.service.start_session("Cardio", ["row"])
        pending = self.service.request_template(template.id)
        self.assertTrue(pending.needs_confirmation)
        self.assertEqual((pending.name, pending.exercise_ids), ("Legs", ["squat"]))
        self.assertEqual(self.service.session.id, current.id)
        self.assertIsNone(self.service.start_template(template.id))
        self.assertEqual(self.service.session.id, current.id)
        with self.assertRaises(BrokenLinkage):
            self.service.request_template("missing")

    def test_start_plan_day(self) -> None:
        plans = PlanRepository(self.store)
        day = PlanDay(
            name="Day 1",
            exercises=[{"exercise_id": "bench", "reps": "6", "weight": "80"}],
        )
        empty = PlanDay(name="Rest", exercises=[])
        plan = plans.add("Strength", [day, empty])
        session = self.service.start_plan_day(plan.id, day.id)
        self.assertEqual(session.name, "Day 1 Workout")
        sid = self.service.add_set("bench")
        new_set = self.service.session.find_set(sid)
        self.assertEqual((new_set.reps, new_set.weight), (6, 80))
        self.service.cancel_session()
        with self.assertRaises(EmptyExerciseSet):
            self.service.start_plan_day(plan.id, empty.id)
        with self.assertRaises(ValueError):
            self.service.start_plan_day("missing", day.id)
        with self.assertRaises(ValueError):
            self.service.request_plan_day(plan.id, "missing")
        pending = self.service.request_plan_day(plan.id, day.id)
        self.assertFalse(pending.needs_confirmation)
        self.assertEqual(pending.workout_type, "Custom")
        self.assertEqual(pending.plan_overrides[0].reps, 6)
        self.assertIsNone(self.service.session)


class SessionRollbackTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_session_rollback.db"
        if os.path.exists(self.db_path):
            os.remove(self.db_path)
        self.store = FailingStore(KeyValueStore(self.db_path))
        self.clock = FakeClock(datetime.datetime(2024, 3, 1, 9, 0, 0))
        self.service = SessionService(self.store, clock=self.clock)

    def tearDown(self) -> None:
        if os.path.exists(self.db_path):
            os.remove(self.db_path)

    def test_failed_write_keeps_previous_state(self) -> None:
        self.service.start_session("Weights", ["bench", "row"])
        sid = self.service.add_set("bench")
        self.store.fail_set = True
        with self.assertRaises(StoreWriteFailure):
            self.service.add_set("bench")
        with self.assertRaises(StoreWriteFailure):
            self.service.complete_set(sid)
        with self.assertRaises(StoreWriteFailure):
            self.service.navigate_to_next_exercise()
        self.assertEqual([s.id for s in self.service.session.sets], [sid])
        self.assertFalse(self.service.session.find_set(sid).completed)
        self.assertEqual(self.service.current_exercise_index, 0)

    def test_failed_start_keeps_no_session(self) -> None:
        self.store.fail_set = True
        with self.assertRaises(StoreWriteFailure):
            self.service.start_session("Weights", ["bench"])
        self.assertIsNone(self.service.session)

    def test_failed_clear_restores_history(self) -> None:
        started = self.service.start_session("Weights", ["bench"])
        self.store.fail_remove = True
        with self.assertRaises(StoreWriteFailure):
            self.service.end_session()
        self.assertEqual(self.service.session.id, started.id)
        self.assertEqual(self.service.fetch_history(), [])


class SlowStore:
    """KeyValueStore wrapper that sleeps on every read and write."""

    def __init__(self, inner: KeyValueStore, delay: float = 0.01) -> None:
        self.inner = inner
        self.delay = delay

    def get(self, key):
        time.sleep(self.delay)
        return self.inner.get(key)

    def set(self, key, data):
        time.sleep(self.delay)
        self.inner.set(key, data)

    def remove(self, key):
        self.inner.remove(key)


class SessionConcurrencyTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_session_threads.db"
        if os.path.exists(self.db_path):
            os.remove(self.db_path)
        self.store = SlowStore(KeyValueStore(self.db_path))
        self.clock = FakeClock(datetime.datetime(2024, 3, 1, 9, 0, 0))
        self.service = SessionService(self.store, clock=self.clock)

    def tearDown(self) -> None:
        if os.path.exists(self.db_path):
            os.remove(self.db_path)

    def test_parallel_add_set_keeps_every_set(self) -> None:
        self.service.start_session("Weights", ["bench"])
        errors = []

        def worker():
            try:
                self.service.add_set("bench")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(errors, [])
        self.assertEqual(len(self.service.session.sets), 8)
        self.assertEqual(len(self.service.active.load().sets), 8)


if __name__ == "__main__":
    unittest.main()
