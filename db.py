import sqlite3
import datetime
from contextlib import contextmanager
from typing import Generic, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, TypeAdapter

from config import YamlConfig
from errors import StoreWriteFailure
from models import (
    BodyMeasurement,
    CustomPlan,
    PlanDay,
    SavedTemplate,
    ScheduledWorkout,
    WorkoutSession,
)
from settings_schema import SettingsSchema, validate_settings


class Database:
    """Provides SQLite connection management and schema initialization."""

    _TABLE_DEFINITIONS = {
        "kv_store": (
            """CREATE TABLE kv_store (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL
                );""",
            ["key", "value"],
        ),
        "notifications": (
            """CREATE TABLE notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    message TEXT NOT NULL,
                    read INTEGER NOT NULL DEFAULT 0
                );""",
            ["id", "timestamp", "message", "read"],
        ),
        "settings": (
            """CREATE TABLE settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );""",
            ["key", "value"],
        ),
    }

    def __init__(self, db_path: str = "workout.db") -> None:
        self._db_path = db_path
        self._ensure_schema()

    @contextmanager
    def _connection(self):
        connection = sqlite3.connect(self._db_path)
        try:
            yield connection
            connection.commit()
        finally:
            connection.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql, columns)

    def _ensure_table(
        self, conn: sqlite3.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is None:
            conn.execute(sql)
            return

        cur = conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in cur.fetchall()]
        if existing_cols == columns:
            return

        conn.execute(f"DROP TABLE IF EXISTS {table}_old;")
        conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        conn.execute(sql)
        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            conn.execute(
                f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
            )
        conn.execute(f"DROP TABLE {table}_old;")


class BaseRepository(Database):
    """Base repository providing helper methods."""

    def execute(self, query: str, params: Tuple = ()) -> int:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.lastrowid

    def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.fetchall()


class KeyValueStore(BaseRepository):
    """Byte store keyed by name, last write wins per key."""

    def get(self, key: str) -> bytes | None:
        rows = self.fetch_all("SELECT value FROM kv_store WHERE key = ?;", (key,))
        if not rows:
            return None
        value = rows[0][0]
        return value.encode("utf-8") if isinstance(value, str) else bytes(value)

    def set(self, key: str, data: bytes) -> None:
        try:
            self.execute(
                "INSERT INTO kv_store (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value;",
                (key, sqlite3.Binary(data)),
            )
        except sqlite3.Error as e:
            raise StoreWriteFailure(f"could not write {key}: {e}") from e

    def remove(self, key: str) -> None:
        try:
            self.execute("DELETE FROM kv_store WHERE key = ?;", (key,))
        except sqlite3.Error as e:
            raise StoreWriteFailure(f"could not remove {key}: {e}") from e

    def keys(self) -> list[str]:
        return [r[0] for r in self.fetch_all("SELECT key FROM kv_store ORDER BY key;")]


M = TypeVar("M", bound=BaseModel)


class RecordListRepository(Generic[M]):
    """A list of pydantic records stored as one JSON document under ``KEY``."""

    KEY: str = ""
    MODEL: Type[BaseModel] = BaseModel

    def __init__(self, store) -> None:
        self.store = store
        self._adapter = TypeAdapter(list[self.MODEL])

    def fetch_all(self) -> list[M]:
        raw = self.store.get(self.KEY)
        if not raw:
            return []
        return self._adapter.validate_json(raw)

    def save_all(self, items: list[M]) -> None:
        self.store.set(self.KEY, self._adapter.dump_json(items))

    def fetch(self, record_id: str) -> Optional[M]:
        return next((r for r in self.fetch_all() if r.id == record_id), None)

    def delete(self, record_id: str) -> None:
        items = self.fetch_all()
        remaining = [r for r in items if r.id != record_id]
        if len(remaining) == len(items):
            raise ValueError("record not found")
        self.save_all(remaining)


class ActiveSessionRepository:
    """Snapshot of the in-progress session for crash recovery."""

    KEY = "currentWorkout"

    def __init__(self, store) -> None:
        self.store = store

    def load(self) -> WorkoutSession | None:
        raw = self.store.get(self.KEY)
        if not raw:
            return None
        return WorkoutSession.model_validate_json(raw)

    def save(self, session: WorkoutSession) -> None:
        self.store.set(self.KEY, session.model_dump_json().encode("utf-8"))

    def clear(self) -> None:
        self.store.remove(self.KEY)


class HistoryRepository(RecordListRepository[WorkoutSession]):
    """Finalized sessions, newest first."""

    KEY = "workouts"
    MODEL = WorkoutSession

    def prepend(self, session: WorkoutSession) -> None:
        self.save_all([session, *self.fetch_all()])

    def fetch_for_day(self, day: datetime.date) -> list[WorkoutSession]:
        return [
            w
            for w in self.fetch_all()
            if w.end_time is not None and w.start_time.date() == day
        ]


class TemplateRepository(RecordListRepository[SavedTemplate]):
    KEY = "savedWorkoutTemplates"
    MODEL = SavedTemplate

    def add(self, template: SavedTemplate) -> None:
        self.save_all([template, *self.fetch_all()])


class ScheduleRepository(RecordListRepository[ScheduledWorkout]):
    KEY = "scheduledWorkouts"
    MODEL = ScheduledWorkout


class NotifiedRepository:
    """Ids of scheduled workouts a due notification was already sent for."""

    KEY = "notifiedWorkoutIds"

    def __init__(self, store) -> None:
        self.store = store
        self._adapter = TypeAdapter(list[str])

    def fetch_all(self) -> list[str]:
        raw = self.store.get(self.KEY)
        if not raw:
            return []
        return self._adapter.validate_json(raw)

    def add(self, ids: list[str]) -> None:
        current = self.fetch_all()
        self.replace(current + [i for i in ids if i not in current])

    def replace(self, ids: list[str]) -> None:
        self.store.set(self.KEY, self._adapter.dump_json(ids))


class BodyMeasurementRepository(RecordListRepository[BodyMeasurement]):
    """Repository for body measurement logs."""

    KEY = "bodyMeasurements"
    MODEL = BodyMeasurement

    def add(self, date: datetime.date | str, weight: float | None = None, **metrics) -> str:
        if weight is not None and weight <= 0:
            raise ValueError("weight must be positive")
        entry = BodyMeasurement(date=date, weight=weight, **metrics)
        self.save_all([entry, *self.fetch_all()])
        return entry.id

    def update(self, entry_id: str, **changes) -> None:
        if changes.get("weight") is not None and changes["weight"] <= 0:
            raise ValueError("weight must be positive")
        items = self.fetch_all()
        for idx, entry in enumerate(items):
            if entry.id == entry_id:
                data = {**entry.model_dump(), **changes, "id": entry_id}
                items[idx] = BodyMeasurement.model_validate(data)
                self.save_all(items)
                return
        raise ValueError("log not found")

    def fetch_history(
        self,
        start_date: Optional[datetime.date] = None,
        end_date: Optional[datetime.date] = None,
    ) -> list[BodyMeasurement]:
        rows = self.fetch_all()
        if start_date:
            rows = [r for r in rows if r.date >= start_date]
        if end_date:
            rows = [r for r in rows if r.date <= end_date]
        return sorted(rows, key=lambda r: r.date)


class PlanRepository(RecordListRepository[CustomPlan]):
    """Repository for custom multi-day plans."""

    KEY = "customPlans"
    MODEL = CustomPlan

    def add(self, name: str, days: list[PlanDay] | None = None) -> CustomPlan:
        plan = CustomPlan(
            name=name, days=days or [], created_at=datetime.datetime.now()
        )
        self.save_all([plan, *self.fetch_all()])
        return plan

    def update(self, plan_id: str, **changes) -> CustomPlan:
        items = self.fetch_all()
        for idx, plan in enumerate(items):
            if plan.id == plan_id:
                data = {**plan.model_dump(), **changes, "id": plan_id}
                items[idx] = CustomPlan.model_validate(data)
                self.save_all(items)
                return items[idx]
        raise ValueError("plan not found")


class NotificationRepository(BaseRepository):
    """Repository for user notifications."""

    def add(self, message: str) -> int:
        return self.execute(
            "INSERT INTO notifications (timestamp, message, read) VALUES (?, ?, 0);",
            (datetime.datetime.now().isoformat(), message),
        )

    def fetch_all(self, unread_only: bool = False) -> list[dict[str, object]]:
        sql = "SELECT id, timestamp, message, read FROM notifications"
        if unread_only:
            sql += " WHERE read=0"
        sql += " ORDER BY id;"
        rows = super().fetch_all(sql)
        return [
            {"id": r[0], "timestamp": r[1], "message": r[2], "read": bool(r[3])}
            for r in rows
        ]

    def mark_read(self, nid: int) -> None:
        rows = super().fetch_all("SELECT id FROM notifications WHERE id=?;", (nid,))
        if not rows:
            raise ValueError("notification not found")
        self.execute("UPDATE notifications SET read=1 WHERE id=?;", (nid,))

    def unread_count(self) -> int:
        rows = super().fetch_all(
            "SELECT COUNT(*) FROM notifications WHERE read=0;"
        )
        return rows[0][0] if rows else 0


class SettingsRepository(BaseRepository):
    """Repository for tracker settings synchronized with YAML."""

    def __init__(
        self, db_path: str = "workout.db", yaml_path: str = "settings.yaml"
    ) -> None:
        super().__init__(db_path)
        self._yaml = YamlConfig(yaml_path)
        self._init_settings()
        self._sync_from_yaml()
        self._sync_to_yaml()

    def _init_settings(self) -> None:
        defaults = SettingsSchema().model_dump()
        with self._connection() as conn:
            for key, value in defaults.items():
                if value is None:
                    continue
                conn.execute(
                    "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?);",
                    (key, self._encode(value)),
                )

    @staticmethod
    def _encode(value) -> str:
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, (list, tuple)):
            return ",".join(str(v) for v in value)
        return str(value)

    def _raw_all_settings(self) -> dict:
        rows = self.fetch_all("SELECT key, value FROM settings ORDER BY key;")
        fields = SettingsSchema.model_fields
        result: dict[str, object] = {}
        for k, v in rows:
            annotation = fields[k].annotation if k in fields else str
            if annotation is bool:
                result[k] = v in {"1", "1.0", "true", "True"}
            elif annotation is int:
                result[k] = int(float(v))
            elif annotation is float:
                result[k] = float(v)
            elif annotation == list[str]:
                result[k] = [item for item in v.split(",") if item]
            else:
                result[k] = v
        return result

    def _sync_from_yaml(self) -> None:
        data = self._yaml.load()
        if not data:
            return
        validate_settings(data)
        with self._connection() as conn:
            for key, value in data.items():
                if value is None:
                    continue
                conn.execute(
                    "INSERT INTO settings (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value=excluded.value;",
                    (key, self._encode(value)),
                )

    def _sync_to_yaml(self) -> None:
        self._yaml.save(self._raw_all_settings())

    def schema(self) -> SettingsSchema:
        self._sync_from_yaml()
        return validate_settings(self._raw_all_settings())

    def get_text(self, key: str, default: str) -> str:
        self._sync_from_yaml()
        rows = self.fetch_all("SELECT value FROM settings WHERE key = ?;", (key,))
        return rows[0][0] if rows else default

    def set_text(self, key: str, value: str) -> None:
        self.execute(
            "INSERT INTO settings (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value;",
            (key, value),
        )
        self._sync_to_yaml()

    def get_float(self, key: str, default: float) -> float:
        try:
            return float(self.get_text(key, str(default)))
        except ValueError:
            return default

    def set_float(self, key: str, value: float) -> None:
        self.set_text(key, str(value))

    def get_int(self, key: str, default: int) -> int:
        try:
            return int(float(self.get_text(key, str(default))))
        except ValueError:
            return default

    def set_int(self, key: str, value: int) -> None:
        self.set_text(key, str(value))

    def get_list(self, key: str) -> list[str]:
        val = self.get_text(key, "")
        return [v for v in val.split(",") if v]

    def set_list(self, key: str, items: list[str]) -> None:
        self.set_text(key, ",".join(items))

    def get_bool(self, key: str, default: bool) -> bool:
        return self.get_text(key, "1" if default else "0") in {
            "1",
            "true",
            "True",
            "1.0",
        }

    def set_bool(self, key: str, value: bool) -> None:
        self.set_text(key, "1" if value else "0")
