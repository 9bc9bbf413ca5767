import argparse
import datetime
import json
import shutil

from db import KeyValueStore, NotificationRepository, SettingsRepository
from notification_service import NotificationService
from schedule_service import ScheduleService
from rest_api import TrackerAPI


def backup_db(db_path: str, backup_path: str) -> None:
    shutil.copy(db_path, backup_path)


def restore_db(backup_path: str, db_path: str) -> None:
    shutil.copy(backup_path, db_path)


def _schedule(db_path: str, yaml_path: str) -> ScheduleService:
    settings = SettingsRepository(db_path, yaml_path)
    notifier = NotificationService(NotificationRepository(db_path), settings)
    return ScheduleService(
        KeyValueStore(db_path), notify=notifier.notify, settings=settings
    )


def reconcile(db_path: str, yaml_path: str) -> list[str]:
    """Flag every past open scheduled workout as missed."""
    missed = _schedule(db_path, yaml_path).reconcile_missed()
    print(f"{len(missed)} scheduled workout(s) marked as missed")
    return missed


def send_due(db_path: str, yaml_path: str) -> list[str]:
    sent = _schedule(db_path, yaml_path).dispatch_due()
    print(f"{len(sent)} reminder(s) sent")
    return sent


def day_overview(db_path: str, yaml_path: str, date: str) -> dict:
    schedule = _schedule(db_path, yaml_path)
    scheduled, workouts = schedule.workouts_for_day(date)
    overview = {
        "date": date,
        "statuses": sorted(schedule.statuses_for_day(date)),
        "scheduled": [e.model_dump(mode="json") for e in scheduled],
        "workouts": [w.model_dump(mode="json") for w in workouts],
    }
    print(json.dumps(overview, indent=2))
    return overview


def show_stats(db_path: str, yaml_path: str) -> dict:
    api = TrackerAPI(db_path=db_path, yaml_path=yaml_path)
    stats = api.statistics.workout_stats()
    for key, value in stats.items():
        print(f"{key}: {value}")
    return stats


def main() -> None:
    parser = argparse.ArgumentParser(description="Utility commands")
    sub = parser.add_subparsers(dest="cmd", required=True)

    for name in ("reconcile", "notify", "day", "stats"):
        cmd = sub.add_parser(name)
        cmd.add_argument("--db", default="workout.db")
        cmd.add_argument("--yaml", default="settings.yaml")
        if name == "day":
            cmd.add_argument("--date", default=datetime.date.today().isoformat())

    bkp = sub.add_parser("backup")
    bkp.add_argument("--db", default="workout.db")
    bkp.add_argument("--out", default="backup.db")

    rst = sub.add_parser("restore")
    rst.add_argument("--in", dest="src", default="backup.db")
    rst.add_argument("--db", default="workout.db")

    args = parser.parse_args()

    if args.cmd == "reconcile":
        reconcile(args.db, args.yaml)
    elif args.cmd == "notify":
        send_due(args.db, args.yaml)
    elif args.cmd == "day":
        day_overview(args.db, args.yaml, args.date)
    elif args.cmd == "stats":
        show_stats(args.db, args.yaml)
    elif args.cmd == "backup":
        backup_db(args.db, args.out)
    elif args.cmd == "restore":
        restore_db(args.src, args.db)


if __name__ == "__main__":
    main()
