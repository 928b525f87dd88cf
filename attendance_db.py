"""
 Attendance DB Maintenance (MongoDB Version)
- Case-insensitive classroom name repair: merges duplicate classrooms and installs
  the className_ci_unique index (engine in classroom_dedupe.py)
- Performance index creation for attendance, report and announcement feeds
- One manager class per collection, all reads/writes bounded by client timeouts
- Configurable via Config dataclass and environment variables (.env supported)
- Clear logging with Run IDs; JSON report on stdout, logs on stderr
- Single-instance runs enforced with a lock file

Usage:
    flask --app attendance_db dedupe-classrooms [--dry-run] [--audit-csv audit.csv]
    flask --app attendance_db create-performance-indexes

Requirements (pip):
Flask, Flask-PyMongo, pymongo, pandas, filelock, python-dotenv
"""

import json
import logging
import os
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import pandas as pd
from dotenv import load_dotenv
from filelock import FileLock, Timeout
from flask import Flask, current_app, g, has_app_context
from flask.cli import FlaskGroup, with_appcontext
from flask_pymongo import PyMongo
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, PyMongoError

from classroom_dedupe import (
    NAME_FIELD,
    AttendanceRecord,
    Classroom,
    DedupeError,
    DuplicateNamesRemainError,
    Period,
    Store,
    SubjectListMerger,
    plan_dedupe,
    run_dedupe,
)

load_dotenv()


# ---------------- CONFIG ----------------
@dataclass
class Config:
    """
    Configuration settings for the maintenance commands.
    """
    # General
    mongodb_uri: str = os.getenv("MONGODB_URI") or os.getenv("MONGO_URI")
    mongodb_collection_classrooms: str = "classrooms"
    mongodb_collection_attendance: str = "attendances"
    mongodb_collection_reports: str = "reports"
    mongodb_collection_announcements: str = "announcements"
    workers: int = 4

    # Storage call bounds
    server_selection_timeout_ms: int = 5000
    socket_timeout_ms: int = 45000

    # Single-instance guard
    lock_path: str = os.getenv("DEDUPE_LOCK_PATH", "classroom_dedupe.lock")

    # Runtime
    debug: bool = os.getenv("DEBUG", "").lower() in ("1", "true", "yes")


# ---------------- LOGGER ----------------
logger = logging.getLogger("attendance_api")
handler = logging.StreamHandler(sys.stderr)
handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] (RunID:%(run_id)s) %(message)s"))
logger.addHandler(handler)
logger.setLevel(logging.INFO)

class RunIdFilter(logging.Filter):
    def filter(self, record):
        record.run_id = getattr(g, 'run_id', 'N/A') if has_app_context() else 'N/A'
        return True

logger.addFilter(RunIdFilter())


# ---------------- Database Managers ----------------
class ClassroomDBManager:
    def __init__(self, db, config: Config):
        self.collection = db[config.mongodb_collection_classrooms]

    def find_all(self) -> List[Classroom]:
        """Returns every classroom with the fields the dedupe engine needs."""
        projection = {
            NAME_FIELD: 1, "adminPin": 1, "subjects": 1, "totalStudents": 1,
            "rollNumbers": 1, "settings": 1, "createdAt": 1,
        }
        return [Classroom.from_document(doc) for doc in self.collection.find({}, projection)]

    def delete(self, class_id: Any):
        self.collection.delete_one({"_id": class_id})

    def update_merged(self, class_id: Any, class_name: str, merge: SubjectListMerger):
        """Writes the merged subject list, roster fields and trimmed name onto the canonical classroom."""
        update_doc: Dict[str, Any] = {
            NAME_FIELD: class_name,
            "subjects": [s.to_document() for s in merge.subjects],
        }
        if merge.has_settings:
            update_doc["settings.permanentAbsentees"] = list(merge.blocked_roll_numbers)
        else:
            update_doc["settings"] = {"permanentAbsentees": list(merge.blocked_roll_numbers)}
        if merge.total_students is not None:
            update_doc["totalStudents"] = merge.total_students
        if merge.roll_numbers is not None:
            update_doc["rollNumbers"] = list(merge.roll_numbers)
        self.collection.update_one({"_id": class_id}, {"$set": update_doc})

    def index_information(self) -> Dict[str, Dict[str, Any]]:
        return self.collection.index_information()

    def drop_index(self, name: str):
        self.collection.drop_index(name)

    def create_name_index(self, name: str, collation: Dict[str, Any]):
        self.collection.create_index([(NAME_FIELD, ASCENDING)], name=name, unique=True, collation=collation)


class AttendanceDBManager:
    def __init__(self, db, config: Config):
        self.collection = db[config.mongodb_collection_attendance]

    def count_for_class(self, class_id: Any) -> int:
        return self.collection.count_documents({"classId": class_id})

    def find_for_class(self, class_id: Any) -> List[AttendanceRecord]:
        return [AttendanceRecord.from_document(doc) for doc in self.collection.find({"classId": class_id})]

    def find_for_class_on(self, class_id: Any, day: Any) -> Optional[AttendanceRecord]:
        doc = self.collection.find_one({"classId": class_id, "date": day})
        return AttendanceRecord.from_document(doc) if doc else None

    def retarget(self, record_id: Any, class_id: Any):
        self.collection.update_one({"_id": record_id}, {"$set": {"classId": class_id}})

    def replace_periods(self, record_id: Any, periods: List[Period], updated_at):
        self.collection.update_one(
            {"_id": record_id},
            {"$set": {"periods": [p.to_document() for p in periods], "updatedAt": updated_at}},
        )

    def delete(self, record_id: Any):
        self.collection.delete_one({"_id": record_id})


class ClassReferenceDBManager:
    """Reports and announcements share the same classId handling."""

    def __init__(self, db, collection_name: str):
        self.collection = db[collection_name]

    def count_for_class(self, class_id: Any) -> int:
        return self.collection.count_documents({"classId": class_id})

    def retarget_all(self, from_id: Any, to_id: Any) -> int:
        result = self.collection.update_many({"classId": from_id}, {"$set": {"classId": to_id}})
        return result.modified_count


def build_store(db, config: Config) -> Store:
    return Store(
        classrooms=ClassroomDBManager(db, config),
        attendances=AttendanceDBManager(db, config),
        reports=ClassReferenceDBManager(db, config.mongodb_collection_reports),
        announcements=ClassReferenceDBManager(db, config.mongodb_collection_announcements),
    )


def create_performance_indexes(db, config: Config) -> Dict[str, str]:
    """Creates the feed/history indexes used by the attendance, report and announcement pages."""
    attendance = db[config.mongodb_collection_attendance]
    reports = db[config.mongodb_collection_reports]
    announcements = db[config.mongodb_collection_announcements]
    return {
        "attendanceLatest": attendance.create_index(
            [("classId", ASCENDING), ("updatedAt", DESCENDING)], name="classId_1_updatedAt_-1"),
        "attendanceHistory": attendance.create_index(
            [("classId", ASCENDING), ("periods.subjectId", ASCENDING), ("date", DESCENDING)],
            name="classId_1_periods.subjectId_1_date_-1"),
        "reportAdminFeed": reports.create_index(
            [("classId", ASCENDING), ("createdAt", DESCENDING)], name="classId_1_createdAt_-1"),
        "announcementFeed": announcements.create_index(
            [("classId", ASCENDING), ("createdAt", DESCENDING)], name="classId_1_createdAt_-1"),
    }


def export_audit_csv(actions: List[Dict[str, Any]], path: Path):
    """Writes the per-group audit trail as CSV, one row per removed classroom."""
    rows = []
    for action in actions:
        refs = action["referenceCountsMoved"]
        rows.append({
            "normalizedName": action["normalizedName"],
            "keptId": action["keptId"],
            "keptName": action["keptName"],
            "removedId": action["removedId"],
            "removedName": action["removedName"],
            "attendanceMoved": refs["attendance"],
            "reportsMoved": refs["reports"],
            "announcementsMoved": refs["announcements"],
            "totalMoved": refs["total"],
        })
    columns = ["normalizedName", "keptId", "keptName", "removedId", "removedName",
               "attendanceMoved", "reportsMoved", "announcementsMoved", "totalMoved"]
    pd.DataFrame(rows, columns=columns).to_csv(path, index=False)


# ---------------- Database Connection ----------------
mongo = PyMongo()

def check_connection():
    """Raises ConnectionFailure if MongoDB cannot be reached."""
    mongo.cx.server_info()


# ---------------- CLI Commands ----------------
def _start_run() -> Config:
    g.run_id = str(uuid.uuid4())[:8]
    config = current_app.config["DEDUPE_CONFIG"]
    try:
        check_connection()
        logger.info("Successfully connected to MongoDB.")
    except ConnectionFailure as e:
        logger.critical(f"Failed to connect to MongoDB: {e}")
        sys.exit(1)
    return config


@click.command("dedupe-classrooms")
@click.option("--dry-run", is_flag=True, help="Report duplicate groups and canonical picks without writing.")
@click.option("--audit-csv", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Also write the per-group audit trail to this CSV file.")
@with_appcontext
def dedupe_classrooms_command(dry_run: bool, audit_csv: Optional[Path]):
    """Merge case-insensitively duplicated classrooms and install the unique name index."""
    config = _start_run()
    store = build_store(mongo.db, config)
    lock = FileLock(config.lock_path, timeout=0)

    try:
        with lock:
            if dry_run:
                plan = plan_dedupe(store, config.workers)
                click.echo(json.dumps({"dryRun": True, "duplicateGroupsFound": len(plan), "groups": plan},
                                      indent=2, default=str))
                return
            summary = run_dedupe(store, config.workers)
    except Timeout:
        logger.critical(f"Another dedupe run holds {config.lock_path}. Exiting.")
        sys.exit(1)
    except DuplicateNamesRemainError as e:
        logger.critical(str(e))
        sys.exit(1)
    except (DedupeError, PyMongoError) as e:
        logger.exception(f"Migration failed: {e}")
        sys.exit(1)

    report = summary.to_dict()
    click.echo(json.dumps(report, indent=2, default=str))
    if audit_csv is not None:
        # the migration is already committed; a failed export must not turn it into a failed run
        try:
            export_audit_csv(report["actions"], audit_csv)
            logger.info(f"Audit trail written to {audit_csv}.")
        except OSError as e:
            logger.exception(f"Could not write audit trail to {audit_csv}: {e}")


@click.command("create-performance-indexes")
@with_appcontext
def create_performance_indexes_command():
    """Create the attendance/report/announcement feed indexes."""
    config = _start_run()
    try:
        results = create_performance_indexes(mongo.db, config)
    except PyMongoError as e:
        logger.exception(f"Index creation failed: {e}")
        sys.exit(1)
    click.echo(json.dumps(results, indent=2))


# ---------------- App ----------------
def create_app(config: Optional[Config] = None) -> Flask:
    config = config or Config()
    if not config.mongodb_uri:
        logger.critical("MONGODB_URI (or MONGO_URI) environment variable is not set. Exiting.")
        sys.exit(1)
    if config.debug: logger.setLevel(logging.DEBUG)

    app = Flask(__name__)
    app.config["MONGO_URI"] = config.mongodb_uri
    app.config["DEDUPE_CONFIG"] = config
    mongo.init_app(
        app,
        serverSelectionTimeoutMS=config.server_selection_timeout_ms,
        socketTimeoutMS=config.socket_timeout_ms,
    )
    app.cli.add_command(dedupe_classrooms_command)
    app.cli.add_command(create_performance_indexes_command)
    return app


cli = FlaskGroup(create_app=create_app)


if __name__ == '__main__':
    cli()
