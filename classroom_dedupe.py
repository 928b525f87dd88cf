"""
 Classroom Deduplication Engine
- Finds classrooms whose names collide case-insensitively
- Picks one canonical classroom per collision group
- Moves attendance, reports and announcements onto the canonical classroom
- Merges subject lists and roster fields, deletes drained duplicates
- Verifies no collision remains, then installs the case-insensitive unique index

Storage is reached only through the repository protocols below, so the engine
runs the same against MongoDB (see attendance_db.py) or an in-memory store.
"""

import logging
import unicodedata
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

logger = logging.getLogger("attendance_api")

NAME_FIELD = "className"
CI_INDEX_NAME = "className_ci_unique"
CI_COLLATION = {"locale": "en", "strength": 2}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ---------------- Errors ----------------
class DedupeError(Exception):
    """Base error for the classroom dedupe run."""


class DuplicateNamesRemainError(DedupeError):
    """Collisions survived the merge pass; the unique index must not be installed."""

    def __init__(self, names: List[str]):
        self.names = names
        super().__init__(
            f"Duplicate class names still exist after dedupe ({', '.join(names)}). Aborting index migration."
        )


# ---------------- Records ----------------
@dataclass
class Subject:
    name: str
    code: Optional[str] = None
    total_classes_expected: Optional[int] = None
    id: Any = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Subject":
        return cls(
            name=doc.get("name") or "",
            code=doc.get("code"),
            total_classes_expected=doc.get("totalClassesExpected"),
            id=doc.get("_id"),
        )

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {"name": self.name}
        if self.id is not None:
            doc["_id"] = self.id
        if self.code is not None:
            doc["code"] = self.code
        if self.total_classes_expected is not None:
            doc["totalClassesExpected"] = self.total_classes_expected
        return doc

    def merge_key(self) -> Tuple[str, str]:
        return (str(self.name or "").strip().lower(), str(self.code or "").strip().lower())


@dataclass
class Classroom:
    id: Any
    class_name: str
    admin_pin: Optional[str] = None
    subjects: List[Subject] = field(default_factory=list)
    roll_numbers: Optional[List[int]] = None
    total_students: Optional[int] = None
    blocked_roll_numbers: List[int] = field(default_factory=list)
    created_at: Optional[datetime] = None
    settings: Optional[Dict[str, Any]] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Classroom":
        settings = doc.get("settings") if isinstance(doc.get("settings"), dict) else None
        roll_numbers = doc.get("rollNumbers")
        return cls(
            id=doc["_id"],
            class_name=doc.get(NAME_FIELD) or "",
            admin_pin=doc.get("adminPin"),
            subjects=[Subject.from_document(s) for s in doc.get("subjects") or []],
            roll_numbers=list(roll_numbers) if roll_numbers is not None else None,
            total_students=doc.get("totalStudents"),
            blocked_roll_numbers=list((settings or {}).get("permanentAbsentees") or []),
            created_at=doc.get("createdAt"),
            settings=settings,
        )


@dataclass
class Period:
    period_num: Optional[int] = None
    subject_id: Optional[str] = None
    subject_name: Optional[str] = None
    absent_roll_numbers: List[int] = field(default_factory=list)
    id: Any = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Period":
        return cls(
            period_num=doc.get("periodNum"),
            subject_id=doc.get("subjectId"),
            subject_name=doc.get("subjectName"),
            absent_roll_numbers=list(doc.get("absentRollNumbers") or []),
            id=doc.get("_id"),
        )

    def to_document(self) -> Dict[str, Any]:
        doc = {
            "periodNum": self.period_num,
            "subjectId": self.subject_id,
            "subjectName": self.subject_name,
            "absentRollNumbers": list(self.absent_roll_numbers),
        }
        if self.id is not None:
            doc["_id"] = self.id
        return doc


@dataclass
class AttendanceRecord:
    id: Any
    class_id: Any
    date: Any
    periods: List[Period] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "AttendanceRecord":
        return cls(
            id=doc["_id"],
            class_id=doc.get("classId"),
            date=doc.get("date"),
            periods=[Period.from_document(p) for p in doc.get("periods") or []],
            updated_at=doc.get("updatedAt"),
        )


@dataclass
class ReferenceCounts:
    attendance: int = 0
    reports: int = 0
    announcements: int = 0

    @property
    def total(self) -> int:
        return self.attendance + self.reports + self.announcements

    def to_dict(self) -> Dict[str, int]:
        return {
            "attendance": self.attendance,
            "reports": self.reports,
            "announcements": self.announcements,
            "total": self.total,
        }


@dataclass
class ScoredClassroom:
    classroom: Classroom
    refs: ReferenceCounts


@dataclass
class DuplicateGroup:
    normalized_name: str
    members: List[Classroom]


# ---------------- Repository protocols ----------------
class ClassroomRepository(Protocol):
    def find_all(self) -> List[Classroom]: ...
    def delete(self, class_id: Any) -> None: ...
    def update_merged(self, class_id: Any, class_name: str, merge: "SubjectListMerger") -> None: ...
    def index_information(self) -> Dict[str, Dict[str, Any]]: ...
    def drop_index(self, name: str) -> None: ...
    def create_name_index(self, name: str, collation: Dict[str, Any]) -> None: ...


class AttendanceRepository(Protocol):
    def count_for_class(self, class_id: Any) -> int: ...
    def find_for_class(self, class_id: Any) -> List[AttendanceRecord]: ...
    def find_for_class_on(self, class_id: Any, day: Any) -> Optional[AttendanceRecord]: ...
    def retarget(self, record_id: Any, class_id: Any) -> None: ...
    def replace_periods(self, record_id: Any, periods: List[Period], updated_at: Optional[datetime]) -> None: ...
    def delete(self, record_id: Any) -> None: ...


class ClassReferenceRepository(Protocol):
    """Reports and announcements: only their classId is ever touched."""

    def count_for_class(self, class_id: Any) -> int: ...
    def retarget_all(self, from_id: Any, to_id: Any) -> int: ...


@dataclass
class Store:
    classrooms: ClassroomRepository
    attendances: AttendanceRepository
    reports: ClassReferenceRepository
    announcements: ClassReferenceRepository


# ---------------- Summary ----------------
@dataclass
class MergeAction:
    normalized_name: str
    kept_id: str
    removed_id: str
    kept_name: str
    removed_name: str
    reference_counts_moved: ReferenceCounts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "normalizedName": self.normalized_name,
            "keptId": self.kept_id,
            "removedId": self.removed_id,
            "keptName": self.kept_name,
            "removedName": self.removed_name,
            "referenceCountsMoved": self.reference_counts_moved.to_dict(),
        }


@dataclass
class DiscardedAttendance:
    record_id: str
    date: Any
    discarded_side: str  # "duplicate" or "canonical"
    kept_record_id: str


@dataclass
class AttendanceMergeResult:
    retargeted: int = 0
    replaced: int = 0
    kept_canonical: int = 0
    removed_from_duplicate: int = 0
    discarded: List[DiscardedAttendance] = field(default_factory=list)


@dataclass
class DedupeSummary:
    duplicate_groups_found: int = 0
    duplicate_classrooms_deleted: int = 0
    reports_moved: int = 0
    announcements_moved: int = 0
    attendance_moved: int = 0
    attendance_replaced: int = 0
    attendance_kept_primary: int = 0
    attendance_removed_from_duplicate: int = 0
    discarded_attendance: List[DiscardedAttendance] = field(default_factory=list)
    index_status: Optional[str] = None
    index_dropped: List[str] = field(default_factory=list)
    index_created: Optional[str] = None
    final_indexes: List[str] = field(default_factory=list)
    actions: List[MergeAction] = field(default_factory=list)

    def add_attendance(self, result: AttendanceMergeResult):
        self.attendance_moved += result.retargeted
        self.attendance_replaced += result.replaced
        self.attendance_kept_primary += result.kept_canonical
        self.attendance_removed_from_duplicate += result.removed_from_duplicate
        self.discarded_attendance.extend(result.discarded)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duplicateGroupsFound": self.duplicate_groups_found,
            "duplicateClassroomsDeleted": self.duplicate_classrooms_deleted,
            "reportsMoved": self.reports_moved,
            "announcementsMoved": self.announcements_moved,
            "attendanceMoved": self.attendance_moved,
            "attendanceReplaced": self.attendance_replaced,
            "attendanceKeptPrimary": self.attendance_kept_primary,
            "attendanceRemovedFromDuplicate": self.attendance_removed_from_duplicate,
            "discardedAttendance": [asdict(d) for d in self.discarded_attendance],
            "indexStatus": self.index_status,
            "indexDropped": list(self.index_dropped),
            "indexCreated": self.index_created,
            "finalIndexes": list(self.final_indexes),
            "actions": [a.to_dict() for a in self.actions],
        }


class GroupStage(Enum):
    DISCOVERED = "discovered"
    SCORED = "scored"
    CANONICAL_SELECTED = "canonical-selected"
    MERGING = "merging"
    FINALIZING = "finalizing"
    DONE = "done"


# ---------------- Utilities ----------------
def normalize_class_name(name: Optional[str]) -> str:
    """Case-insensitive key for a class name. Shared by discovery and verification."""
    return unicodedata.normalize("NFKC", str(name or "")).strip().casefold()


def as_time(value: Any) -> float:
    """POSIX timestamp for ordering; missing or unparseable values sort as the epoch."""
    if isinstance(value, str):
        text = value.strip()
        if text[-1:] in ("Z", "z"):
            # fromisoformat only accepts a "Z" suffix from 3.11 on
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            return 0.0
    if not isinstance(value, datetime):
        return 0.0
    if value.tzinfo is None:
        # pymongo hands back naive UTC datetimes
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH).total_seconds()


# ---------------- Discovery ----------------
def find_duplicate_groups(classrooms: Iterable[Classroom]) -> List[DuplicateGroup]:
    """Groups classrooms by normalized name, keeping only groups with more than one member."""
    buckets: Dict[str, List[Classroom]] = defaultdict(list)
    for classroom in classrooms:
        buckets[normalize_class_name(classroom.class_name)].append(classroom)
    return [
        DuplicateGroup(normalized_name=norm, members=members)
        for norm, members in sorted(buckets.items())
        if len(members) > 1
    ]


# ---------------- Scoring & selection ----------------
def count_references(store: Store, class_id: Any) -> ReferenceCounts:
    return ReferenceCounts(
        attendance=store.attendances.count_for_class(class_id),
        reports=store.reports.count_for_class(class_id),
        announcements=store.announcements.count_for_class(class_id),
    )


def score_members(store: Store, members: List[Classroom], workers: int = 1) -> List[ScoredClassroom]:
    """Counts references for every member. Reads only, so members are scored in parallel."""
    if workers <= 1:
        return [ScoredClassroom(m, count_references(store, m.id)) for m in members]
    with ThreadPoolExecutor(max_workers=workers) as ex:
        counts = list(ex.map(lambda m: count_references(store, m.id), members))
    return [ScoredClassroom(m, refs) for m, refs in zip(members, counts)]


def _canonical_rank(scored: ScoredClassroom):
    classroom = scored.classroom
    return (
        -scored.refs.total,
        -len(classroom.subjects),
        as_time(classroom.created_at),
        str(classroom.id),
    )


def choose_canonical(scored: List[ScoredClassroom]) -> ScoredClassroom:
    """
    Most referenced wins, then most subjects, then oldest createdAt.
    Ties after that fall to the smaller id so the pick never depends on input order.
    """
    if not scored:
        raise DedupeError("Cannot choose a canonical classroom from an empty group.")
    return min(scored, key=_canonical_rank)


# ---------------- Attendance ----------------
def merge_attendance(attendances: AttendanceRepository, from_id: Any, to_id: Any) -> AttendanceMergeResult:
    """
    Moves every attendance record of `from_id` onto `to_id`.
    On a (classId, date) conflict the later updatedAt wins; equal timestamps keep the canonical side.
    """
    result = AttendanceMergeResult()
    for record in attendances.find_for_class(from_id):
        existing = attendances.find_for_class_on(to_id, record.date)

        if existing is None:
            attendances.retarget(record.id, to_id)
            result.retargeted += 1
            continue

        if as_time(record.updated_at) > as_time(existing.updated_at):
            attendances.replace_periods(existing.id, record.periods, record.updated_at)
            result.replaced += 1
            # the canonical document survives but its old periods are gone
            result.discarded.append(DiscardedAttendance(str(existing.id), record.date, "canonical", str(record.id)))
            logger.info(
                f"Attendance conflict on {record.date}: duplicate record {record.id} is newer, "
                f"periods copied onto {existing.id}."
            )
        else:
            result.kept_canonical += 1
            result.discarded.append(DiscardedAttendance(str(record.id), record.date, "duplicate", str(existing.id)))
            logger.info(
                f"Attendance conflict on {record.date}: keeping canonical record {existing.id}, "
                f"discarding duplicate record {record.id}."
            )

        attendances.delete(record.id)
        result.removed_from_duplicate += 1
    return result


# ---------------- References ----------------
def retarget_references(store: Store, from_id: Any, to_id: Any) -> Tuple[int, int]:
    """Bulk-moves reports and announcements. Returns (reports, announcements) modified."""
    reports = store.reports.retarget_all(from_id, to_id)
    announcements = store.announcements.retarget_all(from_id, to_id)
    return reports, announcements


# ---------------- Subjects ----------------
class SubjectListMerger:
    """Accumulates the canonical classroom's subjects and roster fields across its duplicates."""

    def __init__(self, canonical: Classroom):
        self.subjects: List[Subject] = list(canonical.subjects)
        self._seen = {s.merge_key() for s in self.subjects}
        self.total_students: Optional[int] = canonical.total_students
        self.roll_numbers: Optional[List[int]] = (
            sorted(set(canonical.roll_numbers)) if canonical.roll_numbers is not None else None
        )
        self.blocked_roll_numbers: List[int] = sorted(set(canonical.blocked_roll_numbers))
        # legacy documents may carry settings: null, which a dotted $set cannot write into
        self.has_settings = canonical.settings is not None

    def fold(self, duplicate: Classroom):
        for subject in duplicate.subjects:
            key = subject.merge_key()
            if key not in self._seen:
                self._seen.add(key)
                self.subjects.append(subject)

        if duplicate.total_students is not None:
            self.total_students = max(self.total_students or 0, duplicate.total_students)
        if duplicate.roll_numbers is not None:
            self.roll_numbers = sorted(set(self.roll_numbers or []) | set(duplicate.roll_numbers))
        self.blocked_roll_numbers = sorted(set(self.blocked_roll_numbers) | set(duplicate.blocked_roll_numbers))


# ---------------- Orchestration ----------------
def _stage(group: DuplicateGroup, stage: GroupStage):
    logger.debug(f"Group '{group.normalized_name}': {stage.value}")


def dedupe_group(store: Store, group: DuplicateGroup, summary: DedupeSummary, workers: int = 1) -> DedupeSummary:
    _stage(group, GroupStage.DISCOVERED)
    scored = score_members(store, group.members, workers)
    _stage(group, GroupStage.SCORED)

    canonical = choose_canonical(scored)
    kept = canonical.classroom
    duplicates = [s for s in scored if str(s.classroom.id) != str(kept.id)]
    _stage(group, GroupStage.CANONICAL_SELECTED)
    logger.info(
        f"Group '{group.normalized_name}': keeping {kept.id} ('{kept.class_name}', "
        f"{canonical.refs.total} refs), merging {len(duplicates)} duplicate(s)."
    )

    merger = SubjectListMerger(kept)
    _stage(group, GroupStage.MERGING)
    for duplicate in duplicates:
        dup = duplicate.classroom
        summary.add_attendance(merge_attendance(store.attendances, dup.id, kept.id))

        reports, announcements = retarget_references(store, dup.id, kept.id)
        summary.reports_moved += reports
        summary.announcements_moved += announcements

        merger.fold(dup)

        store.classrooms.delete(dup.id)
        summary.duplicate_classrooms_deleted += 1
        summary.actions.append(MergeAction(
            normalized_name=group.normalized_name,
            kept_id=str(kept.id),
            removed_id=str(dup.id),
            kept_name=kept.class_name,
            removed_name=dup.class_name,
            reference_counts_moved=duplicate.refs,
        ))
        logger.info(f"Removed duplicate classroom {dup.id} ('{dup.class_name}'), moved {duplicate.refs.total} refs.")

    _stage(group, GroupStage.FINALIZING)
    store.classrooms.update_merged(kept.id, str(kept.class_name or "").strip(), merger)
    _stage(group, GroupStage.DONE)
    return summary


def plan_dedupe(store: Store, workers: int = 1) -> List[Dict[str, Any]]:
    """Dry run: the groups that would be merged and their canonical picks. No writes."""
    plan = []
    for group in find_duplicate_groups(store.classrooms.find_all()):
        scored = score_members(store, group.members, workers)
        kept = choose_canonical(scored)
        plan.append({
            "normalizedName": group.normalized_name,
            "keptId": str(kept.classroom.id),
            "keptName": kept.classroom.class_name,
            "members": [
                {"id": str(s.classroom.id), "name": s.classroom.class_name, "refs": s.refs.to_dict()}
                for s in scored
            ],
        })
    return plan


# ---------------- Verification & index ----------------
def verify_unique_names(classrooms: ClassroomRepository):
    remaining = find_duplicate_groups(classrooms.find_all())
    if remaining:
        raise DuplicateNamesRemainError([g.normalized_name for g in remaining])


def _is_name_unique_index(info: Dict[str, Any]) -> bool:
    """Unique index keyed solely on className. Non-unique lookup indexes never clash with the new one."""
    keys = [k for k, _ in info.get("key", [])]
    return keys == [NAME_FIELD] and info.get("unique") is True


def _is_ci_unique(info: Dict[str, Any]) -> bool:
    collation = info.get("collation") or {}
    return (
        info.get("unique") is True
        and collation.get("locale") == CI_COLLATION["locale"]
        and collation.get("strength") == CI_COLLATION["strength"]
    )


def ensure_case_insensitive_unique_index(classrooms: ClassroomRepository, summary: DedupeSummary) -> DedupeSummary:
    indexes = classrooms.index_information()

    current = indexes.get(CI_INDEX_NAME)
    present = current is not None and _is_ci_unique(current)

    # a case-sensitive unique index (e.g. className_1 rebuilt by app autoIndex) is
    # dropped even when the case-insensitive one is already in place
    for name, info in indexes.items():
        if name == CI_INDEX_NAME:
            if present:
                continue
        elif not _is_name_unique_index(info):
            continue
        classrooms.drop_index(name)
        summary.index_dropped.append(name)
        logger.info(f"Dropped index {name}.")

    if present:
        summary.index_status = "already_present"
        logger.info(f"{CI_INDEX_NAME} already present.")
        return summary

    classrooms.create_name_index(CI_INDEX_NAME, dict(CI_COLLATION))
    summary.index_created = CI_INDEX_NAME
    summary.index_status = "recreated" if summary.index_dropped else "created"
    logger.info(f"Created {CI_INDEX_NAME} ({summary.index_status}).")
    return summary


def run_dedupe(store: Store, workers: int = 1) -> DedupeSummary:
    """Merges every duplicate group, verifies uniqueness, installs the index. Fails on first error."""
    summary = DedupeSummary()
    groups = find_duplicate_groups(store.classrooms.find_all())
    summary.duplicate_groups_found = len(groups)
    logger.info(f"Found {len(groups)} duplicate classroom group(s).")

    for group in groups:
        dedupe_group(store, group, summary, workers)

    verify_unique_names(store.classrooms)
    ensure_case_insensitive_unique_index(store.classrooms, summary)
    summary.final_indexes = sorted(store.classrooms.index_information().keys())
    return summary
