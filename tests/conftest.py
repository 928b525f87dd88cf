import copy
from datetime import datetime

import pytest

from classroom_dedupe import AttendanceRecord, Classroom, Store, normalize_class_name


class FakeClassrooms:
    def __init__(self, docs):
        self.docs = {d["_id"]: copy.deepcopy(d) for d in docs}
        self.indexes = {"_id_": {"v": 2, "key": [("_id", 1)]}}
        self.index_calls = []

    def find_all(self):
        return [Classroom.from_document(copy.deepcopy(d)) for d in self.docs.values()]

    def delete(self, class_id):
        self.docs.pop(class_id, None)

    def update_merged(self, class_id, class_name, merge):
        doc = self.docs[class_id]
        doc["className"] = class_name
        doc["subjects"] = [s.to_document() for s in merge.subjects]
        if merge.has_settings:
            doc["settings"]["permanentAbsentees"] = list(merge.blocked_roll_numbers)
        else:
            doc["settings"] = {"permanentAbsentees": list(merge.blocked_roll_numbers)}
        if merge.total_students is not None:
            doc["totalStudents"] = merge.total_students
        if merge.roll_numbers is not None:
            doc["rollNumbers"] = list(merge.roll_numbers)

    def index_information(self):
        return copy.deepcopy(self.indexes)

    def drop_index(self, name):
        self.index_calls.append(("drop", name))
        del self.indexes[name]

    def create_name_index(self, name, collation):
        names = [normalize_class_name(d.get("className")) for d in self.docs.values()]
        # a unique index build fails on a colliding dataset
        assert len(names) == len(set(names)), "E11000 duplicate key error"
        self.index_calls.append(("create", name))
        self.indexes[name] = {"v": 2, "key": [("className", 1)], "unique": True, "collation": dict(collation)}


class FakeAttendances:
    def __init__(self, docs):
        self.docs = {d["_id"]: copy.deepcopy(d) for d in docs}

    def _check_unique(self, class_id, day, record_id):
        for doc in self.docs.values():
            if doc["_id"] != record_id and doc["classId"] == class_id and doc["date"] == day:
                raise AssertionError("E11000 duplicate key error on { classId, date }")

    def count_for_class(self, class_id):
        return sum(1 for d in self.docs.values() if d["classId"] == class_id)

    def find_for_class(self, class_id):
        docs = sorted((d for d in self.docs.values() if d["classId"] == class_id), key=lambda d: d["date"])
        return [AttendanceRecord.from_document(copy.deepcopy(d)) for d in docs]

    def find_for_class_on(self, class_id, day):
        for doc in self.docs.values():
            if doc["classId"] == class_id and doc["date"] == day:
                return AttendanceRecord.from_document(copy.deepcopy(doc))
        return None

    def retarget(self, record_id, class_id):
        doc = self.docs[record_id]
        self._check_unique(class_id, doc["date"], record_id)
        doc["classId"] = class_id

    def replace_periods(self, record_id, periods, updated_at):
        doc = self.docs[record_id]
        doc["periods"] = [p.to_document() for p in periods]
        doc["updatedAt"] = updated_at

    def delete(self, record_id):
        self.docs.pop(record_id, None)

    def for_class(self, class_id):
        return [d for d in self.docs.values() if d["classId"] == class_id]


class FakeReferences:
    def __init__(self, docs):
        self.docs = [copy.deepcopy(d) for d in docs]

    def count_for_class(self, class_id):
        return sum(1 for d in self.docs if d["classId"] == class_id)

    def retarget_all(self, from_id, to_id):
        modified = 0
        for doc in self.docs:
            if doc["classId"] == from_id and from_id != to_id:
                doc["classId"] = to_id
                modified += 1
        return modified


def classroom_doc(_id, name, subjects=(), created=None, **extra):
    doc = {
        "_id": _id,
        "className": name,
        "adminPin": "1234",
        "subjects": [dict(s) for s in subjects],
        "createdAt": created or datetime(2024, 1, 1),
    }
    doc.update(extra)
    return doc


def attendance_doc(_id, class_id, day, updated, absent=()):
    return {
        "_id": _id,
        "classId": class_id,
        "date": datetime(2024, 3, day),
        "periods": [{"periodNum": 1, "subjectId": "s1", "subjectName": "Maths", "absentRollNumbers": list(absent)}],
        "updatedAt": updated,
    }


def ref_doc(_id, class_id):
    return {"_id": _id, "classId": class_id}


@pytest.fixture
def make_store():
    def _make(classrooms=(), attendance=(), reports=(), announcements=()):
        return Store(
            classrooms=FakeClassrooms(classrooms),
            attendances=FakeAttendances(attendance),
            reports=FakeReferences(reports),
            announcements=FakeReferences(announcements),
        )
    return _make


@pytest.fixture
def cse_b_store(make_store):
    """'CSE B' with 5 attendance days, 'cse b' with 2, one of them overlapping and newer."""
    attendance = [attendance_doc(f"a{day}", "c-upper", day, datetime(2024, 3, day, 10)) for day in range(1, 6)]
    attendance += [
        attendance_doc("d3", "c-lower", 3, datetime(2024, 3, 3, 18), absent=[7, 9]),
        attendance_doc("d9", "c-lower", 9, datetime(2024, 3, 9, 10)),
    ]
    return make_store(
        classrooms=[
            classroom_doc("c-upper", "CSE B", subjects=[{"name": "Maths", "code": "MA101"}],
                          created=datetime(2024, 1, 5), totalStudents=60),
            classroom_doc("c-lower", " cse b ", subjects=[{"name": "maths", "code": "ma101"}, {"name": "Physics"}],
                          created=datetime(2024, 1, 2), totalStudents=64),
            classroom_doc("c-other", "CSE A"),
        ],
        attendance=attendance,
        reports=[ref_doc("r1", "c-lower"), ref_doc("r2", "c-upper")],
        announcements=[ref_doc("n1", "c-lower"), ref_doc("n2", "c-lower"), ref_doc("n3", "c-other")],
    )
