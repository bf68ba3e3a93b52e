"""Snapshot-replace cache of server collections for offline reads.

Every successful fetch replaces the whole table for that kind. There is no
merge: the last snapshot wins, and a failed write leaves the previous one.
"""
from __future__ import annotations

import copy
import enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Protocol

from sqlalchemy import insert
from sqlalchemy.orm import Session

from fieldtrack.mobile.local_store import (
    CalendarEventCache,
    ChangeOrderCache,
    EstimateCache,
    EstimateItemCache,
    JobCache,
    LeadCache,
    TaskCache,
    UserCache,
)
from fieldtrack.utils.logger import logger


class MirrorKind(str, enum.Enum):
    LEAD = "lead"
    JOB = "job"
    TASK = "task"
    CALENDAR_EVENT = "calendar_event"
    ESTIMATE = "estimate"
    ESTIMATE_ITEM = "estimate_item"
    CHANGE_ORDER = "change_order"
    USER = "user"


MIRROR_MODELS = {
    MirrorKind.LEAD: LeadCache,
    MirrorKind.JOB: JobCache,
    MirrorKind.TASK: TaskCache,
    MirrorKind.CALENDAR_EVENT: CalendarEventCache,
    MirrorKind.ESTIMATE: EstimateCache,
    MirrorKind.ESTIMATE_ITEM: EstimateItemCache,
    MirrorKind.CHANGE_ORDER: ChangeOrderCache,
    MirrorKind.USER: UserCache,
}


class MirrorStore(Protocol):
    def replace_all(self, kind: MirrorKind, records: Iterable[Mapping[str, Any]]) -> int:
        ...

    def read_all(self, kind: MirrorKind) -> List[Dict[str, Any]]:
        ...

    def count(self, kind: MirrorKind) -> int:
        ...


def _checked_records(records: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Validate a snapshot before anything is deleted; later duplicates win."""
    by_id: Dict[Any, Dict[str, Any]] = {}
    for position, record in enumerate(records or []):
        if not isinstance(record, Mapping):
            raise ValueError(f"Mirror record at position {position} is not an object")
        if record.get("id") is None:
            raise ValueError(f"Mirror record at position {position} has no id")
        by_id[record["id"]] = dict(record)
    return list(by_id.values())


class SqlMirrorStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def replace_all(self, kind: MirrorKind, records: Iterable[Mapping[str, Any]]) -> int:
        kind = MirrorKind(kind)
        model = MIRROR_MODELS[kind]
        columns = model.__table__.columns.keys()
        rows = [{name: record.get(name) for name in columns} for record in _checked_records(records)]

        db = self.session_factory()
        try:
            db.query(model).delete(synchronize_session=False)
            if rows:
                db.execute(insert(model), rows)
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.error("[mirror] replace of %s failed, previous snapshot kept: %s", kind.value, exc)
            raise
        finally:
            db.close()

        logger.info("[mirror] %s snapshot replaced (%d rows)", kind.value, len(rows))
        return len(rows)

    def read_all(self, kind: MirrorKind) -> List[Dict[str, Any]]:
        model = MIRROR_MODELS[MirrorKind(kind)]
        columns = model.__table__.columns.keys()
        db = self.session_factory()
        try:
            rows = db.query(model).order_by(model.id.asc()).all()
            return [{name: getattr(row, name) for name in columns} for row in rows]
        finally:
            db.close()

    def count(self, kind: MirrorKind) -> int:
        model = MIRROR_MODELS[MirrorKind(kind)]
        db = self.session_factory()
        try:
            return db.query(model).count()
        finally:
            db.close()


class InMemoryMirrorStore:
    """Same contract as SqlMirrorStore, kept in process memory."""

    def __init__(self):
        self._tables: Dict[MirrorKind, List[Dict[str, Any]]] = {}

    def replace_all(self, kind: MirrorKind, records: Iterable[Mapping[str, Any]]) -> int:
        kind = MirrorKind(kind)
        rows = copy.deepcopy(_checked_records(records))
        self._tables[kind] = sorted(rows, key=lambda row: row["id"])
        return len(rows)

    def read_all(self, kind: MirrorKind) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._tables.get(MirrorKind(kind), []))

    def count(self, kind: MirrorKind) -> int:
        return len(self._tables.get(MirrorKind(kind), []))
