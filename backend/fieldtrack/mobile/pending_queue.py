"""Write-behind queue for mutations made while the device is offline.

Rows are replayed oldest first and deleted only after the remote side accepts
them. A failed row stays in place with its attempt count bumped; once it
reaches ``max_attempts`` it is dead-lettered and left for manual review.
"""
from __future__ import annotations

import enum
import json
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from fieldtrack.config import settings
from fieldtrack.mobile.local_store import PendingOperation
from fieldtrack.utils.logger import logger


class OperationType(str, enum.Enum):
    CREATE_LEAD = "createLead"
    UPLOAD_PHOTO = "uploadPhoto"


ReplayFn = Callable[..., Awaitable[Any]]


@dataclass
class DrainResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: bool = False


def _type_value(op_type: Union[OperationType, str]) -> str:
    if isinstance(op_type, OperationType):
        return op_type.value
    return str(op_type)


def _as_dict(row: PendingOperation) -> Dict[str, Any]:
    return {
        "id": row.id,
        "type": row.type,
        "payload": row.payload,
        "idempotency_key": row.idempotency_key,
        "attempts": row.attempts,
        "last_error": row.last_error,
        "dead_lettered": row.dead_lettered,
        "created_at": row.created_at,
    }


class PendingOperationQueue:
    def __init__(self, session_factory: Callable[[], Session], max_attempts: Optional[int] = None):
        self.session_factory = session_factory
        self.max_attempts = settings.SYNC_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self._draining = False

    @property
    def is_draining(self) -> bool:
        return self._draining

    def enqueue(
        self,
        op_type: Union[OperationType, str],
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> int:
        """Record an operation locally and return its queue id."""
        row = PendingOperation(
            type=_type_value(op_type),
            payload=json.dumps(payload or {}, default=str),
            idempotency_key=idempotency_key or str(uuid.uuid4()),
            attempts=0,
            dead_lettered=False,
        )
        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
            queue_id = row.id
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("[queue] queued %s as #%s", _type_value(op_type), queue_id)
        return queue_id

    async def drain(self, replay_fn: ReplayFn) -> DrainResult:
        """Attempt every live row once, in insertion order.

        ``replay_fn(type, payload, idempotency_key=...)`` succeeds by returning
        anything other than ``False`` without raising.
        """
        if self._draining:
            logger.info("[queue] drain already in progress; skipping")
            return DrainResult(skipped=True)

        self._draining = True
        result = DrainResult()
        db = self.session_factory()
        try:
            rows = (
                db.query(PendingOperation)
                .filter(PendingOperation.dead_lettered.is_(False))
                .order_by(PendingOperation.id.asc())
                .all()
            )
            for row in rows:
                result.attempted += 1
                error = None
                try:
                    payload = json.loads(row.payload) if row.payload else {}
                    outcome = await replay_fn(row.type, payload, idempotency_key=row.idempotency_key)
                    if outcome is False:
                        error = "replay reported failure"
                except Exception as exc:
                    error = str(exc) or type(exc).__name__

                if error is None:
                    db.delete(row)
                    db.commit()
                    result.succeeded += 1
                    continue

                result.failed += 1
                row.attempts = (row.attempts or 0) + 1
                row.last_error = error
                if self.max_attempts and row.attempts >= self.max_attempts:
                    row.dead_lettered = True
                    result.dead_lettered += 1
                    logger.warning(
                        "[queue] #%s %s dead-lettered after %d attempts: %s",
                        row.id,
                        row.type,
                        row.attempts,
                        error,
                    )
                else:
                    logger.info("[queue] #%s %s failed (attempt %d): %s", row.id, row.type, row.attempts, error)
                db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
            self._draining = False

        logger.info(
            "[queue] drain finished: attempted=%d succeeded=%d failed=%d dead_lettered=%d",
            result.attempted,
            result.succeeded,
            result.failed,
            result.dead_lettered,
        )
        return result

    def pending_count(self) -> int:
        db = self.session_factory()
        try:
            return db.query(PendingOperation).filter(PendingOperation.dead_lettered.is_(False)).count()
        finally:
            db.close()

    def list_pending(self, include_dead: bool = False) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            query = db.query(PendingOperation)
            if not include_dead:
                query = query.filter(PendingOperation.dead_lettered.is_(False))
            return [_as_dict(row) for row in query.order_by(PendingOperation.id.asc()).all()]
        finally:
            db.close()

    def dead_letters(self) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            rows = (
                db.query(PendingOperation)
                .filter(PendingOperation.dead_lettered.is_(True))
                .order_by(PendingOperation.id.asc())
                .all()
            )
            return [_as_dict(row) for row in rows]
        finally:
            db.close()

    def requeue(self, queue_id: int) -> bool:
        """Give a dead-lettered row a fresh set of attempts."""
        db = self.session_factory()
        try:
            row = db.get(PendingOperation, queue_id)
            if row is None:
                return False
            row.attempts = 0
            row.dead_lettered = False
            row.last_error = None
            db.commit()
        finally:
            db.close()
        logger.info("[queue] #%s requeued", queue_id)
        return True

    def discard(self, queue_id: int) -> bool:
        db = self.session_factory()
        try:
            row = db.get(PendingOperation, queue_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
        finally:
            db.close()
        logger.info("[queue] #%s discarded", queue_id)
        return True
