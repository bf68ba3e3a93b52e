"""Client-side sync: replay queued writes, then refresh the offline mirrors.

Sync is best effort. Failures are recorded in the returned SyncReport and the
activity log; ``sync_now`` itself does not raise for remote errors.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from fieldtrack.config import settings
from fieldtrack.mobile.api_client import RemoteApiClient, RemoteApiError
from fieldtrack.mobile.mirror import MirrorKind, MirrorStore
from fieldtrack.mobile.pending_queue import DrainResult, OperationType, PendingOperationQueue
from fieldtrack.utils.logger import SyncActivityLog, logger

MIRROR_ENDPOINTS = {
    MirrorKind.LEAD: "/leads",
    MirrorKind.JOB: "/jobs",
    MirrorKind.TASK: "/tasks",
    MirrorKind.CALENDAR_EVENT: "/calendar",
    MirrorKind.ESTIMATE: "/estimates",
    MirrorKind.ESTIMATE_ITEM: "/estimate-items",
    MirrorKind.CHANGE_ORDER: "/change-orders",
    MirrorKind.USER: "/users",
}

REPLAY_ROUTES = {
    OperationType.CREATE_LEAD.value: ("POST", "/leads"),
    OperationType.UPLOAD_PHOTO.value: ("POST", "/upload/image"),
}


class UnknownOperationError(Exception):
    pass


@dataclass
class SubmitResult:
    queued: bool
    response: Any = None
    queue_id: Optional[int] = None
    error: Optional[str] = None
    # The server answered and refused the request, as opposed to being unreachable.
    rejected: bool = False


@dataclass
class SyncReport:
    drain: DrainResult
    refreshed: Dict[str, int] = field(default_factory=dict)
    refresh_errors: Dict[str, str] = field(default_factory=dict)
    pending: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.drain.failed == 0 and not self.refresh_errors


def _request_body(op_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    if op_type == OperationType.UPLOAD_PHOTO.value:
        return {"dataUrl": payload.get("dataUrl")}
    return payload


class SyncCoordinator:
    def __init__(
        self,
        queue: PendingOperationQueue,
        mirror: MirrorStore,
        api: RemoteApiClient,
        activity_log: Optional[SyncActivityLog] = None,
        send_idempotency_key: Optional[bool] = None,
    ):
        self.queue = queue
        self.mirror = mirror
        self.api = api
        self.activity_log = activity_log or SyncActivityLog()
        self.send_idempotency_key = (
            settings.SYNC_SEND_IDEMPOTENCY_KEY if send_idempotency_key is None else send_idempotency_key
        )

    async def replay(
        self,
        op_type: Union[OperationType, str],
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """Send one operation to the server. Raises RemoteApiError on failure."""
        type_value = op_type.value if isinstance(op_type, OperationType) else str(op_type)
        route = REPLAY_ROUTES.get(type_value)
        if route is None:
            self.activity_log.record(
                "replay", f"Unknown operation {type_value}", payload, status="error", error="unknown operation"
            )
            raise UnknownOperationError(f"Unknown operation type '{type_value}'")

        method, path = route
        key = idempotency_key if self.send_idempotency_key else None
        try:
            response = await self.api.request(method, path, json=_request_body(type_value, payload), idempotency_key=key)
        except RemoteApiError as exc:
            self.activity_log.record("replay", f"{type_value} failed", payload, status="error", error=str(exc))
            raise

        self.activity_log.record("replay", f"{type_value} sent", payload, status="success")
        return response

    async def submit_or_enqueue(self, op_type: Union[OperationType, str], payload: Dict[str, Any]) -> SubmitResult:
        """Try the request live; when the server is unreachable or refuses it, queue it."""
        idempotency_key = str(uuid.uuid4())
        try:
            response = await self.replay(op_type, payload, idempotency_key=idempotency_key)
        except RemoteApiError as exc:
            queue_id = self.queue.enqueue(op_type, payload, idempotency_key=idempotency_key)
            if exc.transient:
                logger.info("[sync] server unreachable, queued as #%s: %s", queue_id, exc)
            else:
                logger.warning("[sync] server rejected request (%s), queued as #%s: %s", exc.status_code, queue_id, exc)
            return SubmitResult(queued=True, queue_id=queue_id, error=str(exc), rejected=not exc.transient)
        return SubmitResult(queued=False, response=response)

    async def refresh_mirrors(
        self, kinds: Optional[Iterable[Union[MirrorKind, str]]] = None
    ) -> Tuple[Dict[str, int], Dict[str, str]]:
        refreshed: Dict[str, int] = {}
        errors: Dict[str, str] = {}
        selected = [MirrorKind(kind) for kind in kinds] if kinds is not None else list(MIRROR_ENDPOINTS)

        for kind in selected:
            path = MIRROR_ENDPOINTS.get(kind)
            if path is None:
                continue
            try:
                records = await self.api.get_collection(path)
                refreshed[kind.value] = self.mirror.replace_all(kind, records)
            except Exception as exc:
                errors[kind.value] = str(exc) or type(exc).__name__
                self.activity_log.record("refresh", f"{kind.value} refresh failed", status="error", error=errors[kind.value])
                continue
            self.activity_log.record("refresh", f"{kind.value} refreshed ({refreshed[kind.value]} rows)", status="success")

        return refreshed, errors

    async def sync_now(self, refresh: bool = True) -> SyncReport:
        started_at = datetime.now(timezone.utc)
        drain = await self.queue.drain(self.replay)
        report = SyncReport(drain=drain, started_at=started_at)

        if drain.skipped:
            logger.info("[sync] another sync is already running")
        elif refresh:
            report.refreshed, report.refresh_errors = await self.refresh_mirrors()

        report.pending = self.queue.pending_count()
        report.finished_at = datetime.now(timezone.utc)
        self.activity_log.record(
            "sync",
            f"Sync finished: {drain.succeeded} sent, {drain.failed} failed, {report.pending} waiting",
            status="success" if report.ok else "error",
            error=None if report.ok else "some operations or refreshes failed",
        )
        return report
