"""Reminder dispatch background worker.

Periodically scans for due reminders (status PENDING and scheduled_for in the
past), and hands each one to the ReminderDispatcher. Failed deliveries are
recorded on the reminder and are not picked up again unless the retry policy
allows it.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from fieldtrack.config import settings
from fieldtrack.models_sqlalchemy import SessionLocal
from fieldtrack.models_sqlalchemy.models import Reminder, ReminderStatus
from fieldtrack.services.notifier import build_notifiers
from fieldtrack.services.reminders import ReminderDispatcher
from fieldtrack.utils.logger import logger


class ReminderWorker:
    def __init__(
        self,
        dispatcher: ReminderDispatcher,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        interval_seconds: Optional[int] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_backoff_seconds: Optional[int] = None,
    ):
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.REMINDER_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.REMINDER_BATCH_SIZE
        self.max_attempts = max_attempts or settings.REMINDER_MAX_ATTEMPTS
        self.retry_backoff_seconds = (
            retry_backoff_seconds
            if retry_backoff_seconds is not None
            else settings.REMINDER_RETRY_BACKOFF_SECONDS
        )
        self._cycle_running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _due_reminders(self, db: Session, now: datetime):
        return (
            db.query(Reminder)
            .filter(
                Reminder.status == ReminderStatus.PENDING.value,
                Reminder.scheduled_for <= now,
            )
            .order_by(Reminder.scheduled_for.asc(), Reminder.id.asc())
            .limit(self.batch_size)
            .all()
        )

    async def run_once(self) -> Dict[str, Any]:
        """Process one batch of due reminders.

        Returns immediately with status "skipped" when a previous cycle is
        still in flight.
        """
        now = datetime.now(timezone.utc)
        if self._cycle_running:
            logger.info("[reminder-worker] previous cycle still running; skipping")
            return {"status": "skipped", "processed": 0, "timestamp": now.isoformat()}

        self._cycle_running = True
        db = self.session_factory()
        processed = sent = failed = 0
        try:
            reminders = self._due_reminders(db, now)
            if not reminders:
                logger.info("[reminder-worker] no reminders due.")
                return {"status": "ok", "processed": 0, "sent": 0, "failed": 0, "timestamp": now.isoformat()}

            logger.info("[reminder-worker] found %d reminders due", len(reminders))

            for reminder in reminders:
                # Rows are re-read after each commit; skip ones cancelled meanwhile.
                if reminder.status != ReminderStatus.PENDING.value:
                    continue
                processed += 1
                try:
                    await self.dispatcher.dispatch(
                        db,
                        reminder,
                        max_attempts=self.max_attempts,
                        retry_backoff_seconds=self.retry_backoff_seconds,
                    )
                    sent += 1
                except Exception as exc:
                    failed += 1
                    logger.error("[reminder-worker] reminder %s dispatch failed: %s", reminder.id, exc)

            return {
                "status": "ok",
                "processed": processed,
                "sent": sent,
                "failed": failed,
                "timestamp": now.isoformat(),
            }

        except Exception as exc:
            logger.error("[reminder-worker] cycle failed: %s", exc, exc_info=True)
            db.rollback()
            return {
                "status": "error",
                "error": str(exc),
                "processed": processed,
                "sent": sent,
                "failed": failed,
                "timestamp": now.isoformat(),
            }

        finally:
            db.close()
            self._cycle_running = False

    async def run_forever(self) -> None:
        logger.info("[reminder-worker] loop started (interval=%s seconds)", self.interval_seconds)

        while True:
            try:
                result = await self.run_once()
                logger.info("[reminder-worker] cycle completed: %s", result)
            except Exception as exc:  # pragma: no cover - safety net
                logger.error("[reminder-worker] loop error: %s", exc, exc_info=True)

            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        """Schedule the polling loop on the running event loop. Idempotent."""
        if self.is_running:
            return self._task
        self._task = asyncio.get_running_loop().create_task(self.run_forever(), name="reminder-worker")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[reminder-worker] loop stopped")


def build_reminder_worker() -> ReminderWorker:
    dispatcher = ReminderDispatcher(build_notifiers(settings), settings.BUSINESS_NAME)
    return ReminderWorker(dispatcher)


async def run_reminder_worker_loop() -> None:
    await build_reminder_worker().run_forever()


if __name__ == "__main__":
    asyncio.run(run_reminder_worker_loop())
