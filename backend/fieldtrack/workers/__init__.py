"""
Background workers for the fieldtrack backend.

Workers:
- reminder_worker: polls every REMINDER_INTERVAL_SECONDS (default 60) for due
  reminders and delivers them over email, SMS or push
"""

from fieldtrack.workers.reminder_worker import (
    ReminderWorker,
    build_reminder_worker,
    run_reminder_worker_loop,
)

__all__ = [
    "ReminderWorker",
    "build_reminder_worker",
    "run_reminder_worker_loop",
]
