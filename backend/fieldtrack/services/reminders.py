"""Reminder lifecycle and delivery.

Status machine::

    PENDING --attempt--> SENT | FAILED
    PENDING --cancel--> CANCELLED
    FAILED | CANCELLED | PENDING --send now--> SENT | FAILED

SENT is terminal. FAILED and CANCELLED only move on "send now". The polling
worker only ever selects PENDING rows, so a FAILED reminder stays put until
someone presses "send now".
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from fieldtrack.config import settings
from fieldtrack.models_sqlalchemy.models import (
    Job,
    Reminder,
    ReminderChannel,
    ReminderStatus,
    User,
)
from fieldtrack.services.notifier import NotificationResult, Notifiers
from fieldtrack.services.reminder_templates import FOLLOW_UP, render_template
from fieldtrack.utils.logger import logger


class ReminderError(Exception):
    pass


class ReminderNotFound(ReminderError):
    pass


class ReminderStateError(ReminderError):
    pass


class ReminderDeliveryError(ReminderError):
    pass


_ALLOWED_TRANSITIONS = {
    ReminderStatus.PENDING.value: {
        ReminderStatus.SENT.value,
        ReminderStatus.FAILED.value,
        ReminderStatus.CANCELLED.value,
    },
    ReminderStatus.FAILED.value: {
        ReminderStatus.SENT.value,
        ReminderStatus.FAILED.value,
    },
    ReminderStatus.CANCELLED.value: {
        ReminderStatus.SENT.value,
        ReminderStatus.FAILED.value,
    },
    ReminderStatus.SENT.value: set(),
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """Normalize to UTC. Naive values are taken to be UTC already.

    SQLite drops the offset and keeps the wall-clock time, so everything is
    stored in UTC before it reaches the database.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _status_transition(reminder: Reminder, new_status: str) -> str:
    """Validate and apply a status transition. Returns the old status."""
    new_status = new_status.strip().upper()
    old_status = (reminder.status or ReminderStatus.PENDING.value).upper()

    if new_status not in ReminderStatus.__members__:
        raise ReminderStateError(f"Invalid reminder status '{new_status}'")
    if new_status not in _ALLOWED_TRANSITIONS.get(old_status, set()):
        raise ReminderStateError(
            f"Transition from {old_status} to {new_status} is not allowed for reminder {reminder.id}"
        )

    reminder.status = new_status
    return old_status


def _get_reminder(db: Session, reminder_id: int) -> Reminder:
    reminder = db.get(Reminder, reminder_id)
    if reminder is None:
        raise ReminderNotFound(f"Reminder {reminder_id} not found")
    return reminder


def create_reminder(
    db: Session,
    *,
    scheduled_for: datetime,
    channel: str = ReminderChannel.EMAIL.value,
    template: str = FOLLOW_UP,
    job_id: Optional[int] = None,
    user_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> Reminder:
    if scheduled_for is None:
        raise ReminderError("scheduled_for is required")
    channel_value = (channel or "").strip().upper()
    if channel_value not in ReminderChannel.__members__:
        raise ReminderError(f"Unsupported channel {channel}")

    reminder = Reminder(
        job_id=job_id,
        user_id=user_id,
        channel=channel_value,
        template=(template or FOLLOW_UP).strip().upper(),
        payload=payload or {},
        scheduled_for=_as_utc(scheduled_for),
        status=ReminderStatus.PENDING.value,
        attempts=0,
    )
    try:
        db.add(reminder)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(reminder)
    return reminder


def list_reminders(
    db: Session,
    *,
    status: Optional[str] = None,
    job_id: Optional[int] = None,
) -> List[Reminder]:
    query = db.query(Reminder)
    if status:
        query = query.filter(Reminder.status == status.upper())
    if job_id is not None:
        query = query.filter(Reminder.job_id == job_id)
    return query.order_by(Reminder.scheduled_for.asc(), Reminder.id.asc()).all()


def cancel_reminder(db: Session, reminder_id: int) -> Reminder:
    reminder = _get_reminder(db, reminder_id)
    previous = _status_transition(reminder, ReminderStatus.CANCELLED.value)
    db.commit()
    logger.info("[reminders] Reminder %s cancelled (was %s)", reminder.id, previous)
    return reminder


class ReminderDispatcher:
    """Resolves the recipient, renders the template and calls the notifier."""

    def __init__(self, notifiers: Notifiers, business_name: Optional[str] = None):
        self.notifiers = notifiers
        self.business_name = business_name or settings.BUSINESS_NAME

    async def deliver(self, db: Session, reminder: Reminder) -> NotificationResult:
        job = db.get(Job, reminder.job_id) if reminder.job_id else None
        customer = job.customer if job else None
        jobsite = job.jobsite if job else None
        message = render_template(reminder.template, job, customer, jobsite, self.business_name)
        payload = reminder.payload or {}
        channel = (reminder.channel or "").upper()

        if channel == ReminderChannel.EMAIL.value:
            to = payload.get("email") or (customer.email if customer else None)
            if not to:
                raise ReminderDeliveryError("No email available for reminder")
            result = await self.notifiers.email.send_email(to, message.subject, message.html)
        elif channel == ReminderChannel.SMS.value:
            to = payload.get("phone") or (customer.phone if customer else None)
            if not to:
                raise ReminderDeliveryError("No phone available for reminder")
            result = await self.notifiers.sms.send_sms(to, message.sms)
        elif channel == ReminderChannel.PUSH.value:
            user = db.get(User, reminder.user_id) if reminder.user_id else None
            token = payload.get("pushToken") or (user.push_token if user else None)
            if not token:
                raise ReminderDeliveryError("No push token available for reminder")
            result = await self.notifiers.push.send_push(
                token, message.subject, message.push, {"jobId": reminder.job_id}
            )
        else:
            raise ReminderDeliveryError(f"Unsupported channel {reminder.channel}")

        if not result.sent:
            raise ReminderDeliveryError(result.reason or "Delivery was not confirmed by provider")
        return result

    async def dispatch(
        self,
        db: Session,
        reminder: Reminder,
        *,
        max_attempts: int = 1,
        retry_backoff_seconds: int = 0,
    ) -> NotificationResult:
        """Attempt delivery once and persist the outcome.

        On failure the error is stored in ``last_error`` and re-raised. With
        ``max_attempts > 1`` a failure that still has attempts left puts the
        reminder back to PENDING, rescheduled with exponential backoff.
        """
        reminder.attempts = (reminder.attempts or 0) + 1
        try:
            result = await self.deliver(db, reminder)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            reminder.last_error = error
            if reminder.attempts < max_attempts and reminder.status == ReminderStatus.PENDING.value:
                delay = retry_backoff_seconds * (2 ** (reminder.attempts - 1))
                reminder.scheduled_for = _now_utc() + timedelta(seconds=delay)
                logger.warning(
                    "[reminders] Reminder %s attempt %d/%d failed, retry in %ss: %s",
                    reminder.id,
                    reminder.attempts,
                    max_attempts,
                    delay,
                    error,
                )
            else:
                _status_transition(reminder, ReminderStatus.FAILED.value)
                logger.error("[reminders] Reminder %s failed: %s", reminder.id, error)
            db.commit()
            raise

        _status_transition(reminder, ReminderStatus.SENT.value)
        reminder.last_error = None
        db.commit()
        logger.info("[reminders] Reminder %s sent via %s", reminder.id, reminder.channel)
        return result


async def send_now(db: Session, reminder_id: int, dispatcher: ReminderDispatcher) -> Reminder:
    """Manual resend from any non-SENT state. Delivery errors propagate."""
    reminder = _get_reminder(db, reminder_id)
    if reminder.status == ReminderStatus.SENT.value:
        raise ReminderStateError(f"Reminder {reminder_id} was already sent")
    await dispatcher.dispatch(db, reminder)
    return reminder
