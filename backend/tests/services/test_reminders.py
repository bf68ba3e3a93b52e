from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from fieldtrack.models_sqlalchemy.models import Customer, Job, User
from fieldtrack.services.notifier import NotificationResult, Notifiers
from fieldtrack.services.reminders import (
    ReminderDeliveryError,
    ReminderError,
    ReminderNotFound,
    ReminderStateError,
    ReminderDispatcher,
    _status_transition,
    cancel_reminder,
    create_reminder,
    list_reminders,
    send_now,
)


def make_notifiers(email=None, sms=None, push=None):
    ok = NotificationResult(sent=True, id="provider-1")
    notifiers = Notifiers(email=MagicMock(), sms=MagicMock(), push=MagicMock())
    notifiers.email.send_email = AsyncMock(return_value=email or ok)
    notifiers.sms.send_sms = AsyncMock(return_value=sms or ok)
    notifiers.push.send_push = AsyncMock(return_value=push or ok)
    return notifiers


@pytest.fixture
def job(db):
    customer = Customer(name="Dana Client", email="dana@example.com", phone="+15550001111")
    job = Job(name="Deck rebuild", customer=customer)
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


@pytest.fixture
def tech(db):
    user = User(email="tech@example.com", full_name="Sam Tech", push_token="ExponentPushToken[abc]")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _past():
    return datetime.now(timezone.utc) - timedelta(minutes=5)


class DummyReminder:
    def __init__(self, status):
        self.id = 1
        self.status = status


def test_reminder_status_transitions():
    reminder = DummyReminder("PENDING")
    assert _status_transition(reminder, "failed") == "PENDING"
    assert reminder.status == "FAILED"

    assert _status_transition(reminder, "sent") == "FAILED"
    assert reminder.status == "SENT"


def test_sent_is_terminal():
    reminder = DummyReminder("SENT")
    for target in ("PENDING", "FAILED", "CANCELLED"):
        with pytest.raises(ReminderStateError):
            _status_transition(reminder, target)


def test_unknown_status_rejected():
    with pytest.raises(ReminderStateError):
        _status_transition(DummyReminder("PENDING"), "snoozed")


def test_create_reminder_normalizes_fields(db, job):
    reminder = create_reminder(db, scheduled_for=_past(), channel="sms", template="invoice_follow_up", job_id=job.id)
    assert reminder.channel == "SMS"
    assert reminder.template == "INVOICE_FOLLOW_UP"
    assert reminder.status == "PENDING"
    assert reminder.attempts == 0


def test_create_reminder_rejects_unknown_channel(db):
    with pytest.raises(ReminderError):
        create_reminder(db, scheduled_for=_past(), channel="fax")


def test_create_reminder_stores_scheduled_for_in_utc(db, job):
    eastern = timezone(timedelta(hours=-5))
    reminder = create_reminder(db, scheduled_for=datetime(2024, 3, 1, 9, 30, tzinfo=eastern), job_id=job.id)
    db.refresh(reminder)
    assert reminder.scheduled_for.replace(tzinfo=None) == datetime(2024, 3, 1, 14, 30)


def test_create_reminder_treats_naive_time_as_utc(db, job):
    reminder = create_reminder(db, scheduled_for=datetime(2024, 3, 1, 9, 30), job_id=job.id)
    db.refresh(reminder)
    assert reminder.scheduled_for.replace(tzinfo=None) == datetime(2024, 3, 1, 9, 30)


def test_list_reminders_filters_by_status(db, job):
    keep = create_reminder(db, scheduled_for=_past(), job_id=job.id)
    other = create_reminder(db, scheduled_for=_past(), job_id=job.id)
    cancel_reminder(db, other.id)

    pending = list_reminders(db, status="pending")
    assert [r.id for r in pending] == [keep.id]
    assert len(list_reminders(db, job_id=job.id)) == 2


@pytest.mark.asyncio
async def test_email_goes_to_customer_address(db, job):
    notifiers = make_notifiers()
    dispatcher = ReminderDispatcher(notifiers, business_name="Acme Builders")
    reminder = create_reminder(db, scheduled_for=_past(), template="INVOICE_FOLLOW_UP", job_id=job.id)

    await dispatcher.dispatch(db, reminder)

    db.refresh(reminder)
    assert reminder.status == "SENT"
    assert reminder.attempts == 1
    assert reminder.last_error is None
    to, subject, html = notifiers.email.send_email.await_args.args
    assert to == "dana@example.com"
    assert subject == "Acme Builders - Invoice reminder"
    assert "Deck rebuild" in html


@pytest.mark.asyncio
async def test_payload_contact_overrides_customer(db, job):
    notifiers = make_notifiers()
    dispatcher = ReminderDispatcher(notifiers, business_name="Acme Builders")
    reminder = create_reminder(
        db, scheduled_for=_past(), job_id=job.id, payload={"email": "billing@example.com"}
    )

    await dispatcher.dispatch(db, reminder)

    assert notifiers.email.send_email.await_args.args[0] == "billing@example.com"


@pytest.mark.asyncio
async def test_sms_uses_customer_phone(db, job):
    notifiers = make_notifiers()
    dispatcher = ReminderDispatcher(notifiers, business_name="Acme Builders")
    reminder = create_reminder(db, scheduled_for=_past(), channel="SMS", job_id=job.id)

    await dispatcher.dispatch(db, reminder)

    to, body = notifiers.sms.send_sms.await_args.args
    assert to == "+15550001111"
    assert "Deck rebuild" in body


@pytest.mark.asyncio
async def test_push_uses_user_token(db, job, tech):
    notifiers = make_notifiers()
    dispatcher = ReminderDispatcher(notifiers, business_name="Acme Builders")
    reminder = create_reminder(db, scheduled_for=_past(), channel="PUSH", job_id=job.id, user_id=tech.id)

    await dispatcher.dispatch(db, reminder)

    token, title, body, data = notifiers.push.send_push.await_args.args
    assert token == "ExponentPushToken[abc]"
    assert data == {"jobId": job.id}


@pytest.mark.asyncio
async def test_missing_contact_marks_failed(db):
    notifiers = make_notifiers()
    dispatcher = ReminderDispatcher(notifiers, business_name="Acme Builders")
    reminder = create_reminder(db, scheduled_for=_past())

    with pytest.raises(ReminderDeliveryError):
        await dispatcher.dispatch(db, reminder)

    db.refresh(reminder)
    assert reminder.status == "FAILED"
    assert reminder.last_error == "No email available for reminder"
    notifiers.email.send_email.assert_not_awaited()


@pytest.mark.asyncio
async def test_unsent_result_counts_as_failure(db, job):
    notifiers = make_notifiers(email=NotificationResult(sent=False, reason="smtp not configured"))
    dispatcher = ReminderDispatcher(notifiers, business_name="Acme Builders")
    reminder = create_reminder(db, scheduled_for=_past(), job_id=job.id)

    with pytest.raises(ReminderDeliveryError):
        await dispatcher.dispatch(db, reminder)

    db.refresh(reminder)
    assert reminder.status == "FAILED"
    assert reminder.last_error == "smtp not configured"


@pytest.mark.asyncio
async def test_notifier_exception_is_recorded(db, job):
    notifiers = make_notifiers()
    notifiers.email.send_email.side_effect = ConnectionError("smtp down")
    dispatcher = ReminderDispatcher(notifiers, business_name="Acme Builders")
    reminder = create_reminder(db, scheduled_for=_past(), job_id=job.id)

    with pytest.raises(ConnectionError):
        await dispatcher.dispatch(db, reminder)

    db.refresh(reminder)
    assert reminder.status == "FAILED"
    assert reminder.attempts == 1
    assert reminder.last_error == "smtp down"


@pytest.mark.asyncio
async def test_retry_policy_reschedules_until_attempts_run_out(db, job):
    notifiers = make_notifiers(email=NotificationResult(sent=False, reason="mailbox full"))
    dispatcher = ReminderDispatcher(notifiers, business_name="Acme Builders")
    reminder = create_reminder(db, scheduled_for=_past(), job_id=job.id)
    before = datetime.now(timezone.utc).replace(tzinfo=None)

    with pytest.raises(ReminderDeliveryError):
        await dispatcher.dispatch(db, reminder, max_attempts=2, retry_backoff_seconds=60)

    db.refresh(reminder)
    assert reminder.status == "PENDING"
    assert reminder.attempts == 1
    assert reminder.last_error == "mailbox full"
    assert reminder.scheduled_for.replace(tzinfo=None) >= before + timedelta(seconds=59)

    with pytest.raises(ReminderDeliveryError):
        await dispatcher.dispatch(db, reminder, max_attempts=2, retry_backoff_seconds=60)

    db.refresh(reminder)
    assert reminder.status == "FAILED"
    assert reminder.attempts == 2


def test_cancel_pending_reminder(db, job):
    reminder = create_reminder(db, scheduled_for=_past(), job_id=job.id)
    cancel_reminder(db, reminder.id)
    db.refresh(reminder)
    assert reminder.status == "CANCELLED"

    with pytest.raises(ReminderStateError):
        cancel_reminder(db, reminder.id)


def test_cancel_missing_reminder(db):
    with pytest.raises(ReminderNotFound):
        cancel_reminder(db, 999)


@pytest.mark.asyncio
async def test_failed_reminder_cannot_be_cancelled(db, job):
    failing = make_notifiers(email=NotificationResult(sent=False, reason="timeout"))
    reminder = create_reminder(db, scheduled_for=_past(), job_id=job.id)
    with pytest.raises(ReminderDeliveryError):
        await ReminderDispatcher(failing, "Acme Builders").dispatch(db, reminder)

    with pytest.raises(ReminderStateError):
        cancel_reminder(db, reminder.id)
    db.refresh(reminder)
    assert reminder.status == "FAILED"


@pytest.mark.asyncio
async def test_send_now_recovers_failed_reminder(db, job):
    failing = make_notifiers(email=NotificationResult(sent=False, reason="timeout"))
    reminder = create_reminder(db, scheduled_for=_past(), job_id=job.id)
    with pytest.raises(ReminderDeliveryError):
        await ReminderDispatcher(failing, "Acme Builders").dispatch(db, reminder)

    working = make_notifiers()
    await send_now(db, reminder.id, ReminderDispatcher(working, "Acme Builders"))

    db.refresh(reminder)
    assert reminder.status == "SENT"
    assert reminder.attempts == 2
    assert reminder.last_error is None


@pytest.mark.asyncio
async def test_send_now_works_for_cancelled_reminder(db, job):
    reminder = create_reminder(db, scheduled_for=_past(), job_id=job.id)
    cancel_reminder(db, reminder.id)

    await send_now(db, reminder.id, ReminderDispatcher(make_notifiers(), "Acme Builders"))

    db.refresh(reminder)
    assert reminder.status == "SENT"


@pytest.mark.asyncio
async def test_send_now_rejects_sent_reminder(db, job):
    dispatcher = ReminderDispatcher(make_notifiers(), "Acme Builders")
    reminder = create_reminder(db, scheduled_for=_past(), job_id=job.id)
    await dispatcher.dispatch(db, reminder)

    with pytest.raises(ReminderStateError):
        await send_now(db, reminder.id, dispatcher)
