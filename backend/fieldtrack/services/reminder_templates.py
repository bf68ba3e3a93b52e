from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fieldtrack.models_sqlalchemy.models import Customer, Job, Jobsite


INVOICE_FOLLOW_UP = "INVOICE_FOLLOW_UP"
SCHEDULE_CONFIRMATION = "SCHEDULE_CONFIRMATION"
FOLLOW_UP = "FOLLOW_UP"

TEMPLATE_KEYS = (INVOICE_FOLLOW_UP, SCHEDULE_CONFIRMATION, FOLLOW_UP)


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    html: str
    sms: str
    push: str


def _job_name(job: Optional[Job]) -> str:
    if job is None:
        return "Job #"
    return job.name or f"Job #{job.id}"


def render_template(
    template_key: Optional[str],
    job: Optional[Job],
    customer: Optional[Customer],
    jobsite: Optional[Jobsite],
    business_name: str,
) -> RenderedMessage:
    """Render every channel variant of a reminder template.

    Unknown keys fall back to the generic follow-up.
    """
    key = (template_key or "").strip().upper()
    job_name = _job_name(job)
    greeting_name = (customer.name if customer and customer.name else None) or "there"

    if key == INVOICE_FOLLOW_UP:
        return RenderedMessage(
            subject=f"{business_name} - Invoice reminder",
            html=(
                f"<p>Hello {greeting_name},</p>"
                f"<p>This is a friendly reminder that payment for {job_name} is still outstanding.</p>"
                f"<p>Please reach out if you have any questions.</p>"
                f"<p>Thanks,<br/>{business_name}</p>"
            ),
            sms=f"Reminder: Invoice for {job_name} is still open. Reply here if you need help.",
            push=f"Invoice reminder for {job_name}",
        )

    if key == SCHEDULE_CONFIRMATION:
        location = (jobsite.address_line1 if jobsite and jobsite.address_line1 else None) or "the scheduled location"
        return RenderedMessage(
            subject=f"{business_name} - Appointment confirmation",
            html=(
                f"<p>Hi {greeting_name},</p>"
                f"<p>We're confirming your upcoming appointment for {job_name} at {location}.</p>"
                f"<p>See you soon!</p>"
            ),
            sms=f"Reminder: upcoming appointment for {job_name}. Reply to reschedule.",
            push=f"Upcoming appointment for {job_name}",
        )

    return RenderedMessage(
        subject=f"{business_name} - Follow up",
        html=(
            f"<p>Hello {greeting_name},</p>"
            f"<p>We're checking in about {job_name}. Let us know if you need anything else.</p>"
            f"<p>Best,<br/>{business_name}</p>"
        ),
        sms=f"Checking in on {job_name}. Need anything from us?",
        push=f"Follow up for {job_name}",
    )
