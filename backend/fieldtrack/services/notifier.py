"""Outbound notification channels used by reminder delivery.

Every channel returns a ``NotificationResult`` instead of raising for
provider-level rejections. Transport errors (DNS, timeouts, refused
connections) propagate as exceptions. Reminder delivery treats both a raised
exception and ``sent=False`` as a failed attempt.
"""
from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import httpx

from fieldtrack.config import Settings, settings as default_settings
from fieldtrack.utils.logger import logger


TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"
EXPO_TOKEN_PREFIX = "ExponentPushToken"


@dataclass
class NotificationResult:
    sent: bool
    id: Optional[str] = None
    reason: Optional[str] = None


class EmailNotifier:
    def __init__(self, cfg: Settings):
        self.host = cfg.SMTP_HOST
        self.port = cfg.SMTP_PORT
        self.username = cfg.SMTP_USER
        self.password = cfg.SMTP_PASSWORD
        self.use_tls = cfg.SMTP_USE_TLS
        self.from_address = cfg.SMTP_FROM
        self.timeout = cfg.NOTIFIER_TIMEOUT_SECONDS
        self.enabled = cfg.smtp_enabled

    def _send_blocking(self, to: str, subject: str, html: str) -> str:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to
        msg.attach(MIMEText(html, "html"))

        if self.port == 465:
            server = smtplib.SMTP_SSL(self.host, self.port, context=ssl.create_default_context(), timeout=self.timeout)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
        try:
            if self.username:
                server.login(self.username, self.password or "")
            server.sendmail(self.from_address, [to], msg.as_string())
        finally:
            server.quit()
        return msg.get("Message-ID") or f"smtp-{to}"

    async def send_email(self, to: str, subject: str, html: str) -> NotificationResult:
        if not self.enabled:
            return NotificationResult(sent=False, reason="smtp not configured")
        message_id = await asyncio.to_thread(self._send_blocking, to, subject, html)
        logger.info("[notifier] Email sent to %s", to)
        return NotificationResult(sent=True, id=message_id)


class SmsNotifier:
    def __init__(self, cfg: Settings, client: Optional[httpx.AsyncClient] = None):
        self.account_sid = cfg.TWILIO_ACCOUNT_SID
        self.auth_token = cfg.TWILIO_AUTH_TOKEN
        self.from_number = cfg.TWILIO_FROM
        self.timeout = cfg.NOTIFIER_TIMEOUT_SECONDS
        self.enabled = cfg.sms_enabled
        self._client = client

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.post(url, **kwargs)

    async def send_sms(self, to: str, body: str) -> NotificationResult:
        if not self.enabled:
            return NotificationResult(sent=False, reason="sms not configured")

        response = await self._post(
            TWILIO_MESSAGES_URL.format(account_sid=self.account_sid),
            auth=(self.account_sid, self.auth_token),
            data={"To": to, "From": self.from_number, "Body": body},
            timeout=self.timeout,
        )
        if response.status_code in (200, 201):
            sid = response.json().get("sid")
            logger.info("[notifier] SMS sent to %s (sid=%s)", to, sid)
            return NotificationResult(sent=True, id=sid)

        try:
            error_data = response.json()
        except ValueError:
            error_data = {}
        code = error_data.get("code")
        message = error_data.get("message") or f"HTTP {response.status_code}"
        reason = f"[{code}] {message}" if code else message
        logger.error("[notifier] Twilio rejected SMS to %s: %s", to, reason)
        return NotificationResult(sent=False, reason=reason)


class PushNotifier:
    def __init__(self, cfg: Settings, client: Optional[httpx.AsyncClient] = None):
        self.url = cfg.EXPO_PUSH_URL
        self.timeout = cfg.NOTIFIER_TIMEOUT_SECONDS
        self._client = client

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.post(url, **kwargs)

    async def send_push(
        self,
        token: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> NotificationResult:
        if not token:
            return NotificationResult(sent=False, reason="missing token")
        if not token.startswith(EXPO_TOKEN_PREFIX):
            return NotificationResult(sent=False, reason="invalid token")

        response = await self._post(
            self.url,
            json={"to": token, "title": title, "body": body, "data": data or {}},
            timeout=self.timeout,
        )
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        ticket = payload.get("data") or {}
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}
        if ticket.get("status") == "ok":
            return NotificationResult(sent=True, id=ticket.get("id"))
        return NotificationResult(sent=False, reason=ticket.get("message") or "Unknown push response")


@dataclass
class Notifiers:
    email: EmailNotifier
    sms: SmsNotifier
    push: PushNotifier


def build_notifiers(cfg: Optional[Settings] = None) -> Notifiers:
    cfg = cfg or default_settings
    return Notifiers(email=EmailNotifier(cfg), sms=SmsNotifier(cfg), push=PushNotifier(cfg))
