from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    DEBUG: bool = False

    # DATABASE_URL points at the server database (Postgres in production).
    # SQLite is accepted for local development and tests.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./fieldtrack.db")

    # Shown in reminder subjects and signatures.
    BUSINESS_NAME: str = "Precision Tracker"

    # Reminder worker
    REMINDER_INTERVAL_SECONDS: int = 60
    REMINDER_BATCH_SIZE: int = 25
    # Automatic delivery attempts per reminder. 1 means a failed reminder goes
    # straight to FAILED and waits for a manual "send now".
    REMINDER_MAX_ATTEMPTS: int = 1
    REMINDER_RETRY_BACKOFF_SECONDS: int = 300

    # Invoice numbering
    INVOICE_NUMBER_PREFIX: str = "INV-"
    INVOICE_NUMBER_WIDTH: int = 4
    INVOICE_NUMBER_MAX_ATTEMPTS: int = 10
    INVOICE_DUE_DAYS: int = 14

    # Email (SMTP). When SMTP_HOST is empty the email notifier reports
    # sent=False instead of raising.
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_USE_TLS: bool = True
    SMTP_FROM: str = "no-reply@precisiontracker.local"

    # SMS (Twilio REST API)
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_FROM: Optional[str] = None

    # Push (Expo push service)
    EXPO_PUSH_URL: str = "https://exp.host/--/api/v2/push/send"

    NOTIFIER_TIMEOUT_SECONDS: float = 10.0

    # Client-side (mobile) sync settings
    API_BASE_URL: str = "http://localhost:4000"
    API_TIMEOUT_SECONDS: float = 15.0
    OFFLINE_DB_PATH: str = "./offline.db"
    # Replay attempts before a queued operation is dead-lettered. 0 disables
    # dead-lettering and keeps retrying forever.
    SYNC_MAX_ATTEMPTS: int = 10
    # Send the per-operation Idempotency-Key header on replay. Off until the
    # server honours it.
    SYNC_SEND_IDEMPOTENCY_KEY: bool = False

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def sms_enabled(self) -> bool:
        return bool(self.TWILIO_ACCOUNT_SID and self.TWILIO_AUTH_TOKEN and self.TWILIO_FROM)

    @property
    def smtp_enabled(self) -> bool:
        return bool(self.SMTP_HOST)


settings = Settings()
