"""Embedded SQLite store used by the mobile client while offline.

Holds the pending-operation ``queue`` table and one ``*_cache`` table per
mirrored server collection. Cache columns use the API payload keys so records
fetched from the server can be written without renaming.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from fieldtrack.config import settings
from fieldtrack.utils.logger import logger

LocalBase = declarative_base()


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class PendingOperation(LocalBase):
    __tablename__ = "queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(50), nullable=False)
    payload = Column(Text, nullable=False)
    idempotency_key = Column(String(36), nullable=False, default=lambda: str(uuid.uuid4()))
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    dead_lettered = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)


class LeadCache(LocalBase):
    __tablename__ = "leads_cache"

    id = Column(Integer, primary_key=True, autoincrement=False)
    description = Column(Text)
    status = Column(String(30))


class JobCache(LocalBase):
    __tablename__ = "jobs_cache"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(255))
    status = Column(String(30))
    startDate = Column(String(40))
    endDate = Column(String(40))
    notes = Column(Text)


class TaskCache(LocalBase):
    __tablename__ = "tasks_cache"

    id = Column(Integer, primary_key=True, autoincrement=False)
    jobId = Column(Integer)
    title = Column(String(255))
    status = Column(String(30))
    dueDate = Column(String(40))


class CalendarEventCache(LocalBase):
    __tablename__ = "calendar_cache"

    id = Column(Integer, primary_key=True, autoincrement=False)
    jobId = Column(Integer)
    title = Column(String(255))
    startAt = Column(String(40))
    endAt = Column(String(40))


class EstimateCache(LocalBase):
    __tablename__ = "estimates_cache"

    id = Column(Integer, primary_key=True, autoincrement=False)
    leadId = Column(Integer)
    subtotal = Column(Float)
    taxRate = Column(Float)
    total = Column(Float)
    status = Column(String(30))


class EstimateItemCache(LocalBase):
    __tablename__ = "estimate_items_cache"

    id = Column(Integer, primary_key=True, autoincrement=False)
    estimateId = Column(Integer)
    description = Column(Text)
    qty = Column(Float)
    unitPrice = Column(Float)


class ChangeOrderCache(LocalBase):
    __tablename__ = "change_orders_cache"

    id = Column(Integer, primary_key=True, autoincrement=False)
    jobId = Column(Integer)
    title = Column(String(255))
    amountDelta = Column(Float)
    status = Column(String(30))


class UserCache(LocalBase):
    __tablename__ = "users_cache"

    id = Column(Integer, primary_key=True, autoincrement=False)
    email = Column(String(255))
    fullName = Column(String(255))
    role = Column(String(30))


def create_local_engine(path: Optional[str] = None) -> Engine:
    """Engine for the client database file. ``":memory:"`` keeps one shared connection."""
    path = path or settings.OFFLINE_DB_PATH
    if path == ":memory:":
        return create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})


class LocalStore:
    """Handle on the client database, built once at the composition root."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or settings.OFFLINE_DB_PATH
        self.engine = create_local_engine(self.path)
        self.session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def start(self) -> "LocalStore":
        LocalBase.metadata.create_all(bind=self.engine)
        logger.info("[local-store] opened %s", self.path)
        return self

    def stop(self) -> None:
        self.engine.dispose()
        logger.info("[local-store] closed %s", self.path)
