from sqlalchemy import Column, Integer, String, DateTime, Date, Text, ForeignKey, Boolean, Index, Numeric, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from . import Base


class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    ESTIMATOR = "ESTIMATOR"
    SUPERVISOR = "SUPERVISOR"
    TECH = "TECH"


class LeadStatus(str, enum.Enum):
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    ESTIMATING = "ESTIMATING"
    CLOSED_LOST = "CLOSED_LOST"
    CONVERTED = "CONVERTED"


class JobStatus(str, enum.Enum):
    NEW = "NEW"
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    ON_HOLD = "ON_HOLD"
    DONE = "DONE"
    COMPLETED = "COMPLETED"
    PAID = "PAID"
    CLOSED = "CLOSED"


class EstimateStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PART_PAID = "PART_PAID"
    PAID = "PAID"
    VOID = "VOID"


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    CHECK = "CHECK"
    CARD = "CARD"
    ACH = "ACH"
    OTHER = "OTHER"


class ReminderChannel(str, enum.Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    PUSH = "PUSH"


class ReminderStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    full_name = Column(String(255), nullable=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    role = Column(String(20), nullable=False, default=UserRole.TECH.value)
    active = Column(Boolean, nullable=False, default=True)
    # Expo push token registered by the mobile client
    push_token = Column(String(255), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    email = Column(String(255), nullable=True)
    billing_address = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    jobsites = relationship("Jobsite", back_populates="customer")


class Jobsite(Base):
    __tablename__ = "jobsites"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    address_line1 = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    state = Column(String(50), nullable=True)
    zip = Column(String(20), nullable=True)

    customer = relationship("Customer", back_populates="jobsites")


class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    jobsite_id = Column(Integer, ForeignKey("jobsites.id"), nullable=True)
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=LeadStatus.NEW.value)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Estimate(Base):
    __tablename__ = "estimates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    jobsite_id = Column(Integer, ForeignKey("jobsites.id"), nullable=True)

    subtotal = Column(Numeric(10, 2), nullable=False, default=0)
    tax_rate = Column(Numeric(5, 2), nullable=False, default=0)  # percent
    total = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default=EstimateStatus.DRAFT.value)

    signature_data_url = Column(Text, nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship(
        "EstimateItem",
        back_populates="estimate",
        cascade="all, delete-orphan",
        order_by="EstimateItem.id",
    )
    customer = relationship("Customer")
    jobsite = relationship("Jobsite")


class EstimateItem(Base):
    __tablename__ = "estimate_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    estimate_id = Column(Integer, ForeignKey("estimates.id", ondelete="CASCADE"), nullable=False, index=True)
    description = Column(String(255), nullable=False)
    qty = Column(Numeric(10, 2), nullable=False, default=1)
    unit = Column(String(20), nullable=True)
    unit_price = Column(Numeric(10, 2), nullable=False)

    estimate = relationship("Estimate", back_populates="items")


class Job(Base):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    estimate_id = Column(Integer, ForeignKey("estimates.id"), nullable=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    jobsite_id = Column(Integer, ForeignKey("jobsites.id"), nullable=True)
    name = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=JobStatus.SCHEDULED.value)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    customer = relationship("Customer")
    jobsite = relationship("Jobsite")
    invoices = relationship("Invoice", back_populates="job")


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=True, index=True)
    # Uniqueness is enforced here, not by the numbering probe.
    number = Column(String(50), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default=InvoiceStatus.DRAFT.value)
    issued_at = Column(Date, nullable=True)
    due_at = Column(Date, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    job = relationship("Job", back_populates="invoices")
    payments = relationship(
        "Payment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="Payment.id",
    )

    __table_args__ = (
        UniqueConstraint("number", name="uq_invoices_number"),
        Index("idx_invoices_status_due", "status", "due_at"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    method = Column(String(20), nullable=False, default=PaymentMethod.OTHER.value)
    received_at = Column(Date, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    invoice = relationship("Invoice", back_populates="payments")


class Reminder(Base):
    __tablename__ = "reminders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    channel = Column(String(10), nullable=False, default=ReminderChannel.EMAIL.value)
    template = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=True)  # contact overrides: email, phone, pushToken

    scheduled_for = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), nullable=False, default=ReminderStatus.PENDING.value)
    last_error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    job = relationship("Job")
    user = relationship("User")

    __table_args__ = (
        Index("idx_reminders_status_scheduled", "status", "scheduled_for"),
    )
