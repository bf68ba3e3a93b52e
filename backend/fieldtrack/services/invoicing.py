"""Invoice numbering, estimate totals and payment-derived invoice status.

All monetary arithmetic goes through ``Decimal`` and is rounded to cents with
ROUND_HALF_UP. Floats are converted through ``str`` first so that ``0.1``
stays ``0.10`` and not the binary approximation.

Invoice numbers look like ``INV-0042``. The candidate is derived from the
highest invoice id and probed for conflicts, but the probe alone cannot be
trusted under concurrent writers: the ``uq_invoices_number`` constraint is the
real guarantee, and an insert that trips it is retried inside a SAVEPOINT with
the next candidate.
"""
from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from fieldtrack.config import settings
from fieldtrack.models_sqlalchemy.models import (
    Estimate,
    EstimateItem,
    EstimateStatus,
    Invoice,
    InvoiceStatus,
    Job,
    JobStatus,
    Payment,
    PaymentMethod,
)
from fieldtrack.services.notifier import NotificationResult, Notifiers, build_notifiers
from fieldtrack.utils.logger import logger


CENT = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0.00")

# Invoices due within this many days count as "due soon" in the summary.
_DUE_SOON_DAYS = 7


class InvoicingError(Exception):
    """Base class for invoicing failures."""


class InvoiceNotFound(InvoicingError):
    pass


class EstimateNotFound(InvoicingError):
    pass


class EstimateStateError(InvoicingError):
    pass


class InvoiceStateError(InvoicingError):
    pass


class InvalidPaymentError(InvoicingError):
    pass


class DuplicateInvoiceNumber(InvoicingError):
    def __init__(self, number: str):
        super().__init__(f"Invoice number {number} is already in use")
        self.number = number


class InvoiceNumberExhausted(InvoicingError):
    def __init__(self, attempts: int):
        super().__init__(f"Could not allocate a unique invoice number after {attempts} attempts")
        self.attempts = attempts


@dataclass(frozen=True)
class EstimateTotals:
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


@dataclass
class ConversionResult:
    job: Job
    invoice: Invoice
    estimate: Estimate
    totals: EstimateTotals


@dataclass
class InvoiceSummary:
    total_amount: Decimal = ZERO
    collected: Decimal = ZERO
    outstanding: Decimal = ZERO
    draft_amount: Decimal = ZERO
    overdue_count: int = 0
    due_soon_count: int = 0
    part_paid_count: int = 0
    paid_count: int = 0
    total_count: int = 0


# ---------------------------------------------------------------------------
# Money helpers
# ---------------------------------------------------------------------------

def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Not a numeric amount: {value!r}") from exc


def to_money(value: Any) -> Decimal:
    """Quantize ``value`` to cents (ROUND_HALF_UP)."""
    return _to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _item_field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        if name == "unit_price":
            return item.get("unit_price", item.get("unitPrice"))
        return item.get(name)
    return getattr(item, name, None)


def line_total(qty: Any, unit_price: Any) -> Decimal:
    return to_money(_to_decimal(qty) * _to_decimal(unit_price))


def compute_totals(items: Iterable[Any], tax_rate: Any) -> EstimateTotals:
    """Compute subtotal, tax and total for a set of line items.

    ``items`` may be ORM ``EstimateItem`` rows or plain dicts with ``qty`` and
    ``unit_price`` (``unitPrice`` is accepted too). ``tax_rate`` is a percent.
    """
    raw_subtotal = sum(
        (_to_decimal(_item_field(it, "qty")) * _to_decimal(_item_field(it, "unit_price")) for it in items),
        Decimal("0"),
    )
    subtotal = to_money(raw_subtotal)
    rate = _to_decimal(tax_rate)
    tax = subtotal * rate / HUNDRED
    return EstimateTotals(
        subtotal=subtotal,
        tax_amount=to_money(tax),
        total=to_money(subtotal + tax),
    )


# ---------------------------------------------------------------------------
# Estimates
# ---------------------------------------------------------------------------

def _get_estimate(db: Session, estimate_id: int) -> Estimate:
    estimate = (
        db.query(Estimate)
        .options(selectinload(Estimate.items))
        .filter(Estimate.id == estimate_id)
        .one_or_none()
    )
    if estimate is None:
        raise EstimateNotFound(f"Estimate {estimate_id} not found")
    return estimate


def _apply_totals(estimate: Estimate) -> EstimateTotals:
    totals = compute_totals(estimate.items, estimate.tax_rate)
    estimate.subtotal = totals.subtotal
    estimate.total = totals.total
    return totals


def _new_item(description: str, qty: Any, unit_price: Any, unit: Optional[str]) -> EstimateItem:
    if not description or not str(description).strip():
        raise ValueError("Estimate item description is required")
    qty_d = to_money(qty if qty is not None else 1)
    price_d = to_money(unit_price)
    if qty_d < 0 or price_d < 0:
        raise ValueError("Estimate item qty and unit price must be non-negative")
    return EstimateItem(description=str(description).strip(), qty=qty_d, unit_price=price_d, unit=unit)


def create_estimate(
    db: Session,
    *,
    lead_id: Optional[int] = None,
    customer_id: Optional[int] = None,
    jobsite_id: Optional[int] = None,
    tax_rate: Any = 0,
    items: Optional[List[dict]] = None,
    customer_email: Optional[str] = None,
    customer_phone: Optional[str] = None,
) -> Estimate:
    estimate = Estimate(
        lead_id=lead_id,
        customer_id=customer_id,
        jobsite_id=jobsite_id,
        tax_rate=to_money(tax_rate),
        status=EstimateStatus.DRAFT.value,
        customer_email=customer_email,
        customer_phone=customer_phone,
    )
    for raw in items or []:
        estimate.items.append(
            _new_item(
                raw.get("description"),
                raw.get("qty", 1),
                _item_field(raw, "unit_price"),
                raw.get("unit"),
            )
        )
    _apply_totals(estimate)
    try:
        db.add(estimate)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(estimate)
    return estimate


def add_estimate_item(
    db: Session,
    estimate_id: int,
    description: str,
    qty: Any,
    unit_price: Any,
    unit: Optional[str] = None,
) -> EstimateItem:
    """Append a line item and recompute the estimate totals.

    Approved estimates have frozen totals and reject new items.
    """
    estimate = _get_estimate(db, estimate_id)
    if estimate.status == EstimateStatus.APPROVED.value:
        raise EstimateStateError(f"Estimate {estimate_id} is approved; totals are frozen")

    item = _new_item(description, qty, unit_price, unit)
    try:
        estimate.items.append(item)
        _apply_totals(estimate)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(item)
    return item


# ---------------------------------------------------------------------------
# Invoice numbering
# ---------------------------------------------------------------------------

def format_invoice_number(counter: int) -> str:
    return f"{settings.INVOICE_NUMBER_PREFIX}{counter:0{settings.INVOICE_NUMBER_WIDTH}d}"


def _number_taken(db: Session, number: str) -> bool:
    return db.query(Invoice.id).filter(Invoice.number == number).first() is not None


def _is_number_conflict(exc: IntegrityError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return "uq_invoices_number" in message or "invoices.number" in message


def next_invoice_number(db: Session, start: Optional[int] = None) -> Tuple[int, str]:
    """Return ``(counter, number)`` for the first free candidate.

    Starts at ``start`` or at ``max(invoices.id) + 1``. Only a hint: another
    writer may claim the same number before we insert.
    """
    if start is None:
        latest_id = db.query(func.max(Invoice.id)).scalar()
        start = (latest_id or 0) + 1
    counter = start
    candidate = format_invoice_number(counter)
    while _number_taken(db, candidate):
        counter += 1
        candidate = format_invoice_number(counter)
    return counter, candidate


def create_invoice(
    db: Session,
    amount: Any,
    *,
    job_id: Optional[int] = None,
    number: Optional[str] = None,
    status: str = InvoiceStatus.DRAFT.value,
    issued_at: Optional[date] = None,
    due_at: Optional[date] = None,
    max_attempts: Optional[int] = None,
    commit: bool = True,
) -> Invoice:
    """Insert an invoice, allocating a unique number when none is given.

    With ``commit=False`` the invoice is flushed into the caller's open
    transaction, which is how estimate conversion keeps all of its writes in
    one unit.
    """
    explicit = str(number).strip() if number else ""
    attempts = max_attempts or settings.INVOICE_NUMBER_MAX_ATTEMPTS
    value = to_money(amount)
    if value < 0:
        raise InvoicingError("Invoice amount must be non-negative")

    if explicit and _number_taken(db, explicit):
        raise DuplicateInvoiceNumber(explicit)

    counter: Optional[int] = None
    for attempt in range(1, attempts + 1):
        if explicit:
            candidate = explicit
        else:
            counter, candidate = next_invoice_number(db, counter)

        invoice = Invoice(
            job_id=job_id,
            number=candidate,
            amount=value,
            status=status,
            issued_at=issued_at,
            due_at=due_at,
        )
        try:
            with db.begin_nested():
                db.add(invoice)
        except IntegrityError as exc:
            if not _is_number_conflict(exc):
                raise
            if explicit:
                raise DuplicateInvoiceNumber(explicit) from exc
            logger.warning(
                "[invoicing] Invoice number %s taken concurrently (attempt %d/%d); retrying",
                candidate,
                attempt,
                attempts,
            )
            counter += 1
            continue

        if commit:
            db.commit()
            db.refresh(invoice)
        logger.info("[invoicing] Created invoice %s amount=%s job_id=%s", candidate, value, job_id)
        return invoice

    raise InvoiceNumberExhausted(attempts)


# ---------------------------------------------------------------------------
# Payments and status
# ---------------------------------------------------------------------------

def collected_amount(invoice: Invoice) -> Decimal:
    return to_money(sum((_to_decimal(p.amount) for p in invoice.payments), Decimal("0")))


def invoice_balance(invoice: Invoice) -> Decimal:
    return max(to_money(invoice.amount) - collected_amount(invoice), ZERO)


def derive_invoice_status(current: Optional[str], amount: Any, collected: Any) -> str:
    """Status as a pure function of the invoice amount and collected payments.

    VOID invoices keep their status. With no payments DRAFT/SENT are left as
    they are.
    """
    current = current or InvoiceStatus.DRAFT.value
    if current == InvoiceStatus.VOID.value:
        return current
    amount_d = to_money(amount)
    collected_d = to_money(collected)
    balance = max(amount_d - collected_d, ZERO)
    if balance <= 0:
        return InvoiceStatus.PAID.value
    if collected_d > 0:
        return InvoiceStatus.PART_PAID.value
    return current


def recompute_invoice_status(invoice: Invoice) -> str:
    invoice.status = derive_invoice_status(invoice.status, invoice.amount, collected_amount(invoice))
    return invoice.status


def record_payment(
    db: Session,
    invoice_id: int,
    amount: Any,
    method: str = PaymentMethod.CARD.value,
    received_at: Optional[date] = None,
) -> Tuple[Payment, Invoice]:
    invoice = (
        db.query(Invoice)
        .options(selectinload(Invoice.payments))
        .filter(Invoice.id == invoice_id)
        .one_or_none()
    )
    if invoice is None:
        raise InvoiceNotFound(f"Invoice {invoice_id} not found")
    if invoice.status == InvoiceStatus.VOID.value:
        raise InvoiceStateError(f"Invoice {invoice.number} is void")

    try:
        value = to_money(amount)
    except ValueError as exc:
        raise InvalidPaymentError(str(exc)) from exc
    if value <= 0:
        raise InvalidPaymentError("Payment amount must be greater than zero")

    method_value = (method or PaymentMethod.OTHER.value).upper()
    if method_value not in PaymentMethod.__members__:
        raise InvalidPaymentError(f"Unsupported payment method {method}")

    payment = Payment(amount=value, method=method_value, received_at=received_at or date.today())
    try:
        invoice.payments.append(payment)
        previous = invoice.status
        recompute_invoice_status(invoice)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(invoice)
    logger.info(
        "[invoicing] Payment %s recorded on %s: status %s -> %s",
        value,
        invoice.number,
        previous,
        invoice.status,
    )
    return payment, invoice


# ---------------------------------------------------------------------------
# Estimate -> Job conversion
# ---------------------------------------------------------------------------

def convert_estimate_to_job(
    db: Session,
    estimate_id: int,
    *,
    job_name: Optional[str] = None,
    signature: Optional[str] = None,
    issued_on: Optional[date] = None,
) -> ConversionResult:
    """Approve an estimate and turn it into a Job with its first Invoice.

    Totals, job, invoice and the estimate approval are committed together;
    any failure rolls back all of them.
    """
    try:
        estimate = _get_estimate(db, estimate_id)
        if estimate.status in (EstimateStatus.APPROVED.value, EstimateStatus.REJECTED.value):
            raise EstimateStateError(f"Estimate {estimate_id} is {estimate.status}")

        totals = _apply_totals(estimate)

        job = Job(
            estimate_id=estimate.id,
            customer_id=estimate.customer_id,
            jobsite_id=estimate.jobsite_id,
            name=job_name or f"Estimate #{estimate.id}",
            status=JobStatus.SCHEDULED.value,
        )
        db.add(job)
        db.flush()

        issued = issued_on or date.today()
        invoice = create_invoice(
            db,
            totals.total,
            job_id=job.id,
            issued_at=issued,
            due_at=issued + timedelta(days=settings.INVOICE_DUE_DAYS),
            commit=False,
        )

        estimate.status = EstimateStatus.APPROVED.value
        if signature:
            estimate.signature_data_url = signature

        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "[invoicing] Estimate %s converted: job=%s invoice=%s total=%s",
        estimate_id,
        job.id,
        invoice.number,
        totals.total,
    )
    return ConversionResult(job=job, invoice=invoice, estimate=estimate, totals=totals)


async def notify_estimate_approved(
    result: ConversionResult,
    notifiers: Optional[Notifiers] = None,
) -> Dict[str, NotificationResult]:
    """Tell the customer their estimate was approved, by email and/or SMS.

    Runs after the conversion has committed. A channel that fails is logged
    and reported as ``sent=False``; it never undoes the approval.
    """
    notifiers = notifiers or build_notifiers()
    estimate = result.estimate
    total = to_money(result.totals.total)
    outcomes: Dict[str, NotificationResult] = {}

    if estimate.customer_email:
        try:
            outcomes["email"] = await notifiers.email.send_email(
                estimate.customer_email,
                f"Estimate #{estimate.id} approved",
                f"<p>Your estimate has been approved.</p><p>Total: <b>${total}</b></p>",
            )
        except Exception as exc:
            logger.warning("[invoicing] Approval email for estimate %s failed: %s", estimate.id, exc)
            outcomes["email"] = NotificationResult(sent=False, reason=str(exc) or type(exc).__name__)

    if estimate.customer_phone:
        try:
            outcomes["sms"] = await notifiers.sms.send_sms(
                estimate.customer_phone,
                f"Estimate #{estimate.id} approved. Total: ${total}",
            )
        except Exception as exc:
            logger.warning("[invoicing] Approval SMS for estimate %s failed: %s", estimate.id, exc)
            outcomes["sms"] = NotificationResult(sent=False, reason=str(exc) or type(exc).__name__)

    for channel, outcome in outcomes.items():
        if not outcome.sent:
            logger.warning(
                "[invoicing] Approval %s for estimate %s not sent: %s", channel, estimate.id, outcome.reason
            )
    return outcomes


async def approve_estimate(
    db: Session,
    estimate_id: int,
    notifiers: Optional[Notifiers] = None,
    **options: Any,
) -> ConversionResult:
    """Convert the estimate, then send the approval notice to the customer."""
    result = convert_estimate_to_job(db, estimate_id, **options)
    await notify_estimate_approved(result, notifiers)
    return result


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def _load_invoices(db: Session) -> List[Invoice]:
    return (
        db.query(Invoice)
        .options(selectinload(Invoice.payments))
        .order_by(Invoice.issued_at.desc(), Invoice.id.desc())
        .all()
    )


def invoice_summary(db: Session, today: Optional[date] = None) -> InvoiceSummary:
    today = today or date.today()
    summary = InvoiceSummary()
    for invoice in _load_invoices(db):
        amount = to_money(invoice.amount)
        collected = collected_amount(invoice)
        balance = max(amount - collected, ZERO)
        status = invoice.status or InvoiceStatus.DRAFT.value

        summary.total_count += 1
        summary.total_amount += amount
        summary.collected += collected
        if status == InvoiceStatus.PAID.value:
            summary.paid_count += 1
        elif status == InvoiceStatus.PART_PAID.value:
            summary.part_paid_count += 1
        elif status == InvoiceStatus.DRAFT.value:
            summary.draft_amount += amount

        if status in (InvoiceStatus.PAID.value, InvoiceStatus.VOID.value):
            continue
        summary.outstanding += balance
        if invoice.due_at and balance > 0:
            days_left = (invoice.due_at - today).days
            if days_left < 0:
                summary.overdue_count += 1
            elif days_left <= _DUE_SOON_DAYS:
                summary.due_soon_count += 1
    return summary


def export_invoices_csv(db: Session) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(
        ["Invoice Number", "Job ID", "Status", "Issued At", "Due At", "Amount", "Collected", "Outstanding"]
    )
    for invoice in _load_invoices(db):
        collected = collected_amount(invoice)
        writer.writerow(
            [
                invoice.number,
                invoice.job_id if invoice.job_id is not None else "",
                invoice.status or InvoiceStatus.DRAFT.value,
                invoice.issued_at.isoformat() if invoice.issued_at else "",
                invoice.due_at.isoformat() if invoice.due_at else "",
                f"{to_money(invoice.amount)}",
                f"{collected}",
                f"{invoice_balance(invoice)}",
            ]
        )
    return buffer.getvalue()
