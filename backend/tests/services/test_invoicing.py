import re
import threading
from datetime import date
from decimal import Decimal
from itertools import permutations
from unittest.mock import AsyncMock, MagicMock

import pytest

from fieldtrack.models_sqlalchemy.models import Estimate, Invoice, Job
from fieldtrack.services import invoicing
from fieldtrack.services.notifier import NotificationResult, Notifiers
from fieldtrack.services.invoicing import (
    DuplicateInvoiceNumber,
    EstimateStateError,
    InvalidPaymentError,
    InvoiceNumberExhausted,
    InvoiceStateError,
    add_estimate_item,
    approve_estimate,
    compute_totals,
    convert_estimate_to_job,
    create_estimate,
    create_invoice,
    derive_invoice_status,
    export_invoices_csv,
    invoice_balance,
    invoice_summary,
    line_total,
    notify_estimate_approved,
    record_payment,
    to_money,
)


# --- Totals ---

def test_compute_totals_basic_estimate():
    totals = compute_totals(
        [{"qty": 1, "unit_price": 100}, {"qty": 2, "unit_price": 50}],
        10,
    )
    assert totals.subtotal == Decimal("200.00")
    assert totals.tax_amount == Decimal("20.00")
    assert totals.total == Decimal("220.00")


def test_compute_totals_avoids_float_drift():
    totals = compute_totals([{"qty": 1, "unit_price": 0.1}, {"qty": 1, "unit_price": 0.2}], 0)
    assert totals.subtotal == Decimal("0.30")
    assert str(totals.total) == "0.30"


def test_compute_totals_rounds_half_up_to_cents():
    totals = compute_totals([{"qty": 1, "unitPrice": "19.99"}], "8.25")
    # 19.99 * 8.25% = 1.649175
    assert totals.tax_amount == Decimal("1.65")
    assert totals.total == Decimal("21.64")


def test_line_total_and_to_money():
    assert line_total("3", "0.333") == Decimal("1.00")
    assert to_money("2.675") == Decimal("2.68")
    assert to_money(None) == Decimal("0.00")
    with pytest.raises(ValueError):
        to_money("twelve")


def test_compute_totals_empty_items():
    totals = compute_totals([], 10)
    assert totals.subtotal == Decimal("0.00")
    assert totals.total == Decimal("0.00")


# --- Estimates ---

def _sample_estimate(db):
    return create_estimate(
        db,
        tax_rate=10,
        items=[
            {"description": "Labor", "qty": 1, "unit_price": 100},
            {"description": "Material", "qty": 2, "unit_price": 50},
        ],
        customer_email="owner@example.com",
    )


def test_create_estimate_stores_totals(db):
    estimate = _sample_estimate(db)
    assert estimate.status == "DRAFT"
    assert estimate.subtotal == Decimal("200.00")
    assert estimate.total == Decimal("220.00")
    assert len(estimate.items) == 2


def test_add_estimate_item_recomputes_totals(db):
    estimate = _sample_estimate(db)
    add_estimate_item(db, estimate.id, "Disposal fee", 1, "30")

    reloaded = db.get(Estimate, estimate.id)
    db.refresh(reloaded)
    assert reloaded.subtotal == Decimal("230.00")
    assert reloaded.total == Decimal("253.00")


def test_add_estimate_item_rejects_blank_description(db):
    estimate = _sample_estimate(db)
    with pytest.raises(ValueError):
        add_estimate_item(db, estimate.id, "  ", 1, 10)


# --- Invoice numbering ---

def test_first_invoice_numbers_are_sequential(db):
    first = create_invoice(db, 100)
    second = create_invoice(db, 50)
    assert first.number == "INV-0001"
    assert second.number == "INV-0002"


def test_numbering_skips_numbers_already_taken(db):
    create_invoice(db, 100, number="INV-0002")
    invoice = create_invoice(db, 100)
    assert invoice.number == "INV-0003"


def test_numbering_retries_after_unique_conflict(db, monkeypatch):
    """Another writer claimed the candidate between probe and insert."""
    create_invoice(db, 100, number="INV-0002")
    monkeypatch.setattr(invoicing, "_number_taken", lambda _db, _number: False)

    invoice = create_invoice(db, 75)

    assert invoice.number == "INV-0003"
    numbers = sorted(n for (n,) in db.query(Invoice.number).all())
    assert numbers == ["INV-0002", "INV-0003"]


def test_numbering_gives_up_after_max_attempts(db, monkeypatch):
    create_invoice(db, 100, number="INV-0001")
    monkeypatch.setattr(invoicing, "_number_taken", lambda _db, _number: False)
    monkeypatch.setattr(invoicing, "format_invoice_number", lambda counter: "INV-0001")

    with pytest.raises(InvoiceNumberExhausted) as excinfo:
        create_invoice(db, 20, max_attempts=3)

    assert excinfo.value.attempts == 3
    assert db.query(Invoice).count() == 1


def test_explicit_duplicate_number_is_rejected(db):
    create_invoice(db, 10, number="INV-0100")
    with pytest.raises(DuplicateInvoiceNumber):
        create_invoice(db, 10, number="INV-0100")


def test_concurrent_invoice_creation_yields_distinct_numbers(session_factory):
    workers = 6
    barrier = threading.Barrier(workers)
    numbers, errors = [], []
    lock = threading.Lock()

    def create(amount):
        db = session_factory()
        try:
            barrier.wait()
            invoice = create_invoice(db, amount)
            with lock:
                numbers.append(invoice.number)
        except Exception as exc:
            with lock:
                errors.append(exc)
        finally:
            db.close()

    threads = [threading.Thread(target=create, args=(10 + i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(numbers) == workers
    assert len(set(numbers)) == workers
    assert all(re.fullmatch(r"INV-\d{4}", number) for number in numbers)


# --- Conversion ---

def test_convert_estimate_creates_job_and_invoice(db):
    estimate = _sample_estimate(db)

    result = convert_estimate_to_job(db, estimate.id, signature="data:image/png;base64,xyz", issued_on=date(2024, 1, 10))

    assert db.query(Job).count() == 1
    assert db.query(Invoice).count() == 1
    assert re.fullmatch(r"INV-\d{4}", result.invoice.number)
    assert result.invoice.amount == Decimal("220.00")
    assert result.invoice.job_id == result.job.id
    assert result.invoice.issued_at == date(2024, 1, 10)
    assert result.invoice.due_at == date(2024, 1, 24)
    assert result.job.estimate_id == estimate.id

    db.refresh(estimate)
    assert estimate.status == "APPROVED"
    assert estimate.subtotal == Decimal("200.00")
    assert estimate.total == Decimal("220.00")
    assert estimate.signature_data_url == "data:image/png;base64,xyz"


def test_convert_estimate_rolls_back_on_failure(db, monkeypatch):
    estimate = _sample_estimate(db)
    estimate_id = estimate.id

    def failing_create_invoice(*args, **kwargs):
        raise RuntimeError("numbering unavailable")

    monkeypatch.setattr(invoicing, "create_invoice", failing_create_invoice)

    with pytest.raises(RuntimeError):
        convert_estimate_to_job(db, estimate_id)

    assert db.query(Job).count() == 0
    assert db.query(Invoice).count() == 0
    assert db.get(Estimate, estimate_id).status == "DRAFT"


def test_convert_approved_estimate_twice_is_rejected(db):
    estimate = _sample_estimate(db)
    convert_estimate_to_job(db, estimate.id)

    with pytest.raises(EstimateStateError):
        convert_estimate_to_job(db, estimate.id)
    assert db.query(Invoice).count() == 1


def _approval_notifiers(email=None, sms=None):
    notifiers = Notifiers(email=MagicMock(), sms=MagicMock(), push=MagicMock())
    notifiers.email.send_email = AsyncMock(return_value=email or NotificationResult(sent=True, id="m-1"))
    notifiers.sms.send_sms = AsyncMock(return_value=sms or NotificationResult(sent=True, id="s-1"))
    return notifiers


@pytest.mark.asyncio
async def test_approve_estimate_notifies_customer(db):
    estimate = _sample_estimate(db)
    estimate.customer_phone = "+15550002222"
    db.commit()
    notifiers = _approval_notifiers()

    result = await approve_estimate(db, estimate.id, notifiers)

    assert result.estimate.status == "APPROVED"
    to, subject, html = notifiers.email.send_email.await_args.args
    assert to == "owner@example.com"
    assert subject == f"Estimate #{estimate.id} approved"
    assert "$220.00" in html
    notifiers.sms.send_sms.assert_awaited_once_with(
        "+15550002222", f"Estimate #{estimate.id} approved. Total: $220.00"
    )


@pytest.mark.asyncio
async def test_approval_notice_failure_keeps_conversion(db):
    estimate = _sample_estimate(db)
    notifiers = _approval_notifiers()
    notifiers.email.send_email.side_effect = ConnectionError("smtp down")

    result = await approve_estimate(db, estimate.id, notifiers)

    assert db.query(Invoice).count() == 1
    assert db.get(Estimate, estimate.id).status == "APPROVED"
    notifiers.sms.send_sms.assert_not_awaited()
    outcomes = await notify_estimate_approved(result, notifiers)
    assert outcomes["email"].sent is False
    assert outcomes["email"].reason == "smtp down"


def test_approved_estimate_rejects_new_items(db):
    estimate = _sample_estimate(db)
    convert_estimate_to_job(db, estimate.id)

    with pytest.raises(EstimateStateError):
        add_estimate_item(db, estimate.id, "Late addition", 1, 10)


# --- Payments ---

def test_partial_then_full_payment(db):
    invoice = create_invoice(db, "300.00")

    _, invoice = record_payment(db, invoice.id, "100.00")
    assert invoice.status == "PART_PAID"
    assert invoice_balance(invoice) == Decimal("200.00")

    _, invoice = record_payment(db, invoice.id, "200.00", method="cash")
    assert invoice.status == "PAID"
    assert invoice_balance(invoice) == Decimal("0.00")


def test_overpayment_leaves_zero_balance(db):
    invoice = create_invoice(db, 50)
    _, invoice = record_payment(db, invoice.id, 80)
    assert invoice.status == "PAID"
    assert invoice_balance(invoice) == Decimal("0.00")


@pytest.mark.parametrize("amount", [0, -5, "abc"])
def test_invalid_payment_amount_rejected(db, amount):
    invoice = create_invoice(db, 50)
    with pytest.raises(InvalidPaymentError):
        record_payment(db, invoice.id, amount)


def test_void_invoice_rejects_payment(db):
    invoice = create_invoice(db, 50, status="VOID")
    with pytest.raises(InvoiceStateError):
        record_payment(db, invoice.id, 10)


def test_status_is_independent_of_payment_order():
    payments = [Decimal("50"), Decimal("25"), Decimal("25")]
    for order in permutations(payments):
        assert derive_invoice_status("SENT", 100, sum(order)) == "PAID"
        assert derive_invoice_status("SENT", 100, sum(order[:2])) == "PART_PAID"


def test_status_derivation_is_idempotent():
    status = derive_invoice_status("SENT", 100, 40)
    assert derive_invoice_status(status, 100, 40) == status == "PART_PAID"


def test_status_without_payments_keeps_current():
    assert derive_invoice_status("SENT", 100, 0) == "SENT"
    assert derive_invoice_status(None, 100, 0) == "DRAFT"


def test_void_status_is_never_rederived():
    assert derive_invoice_status("VOID", 100, 100) == "VOID"


# --- Reporting ---

def test_invoice_summary_counts(db):
    today = date(2024, 3, 1)
    create_invoice(db, 100, issued_at=date(2024, 2, 1), due_at=date(2024, 2, 20))
    part = create_invoice(db, 300, status="SENT", issued_at=date(2024, 2, 10), due_at=date(2024, 3, 5))
    paid = create_invoice(db, 50, status="SENT", issued_at=date(2024, 2, 15), due_at=date(2024, 4, 30))
    create_invoice(db, 80, status="VOID", issued_at=date(2024, 2, 16))
    record_payment(db, part.id, 100)
    record_payment(db, paid.id, 50)

    summary = invoice_summary(db, today=today)

    assert summary.total_count == 4
    assert summary.total_amount == Decimal("530.00")
    assert summary.collected == Decimal("150.00")
    assert summary.outstanding == Decimal("300.00")
    assert summary.draft_amount == Decimal("100.00")
    assert summary.overdue_count == 1
    assert summary.due_soon_count == 1
    assert summary.part_paid_count == 1
    assert summary.paid_count == 1


def test_export_invoices_csv(db):
    create_invoice(db, 100, issued_at=date(2024, 1, 10), due_at=date(2024, 1, 24))

    lines = export_invoices_csv(db).strip().split("\n")

    assert lines[0] == (
        '"Invoice Number","Job ID","Status","Issued At","Due At","Amount","Collected","Outstanding"'
    )
    assert lines[1] == '"INV-0001","","DRAFT","2024-01-10","2024-01-24","100.00","0.00","100.00"'
