"""Invoice lifecycle, VAT arithmetic and the monthly billing batch.

Every invoice snapshots the VAT rate in force when it is created. Amounts are
``Decimal`` throughout and rounded half-up to cents, so
``total_amount == amount + round(amount * vat_rate / 100, 2)`` holds for every
row. Overdue is never set by hand: ``reclassify_overdue`` flips pending
invoices whose due date has passed, and runs before every listing.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping

from flask import current_app
from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from werkzeug.datastructures import FileStorage

from .access import SYSTEM_PRINCIPAL, Principal, require_approved, require_super_admin
from .audit import record_activity
from .email_service import MailDeliveryError, notify, send_templated_email
from .errors import (
    AlreadyPaid,
    DuplicateInvoiceNumber,
    ExternalServiceError,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from .extensions import db
from .forms import InvoiceForm, LineItemForm, PaymentForm, PaymentNoticeForm, load_form
from .models import (
    Asset,
    AssetStatus,
    BillingCycle,
    Invoice,
    InvoiceLineItem,
    InvoicePayment,
    InvoiceStatus,
    Package,
    User,
)
from .settings_service import currency, get_settings, payment_instructions as _bank_details, payment_terms_days, vat_rate
from .storage import INVOICE_FOLDER, StoredFile, discard, read_bytes, save_upload
from .store import commit, get_or_404, next_sequence_value

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")
PDF_EXTENSIONS = {"pdf"}

PAYMENT_STEPS = (
    "Transfer the invoice total to the IBAN above.",
    "Use the invoice number as the transfer reference.",
    "Email the transfer receipt to the contact address.",
    "Payments are recorded within one business day.",
)


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def calculate_totals(amount, rate) -> tuple[Decimal, Decimal, Decimal]:
    """Return ``(amount, vat_amount, total_amount)`` rounded half-up to cents."""
    net = _money(amount)
    if net < 0:
        raise ValidationError("Amount cannot be negative.", errors={"amount": ["Amount cannot be negative."]})
    vat = (net * Decimal(str(rate)) / Decimal("100")).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    return net, vat, net + vat


def billing_period(cycle: BillingCycle, on: date) -> str:
    if cycle == BillingCycle.YEARLY:
        return f"{on.year}"
    if cycle == BillingCycle.QUARTERLY:
        return f"{on.year}-Q{(on.month - 1) // 3 + 1}"
    return f"{on.year}-{on.month:02d}"


CYCLE_MONTHS = {BillingCycle.MONTHLY: 1, BillingCycle.QUARTERLY: 3, BillingCycle.YEARLY: 12}


def monthly_cost(user_id: int) -> Decimal:
    """Monthly equivalent of a client's active subscriptions at current package prices."""
    rows = (
        db.session.query(Package.price, Package.billing_cycle)
        .select_from(Asset)
        .join(Package, Asset.package_id == Package.id)
        .filter(Asset.user_id == user_id, Asset.status == AssetStatus.ACTIVE, Asset.archived_at.is_(None))
        .all()
    )
    return _money(sum((Decimal(str(price)) / CYCLE_MONTHS[cycle] for price, cycle in rows), Decimal("0")))


def _number_prefix() -> str:
    return current_app.config.get("INVOICE_NUMBER_PREFIX", "INV")


def allocate_invoice_number(on: date | None = None) -> str:
    """Next free ``{prefix}-{year}-{seq:05d}`` number; numbers already on an invoice are skipped."""
    year = (on or date.today()).year
    prefix = _number_prefix()
    while True:
        sequence = next_sequence_value(f"{prefix.lower()}-{year}")
        number = f"{prefix}-{year}-{sequence:05d}"
        if db.session.query(Invoice.id).filter_by(invoice_number=number).first() is None:
            return number
        logger.warning("Invoice number %s is already taken; skipping it", number)


def is_reserved_number(number: str) -> bool:
    """True for numbers in the automatic ``{prefix}-{year}-{seq}`` form."""
    pattern = rf"{re.escape(_number_prefix())}-\d{{4}}-\d+"
    return re.fullmatch(pattern, number, flags=re.IGNORECASE) is not None


def reclassify_overdue(today: date | None = None) -> int:
    """Mark pending invoices past their due date as overdue; returns the count."""
    cutoff = today or date.today()
    changed = (
        Invoice.query.filter(Invoice.status == InvoiceStatus.PENDING, Invoice.due_date < cutoff)
        .update(
            {
                Invoice.status: InvoiceStatus.OVERDUE,
                Invoice.version_id: Invoice.version_id + 1,
                Invoice.updated_at: datetime.utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.session.commit()
    if changed:
        logger.info("Reclassified %s invoice(s) as overdue", changed)
    return changed


def _line_items(items: Iterable[Mapping] | None) -> list[InvoiceLineItem]:
    rows: list[InvoiceLineItem] = []
    for position, raw in enumerate(items or []):
        try:
            form = load_form(LineItemForm, raw)
        except ValidationError as exc:
            raise ValidationError("Invalid line item.", errors={f"items[{position}]": exc.errors}) from exc
        quantity = Decimal(form.quantity.data if form.quantity.data is not None else 1)
        unit_price = _money(form.unit_price.data)
        rows.append(
            InvoiceLineItem(
                description=form.description.data.strip(),
                quantity=quantity,
                unit_price=unit_price,
                total=_money(quantity * unit_price),
                position=position,
            )
        )
    return rows


def _store_pdf(pdf: FileStorage | None) -> StoredFile | None:
    if pdf is None or not pdf.filename:
        return None
    return save_upload(pdf, folder=INVOICE_FOLDER, extensions=PDF_EXTENSIONS)


def _invoice_context(invoice: Invoice) -> dict[str, object]:
    settings = get_settings()
    return {
        "first_name": invoice.user.first_name,
        "invoice_number": invoice.invoice_number,
        "asset_name": invoice.asset.name if invoice.asset else "",
        "total_amount": f"{invoice.total_amount:.2f}",
        "currency": invoice.currency,
        "due_date": invoice.due_date.isoformat(),
        "bank_holder": settings.get("bank_holder") or "",
        "bank_iban": settings.get("bank_iban") or "",
        "company_name": settings.get("company_name") or "",
    }


def create_manual_invoice(
    actor: Principal,
    payload: Mapping,
    *,
    items: Iterable[Mapping] | None = None,
    pdf: FileStorage | None = None,
) -> Invoice:
    require_super_admin(actor)
    form = load_form(InvoiceForm, payload)
    user = get_or_404(User, form.user_id.data, "User")
    asset = get_or_404(Asset, form.asset_id.data, "Asset")
    if asset.user_id != user.id:
        raise ValidationError("Asset does not belong to the selected client.",
                              errors={"asset_id": ["Choose an asset owned by this client."]})

    line_items = _line_items(items)
    if line_items:
        amount = sum((item.total for item in line_items), Decimal("0.00"))
    elif form.amount.data is not None:
        amount = form.amount.data
    else:
        raise ValidationError("Amount is required.", errors={"amount": ["Enter an amount or add line items."]})

    requested_number = (form.invoice_number.data or "").strip()
    if requested_number and is_reserved_number(requested_number):
        raise ValidationError(
            f"Invoice number {requested_number} is reserved for automatic numbering.",
            errors={"invoice_number": ["Leave this empty to get the next automatic number."]},
        )
    if requested_number and Invoice.query.filter_by(invoice_number=requested_number).first():
        raise DuplicateInvoiceNumber(f"Invoice number {requested_number} is already in use.")
    stored = _store_pdf(pdf)
    invoice_number = requested_number or allocate_invoice_number()

    rate = vat_rate()
    net, vat, total = calculate_totals(amount, rate)

    invoice = Invoice(
        invoice_number=invoice_number,
        description=(form.description.data or "").strip() or None,
        amount=net,
        vat_rate=rate,
        vat_amount=vat,
        total_amount=total,
        currency=currency(),
        status=InvoiceStatus(form.status.data) if form.status.data else InvoiceStatus.PENDING,
        due_date=form.due_date.data,
        user_id=user.id,
        asset_id=asset.id,
        created_by_id=actor.id,
    )
    invoice.items.extend(line_items)
    if stored is not None:
        invoice.pdf_reference = stored.reference
        invoice.pdf_filename = stored.filename
        invoice.pdf_size = stored.size
    db.session.add(invoice)

    try:
        db.session.flush()
        record_activity(actor, "invoice_created", entity_type="invoice", entity_id=invoice.id,
                        new_values={"invoice_number": invoice.invoice_number, "total_amount": total,
                                    "status": invoice.status})
        commit("invoice", on_duplicate=DuplicateInvoiceNumber,
               duplicate_message=f"Invoice number {invoice_number} is already in use.")
    except IntegrityError as exc:
        db.session.rollback()
        if stored is not None:
            discard(stored.reference)
        raise DuplicateInvoiceNumber(f"Invoice number {invoice_number} is already in use.") from exc
    except Exception:
        if stored is not None:
            discard(stored.reference)
        raise

    logger.info("Invoice %s created for asset %s: %s %s", invoice.invoice_number, asset.id, total, invoice.currency)
    return invoice


def _period_invoice(asset_id: int, period: str) -> Invoice | None:
    return Invoice.query.filter_by(asset_id=asset_id, billing_period=period).first()


@dataclass
class BatchResult:
    period_date: date
    created: list[str] = field(default_factory=list)
    skipped: int = 0
    failed: list[int] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "date": self.period_date.isoformat(),
            "created": len(self.created),
            "skipped": self.skipped,
            "failed_asset_ids": list(self.failed),
            "invoice_numbers": list(self.created),
        }


def generate_monthly_invoices(actor: Principal = SYSTEM_PRINCIPAL, *, today: date | None = None) -> BatchResult:
    """Bill every active asset once per billing period at its package's current price.

    Safe to run repeatedly: ``(asset_id, billing_period)`` is unique, so an asset
    already billed for the period is skipped, including when a concurrent run
    wins the insert. Any other failed insert is reported in ``failed``.
    """
    require_super_admin(actor)
    issued_on = today or date.today()
    result = BatchResult(period_date=issued_on)

    rate = vat_rate()
    terms = payment_terms_days()
    default_currency = currency()

    candidates = (
        db.session.query(Asset.id, Asset.user_id, Package.price, Package.currency, Package.billing_cycle, Package.name)
        .join(Package, Asset.package_id == Package.id)
        .filter(Asset.status == AssetStatus.ACTIVE, Asset.archived_at.is_(None), Package.price > 0)
        .order_by(Asset.id.asc())
        .all()
    )

    for asset_id, user_id, price, package_currency, cycle, package_name in candidates:
        period = billing_period(cycle, issued_on)
        if _period_invoice(asset_id, period) is not None:
            result.skipped += 1
            continue

        net, vat, total = calculate_totals(price, rate)
        invoice_number = allocate_invoice_number(issued_on)
        invoice = Invoice(
            invoice_number=invoice_number,
            billing_period=period,
            description=f"{package_name} subscription ({period})",
            amount=net,
            vat_rate=rate,
            vat_amount=vat,
            total_amount=total,
            currency=package_currency or default_currency,
            status=InvoiceStatus.PENDING,
            due_date=issued_on + timedelta(days=terms),
            user_id=user_id,
            asset_id=asset_id,
            created_by_id=actor.id,
        )
        invoice.items.append(
            InvoiceLineItem(description=invoice.description, quantity=Decimal("1"), unit_price=net, total=net, position=0)
        )
        db.session.add(invoice)
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            if _period_invoice(asset_id, period) is not None:
                # Another run billed this (asset, period) first
                result.skipped += 1
            else:
                logger.error("Could not bill asset %s for %s: %s", asset_id, period, exc.orig)
                result.failed.append(asset_id)
            continue
        result.created.append(invoice_number)

        db.session.query(Asset).filter(Asset.id == asset_id).update(
            {Asset.next_due_date: invoice.due_date}, synchronize_session=False
        )
        db.session.commit()

    record_activity(None if actor.is_system else actor, "invoices_generated", entity_type="invoice",
                    new_values={"created": len(result.created), "skipped": result.skipped, "failed": result.failed})
    db.session.commit()
    logger.info("Monthly billing for %s: %s created, %s skipped", issued_on, len(result.created), result.skipped)
    return result


def issue_invoice(actor: Principal, invoice_id: int) -> Invoice:
    require_super_admin(actor)
    invoice = get_or_404(Invoice, invoice_id, "Invoice")
    if invoice.status == InvoiceStatus.PENDING:
        return invoice
    if invoice.status != InvoiceStatus.DRAFT:
        raise InvalidTransition(f"Only draft invoices can be issued; this one is {invoice.status.value}.")
    invoice.status = InvoiceStatus.PENDING
    record_activity(actor, "invoice_issued", entity_type="invoice", entity_id=invoice.id,
                    old_values={"status": InvoiceStatus.DRAFT}, new_values={"status": InvoiceStatus.PENDING})
    commit("invoice")
    logger.info("Invoice %s issued", invoice.invoice_number)
    return invoice


def record_manual_payment(actor: Principal, invoice_id: int, payload: Mapping) -> Invoice:
    """Record a payment and mark the invoice paid.

    The amount is stored as given; ``balance_due`` shows any shortfall or
    overpayment. A concurrent payment on the same invoice loses with
    ``ConflictingState`` through the version counter.
    """
    require_super_admin(actor)
    form = load_form(PaymentForm, payload)
    invoice = get_or_404(Invoice, invoice_id, "Invoice")
    if invoice.status == InvoiceStatus.PAID:
        raise AlreadyPaid(f"Invoice {invoice.invoice_number} is already paid.")
    if invoice.status == InvoiceStatus.DRAFT:
        raise InvalidTransition("Issue the draft invoice before recording a payment.")

    paid_on = form.payment_date.data or date.today()
    amount = _money(form.amount.data)
    previous = invoice.status
    invoice.payments.append(
        InvoicePayment(
            amount=amount,
            payment_date=paid_on,
            method=(form.payment_method.data or "").strip() or None,
            reference=(form.reference.data or "").strip() or None,
            notes=(form.notes.data or "").strip() or None,
            recorded_by_id=actor.id,
        )
    )
    invoice.status = InvoiceStatus.PAID
    invoice.paid_date = paid_on
    if form.payment_method.data:
        invoice.payment_method = form.payment_method.data.strip()
    if form.reference.data:
        invoice.payment_reference = form.reference.data.strip()

    record_activity(actor, "invoice_paid", entity_type="invoice", entity_id=invoice.id,
                    old_values={"status": previous},
                    new_values={"status": InvoiceStatus.PAID, "amount": amount, "paid_date": paid_on})
    commit("invoice")
    logger.info("Payment of %s recorded on invoice %s (%s -> paid)", amount, invoice.invoice_number, previous.value)

    notify(
        "payment_received",
        invoice.asset.billing_contact_email if invoice.asset else invoice.user.email,
        {
            "first_name": invoice.user.first_name,
            "invoice_number": invoice.invoice_number,
            "amount": f"{amount:.2f}",
            "currency": invoice.currency,
        },
    )
    return invoice


def submit_payment_notice(actor: Principal, invoice_id: int, payload: Mapping) -> Invoice:
    """Client-side notice of a bank transfer; an admin still has to record the payment."""
    require_approved(actor)
    invoice = _visible_invoice(actor, invoice_id)
    form = load_form(PaymentNoticeForm, payload)
    if invoice.status == InvoiceStatus.PAID:
        raise AlreadyPaid(f"Invoice {invoice.invoice_number} is already paid.")
    if invoice.status == InvoiceStatus.DRAFT:
        raise InvalidTransition("This invoice has not been issued yet.")

    invoice.payment_method = form.payment_method.data.strip()
    invoice.payment_reference = (form.payment_reference.data or "").strip() or None
    invoice.payment_notes = (form.payment_notes.data or "").strip() or None
    commit("invoice")
    logger.info("Payment notice submitted for invoice %s by user %s", invoice.invoice_number, actor.id)
    return invoice


def _visible_invoice(actor: Principal, invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None or (not actor.is_super_admin and invoice.user_id != actor.id):
        raise NotFound("Invoice not found.")
    return invoice


def list_invoices(
    actor: Principal,
    *,
    status: str | None = None,
    user_id: int | None = None,
    asset_id: int | None = None,
) -> list[Invoice]:
    require_approved(actor)
    reclassify_overdue()
    query = Invoice.query
    if actor.is_super_admin:
        if user_id is not None:
            query = query.filter(Invoice.user_id == user_id)
    else:
        # Drafts stay private to admins
        query = query.filter(Invoice.user_id == actor.id, Invoice.status != InvoiceStatus.DRAFT)
    if asset_id is not None:
        query = query.filter(Invoice.asset_id == asset_id)
    if status:
        try:
            query = query.filter(Invoice.status == InvoiceStatus(status))
        except ValueError as exc:
            raise ValidationError("Unknown status filter.", errors={"status": [status]}) from exc
    return query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()


def get_invoice(actor: Principal, invoice_id: int) -> Invoice:
    require_approved(actor)
    reclassify_overdue()
    invoice = _visible_invoice(actor, invoice_id)
    if invoice.status == InvoiceStatus.DRAFT and not actor.is_super_admin:
        raise NotFound("Invoice not found.")
    return invoice


def download_invoice_pdf(actor: Principal, invoice_id: int) -> tuple[Invoice, bytes]:
    invoice = get_invoice(actor, invoice_id)
    if not invoice.has_pdf:
        raise NotFound("No PDF has been uploaded for this invoice.")
    return invoice, read_bytes(invoice.pdf_reference)


def send_invoice_email(actor: Principal, invoice_id: int) -> Invoice:
    require_super_admin(actor)
    invoice = get_or_404(Invoice, invoice_id, "Invoice")
    if invoice.status == InvoiceStatus.DRAFT:
        raise InvalidTransition("Issue the draft invoice before emailing it.")

    recipient = invoice.asset.billing_contact_email if invoice.asset else invoice.user.email
    attachments = []
    if invoice.has_pdf:
        attachments.append((invoice.pdf_filename or f"{invoice.invoice_number}.pdf", read_bytes(invoice.pdf_reference),
                            "application/pdf"))
    try:
        send_templated_email("invoice_issued", recipient, _invoice_context(invoice), attachments=attachments)
    except MailDeliveryError as exc:
        logger.exception("Sending invoice %s to %s failed", invoice.invoice_number, recipient)
        raise ExternalServiceError(f"Invoice email could not be sent: {exc}") from exc

    record_activity(actor, "invoice_emailed", entity_type="invoice", entity_id=invoice.id,
                    new_values={"recipient": recipient})
    db.session.commit()
    logger.info("Invoice %s emailed to %s", invoice.invoice_number, recipient)
    return invoice


def invoice_statistics(actor: Principal, *, user_id: int | None = None) -> dict:
    require_approved(actor)
    reclassify_overdue()
    query = db.session.query(
        func.count(Invoice.id),
        *[
            func.sum(case((Invoice.status == status, 1), else_=0))
            for status in (InvoiceStatus.PAID, InvoiceStatus.PENDING, InvoiceStatus.OVERDUE)
        ],
        *[
            func.sum(case((Invoice.status == status, Invoice.total_amount), else_=0))
            for status in (InvoiceStatus.PAID, InvoiceStatus.PENDING, InvoiceStatus.OVERDUE)
        ],
    ).filter(Invoice.status != InvoiceStatus.DRAFT)
    if actor.is_super_admin:
        if user_id is not None:
            query = query.filter(Invoice.user_id == user_id)
    else:
        query = query.filter(Invoice.user_id == actor.id)

    total, paid, pending, overdue, total_paid, total_pending, total_overdue = query.one()
    return {
        "total_invoices": int(total or 0),
        "paid_invoices": int(paid or 0),
        "pending_invoices": int(pending or 0),
        "overdue_invoices": int(overdue or 0),
        "total_paid": _money(total_paid or 0),
        "total_pending": _money(total_pending or 0),
        "total_overdue": _money(total_overdue or 0),
    }


def payment_instructions(actor: Principal) -> dict:
    require_approved(actor)
    details = _bank_details()
    details["instructions"] = list(PAYMENT_STEPS)
    return details


__all__ = [
    "BatchResult",
    "calculate_totals",
    "billing_period",
    "monthly_cost",
    "is_reserved_number",
    "allocate_invoice_number",
    "reclassify_overdue",
    "create_manual_invoice",
    "generate_monthly_invoices",
    "issue_invoice",
    "record_manual_payment",
    "submit_payment_notice",
    "list_invoices",
    "get_invoice",
    "download_invoice_pdf",
    "send_invoice_email",
    "invoice_statistics",
    "payment_instructions",
]
