import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Sequence

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import F, Sum
from django.utils import timezone

from ..conf import billing_setting
from ..events import emit, invoice_issued
from ..exceptions import DuplicateBillingPeriod, InvalidTransition
from ..models import Invoice, InvoiceLine, InvoicePayment
from ..money import ZERO, allocate_proportionally, to_money
from .coupons import apply_coupon, record_usage
from .credit import add_credit
from .currency import resolve_rate
from .tax import resolve_tax

logger = logging.getLogger(__name__)


@dataclass
class LineItem:
    """A priced item handed to the compiler (order, quote or subscription cycle)."""
    description: str
    unit_price: Decimal
    quantity: Decimal = Decimal("1")
    line_type: str = "service"
    is_gateway_fee: bool = False

    @property
    def line_subtotal(self):
        return to_money(Decimal(self.quantity) * Decimal(self.unit_price))


def _validate_line_items(line_items):
    if not line_items:
        raise ValidationError("An invoice needs at least one line")
    for item in line_items:
        if Decimal(item.quantity) <= 0:
            raise ValidationError(f"Quantity must be positive ({item.description})")
        if Decimal(item.unit_price) < 0:
            raise ValidationError(f"Unit price cannot be negative ({item.description})")


# ----------------------------
# Balance / status bookkeeping
# ----------------------------
def status_for_balance(invoice, amount_paid, today):
    """Where an issued invoice belongs once amount_paid is known."""
    due = invoice.total_amount - amount_paid
    if due <= 0:
        return "paid"
    if invoice.due_date and invoice.due_date < today:
        return "overdue"
    if amount_paid > 0:
        return "partially_paid"
    return "issued"


def write_balance(invoice, amount_paid, now):
    """
    Version-checked write of amount_paid / amount_due / status.
    Returns False when another writer got there first; the caller re-reads
    and retries. On success the in-memory invoice is brought up to date.
    """
    new_status = status_for_balance(invoice, amount_paid, timezone.localdate(now))
    if not Invoice.can_transition(invoice.status, new_status):
        raise InvalidTransition(f"Cannot go from {invoice.status} to {new_status}")

    amount_due = invoice.total_amount - amount_paid
    paid_at = (invoice.paid_at or now) if new_status == "paid" else None
    updated = Invoice.objects.filter(pk=invoice.pk, version=invoice.version).update(
        amount_paid=amount_paid,
        amount_due=amount_due,
        status=new_status,
        paid_at=paid_at,
        version=F("version") + 1,
    )
    if not updated:
        return False

    invoice.amount_paid = amount_paid
    invoice.amount_due = amount_due
    invoice.status = new_status
    invoice.paid_at = paid_at
    invoice.version += 1
    return True


def allocation_total(invoice):
    return invoice.allocations.aggregate(total=Sum("amount_applied"))["total"] or ZERO


# ----------------------------
# Compile / issue
# ----------------------------
def compile_invoice(customer, line_items: Sequence[LineItem], coupon=None, display_currency=None,
                    as_of=None, jurisdiction=None, due_date=None, subscription=None,
                    period=None, notes=""):
    """
    Turn priced line items into an issued, immutable invoice.

    Everything that can fail on input (line validation, coupon, tax, rate
    lookup) is resolved before the first write. A subscription invoice for a
    period that already has a live invoice raises DuplicateBillingPeriod.
    """
    as_of = as_of or timezone.now()
    _validate_line_items(line_items)
    currency = (display_currency or customer.preferred_currency_id).upper()
    base_currency = billing_setting("BASE_CURRENCY")

    subtotals = [item.line_subtotal for item in line_items]

    # (2) coupon, spread over eligible lines
    application = None
    line_discounts = [ZERO for _ in line_items]
    if coupon is not None:
        application = apply_coupon(coupon, customer, line_items, currency, as_of)
        line_discounts = application.line_discounts

    # (3) tax, resolved once for the whole invoice
    tax = resolve_tax(customer, as_of, jurisdiction)
    taxable = [s - d for s, d in zip(subtotals, line_discounts)]
    tax_amount = to_money(sum(taxable, ZERO) * tax.rate)
    line_taxes = allocate_proportionally(tax_amount, taxable)

    # (4) totals
    subtotal = sum(subtotals, ZERO)
    discount_amount = sum(line_discounts, ZERO)
    total_amount = subtotal - discount_amount + tax_amount

    # (5) display -> base snapshot, pinned now
    snapshot = resolve_rate(currency, base_currency, as_of)

    period_start, period_end = period if period else (None, None)
    if subscription is not None and Invoice.objects.live_for_period(subscription, period_start).exists():
        logger.error(
            "Refusing second invoice for subscription %s period %s", subscription.pk, period_start)
        raise DuplicateBillingPeriod(
            f"Subscription {subscription.pk} already has an invoice for {period_start}")

    issue_date = timezone.localdate(as_of)
    if due_date is None:
        due_date = issue_date + timedelta(days=customer.payment_terms_days)

    try:
        with transaction.atomic():
            invoice = Invoice.objects.create(
                customer=customer,
                kind="invoice",
                subscription=subscription,
                period_start=period_start,
                period_end=period_end,
                currency_code=currency,
                base_currency_code=base_currency,
                exchange_rate=snapshot.effective_rate,
                exchange_rate_date=snapshot.effective_date,
                exchange_rate_ref=snapshot.source_rate,
                coupon=coupon,
                subtotal=subtotal,
                discount_amount=discount_amount,
                tax_rate=tax.rate,
                tax_name=tax.name,
                tax_authority=tax.authority,
                tax_amount=tax_amount,
                total_amount=total_amount,
                base_total_amount=snapshot.convert(total_amount),
                notes=notes,
            )
            for position, item in enumerate(line_items, start=1):
                InvoiceLine.objects.create(
                    invoice=invoice,
                    position=position,
                    description=item.description,
                    line_type=item.line_type,
                    is_gateway_fee=item.is_gateway_fee,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    line_subtotal=subtotals[position - 1],
                    discount=line_discounts[position - 1],
                    tax_rate=tax.rate,
                    tax_amount=line_taxes[position - 1],
                )
            if application is not None:
                record_usage(coupon, customer, invoice, application.discount_amount)

            # (6) issue: financial fields freeze from here on
            invoice.invoice_number = f"INV-{issue_date:%Y}-{invoice.pk:06d}"
            invoice.issue_date = issue_date
            invoice.due_date = due_date
            invoice.issued_at = as_of
            invoice.save()
            invoice.transition_to("issued")

            # fully discounted invoices have nothing to collect
            if invoice.total_amount == 0:
                write_balance(invoice, ZERO, as_of)

            emit(invoice_issued, sender=Invoice, invoice=invoice)
    except IntegrityError as exc:
        if subscription is not None:
            logger.error(
                "Concurrent invoice for subscription %s period %s", subscription.pk, period_start)
            raise DuplicateBillingPeriod(
                f"Subscription {subscription.pk} already has an invoice for {period_start}") from exc
        raise

    logger.info(
        "Issued invoice %s to customer %s: %s %s (base %s %s)",
        invoice.invoice_number, customer.pk, invoice.total_amount, currency,
        invoice.base_total_amount, base_currency,
    )
    return invoice


def issue_credit_note(invoice, line_items: Sequence[LineItem], reason, as_of=None):
    """
    Correct an issued invoice. The credit note is a new invoice with
    negative lines, the original's tax rate and rate snapshot; its value
    lands on the customer's credit balance right away.
    """
    as_of = as_of or timezone.now()
    _validate_line_items(line_items)
    if invoice.kind != "invoice" or invoice.status in ("draft", "void"):
        raise ValidationError("Credit notes can only correct issued invoices")

    subtotals = [-item.line_subtotal for item in line_items]
    subtotal = sum(subtotals, ZERO)
    tax_amount = to_money(subtotal * invoice.tax_rate)
    line_taxes = allocate_proportionally(tax_amount, subtotals)
    total_amount = subtotal + tax_amount

    already_credited = -(
        invoice.credit_notes.exclude(status="void")
        .aggregate(total=Sum("total_amount"))["total"] or ZERO
    )
    if already_credited - total_amount > invoice.total_amount:
        raise ValidationError(
            f"Credit notes would exceed the invoice total of {invoice.total_amount}")

    issue_date = timezone.localdate(as_of)
    with transaction.atomic():
        note = Invoice.objects.create(
            customer=invoice.customer,
            kind="credit_note",
            original_invoice=invoice,
            currency_code=invoice.currency_code,
            base_currency_code=invoice.base_currency_code,
            exchange_rate=invoice.exchange_rate,
            exchange_rate_date=invoice.exchange_rate_date,
            exchange_rate_ref=invoice.exchange_rate_ref,
            subtotal=subtotal,
            tax_rate=invoice.tax_rate,
            tax_name=invoice.tax_name,
            tax_authority=invoice.tax_authority,
            tax_amount=tax_amount,
            total_amount=total_amount,
            base_total_amount=to_money(total_amount * invoice.exchange_rate),
            # settled by the credit movement below, nothing is ever due
            amount_paid=total_amount,
            notes=reason,
        )
        for position, item in enumerate(line_items, start=1):
            InvoiceLine.objects.create(
                invoice=note,
                position=position,
                description=item.description,
                line_type=item.line_type,
                quantity=item.quantity,
                unit_price=-Decimal(item.unit_price),
                line_subtotal=subtotals[position - 1],
                tax_rate=invoice.tax_rate,
                tax_amount=line_taxes[position - 1],
            )
        note.invoice_number = f"CN-{issue_date:%Y}-{note.pk:06d}"
        note.issue_date = issue_date
        note.due_date = issue_date
        note.issued_at = as_of
        note.save()
        note.transition_to("issued")

        # Settle the note against the customer's credit balance
        ct = add_credit(
            invoice.customer, note.currency_code, -total_amount, "credit_note",
            invoice=note, description=f"Credit note for {invoice.invoice_number}: {reason}",
        )
        write_balance(note, note.amount_paid, as_of)
        InvoicePayment.objects.create(
            invoice=note,
            credit_transaction=ct,
            amount_applied=total_amount,
            invoice_balance_after=note.amount_due,
            is_full_payment=True,
        )

    logger.info(
        "Issued credit note %s against %s for %s %s",
        note.invoice_number, invoice.invoice_number, total_amount, note.currency_code,
    )
    return note


def void_invoice(invoice, reason, now=None):
    """Cancel an invoice that never received money. Paid ones need a credit note."""
    now = now or timezone.now()
    with transaction.atomic():
        invoice = Invoice.objects.select_for_update().get(pk=invoice.pk)
        if invoice.amount_paid != 0 or invoice.allocations.exists():
            raise ValidationError(
                "Invoices with payments cannot be voided; issue a credit note instead")
        if not Invoice.can_transition(invoice.status, "void") or invoice.status == "void":
            raise InvalidTransition(f"Cannot void an invoice in status {invoice.status}")

        updated = Invoice.objects.filter(pk=invoice.pk, version=invoice.version).update(
            status="void",
            voided_at=now,
            notes=(f"{invoice.notes}\n" if invoice.notes else "") + f"Voided: {reason}",
            version=F("version") + 1,
        )
        if not updated:
            raise ValidationError("Invoice changed while voiding, try again")
        invoice.refresh_from_db()

    logger.info("Voided invoice %s: %s", invoice.invoice_number or invoice.pk, reason)
    return invoice


def mark_overdue_invoices(today=None):
    """Flag open invoices whose due date has passed. Returns the count."""
    today = today or timezone.localdate()
    count = 0
    for invoice in Invoice.objects.overdue_candidates(today).only("pk", "version"):
        # version guard: a concurrent allocation wins, the next sweep retries
        count += Invoice.objects.filter(
            pk=invoice.pk, version=invoice.version, status__in=("issued", "partially_paid"),
        ).update(status="overdue", version=F("version") + 1)
    if count:
        logger.info("Marked %s invoices overdue", count)
    return count
