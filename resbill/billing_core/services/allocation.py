import logging
from decimal import Decimal
from typing import List

from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from ..conf import billing_setting
from ..exceptions import (AllocationExceedsTransaction, ConcurrentModification,
                          CurrencyMismatch, InvoiceAlreadyPaid)
from ..models import CreditTransaction, Invoice, InvoicePayment, PaymentTransaction
from ..money import ZERO, to_money
from .credit import add_credit, debit_credit, get_credit_balance
from .currency import resolve_rate
from .invoicing import write_balance

logger = logging.getLogger(__name__)

_CONFLICT = object()


# ----------------------------
# Per-invoice serialization
# ----------------------------
def _locked_balance_change(invoice_id, mutate):
    """
    Run `mutate(invoice)` against a freshly locked invoice row.
    mutate returns _CONFLICT when its version-checked write lost a race;
    the row is then re-read, up to ALLOCATION_MAX_RETRIES times.
    """
    retries = billing_setting("ALLOCATION_MAX_RETRIES")
    for attempt in range(1, retries + 1):
        invoice = Invoice.objects.select_for_update().get(pk=invoice_id)
        outcome = mutate(invoice)
        if outcome is not _CONFLICT:
            return outcome
        logger.warning("Version conflict on invoice %s (attempt %s/%s)", invoice_id, attempt, retries)

    logger.error("Giving up on invoice %s after %s version conflicts", invoice_id, retries)
    raise ConcurrentModification(f"Invoice {invoice_id} kept changing under allocation")


def _apply_to_invoice(invoice_id, amount, source_for, now):
    """
    Apply up to `amount` to one invoice. The amount actually applied is
    capped at what is due when the lock is held, so two writers can never
    both see the same balance. `source_for(invoice, applied)` returns the
    money source kwargs for the ledger row. Returns the InvoicePayment;
    raises InvoiceAlreadyPaid when nothing is due any more.
    """
    def mutate(invoice):
        if not invoice.is_open:
            raise InvoiceAlreadyPaid(f"Invoice {invoice.pk} has nothing due ({invoice.status})")
        applied = min(amount, invoice.amount_due)
        if not write_balance(invoice, invoice.amount_paid + applied, now):
            return _CONFLICT
        return InvoicePayment.objects.create(
            invoice=invoice,
            amount_applied=applied,
            invoice_balance_after=invoice.amount_due,
            is_full_payment=invoice.amount_due == 0,
            **source_for(invoice, applied),
        )

    return _locked_balance_change(invoice_id, mutate)


def available_to_allocate(tx) -> Decimal:
    """Captured amount net of refunds, allocations and overpayment credit."""
    # reversal rows are negative, so both sums are already net of refunds
    applied = tx.allocations.aggregate(total=Sum("amount_applied"))["total"] or ZERO
    credited = (
        CreditTransaction.objects.filter(
            payment_transaction=tx, type__in=("overpayment", "refund_reversal"))
        .aggregate(total=Sum("amount"))["total"] or ZERO
    )
    return tx.amount - tx.refunded_amount - applied - credited


# ----------------------------
# Allocation workflows
# ----------------------------
def allocate(tx, target_invoice=None, now=None) -> List[InvoicePayment]:
    """
    Apply a captured transaction to invoices.

    With a target, only that invoice is paid; otherwise the customer's open
    invoices in the transaction currency are paid oldest due date first.
    Whatever is left over becomes customer credit, never discarded.
    """
    now = now or timezone.now()
    rows = []
    with transaction.atomic():
        tx = PaymentTransaction.objects.select_for_update().get(pk=tx.pk)
        if not tx.is_settled:
            raise ValidationError(f"Transaction {tx.pk} is {tx.status}, only captured money can be allocated")

        available = available_to_allocate(tx)
        if available <= 0:
            logger.info("Transaction %s has nothing left to allocate", tx.pk)
            return rows

        if target_invoice is not None:
            if target_invoice.currency_code != tx.currency_code:
                raise CurrencyMismatch(
                    f"Transaction {tx.pk} is in {tx.currency_code}, "
                    f"invoice {target_invoice.pk} in {target_invoice.currency_code}")
            if target_invoice.customer_id != tx.customer_id:
                raise ValidationError("Transaction and invoice belong to different customers")
            if target_invoice.status in ("draft", "void") or target_invoice.kind != "invoice":
                raise ValidationError(f"Invoice {target_invoice.pk} cannot receive payments")
            targets = [target_invoice.pk]
        else:
            targets = list(
                Invoice.objects.for_customer(tx.customer).open()
                .filter(kind="invoice", currency_code=tx.currency_code)
                .oldest_due_first().values_list("pk", flat=True)
            )

        remaining = available

        def from_transaction(invoice, applied):
            return {"payment_transaction": tx}

        for invoice_id in targets:
            if remaining <= 0:
                break
            try:
                row = _apply_to_invoice(invoice_id, remaining, from_transaction, now)
            except InvoiceAlreadyPaid as exc:
                # logged no-op: the money goes to credit below
                logger.info("%s; transaction %s moves on", exc, tx.pk)
                continue
            rows.append(row)
            remaining -= row.amount_applied
            logger.info(
                "Allocated %s %s from transaction %s to invoice %s (balance %s)",
                row.amount_applied, tx.currency_code, tx.pk, invoice_id, row.invoice_balance_after,
            )

        applied_now = sum((r.amount_applied for r in rows), ZERO)
        if applied_now > available or remaining < 0:
            logger.error(
                "Allocation invariant broken for transaction %s: available %s, applied %s",
                tx.pk, available, applied_now,
            )
            raise AllocationExceedsTransaction(
                f"Transaction {tx.pk} would apply {applied_now} out of {available}")

        if remaining > 0:
            add_credit(
                tx.customer, tx.currency_code, remaining, "overpayment",
                payment_transaction=tx,
                description=f"Unallocated remainder of transaction {tx.pk}",
            )
    return rows


def apply_customer_credit(invoice, max_amount=None, now=None):
    """Pay an open invoice from the customer's credit balance, if any."""
    now = now or timezone.now()
    balance = get_credit_balance(invoice.customer, invoice.currency_code)
    amount = min(balance, max_amount) if max_amount is not None else balance
    if amount <= 0 or not invoice.is_open:
        return None

    def from_credit(locked_invoice, applied):
        ct = debit_credit(
            locked_invoice.customer, locked_invoice.currency_code, applied, "applied",
            invoice=locked_invoice,
            description=f"Applied to invoice {locked_invoice.invoice_number}",
        )
        return {"credit_transaction": ct}

    try:
        with transaction.atomic():
            row = _apply_to_invoice(invoice.pk, amount, from_credit, now)
    except InvoiceAlreadyPaid as exc:
        logger.info("%s; credit left untouched", exc)
        return None

    logger.info(
        "Applied %s %s customer credit to invoice %s",
        row.amount_applied, invoice.currency_code, invoice.invoice_number,
    )
    invoice.refresh_from_db()
    return row


def reverse_allocation(tx, amount, now=None):
    """
    Take refunded money back out of the ledger: newest allocations of the
    transaction first (negative rows, invoices re-open), then out of the
    credit the transaction created. Returns the reversal rows.
    """
    now = now or timezone.now()
    remaining = to_money(amount)
    rows = []
    with transaction.atomic():
        per_invoice = {}
        order = []
        for row in tx.allocations.order_by("-created_at", "-pk"):
            if row.invoice_id not in per_invoice:
                per_invoice[row.invoice_id] = ZERO
                order.append(row.invoice_id)
            per_invoice[row.invoice_id] += row.amount_applied

        for invoice_id in order:
            if remaining <= 0:
                break
            take = min(remaining, per_invoice[invoice_id])
            if take <= 0:
                continue

            def mutate(invoice, take=take):
                if not write_balance(invoice, invoice.amount_paid - take, now):
                    return _CONFLICT
                return InvoicePayment.objects.create(
                    invoice=invoice,
                    payment_transaction=tx,
                    amount_applied=-take,
                    invoice_balance_after=invoice.amount_due,
                    is_reversal=True,
                )

            reversal = _locked_balance_change(invoice_id, mutate)
            rows.append(reversal)
            remaining -= take
            logger.info(
                "Reversed %s from invoice %s for refund on transaction %s (now %s)",
                take, invoice_id, tx.pk, reversal.invoice.status,
            )

        if remaining > 0:
            ct = debit_credit(
                tx.customer, tx.currency_code, remaining, "refund_reversal",
                payment_transaction=tx, allow_partial=True,
                description=f"Refund on transaction {tx.pk}",
            )
            if ct is not None:
                remaining += ct.amount
            if remaining > 0:
                logger.warning(
                    "Refund on transaction %s exceeds its allocations and credit by %s %s",
                    tx.pk, remaining, tx.currency_code,
                )
    return rows


def record_payment(customer, amount, currency_code, gateway_transaction_id, invoice=None,
                   payment_method=None, fee_amount=ZERO, captured_at=None):
    """
    Book a captured payment reported by the gateway (e.g. from a webhook)
    and allocate it. Idempotent on gateway_transaction_id: a repeated
    notification returns the existing transaction and allocates nothing.
    """
    captured_at = captured_at or timezone.now()
    if gateway_transaction_id:
        existing = PaymentTransaction.objects.filter(
            gateway_transaction_id=gateway_transaction_id).first()
        if existing is not None:
            logger.info("Payment %s already recorded as transaction %s", gateway_transaction_id, existing.pk)
            return existing, []

    currency_code = currency_code.upper()
    base_currency = billing_setting("BASE_CURRENCY")
    snapshot = resolve_rate(currency_code, base_currency, captured_at)

    with transaction.atomic():
        tx = PaymentTransaction.objects.create(
            customer=customer,
            invoice=invoice,
            payment_method=payment_method,
            amount=to_money(amount),
            currency_code=currency_code,
            base_currency_code=base_currency,
            exchange_rate=snapshot.effective_rate,
            exchange_rate_ref=snapshot.source_rate,
            base_amount=snapshot.convert(amount),
            gateway_fee_amount=to_money(fee_amount),
            status="captured",
            gateway_transaction_id=gateway_transaction_id,
            captured_at=captured_at,
        )
        rows = allocate(tx, target_invoice=invoice, now=captured_at)

    logger.info("Recorded payment %s of %s %s for customer %s", tx.pk, tx.amount, currency_code, customer.pk)
    return tx, rows
