import logging

from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from ..conf import billing_setting
from ..events import emit, refund_processed, refund_requires_approval
from ..exceptions import GatewayError, RefundExceedsCapturedAmount
from ..gateways import FAILED, REQUIRES_ACTION, get_gateway
from ..models import (InvoiceLine, PaymentTransaction, Refund, RefundLossAudit,
                      VendorCost)
from ..money import ZERO, to_money
from .allocation import reverse_allocation

logger = logging.getLogger(__name__)


# ----------------------------
# Loss assessment
# ----------------------------
def refunded_lines(tx, lines=None):
    """Lines a refund is about: the named ones, else all lines the transaction paid for."""
    if lines:
        return list(lines)
    invoice_ids = set(
        tx.allocations.filter(is_reversal=False).values_list("invoice_id", flat=True))
    if tx.invoice_id:
        invoice_ids.add(tx.invoice_id)
    return list(InvoiceLine.objects.filter(invoice_id__in=invoice_ids))


def unrecoverable_vendor_cost(lines, when):
    """
    Base-currency vendor cost we cannot claw back at `when`: costs that are
    non-refundable or past their refund deadline.
    """
    total = ZERO
    costs = VendorCost.objects.filter(invoice_line__in=lines).exclude(status="refunded")
    for cost in costs:
        if not cost.is_recoverable_at(when):
            total += cost.base_amount
    return total


def _refund_invoice(tx):
    if tx.invoice_id:
        return tx.invoice
    row = tx.allocations.filter(is_reversal=False).order_by("-created_at", "-pk").first()
    return row.invoice if row else None


# ----------------------------
# Refund workflow
# ----------------------------
def process_refund(tx, amount, reason, lines=None, requested_by="", now=None, gateway=None):
    """
    Refund part or all of a captured transaction.

    The net loss is the unrecoverable vendor cost of the refunded lines,
    capped at the refunded base amount. Above the approval threshold the
    refund is held (RequiresApproval + pending audit); otherwise it goes to
    the gateway straight away. Returns (refund, audit_or_None).
    """
    now = now or timezone.now()
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Refund amount must be positive")

    with transaction.atomic():
        tx = PaymentTransaction.objects.select_for_update().get(pk=tx.pk)
        if not tx.is_settled:
            raise ValidationError(f"Transaction {tx.pk} is {tx.status} and cannot be refunded")

        # money already promised to refunds still waiting on approval
        reserved = (
            tx.refunds.filter(status__in=("pending", "requires_approval"))
            .aggregate(total=Sum("amount"))["total"] or ZERO
        )
        if amount > tx.refundable_amount - reserved:
            raise RefundExceedsCapturedAmount(
                f"Refund {amount} exceeds the {tx.refundable_amount - reserved} "
                f"{tx.currency_code} left on transaction {tx.pk}")

        invoice = _refund_invoice(tx)
        base_amount = to_money(amount * tx.exchange_rate)
        refund = Refund.objects.create(
            payment_transaction=tx,
            invoice=invoice,
            amount=amount,
            currency_code=tx.currency_code,
            base_amount=base_amount,
            reason=reason,
            requested_by=requested_by,
        )
        if lines:
            refund.lines.set(lines)

        unrecoverable = unrecoverable_vendor_cost(refunded_lines(tx, lines), now)
        net_loss = min(base_amount, unrecoverable)
        threshold = billing_setting("REFUND_LOSS_APPROVAL_THRESHOLD")
        needs_approval = net_loss > threshold

        audit = None
        if net_loss > 0:
            audit = RefundLossAudit.objects.create(
                refund=refund,
                invoice=invoice,
                currency_code=tx.base_currency_code,
                original_invoice_amount=invoice.base_total_amount if invoice else ZERO,
                refunded_amount=base_amount,
                vendor_cost_unrecoverable=unrecoverable,
                net_loss=net_loss,
                reason=reason,
                approval_status="pending" if needs_approval else "auto_approved",
                approved_at=None if needs_approval else now,
            )

        if needs_approval:
            refund.transition_to("requires_approval")
            refund.save(update_fields=["status"])
            emit(refund_requires_approval, sender=Refund, refund=refund, audit=audit)

    if needs_approval:
        logger.warning(
            "Refund %s on transaction %s held for approval: net loss %s %s over threshold %s",
            refund.pk, tx.pk, net_loss, tx.base_currency_code, threshold,
        )
        return refund, audit

    refund = execute_refund(refund, now=now, gateway=gateway)
    return refund, audit


def execute_refund(refund, now=None, gateway=None):
    """
    Send an approved refund to the gateway, then book it: refunded amount on
    the transaction, reversal rows on the invoices it paid. A gateway
    failure leaves the ledger untouched and marks the refund failed.
    """
    now = now or timezone.now()
    gateway = gateway or get_gateway()
    tx = refund.payment_transaction

    failure = ""
    try:
        result = gateway.refund(
            tx.gateway_transaction_id, refund.amount,
            timeout=billing_setting("GATEWAY_TIMEOUT_SECONDS"),
        )
        if result.status in (FAILED, REQUIRES_ACTION):
            failure = result.message or "Refund declined by gateway"
    except GatewayError as exc:
        failure = f"Gateway error: {exc}"
    except Exception as exc:
        logger.exception("Unexpected gateway failure refunding transaction %s", tx.pk)
        failure = f"Gateway failure: {exc}"

    if failure:
        refund.transition_to("failed")
        refund.failure_reason = failure[:255]
        refund.save(update_fields=["status", "failure_reason"])
        logger.warning("Refund %s on transaction %s failed: %s", refund.pk, tx.pk, failure)
        return refund

    with transaction.atomic():
        tx = PaymentTransaction.objects.select_for_update().get(pk=tx.pk)
        if refund.amount > tx.refundable_amount:
            logger.error(
                "Refund %s of %s exceeds refundable %s on transaction %s",
                refund.pk, refund.amount, tx.refundable_amount, tx.pk,
            )
            raise RefundExceedsCapturedAmount(
                f"Refund {refund.amount} exceeds the {tx.refundable_amount} left on transaction {tx.pk}")

        tx.refunded_amount += refund.amount
        tx.transition_to("refunded" if tx.refundable_amount == 0 else "partially_refunded")
        tx.save(update_fields=["refunded_amount", "status"])

        refund.transition_to("processed")
        refund.processed_at = now
        refund.save(update_fields=["status", "processed_at"])

        # the invoices it paid lose that money again
        reverse_allocation(tx, refund.amount, now=now)
        emit(refund_processed, sender=Refund, refund=refund)

    logger.info(
        "Refunded %s %s on transaction %s (refund %s)",
        refund.amount, refund.currency_code, tx.pk, refund.pk,
    )
    return refund


def approve_refund_loss(audit, approved_by, notes="", now=None, gateway=None):
    """Authorised sign-off on a held refund; the refund is then executed."""
    now = now or timezone.now()
    with transaction.atomic():
        audit = RefundLossAudit.objects.select_for_update().select_related("refund").get(pk=audit.pk)
        if audit.approval_status != "pending":
            raise ValidationError(f"Loss audit {audit.pk} is already {audit.approval_status}")
        if not approved_by:
            raise ValidationError("Approval needs the approver's identity")
        audit.approval_status = "approved"
        audit.approved_by = approved_by
        audit.approved_at = now
        if notes:
            audit.internal_notes = notes
        audit.save()

    logger.info("Refund loss %s approved by %s (net loss %s)", audit.pk, approved_by, audit.net_loss)
    return execute_refund(audit.refund, now=now, gateway=gateway)


def deny_refund_loss(audit, denied_by, reason, now=None):
    """Reject a held refund. The transaction is left exactly as it was."""
    now = now or timezone.now()
    with transaction.atomic():
        audit = RefundLossAudit.objects.select_for_update().select_related("refund").get(pk=audit.pk)
        if audit.approval_status != "pending":
            raise ValidationError(f"Loss audit {audit.pk} is already {audit.approval_status}")
        audit.approval_status = "denied"
        audit.approved_by = denied_by
        audit.approved_at = now
        audit.denial_reason = reason
        audit.save()

        refund = audit.refund
        refund.transition_to("denied")
        refund.failure_reason = reason[:255]
        refund.save(update_fields=["status", "failure_reason"])

    logger.info("Refund %s denied by %s: %s", refund.pk, denied_by, reason)
    return refund
