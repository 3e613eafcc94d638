import logging

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from ..conf import billing_setting
from ..models import VendorCost, VendorPayout
from ..money import ZERO, to_money
from .currency import convert_amount

logger = logging.getLogger(__name__)


# ----------------------------
# Vendor costs (AP side of an invoice line)
# ----------------------------
def attach_vendor_cost(invoice_line, vendor, amount, currency_code=None, is_refundable=False,
                       refund_deadline=None, status="committed", notes="", as_of=None):
    """Book what fulfilling a line costs us, with its own rate snapshot."""
    as_of = as_of or timezone.now()
    currency_code = (currency_code or vendor.currency_code).upper()
    base_currency = billing_setting("BASE_CURRENCY")
    base_amount, snapshot = convert_amount(amount, currency_code, base_currency, as_of)

    cost = VendorCost.objects.create(
        invoice_line=invoice_line,
        vendor=vendor,
        vendor_currency_code=currency_code,
        vendor_amount=to_money(amount),
        base_currency_code=base_currency,
        exchange_rate=snapshot.effective_rate,
        base_amount=base_amount,
        is_refundable=is_refundable,
        refund_deadline=refund_deadline,
        status=status,
        notes=notes,
    )
    logger.info(
        "Vendor cost %s %s (%s %s) from %s on line %s",
        cost.vendor_amount, currency_code, base_amount, base_currency, vendor, invoice_line.pk,
    )
    return cost


def vendor_cost_summary(invoice, as_of=None):
    """Revenue against vendor cost for one invoice, all in base currency."""
    as_of = as_of or timezone.now()
    costs = list(VendorCost.objects.filter(invoice_line__invoice=invoice))
    total_cost = sum((c.base_amount for c in costs), ZERO)
    unrecoverable = sum((c.base_amount for c in costs if not c.is_recoverable_at(as_of)), ZERO)
    return {
        "currency": invoice.base_currency_code,
        "revenue": invoice.base_total_amount,
        "vendor_cost": total_cost,
        "unrecoverable_cost": unrecoverable,
        "margin": invoice.base_total_amount - total_cost,
    }


# ----------------------------
# Vendor payouts
# ----------------------------
def schedule_vendor_payout(vendor, scheduled_date):
    """
    Batch the vendor's committed, unbatched costs (in the vendor's own
    currency) into one scheduled payout. Returns None when nothing is owed.
    """
    with transaction.atomic():
        costs = list(
            VendorCost.objects.select_for_update().filter(
                vendor=vendor,
                status="committed",
                payout__isnull=True,
                vendor_currency_code=vendor.currency_code,
            ).exclude(invoice_line__invoice__status="void")
        )
        if not costs:
            logger.info("Nothing to pay out to %s", vendor)
            return None

        payout = VendorPayout.objects.create(
            vendor=vendor,
            currency_code=vendor.currency_code,
            total_amount=sum((c.vendor_amount for c in costs), ZERO),
            base_total_amount=sum((c.base_amount for c in costs), ZERO),
            scheduled_date=scheduled_date,
        )
        VendorCost.objects.filter(pk__in=[c.pk for c in costs]).update(payout=payout)

    logger.info(
        "Scheduled payout %s to %s: %s %s for %s costs",
        payout.pk, vendor, payout.total_amount, payout.currency_code, len(costs),
    )
    return payout


def _locked_payout(payout):
    return VendorPayout.objects.select_for_update().get(pk=payout.pk)


def process_vendor_payout(payout, now=None):
    """Hand the payout over for transfer."""
    with transaction.atomic():
        payout = _locked_payout(payout)
        payout.transition_to("processing")
        payout.save(update_fields=["status"])
    logger.info("Processing payout %s", payout.pk)
    return payout


def complete_vendor_payout(payout, now=None):
    now = now or timezone.now()
    with transaction.atomic():
        payout = _locked_payout(payout)
        payout.transition_to("paid")
        payout.processed_at = now
        payout.save(update_fields=["status", "processed_at"])
        payout.costs.update(status="paid")
    logger.info("Payout %s paid", payout.pk)
    return payout


def fail_vendor_payout(payout, reason, now=None):
    """
    Record a failed transfer. A payout that fails a second time needs a
    person to look at it.
    """
    now = now or timezone.now()
    with transaction.atomic():
        payout = _locked_payout(payout)
        failed_before = bool(payout.failure_reason)
        payout.transition_to("requires_intervention" if failed_before else "failed")
        payout.failure_reason = reason[:255]
        payout.processed_at = now
        payout.save(update_fields=["status", "failure_reason", "processed_at"])
    logger.warning("Payout %s failed (%s): %s", payout.pk, payout.status, reason)
    return payout


def resolve_payout_intervention(payout, notes, reschedule_date=None, now=None):
    """
    Close out a failed payout: reschedule it, or (no date) record that it
    was settled by hand.
    """
    now = now or timezone.now()
    if not notes:
        raise ValidationError("Resolving a payout needs a note")
    with transaction.atomic():
        payout = _locked_payout(payout)
        if payout.status not in ("failed", "requires_intervention"):
            raise ValidationError(f"Payout {payout.pk} is {payout.status}, nothing to resolve")
        payout.intervention_notes = (
            f"{payout.intervention_notes}\n{notes}" if payout.intervention_notes else notes)
        if reschedule_date is not None:
            payout.transition_to("scheduled")
            payout.scheduled_date = reschedule_date
        else:
            if payout.status == "failed":
                payout.transition_to("requires_intervention")
            payout.transition_to("paid")
            payout.processed_at = now
            payout.costs.update(status="paid")
        payout.save()
    logger.info("Payout %s resolved: %s", payout.pk, payout.status)
    return payout
