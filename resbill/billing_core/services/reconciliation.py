import logging
from datetime import timedelta
from decimal import Decimal

from django.db import transaction
from django.utils import timezone

from ..conf import billing_setting
from ..exceptions import GatewayError
from ..gateways import get_gateway
from ..models import PaymentTransaction
from ..money import to_money
from .allocation import allocate
from .subscriptions import (claim_subscription, record_billing_failure,
                            record_billing_success, release_subscription)

logger = logging.getLogger(__name__)

UNRESOLVED_REASON = "Still pending after the reconciliation window"


def _billed_cycle(tx):
    """(subscription, period) when the transaction pays the cycle being billed."""
    invoice = tx.invoice
    if invoice is None or invoice.subscription_id is None:
        return None, None
    sub = invoice.subscription
    if invoice.period_start != sub.current_period_end:
        # the subscription has moved on; only the ledger needs fixing
        return None, None
    return sub, (invoice.period_start, invoice.period_end)


def resolve_pending_transaction(tx, now, gateway):
    """
    Ask the gateway once more about a stuck transaction. Captured money is
    allocated; anything still undecided becomes Failed and, for a
    subscription charge, consumes a retry. Returns "captured", "failed" or
    "skipped".
    """
    sub, period = _billed_cycle(tx)
    token = None
    if sub is not None:
        token = claim_subscription(sub, now)
        if token is None:
            logger.info("Subscription %s busy; transaction %s waits for the next sweep", sub.pk, tx.pk)
            return "skipped"

    try:
        result = None
        if tx.gateway_transaction_id:
            try:
                result = gateway.fetch_status(
                    tx.gateway_transaction_id, timeout=billing_setting("GATEWAY_TIMEOUT_SECONDS"))
            except GatewayError as exc:
                logger.warning("Status check for transaction %s failed: %s", tx.pk, exc)
            except Exception:
                logger.exception("Unexpected gateway failure checking transaction %s", tx.pk)

        with transaction.atomic():
            tx = PaymentTransaction.objects.select_for_update().get(pk=tx.pk)
            if tx.status not in ("pending", "authorized"):
                return "skipped"

            if result is not None and result.is_captured:
                tx.transition_to("captured")
                tx.captured_at = now
                tx.gateway_fee_amount = to_money(result.fee_amount or Decimal("0"))
                tx.save()
                tx.attempts.update(status="succeeded")
                if tx.invoice_id:
                    allocate(tx, target_invoice=tx.invoice, now=now)
                else:
                    allocate(tx, now=now)
                outcome = "captured"
            else:
                if result is None or result.is_pending:
                    reason = UNRESOLVED_REASON
                else:
                    reason = result.message or "Payment failed"
                tx.transition_to("failed")
                tx.failure_reason = reason[:255]
                tx.save()
                tx.attempts.update(status="failed", error_message=reason[:255])
                outcome = "failed"

        if sub is not None:
            invoice = tx.invoice
            invoice.refresh_from_db()
            if outcome == "captured":
                record_billing_success(sub, invoice, tx, period, now)
            else:
                record_billing_failure(sub, invoice, tx, period, tx.failure_reason, now)
    finally:
        if token is not None:
            release_subscription(sub, token)

    log = logger.info if outcome == "captured" else logger.warning
    log("Reconciled transaction %s: %s", tx.pk, outcome)
    return outcome


def reconcile_pending_transactions(now=None, gateway=None):
    """Resolve every transaction left pending beyond the window."""
    now = now or timezone.now()
    gateway = gateway or get_gateway()
    cutoff = now - timedelta(minutes=billing_setting("PENDING_TRANSACTION_TIMEOUT_MINUTES"))

    counts = {"captured": 0, "failed": 0, "skipped": 0}
    for tx in PaymentTransaction.objects.stale_pending(cutoff).select_related("invoice__subscription"):
        counts[resolve_pending_transaction(tx, now, gateway)] += 1

    logger.info(
        "Reconciliation at %s: %s captured, %s failed, %s skipped",
        now, counts["captured"], counts["failed"], counts["skipped"],
    )
    return counts
