import logging
import uuid
from datetime import timedelta
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from ..conf import billing_setting
from ..events import (emit, payment_failed, subscription_cancelled,
                      subscription_past_due)
from ..exceptions import BillingInvariantError, GatewayError, GatewayTimeout, RateNotFound
from ..gateways import REQUIRES_ACTION, get_gateway
from ..models import (Invoice, PaymentAttempt, PaymentTransaction, Subscription,
                      SubscriptionBillingHistory)
from ..money import to_money
from .allocation import allocate, apply_customer_credit
from .currency import resolve_rate
from .invoicing import LineItem, compile_invoice
from .results import BillingResult, Outcome, SweepSummary

logger = logging.getLogger(__name__)

MAX_RETRIES_REASON = "max retries exceeded"
HIGH_FAILURE_RATE = 0.2


# ----------------------------
# Lifecycle management
# ----------------------------
def create_subscription(customer, service_reference, description, amount, currency_code=None,
                        start=None, trial_days=0, billing_period_count=1,
                        billing_period_unit="months", quantity=1, line_type="service",
                        payment_method=None, max_retry_attempts=None,
                        send_email_notifications=True):
    """
    Open a subscription. With a trial, the first period ends when the trial
    does and the first charge happens then; otherwise the first period runs
    one cycle from `start` (it was paid by the order that created it) and
    the scheduler bills the next one at its end.
    """
    start = start or timezone.now()
    subscription = Subscription(
        customer=customer,
        service_reference=service_reference,
        description=description,
        line_type=line_type,
        payment_method=payment_method,
        amount=to_money(amount),
        currency_code=(currency_code or customer.preferred_currency_id).upper(),
        quantity=quantity,
        billing_period_count=billing_period_count,
        billing_period_unit=billing_period_unit,
        start_date=start,
        max_retry_attempts=(
            max_retry_attempts if max_retry_attempts is not None
            else billing_setting("DEFAULT_MAX_RETRY_ATTEMPTS")),
        send_email_notifications=send_email_notifications,
    )
    if trial_days:
        subscription.status = "trialing"
        subscription.trial_end_date = start + timedelta(days=trial_days)
        period_end = subscription.trial_end_date
    else:
        subscription.status = "active"
        period_end = start + subscription.cycle_delta

    subscription.current_period_start = start
    subscription.current_period_end = period_end
    subscription.next_billing_date = period_end
    subscription.save()

    logger.info(
        "Created subscription %s for customer %s (%s), next billing %s",
        subscription.pk, customer.pk, subscription.status, subscription.next_billing_date,
    )
    return subscription


def pause_subscription(subscription, reason="", now=None):
    now = now or timezone.now()
    with transaction.atomic():
        sub = Subscription.objects.select_for_update().get(pk=subscription.pk)
        sub.transition_to("paused")
        sub.paused_at = now
        sub.pause_reason = reason
        sub.save()
    logger.info("Paused subscription %s: %s", sub.pk, reason)
    return sub


def resume_subscription(subscription, now=None):
    now = now or timezone.now()
    with transaction.atomic():
        sub = Subscription.objects.select_for_update().get(pk=subscription.pk)
        if sub.status != "paused":
            raise ValidationError(f"Cannot resume subscription with status {sub.status}")
        sub.transition_to("active")
        sub.paused_at = None
        sub.pause_reason = ""
        # a charge missed while paused is picked up by the next tick
        if sub.next_billing_date < now:
            sub.next_billing_date = now
        sub.save()
    logger.info("Resumed subscription %s, next billing %s", sub.pk, sub.next_billing_date)
    return sub


def cancel_subscription(subscription, reason, now=None):
    """
    Cancel on request. A billing tick already in flight finishes its
    attempt and then leaves the status alone.
    """
    now = now or timezone.now()
    with transaction.atomic():
        sub = Subscription.objects.select_for_update().get(pk=subscription.pk)
        sub.transition_to("cancelled")
        sub.cancelled_at = now
        sub.cancellation_reason = reason
        sub.save()
        if sub.send_email_notifications:
            emit(subscription_cancelled, sender=Subscription, subscription=sub, reason=reason)
    logger.info("Cancelled subscription %s: %s", sub.pk, reason)
    return sub


def reactivate_subscription(subscription, now=None):
    """Explicit way back from Cancelled; retries start over."""
    now = now or timezone.now()
    with transaction.atomic():
        sub = Subscription.objects.select_for_update().get(pk=subscription.pk)
        if sub.status != "cancelled":
            raise ValidationError(f"Only cancelled subscriptions can be reactivated ({sub.status})")
        sub.transition_to("active")
        sub.retry_count = 0
        sub.cancelled_at = None
        sub.cancellation_reason = ""
        if sub.next_billing_date < now:
            sub.next_billing_date = now
        sub.save()
    logger.info("Reactivated subscription %s", sub.pk)
    return sub


# ----------------------------
# Claim lease (one worker per subscription)
# ----------------------------
def claim_subscription(subscription, now):
    """Take the processing lease; returns the token or None if someone holds it."""
    token = str(uuid.uuid4())
    expired = now - timedelta(minutes=billing_setting("PROCESSING_LEASE_MINUTES"))
    claimed = (
        Subscription.objects.filter(pk=subscription.pk)
        .filter(Q(processing_token__isnull=True) | Q(processing_started_at__lt=expired))
        .update(processing_token=token, processing_started_at=now)
    )
    return token if claimed else None


def release_subscription(subscription, token):
    Subscription.objects.filter(pk=subscription.pk, processing_token=token).update(
        processing_token=None, processing_started_at=None)


# ----------------------------
# Outcome bookkeeping
# ----------------------------
def backoff_delay(retry_count):
    """Delay before retry number `retry_count`; the last step repeats."""
    steps = billing_setting("RETRY_BACKOFF_DAYS")
    return timedelta(days=steps[min(retry_count, len(steps)) - 1])


def record_billing_success(subscription, invoice, tx, period, now):
    """Money is in: write history, then advance the cycle."""
    period_start, period_end = period
    with transaction.atomic():
        sub = Subscription.objects.select_for_update().get(pk=subscription.pk)
        SubscriptionBillingHistory.objects.create(
            subscription=sub,
            invoice=invoice,
            payment_transaction=tx,
            status="succeeded",
            period_start=period_start,
            period_end=period_end,
            amount=invoice.total_amount,
            attempt_number=sub.retry_count + 1,
            attempted_at=now,
        )
        sub.current_period_start = period_start
        sub.current_period_end = period_end
        sub.next_billing_date = period_end
        sub.retry_count = 0
        sub.last_billing_attempt = now
        sub.last_successful_billing = now
        if sub.status == "past_due":
            sub.transition_to("active")
        sub.save()

    logger.info(
        "Subscription %s billed for %s - %s (invoice %s)",
        sub.pk, period_start, period_end, invoice.invoice_number,
    )
    return sub


def record_billing_failure(subscription, invoice, tx, period, reason, now, attempt=None):
    """
    A charge failed: write history, consume one retry and either schedule
    the backoff (PastDue) or cancel on exhaustion. The invoice stays open.
    """
    period_start, period_end = period
    with transaction.atomic():
        sub = Subscription.objects.select_for_update().get(pk=subscription.pk)
        SubscriptionBillingHistory.objects.create(
            subscription=sub,
            invoice=invoice,
            payment_transaction=tx,
            status="failed",
            period_start=period_start,
            period_end=period_end,
            amount=invoice.amount_due,
            attempt_number=sub.retry_count + 1,
            error_message=reason[:255],
            attempted_at=now,
        )
        emit(payment_failed, sender=Invoice, invoice=invoice, attempt=attempt, reason=reason)

        if sub.status in ("paused", "cancelled"):
            # changed by hand while we were charging; leave it be
            logger.info("Subscription %s became %s during billing", sub.pk, sub.status)
            return sub

        sub.retry_count += 1
        sub.last_billing_attempt = now
        if sub.retry_count >= sub.max_retry_attempts:
            sub.transition_to("cancelled")
            sub.cancelled_at = now
            sub.cancellation_reason = MAX_RETRIES_REASON
            sub.save()
            logger.warning(
                "Subscription %s cancelled after %s failed attempts: %s",
                sub.pk, sub.retry_count, reason,
            )
            if sub.send_email_notifications:
                emit(subscription_cancelled, sender=Subscription, subscription=sub, reason=MAX_RETRIES_REASON)
            return sub

        sub.next_billing_date = now + backoff_delay(sub.retry_count)
        if sub.status != "past_due":
            sub.transition_to("past_due")
        sub.save()

    logger.warning(
        "Billing failed for subscription %s (retry %s/%s, next try %s): %s",
        sub.pk, sub.retry_count, sub.max_retry_attempts, sub.next_billing_date, reason,
    )
    if sub.send_email_notifications:
        emit(subscription_past_due, sender=Subscription, subscription=sub, invoice=invoice)
    return sub


def record_billing_pending(subscription, invoice, tx, period, now):
    """The gateway has not decided yet; look again after the recheck window."""
    period_start, period_end = period
    with transaction.atomic():
        sub = Subscription.objects.select_for_update().get(pk=subscription.pk)
        SubscriptionBillingHistory.objects.create(
            subscription=sub,
            invoice=invoice,
            payment_transaction=tx,
            status="pending",
            period_start=period_start,
            period_end=period_end,
            amount=invoice.amount_due,
            attempt_number=sub.retry_count + 1,
            attempted_at=now,
        )
        sub.last_billing_attempt = now
        sub.next_billing_date = now + timedelta(minutes=billing_setting("PENDING_RECHECK_MINUTES"))
        sub.save()
    logger.info("Charge for subscription %s is pending (transaction %s)", sub.pk, tx.pk)
    return sub


# ----------------------------
# Charging
# ----------------------------
def default_payment_method(subscription):
    if subscription.payment_method_id and subscription.payment_method.is_active:
        return subscription.payment_method
    return subscription.customer.payment_methods.filter(is_default=True, is_active=True).first()


def charge_invoice(invoice, payment_method, attempt_number, now, gateway):
    """
    Charge what is due on an invoice through the gateway.

    Returns (status, transaction, attempt, message) with status one of
    "captured", "pending", "failed". Gateway errors and timeouts come back
    as "failed"; they are never raised.
    """
    key = f"invoice-{invoice.pk}-attempt-{attempt_number}"
    amount = invoice.amount_due
    base_currency = billing_setting("BASE_CURRENCY")
    # fails before any money moves
    snapshot = resolve_rate(invoice.currency_code, base_currency, now)

    attempt = PaymentAttempt.objects.create(
        invoice=invoice,
        payment_method=payment_method,
        attempted_amount=amount,
        currency_code=invoice.currency_code,
        retry_count=attempt_number - 1,
        idempotency_key=key,
    )

    try:
        result = gateway.charge(
            payment_method, amount, invoice.currency_code, key,
            timeout=billing_setting("GATEWAY_TIMEOUT_SECONDS"),
        )
    except GatewayTimeout as exc:
        logger.warning("Gateway timeout charging invoice %s (%s)", invoice.pk, key)
        return _fail_attempt(attempt, None, f"Gateway timeout: {exc}")
    except GatewayError as exc:
        logger.warning("Gateway error charging invoice %s: %s", invoice.pk, exc)
        return _fail_attempt(attempt, None, f"Gateway error: {exc}")
    except Exception as exc:
        logger.exception("Unexpected gateway failure charging invoice %s", invoice.pk)
        return _fail_attempt(attempt, None, f"Gateway failure: {exc}")

    if result.status == REQUIRES_ACTION:
        attempt.requires_authentication = True
        return _fail_attempt(attempt, None, result.message or "Payment requires authentication", status="requires_action")

    tx_status = "captured" if result.is_captured else "pending" if result.is_pending else "failed"
    if tx_status == "pending" and result.status == "authorized":
        tx_status = "authorized"

    with transaction.atomic():
        tx = PaymentTransaction.objects.create(
            customer=invoice.customer,
            invoice=invoice,
            payment_method=payment_method,
            amount=amount,
            currency_code=invoice.currency_code,
            base_currency_code=base_currency,
            exchange_rate=snapshot.effective_rate,
            exchange_rate_ref=snapshot.source_rate,
            base_amount=snapshot.convert(amount),
            gateway_fee_amount=to_money(result.fee_amount or Decimal("0")),
            status=tx_status,
            gateway_transaction_id=result.gateway_transaction_id or None,
            idempotency_key=key,
            failure_reason=(result.message or "")[:255] if tx_status == "failed" else "",
            captured_at=now if tx_status == "captured" else None,
        )
        attempt.payment_transaction = tx

        if tx_status == "failed":
            return _fail_attempt(attempt, tx, result.message or "Payment declined")

        if tx_status == "captured":
            allocate(tx, target_invoice=invoice, now=now)
            attempt.status = "succeeded"
            attempt.save(update_fields=["status", "payment_transaction"])
            invoice.refresh_from_db()
            return "captured", tx, attempt, ""

        attempt.status = "pending"
        attempt.save(update_fields=["status", "payment_transaction"])
        return "pending", tx, attempt, ""


def _fail_attempt(attempt, tx, message, status="failed"):
    attempt.status = status
    attempt.error_message = message[:255]
    attempt.save(update_fields=["status", "error_message", "requires_authentication", "payment_transaction"])
    return "failed", tx, attempt, message


# ----------------------------
# Scheduler
# ----------------------------
def _subscription_line(subscription, period_start, period_end):
    return LineItem(
        description=f"{subscription.description} ({period_start:%Y-%m-%d} - {period_end:%Y-%m-%d})",
        unit_price=subscription.amount,
        quantity=Decimal(subscription.quantity),
        line_type=subscription.line_type,
    )


def process_subscription(subscription, now=None, gateway=None) -> BillingResult:
    """
    One scheduler tick for one subscription. Safe to re-run: a period with
    a live invoice re-uses it, and the idempotency key only changes when a
    retry was actually consumed.
    """
    now = now or timezone.now()
    token = claim_subscription(subscription, now)
    if token is None:
        logger.info("Subscription %s is being billed by another worker", subscription.pk)
        return BillingResult(subscription.pk, Outcome.SKIPPED, detail="claimed elsewhere")

    try:
        return _bill(subscription.pk, now, gateway)
    except (BillingInvariantError, RateNotFound, ValidationError) as exc:
        logger.exception("Fatal billing failure for subscription %s", subscription.pk)
        return BillingResult(subscription.pk, Outcome.FATAL, detail=str(exc))
    finally:
        release_subscription(subscription, token)


def _bill(subscription_id, now, gateway):
    sub = Subscription.objects.select_related("customer").get(pk=subscription_id)
    if sub.status not in ("trialing", "active", "past_due") or sub.next_billing_date > now:
        return BillingResult(sub.pk, Outcome.SKIPPED, detail="not due")

    # (a) trial ends before the first charge
    if sub.status == "trialing":
        if sub.trial_end_date and now < sub.trial_end_date:
            return BillingResult(sub.pk, Outcome.SKIPPED, detail="in trial")
        sub.transition_to("active")
        sub.save()
        logger.info("Trial of subscription %s ended", sub.pk)

    period = sub.next_period()
    period_start, period_end = period

    # (b) one live invoice per period: re-use it on retries and re-runs
    invoice = Invoice.objects.live_for_period(sub, period_start).first()
    if invoice is None:
        terms = billing_setting("SUBSCRIPTION_PAYMENT_TERMS_DAYS")
        invoice = compile_invoice(
            sub.customer,
            [_subscription_line(sub, period_start, period_end)],
            display_currency=sub.currency_code,
            as_of=now,
            due_date=timezone.localdate(now) + timedelta(days=terms),
            subscription=sub,
            period=period,
        )

    if billing_setting("AUTO_APPLY_CREDIT") and invoice.is_open:
        apply_customer_credit(invoice, now=now)

    if not invoice.is_open:
        # credit or an earlier payment already covered the period
        record_billing_success(sub, invoice, None, period, now)
        return BillingResult(sub.pk, Outcome.SUCCEEDED, invoice_id=invoice.pk)

    # failed history rows are written together with the retry they consume
    attempt_number = invoice.billing_history.filter(status="failed").count() + 1
    key = f"invoice-{invoice.pk}-attempt-{attempt_number}"
    existing = PaymentTransaction.objects.filter(idempotency_key=key).first()
    if existing is not None:
        # re-run of an attempt that already reached the gateway
        if existing.status in ("pending", "authorized"):
            # reconciliation resolves it; do not charge twice
            record_billing_pending(sub, invoice, existing, period, now)
            return BillingResult(sub.pk, Outcome.SKIPPED, invoice.pk, existing.pk, detail="pending")
        if existing.is_settled:
            allocate(existing, target_invoice=invoice, now=now)
            invoice.refresh_from_db()
            record_billing_success(sub, invoice, existing, period, now)
            return BillingResult(sub.pk, Outcome.SUCCEEDED, invoice.pk, existing.pk)
        record_billing_failure(sub, invoice, existing, period, existing.failure_reason or "Payment failed", now)
        return BillingResult(sub.pk, Outcome.RETRYABLE, invoice.pk, existing.pk, detail=existing.failure_reason)

    # (c) charge the stored payment method
    payment_method = default_payment_method(sub)
    if payment_method is None:
        record_billing_failure(sub, invoice, None, period, "No usable payment method", now)
        return BillingResult(sub.pk, Outcome.RETRYABLE, invoice.pk, detail="no payment method")

    status, tx, attempt, message = charge_invoice(
        invoice, payment_method, attempt_number, now, gateway or get_gateway())
    tx_id = tx.pk if tx else None

    # (d) / (e)
    if status == "captured":
        record_billing_success(sub, invoice, tx, period, now)
        return BillingResult(sub.pk, Outcome.SUCCEEDED, invoice.pk, tx_id)
    if status == "pending":
        record_billing_pending(sub, invoice, tx, period, now)
        return BillingResult(sub.pk, Outcome.SKIPPED, invoice.pk, tx_id, detail="pending")

    record_billing_failure(sub, invoice, tx, period, message, now, attempt=attempt)
    return BillingResult(sub.pk, Outcome.RETRYABLE, invoice.pk, tx_id, detail=message)


def run_billing_sweep(now=None, gateway=None, limit=None) -> SweepSummary:
    """
    Bill every due subscription. A failure is contained to its own
    subscription; the sweep always runs to the end.
    """
    now = now or timezone.now()
    gateway = gateway or get_gateway()
    summary = SweepSummary()

    due = Subscription.objects.due(now).values_list("pk", flat=True)
    if limit:
        due = due[:limit]
    for sub_id in list(due):
        subscription = Subscription.objects.get(pk=sub_id)
        try:
            result = process_subscription(subscription, now=now, gateway=gateway)
        except Exception as exc:
            logger.exception("Billing crashed for subscription %s", sub_id)
            result = BillingResult(sub_id, Outcome.FATAL, detail=str(exc))
        summary.record(result)

    logger.info(
        "Billing sweep at %s: %s processed, %s succeeded, %s retryable, %s fatal, %s skipped",
        now, summary.processed, summary.succeeded, summary.retryable, summary.fatal, summary.skipped,
    )
    if summary.failure_rate > HIGH_FAILURE_RATE:
        logger.warning("High billing failure rate: %.0f%%", summary.failure_rate * 100)
    return summary
