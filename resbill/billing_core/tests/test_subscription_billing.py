from datetime import timedelta
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.test import TestCase

from ..events import subscription_cancelled, subscription_past_due
from ..exceptions import GatewayTimeout
from ..gateways import REQUIRES_ACTION, GatewayResult
from ..models import (Invoice, PaymentAttempt, PaymentTransaction, Subscription,
                      SubscriptionBillingHistory)
from ..services.credit import add_credit, get_credit_balance
from ..services.results import Outcome
from ..services.subscriptions import (MAX_RETRIES_REASON, backoff_delay,
                                      cancel_subscription, create_subscription,
                                      pause_subscription, process_subscription,
                                      reactivate_subscription,
                                      resume_subscription, run_billing_sweep)
from .fakes import FakeGateway, at, issue_invoice, make_currencies, make_customer


class SubscriptionTestCase(TestCase):
    def setUp(self):
        make_currencies()
        self.customer = make_customer()
        self.start = at(2026, 1, 15, 10)
        self.due = at(2026, 2, 15, 10)
        self.sub = create_subscription(
            self.customer, "vps-42", "VPS small", "20.00", start=self.start)

    def reload(self):
        return Subscription.objects.get(pk=self.sub.pk)


class SubscriptionLifecycleTests(SubscriptionTestCase):
    def test_first_cycle_is_scheduled(self):
        self.assertEqual(self.sub.status, "active")
        self.assertEqual(self.sub.current_period_end, self.due)
        self.assertEqual(self.sub.next_billing_date, self.due)
        self.assertEqual(self.sub.max_retry_attempts, 3)

    def test_month_end_start(self):
        sub = create_subscription(self.customer, "dom-1", "example.com", "12.00", start=at(2026, 1, 31))
        self.assertEqual(sub.current_period_end, at(2026, 2, 28))

    def test_yearly_cycle(self):
        sub = create_subscription(
            self.customer, "dom-2", "example.org", "12.00", start=at(2026, 1, 31),
            billing_period_unit="years")
        self.assertEqual(sub.next_period(), (at(2027, 1, 31), at(2028, 1, 31)))

    def test_backoff_steps(self):
        self.assertEqual(backoff_delay(1), timedelta(days=1))
        self.assertEqual(backoff_delay(2), timedelta(days=3))
        self.assertEqual(backoff_delay(3), timedelta(days=7))
        self.assertEqual(backoff_delay(9), timedelta(days=7))

    def test_pause_and_resume(self):
        pause_subscription(self.sub, "customer travelling", now=at(2026, 2, 1))
        result = process_subscription(self.sub, now=self.due, gateway=FakeGateway())
        self.assertEqual(result.outcome, Outcome.SKIPPED)
        self.assertFalse(Invoice.objects.exists())

        sub = resume_subscription(self.sub, now=at(2026, 3, 1))
        self.assertEqual(sub.status, "active")
        self.assertEqual(sub.next_billing_date, at(2026, 3, 1))

    def test_resume_requires_paused(self):
        with self.assertRaises(ValidationError):
            resume_subscription(self.sub, now=self.due)

    def test_cancel_and_reactivate(self):
        cancel_subscription(self.sub, "moving to another host", now=at(2026, 2, 1))
        sub = self.reload()
        self.assertEqual(sub.status, "cancelled")
        self.assertEqual(sub.cancellation_reason, "moving to another host")

        result = process_subscription(sub, now=self.due, gateway=FakeGateway())
        self.assertEqual(result.outcome, Outcome.SKIPPED)

        sub = reactivate_subscription(sub, now=at(2026, 3, 1))
        self.assertEqual(sub.status, "active")
        self.assertEqual(sub.cancelled_at, None)
        self.assertEqual(sub.next_billing_date, at(2026, 3, 1))


class BillingTickTests(SubscriptionTestCase):
    def test_successful_cycle(self):
        gateway = FakeGateway()
        result = process_subscription(self.sub, now=self.due, gateway=gateway)

        self.assertEqual(result.outcome, Outcome.SUCCEEDED)
        invoice = Invoice.objects.get(pk=result.invoice_id)
        self.assertEqual(invoice.status, "paid")
        self.assertEqual((invoice.period_start, invoice.period_end), (self.due, at(2026, 3, 15, 10)))
        self.assertEqual(invoice.due_date, self.due.date() + timedelta(days=7))
        self.assertEqual(gateway.charge_keys(), [f"invoice-{invoice.pk}-attempt-1"])

        sub = self.reload()
        self.assertEqual(sub.current_period_start, self.due)
        self.assertEqual(sub.current_period_end, at(2026, 3, 15, 10))
        self.assertEqual(sub.next_billing_date, at(2026, 3, 15, 10))
        self.assertEqual(sub.retry_count, 0)
        self.assertEqual(sub.last_successful_billing, self.due)
        self.assertIsNone(sub.processing_token)

        history = SubscriptionBillingHistory.objects.get(subscription=sub)
        self.assertEqual(history.status, "succeeded")
        self.assertEqual(history.payment_transaction_id, result.payment_transaction_id)
        attempt = PaymentAttempt.objects.get(invoice=invoice)
        self.assertEqual(attempt.status, "succeeded")

    def test_not_due_yet(self):
        gateway = FakeGateway()
        result = process_subscription(self.sub, now=self.due - timedelta(minutes=1), gateway=gateway)
        self.assertEqual(result.outcome, Outcome.SKIPPED)
        self.assertEqual(gateway.calls, [])

    def test_repeated_failures_cancel_the_subscription(self):
        gateway = FakeGateway(charges=["failed", "failed", "failed"])

        first = process_subscription(self.sub, now=self.due, gateway=gateway)
        self.assertEqual(first.outcome, Outcome.RETRYABLE)
        sub = self.reload()
        self.assertEqual(sub.status, "past_due")
        self.assertEqual(sub.retry_count, 1)
        self.assertEqual(sub.next_billing_date, self.due + timedelta(days=1))

        # same tick again: nothing is due, nothing is charged
        again = process_subscription(self.sub, now=self.due, gateway=gateway)
        self.assertEqual(again.outcome, Outcome.SKIPPED)

        process_subscription(self.sub, now=self.due + timedelta(days=1), gateway=gateway)
        sub = self.reload()
        self.assertEqual(sub.retry_count, 2)
        self.assertEqual(sub.next_billing_date, self.due + timedelta(days=4))

        process_subscription(self.sub, now=self.due + timedelta(days=4), gateway=gateway)
        sub = self.reload()
        self.assertEqual(sub.status, "cancelled")
        self.assertEqual(sub.retry_count, 3)
        self.assertEqual(sub.cancellation_reason, MAX_RETRIES_REASON)
        self.assertEqual(sub.cancelled_at, self.due + timedelta(days=4))

        # one invoice for the period, still open for manual recovery
        invoice = Invoice.objects.get(subscription=sub)
        self.assertEqual(invoice.status, "issued")
        self.assertEqual(invoice.amount_due, Decimal("20.00"))
        self.assertEqual(
            gateway.charge_keys(),
            [f"invoice-{invoice.pk}-attempt-{n}" for n in (1, 2, 3)])
        self.assertEqual(
            list(sub.billing_history.values_list("status", flat=True)), ["failed"] * 3)

        late = process_subscription(self.sub, now=self.due + timedelta(days=30), gateway=gateway)
        self.assertEqual(late.outcome, Outcome.SKIPPED)

    def test_at_least_one_attempt_is_required(self):
        with self.assertRaises(ValidationError):
            create_subscription(
                self.customer, "vps-43", "VPS small", "20.00", start=self.start, max_retry_attempts=0)
        self.assertEqual(Subscription.objects.count(), 1)

    def test_single_attempt_cancels_on_first_failure(self):
        sub = create_subscription(
            self.customer, "vps-43", "VPS small", "20.00", start=self.start, max_retry_attempts=1)
        gateway = FakeGateway(charges=["failed"])

        result = process_subscription(sub, now=self.due, gateway=gateway)

        self.assertEqual(result.outcome, Outcome.RETRYABLE)
        sub = Subscription.objects.get(pk=sub.pk)
        self.assertEqual(sub.status, "cancelled")
        self.assertEqual(sub.retry_count, 1)
        self.assertEqual(sub.cancellation_reason, MAX_RETRIES_REASON)
        self.assertEqual(list(sub.billing_history.values_list("status", flat=True)), ["failed"])

    def test_database_refuses_zero_attempts(self):
        # queryset updates skip model validation; the check constraint still holds
        with self.assertRaises(IntegrityError), transaction.atomic():
            Subscription.objects.filter(pk=self.sub.pk).update(max_retry_attempts=0)
        self.assertEqual(self.reload().max_retry_attempts, 3)

    def test_retry_succeeds_and_returns_to_active(self):
        gateway = FakeGateway(charges=["failed"])
        process_subscription(self.sub, now=self.due, gateway=gateway)
        result = process_subscription(self.sub, now=self.due + timedelta(days=1), gateway=gateway)

        self.assertEqual(result.outcome, Outcome.SUCCEEDED)
        sub = self.reload()
        self.assertEqual(sub.status, "active")
        self.assertEqual(sub.retry_count, 0)
        # the period is the one that failed first, not a new one
        self.assertEqual(sub.current_period_start, self.due)
        self.assertEqual(Invoice.objects.filter(subscription=sub).count(), 1)

    def test_reactivated_subscription_charges_with_fresh_key(self):
        gateway = FakeGateway(charges=["failed", "failed", "failed"])
        process_subscription(self.sub, now=self.due, gateway=gateway)
        process_subscription(self.sub, now=self.due + timedelta(days=1), gateway=gateway)
        process_subscription(self.sub, now=self.due + timedelta(days=4), gateway=gateway)

        reactivate_subscription(self.sub, now=self.due + timedelta(days=10))
        result = process_subscription(self.sub, now=self.due + timedelta(days=10), gateway=gateway)

        self.assertEqual(result.outcome, Outcome.SUCCEEDED)
        self.assertEqual(gateway.charge_keys()[-1], f"invoice-{result.invoice_id}-attempt-4")

    def test_failure_notifications(self):
        past_due, cancelled = [], []

        def on_past_due(sender, subscription, **kwargs):
            past_due.append(subscription.pk)

        def on_cancelled(sender, subscription, reason, **kwargs):
            cancelled.append(reason)

        subscription_past_due.connect(on_past_due)
        subscription_cancelled.connect(on_cancelled)
        self.addCleanup(subscription_past_due.disconnect, on_past_due)
        self.addCleanup(subscription_cancelled.disconnect, on_cancelled)

        sub = Subscription.objects.get(pk=self.sub.pk)
        sub.max_retry_attempts = 1
        sub.save()
        with self.captureOnCommitCallbacks(execute=True):
            process_subscription(sub, now=self.due, gateway=FakeGateway(charges=["failed"]))
        self.assertEqual(past_due, [])
        self.assertEqual(cancelled, [MAX_RETRIES_REASON])

    def test_existing_invoice_for_period_is_reused(self):
        invoice = issue_invoice(
            self.customer, ["20.00"], self.due, subscription=self.sub, period=self.sub.next_period())
        result = process_subscription(self.sub, now=self.due, gateway=FakeGateway())
        self.assertEqual(result.invoice_id, invoice.pk)
        self.assertEqual(Invoice.objects.count(), 1)

    def test_rerun_after_crash_does_not_charge_twice(self):
        invoice = issue_invoice(
            self.customer, ["20.00"], self.due, subscription=self.sub, period=self.sub.next_period())
        # the gateway took the money but the worker died before booking it
        tx = PaymentTransaction.objects.create(
            customer=self.customer, invoice=invoice, amount=Decimal("20.00"),
            currency_code="USD", base_currency_code="USD", base_amount=Decimal("20.00"),
            status="captured", gateway_transaction_id="ch_crashed",
            idempotency_key=f"invoice-{invoice.pk}-attempt-1", captured_at=self.due,
        )
        gateway = FakeGateway()
        result = process_subscription(self.sub, now=self.due, gateway=gateway)

        self.assertEqual(result.outcome, Outcome.SUCCEEDED)
        self.assertEqual(result.payment_transaction_id, tx.pk)
        self.assertEqual(gateway.calls, [])
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, "paid")

    def test_pending_charge_waits_for_reconciliation(self):
        gateway = FakeGateway(charges=["pending"])
        result = process_subscription(self.sub, now=self.due, gateway=gateway)

        self.assertEqual(result.outcome, Outcome.SKIPPED)
        self.assertEqual(result.detail, "pending")
        tx = PaymentTransaction.objects.get(pk=result.payment_transaction_id)
        self.assertEqual(tx.status, "pending")
        sub = self.reload()
        self.assertEqual(sub.retry_count, 0)
        self.assertEqual(sub.next_billing_date, self.due + timedelta(minutes=60))

        # next look: the same attempt is still open, no second charge
        process_subscription(self.sub, now=self.due + timedelta(minutes=60), gateway=gateway)
        self.assertEqual(len(gateway.charge_keys()), 1)
        self.assertEqual(
            list(sub.billing_history.values_list("status", flat=True)), ["pending", "pending"])

    def test_gateway_timeout_is_a_failed_attempt(self):
        gateway = FakeGateway(charges=[GatewayTimeout("no answer in 30s")])
        result = process_subscription(self.sub, now=self.due, gateway=gateway)

        self.assertEqual(result.outcome, Outcome.RETRYABLE)
        attempt = PaymentAttempt.objects.get()
        self.assertEqual(attempt.status, "failed")
        self.assertIn("timeout", attempt.error_message.lower())
        self.assertFalse(PaymentTransaction.objects.exists())
        self.assertEqual(self.reload().retry_count, 1)

    def test_authentication_required(self):
        gateway = FakeGateway(charges=[GatewayResult(REQUIRES_ACTION, message="3-D Secure needed")])
        result = process_subscription(self.sub, now=self.due, gateway=gateway)

        self.assertEqual(result.outcome, Outcome.RETRYABLE)
        attempt = PaymentAttempt.objects.get()
        self.assertTrue(attempt.requires_authentication)
        self.assertEqual(attempt.status, "requires_action")
        self.assertEqual(self.reload().status, "past_due")

    def test_no_payment_method(self):
        customer = make_customer(name="Cardless Inc", payment_method=False)
        sub = create_subscription(customer, "vps-7", "VPS tiny", "5.00", start=self.start)
        result = process_subscription(sub, now=self.due, gateway=FakeGateway())
        self.assertEqual(result.outcome, Outcome.RETRYABLE)
        self.assertEqual(result.detail, "no payment method")

    def test_credit_is_used_before_charging(self):
        add_credit(self.customer, "USD", Decimal("50.00"), "adjustment")
        gateway = FakeGateway()
        result = process_subscription(self.sub, now=self.due, gateway=gateway)

        self.assertEqual(result.outcome, Outcome.SUCCEEDED)
        self.assertEqual(gateway.calls, [])
        self.assertEqual(get_credit_balance(self.customer, "USD"), Decimal("30.00"))

    def test_partial_credit_reduces_the_charge(self):
        add_credit(self.customer, "USD", Decimal("5.00"), "adjustment")
        gateway = FakeGateway()
        process_subscription(self.sub, now=self.due, gateway=gateway)
        self.assertEqual(gateway.calls[0][1], Decimal("15.00"))

    def test_claimed_subscription_is_skipped(self):
        Subscription.objects.filter(pk=self.sub.pk).update(
            processing_token="other-worker", processing_started_at=self.due)
        gateway = FakeGateway()
        result = process_subscription(self.sub, now=self.due, gateway=gateway)
        self.assertEqual(result.outcome, Outcome.SKIPPED)
        self.assertEqual(result.detail, "claimed elsewhere")
        self.assertEqual(gateway.calls, [])

    def test_expired_claim_is_taken_over(self):
        Subscription.objects.filter(pk=self.sub.pk).update(
            processing_token="dead-worker", processing_started_at=self.due - timedelta(minutes=20))
        result = process_subscription(self.sub, now=self.due, gateway=FakeGateway())
        self.assertEqual(result.outcome, Outcome.SUCCEEDED)
        self.assertIsNone(self.reload().processing_token)

    def test_cancel_during_charge_is_respected(self):
        subscription = self.sub

        class CancellingGateway(FakeGateway):
            def charge(self, *args, **kwargs):
                cancel_subscription(subscription, "customer request", now=at(2026, 2, 15, 10, 1))
                return super().charge(*args, **kwargs)

        process_subscription(self.sub, now=self.due, gateway=CancellingGateway(charges=["failed"]))
        sub = self.reload()
        self.assertEqual(sub.status, "cancelled")
        self.assertEqual(sub.cancellation_reason, "customer request")
        self.assertEqual(sub.retry_count, 0)
        self.assertEqual(sub.billing_history.get().status, "failed")


class TrialTests(TestCase):
    def setUp(self):
        make_currencies()
        self.customer = make_customer()
        self.start = at(2026, 1, 1)
        self.sub = create_subscription(
            self.customer, "web-1", "Web hosting", "9.99", start=self.start, trial_days=14)

    def test_trial_defers_first_charge(self):
        self.assertEqual(self.sub.status, "trialing")
        self.assertEqual(self.sub.next_billing_date, at(2026, 1, 15))

        gateway = FakeGateway()
        early = process_subscription(self.sub, now=at(2026, 1, 8), gateway=gateway)
        self.assertEqual(early.outcome, Outcome.SKIPPED)

        result = process_subscription(self.sub, now=at(2026, 1, 15), gateway=gateway)
        self.assertEqual(result.outcome, Outcome.SUCCEEDED)
        sub = Subscription.objects.get(pk=self.sub.pk)
        self.assertEqual(sub.status, "active")
        self.assertEqual(sub.current_period_start, at(2026, 1, 15))
        self.assertEqual(sub.current_period_end, at(2026, 2, 15))


class BillingSweepTests(TestCase):
    def setUp(self):
        make_currencies()
        self.customer = make_customer()
        self.start = at(2026, 1, 15)
        self.now = at(2026, 2, 15)

    def test_one_bad_subscription_does_not_stop_the_sweep(self):
        good = create_subscription(self.customer, "vps-1", "VPS", "20.00", start=self.start)
        # no EUR->USD rate exists
        bad = create_subscription(self.customer, "vps-2", "VPS EU", "20.00", currency_code="EUR", start=self.start)
        create_subscription(self.customer, "vps-3", "VPS later", "20.00", start=at(2026, 2, 1))

        with self.assertLogs("billing_core.services.subscriptions", level="WARNING") as logs:
            summary = run_billing_sweep(now=self.now, gateway=FakeGateway())

        self.assertEqual(summary.processed, 2)
        self.assertEqual(summary.succeeded, 1)
        self.assertEqual(summary.fatal, 1)
        self.assertTrue(any("High billing failure rate" in line for line in logs.output))
        self.assertEqual(Subscription.objects.get(pk=good.pk).next_billing_date, at(2026, 3, 15))
        self.assertFalse(Invoice.objects.filter(subscription=bad).exists())

    def test_limit(self):
        create_subscription(self.customer, "vps-1", "VPS", "20.00", start=self.start)
        create_subscription(self.customer, "vps-2", "VPS", "20.00", start=self.start)
        summary = run_billing_sweep(now=self.now, gateway=FakeGateway(), limit=1)
        self.assertEqual(summary.processed, 1)
        self.assertEqual(summary.failure_rate, 0.0)
