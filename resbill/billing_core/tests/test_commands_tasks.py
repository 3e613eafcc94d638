from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

import pytest
from django.contrib.admin.sites import site
from django.contrib.auth import get_user_model
from django.core.exceptions import ImproperlyConfigured, ValidationError
from django.core.management import CommandError, call_command
from django.test import RequestFactory, TestCase, override_settings
from django.utils import timezone

from .. import tasks
from ..conf import billing_setting
from ..gateways import get_gateway
from ..models import (Invoice, InvoicePayment, RefundLossAudit, Subscription,
                      SubscriptionBillingHistory, Vendor)
from ..services.allocation import record_payment
from ..services.refunds import process_refund
from ..services.subscriptions import create_subscription, process_subscription
from ..services.vendor import attach_vendor_cost
from .fakes import FakeGateway, at, issue_invoice, make_currencies, make_customer

FAKE_GATEWAY = {"PAYMENT_GATEWAY": "billing_core.tests.fakes.FakeGateway"}


@override_settings(BILLING=FAKE_GATEWAY)
class BillingCommandTests(TestCase):
    def setUp(self):
        make_currencies()
        self.customer = make_customer()
        self.sub = create_subscription(self.customer, "vps-42", "VPS small", "20.00", start=at(2026, 1, 15))

    def test_run_billing_sweep(self):
        out = StringIO()
        call_command("run_billing_sweep", at="2026-02-15T00:00:00", stdout=out)

        output = out.getvalue()
        self.assertIn("1 processed: 1 succeeded", output)
        self.assertIn("invoices marked overdue", output)
        self.assertEqual(Subscription.objects.get(pk=self.sub.pk).next_billing_date, at(2026, 3, 15))

    def test_sweep_marks_overdue_invoices(self):
        issue_invoice(self.customer, ["10.00"], at(2026, 1, 1))
        out = StringIO()
        call_command("run_billing_sweep", at="2026-02-15T00:00:00", stdout=out)
        self.assertIn("1 invoices marked overdue", out.getvalue())

        out = StringIO()
        call_command("run_billing_sweep", at="2026-02-15T00:00:00", skip_overdue=True, stdout=out)
        self.assertNotIn("marked overdue", out.getvalue())

    def test_bad_datetime(self):
        with self.assertRaises(CommandError):
            call_command("run_billing_sweep", at="next tuesday", stdout=StringIO())

    def test_reconcile_payments(self):
        out = StringIO()
        call_command("reconcile_payments", stdout=out)
        self.assertIn("0 captured, 0 failed, 0 skipped", out.getvalue())


class SettingsTests(TestCase):
    def test_defaults_and_overrides(self):
        with override_settings(BILLING={"RETRY_BACKOFF_DAYS": [2, 4]}):
            self.assertEqual(billing_setting("RETRY_BACKOFF_DAYS"), [2, 4])
            self.assertEqual(billing_setting("DEFAULT_MAX_RETRY_ATTEMPTS"), 3)
        with self.assertRaises(KeyError):
            billing_setting("NOT_A_SETTING")

    @override_settings(BILLING={"PAYMENT_GATEWAY": None})
    def test_gateway_must_be_configured(self):
        with self.assertRaises(ImproperlyConfigured):
            get_gateway()

    @override_settings(BILLING=FAKE_GATEWAY)
    def test_gateway_from_settings(self):
        self.assertIsInstance(get_gateway(), FakeGateway)

    def test_models_match_migrations(self):
        out = StringIO()
        # exits non-zero when a model change has no migration
        call_command("makemigrations", "billing_core", check=True, dry_run=True, stdout=out)
        self.assertIn("No changes detected", out.getvalue())


@override_settings(BILLING=FAKE_GATEWAY)
class TaskTests(TestCase):
    def setUp(self):
        make_currencies()
        self.customer = make_customer()
        # started 40 days ago, so the second cycle is already due
        self.sub = create_subscription(
            self.customer, "vps-42", "VPS small", "20.00", start=timezone.now() - timedelta(days=40))

    def test_sweep_fans_out_one_task_per_subscription(self):
        with mock.patch.object(tasks.bill_subscription, "delay") as delay:
            queued = tasks.sweep_due_subscriptions()
        self.assertEqual(queued, 1)
        delay.assert_called_once_with(self.sub.pk)

    def test_bill_subscription(self):
        self.assertEqual(tasks.bill_subscription(self.sub.pk), "succeeded")
        self.assertEqual(tasks.bill_subscription(self.sub.pk), "skipped")

    def test_missing_subscription(self):
        self.assertIsNone(tasks.bill_subscription(987654))

    def test_mark_overdue_invoices(self):
        issue_invoice(self.customer, ["10.00"], timezone.now() - timedelta(days=60))
        self.assertEqual(tasks.mark_overdue_invoices(), 1)

    def test_reconcile_pending_transactions(self):
        self.assertEqual(
            tasks.reconcile_pending_transactions(), {"captured": 0, "failed": 0, "skipped": 0})


class LedgerGuardTests(TestCase):
    def setUp(self):
        make_currencies()
        self.customer = make_customer()
        self.now = at(2026, 3, 1)

    def test_allocation_rows_cannot_be_deleted(self):
        issue_invoice(self.customer, ["10.00"], self.now)
        record_payment(self.customer, Decimal("10.00"), "USD", "ch_guard", captured_at=self.now)
        with self.assertRaises(ValidationError):
            InvoicePayment.objects.get().delete()

    def test_billing_history_cannot_be_deleted_or_changed(self):
        sub = create_subscription(self.customer, "vps-1", "VPS", "20.00", start=at(2026, 1, 1))
        process_subscription(sub, now=at(2026, 2, 1), gateway=FakeGateway())
        history = SubscriptionBillingHistory.objects.get()
        history.error_message = "rewritten"
        with self.assertRaises(ValidationError):
            history.save()
        with self.assertRaises(ValidationError):
            history.delete()

    def test_draft_invoice_can_be_deleted(self):
        draft = Invoice.objects.create(
            customer=self.customer, currency_code="USD", base_currency_code="USD")
        draft.delete()
        self.assertFalse(Invoice.objects.exists())


# Admin actions go through the service layer
@pytest.mark.django_db
def test_admin_cancel_action_uses_state_machine():
    make_currencies()
    customer = make_customer()
    active = create_subscription(customer, "vps-1", "VPS", "20.00", start=at(2026, 1, 1))
    gone = create_subscription(customer, "vps-2", "VPS", "20.00", start=at(2026, 1, 1))
    Subscription.objects.filter(pk=gone.pk).update(status="cancelled")

    request = RequestFactory().post("/admin/billing_core/subscription/")
    request.user = get_user_model().objects.create_user("ops", password="x")
    modeladmin = site._registry[Subscription]

    with mock.patch.object(modeladmin, "message_user") as message_user:
        modeladmin.get_actions(request)["cancel_subscriptions"][0](
            modeladmin, request, Subscription.objects.order_by("pk"))

    assert Subscription.objects.get(pk=active.pk).cancellation_reason == "Cancelled by ops"
    # cancelled -> cancelled is refused and reported, not raised
    message_user.assert_called_once()


@pytest.mark.django_db
def test_admin_approves_held_refund():
    make_currencies()
    customer = make_customer()
    invoice = issue_invoice(customer, ["100.00"], at(2026, 3, 1), line_type="domain")
    vendor = Vendor.objects.create(name="Registrar Inc", currency_code="USD")
    attach_vendor_cost(invoice.lines.get(), vendor, Decimal("90.00"), as_of=at(2026, 3, 1))
    tx, _ = record_payment(customer, Decimal("100.00"), "USD", "ch_admin", captured_at=at(2026, 3, 1))
    refund, audit = process_refund(tx, Decimal("100.00"), "chargeback threat", now=at(2026, 3, 2))
    assert refund.status == "requires_approval"

    request = RequestFactory().post("/admin/billing_core/refundlossaudit/")
    request.user = get_user_model().objects.create_user("finance", password="x")
    modeladmin = site._registry[RefundLossAudit]

    with override_settings(BILLING=FAKE_GATEWAY), mock.patch.object(modeladmin, "message_user"):
        modeladmin.get_actions(request)["approve_refund_losses"][0](
            modeladmin, request, RefundLossAudit.objects.all())

    audit.refresh_from_db()
    assert audit.approval_status == "approved"
    assert audit.approved_by == "finance"
    refund.refresh_from_db()
    assert refund.status == "processed"
