from datetime import timedelta
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import TestCase

from ..events import invoice_issued
from ..exceptions import (CouponNotApplicable, DuplicateBillingPeriod,
                          ImmutableFieldError, InvalidTransition)
from ..models import Coupon, Invoice, InvoicePayment
from ..services.allocation import record_payment
from ..services.credit import get_credit_balance
from ..services.invoicing import (LineItem, compile_invoice, issue_credit_note,
                                  mark_overdue_invoices, void_invoice)
from ..services.subscriptions import create_subscription
from .fakes import at, issue_invoice, make_currencies, make_customer, make_tax_rule


class InvoiceCompilerTests(TestCase):
    def setUp(self):
        make_currencies()
        make_tax_rule("NO", "0.2000", name="MVA 20%", authority="Skatteetaten")
        self.customer = make_customer(country="NO")
        self.now = at(2026, 3, 1, 9)

    def make_coupon(self, code="SPRING10", discount_type="percentage", value="10", **kwargs):
        kwargs.setdefault("valid_from", at(2026, 1, 1))
        if discount_type == "fixed":
            kwargs.setdefault("currency_id", "USD")
        return Coupon.objects.create(code=code, discount_type=discount_type, value=Decimal(value), **kwargs)

    def test_totals_with_coupon_and_tax(self):
        coupon = self.make_coupon()
        invoice = issue_invoice(self.customer, ["100.00", "50.00"], self.now, coupon=coupon)

        self.assertEqual(invoice.subtotal, Decimal("150.00"))
        self.assertEqual(invoice.discount_amount, Decimal("15.00"))
        self.assertEqual(invoice.tax_amount, Decimal("27.00"))
        self.assertEqual(invoice.total_amount, Decimal("162.00"))
        self.assertEqual(invoice.amount_due, Decimal("162.00"))
        self.assertEqual(invoice.tax_name, "MVA 20%")
        self.assertEqual(invoice.tax_authority, "Skatteetaten")
        self.assertEqual(invoice.status, "issued")
        self.assertTrue(invoice.invoice_number.startswith("INV-2026-"))

        lines = list(invoice.lines.all())
        self.assertEqual([l.discount for l in lines], [Decimal("10.00"), Decimal("5.00")])
        self.assertEqual([l.tax_amount for l in lines], [Decimal("18.00"), Decimal("9.00")])
        self.assertEqual(sum(l.total_with_tax for l in lines), invoice.total_amount)
        self.assertEqual(coupon.usage_count(), 1)

    def test_line_parts_add_up_after_rounding(self):
        make_tax_rule("DK", "0.2500")
        customer = make_customer(name="Nordlys", country="DK")
        coupon = self.make_coupon(code="TENOFF", discount_type="fixed", value="10.00")
        invoice = issue_invoice(customer, ["10.00", "10.00", "10.00"], self.now, coupon=coupon)

        lines = list(invoice.lines.all())
        self.assertEqual([l.discount for l in lines], [Decimal("3.33"), Decimal("3.33"), Decimal("3.34")])
        self.assertEqual(sum(l.tax_amount for l in lines), invoice.tax_amount)
        self.assertEqual(invoice.total_amount, Decimal("25.00"))
        self.assertEqual(sum(l.total_with_tax for l in lines), invoice.total_amount)

    def test_exempt_customer(self):
        customer = make_customer(name="Reseller AS", country="NO", exempt=True)
        invoice = issue_invoice(customer, ["100.00"], self.now)
        self.assertEqual(invoice.tax_amount, Decimal("0.00"))
        self.assertEqual(invoice.total_amount, Decimal("100.00"))

    def test_due_date_follows_payment_terms(self):
        invoice = issue_invoice(self.customer, ["10.00"], self.now)
        self.assertEqual(invoice.issue_date, self.now.date())
        self.assertEqual(invoice.due_date, self.now.date() + timedelta(days=30))

    def test_rejects_bad_lines(self):
        with self.assertRaises(ValidationError):
            compile_invoice(self.customer, [], as_of=self.now)
        with self.assertRaises(ValidationError):
            compile_invoice(
                self.customer, [LineItem("Broken", Decimal("5.00"), quantity=Decimal("0"))], as_of=self.now)
        with self.assertRaises(ValidationError):
            issue_invoice(self.customer, ["-1.00"], self.now)
        self.assertFalse(Invoice.objects.exists())

    def test_gateway_fee_is_never_discounted(self):
        coupon = self.make_coupon()
        items = [
            LineItem("Hosting", Decimal("100.00")),
            LineItem("Card surcharge", Decimal("3.00"), line_type="gateway_fee", is_gateway_fee=True),
        ]
        invoice = compile_invoice(self.customer, items, coupon=coupon, as_of=self.now)
        fee = invoice.lines.get(is_gateway_fee=True)
        self.assertEqual(fee.discount, Decimal("0.00"))
        self.assertEqual(invoice.discount_amount, Decimal("10.00"))

    def test_coupon_restricted_to_line_types(self):
        coupon = self.make_coupon(code="DOMAINS", eligible_line_types=["domain"])
        items = [LineItem("Hosting", Decimal("80.00")), LineItem("example.com", Decimal("20.00"), line_type="domain")]
        invoice = compile_invoice(self.customer, items, coupon=coupon, as_of=self.now)
        self.assertEqual(invoice.discount_amount, Decimal("2.00"))
        self.assertEqual(invoice.lines.get(line_type="domain").discount, Decimal("2.00"))

    def test_fixed_coupon_capped_at_eligible_total(self):
        coupon = self.make_coupon(code="BIG", discount_type="fixed", value="200.00")
        invoice = issue_invoice(self.customer, ["100.00"], self.now, coupon=coupon)
        self.assertEqual(invoice.discount_amount, Decimal("100.00"))
        self.assertEqual(invoice.total_amount, Decimal("0.00"))
        # nothing to collect, so it is settled on issue
        self.assertEqual(invoice.status, "paid")

    def test_coupon_usage_caps(self):
        coupon = self.make_coupon(code="ONCE", max_usages=1)
        issue_invoice(self.customer, ["10.00"], self.now, coupon=coupon)
        with self.assertRaises(CouponNotApplicable):
            issue_invoice(self.customer, ["10.00"], self.now, coupon=coupon)
        self.assertEqual(Invoice.objects.count(), 1)

    def test_per_customer_cap(self):
        coupon = self.make_coupon(code="WELCOME", max_usages_per_customer=1)
        other = make_customer(name="Other Co", country="NO")
        issue_invoice(self.customer, ["10.00"], self.now, coupon=coupon)
        issue_invoice(other, ["10.00"], self.now, coupon=coupon)
        with self.assertRaises(CouponNotApplicable):
            issue_invoice(self.customer, ["10.00"], self.now, coupon=coupon)

    def test_expired_or_early_coupon(self):
        expired = self.make_coupon(code="OLD", valid_until=at(2026, 2, 1))
        early = self.make_coupon(code="LATER", valid_from=at(2026, 6, 1))
        with self.assertRaises(CouponNotApplicable):
            issue_invoice(self.customer, ["10.00"], self.now, coupon=expired)
        with self.assertRaises(CouponNotApplicable):
            issue_invoice(self.customer, ["10.00"], self.now, coupon=early)

    def test_coupon_minimum_amount(self):
        coupon = self.make_coupon(code="MIN50", minimum_amount=Decimal("50.00"))
        with self.assertRaises(CouponNotApplicable):
            issue_invoice(self.customer, ["20.00"], self.now, coupon=coupon)

    def test_issued_invoice_is_immutable(self):
        invoice = issue_invoice(self.customer, ["100.00"], self.now)
        invoice.total_amount = Decimal("1.00")
        # full_clean re-wraps the error raised by clean()
        with self.assertRaises(ValidationError):
            invoice.save()

        line = Invoice.objects.get(pk=invoice.pk).lines.get()
        line.unit_price = Decimal("1.00")
        with self.assertRaises(ImmutableFieldError):
            line.save()

    def test_issued_invoice_cannot_be_deleted(self):
        invoice = issue_invoice(self.customer, ["100.00"], self.now)
        with self.assertRaises(ValidationError):
            invoice.delete()

    def test_invalid_status_change(self):
        invoice = issue_invoice(self.customer, ["100.00"], self.now)
        with self.assertRaises(InvalidTransition):
            invoice.transition_to("draft")

    def test_issue_notification_after_commit(self):
        received = []

        def on_issued(sender, invoice, **kwargs):
            received.append(invoice.pk)

        invoice_issued.connect(on_issued)
        self.addCleanup(invoice_issued.disconnect, on_issued)
        with self.captureOnCommitCallbacks(execute=True):
            invoice = issue_invoice(self.customer, ["10.00"], self.now)
            self.assertEqual(received, [])
        self.assertEqual(received, [invoice.pk])

    def test_failing_receiver_does_not_break_billing(self):
        def broken(sender, **kwargs):
            raise RuntimeError("smtp down")

        invoice_issued.connect(broken)
        self.addCleanup(invoice_issued.disconnect, broken)
        with self.assertLogs("billing_core.events", level="ERROR"):
            with self.captureOnCommitCallbacks(execute=True):
                invoice = issue_invoice(self.customer, ["10.00"], self.now)
        self.assertEqual(invoice.status, "issued")


class SubscriptionPeriodInvoiceTests(TestCase):
    def setUp(self):
        make_currencies()
        self.customer = make_customer()
        self.sub = create_subscription(self.customer, "vps-42", "VPS small", "20.00", start=at(2026, 1, 1))
        self.period = self.sub.next_period()
        self.now = at(2026, 2, 1)

    def test_second_live_invoice_for_period_is_refused(self):
        first = issue_invoice(self.customer, ["20.00"], self.now, subscription=self.sub, period=self.period)
        with self.assertRaises(DuplicateBillingPeriod):
            issue_invoice(self.customer, ["20.00"], self.now, subscription=self.sub, period=self.period)
        self.assertEqual(Invoice.objects.filter(subscription=self.sub).count(), 1)
        self.assertEqual(first.period_start, at(2026, 2, 1))
        self.assertEqual(first.period_end, at(2026, 3, 1))

    def test_voided_invoice_frees_the_period(self):
        first = issue_invoice(self.customer, ["20.00"], self.now, subscription=self.sub, period=self.period)
        void_invoice(first, "wrong price", now=self.now)
        second = issue_invoice(self.customer, ["25.00"], self.now, subscription=self.sub, period=self.period)
        self.assertEqual(second.status, "issued")


class CreditNoteAndVoidTests(TestCase):
    def setUp(self):
        make_currencies()
        self.customer = make_customer()
        self.now = at(2026, 3, 1)
        self.invoice = issue_invoice(self.customer, ["100.00"], self.now)

    def test_credit_note_goes_to_customer_credit(self):
        note = issue_credit_note(self.invoice, [LineItem("Partial outage", Decimal("30.00"))], "SLA breach", as_of=self.now)

        self.assertEqual(note.kind, "credit_note")
        self.assertEqual(note.original_invoice, self.invoice)
        self.assertEqual(note.total_amount, Decimal("-30.00"))
        self.assertEqual(note.amount_due, Decimal("0.00"))
        self.assertEqual(note.status, "paid")
        self.assertTrue(note.invoice_number.startswith("CN-"))
        self.assertEqual(get_credit_balance(self.customer, "USD"), Decimal("30.00"))
        applied = sum(row.amount_applied for row in InvoicePayment.objects.filter(invoice=note))
        self.assertEqual(applied, note.amount_paid)

        # the corrected invoice itself is untouched
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.total_amount, Decimal("100.00"))

    def test_credit_notes_cannot_exceed_invoice(self):
        issue_credit_note(self.invoice, [LineItem("Refund part", Decimal("30.00"))], "goodwill", as_of=self.now)
        with self.assertRaises(ValidationError):
            issue_credit_note(self.invoice, [LineItem("Too much", Decimal("80.00"))], "goodwill", as_of=self.now)

    def test_void_unpaid_invoice(self):
        invoice = void_invoice(self.invoice, "duplicate order", now=self.now)
        self.assertEqual(invoice.status, "void")
        self.assertEqual(invoice.voided_at, self.now)
        self.assertIn("duplicate order", invoice.notes)

    def test_paid_invoice_cannot_be_voided(self):
        record_payment(self.customer, Decimal("40.00"), "USD", "gw_void_1", captured_at=self.now)
        with self.assertRaises(ValidationError):
            void_invoice(self.invoice, "too late", now=self.now)

    def test_void_is_final(self):
        void_invoice(self.invoice, "duplicate order", now=self.now)
        with self.assertRaises(InvalidTransition):
            void_invoice(self.invoice, "again", now=self.now)

    def test_mark_overdue(self):
        due = self.invoice.due_date
        self.assertEqual(mark_overdue_invoices(due), 0)
        self.assertEqual(mark_overdue_invoices(due + timedelta(days=1)), 1)
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, "overdue")
        # already overdue: not counted twice
        self.assertEqual(mark_overdue_invoices(due + timedelta(days=2)), 0)
