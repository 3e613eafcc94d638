from datetime import timedelta
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import TestCase, override_settings

from ..exceptions import RateNotFound, StaleRateWarning
from ..money import allocate_proportionally, to_money
from ..services.currency import convert_amount, resolve_rate
from ..services.tax import resolve_tax
from .fakes import at, issue_invoice, make_currencies, make_customer, make_rate, make_tax_rule


class MoneyTests(TestCase):
    def test_to_money_rounds_half_to_even(self):
        self.assertEqual(to_money(Decimal("2.345")), Decimal("2.34"))
        self.assertEqual(to_money(Decimal("2.355")), Decimal("2.36"))
        self.assertEqual(to_money(Decimal("-1.005")), Decimal("-1.00"))

    def test_proportional_split_adds_up(self):
        shares = allocate_proportionally(Decimal("10.00"), [Decimal("10"), Decimal("10"), Decimal("10")])
        self.assertEqual(shares, [Decimal("3.33"), Decimal("3.33"), Decimal("3.34")])
        self.assertEqual(sum(shares), Decimal("10.00"))

    def test_remainder_skips_zero_weights(self):
        shares = allocate_proportionally(Decimal("1.00"), [Decimal("1"), Decimal("2"), Decimal("0")])
        self.assertEqual(shares, [Decimal("0.33"), Decimal("0.67"), Decimal("0.00")])

    def test_nothing_to_split(self):
        self.assertEqual(allocate_proportionally(Decimal("5"), [Decimal("0")]), [Decimal("0.00")])
        self.assertEqual(allocate_proportionally(Decimal("0"), [Decimal("3")]), [Decimal("0.00")])


class ExchangeRateTests(TestCase):
    def setUp(self):
        make_currencies()
        self.now = at(2026, 3, 1, 12)

    def test_effective_rate_includes_markup(self):
        make_rate("EUR", "USD", "1.10", self.now - timedelta(hours=1), markup="0.01")
        snapshot = resolve_rate("EUR", "USD", self.now)
        self.assertEqual(snapshot.effective_rate, Decimal("1.11100000"))
        self.assertEqual(snapshot.convert(Decimal("100")), Decimal("111.10"))
        self.assertFalse(snapshot.is_stale)

    def test_same_currency_is_identity(self):
        snapshot = resolve_rate("usd", "USD", self.now)
        self.assertEqual(snapshot.effective_rate, Decimal("1"))
        self.assertIsNone(snapshot.source_rate)

    def test_newest_row_covering_the_instant_wins(self):
        make_rate("EUR", "USD", "1.05", self.now - timedelta(hours=5))
        make_rate("EUR", "USD", "1.08", self.now - timedelta(hours=2))
        make_rate("EUR", "USD", "1.20", self.now + timedelta(hours=2))
        self.assertEqual(resolve_rate("EUR", "USD", self.now).rate, Decimal("1.08"))

    def test_expired_and_inactive_rows_are_ignored(self):
        make_rate("EUR", "USD", "1.05", self.now - timedelta(days=2), expiry=self.now - timedelta(hours=1))
        rate = make_rate("EUR", "USD", "1.06", self.now - timedelta(hours=3))
        rate.is_active = False
        rate.save()
        with self.assertRaises(RateNotFound):
            resolve_rate("EUR", "USD", self.now)

    def test_missing_pair_raises(self):
        with self.assertRaises(RateNotFound):
            convert_amount(Decimal("10"), "NOK", "USD", self.now)

    def test_stale_rate_is_used_with_a_warning(self):
        make_rate("EUR", "USD", "1.10", self.now - timedelta(days=2))
        with self.assertWarns(StaleRateWarning):
            snapshot = resolve_rate("EUR", "USD", self.now)
        self.assertTrue(snapshot.is_stale)
        self.assertEqual(snapshot.rate, Decimal("1.10"))

    @override_settings(BILLING={"RATE_FRESHNESS_HOURS": 72})
    def test_freshness_window_is_configurable(self):
        make_rate("EUR", "USD", "1.10", self.now - timedelta(days=2))
        self.assertFalse(resolve_rate("EUR", "USD", self.now).is_stale)

    def test_rate_rejects_same_currency_pair(self):
        with self.assertRaises(ValidationError):
            make_rate("USD", "USD", "1", self.now)

    def test_rate_used_by_an_invoice_is_frozen(self):
        rate = make_rate("EUR", "USD", "1.10", self.now - timedelta(hours=1))
        customer = make_customer(currency="EUR")
        invoice = issue_invoice(customer, ["100.00"], self.now)
        self.assertEqual(invoice.exchange_rate_ref, rate)
        self.assertEqual(invoice.base_total_amount, Decimal("110.00"))

        rate.rate = Decimal("1.30")
        with self.assertRaises(ValidationError):
            rate.save()
        # the invoice keeps its own snapshot either way
        invoice.refresh_from_db()
        self.assertEqual(invoice.exchange_rate, Decimal("1.10000000"))


class TaxResolutionTests(TestCase):
    def setUp(self):
        make_currencies()
        self.now = at(2026, 3, 1)

    def test_region_rule_wins_over_country_rule(self):
        make_tax_rule("CA", "0.0500", name="GST")
        make_tax_rule("CA-ON", "0.1300", name="HST")
        customer = make_customer(country="CA", region="CA-ON")
        tax = resolve_tax(customer, self.now)
        self.assertEqual(tax.rate, Decimal("0.1300"))
        self.assertEqual(tax.name, "HST")

    def test_falls_back_to_country_rule(self):
        make_tax_rule("CA", "0.0500", name="GST")
        customer = make_customer(country="CA", region="CA-QC")
        self.assertEqual(resolve_tax(customer, self.now).rate, Decimal("0.0500"))

    def test_latest_effective_rule_applies(self):
        make_tax_rule("NO", "0.2400", effective_from=at(2020, 1, 1).date())
        make_tax_rule("NO", "0.2500", effective_from=at(2025, 1, 1).date())
        make_tax_rule("NO", "0.2700", effective_from=at(2027, 1, 1).date())
        customer = make_customer(country="NO")
        self.assertEqual(resolve_tax(customer, self.now).rate, Decimal("0.2500"))

    @override_settings(TIME_ZONE="America/New_York")
    def test_rule_dates_use_local_calendar_day(self):
        make_tax_rule("NO", "0.2400", effective_from=at(2020, 1, 1).date())
        make_tax_rule("NO", "0.2500", effective_from=at(2026, 3, 1).date())
        customer = make_customer(country="NO")
        # 02:00 UTC on March 1st is still February 28th in New York
        self.assertEqual(resolve_tax(customer, at(2026, 3, 1, 2)).rate, Decimal("0.2400"))
        self.assertEqual(resolve_tax(customer, at(2026, 3, 1, 6)).rate, Decimal("0.2500"))

    def test_exempt_customer_pays_no_tax(self):
        make_tax_rule("NO", "0.2500")
        customer = make_customer(country="NO", exempt=True)
        tax = resolve_tax(customer, self.now)
        self.assertTrue(tax.exempt)
        self.assertEqual(tax.rate, Decimal("0"))

    def test_no_profile_means_no_tax(self):
        make_tax_rule("NO", "0.2500")
        customer = make_customer()
        self.assertEqual(resolve_tax(customer, self.now).rate, Decimal("0"))
