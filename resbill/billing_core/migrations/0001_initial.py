import decimal

import django.core.validators
import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        # ---------- Reference data ----------
        migrations.CreateModel(
            name="Currency",
            fields=[
                ("code", models.CharField(max_length=3, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=64)),
                ("symbol", models.CharField(blank=True, max_length=8, null=True)),
                ("decimal_places", models.PositiveSmallIntegerField(default=2)),
            ],
            options={
                "verbose_name_plural": "currencies",
            },
        ),
        migrations.CreateModel(
            name="Customer",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=200)),
                ("email", models.EmailField(blank=True, max_length=254, null=True)),
                ("payment_terms_days", models.IntegerField(default=30)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("preferred_currency", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="customers",
                    to="billing_core.currency")),
            ],
            options={
                "indexes": [models.Index(fields=["name"], name="customer_name_idx")],
            },
        ),
        migrations.CreateModel(
            name="CustomerTaxProfile",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("country_code", models.CharField(max_length=2)),
                ("region_code", models.CharField(blank=True, default="", max_length=10)),
                ("tax_id", models.CharField(blank=True, default="", max_length=64)),
                ("is_tax_exempt", models.BooleanField(default=False)),
                ("exemption_reason", models.CharField(blank=True, default="", max_length=200)),
                ("customer", models.OneToOneField(
                    on_delete=django.db.models.deletion.CASCADE, related_name="tax_profile",
                    to="billing_core.customer")),
            ],
        ),
        migrations.CreateModel(
            name="CustomerPaymentMethod",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("gateway_token", models.CharField(max_length=200)),
                ("label", models.CharField(blank=True, default="", max_length=100)),
                ("is_default", models.BooleanField(default=False)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("customer", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name="payment_methods",
                    to="billing_core.customer")),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(is_default=True), fields=("customer",),
                        name="uq_customer_default_payment_method"),
                ],
            },
        ),
        migrations.CreateModel(
            name="TaxRule",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("jurisdiction", models.CharField(max_length=10)),
                ("name", models.CharField(max_length=100)),
                ("authority", models.CharField(blank=True, default="", max_length=100)),
                ("rate", models.DecimalField(decimal_places=4, max_digits=7)),
                ("effective_from", models.DateField()),
                ("effective_to", models.DateField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
            ],
            options={
                "indexes": [models.Index(fields=["jurisdiction", "effective_from"], name="taxrule_jurisdiction_idx")],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(rate__gte=0) & models.Q(rate__lt=1), name="tax_rate_fraction"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ExchangeRate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("rate", models.DecimalField(decimal_places=8, max_digits=18)),
                ("markup", models.DecimalField(decimal_places=6, default=decimal.Decimal("0"), max_digits=8)),
                ("effective_rate", models.DecimalField(decimal_places=8, max_digits=18)),
                ("effective_date", models.DateTimeField()),
                ("expiry_date", models.DateTimeField(blank=True, null=True)),
                ("source", models.CharField(default="manual", max_length=50)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("base_currency", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="rates_from",
                    to="billing_core.currency")),
                ("target_currency", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="rates_to",
                    to="billing_core.currency")),
            ],
            options={
                "indexes": [
                    models.Index(
                        fields=["base_currency", "target_currency", "effective_date"],
                        name="fx_pair_effective_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(rate__gt=0), name="fx_rate_positive"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Coupon",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("code", models.CharField(max_length=50, unique=True)),
                ("description", models.CharField(blank=True, default="", max_length=200)),
                ("discount_type", models.CharField(
                    choices=[("percentage", "Percentage"), ("fixed", "Fixed amount")], max_length=10)),
                ("value", models.DecimalField(decimal_places=2, max_digits=12)),
                ("eligible_line_types", models.JSONField(blank=True, default=list)),
                ("minimum_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=12)),
                ("valid_from", models.DateTimeField()),
                ("valid_until", models.DateTimeField(blank=True, null=True)),
                ("max_usages", models.PositiveIntegerField(blank=True, null=True)),
                ("max_usages_per_customer", models.PositiveIntegerField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("currency", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    to="billing_core.currency")),
            ],
            options={
                "constraints": [
                    models.CheckConstraint(condition=models.Q(value__gt=0), name="coupon_value_positive"),
                ],
            },
        ),
        # ---------- Subscriptions and invoices ----------
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("service_reference", models.CharField(max_length=100)),
                ("description", models.CharField(max_length=200)),
                ("line_type", models.CharField(
                    choices=[
                        ("service", "Service"), ("domain", "Domain"), ("hosting", "Hosting"),
                        ("setup_fee", "Setup fee"), ("gateway_fee", "Gateway fee"), ("adjustment", "Adjustment"),
                    ],
                    default="service", max_length=16)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=18)),
                ("currency_code", models.CharField(max_length=3)),
                ("quantity", models.PositiveIntegerField(default=1)),
                ("billing_period_count", models.PositiveSmallIntegerField(default=1)),
                ("billing_period_unit", models.CharField(
                    choices=[("days", "Days"), ("months", "Months"), ("years", "Years")],
                    default="months", max_length=6)),
                ("status", models.CharField(
                    choices=[
                        ("trialing", "Trialing"), ("active", "Active"), ("past_due", "Past due"),
                        ("paused", "Paused"), ("cancelled", "Cancelled"),
                    ],
                    default="active", max_length=10)),
                ("start_date", models.DateTimeField()),
                ("trial_end_date", models.DateTimeField(blank=True, null=True)),
                ("current_period_start", models.DateTimeField()),
                ("current_period_end", models.DateTimeField()),
                ("next_billing_date", models.DateTimeField()),
                ("retry_count", models.PositiveSmallIntegerField(default=0)),
                ("max_retry_attempts", models.PositiveSmallIntegerField(
                    default=3, validators=[django.core.validators.MinValueValidator(1)])),
                ("last_billing_attempt", models.DateTimeField(blank=True, null=True)),
                ("last_successful_billing", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.CharField(blank=True, default="", max_length=255)),
                ("paused_at", models.DateTimeField(blank=True, null=True)),
                ("pause_reason", models.CharField(blank=True, default="", max_length=255)),
                ("send_email_notifications", models.BooleanField(default=True)),
                ("processing_token", models.CharField(blank=True, max_length=36, null=True)),
                ("processing_started_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("customer", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="subscriptions",
                    to="billing_core.customer")),
                ("payment_method", models.ForeignKey(
                    blank=True, help_text="Falls back to the customer's default method when empty",
                    null=True, on_delete=django.db.models.deletion.SET_NULL,
                    to="billing_core.customerpaymentmethod")),
            ],
            options={
                "indexes": [
                    models.Index(fields=["status", "next_billing_date"], name="sub_status_next_billing_idx"),
                    models.Index(fields=["customer", "status"], name="sub_customer_status_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(retry_count__lte=models.F("max_retry_attempts")),
                        name="sub_retry_within_max"),
                    models.CheckConstraint(
                        condition=models.Q(max_retry_attempts__gte=1), name="sub_max_retry_at_least_one"),
                    models.CheckConstraint(condition=models.Q(amount__gte=0), name="sub_amount_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("invoice_number", models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ("kind", models.CharField(
                    choices=[("invoice", "Invoice"), ("credit_note", "Credit note")],
                    default="invoice", max_length=12)),
                ("period_start", models.DateTimeField(blank=True, null=True)),
                ("period_end", models.DateTimeField(blank=True, null=True)),
                ("currency_code", models.CharField(max_length=3)),
                ("base_currency_code", models.CharField(max_length=3)),
                ("exchange_rate", models.DecimalField(decimal_places=8, default=decimal.Decimal("1"), max_digits=18)),
                ("exchange_rate_date", models.DateTimeField(blank=True, null=True)),
                ("subtotal", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("discount_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("tax_rate", models.DecimalField(decimal_places=4, default=decimal.Decimal("0"), max_digits=7)),
                ("tax_name", models.CharField(blank=True, default="", max_length=100)),
                ("tax_authority", models.CharField(blank=True, default="", max_length=100)),
                ("tax_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("total_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("base_total_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("amount_paid", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("amount_due", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("status", models.CharField(
                    choices=[
                        ("draft", "Draft"), ("issued", "Issued"), ("partially_paid", "Partially paid"),
                        ("paid", "Paid"), ("overdue", "Overdue"), ("void", "Void"),
                    ],
                    default="draft", max_length=16)),
                ("issue_date", models.DateField(blank=True, null=True)),
                ("due_date", models.DateField(blank=True, null=True)),
                ("issued_at", models.DateTimeField(blank=True, null=True)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("voided_at", models.DateTimeField(blank=True, null=True)),
                ("notes", models.TextField(blank=True, default="")),
                ("version", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("customer", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="invoices",
                    to="billing_core.customer")),
                ("original_invoice", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    related_name="credit_notes", to="billing_core.invoice")),
                ("subscription", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    related_name="invoices", to="billing_core.subscription")),
                ("exchange_rate_ref", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    related_name="invoices", to="billing_core.exchangerate")),
                ("coupon", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    related_name="invoices", to="billing_core.coupon")),
            ],
            options={
                "indexes": [
                    models.Index(fields=["customer", "status", "due_date"], name="invoice_customer_status_idx"),
                    models.Index(fields=["subscription", "period_start"], name="invoice_sub_period_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(subscription__isnull=False) & ~models.Q(status="void"),
                        fields=("subscription", "period_start"),
                        name="uq_live_invoice_per_subscription_period"),
                    models.CheckConstraint(
                        condition=models.Q(amount_due__gte=0), name="inv_amount_due_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="InvoiceLine",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("position", models.PositiveSmallIntegerField(default=1)),
                ("description", models.CharField(max_length=255)),
                ("line_type", models.CharField(
                    choices=[
                        ("service", "Service"), ("domain", "Domain"), ("hosting", "Hosting"),
                        ("setup_fee", "Setup fee"), ("gateway_fee", "Gateway fee"), ("adjustment", "Adjustment"),
                    ],
                    default="service", max_length=16)),
                ("is_gateway_fee", models.BooleanField(default=False)),
                ("quantity", models.DecimalField(decimal_places=4, default=decimal.Decimal("1"), max_digits=14)),
                ("unit_price", models.DecimalField(decimal_places=4, default=decimal.Decimal("0.00"), max_digits=18)),
                ("line_subtotal", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("discount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("tax_rate", models.DecimalField(decimal_places=4, default=decimal.Decimal("0"), max_digits=7)),
                ("tax_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("total_with_tax", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("invoice", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name="lines",
                    to="billing_core.invoice")),
            ],
            options={
                "ordering": ["invoice", "position"],
                "indexes": [models.Index(fields=["invoice", "line_type"], name="invoiceline_type_idx")],
            },
        ),
        # ---------- Money movements ----------
        migrations.CreateModel(
            name="CustomerCredit",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("currency_code", models.CharField(max_length=3)),
                ("balance", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("customer", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="credits",
                    to="billing_core.customer")),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=("customer", "currency_code"), name="uq_credit_customer_currency"),
                    models.CheckConstraint(condition=models.Q(balance__gte=0), name="credit_balance_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentTransaction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("amount", models.DecimalField(decimal_places=2, max_digits=18)),
                ("currency_code", models.CharField(max_length=3)),
                ("base_currency_code", models.CharField(max_length=3)),
                ("exchange_rate", models.DecimalField(decimal_places=8, default=decimal.Decimal("1"), max_digits=18)),
                ("base_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("gateway_fee_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("status", models.CharField(
                    choices=[
                        ("pending", "Pending"), ("authorized", "Authorized"), ("captured", "Captured"),
                        ("failed", "Failed"), ("refunded", "Refunded"), ("partially_refunded", "Partially refunded"),
                    ],
                    default="pending", max_length=20)),
                ("refunded_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("gateway_transaction_id", models.CharField(blank=True, max_length=200, null=True, unique=True)),
                ("idempotency_key", models.CharField(blank=True, max_length=200, null=True, unique=True)),
                ("failure_reason", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("captured_at", models.DateTimeField(blank=True, null=True)),
                ("customer", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="payment_transactions",
                    to="billing_core.customer")),
                ("invoice", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    related_name="payment_transactions", to="billing_core.invoice")),
                ("payment_method", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL,
                    to="billing_core.customerpaymentmethod")),
                ("exchange_rate_ref", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    related_name="payment_transactions", to="billing_core.exchangerate")),
            ],
            options={
                "indexes": [
                    models.Index(fields=["customer", "status"], name="tx_customer_status_idx"),
                    models.Index(fields=["status", "created_at"], name="tx_status_created_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(amount__gt=0), name="tx_amount_positive"),
                    models.CheckConstraint(
                        condition=models.Q(refunded_amount__lte=models.F("amount")),
                        name="tx_refund_within_amount"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CreditTransaction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("type", models.CharField(
                    choices=[
                        ("overpayment", "Overpayment"), ("credit_note", "Credit note"),
                        ("applied", "Applied to invoice"), ("refund_reversal", "Refund reversal"),
                        ("adjustment", "Manual adjustment"),
                    ],
                    max_length=20)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=18)),
                ("balance_after", models.DecimalField(decimal_places=2, max_digits=18)),
                ("description", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("credit", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="transactions",
                    to="billing_core.customercredit")),
                ("payment_transaction", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    related_name="credit_transactions", to="billing_core.paymenttransaction")),
                ("invoice", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    related_name="credit_transactions", to="billing_core.invoice")),
            ],
            options={
                "ordering": ["created_at", "pk"],
                "constraints": [
                    models.CheckConstraint(condition=~models.Q(amount=0), name="credit_tx_non_zero"),
                ],
            },
        ),
        migrations.CreateModel(
            name="InvoicePayment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("amount_applied", models.DecimalField(decimal_places=2, max_digits=18)),
                ("invoice_balance_after", models.DecimalField(decimal_places=2, max_digits=18)),
                ("is_full_payment", models.BooleanField(default=False)),
                ("is_reversal", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("invoice", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="allocations",
                    to="billing_core.invoice")),
                ("payment_transaction", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    related_name="allocations", to="billing_core.paymenttransaction")),
                ("credit_transaction", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    related_name="allocations", to="billing_core.credittransaction")),
            ],
            options={
                "ordering": ["created_at", "pk"],
                "indexes": [
                    models.Index(fields=["invoice"], name="allocation_invoice_idx"),
                    models.Index(fields=["payment_transaction"], name="allocation_tx_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=(
                            models.Q(payment_transaction__isnull=False, credit_transaction__isnull=True)
                            | models.Q(payment_transaction__isnull=True, credit_transaction__isnull=False)
                        ),
                        name="allocation_single_source"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentAttempt",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("attempted_amount", models.DecimalField(decimal_places=2, max_digits=18)),
                ("currency_code", models.CharField(max_length=3)),
                ("status", models.CharField(
                    choices=[
                        ("processing", "Processing"), ("pending", "Pending"), ("succeeded", "Succeeded"),
                        ("failed", "Failed"), ("requires_action", "Requires authentication"),
                    ],
                    default="processing", max_length=20)),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("next_retry_at", models.DateTimeField(blank=True, null=True)),
                ("requires_authentication", models.BooleanField(default=False)),
                ("idempotency_key", models.CharField(max_length=200)),
                ("error_message", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("invoice", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="payment_attempts",
                    to="billing_core.invoice")),
                ("payment_method", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL,
                    to="billing_core.customerpaymentmethod")),
                ("payment_transaction", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL,
                    related_name="attempts", to="billing_core.paymenttransaction")),
            ],
            options={
                "ordering": ["created_at", "pk"],
                "indexes": [models.Index(fields=["invoice", "created_at"], name="attempt_invoice_created_idx")],
            },
        ),
        migrations.CreateModel(
            name="CouponUsage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("discount_amount", models.DecimalField(decimal_places=2, max_digits=18)),
                ("used_at", models.DateTimeField(auto_now_add=True)),
                ("coupon", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="usages",
                    to="billing_core.coupon")),
                ("customer", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="coupon_usages",
                    to="billing_core.customer")),
                ("invoice", models.OneToOneField(
                    on_delete=django.db.models.deletion.PROTECT, related_name="coupon_usage",
                    to="billing_core.invoice")),
            ],
            options={
                "indexes": [models.Index(fields=["coupon", "customer"], name="couponusage_coupon_cust_idx")],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionBillingHistory",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("status", models.CharField(
                    choices=[("succeeded", "Succeeded"), ("failed", "Failed"), ("pending", "Pending")],
                    max_length=10)),
                ("period_start", models.DateTimeField()),
                ("period_end", models.DateTimeField()),
                ("amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("attempt_number", models.PositiveSmallIntegerField(default=1)),
                ("error_message", models.CharField(blank=True, default="", max_length=255)),
                ("attempted_at", models.DateTimeField()),
                ("subscription", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name="billing_history",
                    to="billing_core.subscription")),
                ("invoice", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    related_name="billing_history", to="billing_core.invoice")),
                ("payment_transaction", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    related_name="billing_history", to="billing_core.paymenttransaction")),
            ],
            options={
                "ordering": ["attempted_at", "pk"],
                "verbose_name_plural": "subscription billing history",
            },
        ),
        # ---------- Refunds and vendor side ----------
        migrations.CreateModel(
            name="Refund",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("amount", models.DecimalField(decimal_places=2, max_digits=18)),
                ("currency_code", models.CharField(max_length=3)),
                ("base_amount", models.DecimalField(decimal_places=2, max_digits=18)),
                ("reason", models.CharField(max_length=255)),
                ("status", models.CharField(
                    choices=[
                        ("pending", "Pending"), ("requires_approval", "Requires approval"),
                        ("processed", "Processed"), ("failed", "Failed"), ("denied", "Denied"),
                    ],
                    default="pending", max_length=20)),
                ("requested_by", models.CharField(blank=True, default="", max_length=150)),
                ("failure_reason", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("payment_transaction", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="refunds",
                    to="billing_core.paymenttransaction")),
                ("invoice", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    related_name="refunds", to="billing_core.invoice")),
                ("lines", models.ManyToManyField(blank=True, related_name="refunds", to="billing_core.invoiceline")),
            ],
            options={
                "indexes": [models.Index(fields=["payment_transaction", "status"], name="refund_tx_status_idx")],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(amount__gt=0), name="refund_amount_positive"),
                ],
            },
        ),
        migrations.CreateModel(
            name="RefundLossAudit",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("currency_code", models.CharField(max_length=3)),
                ("original_invoice_amount", models.DecimalField(
                    decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("refunded_amount", models.DecimalField(decimal_places=2, max_digits=18)),
                ("vendor_cost_unrecoverable", models.DecimalField(decimal_places=2, max_digits=18)),
                ("net_loss", models.DecimalField(decimal_places=2, max_digits=18)),
                ("reason", models.CharField(blank=True, default="", max_length=255)),
                ("approval_status", models.CharField(
                    choices=[
                        ("pending", "Pending approval"), ("approved", "Approved"), ("denied", "Denied"),
                        ("auto_approved", "Auto-approved (below threshold)"),
                    ],
                    default="pending", max_length=16)),
                ("approved_by", models.CharField(blank=True, default="", max_length=150)),
                ("approved_at", models.DateTimeField(blank=True, null=True)),
                ("denial_reason", models.CharField(blank=True, default="", max_length=255)),
                ("internal_notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("refund", models.OneToOneField(
                    on_delete=django.db.models.deletion.PROTECT, related_name="loss_audit",
                    to="billing_core.refund")),
                ("invoice", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.PROTECT,
                    related_name="refund_loss_audits", to="billing_core.invoice")),
            ],
            options={
                "indexes": [
                    models.Index(fields=["approval_status", "created_at"], name="lossaudit_status_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Vendor",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=200, unique=True)),
                ("currency_code", models.CharField(max_length=3)),
                ("contact_email", models.EmailField(blank=True, max_length=254, null=True)),
                ("is_active", models.BooleanField(default=True)),
            ],
        ),
        migrations.CreateModel(
            name="VendorPayout",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("currency_code", models.CharField(max_length=3)),
                ("total_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("base_total_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=18)),
                ("status", models.CharField(
                    choices=[
                        ("scheduled", "Scheduled"), ("processing", "Processing"), ("paid", "Paid"),
                        ("failed", "Failed"), ("requires_intervention", "Requires intervention"),
                    ],
                    default="scheduled", max_length=24)),
                ("scheduled_date", models.DateField()),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("failure_reason", models.CharField(blank=True, default="", max_length=255)),
                ("intervention_notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("vendor", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="payouts",
                    to="billing_core.vendor")),
            ],
            options={
                "indexes": [models.Index(fields=["vendor", "status"], name="payout_vendor_status_idx")],
            },
        ),
        migrations.CreateModel(
            name="VendorCost",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("vendor_currency_code", models.CharField(max_length=3)),
                ("vendor_amount", models.DecimalField(decimal_places=2, max_digits=18)),
                ("base_currency_code", models.CharField(max_length=3)),
                ("exchange_rate", models.DecimalField(decimal_places=8, default=decimal.Decimal("1"), max_digits=18)),
                ("base_amount", models.DecimalField(decimal_places=2, max_digits=18)),
                ("is_refundable", models.BooleanField(default=False)),
                ("refund_deadline", models.DateTimeField(blank=True, null=True)),
                ("status", models.CharField(
                    choices=[
                        ("estimated", "Estimated"), ("committed", "Committed"), ("paid", "Paid"),
                        ("refunded", "Refunded by vendor"),
                    ],
                    default="committed", max_length=10)),
                ("notes", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("invoice_line", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="vendor_costs",
                    to="billing_core.invoiceline")),
                ("vendor", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="costs",
                    to="billing_core.vendor")),
                ("payout", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL,
                    related_name="costs", to="billing_core.vendorpayout")),
            ],
            options={
                "indexes": [
                    models.Index(fields=["vendor", "status"], name="vendorcost_vendor_status_idx"),
                    models.Index(fields=["invoice_line"], name="vendorcost_line_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(vendor_amount__gte=0), name="vendor_cost_non_negative"),
                ],
            },
        ),
    ]
