from decimal import Decimal
from django.core.exceptions import ValidationError
from django.db import models
from ..exceptions import ImmutableFieldError, InvalidTransition
from ..managers import InvoiceManager
from .customer import Customer

INV_STATUS_CHOICES = [
    ("draft", "Draft"),
    ("issued", "Issued"),
    ("partially_paid", "Partially paid"),
    ("paid", "Paid"),
    ("overdue", "Overdue"),
    ("void", "Void"),
]

INV_KIND_CHOICES = [
    ("invoice", "Invoice"),
    ("credit_note", "Credit note"),
]

LINE_TYPE_CHOICES = [
    ("service", "Service"),
    ("domain", "Domain"),
    ("hosting", "Hosting"),
    ("setup_fee", "Setup fee"),
    ("gateway_fee", "Gateway fee"),
    ("adjustment", "Adjustment"),
]


class Invoice(models.Model):  # Customer-facing bill, frozen once issued

    customer = models.ForeignKey(
        Customer, on_delete=models.PROTECT, related_name="invoices")
    # human-readable (e.g. "INV-2026-000042"), assigned at issue time
    invoice_number = models.CharField(max_length=64, unique=True, null=True, blank=True)
    kind = models.CharField(max_length=12, choices=INV_KIND_CHOICES, default="invoice")
    # Credit notes point back at the invoice they correct
    original_invoice = models.ForeignKey(
        "self", null=True, blank=True, on_delete=models.PROTECT,
        related_name="credit_notes")

    # Subscription cycle this invoice bills, if any (id lookup, no ownership)
    subscription = models.ForeignKey(
        "billing_core.Subscription", null=True, blank=True,
        on_delete=models.PROTECT, related_name="invoices")
    period_start = models.DateTimeField(null=True, blank=True)
    period_end = models.DateTimeField(null=True, blank=True)

    # Currency snapshot: display currency -> base currency, pinned at issue
    currency_code = models.CharField(max_length=3)
    base_currency_code = models.CharField(max_length=3)
    exchange_rate = models.DecimalField(
        max_digits=18, decimal_places=8, default=Decimal("1"))
    exchange_rate_date = models.DateTimeField(null=True, blank=True)
    exchange_rate_ref = models.ForeignKey(
        "billing_core.ExchangeRate", null=True, blank=True,
        on_delete=models.PROTECT, related_name="invoices")

    coupon = models.ForeignKey(
        "billing_core.Coupon", null=True, blank=True,
        on_delete=models.PROTECT, related_name="invoices")

    # Totals: total_amount = subtotal - discount_amount + tax_amount
    subtotal = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    discount_amount = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    tax_rate = models.DecimalField(max_digits=7, decimal_places=4, default=Decimal("0"))
    tax_name = models.CharField(max_length=100, blank=True, default="")
    tax_authority = models.CharField(max_length=100, blank=True, default="")
    tax_amount = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    total_amount = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    base_total_amount = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))

    # Balance: amount_due = total_amount - amount_paid
    amount_paid = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    amount_due = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))

    status = models.CharField(max_length=16, choices=INV_STATUS_CHOICES, default="draft")
    """ Workflow:
        draft = lines still editable.
        issued = financial fields frozen, waiting for money.
        partially_paid / overdue = open with a balance.
        paid = settled.  void = cancelled, nothing was paid. """

    issue_date = models.DateField(null=True, blank=True)
    due_date = models.DateField(null=True, blank=True)
    issued_at = models.DateTimeField(null=True, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    voided_at = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")

    # Optimistic concurrency token for every balance write
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = InvoiceManager()

    # Frozen once the invoice leaves draft; fix mistakes with a credit note
    FINANCIAL_FIELDS = (
        "customer_id", "kind", "currency_code", "base_currency_code",
        "exchange_rate", "exchange_rate_date", "exchange_rate_ref_id",
        "coupon_id", "subtotal", "discount_amount", "tax_rate", "tax_name",
        "tax_amount", "total_amount", "base_total_amount", "issue_date",
        "period_start", "period_end",
    )

    # Current state vs. allowed next states
    ALLOWED_TRANSITIONS = {
        "draft": ["issued", "void"],
        "issued": ["partially_paid", "paid", "overdue", "void"],
        "partially_paid": ["paid", "overdue", "issued"],
        "overdue": ["partially_paid", "paid", "void"],
        # a refund can re-open a settled invoice
        "paid": ["partially_paid", "overdue", "issued"],
        "void": [],
    }

    class Meta:
        indexes = [
            models.Index(fields=["customer", "status", "due_date"], name="invoice_customer_status_idx"),
            models.Index(fields=["subscription", "period_start"], name="invoice_sub_period_idx"),
        ]
        constraints = [
            # One live invoice per subscription period (idempotent billing)
            models.UniqueConstraint(
                fields=["subscription", "period_start"],
                condition=models.Q(subscription__isnull=False) & ~models.Q(status="void"),
                name="uq_live_invoice_per_subscription_period",
            ),
            models.CheckConstraint(
                condition=models.Q(amount_due__gte=0),
                name="inv_amount_due_non_negative",
            ),
        ]

    def __str__(self):
        return f"Inv {self.invoice_number or self.pk}"

    @property
    def is_open(self):
        return self.status in ("issued", "partially_paid", "overdue") and self.amount_due > 0

    @classmethod
    def can_transition(cls, old_status, new_status):
        return old_status == new_status or new_status in cls.ALLOWED_TRANSITIONS.get(old_status, [])

    def clean(self):
        """Make issued invoices immutable in all code paths
        (admin, services, shell)"""
        if self.pk:
            orig = Invoice.objects.get(pk=self.pk)
            if orig.status != "draft":
                changed_fields = [
                    f for f in self.FINANCIAL_FIELDS
                    if getattr(orig, f) != getattr(self, f)
                ]
                if changed_fields:
                    raise ImmutableFieldError(
                        f"Cannot modify {changed_fields} on an issued invoice.")

    def save(self, *args, **kwargs):
        # Keep the balance identity for every full save
        self.amount_due = self.total_amount - self.amount_paid
        if self.kind == "invoice" and self.amount_due < 0:
            raise ValidationError("Amount due cannot be negative")
        self.full_clean(validate_constraints=False)
        return super().save(*args, **kwargs)

    def transition_to(self, new_status):
        if not self.can_transition(self.status, new_status):
            # If requested new_status isn't allowed -> block it
            raise InvalidTransition(
                f"Cannot go from {self.status} to {new_status}")
        self.status = new_status
        self.save(update_fields=["status", "amount_due"])
        return self


class InvoiceLine(models.Model):  # One priced item on an invoice

    invoice = models.ForeignKey(
        Invoice, on_delete=models.CASCADE, related_name="lines")
    position = models.PositiveSmallIntegerField(default=1)
    description = models.CharField(max_length=255)
    line_type = models.CharField(max_length=16, choices=LINE_TYPE_CHOICES, default="service")
    # Surcharges passed on from the payment gateway; never discounted
    is_gateway_fee = models.BooleanField(default=False)

    quantity = models.DecimalField(max_digits=14, decimal_places=4, default=Decimal("1"))
    unit_price = models.DecimalField(max_digits=18, decimal_places=4, default=Decimal("0.00"))
    # quantity x unit_price, rounded
    line_subtotal = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    discount = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    tax_rate = models.DecimalField(max_digits=7, decimal_places=4, default=Decimal("0"))
    tax_amount = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    # line_subtotal - discount + tax_amount
    total_with_tax = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))

    class Meta:
        ordering = ["invoice", "position"]
        indexes = [models.Index(fields=["invoice", "line_type"], name="invoiceline_type_idx")]

    def __str__(self):
        return f"{self.invoice} #{self.position}: {self.description} ({self.total_with_tax})"

    @property
    def net_amount(self):
        return self.line_subtotal - self.discount

    def save(self, *args, **kwargs):
        status = Invoice.objects.only("status").get(pk=self.invoice_id).status
        if status != "draft":
            raise ImmutableFieldError("Lines of an issued invoice cannot change")
        self.total_with_tax = self.line_subtotal - self.discount + self.tax_amount
        return super().save(*args, **kwargs)
