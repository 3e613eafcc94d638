from decimal import Decimal
from django.core.exceptions import ValidationError
from django.db import models
from ..exceptions import InvalidTransition
from .invoice import InvoiceLine

VENDOR_COST_STATUS_CHOICES = [
    ("estimated", "Estimated"),
    ("committed", "Committed"),
    ("paid", "Paid"),
    ("refunded", "Refunded by vendor"),
]

PAYOUT_STATUS_CHOICES = [
    ("scheduled", "Scheduled"),
    ("processing", "Processing"),
    ("paid", "Paid"),
    ("failed", "Failed"),
    ("requires_intervention", "Requires intervention"),
]


class Vendor(models.Model):  # Registrar, hosting provider, licence seller (AP side)
    name = models.CharField(max_length=200, unique=True)
    currency_code = models.CharField(max_length=3)
    contact_email = models.EmailField(null=True, blank=True)
    is_active = models.BooleanField(default=True)

    def __str__(self):
        return self.name


class VendorPayout(models.Model):
    """A scheduled payment to one vendor that settles a batch of costs."""
    vendor = models.ForeignKey(Vendor, on_delete=models.PROTECT, related_name="payouts")
    currency_code = models.CharField(max_length=3)
    total_amount = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    base_total_amount = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    status = models.CharField(max_length=24, choices=PAYOUT_STATUS_CHOICES, default="scheduled")
    scheduled_date = models.DateField()
    processed_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.CharField(max_length=255, blank=True, default="")
    intervention_notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    ALLOWED_TRANSITIONS = {
        "scheduled": ["processing", "paid", "failed"],
        "processing": ["paid", "failed", "requires_intervention"],
        "failed": ["scheduled", "requires_intervention"],
        "requires_intervention": ["scheduled", "paid"],
        "paid": [],
    }

    class Meta:
        indexes = [models.Index(fields=["vendor", "status"], name="payout_vendor_status_idx")]

    def __str__(self):
        return f"Payout {self.pk} to {self.vendor} {self.total_amount} {self.currency_code} ({self.status})"

    def transition_to(self, new_status):
        if new_status not in self.ALLOWED_TRANSITIONS.get(self.status, []):
            raise InvalidTransition(
                f"Cannot go from {self.status} to {new_status}")
        self.status = new_status
        return self


class VendorCost(models.Model):
    """
    Internal cost incurred to fulfil an invoice line (e.g. a domain
    registration fee). Never shown to the customer.
    """
    invoice_line = models.ForeignKey(
        InvoiceLine, on_delete=models.PROTECT, related_name="vendor_costs")
    vendor = models.ForeignKey(Vendor, on_delete=models.PROTECT, related_name="costs")
    payout = models.ForeignKey(
        VendorPayout, null=True, blank=True, on_delete=models.SET_NULL, related_name="costs")

    vendor_currency_code = models.CharField(max_length=3)
    vendor_amount = models.DecimalField(max_digits=18, decimal_places=2)
    # Snapshot: vendor currency -> base currency at the time the cost was booked
    base_currency_code = models.CharField(max_length=3)
    exchange_rate = models.DecimalField(max_digits=18, decimal_places=8, default=Decimal("1"))
    base_amount = models.DecimalField(max_digits=18, decimal_places=2)

    # Refundability policy
    is_refundable = models.BooleanField(default=False)
    refund_deadline = models.DateTimeField(null=True, blank=True)

    status = models.CharField(max_length=10, choices=VENDOR_COST_STATUS_CHOICES, default="committed")
    notes = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["vendor", "status"], name="vendorcost_vendor_status_idx"),
            models.Index(fields=["invoice_line"], name="vendorcost_line_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(vendor_amount__gte=0), name="vendor_cost_non_negative"),
        ]

    def __str__(self):
        return f"{self.vendor} {self.vendor_amount} {self.vendor_currency_code} for line {self.invoice_line_id}"

    def is_recoverable_at(self, when):
        """Can we still get this money back from the vendor at `when`?"""
        if not self.is_refundable:
            return False
        if self.refund_deadline is not None and when > self.refund_deadline:
            return False
        return True

    def clean(self):
        if self.vendor_currency_code == self.base_currency_code and self.exchange_rate != 1:
            raise ValidationError("Same-currency costs must use a rate of 1")

    def save(self, *args, **kwargs):
        self.full_clean(validate_constraints=False)
        return super().save(*args, **kwargs)
