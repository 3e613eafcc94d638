from decimal import Decimal
from django.db import models
from ..exceptions import InvalidTransition
from .invoice import Invoice, InvoiceLine
from .payment import PaymentTransaction

REFUND_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("requires_approval", "Requires approval"),
    ("processed", "Processed"),
    ("failed", "Failed"),
    ("denied", "Denied"),
]

APPROVAL_STATUS_CHOICES = [
    ("pending", "Pending approval"),
    ("approved", "Approved"),
    ("denied", "Denied"),
    ("auto_approved", "Auto-approved (below threshold)"),
]


class Refund(models.Model):
    payment_transaction = models.ForeignKey(
        PaymentTransaction, on_delete=models.PROTECT, related_name="refunds")
    invoice = models.ForeignKey(
        Invoice, null=True, blank=True, on_delete=models.PROTECT, related_name="refunds")
    # Lines being refunded; empty = everything the transaction paid for
    lines = models.ManyToManyField(InvoiceLine, blank=True, related_name="refunds")
    amount = models.DecimalField(max_digits=18, decimal_places=2)
    currency_code = models.CharField(max_length=3)
    # amount x the transaction's pinned rate
    base_amount = models.DecimalField(max_digits=18, decimal_places=2)
    reason = models.CharField(max_length=255)
    status = models.CharField(max_length=20, choices=REFUND_STATUS_CHOICES, default="pending")
    requested_by = models.CharField(max_length=150, blank=True, default="")
    failure_reason = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    ALLOWED_TRANSITIONS = {
        "pending": ["requires_approval", "processed", "failed"],
        "requires_approval": ["processed", "failed", "denied"],
        "processed": [],
        "failed": [],
        "denied": [],
    }

    class Meta:
        indexes = [models.Index(fields=["payment_transaction", "status"], name="refund_tx_status_idx")]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gt=0), name="refund_amount_positive"),
        ]

    def __str__(self):
        return f"Refund {self.pk} {self.amount} {self.currency_code} ({self.status})"

    def transition_to(self, new_status):
        if new_status not in self.ALLOWED_TRANSITIONS.get(self.status, []):
            raise InvalidTransition(
                f"Cannot go from {self.status} to {new_status}")
        self.status = new_status
        return self


class RefundLossAudit(models.Model):
    """Money we refund but cannot claw back from the vendor."""
    refund = models.OneToOneField(Refund, on_delete=models.PROTECT, related_name="loss_audit")
    invoice = models.ForeignKey(
        Invoice, null=True, blank=True, on_delete=models.PROTECT, related_name="refund_loss_audits")
    # All amounts below are in base currency
    currency_code = models.CharField(max_length=3)
    original_invoice_amount = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    refunded_amount = models.DecimalField(max_digits=18, decimal_places=2)
    vendor_cost_unrecoverable = models.DecimalField(max_digits=18, decimal_places=2)
    net_loss = models.DecimalField(max_digits=18, decimal_places=2)
    reason = models.CharField(max_length=255, blank=True, default="")
    approval_status = models.CharField(max_length=16, choices=APPROVAL_STATUS_CHOICES, default="pending")
    # Identity comes from the external auth system
    approved_by = models.CharField(max_length=150, blank=True, default="")
    approved_at = models.DateTimeField(null=True, blank=True)
    denial_reason = models.CharField(max_length=255, blank=True, default="")
    internal_notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["approval_status", "created_at"], name="lossaudit_status_created_idx")]

    def __str__(self):
        return f"Loss {self.net_loss} {self.currency_code} on refund {self.refund_id} ({self.approval_status})"
