from decimal import Decimal
from django.core.exceptions import ValidationError
from django.db import models
from ..exceptions import InvalidTransition
from ..managers import PaymentTransactionManager
from .customer import Customer, CustomerPaymentMethod
from .invoice import Invoice

TX_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("authorized", "Authorized"),
    ("captured", "Captured"),
    ("failed", "Failed"),
    ("refunded", "Refunded"),
    ("partially_refunded", "Partially refunded"),
]

ATTEMPT_STATUS_CHOICES = [
    ("processing", "Processing"),
    ("pending", "Pending"),
    ("succeeded", "Succeeded"),
    ("failed", "Failed"),
    ("requires_action", "Requires authentication"),
]


class PaymentTransaction(models.Model):
    """Money received (or being received) through a payment gateway."""
    customer = models.ForeignKey(
        Customer, on_delete=models.PROTECT, related_name="payment_transactions")
    # Invoice the payment was taken for; None for unsolicited payments
    invoice = models.ForeignKey(
        Invoice, null=True, blank=True, on_delete=models.PROTECT,
        related_name="payment_transactions")
    payment_method = models.ForeignKey(
        CustomerPaymentMethod, null=True, blank=True, on_delete=models.SET_NULL)

    amount = models.DecimalField(max_digits=18, decimal_places=2)
    currency_code = models.CharField(max_length=3)
    # Rate snapshot pinned when the money was captured
    base_currency_code = models.CharField(max_length=3)
    exchange_rate = models.DecimalField(max_digits=18, decimal_places=8, default=Decimal("1"))
    exchange_rate_ref = models.ForeignKey(
        "billing_core.ExchangeRate", null=True, blank=True,
        on_delete=models.PROTECT, related_name="payment_transactions")
    base_amount = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    gateway_fee_amount = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))

    status = models.CharField(max_length=20, choices=TX_STATUS_CHOICES, default="pending")
    refunded_amount = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    gateway_transaction_id = models.CharField(max_length=200, null=True, blank=True, unique=True)
    idempotency_key = models.CharField(max_length=200, null=True, blank=True, unique=True)
    failure_reason = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    captured_at = models.DateTimeField(null=True, blank=True)

    objects = PaymentTransactionManager()

    ALLOWED_TRANSITIONS = {
        "pending": ["authorized", "captured", "failed"],
        "authorized": ["captured", "failed"],
        "captured": ["partially_refunded", "refunded"],
        "partially_refunded": ["partially_refunded", "refunded"],
        "failed": [],
        "refunded": [],
    }

    class Meta:
        indexes = [
            models.Index(fields=["customer", "status"], name="tx_customer_status_idx"),
            models.Index(fields=["status", "created_at"], name="tx_status_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gt=0), name="tx_amount_positive"),
            models.CheckConstraint(
                condition=models.Q(refunded_amount__lte=models.F("amount")),
                name="tx_refund_within_amount",
            ),
        ]

    def __str__(self):
        return f"Tx {self.pk} {self.amount} {self.currency_code} ({self.status})"

    @property
    def refundable_amount(self):
        return self.amount - self.refunded_amount

    @property
    def is_settled(self):
        # Money is actually in our hands
        return self.status in ("captured", "partially_refunded", "refunded")

    def clean(self):
        if self.refunded_amount > self.amount:
            raise ValidationError("Refunded amount cannot exceed transaction amount")

    def save(self, *args, **kwargs):
        self.full_clean(validate_constraints=False)
        return super().save(*args, **kwargs)

    def transition_to(self, new_status):
        if new_status not in self.ALLOWED_TRANSITIONS.get(self.status, []):
            raise InvalidTransition(
                f"Cannot go from {self.status} to {new_status}")
        self.status = new_status
        return self


class InvoicePayment(models.Model):
    """
    Allocation ledger row: money applied to (or reversed from) an invoice.
    Append-only. Per invoice, sum(amount_applied) == invoice.amount_paid.
    Money comes either from a gateway transaction or from customer credit.
    """
    invoice = models.ForeignKey(
        Invoice, on_delete=models.PROTECT, related_name="allocations")
    payment_transaction = models.ForeignKey(
        PaymentTransaction, null=True, blank=True,
        on_delete=models.PROTECT, related_name="allocations")
    credit_transaction = models.ForeignKey(
        "billing_core.CreditTransaction", null=True, blank=True,
        on_delete=models.PROTECT, related_name="allocations")
    # negative for refund reversals
    amount_applied = models.DecimalField(max_digits=18, decimal_places=2)
    invoice_balance_after = models.DecimalField(max_digits=18, decimal_places=2)
    is_full_payment = models.BooleanField(default=False)
    is_reversal = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "pk"]
        indexes = [
            models.Index(fields=["invoice"], name="allocation_invoice_idx"),
            models.Index(fields=["payment_transaction"], name="allocation_tx_idx"),
        ]
        constraints = [
            # Exactly one money source per row
            models.CheckConstraint(
                condition=(
                    models.Q(payment_transaction__isnull=False, credit_transaction__isnull=True)
                    | models.Q(payment_transaction__isnull=True, credit_transaction__isnull=False)
                ),
                name="allocation_single_source",
            ),
        ]

    def __str__(self):
        source = self.payment_transaction_id or f"credit {self.credit_transaction_id}"
        return f"{source} -> {self.invoice} ({self.amount_applied})"

    def save(self, *args, **kwargs):
        if self.pk:
            raise ValidationError("Allocation ledger rows are append-only")
        return super().save(*args, **kwargs)


class PaymentAttempt(models.Model):
    """
    One try at charging a stored payment method for an invoice.
    Many attempts may precede the one that produces a captured transaction.
    """
    invoice = models.ForeignKey(
        Invoice, on_delete=models.PROTECT, related_name="payment_attempts")
    payment_method = models.ForeignKey(
        CustomerPaymentMethod, null=True, blank=True, on_delete=models.SET_NULL)
    payment_transaction = models.ForeignKey(
        PaymentTransaction, null=True, blank=True, on_delete=models.SET_NULL,
        related_name="attempts")
    attempted_amount = models.DecimalField(max_digits=18, decimal_places=2)
    currency_code = models.CharField(max_length=3)
    status = models.CharField(max_length=20, choices=ATTEMPT_STATUS_CHOICES, default="processing")
    retry_count = models.PositiveIntegerField(default=0)
    next_retry_at = models.DateTimeField(null=True, blank=True)
    requires_authentication = models.BooleanField(default=False)
    idempotency_key = models.CharField(max_length=200)
    error_message = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "pk"]
        indexes = [models.Index(fields=["invoice", "created_at"], name="attempt_invoice_created_idx")]

    def __str__(self):
        return f"Attempt {self.pk} on {self.invoice} ({self.status})"
