from decimal import Decimal
from django.core.exceptions import ValidationError
from django.db import models
from .customer import Customer

CREDIT_TX_TYPE_CHOICES = [
    ("overpayment", "Overpayment"),
    ("credit_note", "Credit note"),
    ("applied", "Applied to invoice"),
    ("refund_reversal", "Refund reversal"),
    ("adjustment", "Manual adjustment"),
]


# ---------- Customer credit ----------
class CustomerCredit(models.Model):  # Running balance per customer/currency
    customer = models.ForeignKey(
        Customer, on_delete=models.PROTECT, related_name="credits")
    currency_code = models.CharField(max_length=3)
    balance = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["customer", "currency_code"], name="uq_credit_customer_currency"),
            models.CheckConstraint(
                condition=models.Q(balance__gte=0), name="credit_balance_non_negative"),
        ]

    def __str__(self):
        return f"{self.customer} credit {self.balance} {self.currency_code}"


class CreditTransaction(models.Model):
    """
    Append-only movement on a CustomerCredit.
    balance_after = previous balance + amount, snapshotted at insert.
    """
    credit = models.ForeignKey(
        CustomerCredit, on_delete=models.PROTECT, related_name="transactions")
    type = models.CharField(max_length=20, choices=CREDIT_TX_TYPE_CHOICES)
    # signed: positive adds credit, negative consumes it
    amount = models.DecimalField(max_digits=18, decimal_places=2)
    balance_after = models.DecimalField(max_digits=18, decimal_places=2)
    payment_transaction = models.ForeignKey(
        "billing_core.PaymentTransaction", null=True, blank=True,
        on_delete=models.PROTECT, related_name="credit_transactions")
    invoice = models.ForeignKey(
        "billing_core.Invoice", null=True, blank=True,
        on_delete=models.PROTECT, related_name="credit_transactions")
    description = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "pk"]
        constraints = [
            models.CheckConstraint(
                condition=~models.Q(amount=0), name="credit_tx_non_zero"),
        ]

    def __str__(self):
        return f"{self.type} {self.amount} -> {self.balance_after}"

    def save(self, *args, **kwargs):
        if self.pk:
            raise ValidationError("Credit transactions are append-only")
        return super().save(*args, **kwargs)
