from decimal import Decimal
from dateutil.relativedelta import relativedelta
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from ..exceptions import InvalidTransition
from ..managers import SubscriptionManager
from .customer import Customer, CustomerPaymentMethod
from .invoice import LINE_TYPE_CHOICES

SUB_STATUS_CHOICES = [
    ("trialing", "Trialing"),
    ("active", "Active"),
    ("past_due", "Past due"),
    ("paused", "Paused"),
    ("cancelled", "Cancelled"),
]

PERIOD_UNIT_CHOICES = [
    ("days", "Days"),
    ("months", "Months"),
    ("years", "Years"),
]

HISTORY_STATUS_CHOICES = [
    ("succeeded", "Succeeded"),
    ("failed", "Failed"),
    ("pending", "Pending"),
]


class Subscription(models.Model):
    """
    Recurring charge for one service. Billing progress is persisted here
    (status + retry_count + next_billing_date) so it survives restarts.
    """
    customer = models.ForeignKey(
        Customer, on_delete=models.PROTECT, related_name="subscriptions")
    # External service/product reference (catalog lives elsewhere)
    service_reference = models.CharField(max_length=100)
    description = models.CharField(max_length=200)
    line_type = models.CharField(max_length=16, choices=LINE_TYPE_CHOICES, default="service")
    payment_method = models.ForeignKey(
        CustomerPaymentMethod, null=True, blank=True, on_delete=models.SET_NULL,
        help_text="Falls back to the customer's default method when empty",
    )

    # Price per cycle, in the currency the customer is invoiced in
    amount = models.DecimalField(max_digits=18, decimal_places=2)
    currency_code = models.CharField(max_length=3)
    quantity = models.PositiveIntegerField(default=1)
    billing_period_count = models.PositiveSmallIntegerField(default=1)
    billing_period_unit = models.CharField(max_length=6, choices=PERIOD_UNIT_CHOICES, default="months")

    status = models.CharField(max_length=10, choices=SUB_STATUS_CHOICES, default="active")
    start_date = models.DateTimeField()
    trial_end_date = models.DateTimeField(null=True, blank=True)
    current_period_start = models.DateTimeField()
    current_period_end = models.DateTimeField()
    next_billing_date = models.DateTimeField()

    retry_count = models.PositiveSmallIntegerField(default=0)
    # at least one attempt; exhausting them cancels the subscription
    max_retry_attempts = models.PositiveSmallIntegerField(default=3, validators=[MinValueValidator(1)])
    last_billing_attempt = models.DateTimeField(null=True, blank=True)
    last_successful_billing = models.DateTimeField(null=True, blank=True)

    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=255, blank=True, default="")
    paused_at = models.DateTimeField(null=True, blank=True)
    pause_reason = models.CharField(max_length=255, blank=True, default="")
    send_email_notifications = models.BooleanField(default=True)

    # Claim lease: one billing worker per subscription at a time
    processing_token = models.CharField(max_length=36, null=True, blank=True)
    processing_started_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = SubscriptionManager()

    # Current state vs. allowed next states
    ALLOWED_TRANSITIONS = {
        "trialing": ["active", "paused", "cancelled"],
        "active": ["past_due", "paused", "cancelled"],
        "past_due": ["active", "paused", "cancelled"],
        "paused": ["active", "cancelled"],
        # explicit reactivation only
        "cancelled": ["active"],
    }

    class Meta:
        indexes = [
            models.Index(fields=["status", "next_billing_date"], name="sub_status_next_billing_idx"),
            models.Index(fields=["customer", "status"], name="sub_customer_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(retry_count__lte=models.F("max_retry_attempts")),
                name="sub_retry_within_max",
            ),
            models.CheckConstraint(
                condition=models.Q(max_retry_attempts__gte=1), name="sub_max_retry_at_least_one"),
            models.CheckConstraint(
                condition=models.Q(amount__gte=0), name="sub_amount_non_negative"),
        ]

    def __str__(self):
        return f"Sub {self.pk} {self.description} ({self.status})"

    @property
    def cycle_delta(self):
        count = self.billing_period_count
        if self.billing_period_unit == "days":
            return relativedelta(days=count)
        if self.billing_period_unit == "years":
            return relativedelta(years=count)
        return relativedelta(months=count)

    def next_period(self):
        """The cycle to bill next: [current_period_end, + one cycle)."""
        start = self.current_period_end
        return start, start + self.cycle_delta

    def clean(self):
        if self.current_period_end <= self.current_period_start:
            raise ValidationError("Billing period must end after it starts")
        if self.retry_count > self.max_retry_attempts:
            raise ValidationError("retry_count cannot exceed max_retry_attempts")

    def save(self, *args, **kwargs):
        self.full_clean(validate_constraints=False)
        return super().save(*args, **kwargs)

    def transition_to(self, new_status):
        # Look up what states are allowed from current self.status
        if new_status not in self.ALLOWED_TRANSITIONS.get(self.status, []):
            raise InvalidTransition(
                f"Cannot go from {self.status} to {new_status}")
        self.status = new_status
        return self


class SubscriptionBillingHistory(models.Model):
    """Immutable audit row per billing attempt of a subscription."""
    subscription = models.ForeignKey(
        Subscription, on_delete=models.CASCADE, related_name="billing_history")
    invoice = models.ForeignKey(
        "billing_core.Invoice", null=True, blank=True, on_delete=models.PROTECT,
        related_name="billing_history")
    payment_transaction = models.ForeignKey(
        "billing_core.PaymentTransaction", null=True, blank=True,
        on_delete=models.PROTECT, related_name="billing_history")
    status = models.CharField(max_length=10, choices=HISTORY_STATUS_CHOICES)
    period_start = models.DateTimeField()
    period_end = models.DateTimeField()
    amount = models.DecimalField(max_digits=18, decimal_places=2, default=Decimal("0.00"))
    attempt_number = models.PositiveSmallIntegerField(default=1)
    error_message = models.CharField(max_length=255, blank=True, default="")
    attempted_at = models.DateTimeField()

    class Meta:
        ordering = ["attempted_at", "pk"]
        verbose_name_plural = "subscription billing history"

    def __str__(self):
        return f"{self.subscription} {self.period_start:%Y-%m-%d} {self.status}"

    def save(self, *args, **kwargs):
        if self.pk:
            raise ValidationError("Billing history rows are immutable")
        return super().save(*args, **kwargs)
