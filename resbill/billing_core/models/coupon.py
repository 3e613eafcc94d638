from decimal import Decimal
from django.core.exceptions import ValidationError
from django.db import models
from .currency import Currency

DISCOUNT_TYPE_CHOICES = [
    ("percentage", "Percentage"),
    ("fixed", "Fixed amount"),
]


# ---------- Coupon ----------
class Coupon(models.Model):
    code = models.CharField(max_length=50, unique=True)
    description = models.CharField(max_length=200, blank=True, default="")
    discount_type = models.CharField(max_length=10, choices=DISCOUNT_TYPE_CHOICES)
    # percentage: 10 means 10%; fixed: amount in `currency`
    value = models.DecimalField(max_digits=12, decimal_places=2)
    # Only for fixed coupons; converted when the invoice currency differs
    currency = models.ForeignKey(
        Currency, null=True, blank=True, on_delete=models.PROTECT)
    # Empty list = every line type is eligible (gateway fees never are)
    eligible_line_types = models.JSONField(default=list, blank=True)
    minimum_amount = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"))
    valid_from = models.DateTimeField()
    valid_until = models.DateTimeField(null=True, blank=True)
    # None = unlimited
    max_usages = models.PositiveIntegerField(null=True, blank=True)
    max_usages_per_customer = models.PositiveIntegerField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=models.Q(value__gt=0), name="coupon_value_positive"),
        ]

    def __str__(self):
        return self.code

    def clean(self):
        if self.discount_type == "percentage" and self.value > 100:
            raise ValidationError("Percentage coupons cannot exceed 100%")
        if self.discount_type == "fixed" and not self.currency_id:
            raise ValidationError("Fixed coupons need a currency")
        if self.valid_until and self.valid_until <= self.valid_from:
            raise ValidationError("valid_until must be after valid_from")

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)

    def usage_count(self, customer=None):
        qs = self.usages.all()
        if customer is not None:
            qs = qs.filter(customer=customer)
        return qs.count()


class CouponUsage(models.Model):
    """Append-only: one row per invoice the coupon discounted."""
    coupon = models.ForeignKey(
        Coupon, on_delete=models.PROTECT, related_name="usages")
    customer = models.ForeignKey(
        "billing_core.Customer", on_delete=models.PROTECT, related_name="coupon_usages")
    invoice = models.OneToOneField(
        "billing_core.Invoice", on_delete=models.PROTECT, related_name="coupon_usage")
    discount_amount = models.DecimalField(max_digits=18, decimal_places=2)
    used_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=["coupon", "customer"], name="couponusage_coupon_cust_idx")]

    def __str__(self):
        return f"{self.coupon} on {self.invoice} ({self.discount_amount})"

    def save(self, *args, **kwargs):
        if self.pk:
            raise ValidationError("Coupon usages are append-only")
        return super().save(*args, **kwargs)
