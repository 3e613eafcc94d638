from django.core.exceptions import ValidationError
from django.db import models
from .currency import Currency


# ---------- Customer ----------
# Represents a reseller client who receives invoices (AR side)
class Customer(models.Model):
    name = models.CharField(max_length=200)
    email = models.EmailField(null=True, blank=True)
    # Currency invoices are displayed in unless a caller overrides it
    preferred_currency = models.ForeignKey(
        Currency, on_delete=models.PROTECT, related_name="customers")
    # Standard credit terms: invoice due N days after issue
    payment_terms_days = models.IntegerField(default=30)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=["name"], name="customer_name_idx")]

    def __str__(self):
        return self.name


class CustomerTaxProfile(models.Model):
    """Tax residence and exemption data used once per invoice."""
    customer = models.OneToOneField(
        Customer, on_delete=models.CASCADE, related_name="tax_profile")
    country_code = models.CharField(max_length=2)  # 'NO', 'DE'
    # Optional subdivision, e.g. 'CA-ON'; more specific than the country
    region_code = models.CharField(max_length=10, blank=True, default="")
    tax_id = models.CharField(max_length=64, blank=True, default="")
    is_tax_exempt = models.BooleanField(default=False)
    exemption_reason = models.CharField(max_length=200, blank=True, default="")

    def __str__(self):
        return f"{self.customer} ({self.jurisdiction})"

    @property
    def jurisdiction(self):
        return self.region_code or self.country_code

    def clean(self):
        if self.is_tax_exempt and not self.exemption_reason:
            raise ValidationError("Tax-exempt profiles must state a reason")

    def save(self, *args, **kwargs):
        self.country_code = self.country_code.upper()
        self.full_clean()
        return super().save(*args, **kwargs)


class CustomerPaymentMethod(models.Model):
    """A stored, gateway-tokenised way to charge the customer."""
    customer = models.ForeignKey(
        Customer, on_delete=models.CASCADE, related_name="payment_methods")
    gateway_token = models.CharField(max_length=200)
    label = models.CharField(max_length=100, blank=True, default="")  # 'Visa ..4242'
    is_default = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            # At most one default method per customer
            models.UniqueConstraint(
                fields=["customer"],
                condition=models.Q(is_default=True),
                name="uq_customer_default_payment_method",
            ),
        ]

    def __str__(self):
        return self.label or f"Payment method {self.pk}"
