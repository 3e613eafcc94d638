from decimal import Decimal
from django.core.exceptions import ValidationError
from django.db import models
from ..managers import ExchangeRateManager
from ..money import to_rate


# ---------- Currency ----------
class Currency(models.Model):
    """
    ISO currencies. Use currency.code FK in other tables instead of free-text.
    """
    code = models.CharField(max_length=3, primary_key=True)  # 'USD', 'EUR'
    name = models.CharField(max_length=64)  # 'US Dollar'
    symbol = models.CharField(max_length=8, blank=True, null=True)  # '$'
    # Avoid mistakes like storing 12.345 for JPY (which has no sub-units)
    decimal_places = models.PositiveSmallIntegerField(default=2)

    def __str__(self):
        return f"{self.code} ({self.symbol or ''})"

    class Meta:
        verbose_name_plural = "currencies"


# ---------- Exchange rate ----------
class ExchangeRate(models.Model):
    """
    One conversion row: 1 unit of base_currency = rate units of target_currency.
    Rows referenced by an invoice or transaction are frozen (historical
    correctness); supersede them with a newer row instead of editing.
    """
    base_currency = models.ForeignKey(
        Currency, on_delete=models.PROTECT, related_name="rates_from")
    target_currency = models.ForeignKey(
        Currency, on_delete=models.PROTECT, related_name="rates_to")
    rate = models.DecimalField(max_digits=18, decimal_places=8)
    # e.g. 0.02 = 2% on top of the market rate
    markup = models.DecimalField(
        max_digits=8, decimal_places=6, default=Decimal("0"))
    # rate x (1 + markup), kept in sync on save
    effective_rate = models.DecimalField(max_digits=18, decimal_places=8)
    effective_date = models.DateTimeField()
    expiry_date = models.DateTimeField(null=True, blank=True)
    source = models.CharField(max_length=50, default="manual")  # 'ecb', 'manual'
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = ExchangeRateManager()

    # Fields that can never change once an invoice or transaction points here
    FROZEN_FIELDS = ("base_currency_id", "target_currency_id", "rate",
                     "markup", "effective_date")

    class Meta:
        indexes = [
            models.Index(fields=["base_currency", "target_currency", "effective_date"], name="fx_pair_effective_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(rate__gt=0), name="fx_rate_positive"),
        ]

    def __str__(self):
        return (f"{self.base_currency_id}->{self.target_currency_id} "
                f"{self.effective_rate} @ {self.effective_date:%Y-%m-%d %H:%M}")

    def is_referenced(self):
        if not self.pk:
            return False
        return self.invoices.exists() or self.payment_transactions.exists()

    def clean(self):
        if self.base_currency_id == self.target_currency_id:
            raise ValidationError("Base and target currency must differ")
        if self.expiry_date and self.expiry_date <= self.effective_date:
            raise ValidationError("Expiry date must be after effective date")
        if self.is_referenced():
            orig = ExchangeRate.objects.get(pk=self.pk)
            changed = [f for f in self.FROZEN_FIELDS
                       if getattr(orig, f) != getattr(self, f)]
            if changed:
                raise ValidationError(
                    f"Cannot modify {changed} on a rate already used for billing.")

    def save(self, *args, **kwargs):
        self.effective_rate = to_rate(
            Decimal(self.rate) * (Decimal("1") + Decimal(self.markup or 0)))
        self.full_clean()
        return super().save(*args, **kwargs)
