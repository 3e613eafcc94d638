from django.core.exceptions import ValidationError
from django.db import models


class TaxRule(models.Model):
    """
    Effective-dated tax rate for a jurisdiction.
    jurisdiction is a country code ('NO') or a region code ('CA-ON');
    region rules beat country rules for customers resident in the region.
    """
    jurisdiction = models.CharField(max_length=10)
    name = models.CharField(max_length=100)  # 'VAT 25%'
    authority = models.CharField(max_length=100, blank=True, default="")
    rate = models.DecimalField(max_digits=7, decimal_places=4)  # 0.2500
    effective_from = models.DateField()
    effective_to = models.DateField(null=True, blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        indexes = [models.Index(fields=["jurisdiction", "effective_from"], name="taxrule_jurisdiction_idx")]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(rate__gte=0) & models.Q(rate__lt=1),
                name="tax_rate_fraction",
            ),
        ]

    def __str__(self):
        return f"{self.jurisdiction} {self.name} ({self.rate})"

    def clean(self):
        if self.effective_to and self.effective_to < self.effective_from:
            raise ValidationError("effective_to must not precede effective_from")

    def save(self, *args, **kwargs):
        self.jurisdiction = self.jurisdiction.upper()
        self.full_clean()
        return super().save(*args, **kwargs)
