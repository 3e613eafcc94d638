from django.core.exceptions import ValidationError
from django.db.models.signals import pre_delete
from django.dispatch import receiver

from .models import (CouponUsage, CreditTransaction, Invoice, InvoiceLine,
                     InvoicePayment, SubscriptionBillingHistory, VendorCost)

""" Block invoice deletion once it was issued or received money."""


# pre_delete fires just before Django deletes the instance
@receiver(pre_delete, sender=Invoice)
def prevent_delete_issued_invoice(sender, instance, **kwargs):
    if InvoicePayment.objects.filter(invoice=instance).exists():
        raise ValidationError("Cannot delete invoice with applied payments.")
    # issued invoices are corrected with credit notes or voided
    if instance.status != "draft":
        raise ValidationError("Cannot delete an issued invoice; void it instead.")


"""Lines belong to the invoice snapshot once it is issued."""


@receiver(pre_delete, sender=InvoiceLine)
def prevent_delete_issued_line(sender, instance, **kwargs):
    status = Invoice.objects.filter(pk=instance.invoice_id).values_list("status", flat=True).first()
    if status and status != "draft":
        raise ValidationError("Cannot delete lines of an issued invoice.")


"""Ledger rows are append-only: correct them with new rows."""


@receiver(pre_delete, sender=InvoicePayment)
@receiver(pre_delete, sender=CreditTransaction)
@receiver(pre_delete, sender=CouponUsage)
@receiver(pre_delete, sender=SubscriptionBillingHistory)
def prevent_delete_ledger_rows(sender, instance, **kwargs):
    raise ValidationError(f"{sender.__name__} rows cannot be deleted.")


"""Block deletion of vendor costs already batched for payout."""


@receiver(pre_delete, sender=VendorCost)
def prevent_delete_paid_vendor_cost(sender, instance, **kwargs):
    if instance.payout_id or instance.status == "paid":
        raise ValidationError("Cannot delete a vendor cost that is in a payout.")
