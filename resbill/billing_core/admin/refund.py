from django.contrib import admin

from billing_core.models import (Refund, RefundLossAudit, Vendor, VendorCost,
                                 VendorPayout)

from .actions import approve_refund_losses, deny_refund_losses
from .ReadOnly import ReadOnlyAdmin


@admin.register(Refund)
class RefundAdmin(ReadOnlyAdmin):
    list_display = ("id", "payment_transaction", "invoice", "amount", "currency_code",
                    "status", "requested_by", "created_at", "processed_at")


# Register `RefundLossAudit` model (human approval workflow)
@admin.register(RefundLossAudit)
class RefundLossAuditAdmin(admin.ModelAdmin):
    list_display = ("id", "refund", "invoice", "net_loss", "currency_code",
                    "approval_status", "approved_by", "created_at")
    list_filter = ("approval_status",)
    actions = [approve_refund_losses, deny_refund_losses]

    # decisions go through the actions; only the notes are free text
    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields if f.name != "internal_notes"]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Vendor)
class VendorAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "currency_code", "contact_email", "is_active")
    search_fields = ("name",)


@admin.register(VendorCost)
class VendorCostAdmin(admin.ModelAdmin):
    list_display = ("id", "vendor", "invoice_line", "vendor_amount", "vendor_currency_code",
                    "base_amount", "is_refundable", "refund_deadline", "status", "payout")
    list_filter = ("vendor", "status", "is_refundable")
    readonly_fields = ("base_amount", "exchange_rate", "payout")


@admin.register(VendorPayout)
class VendorPayoutAdmin(admin.ModelAdmin):
    list_display = ("id", "vendor", "total_amount", "currency_code", "status", "scheduled_date",
                    "processed_at")
    list_filter = ("status", "vendor")
    readonly_fields = ("status", "total_amount", "base_total_amount", "processed_at", "failure_reason")
