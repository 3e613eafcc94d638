from django.contrib import admin

from billing_core.models import (CreditTransaction, CustomerPaymentMethod,
                                 CustomerTaxProfile, InvoiceLine,
                                 InvoicePayment, SubscriptionBillingHistory,
                                 VendorCost)

# ---------- Helpful inline admin classes ----------


class InvoiceLineInline(admin.TabularInline):
    """Shows invoice lines under an Invoice page. Lines are written by the
    compiler only, so they are always read-only here."""

    model = InvoiceLine
    extra = 0  # don't show "empty" rows by default
    fields = (
        "position", "description", "line_type", "quantity", "unit_price",
        "line_subtotal", "discount", "tax_amount", "total_with_tax",
    )
    readonly_fields = fields
    ordering = ("position",)
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


class AllocationInline(admin.TabularInline):
    """Allocation ledger rows under an Invoice page (append-only)."""

    model = InvoicePayment
    extra = 0
    fields = (
        "created_at", "payment_transaction", "credit_transaction",
        "amount_applied", "invoice_balance_after", "is_full_payment", "is_reversal",
    )
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False

    def get_queryset(self, request):
        qs = super().get_queryset(request)
        return qs.select_related("payment_transaction", "credit_transaction")


class VendorCostInline(admin.TabularInline):
    """Internal costs under an InvoiceLine page (never customer-facing)."""

    model = VendorCost
    extra = 0
    fields = (
        "vendor", "vendor_amount", "vendor_currency_code", "base_amount",
        "is_refundable", "refund_deadline", "status", "payout",
    )
    readonly_fields = ("base_amount", "payout")
    show_change_link = True


class CustomerTaxProfileInline(admin.StackedInline):
    model = CustomerTaxProfile
    extra = 0


class CustomerPaymentMethodInline(admin.TabularInline):
    model = CustomerPaymentMethod
    extra = 0
    fields = ("label", "gateway_token", "is_default", "is_active")


class CreditTransactionInline(admin.TabularInline):
    model = CreditTransaction
    extra = 0
    fields = ("created_at", "type", "amount", "balance_after", "payment_transaction", "invoice", "description")
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


class BillingHistoryInline(admin.TabularInline):
    model = SubscriptionBillingHistory
    extra = 0
    fields = ("attempted_at", "status", "period_start", "period_end", "amount",
              "attempt_number", "invoice", "payment_transaction", "error_message")
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False
