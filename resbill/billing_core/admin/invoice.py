from django.contrib import admin
from django.db.models import Prefetch

from billing_core.models import (Coupon, CouponUsage, Customer, Invoice,
                                 InvoiceLine, TaxRule)

from .actions import void_invoices
from .inlines import (AllocationInline, CustomerPaymentMethodInline,
                      CustomerTaxProfileInline, InvoiceLineInline,
                      VendorCostInline)
from .ReadOnly import ReadOnlyAdmin


# Register `Invoice` model
@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "invoice_number",
        "kind",
        "customer",
        "issue_date",
        "due_date",
        "status",
        "currency_code",
        "total_amount",
        "amount_due",
    )
    list_filter = ("status", "kind", "currency_code", "issue_date")
    actions = [void_invoices]
    search_fields = ("invoice_number", "customer__name")
    inlines = [InvoiceLineInline, AllocationInline]

    # Invoices are created by the compiler only
    def has_add_permission(self, request):
        return False

    """ Enforce immutability at admin level """

    def get_readonly_fields(self, request, obj=None):
        # Everything but the notes is frozen; balances move through services
        return [f.name for f in self.model._meta.fields if f.name != "notes"]

    def has_delete_permission(self, request, obj=None):
        # only drafts can go (signals block the rest anyway)
        if obj and obj.status != "draft":
            return False
        return super().has_delete_permission(request, obj)

    def get_queryset(self, request):
        qs = super().get_queryset(request)
        # Fetch customer in the same query, lines in one more
        return qs.select_related("customer").prefetch_related(
            Prefetch("lines", queryset=InvoiceLine.objects.order_by("position"))
        )


# Register `InvoiceLine` model
@admin.register(InvoiceLine)
class InvoiceLineAdmin(admin.ModelAdmin):
    list_display = ("id", "invoice", "description", "line_type", "total_with_tax")
    list_filter = ("line_type",)
    search_fields = ("description", "invoice__invoice_number")
    inlines = [VendorCostInline]

    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def get_queryset(self, request):
        qs = super().get_queryset(request)
        return qs.select_related("invoice")


# Register `Customer` model
@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "name",
        "email",
        "preferred_currency",
        "payment_terms_days",
        "is_active",
    )
    search_fields = ("name", "email")
    list_filter = ("is_active", "preferred_currency")
    inlines = [CustomerTaxProfileInline, CustomerPaymentMethodInline]


@admin.register(TaxRule)
class TaxRuleAdmin(admin.ModelAdmin):
    list_display = ("jurisdiction", "name", "rate", "effective_from", "effective_to", "is_active")
    list_filter = ("jurisdiction", "is_active")


@admin.register(Coupon)
class CouponAdmin(admin.ModelAdmin):
    list_display = ("code", "discount_type", "value", "currency", "valid_from", "valid_until",
                    "max_usages", "is_active")
    list_filter = ("discount_type", "is_active")
    search_fields = ("code", "description")


@admin.register(CouponUsage)
class CouponUsageAdmin(ReadOnlyAdmin):
    list_display = ("coupon", "customer", "invoice", "discount_amount", "used_at")
