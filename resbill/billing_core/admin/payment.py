from django.contrib import admin

from billing_core.models import (CreditTransaction, Currency, CustomerCredit,
                                 ExchangeRate, InvoicePayment, PaymentAttempt,
                                 PaymentTransaction)

from .inlines import CreditTransactionInline
from .ReadOnly import ReadOnlyAdmin


@admin.register(Currency)
class CurrencyAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "symbol", "decimal_places")


@admin.register(ExchangeRate)
class ExchangeRateAdmin(admin.ModelAdmin):
    list_display = ("base_currency", "target_currency", "rate", "markup", "effective_rate",
                    "effective_date", "expiry_date", "source", "is_active")
    list_filter = ("base_currency", "target_currency", "source", "is_active")
    readonly_fields = ("effective_rate",)

    # Rates used for billing are frozen; supersede them with a new row
    def get_readonly_fields(self, request, obj=None):
        if obj and obj.is_referenced():
            return [f.name for f in self.model._meta.fields if f.name not in ("is_active", "expiry_date")]
        return self.readonly_fields


# Register `PaymentTransaction` model
@admin.register(PaymentTransaction)
class PaymentTransactionAdmin(ReadOnlyAdmin):
    list_display = ("id", "customer", "invoice", "amount", "currency_code", "status",
                    "refunded_amount", "gateway_transaction_id", "created_at")
    search_fields = ("gateway_transaction_id", "idempotency_key", "customer__name")

    # Fetch everything in one SQL join
    def get_queryset(self, request):
        qs = super().get_queryset(request)
        return qs.select_related("customer", "invoice")


@admin.register(InvoicePayment)
class InvoicePaymentAdmin(ReadOnlyAdmin):
    list_display = ("id", "invoice", "payment_transaction", "credit_transaction",
                    "amount_applied", "invoice_balance_after", "is_full_payment", "is_reversal")

    def get_queryset(self, request):
        qs = super().get_queryset(request)
        return qs.select_related("invoice", "payment_transaction", "credit_transaction")


@admin.register(PaymentAttempt)
class PaymentAttemptAdmin(ReadOnlyAdmin):
    list_display = ("id", "invoice", "attempted_amount", "currency_code", "status",
                    "retry_count", "requires_authentication", "idempotency_key", "created_at")


@admin.register(CustomerCredit)
class CustomerCreditAdmin(ReadOnlyAdmin):
    list_display = ("customer", "currency_code", "balance", "updated_at")
    inlines = [CreditTransactionInline]


@admin.register(CreditTransaction)
class CreditTransactionAdmin(ReadOnlyAdmin):
    list_display = ("id", "credit", "type", "amount", "balance_after", "payment_transaction",
                    "invoice", "created_at")
