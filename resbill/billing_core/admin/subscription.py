from django.contrib import admin

from billing_core.models import Subscription, SubscriptionBillingHistory

from .actions import (cancel_subscriptions, pause_subscriptions,
                      reactivate_subscriptions, resume_subscriptions)
from .inlines import BillingHistoryInline
from .ReadOnly import ReadOnlyAdmin


# Register `Subscription` model
@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "customer",
        "description",
        "amount",
        "currency_code",
        "status",
        "next_billing_date",
        "retry_count",
        "max_retry_attempts",
    )
    list_filter = ("status", "billing_period_unit", "currency_code")
    search_fields = ("description", "service_reference", "customer__name")
    actions = [pause_subscriptions, resume_subscriptions, cancel_subscriptions, reactivate_subscriptions]
    inlines = [BillingHistoryInline]
    # billing progress only moves through the scheduler and the actions
    readonly_fields = (
        "status", "current_period_start", "current_period_end", "next_billing_date",
        "retry_count", "last_billing_attempt", "last_successful_billing",
        "cancelled_at", "cancellation_reason", "paused_at", "pause_reason",
        "processing_token", "processing_started_at",
    )

    def get_queryset(self, request):
        qs = super().get_queryset(request)
        return qs.select_related("customer")


@admin.register(SubscriptionBillingHistory)
class SubscriptionBillingHistoryAdmin(ReadOnlyAdmin):
    list_display = ("subscription", "status", "period_start", "period_end", "amount",
                    "attempt_number", "attempted_at")
