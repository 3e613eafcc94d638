from django.contrib import admin, messages
from django.core.exceptions import ValidationError

from billing_core.services.invoicing import void_invoice
from billing_core.services.refunds import approve_refund_loss, deny_refund_loss
from billing_core.services.subscriptions import (cancel_subscription,
                                                 pause_subscription,
                                                 reactivate_subscription,
                                                 resume_subscription)

# ---------- Admin actions ----------
# Each action goes through the service layer so the state machines apply
# instead of letting admins bypass them


""" Void unpaid invoices """


@admin.action(description="Void selected invoices")
def void_invoices(modeladmin, request, queryset):
    for inv in queryset:
        try:
            void_invoice(inv, reason=f"Voided by {request.user.get_username()}")
        except ValidationError as e:
            modeladmin.message_user(
                request, f"{inv}: {e}", level=messages.ERROR)


""" Subscription lifecycle """


@admin.action(description="Pause selected subscriptions")
def pause_subscriptions(modeladmin, request, queryset):
    for sub in queryset:
        try:
            pause_subscription(sub, reason=f"Paused by {request.user.get_username()}")
        except ValidationError as e:
            modeladmin.message_user(
                request, f"{sub}: {e}", level=messages.ERROR)


@admin.action(description="Resume selected subscriptions")
def resume_subscriptions(modeladmin, request, queryset):
    for sub in queryset:
        try:
            resume_subscription(sub)
        except ValidationError as e:
            modeladmin.message_user(
                request, f"{sub}: {e}", level=messages.ERROR)


@admin.action(description="Cancel selected subscriptions")
def cancel_subscriptions(modeladmin, request, queryset):
    for sub in queryset:
        try:
            cancel_subscription(sub, reason=f"Cancelled by {request.user.get_username()}")
        except ValidationError as e:
            modeladmin.message_user(
                request, f"{sub}: {e}", level=messages.ERROR)


@admin.action(description="Reactivate selected subscriptions")
def reactivate_subscriptions(modeladmin, request, queryset):
    for sub in queryset:
        try:
            reactivate_subscription(sub)
        except ValidationError as e:
            modeladmin.message_user(
                request, f"{sub}: {e}", level=messages.ERROR)


""" Refund loss approvals (financial-loss workflow) """


@admin.action(description="Approve selected refund losses")
def approve_refund_losses(modeladmin, request, queryset):
    approved = 0
    for audit in queryset.filter(approval_status="pending"):
        try:
            refund = approve_refund_loss(audit, approved_by=request.user.get_username())
            approved += 1
            if refund.status == "failed":
                modeladmin.message_user(
                    request, f"{refund}: {refund.failure_reason}", level=messages.WARNING)
        except ValidationError as e:
            modeladmin.message_user(
                request, f"{audit}: {e}", level=messages.ERROR)
    modeladmin.message_user(request, f"Approved {approved} refund losses.")


@admin.action(description="Deny selected refund losses")
def deny_refund_losses(modeladmin, request, queryset):
    for audit in queryset.filter(approval_status="pending"):
        try:
            deny_refund_loss(
                audit, denied_by=request.user.get_username(), reason="Denied from admin")
        except ValidationError as e:
            modeladmin.message_user(
                request, f"{audit}: {e}", level=messages.ERROR)
