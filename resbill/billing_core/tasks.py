import logging

from celery import shared_task
from django.utils import timezone

logger = logging.getLogger(__name__)


@shared_task  # periodic: see CELERY_BEAT_SCHEDULE
def sweep_due_subscriptions():
    """Fan out one billing task per due subscription."""
    # import lazily to avoid circular imports at module import time
    from .models import Subscription

    due = list(Subscription.objects.due(timezone.now()).values_list("pk", flat=True))
    for subscription_id in due:
        bill_subscription.delay(subscription_id)
    logger.info("Queued %s due subscriptions for billing", len(due))
    return len(due)


@shared_task
def bill_subscription(subscription_id):
    # tasks for different subscriptions run in parallel; the claim lease
    # inside process_subscription keeps one worker per subscription
    from .models import Subscription
    from .services.subscriptions import process_subscription

    subscription = Subscription.objects.filter(pk=subscription_id).first()
    if subscription is None:
        logger.warning("Subscription %s vanished before billing", subscription_id)
        return None
    result = process_subscription(subscription, now=timezone.now())
    return result.outcome.value


@shared_task
def reconcile_pending_transactions():
    from .services.reconciliation import reconcile_pending_transactions as reconcile

    return reconcile(now=timezone.now())


@shared_task
def mark_overdue_invoices():
    from .services.invoicing import mark_overdue_invoices as mark_overdue

    return mark_overdue(timezone.localdate())
