from django.core.management.base import BaseCommand
from django.utils import timezone

from billing_core.services.reconciliation import reconcile_pending_transactions


class Command(BaseCommand):
    help = "Re-query the gateway for transactions stuck in pending."

    def handle(self, *args, **options):
        self.stdout.write(self.style.NOTICE("Reconciling pending transactions..."))
        counts = reconcile_pending_transactions(now=timezone.now())
        self.stdout.write(self.style.SUCCESS(
            f"{counts['captured']} captured, {counts['failed']} failed, {counts['skipped']} skipped"))
