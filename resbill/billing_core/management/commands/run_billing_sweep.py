from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from billing_core.services.invoicing import mark_overdue_invoices
from billing_core.services.subscriptions import run_billing_sweep


class Command(BaseCommand):
    help = "Bill every due subscription once (cron-style trigger for the scheduler)."

    # Define command-line arguments
    def add_arguments(self, parser):
        parser.add_argument(
            "--at",
            type=str,
            default=None,
            help="ISO datetime to bill as of (default: now)",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Bill at most this many subscriptions",
        )
        parser.add_argument(
            "--skip-overdue",
            action="store_true",
            help="Do not flag overdue invoices after the sweep",
        )

    def handle(self, *args, **options):
        now = timezone.now()
        if options["at"]:
            now = parse_datetime(options["at"])
            if now is None:
                raise CommandError(f"Not a datetime: {options['at']}")
            if timezone.is_naive(now):
                now = timezone.make_aware(now)

        self.stdout.write(self.style.NOTICE(f"Billing due subscriptions as of {now:%Y-%m-%d %H:%M}..."))
        summary = run_billing_sweep(now=now, limit=options["limit"])

        message = (
            f"{summary.processed} processed: {summary.succeeded} succeeded, "
            f"{summary.retryable} retryable, {summary.fatal} fatal, {summary.skipped} skipped"
        )
        if summary.fatal:
            self.stdout.write(self.style.ERROR(message))
        elif summary.retryable:
            self.stdout.write(self.style.WARNING(message))
        else:
            self.stdout.write(self.style.SUCCESS(message))

        if not options["skip_overdue"]:
            count = mark_overdue_invoices(timezone.localdate(now))
            self.stdout.write(f"{count} invoices marked overdue")
