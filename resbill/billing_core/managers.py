from django.db import models

# -----------------------------------------
# Query helpers shared by services and tasks
# -----------------------------------------


class ExchangeRateQuerySet(models.QuerySet):
    def effective(self, base, target, as_of):
        # Active rows for the pair that cover `as_of`, newest first
        return (
            self.filter(
                base_currency_id=base,
                target_currency_id=target,
                is_active=True,
                effective_date__lte=as_of,
            )
            .filter(models.Q(expiry_date__isnull=True) | models.Q(expiry_date__gt=as_of))
            .order_by("-effective_date", "-pk")
        )


class ExchangeRateManager(models.Manager):
    def get_queryset(self):
        return ExchangeRateQuerySet(self.model, using=self._db)

    def effective(self, base, target, as_of):
        return self.get_queryset().effective(base, target, as_of)


OPEN_INVOICE_STATUSES = ("issued", "partially_paid", "overdue")


class InvoiceQuerySet(models.QuerySet):
    def for_customer(self, customer):
        return self.filter(customer=customer)

    def open(self):
        # Issued invoices that still have money due
        return self.filter(status__in=OPEN_INVOICE_STATUSES, amount_due__gt=0)

    def oldest_due_first(self):
        return self.order_by("due_date", "issue_date", "pk")

    def live_for_period(self, subscription, period_start):
        # Any invoice for the period that was not voided blocks a re-issue
        return self.filter(
            subscription=subscription, period_start=period_start
        ).exclude(status="void")

    def overdue_candidates(self, today):
        return self.filter(
            status__in=("issued", "partially_paid"),
            amount_due__gt=0,
            due_date__lt=today,
        )


class InvoiceManager(models.Manager):
    def get_queryset(self):
        return InvoiceQuerySet(self.model, using=self._db)

    def for_customer(self, customer):
        return self.get_queryset().for_customer(customer)

    def open(self):
        return self.get_queryset().open()

    def live_for_period(self, subscription, period_start):
        return self.get_queryset().live_for_period(subscription, period_start)

    def overdue_candidates(self, today):
        return self.get_queryset().overdue_candidates(today)


BILLABLE_SUBSCRIPTION_STATUSES = ("trialing", "active", "past_due")


class SubscriptionQuerySet(models.QuerySet):
    def due(self, now):
        # Subscriptions whose next charge date has arrived
        return self.filter(
            status__in=BILLABLE_SUBSCRIPTION_STATUSES,
            next_billing_date__lte=now,
        ).order_by("next_billing_date", "pk")


class SubscriptionManager(models.Manager):
    def get_queryset(self):
        return SubscriptionQuerySet(self.model, using=self._db)

    def due(self, now):
        return self.get_queryset().due(now)


class PaymentTransactionQuerySet(models.QuerySet):
    def stale_pending(self, cutoff):
        # Left pending/authorized longer than the reconciliation window
        return self.filter(
            status__in=("pending", "authorized"), created_at__lt=cutoff
        ).order_by("created_at")


class PaymentTransactionManager(models.Manager):
    def get_queryset(self):
        return PaymentTransactionQuerySet(self.model, using=self._db)

    def stale_pending(self, cutoff):
        return self.get_queryset().stale_pending(cutoff)
