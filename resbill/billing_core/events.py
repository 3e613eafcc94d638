import logging
from django.db import transaction
from django.dispatch import Signal

logger = logging.getLogger(__name__)

# Outbound notifications. The email queue (or anything else) subscribes;
# billing only emits and never waits on delivery.
invoice_issued = Signal()            # invoice
payment_failed = Signal()            # invoice, attempt, reason
subscription_past_due = Signal()     # subscription, invoice
subscription_cancelled = Signal()    # subscription, reason
refund_requires_approval = Signal()  # refund, audit
refund_processed = Signal()          # refund


def emit(signal, sender, **kwargs):
    """
    Fire `signal` once the surrounding DB transaction commits.
    Receiver errors are logged, never raised into billing code.
    """
    def _send():
        for receiver, result in signal.send_robust(sender=sender, **kwargs):
            if isinstance(result, Exception):
                logger.error(
                    "Notification receiver %r failed for %s: %s",
                    receiver, sender.__name__, result,
                )

    transaction.on_commit(_send)
