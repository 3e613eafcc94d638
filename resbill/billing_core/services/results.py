from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRYABLE = "retryable"  # external failure, retry/backoff took over
    FATAL = "fatal"          # invariant violation, needs a human
    SKIPPED = "skipped"      # not due, claimed elsewhere, still pending


@dataclass
class BillingResult:
    subscription_id: int
    outcome: Outcome
    invoice_id: Optional[int] = None
    payment_transaction_id: Optional[int] = None
    detail: str = ""


@dataclass
class SweepSummary:
    processed: int = 0
    succeeded: int = 0
    retryable: int = 0
    fatal: int = 0
    skipped: int = 0

    def record(self, result: BillingResult):
        self.processed += 1
        if result.outcome == Outcome.SUCCEEDED:
            self.succeeded += 1
        elif result.outcome == Outcome.RETRYABLE:
            self.retryable += 1
        elif result.outcome == Outcome.FATAL:
            self.fatal += 1
        else:
            self.skipped += 1

    @property
    def failure_rate(self):
        attempted = self.processed - self.skipped
        if attempted == 0:
            return 0.0
        return (self.retryable + self.fatal) / attempted
