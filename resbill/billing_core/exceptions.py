from django.core.exceptions import ValidationError


class BillingError(Exception):
    """Base class for billing engine failures that are not input validation."""
    pass


class BillingInvariantError(BillingError):
    """A ledger invariant would be broken. Fatal, the write is aborted."""
    pass


class RateNotFound(BillingError):
    """No active exchange rate covers the currency pair at the given instant."""
    pass


class StaleRateWarning(UserWarning):
    """The matched exchange rate is older than the freshness window."""
    pass


class InvoiceAlreadyPaid(BillingError):
    """Allocation target has nothing left to pay."""
    pass


class AllocationExceedsTransaction(BillingInvariantError):
    """More money would be applied than the transaction has available."""
    pass


class DuplicateBillingPeriod(BillingInvariantError):
    """A second live invoice would be issued for the same subscription period."""
    pass


class ConcurrentModification(BillingInvariantError):
    """Optimistic version check kept failing for a row."""
    pass


class InvalidTransition(ValidationError):
    """Raised when a status change is not allowed by the state machine."""
    pass


class ImmutableFieldError(ValidationError):
    """Raised when a frozen financial field is edited after issue."""
    pass


class CouponNotApplicable(ValidationError):
    """Coupon is expired, inactive, exhausted or matches no line."""
    pass


class RefundExceedsCapturedAmount(ValidationError):
    """Refund is larger than what is left to refund on the transaction."""
    pass


class CurrencyMismatch(ValidationError):
    """Money in one currency was applied to a record in another."""
    pass


class GatewayError(Exception):
    """The payment gateway collaborator failed."""
    pass


class GatewayTimeout(GatewayError):
    """The payment gateway did not answer in time."""
    pass
