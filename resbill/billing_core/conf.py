from decimal import Decimal
from django.conf import settings

# Engine defaults, overridden key by key through settings.BILLING
DEFAULTS = {
    "BASE_CURRENCY": "USD",
    "RATE_FRESHNESS_HOURS": 24,
    "RETRY_BACKOFF_DAYS": [1, 3, 7],
    "DEFAULT_MAX_RETRY_ATTEMPTS": 3,
    "SUBSCRIPTION_PAYMENT_TERMS_DAYS": 7,
    "REFUND_LOSS_APPROVAL_THRESHOLD": Decimal("50.00"),
    "GATEWAY_TIMEOUT_SECONDS": 30,
    "PENDING_TRANSACTION_TIMEOUT_MINUTES": 30,
    "PENDING_RECHECK_MINUTES": 60,
    "PROCESSING_LEASE_MINUTES": 15,
    "ALLOCATION_MAX_RETRIES": 3,
    "AUTO_APPLY_CREDIT": True,
    "PAYMENT_GATEWAY": None,
    "TAX_SERVICE": "billing_core.services.tax.RuleTableTaxService",
}


def billing_setting(name):
    """Read one engine setting, falling back to the built-in default.

    Read on every call (not cached) so override_settings works in tests.
    """
    if name not in DEFAULTS:
        raise KeyError(f"Unknown billing setting: {name}")
    configured = getattr(settings, "BILLING", {}) or {}
    return configured.get(name, DEFAULTS[name])
