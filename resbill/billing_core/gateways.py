"""
Payment gateway collaborator contract.

Concrete gateways (Stripe, PayPal, ...) live outside the billing engine and
are plugged in through BILLING["PAYMENT_GATEWAY"]. The engine only relies on
the three calls below and on GatewayResult.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from django.core.exceptions import ImproperlyConfigured
from django.utils.module_loading import import_string

from .conf import billing_setting

CAPTURED = "captured"
AUTHORIZED = "authorized"
PENDING = "pending"
FAILED = "failed"
REQUIRES_ACTION = "requires_action"
SUCCEEDED = "succeeded"


@dataclass
class GatewayResult:
    status: str
    gateway_transaction_id: Optional[str] = None
    fee_amount: Decimal = Decimal("0.00")
    message: str = ""

    @property
    def is_captured(self):
        return self.status == CAPTURED

    @property
    def is_pending(self):
        return self.status in (PENDING, AUTHORIZED)


class PaymentGateway:
    """
    Implementations must honour `timeout` and raise GatewayTimeout when it
    elapses, and must treat `idempotency_key` as a duplicate-charge guard.
    """

    def charge(self, payment_method, amount, currency, idempotency_key, timeout) -> GatewayResult:
        raise NotImplementedError

    def refund(self, gateway_transaction_id, amount, timeout) -> GatewayResult:
        raise NotImplementedError

    def fetch_status(self, gateway_transaction_id, timeout) -> GatewayResult:
        raise NotImplementedError


def get_gateway() -> PaymentGateway:
    path = billing_setting("PAYMENT_GATEWAY")
    if not path:
        raise ImproperlyConfigured("BILLING['PAYMENT_GATEWAY'] is not set")
    return import_string(path)()
