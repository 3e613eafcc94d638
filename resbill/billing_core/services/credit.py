import logging
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import transaction

from ..models import CreditTransaction, CustomerCredit
from ..money import ZERO, to_money

logger = logging.getLogger(__name__)


# ----------------------------
# Customer credit balance
# ----------------------------
def get_credit_balance(customer, currency_code) -> Decimal:
    credit = CustomerCredit.objects.filter(
        customer=customer, currency_code=currency_code.upper()).first()
    return credit.balance if credit else ZERO


def _locked_credit(customer, currency_code):
    # Lock the balance row until the surrounding transaction finishes
    credit, _ = CustomerCredit.objects.select_for_update().get_or_create(
        customer=customer, currency_code=currency_code.upper())
    return credit


def add_credit(customer, currency_code, amount, type, payment_transaction=None,
               invoice=None, description=""):
    """
    Put money on the customer's credit balance and append the movement.
    balance_after is a snapshot taken under the row lock.
    """
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Credit amount must be positive")

    with transaction.atomic():
        credit = _locked_credit(customer, currency_code)
        credit.balance += amount
        credit.save(update_fields=["balance", "updated_at"])
        ct = CreditTransaction.objects.create(
            credit=credit,
            type=type,
            amount=amount,
            balance_after=credit.balance,
            payment_transaction=payment_transaction,
            invoice=invoice,
            description=description,
        )

    logger.info("Credited %s %s to customer %s (%s)", amount, currency_code, customer.pk, type)
    return ct


def debit_credit(customer, currency_code, amount, type, payment_transaction=None,
                 invoice=None, description="", allow_partial=False):
    """
    Take money off the credit balance. With allow_partial the debit is
    capped at the available balance (None when nothing is available);
    otherwise an insufficient balance is a validation error.
    """
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Debit amount must be positive")

    with transaction.atomic():
        credit = _locked_credit(customer, currency_code)
        if credit.balance < amount:
            if not allow_partial:
                raise ValidationError(
                    f"Credit balance {credit.balance} {currency_code} is below {amount}")
            amount = credit.balance
        if amount == 0:
            return None

        credit.balance -= amount
        credit.save(update_fields=["balance", "updated_at"])
        ct = CreditTransaction.objects.create(
            credit=credit,
            type=type,
            amount=-amount,
            balance_after=credit.balance,
            payment_transaction=payment_transaction,
            invoice=invoice,
            description=description,
        )

    logger.info("Debited %s %s from customer %s credit (%s)", amount, currency_code, customer.pk, type)
    return ct
