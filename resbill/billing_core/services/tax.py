import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from django.db.models import Q
from django.utils import timezone
from django.utils.module_loading import import_string

from ..conf import billing_setting
from ..models import TaxRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaxSnapshot:
    rate: Decimal
    name: str = ""
    authority: str = ""
    exempt: bool = False


NO_TAX = TaxSnapshot(rate=Decimal("0"))
EXEMPT = TaxSnapshot(rate=Decimal("0"), name="Tax exempt", exempt=True)


class TaxService:
    """Collaborator contract: resolve(tax_profile, jurisdiction, as_of) -> TaxSnapshot."""

    def resolve(self, tax_profile, jurisdiction, as_of) -> TaxSnapshot:
        raise NotImplementedError


class RuleTableTaxService(TaxService):
    """
    Resolves from TaxRule rows. Region rules ('CA-ON') win over country
    rules ('CA'); within the same jurisdiction the latest effective_from wins.
    """

    def resolve(self, tax_profile, jurisdiction, as_of):
        if tax_profile is not None and tax_profile.is_tax_exempt:
            return EXEMPT

        candidates = []
        if jurisdiction:
            candidates.append(jurisdiction.upper())
        if tax_profile is not None:
            for code in (tax_profile.region_code, tax_profile.country_code):
                if code and code.upper() not in candidates:
                    candidates.append(code.upper())

        # rule dates are calendar days in the project time zone
        day = timezone.localdate(as_of) if isinstance(as_of, datetime) else as_of
        for code in candidates:
            rule = (
                TaxRule.objects.filter(jurisdiction=code, is_active=True, effective_from__lte=day)
                .filter(Q(effective_to__isnull=True) | Q(effective_to__gte=day))
                .order_by("-effective_from", "-pk")
                .first()
            )
            if rule is not None:
                return TaxSnapshot(rate=rule.rate, name=rule.name, authority=rule.authority)
        return NO_TAX


def get_tax_service() -> TaxService:
    return import_string(billing_setting("TAX_SERVICE"))()


def resolve_tax(customer, as_of, jurisdiction=None):
    """Tax for one invoice, resolved once from the customer's profile."""
    tax_profile = getattr(customer, "tax_profile", None)
    snapshot = get_tax_service().resolve(tax_profile, jurisdiction, as_of)
    if snapshot is NO_TAX:
        logger.info("No tax rule matched customer %s; billing without tax", customer.pk)
    return snapshot
