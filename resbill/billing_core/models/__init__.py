from .coupon import Coupon, CouponUsage
from .credit import CreditTransaction, CustomerCredit
from .currency import Currency, ExchangeRate
from .customer import Customer, CustomerPaymentMethod, CustomerTaxProfile
from .invoice import Invoice, InvoiceLine
from .payment import InvoicePayment, PaymentAttempt, PaymentTransaction
from .refund import Refund, RefundLossAudit
from .subscription import Subscription, SubscriptionBillingHistory
from .tax import TaxRule
from .vendor import Vendor, VendorCost, VendorPayout
