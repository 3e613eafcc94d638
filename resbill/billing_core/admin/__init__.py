from .actions import (approve_refund_losses, cancel_subscriptions,
                      deny_refund_losses, pause_subscriptions,
                      reactivate_subscriptions, resume_subscriptions,
                      void_invoices)
from .inlines import (AllocationInline, BillingHistoryInline,
                      CreditTransactionInline, CustomerPaymentMethodInline,
                      CustomerTaxProfileInline, InvoiceLineInline,
                      VendorCostInline)
from .invoice import (CouponAdmin, CouponUsageAdmin, CustomerAdmin,
                      InvoiceAdmin, InvoiceLineAdmin, TaxRuleAdmin)
from .payment import (CreditTransactionAdmin, CurrencyAdmin,
                      CustomerCreditAdmin, ExchangeRateAdmin,
                      InvoicePaymentAdmin, PaymentAttemptAdmin,
                      PaymentTransactionAdmin)
from .ReadOnly import ReadOnlyAdmin
from .refund import (RefundAdmin, RefundLossAuditAdmin, VendorAdmin,
                     VendorCostAdmin, VendorPayoutAdmin)
from .subscription import SubscriptionAdmin, SubscriptionBillingHistoryAdmin
