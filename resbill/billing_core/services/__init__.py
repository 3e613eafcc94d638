from .allocation import allocate, apply_customer_credit, record_payment, reverse_allocation
from .credit import add_credit, debit_credit, get_credit_balance
from .currency import convert_amount, resolve_rate
from .invoicing import (LineItem, compile_invoice, issue_credit_note,
                        mark_overdue_invoices, void_invoice)
from .reconciliation import reconcile_pending_transactions
from .refunds import (approve_refund_loss, deny_refund_loss, execute_refund,
                      process_refund)
from .subscriptions import (cancel_subscription, create_subscription,
                            pause_subscription, process_subscription,
                            reactivate_subscription, resume_subscription,
                            run_billing_sweep)
from .tax import resolve_tax
from .vendor import (attach_vendor_cost, complete_vendor_payout,
                     fail_vendor_payout, process_vendor_payout,
                     resolve_payout_intervention, schedule_vendor_payout,
                     vendor_cost_summary)
