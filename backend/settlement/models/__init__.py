from settlement.models.commission import CommissionRule, CommissionRecord, RuleScope, SCOPE_PRECEDENCE
from settlement.models.settlement import Settlement, SettlementLineItem, SettlementStatus
from settlement.models.payout import Payout, PayoutStatus
from settlement.models.invoice import (
    CommissionInvoice, InvoiceLine, InvoiceSequence,
    InvoiceStatus, InvoiceType,
)

__all__ = [
    "CommissionRule",
    "CommissionRecord",
    "RuleScope",
    "SCOPE_PRECEDENCE",
    "Settlement",
    "SettlementLineItem",
    "SettlementStatus",
    "Payout",
    "PayoutStatus",
    "CommissionInvoice",
    "InvoiceLine",
    "InvoiceSequence",
    "InvoiceStatus",
    "InvoiceType",
]
