"""Commission calculation: (gross amount, terms) -> commission, net payout."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from settlement.core.config import settings
from settlement.core.errors import ValidationError
from settlement.core.timeutils import money


@dataclass(frozen=True)
class CommissionTerms:
    """Bare terms, used when no persisted rule matches any tier."""
    commission_rate: Decimal
    fixed_fee: Decimal = Decimal("0")
    min_commission: Optional[Decimal] = None
    max_commission: Optional[Decimal] = None
    id: Optional[int] = None

    @property
    def description(self) -> str:
        return f"Default rate: {self.commission_rate * 100:.2f}%"


def default_terms() -> CommissionTerms:
    return CommissionTerms(
        commission_rate=Decimal(settings.DEFAULT_COMMISSION_RATE),
        fixed_fee=Decimal(settings.DEFAULT_FIXED_FEE),
    )


@dataclass(frozen=True)
class CommissionBreakdown:
    gross_amount: Decimal
    commission_amount: Decimal
    net_payout: Decimal


def calculate(gross_amount: Decimal, terms) -> CommissionBreakdown:
    """Apply a rule's terms to a gross amount.

    ``terms`` is anything exposing commission_rate, fixed_fee,
    min_commission and max_commission (a CommissionRule or CommissionTerms).
    The commission is rounded half-up to cents before clamping, and the net
    payout is the exact remainder so the two always add back up to gross.
    """
    gross = Decimal(gross_amount)
    if gross < 0:
        raise ValidationError(f"Gross amount cannot be negative ({gross}).")

    rate = Decimal(terms.commission_rate)
    fee = Decimal(terms.fixed_fee or 0)
    commission = money(gross * rate + fee)

    if terms.min_commission is not None and commission < terms.min_commission:
        commission = money(terms.min_commission)
    if terms.max_commission is not None and commission > terms.max_commission:
        commission = money(terms.max_commission)

    gross = money(gross)
    return CommissionBreakdown(
        gross_amount=gross,
        commission_amount=commission,
        net_payout=gross - commission,
    )
