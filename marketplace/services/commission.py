"""Commission splitting.

All money math runs on integer cents so the parts always add back up to the
whole. The platform fee is rounded half-up to the cent; the helper receives
whatever is left, so no cent is ever lost to rounding:

    split_commission(Decimal("100.00"), Decimal("0.10"))
    -> payee 90.00, platform 10.00

The same split also carries ``total_amount`` (base + fee) for supplemental
charges where the fee is added on top instead of deducted, such as extra time.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    """Round a currency amount to the smallest unit and return it as int cents."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


@dataclass(frozen=True)
class CommissionSplit:
    base_cents: int
    fee_cents: int
    fee_rate: Decimal

    @property
    def payee_cents(self) -> int:
        return self.base_cents - self.fee_cents

    @property
    def total_cents(self) -> int:
        return self.base_cents + self.fee_cents

    @property
    def base_amount(self) -> Decimal:
        return from_cents(self.base_cents)

    @property
    def platform_amount(self) -> Decimal:
        return from_cents(self.fee_cents)

    @property
    def payee_amount(self) -> Decimal:
        return from_cents(self.payee_cents)

    @property
    def total_amount(self) -> Decimal:
        return from_cents(self.total_cents)

    def to_dict(self) -> dict:
        return {
            "base_amount": str(self.base_amount),
            "fee_rate": str(self.fee_rate),
            "platform_amount": str(self.platform_amount),
            "payee_amount": str(self.payee_amount),
            "total_amount": str(self.total_amount),
        }


def split_commission(base_amount: Decimal, fee_rate: Decimal) -> CommissionSplit:
    if base_amount < 0:
        raise ValueError(f"base_amount must be non-negative, got {base_amount}")
    if not Decimal("0") <= fee_rate < Decimal("1"):
        raise ValueError(f"fee_rate must be in [0, 1), got {fee_rate}")

    base_cents = to_cents(base_amount)
    fee_cents = int((Decimal(base_cents) * fee_rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return CommissionSplit(base_cents=base_cents, fee_cents=fee_cents, fee_rate=fee_rate)
