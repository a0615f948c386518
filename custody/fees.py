"""Deposit fee accounting.

The fee is taken in whole base units with floor division, so the depositor
is never charged more than the configured rate and ``net + fee == amount``
holds exactly for every amount.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from custody.config import BPS_DENOMINATOR, ConfigError
from custody.hardening import InvariantChecker, require_account, require_amount


@dataclass(frozen=True)
class FeeSplit:
    amount: int
    net: int
    fee: int

    def to_dict(self):
        return {"amount": self.amount, "net": self.net, "fee": self.fee}


@dataclass(frozen=True)
class FeeSchedule:
    """
    Fee rate in basis points plus the treasury that receives it.

    A zero rate with no treasury is the fee-free deployment; any positive
    rate requires a treasury.
    """
    fee_rate_bps: int = 0
    treasury: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.fee_rate_bps, bool) or not isinstance(self.fee_rate_bps, int):
            raise ConfigError(f"fee_rate_bps must be an integer, got {self.fee_rate_bps!r}")
        if not 0 <= self.fee_rate_bps <= BPS_DENOMINATOR:
            raise ConfigError(f"fee_rate_bps must be within 0..{BPS_DENOMINATOR}, got {self.fee_rate_bps}")
        if self.treasury is not None:
            object.__setattr__(self, "treasury", require_account(self.treasury, "treasury"))
        elif self.fee_rate_bps > 0:
            raise ConfigError("a treasury account is required when fee_rate_bps > 0")

    @property
    def fee_free(self) -> bool:
        return self.fee_rate_bps == 0

    def fee_for(self, amount: int) -> int:
        return amount * self.fee_rate_bps // BPS_DENOMINATOR

    def split(self, amount: int) -> FeeSplit:
        """Split a positive deposit amount into (net, fee). Raises InvalidAmount."""
        amount = require_amount(amount)
        fee = self.fee_for(amount)
        net = amount - fee
        InvariantChecker.check_conservation(amount, net, fee)
        return FeeSplit(amount=amount, net=net, fee=fee)
