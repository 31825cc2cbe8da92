"""
Deposit settlement policies.

Real settlement (ACH returns, payment processor callbacks) lives outside the
back-office. ``InstantSettlement`` completes deposits on creation;
``ManualSettlement`` leaves them pending until ``settle_deposit`` is called.
"""

from core.database.models import Deposit
from core.trading.interfaces import SettlementPolicy


class InstantSettlement(SettlementPolicy):

    def settles_deposit_immediately(self, deposit: Deposit) -> bool:
        return True

    def get_name(self) -> str:
        return "instant"


class ManualSettlement(SettlementPolicy):

    def settles_deposit_immediately(self, deposit: Deposit) -> bool:
        return False

    def get_name(self) -> str:
        return "manual"


def create_settlement_policy(mode: str) -> SettlementPolicy:
    policies = {
        "instant": InstantSettlement,
        "manual": ManualSettlement,
    }
    if mode not in policies:
        raise ValueError(f"Unknown deposit settlement mode: {mode}")
    return policies[mode]()
