"""Cycle usage and balance reporting derived from a grant set.

Pure, read-only reconciliation: nothing here writes to the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Iterable

from .grants import CreditGrant, GrantType


class BalanceScope(StrEnum):
    PERSONAL = "personal"  # organization grants excluded
    FULL = "full"


def _zero_by_type() -> dict[GrantType, int]:
    return {t: 0 for t in GrantType}


@dataclass
class CreditBalance:
    """Balance summary.

    ``breakdown`` holds the stored positive balances per grant type; the totals
    are after in-memory settlement, so ``sum(breakdown)`` can exceed
    ``total_remaining`` while debt is outstanding.
    """

    total_remaining: int = 0
    total_debt: int = 0
    net_balance: int = 0
    breakdown: dict[GrantType, int] = field(default_factory=_zero_by_type)
    principals: dict[GrantType, int] = field(default_factory=_zero_by_type)


@dataclass(frozen=True)
class BalanceSettlement:
    total_debt: int
    total_positive_balance: int
    settlement_amount: int


@dataclass
class UsageAndBalance:
    usage_this_cycle: int
    balance: CreditBalance
    settlement: BalanceSettlement | None = None


def counts_toward_cycle(grant: CreditGrant, cycle_start: datetime) -> bool:
    """Created during the cycle, never expiring, or expiring after the cycle began."""
    return (
        grant.created_at > cycle_start
        or grant.expires_at is None
        or grant.expires_at > cycle_start
    )


def calculate_usage_and_balance_from_grants(
    grants: Iterable[CreditGrant],
    *,
    cycle_start: datetime,
    now: datetime,
    scope: BalanceScope = BalanceScope.FULL,
) -> UsageAndBalance:
    balance = CreditBalance()
    usage_this_cycle = 0
    total_positive = 0
    total_debt = 0

    for grant in grants:
        if scope == BalanceScope.PERSONAL and grant.type == GrantType.ORGANIZATION:
            continue

        if counts_toward_cycle(grant, cycle_start):
            usage_this_cycle += grant.principal - grant.balance

        # Expired grants still count toward usage above, but not toward balance.
        if not grant.is_active(now):
            continue
        balance.principals[grant.type] += grant.principal
        if grant.balance > 0:
            total_positive += grant.balance
            balance.breakdown[grant.type] += grant.balance
        elif grant.balance < 0:
            total_debt += -grant.balance

    settlement = None
    if total_debt > 0 and total_positive > 0:
        amount = min(total_debt, total_positive)
        settlement = BalanceSettlement(
            total_debt=total_debt,
            total_positive_balance=total_positive,
            settlement_amount=amount,
        )
        total_positive -= amount
        total_debt -= amount

    balance.total_remaining = total_positive
    balance.total_debt = total_debt
    balance.net_balance = total_positive - total_debt

    return UsageAndBalance(usage_this_cycle=usage_this_cycle, balance=balance, settlement=settlement)
