"""Two-pass credit allocation across canonically ordered grants.

Pass 1 repays existing debt, pass 2 draws down positive balances, and any
shortfall becomes new debt on a single grant. The request is always fully
allocated as long as at least one grant exists.
"""

from __future__ import annotations

from typing import Sequence

from ..errors import NoActiveGrantsError
from ..utils.logging_config import StructuredLogger
from .grants import ConsumptionResult, CreditGrant, GrantType, Owner

logger = StructuredLogger(__name__)


class _EffectiveBalances:
    """Read-your-writes view of grant balances for one invocation.

    The selected grant list is a snapshot; every mutation is recorded here and
    every later read goes through here, so debt is never computed from a stale
    pre-repayment balance.
    """

    def __init__(self, session):
        self._session = session
        self._balances: dict[str, int] = {}

    def get(self, grant: CreditGrant) -> int:
        return self._balances.get(grant.operation_id, grant.balance)

    def set(self, grant: CreditGrant, new_balance: int) -> None:
        self._session.update_balance(grant.operation_id, new_balance)
        self._balances[grant.operation_id] = new_balance


def consume_from_ordered_grants(
    session,
    *,
    owner: Owner,
    credits_to_consume: int,
    grants: Sequence[CreditGrant],
) -> ConsumptionResult:
    """Allocate ``credits_to_consume`` over ``grants`` (already in consumption order).

    Writes each new balance through ``session.update_balance`` immediately.
    Raises NoActiveGrantsError when ``grants`` is empty; otherwise
    ``consumed == credits_to_consume`` on return.
    """
    if credits_to_consume < 0:
        raise ValueError("credits_to_consume cannot be negative")
    if not grants:
        raise NoActiveGrantsError(owner.owner_id, credits_to_consume)

    remaining = credits_to_consume
    consumed = 0
    from_purchased = 0
    balances = _EffectiveBalances(session)

    # Pass 1: repay debt
    for grant in grants:
        if remaining <= 0:
            break
        current = balances.get(grant)
        if current >= 0:
            continue

        repay = min(-current, remaining)
        new_balance = current + repay
        balances.set(grant, new_balance)
        remaining -= repay
        consumed += repay
        if grant.type == GrantType.PURCHASE:
            from_purchased += repay

        logger.debug(
            "Repaid debt in grant",
            owner=owner.lock_key,
            grant_id=grant.operation_id,
            repay_amount=repay,
            new_balance=new_balance,
        )

    # Pass 2: consume positive balances
    last_consumed: CreditGrant | None = None
    for grant in grants:
        if remaining <= 0:
            break
        current = balances.get(grant)
        if current <= 0:
            continue

        take = min(current, remaining)
        balances.set(grant, current - take)
        last_consumed = grant
        remaining -= take
        consumed += take
        if grant.type == GrantType.PURCHASE:
            from_purchased += take

    # Shortfall becomes debt; never skipped while anything remains.
    if remaining > 0:
        debt_grant = last_consumed or grants[-1]
        balance_before = balances.get(debt_grant)
        new_balance = balance_before - remaining
        balances.set(debt_grant, new_balance)
        consumed += remaining

        logger.warning(
            "Created new debt in grant",
            owner=owner.lock_key,
            grant_id=debt_grant.operation_id,
            grant_type=str(debt_grant.type),
            debt_added=remaining,
            new_debt=-new_balance if new_balance < 0 else 0,
            effective_balance_before_debt=balance_before,
        )

    return ConsumptionResult(consumed=consumed, from_purchased=from_purchased)
