"""Credit grant ledger: selection, consumption, locking, reporting."""

from .grants import (
    GrantType,
    OwnerType,
    Owner,
    CreditGrant,
    ConsumptionResult,
    UsageRecord,
    RecordedConsumption,
    DEFAULT_GRANT_PRIORITIES,
)
from .selector import (
    consumption_order_key,
    order_grants,
    build_consumption_set,
    select_for_consumption,
    select_for_reporting,
)
from .consumption import consume_from_ordered_grants
from .locking import LockedResult, with_owner_lock
from .balance import (
    BalanceScope,
    BalanceSettlement,
    CreditBalance,
    UsageAndBalance,
    calculate_usage_and_balance_from_grants,
)
from .store import GrantSession, LedgerStore, PostgresGrantSession, PostgresLedgerStore
from .service import (
    GrantOutcome,
    consume_credits,
    consume_credits_and_record_usage,
    get_balance_and_usage,
    usage_this_cycle,
    grant_credits,
)

__all__ = [
    "GrantType",
    "OwnerType",
    "Owner",
    "CreditGrant",
    "ConsumptionResult",
    "UsageRecord",
    "RecordedConsumption",
    "DEFAULT_GRANT_PRIORITIES",
    "consumption_order_key",
    "order_grants",
    "build_consumption_set",
    "select_for_consumption",
    "select_for_reporting",
    "consume_from_ordered_grants",
    "LockedResult",
    "with_owner_lock",
    "BalanceScope",
    "BalanceSettlement",
    "CreditBalance",
    "UsageAndBalance",
    "calculate_usage_and_balance_from_grants",
    "GrantSession",
    "LedgerStore",
    "PostgresGrantSession",
    "PostgresLedgerStore",
    "GrantOutcome",
    "consume_credits",
    "consume_credits_and_record_usage",
    "get_balance_and_usage",
    "usage_this_cycle",
    "grant_credits",
]
