"""grantledger - prepaid credit grant ledger and consumption engine."""

from .ledger import (
    BalanceScope,
    CreditGrant,
    GrantType,
    Owner,
    UsageRecord,
    consume_credits,
    consume_credits_and_record_usage,
    get_balance_and_usage,
    grant_credits,
)
from .errors import (
    AssociatedWriteFailure,
    ExternalReportingError,
    LedgerError,
    NoActiveGrantsError,
    StoreError,
)

__version__ = "1.0.0"

__all__ = [
    "BalanceScope",
    "CreditGrant",
    "GrantType",
    "Owner",
    "UsageRecord",
    "consume_credits",
    "consume_credits_and_record_usage",
    "get_balance_and_usage",
    "grant_credits",
    "AssociatedWriteFailure",
    "ExternalReportingError",
    "LedgerError",
    "NoActiveGrantsError",
    "StoreError",
    "__version__",
]
