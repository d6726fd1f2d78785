"""Credit grant data model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import StrEnum
from typing import Any


class GrantType(StrEnum):
    FREE = "free"
    PURCHASE = "purchase"
    REFERRAL = "referral"
    ADMIN = "admin"
    ORGANIZATION = "organization"
    AD = "ad"


class OwnerType(StrEnum):
    USER = "user"
    ORGANIZATION = "organization"


# Lower value is consumed first. Recurring free grants sit last so debt lands on them.
DEFAULT_GRANT_PRIORITIES: dict[GrantType, int] = {
    GrantType.ORGANIZATION: 10,
    GrantType.ADMIN: 20,
    GrantType.REFERRAL: 30,
    GrantType.AD: 40,
    GrantType.PURCHASE: 50,
    GrantType.FREE: 60,
}

_OWNER_COLUMNS = {
    OwnerType.USER: "user_id",
    OwnerType.ORGANIZATION: "org_id",
}

_LOCK_PREFIXES = {
    OwnerType.USER: "user",
    OwnerType.ORGANIZATION: "org",
}


def utc_now() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass(frozen=True)
class Owner:
    owner_id: str
    owner_type: OwnerType = OwnerType.USER

    def __post_init__(self):
        if not self.owner_id or not str(self.owner_id).strip():
            raise ValueError("owner_id cannot be empty")
        object.__setattr__(self, "owner_type", OwnerType(self.owner_type))

    @classmethod
    def user(cls, user_id: str) -> Owner:
        return cls(user_id, OwnerType.USER)

    @classmethod
    def organization(cls, org_id: str) -> Owner:
        return cls(org_id, OwnerType.ORGANIZATION)

    @property
    def column(self) -> str:
        """Ledger column that stores this owner's id."""
        return _OWNER_COLUMNS[self.owner_type]

    @property
    def lock_key(self) -> str:
        return f"{_LOCK_PREFIXES[self.owner_type]}:{self.owner_id}"


@dataclass(frozen=True)
class CreditGrant:
    """One row of the credit ledger.

    ``principal`` never changes after creation. ``balance`` is signed: negative
    values are debt recorded against this grant.
    """

    operation_id: str
    principal: int
    balance: int
    type: GrantType
    priority: int
    created_at: datetime
    expires_at: datetime | None = None
    user_id: str | None = None
    org_id: str | None = None
    description: str | None = None

    @classmethod
    def from_row(cls, row) -> CreditGrant:
        return cls(
            operation_id=str(row["operation_id"]),
            principal=int(row["principal"]),
            balance=int(row["balance"]),
            type=GrantType(row["type"]),
            priority=int(row["priority"]),
            created_at=_aware(row["created_at"]),
            expires_at=_aware(row["expires_at"]),
            user_id=row.get("user_id"),
            org_id=row.get("org_id"),
            description=row.get("description"),
        )

    def is_active(self, at: datetime) -> bool:
        return self.expires_at is None or self.expires_at > at

    def snapshot(self) -> dict[str, Any]:
        """Compact view used in error diagnostics."""
        return {
            "operation_id": self.operation_id,
            "balance": self.balance,
            "type": str(self.type),
            "priority": self.priority,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass(frozen=True)
class ConsumptionResult:
    consumed: int
    from_purchased: int


@dataclass(frozen=True)
class UsageRecord:
    """The unit of work a consumption paid for."""

    record_id: str
    owner: Owner
    credits: int
    action: str = "agent_step"
    model: str | None = None
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    bypass: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.credits < 0:
            raise ValueError("credits cannot be negative")

    @property
    def latency_ms(self) -> int | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


@dataclass(frozen=True)
class RecordedConsumption:
    consumed: int
    from_purchased: int
    record_id: str
