"""Shared test doubles: an in-memory ledger store with real per-owner locks."""

from __future__ import annotations

import dataclasses
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, UTC

import pytest

from grantledger.errors import StoreError
from grantledger.ledger.balance import counts_toward_cycle
from grantledger.ledger.grants import CreditGrant, GrantType, Owner
from grantledger.ledger.selector import build_consumption_set

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
FAR_FUTURE = datetime(2099, 12, 31, tzinfo=UTC)


def make_grant(
    operation_id: str,
    balance: int,
    *,
    type: GrantType | str = GrantType.FREE,
    priority: int = 1,
    principal: int | None = None,
    expires_at: datetime | None = FAR_FUTURE,
    created_at: datetime | None = None,
    user_id: str | None = "user-1",
    org_id: str | None = None,
) -> CreditGrant:
    return CreditGrant(
        operation_id=operation_id,
        principal=principal if principal is not None else max(balance, 0) or 100,
        balance=balance,
        type=GrantType(type),
        priority=priority,
        created_at=created_at or NOW - timedelta(days=10),
        expires_at=expires_at,
        user_id=user_id,
        org_id=org_id,
        description=f"{type} credits",
    )


class RecordingSession:
    """Bare session for engine tests: remembers every balance write in order."""

    def __init__(self, grants=()):
        self.balances = {g.operation_id: g.balance for g in grants}
        self.updates: list[tuple[str, int]] = []

    def update_balance(self, operation_id: str, balance: int) -> None:
        self.updates.append((operation_id, balance))
        self.balances[operation_id] = balance


def _owned_by(grant: CreditGrant, owner: Owner) -> bool:
    if owner.column == "user_id":
        return grant.user_id == owner.owner_id
    return grant.org_id == owner.owner_id


class MemoryGrantSession:
    """Buffers writes until the owning transaction commits."""

    def __init__(self, store: MemoryLedgerStore):
        self._store = store
        self._balances: dict[str, int] = {}
        self._new_grants: dict[str, CreditGrant] = {}
        self._records: dict = {}

    def _current(self) -> list[CreditGrant]:
        with self._store.guard:
            grants = dict(self._store.grants)
        grants.update(self._new_grants)
        return [
            dataclasses.replace(g, balance=self._balances[g.operation_id]) if g.operation_id in self._balances else g
            for g in grants.values()
        ]

    def fetch_consumption_candidates(self, owner, now):
        active = [g for g in self._current() if _owned_by(g, owner) and g.is_active(now)]
        return build_consumption_set(active)

    def fetch_grants_expiring_after(self, owner, threshold):
        return [g for g in self._current() if _owned_by(g, owner) and g.is_active(threshold)]

    def fetch_debt_grants(self, owner):
        return [g for g in self._current() if _owned_by(g, owner) and g.balance < 0]

    def get_grant(self, operation_id):
        return next((g for g in self._current() if g.operation_id == operation_id), None)

    def update_balance(self, operation_id, balance):
        if self.get_grant(operation_id) is None:
            raise StoreError(
                f"update_balance touched 0 rows for grant {operation_id}",
                operation="update_balance",
                details={"operation_id": operation_id, "rowcount": 0},
            )
        self._balances[operation_id] = balance
        self._store.balance_writes += 1

    def insert_grant(self, grant):
        self._new_grants[grant.operation_id] = grant

    def insert_usage_record(self, record):
        if self._store.fail_usage_insert is not None:
            raise self._store.fail_usage_insert
        if record.record_id in self._store.usage_records or record.record_id in self._records:
            raise StoreError(
                "insert_usage_record failed: duplicate key",
                operation="insert_usage_record",
                details={"sqlstate": "23505", "constraint": "usage_records_pkey", "table": "usage_records"},
            )
        self._records[record.record_id] = record

    def sum_usage_since(self, owner, cycle_start):
        return sum(
            g.principal - g.balance
            for g in self._current()
            if _owned_by(g, owner) and counts_toward_cycle(g, cycle_start)
        )

    def metering_customer_id(self, owner):
        return self._store.customers.get(owner.lock_key)

    def commit(self):
        with self._store.guard:
            for operation_id, balance in self._balances.items():
                grant = self._new_grants.get(operation_id) or self._store.grants[operation_id]
                self._new_grants.pop(operation_id, None)
                self._store.grants[operation_id] = dataclasses.replace(grant, balance=balance)
            self._store.grants.update(self._new_grants)
            self._store.usage_records.update(self._records)


class MemoryLedgerStore:
    def __init__(self, grants=()):
        self.grants: dict[str, CreditGrant] = {g.operation_id: g for g in grants}
        self.usage_records: dict = {}
        self.customers: dict[str, str] = {}
        self.guard = threading.Lock()
        self._owner_locks: dict[str, threading.Lock] = {}
        self.fail_usage_insert: Exception | None = None
        self.lock_keys: list[str] = []
        self.commits = 0
        self.rollbacks = 0
        self.balance_writes = 0

    def balance_of(self, operation_id: str) -> int:
        return self.grants[operation_id].balance

    def _lock_for(self, key: str) -> threading.Lock:
        with self.guard:
            return self._owner_locks.setdefault(key, threading.Lock())

    @contextmanager
    def locked_transaction(self, lock_key):
        lock = self._lock_for(lock_key)
        started = time.monotonic()
        lock.acquire()
        try:
            lock_wait_ms = (time.monotonic() - started) * 1000.0
            self.lock_keys.append(lock_key)
            session = MemoryGrantSession(self)
            try:
                yield session, lock_wait_ms
            except BaseException:
                self.rollbacks += 1
                raise
            session.commit()
            self.commits += 1
        finally:
            lock.release()

    @contextmanager
    def read_session(self):
        yield MemoryGrantSession(self)


class FakeReporter:
    def __init__(self, error: Exception | None = None):
        self.calls: list[dict] = []
        self.error = error

    def report(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error


@pytest.fixture
def owner():
    return Owner.user("user-1")
