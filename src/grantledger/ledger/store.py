"""Grant store collaborator interface and its PostgreSQL implementation.

The ledger core only talks to a ``LedgerStore`` (transaction + owner lock) and
the ``GrantSession`` it yields (select, update balance, insert). Everything a
single consumption attempt reads or writes goes through one session.
"""

from __future__ import annotations

import time
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime
from typing import Protocol

import psycopg

from ..db import get_db_connection
from ..errors import StoreError
from ..utils.deterministic import metadata_json
from .grants import CreditGrant, Owner, UsageRecord

_GRANT_COLUMNS = (
    "operation_id, user_id, org_id, principal, balance, type, "
    "description, priority, expires_at, created_at"
)

_ACTIVE = "(expires_at IS NULL OR expires_at > ?)"


class GrantSession(Protocol):
    def fetch_consumption_candidates(self, owner: Owner, now: datetime) -> list[CreditGrant]: ...

    def fetch_grants_expiring_after(self, owner: Owner, threshold: datetime) -> list[CreditGrant]: ...

    def fetch_debt_grants(self, owner: Owner) -> list[CreditGrant]: ...

    def get_grant(self, operation_id: str) -> CreditGrant | None: ...

    def update_balance(self, operation_id: str, balance: int) -> None: ...

    def insert_grant(self, grant: CreditGrant) -> None: ...

    def insert_usage_record(self, record: UsageRecord) -> None: ...

    def sum_usage_since(self, owner: Owner, cycle_start: datetime) -> int: ...

    def metering_customer_id(self, owner: Owner) -> str | None: ...


class LedgerStore(Protocol):
    def locked_transaction(self, lock_key: str) -> AbstractContextManager[tuple[GrantSession, float]]:
        """Open a transaction holding the exclusive lock for ``lock_key``.

        Yields the session and the milliseconds spent waiting for the lock.
        Commits on clean exit, rolls back on any exception; the lock is released
        either way.
        """
        ...

    def read_session(self) -> AbstractContextManager[GrantSession]:
        """Lock-free session for reporting reads."""
        ...


class PostgresGrantSession:
    def __init__(self, conn):
        self._conn = conn

    def _fetch(self, operation: str, query: str, params: tuple) -> list[CreditGrant]:
        try:
            rows = self._conn.execute(query, params).fetchall()
        except psycopg.Error as exc:
            raise StoreError.from_exception(exc, operation=operation) from exc
        return [CreditGrant.from_row(row) for row in rows]

    def fetch_consumption_candidates(self, owner: Owner, now: datetime) -> list[CreditGrant]:
        # Non-zero grants UNION the single last-ordered grant, one round trip.
        # UNION (not UNION ALL) drops the duplicate when the last grant is non-zero.
        col = owner.column
        query = f"""
            (SELECT {_GRANT_COLUMNS} FROM credit_ledger
             WHERE {col} = ? AND {_ACTIVE} AND balance <> 0)
            UNION
            (SELECT {_GRANT_COLUMNS} FROM credit_ledger
             WHERE {col} = ? AND {_ACTIVE}
             ORDER BY priority DESC, expires_at DESC NULLS FIRST, created_at DESC, operation_id DESC
             LIMIT 1)
            ORDER BY priority ASC, expires_at ASC NULLS LAST, created_at ASC, operation_id ASC
        """
        return self._fetch(
            "fetch_consumption_candidates",
            query,
            (owner.owner_id, now, owner.owner_id, now),
        )

    def fetch_grants_expiring_after(self, owner: Owner, threshold: datetime) -> list[CreditGrant]:
        query = f"""
            SELECT {_GRANT_COLUMNS} FROM credit_ledger
            WHERE {owner.column} = ? AND {_ACTIVE}
            ORDER BY priority ASC, expires_at ASC NULLS LAST, created_at ASC, operation_id ASC
        """
        return self._fetch("fetch_grants_expiring_after", query, (owner.owner_id, threshold))

    def fetch_debt_grants(self, owner: Owner) -> list[CreditGrant]:
        query = f"""
            SELECT {_GRANT_COLUMNS} FROM credit_ledger
            WHERE {owner.column} = ? AND balance < 0
            ORDER BY priority ASC, expires_at ASC NULLS LAST, created_at ASC, operation_id ASC
        """
        return self._fetch("fetch_debt_grants", query, (owner.owner_id,))

    def get_grant(self, operation_id: str) -> CreditGrant | None:
        grants = self._fetch(
            "get_grant",
            f"SELECT {_GRANT_COLUMNS} FROM credit_ledger WHERE operation_id = ?",
            (operation_id,),
        )
        return grants[0] if grants else None

    def update_balance(self, operation_id: str, balance: int) -> None:
        try:
            cursor = self._conn.execute(
                "UPDATE credit_ledger SET balance = ? WHERE operation_id = ?",
                (balance, operation_id),
            )
        except psycopg.Error as exc:
            raise StoreError.from_exception(exc, operation="update_balance") from exc
        if cursor.rowcount != 1:
            raise StoreError(
                f"update_balance touched {cursor.rowcount} rows for grant {operation_id}",
                operation="update_balance",
                details={"operation_id": operation_id, "rowcount": cursor.rowcount},
            )

    def insert_grant(self, grant: CreditGrant) -> None:
        try:
            self._conn.execute(
                f"""
                INSERT INTO credit_ledger ({_GRANT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    grant.operation_id,
                    grant.user_id,
                    grant.org_id,
                    grant.principal,
                    grant.balance,
                    str(grant.type),
                    grant.description,
                    grant.priority,
                    grant.expires_at,
                    grant.created_at,
                ),
            )
        except psycopg.Error as exc:
            raise StoreError.from_exception(exc, operation="insert_grant") from exc

    def insert_usage_record(self, record: UsageRecord) -> None:
        user_id = record.owner.owner_id if record.owner.column == "user_id" else None
        org_id = record.owner.owner_id if record.owner.column == "org_id" else None
        try:
            self._conn.execute(
                """
                INSERT INTO usage_records (
                    record_id, user_id, org_id, action, model, credits, cost_usd,
                    input_tokens, output_tokens, bypass, latency_ms, metadata_json,
                    started_at, finished_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.record_id,
                    user_id,
                    org_id,
                    record.action,
                    record.model,
                    record.credits,
                    record.cost_usd,
                    record.input_tokens,
                    record.output_tokens,
                    record.bypass,
                    record.latency_ms,
                    metadata_json(record.metadata),
                    record.started_at,
                    record.finished_at,
                ),
            )
        except psycopg.Error as exc:
            raise StoreError.from_exception(exc, operation="insert_usage_record") from exc

    def sum_usage_since(self, owner: Owner, cycle_start: datetime) -> int:
        try:
            row = self._conn.execute(
                f"""
                SELECT COALESCE(SUM(principal - balance), 0) AS used
                FROM credit_ledger
                WHERE {owner.column} = ?
                  AND (created_at > ? OR expires_at IS NULL OR expires_at > ?)
                """,
                (owner.owner_id, cycle_start, cycle_start),
            ).fetchone()
        except psycopg.Error as exc:
            raise StoreError.from_exception(exc, operation="sum_usage_since") from exc
        return int(row["used"] or 0)

    def metering_customer_id(self, owner: Owner) -> str | None:
        try:
            row = self._conn.execute(
                "SELECT customer_id FROM metering_customers WHERE owner_key = ?",
                (owner.lock_key,),
            ).fetchone()
        except psycopg.Error as exc:
            raise StoreError.from_exception(exc, operation="metering_customer_id") from exc
        return str(row["customer_id"]) if row else None


class PostgresLedgerStore:
    """Owner locks are transaction-scoped advisory locks on the same connection."""

    def __init__(self, connect=get_db_connection, *, statement_timeout_ms: int = 0):
        self._connect = connect
        self._statement_timeout_ms = int(statement_timeout_ms or 0)

    @contextmanager
    def locked_transaction(self, lock_key: str):
        with self._connect() as conn:
            try:
                # psycopg opens the transaction implicitly on the first statement.
                if self._statement_timeout_ms:
                    conn.execute(
                        "SELECT set_config('statement_timeout', ?, true)",
                        (str(self._statement_timeout_ms),),
                    )
                started = time.monotonic()
                try:
                    conn.execute("SELECT pg_advisory_xact_lock(hashtext(?))", (lock_key,))
                except psycopg.Error as exc:
                    raise StoreError.from_exception(exc, operation="acquire_owner_lock") from exc
                lock_wait_ms = (time.monotonic() - started) * 1000.0

                yield PostgresGrantSession(conn), lock_wait_ms
                try:
                    conn.commit()
                except psycopg.Error as exc:
                    raise StoreError.from_exception(exc, operation="commit") from exc
            except BaseException:
                conn.rollback()
                raise

    @contextmanager
    def read_session(self):
        with self._connect() as conn:
            try:
                yield PostgresGrantSession(conn)
            finally:
                conn.rollback()
