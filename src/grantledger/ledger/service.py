"""Public ledger operations.

Every mutating operation runs under the owner lock inside one transaction;
reporting reads are lock-free. Store and metering reporter are injectable and
default to the configured PostgreSQL store and metering endpoint.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..errors import AssociatedWriteFailure, LedgerResult, extract_store_error_details, failure, success
from ..observability.metering import MeteringReporter, report_purchased_credits
from ..utils.config_loader import config_loader
from ..utils.logging_config import StructuredLogger
from .balance import BalanceScope, UsageAndBalance, calculate_usage_and_balance_from_grants
from .consumption import consume_from_ordered_grants
from .grants import (
    ConsumptionResult,
    CreditGrant,
    GrantType,
    Owner,
    OwnerType,
    RecordedConsumption,
    UsageRecord,
    utc_now,
)
from .locking import with_owner_lock
from .selector import select_for_consumption, select_for_reporting
from .store import PostgresLedgerStore

logger = StructuredLogger(__name__)

_reporter: MeteringReporter | None = None
_reporter_loaded = False


def default_store() -> PostgresLedgerStore:
    config = config_loader.get_config()
    return PostgresLedgerStore(statement_timeout_ms=config.database.statement_timeout_ms)


def default_reporter() -> MeteringReporter | None:
    global _reporter, _reporter_loaded
    if not _reporter_loaded:
        _reporter = MeteringReporter.from_config(config_loader.get_config().metering)
        _reporter_loaded = True
    return _reporter


@dataclass(frozen=True)
class GrantOutcome:
    grant: CreditGrant | None
    debt_cleared: int
    created: bool


def _report_purchased(
    store,
    reporter: MeteringReporter | None,
    *,
    owner: Owner,
    from_purchased: int,
    event_id: str,
    customer_id: str | None,
    extra: dict[str, Any],
) -> None:
    if reporter is None or from_purchased <= 0:
        return
    try:
        if customer_id is None:
            with store.read_session() as session:
                customer_id = session.metering_customer_id(owner)
        report_purchased_credits(
            reporter,
            owner=owner,
            customer_id=customer_id,
            purchased_credits=from_purchased,
            event_id=event_id,
            extra=extra,
        )
    except Exception as exc:
        # Consumption is committed; metering must not change the outcome.
        logger.warning("Usage metering skipped", owner=owner.lock_key, event_id=event_id, error=str(exc))


def consume_credits(
    owner: Owner,
    credits: int,
    *,
    store=None,
    reporter: MeteringReporter | None = None,
    metering_customer_id: str | None = None,
    now: datetime | None = None,
) -> ConsumptionResult:
    """Consume ``credits`` for ``owner``, creating debt if balances run out.

    Raises NoActiveGrantsError when the owner has no active grant at all.
    """
    if credits <= 0:
        raise ValueError("credits must be a positive integer")
    store = store or default_store()
    reporter = reporter or default_reporter()

    def _consume(session) -> ConsumptionResult:
        at = now or utc_now()
        grants = select_for_consumption(session, owner, at)
        return consume_from_ordered_grants(session, owner=owner, credits_to_consume=credits, grants=grants)

    locked = with_owner_lock(
        store,
        owner.lock_key,
        _consume,
        context={"owner": owner.lock_key, "credits_requested": credits},
    )
    result = locked.value

    logger.info(
        "Credits consumed",
        owner=owner.lock_key,
        credits_consumed=result.consumed,
        credits_requested=credits,
        from_purchased=result.from_purchased,
        lock_wait_ms=round(locked.lock_wait_ms, 2),
    )

    _report_purchased(
        store,
        reporter,
        owner=owner,
        from_purchased=result.from_purchased,
        event_id=str(uuid.uuid4()),
        customer_id=metering_customer_id,
        extra={"source": "consume_credits"},
    )
    return result


def consume_credits_and_record_usage(
    record: UsageRecord,
    *,
    store=None,
    reporter: MeteringReporter | None = None,
    metering_customer_id: str | None = None,
    now: datetime | None = None,
) -> LedgerResult[RecordedConsumption]:
    """Consume ``record.credits`` for ``record.owner`` and persist ``record`` atomically.

    With ``record.bypass`` set no credits are consumed but the record is still
    written. Never raises for ledger failures: returns Success or Failure.
    """
    owner = record.owner
    store = store or default_store()
    reporter = reporter or default_reporter()

    # Survives the transaction so the failure log can say how far it got.
    progress: dict[str, Any] = {"phase": "fetch_grants", "grants": []}

    def _consume_and_record(session) -> RecordedConsumption:
        progress["phase"] = "fetch_grants"
        progress["grants"] = []
        result = ConsumptionResult(consumed=0, from_purchased=0)

        if not record.bypass:
            grants = select_for_consumption(session, owner, now or utc_now())
            progress["grants"] = [g.snapshot() for g in grants]
            progress["phase"] = "consume_credits"
            result = consume_from_ordered_grants(
                session, owner=owner, credits_to_consume=record.credits, grants=grants
            )

        progress["phase"] = "insert_record"
        try:
            session.insert_usage_record(record)
        except Exception as exc:
            raise AssociatedWriteFailure(record.record_id, exc) from exc

        progress["phase"] = "complete"
        return RecordedConsumption(
            consumed=result.consumed,
            from_purchased=result.from_purchased,
            record_id=record.record_id,
        )

    try:
        locked = with_owner_lock(
            store,
            owner.lock_key,
            _consume_and_record,
            context={"owner": owner.lock_key, "credits_requested": record.credits, "record_id": record.record_id},
        )
    except Exception as exc:
        snapshot = progress["grants"]
        logger.error(
            "Error consuming credits and recording usage",
            error=str(exc),
            error_type=type(exc).__name__,
            store_details=extract_store_error_details(exc),
            phase=progress["phase"],
            owner=owner.lock_key,
            record_id=record.record_id,
            credits=record.credits,
            bypass=record.bypass,
            model=record.model,
            grants_snapshot=snapshot,
            grants_count=len(snapshot),
            total_grant_balance=sum(g["balance"] for g in snapshot),
        )
        return failure(exc)

    value = locked.value
    logger.info(
        "Credits consumed and usage recorded",
        owner=owner.lock_key,
        record_id=record.record_id,
        credits_consumed=value.consumed,
        credits_requested=record.credits,
        from_purchased=value.from_purchased,
        bypass=record.bypass,
        model=record.model,
        lock_wait_ms=round(locked.lock_wait_ms, 2),
    )

    _report_purchased(
        store,
        reporter,
        owner=owner,
        from_purchased=value.from_purchased,
        event_id=record.record_id,
        customer_id=metering_customer_id,
        extra={"source": "consume_credits_and_record_usage", "record_id": record.record_id},
    )
    return success(value)


def get_balance_and_usage(
    owner: Owner,
    cycle_start: datetime,
    *,
    scope: BalanceScope = BalanceScope.FULL,
    store=None,
    now: datetime | None = None,
) -> UsageAndBalance:
    """Usage since ``cycle_start`` and the settled balance; lock-free, may be slightly stale."""
    store = store or default_store()
    at = now or utc_now()

    with store.read_session() as session:
        grants = select_for_reporting(session, owner, at, include_expired_since=cycle_start)

    report = calculate_usage_and_balance_from_grants(grants, cycle_start=cycle_start, now=at, scope=scope)

    if report.settlement:
        logger.debug(
            "Performing in-memory settlement",
            owner=owner.lock_key,
            total_debt=report.settlement.total_debt,
            total_positive_balance=report.settlement.total_positive_balance,
            settlement_amount=report.settlement.settlement_amount,
        )
    logger.debug(
        "Calculated usage and settled balance",
        owner=owner.lock_key,
        net_balance=report.balance.net_balance,
        usage_this_cycle=report.usage_this_cycle,
        grants_count=len(grants),
        scope=str(scope),
    )
    return report


def usage_this_cycle(owner: Owner, cycle_start: datetime, *, store=None) -> int:
    """Aggregate-only usage since ``cycle_start``, computed by the store."""
    store = store or default_store()
    with store.read_session() as session:
        return session.sum_usage_since(owner, cycle_start)


def grant_credits(
    owner: Owner,
    amount: int,
    grant_type: GrantType,
    *,
    description: str | None = None,
    expires_at: datetime | None = None,
    operation_id: str | None = None,
    priority: int | None = None,
    store=None,
    now: datetime | None = None,
) -> GrantOutcome:
    """Issue a grant, first clearing the owner's outstanding debt from it.

    Idempotent on ``operation_id``. When the debt swallows the whole amount the
    debt is still cleared but no grant row is written.
    """
    if amount <= 0:
        raise ValueError("grant amount must be a positive integer")
    grant_type = GrantType(grant_type)
    op_id = operation_id or str(uuid.uuid4())
    grant_priority = priority if priority is not None else config_loader.priority_for(grant_type)
    store = store or default_store()

    def _grant(session) -> GrantOutcome:
        existing = session.get_grant(op_id)
        if existing is not None:
            logger.info("Grant already exists; skipping", owner=owner.lock_key, operation_id=op_id)
            return GrantOutcome(grant=existing, debt_cleared=0, created=False)

        debt_cleared = 0
        for debt_grant in session.fetch_debt_grants(owner):
            session.update_balance(debt_grant.operation_id, 0)
            debt_cleared += -debt_grant.balance

        remaining = amount - debt_cleared
        if remaining <= 0:
            logger.warning(
                "Debt absorbed entire grant; no grant written",
                owner=owner.lock_key,
                operation_id=op_id,
                amount=amount,
                debt_cleared=debt_cleared,
            )
            return GrantOutcome(grant=None, debt_cleared=debt_cleared, created=False)

        text = description or f"{grant_type} credits"
        if debt_cleared:
            text = f"{text} ({debt_cleared} credits used to clear existing debt)"

        grant = CreditGrant(
            operation_id=op_id,
            principal=amount,
            balance=remaining,
            type=grant_type,
            priority=grant_priority,
            created_at=now or utc_now(),
            expires_at=expires_at,
            user_id=owner.owner_id if owner.owner_type == OwnerType.USER else None,
            org_id=owner.owner_id if owner.owner_type == OwnerType.ORGANIZATION else None,
            description=text,
        )
        session.insert_grant(grant)
        return GrantOutcome(grant=grant, debt_cleared=debt_cleared, created=True)

    locked = with_owner_lock(
        store,
        owner.lock_key,
        _grant,
        context={"owner": owner.lock_key, "operation_id": op_id, "amount": amount},
    )
    outcome = locked.value
    if outcome.created:
        logger.info(
            "Credits granted",
            owner=owner.lock_key,
            operation_id=op_id,
            grant_type=str(grant_type),
            amount=amount,
            balance=outcome.grant.balance,
            debt_cleared=outcome.debt_cleared,
            lock_wait_ms=round(locked.lock_wait_ms, 2),
        )
    return outcome
