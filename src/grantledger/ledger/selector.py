"""Canonical grant ordering and selection for consumption and reporting."""

from __future__ import annotations

from datetime import datetime, UTC
from typing import Iterable

from .grants import CreditGrant, Owner

_NEVER = datetime.max.replace(tzinfo=UTC)


def consumption_order_key(grant: CreditGrant):
    """priority asc, expiry asc (never-expiring last), creation asc, id asc."""
    return (
        grant.priority,
        grant.expires_at is None,
        grant.expires_at or _NEVER,
        grant.created_at,
        grant.operation_id,
    )


def order_grants(grants: Iterable[CreditGrant]) -> list[CreditGrant]:
    return sorted(grants, key=consumption_order_key)


def last_in_consumption_order(grants: Iterable[CreditGrant]) -> CreditGrant | None:
    return max(grants, key=consumption_order_key, default=None)


def build_consumption_set(active_grants: Iterable[CreditGrant]) -> list[CreditGrant]:
    """Non-zero grants plus the last-ordered grant, deduplicated, in consumption order.

    The last grant is kept even at zero balance so new debt always has a home.
    """
    active = list(active_grants)
    selected = {g.operation_id: g for g in active if g.balance != 0}
    last = last_in_consumption_order(active)
    if last is not None:
        selected.setdefault(last.operation_id, last)
    return order_grants(selected.values())


def select_for_consumption(session, owner: Owner, now: datetime) -> list[CreditGrant]:
    """Grants a consumption attempt may touch, in canonical order.

    Must run inside the owner-locked transaction that will mutate them.
    """
    return order_grants(session.fetch_consumption_candidates(owner, now))


def select_for_reporting(
    session,
    owner: Owner,
    now: datetime,
    include_expired_since: datetime | None = None,
) -> list[CreditGrant]:
    """Grants active at ``now``, plus those that expired after ``include_expired_since``.

    The widened window lets usage attribution count grants that expired mid-cycle.
    """
    threshold = include_expired_since or now
    if threshold > now:
        threshold = now
    return order_grants(session.fetch_grants_expiring_after(owner, threshold))
