"""Owner-scoped lock coordination.

Every mutation path for an owner runs through ``with_owner_lock`` so concurrent
attempts queue behind each other instead of racing on a read-modify-write.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

T = TypeVar("T")

# Lock waits above this are logged; they are never treated as errors.
SLOW_LOCK_WAIT_MS = 1000.0


@dataclass(frozen=True)
class LockedResult(Generic[T]):
    value: T
    lock_wait_ms: float


def with_owner_lock(
    store,
    lock_key: str,
    fn: Callable[[Any], T],
    *,
    context: dict[str, Any] | None = None,
) -> LockedResult[T]:
    """Run ``fn(session)`` inside a transaction holding the lock for ``lock_key``.

    The transaction commits when ``fn`` returns and rolls back when it raises;
    the lock is released with the transaction in both cases.
    """
    ctx = context or {}
    lock_wait_ms = 0.0
    try:
        with store.locked_transaction(lock_key) as (session, lock_wait_ms):
            if lock_wait_ms >= SLOW_LOCK_WAIT_MS:
                logger.warning("Slow owner lock acquisition", lock_key=lock_key, lock_wait_ms=round(lock_wait_ms, 2), **ctx)
            value = fn(session)
    except Exception as exc:
        logger.error(
            "Owner-locked transaction rolled back",
            lock_key=lock_key,
            lock_wait_ms=round(lock_wait_ms, 2),
            error=str(exc),
            error_type=type(exc).__name__,
            **ctx,
        )
        raise
    return LockedResult(value=value, lock_wait_ms=lock_wait_ms)
