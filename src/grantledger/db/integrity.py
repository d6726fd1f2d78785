"""Database integrity checks for ledger invariants."""

from __future__ import annotations

from ..utils.invariants import InvariantResult, run_all_checks
from ..utils.logging_config import StructuredLogger
from .connection import get_db_connection

logger = StructuredLogger(__name__)

_REQUIRED_TABLES = (
    "credit_ledger",
    "usage_records",
    "metering_customers",
)


def missing_tables(conn) -> list[str]:
    rows = conn.execute(
        "SELECT table_name FROM information_schema.tables WHERE table_schema = current_schema()"
    ).fetchall()
    present = {row["table_name"] for row in rows}
    return [name for name in _REQUIRED_TABLES if name not in present]


def check_db_integrity(connect=get_db_connection) -> list[InvariantResult]:
    """Run schema presence plus every ledger invariant; never mutates."""
    with connect() as conn:
        missing = missing_tables(conn)
        if missing:
            logger.error("Ledger schema incomplete", missing=missing)
            return [InvariantResult(name="schema_present", passed=False, detail=f"Missing tables: {', '.join(missing)}")]
        results = [InvariantResult(name="schema_present", passed=True)]
        results.extend(run_all_checks(conn))

    failed = [r.name for r in results if not r.passed]
    if failed:
        logger.warning("Ledger invariant violations", failed=failed)
    return results
