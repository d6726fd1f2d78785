"""
Ledger invariant layer: read-only integrity checks over credit_ledger and usage_records.

All checks are deterministic queries. No mutations. No side effects.
"""

from dataclasses import dataclass
from typing import Optional

from ..ledger.grants import GrantType


@dataclass
class InvariantResult:
    name: str
    passed: bool
    detail: Optional[str] = None


def _violations(rows, fmt) -> str:
    return f"Violations: {'; '.join(fmt(r) for r in rows[:20])}"


def check_principal_non_negative(conn) -> InvariantResult:
    """principal >= 0 for every grant."""
    rows = conn.execute(
        "SELECT operation_id, principal FROM credit_ledger WHERE principal < 0"
    ).fetchall()
    if rows:
        return InvariantResult(
            name="principal_non_negative",
            passed=False,
            detail=_violations(rows, lambda r: f"{r['operation_id']}: principal={r['principal']}"),
        )
    return InvariantResult(name="principal_non_negative", passed=True)


def check_balance_within_principal(conn) -> InvariantResult:
    """consumption and repayment never lift a balance above its principal."""
    rows = conn.execute(
        "SELECT operation_id, principal, balance FROM credit_ledger WHERE balance > principal"
    ).fetchall()
    if rows:
        return InvariantResult(
            name="balance_within_principal",
            passed=False,
            detail=_violations(
                rows, lambda r: f"{r['operation_id']}: balance={r['balance']} > principal={r['principal']}"
            ),
        )
    return InvariantResult(name="balance_within_principal", passed=True)


def check_known_grant_types(conn) -> InvariantResult:
    """every grant carries one of the known grant types."""
    known = tuple(t.value for t in GrantType)
    placeholders = ", ".join("?" for _ in known)
    rows = conn.execute(
        f"SELECT operation_id, type FROM credit_ledger WHERE type NOT IN ({placeholders})",
        known,
    ).fetchall()
    if rows:
        return InvariantResult(
            name="known_grant_types",
            passed=False,
            detail=_violations(rows, lambda r: f"{r['operation_id']}: type={r['type']}"),
        )
    return InvariantResult(name="known_grant_types", passed=True)


def check_grants_have_owner(conn) -> InvariantResult:
    """every grant belongs to a user or an organization."""
    rows = conn.execute(
        "SELECT operation_id FROM credit_ledger WHERE user_id IS NULL AND org_id IS NULL"
    ).fetchall()
    if rows:
        return InvariantResult(
            name="grants_have_owner",
            passed=False,
            detail=_violations(rows, lambda r: str(r["operation_id"])),
        )
    return InvariantResult(name="grants_have_owner", passed=True)


def check_usage_credits_non_negative(conn) -> InvariantResult:
    """recorded usage never carries negative credits."""
    rows = conn.execute(
        "SELECT record_id, credits FROM usage_records WHERE credits < 0"
    ).fetchall()
    if rows:
        return InvariantResult(
            name="usage_credits_non_negative",
            passed=False,
            detail=_violations(rows, lambda r: f"{r['record_id']}: credits={r['credits']}"),
        )
    return InvariantResult(name="usage_credits_non_negative", passed=True)


def run_all_checks(conn) -> list[InvariantResult]:
    """Run all invariant checks and return results."""
    return [
        check_principal_non_negative(conn),
        check_balance_within_principal(conn),
        check_known_grant_types(conn),
        check_grants_have_owner(conn),
        check_usage_credits_non_negative(conn),
    ]
