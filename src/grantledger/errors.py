"""Ledger error taxonomy and tagged success/failure results."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")

# psycopg Diagnostic attribute -> key exposed in StoreError.details
_DIAG_FIELDS = {
    "constraint_name": "constraint",
    "table_name": "table",
    "column_name": "column",
    "schema_name": "schema",
    "message_detail": "detail",
    "severity": "severity",
    "source_function": "routine",
}


class LedgerError(Exception):
    """Base class for credit ledger failures."""

    code = "ledger_error"


class NoActiveGrantsError(LedgerError):
    """No grant exists to draw from or to attach debt to."""

    code = "no_active_grants"

    def __init__(self, owner_id: str, credits: int):
        super().__init__(f"No active grants found for {owner_id} (requested {credits} credits)")
        self.owner_id = owner_id
        self.credits = credits


class StoreError(LedgerError):
    """Underlying data-store failure with the driver's structured diagnostics."""

    code = "store_error"

    def __init__(self, message: str, *, operation: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}

    @classmethod
    def from_exception(cls, exc: BaseException, *, operation: str) -> StoreError:
        return cls(f"{operation} failed: {exc}", operation=operation, details=extract_store_error_details(exc))


class AssociatedWriteFailure(LedgerError):
    """The usage record could not be written; the whole transaction is rolled back."""

    code = "associated_write_failure"

    def __init__(self, record_id: str, cause: BaseException):
        super().__init__(f"Failed to record usage {record_id}: {cause}")
        self.record_id = record_id
        self.details = extract_store_error_details(cause)


class ExternalReportingError(LedgerError):
    """The usage-metering side channel rejected or never received a report."""

    code = "external_reporting_error"

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def extract_store_error_details(error: BaseException | None) -> dict[str, Any]:
    """Pull PostgreSQL diagnostics (sqlstate, constraint, table, ...) off an exception chain."""
    if error is None:
        return {}

    if isinstance(error, StoreError):
        # already extracted from the driver exception it wraps
        return dict(error.details)

    details: dict[str, Any] = {}
    sqlstate = getattr(error, "sqlstate", None)
    if sqlstate:
        details["sqlstate"] = sqlstate

    diag = getattr(error, "diag", None)
    if diag is not None:
        for attr, key in _DIAG_FIELDS.items():
            value = getattr(diag, attr, None)
            if value:
                details[key] = value

    cause = error.__cause__
    if cause is not None and cause is not error:
        cause_details = extract_store_error_details(cause)
        if cause_details:
            details["cause"] = cause_details

    return details


@dataclass(frozen=True)
class ErrorObject:
    name: str
    message: str
    code: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


def error_object(error: BaseException) -> ErrorObject:
    details = extract_store_error_details(error)
    if isinstance(error, AssociatedWriteFailure):
        details = {**error.details, "record_id": error.record_id}
    return ErrorObject(
        name=type(error).__name__,
        message=str(error),
        code=getattr(error, "code", None),
        details=details,
    )


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    error: ErrorObject

    @property
    def ok(self) -> bool:
        return False


LedgerResult = Union[Success[T], Failure]


def success(value: T) -> Success[T]:
    return Success(value)


def failure(error: BaseException) -> Failure:
    return Failure(error_object(error))
