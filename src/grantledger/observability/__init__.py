"""Observability side channels for the ledger."""

from .metering import MeteringReporter, report_purchased_credits

__all__ = [
    "MeteringReporter",
    "report_purchased_credits",
]
