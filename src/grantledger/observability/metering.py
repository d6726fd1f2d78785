"""Best-effort reporting of purchased-credit usage to an external metering API."""

from __future__ import annotations

import os
from datetime import datetime, UTC
from typing import Any

import httpx

from ..errors import ExternalReportingError
from ..ledger.grants import Owner
from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)


class MeteringReporter:
    """POSTs one usage event per consumption; the event id doubles as idempotency key."""

    def __init__(
        self,
        endpoint: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 3.0,
        client: httpx.Client | None = None,
    ):
        self.endpoint = endpoint
        self._api_key = api_key
        self._client = client or httpx.Client(timeout=timeout_seconds)

    @classmethod
    def from_config(cls, metering) -> MeteringReporter | None:
        if not metering.enabled:
            return None
        return cls(
            metering.endpoint,
            api_key=(os.getenv(metering.api_key_env) or "").strip() or None,
            timeout_seconds=metering.timeout_seconds,
        )

    def _headers(self, event_id: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": event_id,
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def report(
        self,
        *,
        owner: Owner,
        customer_id: str,
        credits: int,
        event_id: str,
        timestamp: datetime,
        extra: dict[str, Any] | None = None,
    ) -> None:
        payload = {
            "event_id": event_id,
            "customer_id": customer_id,
            "owner_id": owner.owner_id,
            "owner_type": str(owner.owner_type),
            "credits": credits,
            "timestamp": int(timestamp.timestamp()),
            **(extra or {}),
        }
        try:
            response = self._client.post(self.endpoint, json=payload, headers=self._headers(event_id))
        except httpx.HTTPError as exc:
            raise ExternalReportingError(f"Metering request failed: {exc}") from exc

        if response.status_code >= 400:
            raise ExternalReportingError(
                f"Metering endpoint returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

    def close(self) -> None:
        self._client.close()


def report_purchased_credits(
    reporter: MeteringReporter | None,
    *,
    owner: Owner,
    customer_id: str | None,
    purchased_credits: int,
    event_id: str,
    timestamp: datetime | None = None,
    extra: dict[str, Any] | None = None,
) -> bool:
    """Report the purchased portion of a consumption. Returns True when delivered.

    Never raises for delivery failures; consumption has already committed.
    """
    if reporter is None or purchased_credits <= 0:
        return False
    if not customer_id:
        logger.debug("No metering customer for owner; skipping report", owner=owner.lock_key)
        return False

    try:
        reporter.report(
            owner=owner,
            customer_id=customer_id,
            credits=purchased_credits,
            event_id=event_id,
            timestamp=timestamp or datetime.now(UTC),
            extra=extra,
        )
    except ExternalReportingError as exc:
        logger.warning(
            "Failed to report purchased credits",
            owner=owner.lock_key,
            event_id=event_id,
            purchased_credits=purchased_credits,
            status_code=exc.status_code,
            error=str(exc),
        )
        return False
    return True
