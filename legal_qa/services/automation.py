# =============================================================================
# Automation Dispatcher — Best-Effort Webhook Fan-Out (n8n)
# =============================================================================
#
# Notifies an external automation system (n8n or anything that accepts
# webhooks) about domain events:
#
#   new-query            — a question was submitted
#   new-response         — an answer was generated
#   high-rated-response  — an answer was rated at or above the threshold
#   publish-article      — an answer was published
#   consultation-request — an owner asked for a human lawyer
#
# WIRE FORMAT:
#   POST {AUTOMATION_WEBHOOK_URL}/{event}
#   {"timestamp": "<ISO 8601 UTC>", "event": "<event>", "data": {...}}
#
# DELIVERY GUARANTEE: at most once.
# One attempt, no retry, no queue. A transport error or a non-2xx status is
# logged and swallowed; publish() never raises. With no URL configured the
# dispatcher is a silent no-op.
# =============================================================================

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic_core import to_jsonable_python

from legal_qa.config import settings
from legal_qa.errors import DeliveryError

logger = logging.getLogger(__name__)

NEW_QUERY = "new-query"
NEW_RESPONSE = "new-response"
HIGH_RATED_RESPONSE = "high-rated-response"
PUBLISH_ARTICLE = "publish-article"
CONSULTATION_REQUEST = "consultation-request"


class AutomationDispatcher:
    """
    POSTs event envelopes to `{base_url}/{event}`.

    Args:
        base_url: Webhook root. None or empty disables delivery.
        client: Shared httpx.AsyncClient. When omitted, a short-lived client
            is opened per event (used by Celery tasks, which own no
            long-lived loop).
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        self._base_url = (base_url or "").rstrip("/")
        self._client = client
        self._timeout = timeout if timeout is not None else settings.automation_timeout_seconds

    @property
    def enabled(self) -> bool:
        return bool(self._base_url)

    async def publish(self, event: str, payload: Any) -> bool:
        """
        Deliver one event.

        Returns:
            True when the endpoint answered 2xx, False otherwise (including
            when delivery is disabled).
        """
        if not self.enabled:
            logger.debug("Automation disabled, dropping event '%s'", event)
            return False

        envelope = {
            "timestamp": datetime.now(UTC).isoformat(),
            "event": event,
            "data": to_jsonable_python(payload),
        }
        url = f"{self._base_url}/{event}"

        try:
            await self._post(url, envelope)
        except DeliveryError as exc:
            logger.warning("Automation event '%s' not delivered: %s", event, exc)
            return False

        logger.info("Automation event '%s' delivered to %s", event, url)
        return True

    async def _post(self, url: str, envelope: dict) -> None:
        try:
            if self._client is not None:
                response = await self._client.post(url, json=envelope, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=envelope)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DeliveryError(f"HTTP {exc.response.status_code} from {url}") from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc


def create_automation_dispatcher(client: httpx.AsyncClient | None = None) -> AutomationDispatcher:
    """Dispatcher configured from settings."""
    return AutomationDispatcher(
        base_url=settings.automation_webhook_url,
        client=client,
        timeout=settings.automation_timeout_seconds,
    )
