# =============================================================================
# Unit Tests — Automation Dispatcher
# =============================================================================
#
# Uses httpx.MockTransport so no network is involved. publish() must never
# raise, whatever the endpoint does.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime

import httpx

from legal_qa.services.automation import NEW_RESPONSE, AutomationDispatcher


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _publish(handler, event: str, payload: dict, base_url: str = "http://n8n.local/webhook/"):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            dispatcher = AutomationDispatcher(base_url=base_url, client=client, timeout=1.0)
            return await dispatcher.publish(event, payload)
    return _run(scenario())


class TestAutomationDispatcher:
    def test_disabled_without_url(self):
        dispatcher = AutomationDispatcher(base_url=None)
        assert dispatcher.enabled is False
        assert _run(dispatcher.publish(NEW_RESPONSE, {"queryId": "x"})) is False

    def test_envelope_and_url(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        query_id = uuid.uuid4()
        delivered = _publish(handler, NEW_RESPONSE, {
            "queryId": query_id,
            "response": {"text": "Ответ"},
            "hasFiles": False,
            "hasAudio": True,
        })

        assert delivered is True
        assert len(seen) == 1
        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "http://n8n.local/webhook/new-response"

        body = json.loads(request.content)
        assert body["event"] == "new-response"
        assert body["data"]["queryId"] == str(query_id)
        assert body["data"]["response"]["text"] == "Ответ"
        assert body["data"]["hasAudio"] is True
        assert datetime.fromisoformat(body["timestamp"]).tzinfo is not None

    def test_server_error_is_swallowed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="boom")

        assert _publish(handler, NEW_RESPONSE, {"queryId": "x"}) is False

    def test_transport_error_is_swallowed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        assert _publish(handler, NEW_RESPONSE, {"queryId": "x"}) is False
