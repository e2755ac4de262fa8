from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest

from webshot.schemas import WebhookDirective
from webshot.webhooks import (
    EVENT_COMPLETED,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    build_payload,
    dispatch_webhook,
    send_webhook,
    sign_payload,
)


def test_build_payload_uses_millisecond_timestamp() -> None:
    payload = build_payload(EVENT_COMPLETED, {"url": "https://example.com"}, timestamp=1_700_000_000.5)

    assert payload == {
        "event": "screenshot.completed",
        "timestamp": 1_700_000_000_500,
        "data": {"url": "https://example.com"},
    }


@pytest.mark.asyncio()
async def test_signed_delivery_with_custom_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    config = WebhookDirective(
        url="https://hooks.example.com/shots",
        method="PUT",
        headers={"X-Team": "growth"},
        secret="s3cret",
    )
    payload = build_payload(EVENT_COMPLETED, {"cache_hit": False}, timestamp=1.0)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await send_webhook(config, payload, client=client)

    request = seen[0]
    expected = "sha256=" + hmac.new(b"s3cret", request.content, hashlib.sha256).hexdigest()
    assert result.success and result.status_code == 204
    assert request.method == "PUT"
    assert request.headers[SIGNATURE_HEADER] == expected == sign_payload("s3cret", request.content)
    assert request.headers[TIMESTAMP_HEADER] == "1000"
    assert request.headers["x-team"] == "growth"
    assert json.loads(request.content) == payload


@pytest.mark.asyncio()
async def test_unsigned_delivery_omits_signature() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        await send_webhook(WebhookDirective(url="https://hooks.example.com/x"), build_payload("e", {}), client=client)

    assert seen[0].method == "POST"
    assert SIGNATURE_HEADER not in seen[0].headers


@pytest.mark.asyncio()
async def test_dispatch_retries_once_then_succeeds() -> None:
    statuses = iter([503, 200])
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        status = next(statuses)
        calls.append(status)
        return httpx.Response(status)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await dispatch_webhook(
            WebhookDirective(url="https://hooks.example.com/x"),
            build_payload("e", {}),
            client=client,
            retry_delay=0,
        )

    assert calls == [503, 200]
    assert result.success


@pytest.mark.asyncio()
async def test_dispatch_gives_up_after_second_failure() -> None:
    attempts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(str(request.url))
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await dispatch_webhook(
            WebhookDirective(url="https://hooks.example.com/x"),
            build_payload("e", {}),
            client=client,
            retry_delay=0,
        )

    assert len(attempts) == 2
    assert result.success is False
    assert result.status_code is None
    assert "refused" in (result.error or "")


def test_webhook_url_must_be_http() -> None:
    with pytest.raises(ValueError):
        WebhookDirective(url="ftp://hooks.example.com/x")
