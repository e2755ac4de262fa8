"""Signed completion callbacks."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from webshot.schemas import WebhookDirective

LOGGER = logging.getLogger(__name__)

EVENT_COMPLETED = "screenshot.completed"
EVENT_FAILED = "screenshot.failed"

SIGNATURE_HEADER = "X-Webshot-Signature"
TIMESTAMP_HEADER = "X-Webshot-Timestamp"
USER_AGENT = "webshot-webhook/1.0"
WEBHOOK_TIMEOUT_SECONDS = 10.0
RETRY_DELAY_SECONDS = 5.0


@dataclass(frozen=True, slots=True)
class WebhookResult:
    success: bool
    status_code: int | None = None
    error: str | None = None


def sign_payload(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def build_payload(event: str, data: Mapping[str, Any], *, timestamp: float | None = None) -> dict[str, Any]:
    return {
        "event": event,
        "timestamp": int((timestamp if timestamp is not None else time.time()) * 1000),
        "data": dict(data),
    }


async def send_webhook(
    config: WebhookDirective,
    payload: Mapping[str, Any],
    *,
    client: httpx.AsyncClient | None = None,
) -> WebhookResult:
    """Deliver one webhook; never raises."""

    body = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        TIMESTAMP_HEADER: str(payload.get("timestamp", int(time.time() * 1000))),
    }
    if config.headers:
        headers.update(config.headers)
    if config.secret:
        headers[SIGNATURE_HEADER] = sign_payload(config.secret, body)

    try:
        if client is not None:
            response = await client.request(config.method, config.url, content=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS) as owned:
                response = await owned.request(config.method, config.url, content=body, headers=headers)
    except httpx.HTTPError as exc:
        LOGGER.warning("Webhook delivery to %s failed: %s", config.url, exc)
        return WebhookResult(success=False, error=str(exc) or type(exc).__name__)

    if response.is_success:
        return WebhookResult(success=True, status_code=response.status_code)
    LOGGER.warning("Webhook %s answered HTTP %s", config.url, response.status_code)
    return WebhookResult(
        success=False,
        status_code=response.status_code,
        error=f"HTTP {response.status_code}: {response.reason_phrase}",
    )


async def dispatch_webhook(
    config: WebhookDirective,
    payload: Mapping[str, Any],
    *,
    client: httpx.AsyncClient | None = None,
    retry_delay: float = RETRY_DELAY_SECONDS,
) -> WebhookResult:
    """Send with a single delayed retry; meant to run as a background task."""

    result = await send_webhook(config, payload, client=client)
    if result.success:
        return result
    await asyncio.sleep(retry_delay)
    result = await send_webhook(config, payload, client=client)
    if not result.success:
        LOGGER.error("Webhook %s failed after retry: %s", config.url, result.error)
    return result
