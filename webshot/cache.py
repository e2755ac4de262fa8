"""Deterministic capture fingerprints plus a best-effort artifact cache."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Protocol

from redis import asyncio as redis_asyncio

from webshot import metrics
from webshot.schemas import CaptureRequest
from webshot.settings import CacheSettings

LOGGER = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "screenshot:cache:"
DEFAULT_KEY_LENGTH = 16

# Only fields that change the rendered bytes belong here; delivery settings
# (storage, webhook, cache ttl) must not split otherwise identical captures.
_CONTENT_FIELDS = (
    "url",
    "device",
    "width",
    "height",
    "full_page",
    "format",
    "quality",
    "selector",
    "clip",
    "mockup",
    "block_ads",
    "dark_mode",
    "device_scale_factor",
)


def fingerprint_payload(request: CaptureRequest) -> Dict[str, Any]:
    """Return the content-affecting subset of a request."""

    payload = {name: getattr(request, name) for name in _CONTENT_FIELDS}
    payload["quality"] = request.effective_quality
    payload["device_scale_factor"] = float(request.device_scale_factor)
    payload["clip"] = request.clip.model_dump() if request.clip is not None else None
    return payload


def fingerprint(
    request: CaptureRequest,
    *,
    prefix: str = DEFAULT_KEY_PREFIX,
    length: int = DEFAULT_KEY_LENGTH,
) -> str:
    """Compute the namespaced cache key for a request.

    Keys are the first ``length`` hex chars of a SHA-256 over key-sorted JSON,
    so field order never affects the result.
    """

    canonical = json.dumps(fingerprint_payload(request), sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{prefix}{digest[:length]}"


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def close(self) -> None: ...


class MemoryCacheBackend:
    """Bounded in-process store; evicts the oldest insertion (FIFO, not LRU)."""

    def __init__(self, max_entries: int = 100, clock: Callable[[], float] = time.monotonic) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, tuple[str, float]]" = OrderedDict()
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            # Re-inserting keeps the original slot; reads never reorder.
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = (value, self._clock() + ttl_seconds)

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisCacheBackend:
    """Thin wrapper around ``redis.asyncio`` storing base64 text with SETEX."""

    def __init__(self, client: Any) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCacheBackend:
        return cls(redis_asyncio.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client.setex(key, ttl_seconds, value)

    async def close(self) -> None:
        await self._client.aclose()


class CaptureCache:
    """Artifact cache whose failures degrade to a miss, never to an error."""

    def __init__(
        self,
        backend: CacheBackend,
        *,
        max_payload_bytes: int = 5 * 1024 * 1024,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        key_length: int = DEFAULT_KEY_LENGTH,
    ) -> None:
        self.backend = backend
        self.max_payload_bytes = max_payload_bytes
        self.key_prefix = key_prefix
        self.key_length = key_length

    def key_for(self, request: CaptureRequest) -> str:
        return fingerprint(request, prefix=self.key_prefix, length=self.key_length)

    async def get(self, key: str) -> Optional[bytes]:
        try:
            cached = await self.backend.get(key)
            if cached is None:
                metrics.record_cache_event("miss")
                return None
            data = base64.b64decode(cached)
        except Exception as exc:  # noqa: BLE001 - cache outages must not fail captures
            LOGGER.warning("Cache read failed for %s: %s", key, exc)
            metrics.record_cache_event("error")
            return None
        metrics.record_cache_event("hit")
        return data

    async def put(self, key: str, data: bytes, ttl_seconds: int) -> None:
        encoded = base64.b64encode(data).decode("ascii")
        if len(encoded) >= self.max_payload_bytes:
            LOGGER.debug("Skipping cache write for %s (%s bytes encoded)", key, len(encoded))
            metrics.record_cache_event("oversized")
            return
        try:
            await self.backend.set(key, encoded, ttl_seconds)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Cache write failed for %s: %s", key, exc)
            metrics.record_cache_event("error")
            return
        metrics.record_cache_event("store")

    async def aclose(self) -> None:
        try:
            await self.backend.close()
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Cache backend close failed: %s", exc)


def build_cache(settings: CacheSettings) -> CaptureCache:
    """Prefer redis when configured; otherwise fall back to the in-process map."""

    backend: CacheBackend
    if settings.redis_url:
        try:
            backend = RedisCacheBackend.from_url(settings.redis_url)
        except Exception as exc:  # noqa: BLE001 - bad URL degrades to memory cache
            LOGGER.warning("Invalid REDIS_URL, using in-process cache: %s", exc)
            backend = MemoryCacheBackend(settings.memory_max_entries)
        else:
            LOGGER.info("Capture cache backed by redis")
    else:
        backend = MemoryCacheBackend(settings.memory_max_entries)
    return CaptureCache(
        backend,
        max_payload_bytes=settings.max_payload_bytes,
        key_prefix=settings.key_prefix,
        key_length=settings.key_length,
    )
