"""AI element classifier client (OpenAI-compatible chat completions)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Protocol, Sequence

import httpx

from webshot.settings import AISettings

LOGGER = logging.getLogger(__name__)
DEFAULT_ENDPOINT_SUFFIX = "/chat/completions"

_SYSTEM_PROMPT = (
    "You are an expert at analyzing HTML to identify common UI elements like cookie banners, "
    "popups, and ads. Return only valid CSS selectors."
)
_USER_PROMPT = (
    "Analyze this HTML and return CSS selectors for cookie banners, newsletter popups, chat widgets, "
    "social media overlays, and ads. Respond with a JSON object {\"elements\": [...]} where each item "
    "has 'selector', 'type' (one of cookie-banner, newsletter, chat-widget, social-overlay, ad) and "
    "'confidence' (0-1). HTML:\n"
)


class ElementDetectionError(RuntimeError):
    """Raised when the classifier endpoint fails or returns garbage."""


@dataclass(frozen=True, slots=True)
class DetectedElement:
    selector: str
    type: str
    confidence: float


class ElementDetector(Protocol):
    async def detect(self, html: str) -> List[DetectedElement]: ...


class NullElementDetector:
    """Detector used when no classifier is configured."""

    async def detect(self, html: str) -> List[DetectedElement]:  # noqa: ARG002
        return []


class OpenAIElementDetector:
    """Ask a chat-completions model to classify intrusive elements in page HTML."""

    def __init__(self, settings: AISettings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client

    async def detect(self, html: str) -> List[DetectedElement]:
        payload = {
            "model": self._settings.model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": _USER_PROMPT + html[: self._settings.max_html_chars]},
            ],
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self._settings.api_key}"}
        url = self._settings.base_url.rstrip("/") + DEFAULT_ENDPOINT_SUFFIX

        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._settings.timeout_seconds) as client:
                    response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            body = response.json()
            content = body["choices"][0]["message"]["content"] or "{}"
            parsed = json.loads(content)
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as exc:
            raise ElementDetectionError(f"element detection failed: {exc}") from exc

        raw_elements = parsed.get("elements", []) if isinstance(parsed, dict) else parsed
        elements = list(parse_elements(raw_elements if isinstance(raw_elements, list) else []))
        LOGGER.debug("Classifier returned %s elements", len(elements))
        return elements


def parse_elements(raw: Iterable[Any]) -> Iterable[DetectedElement]:
    """Yield well-formed entries, silently dropping the rest."""

    for item in raw:
        if not isinstance(item, dict):
            continue
        selector = item.get("selector")
        kind = item.get("type")
        try:
            confidence = float(item.get("confidence", 0))
        except (TypeError, ValueError):
            continue
        if not isinstance(selector, str) or not selector.strip() or not isinstance(kind, str):
            continue
        yield DetectedElement(selector=selector.strip(), type=kind, confidence=confidence)


def filter_elements(
    elements: Sequence[DetectedElement],
    types: Iterable[str],
    threshold: float,
) -> List[DetectedElement]:
    """Keep elements of a requested type whose confidence meets the threshold."""

    wanted = set(types)
    return [element for element in elements if element.type in wanted and element.confidence >= threshold]


def build_detector(settings: AISettings) -> ElementDetector:
    if not settings.api_key:
        return NullElementDetector()
    return OpenAIElementDetector(settings)
