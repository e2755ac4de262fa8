"""Entry point for the FastAPI application."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import start_http_server
from prometheus_fastapi_instrumentator import Instrumentator

from webshot import pipeline
from webshot.capture import BrowserLaunchError, ElementNotFoundError, NavigationError, NavigationTimeoutError
from webshot.imaging import CompositeInputError
from webshot.pipeline import CaptureOutcome, CaptureTimeoutError
from webshot.schemas import CaptureRequest, ConfigurationError, WebshotError
from webshot.settings import get_settings
from webshot.storage import UploadError

LOGGER = logging.getLogger(__name__)
_PROMETHEUS_EXPORTER_STARTED = False

CLIENT_CLOSED_REQUEST = 499

_STATUS_BY_ERROR: tuple[tuple[type[WebshotError], int], ...] = (
    (ConfigurationError, status.HTTP_400_BAD_REQUEST),
    (ElementNotFoundError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (CompositeInputError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NavigationTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (CaptureTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (NavigationError, status.HTTP_502_BAD_GATEWAY),
    (BrowserLaunchError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (UploadError, status.HTTP_502_BAD_GATEWAY),
)


def status_for_error(exc: WebshotError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _start_prometheus_exporter() -> None:
    """Expose Prometheus metrics on the configured auxiliary port."""

    global _PROMETHEUS_EXPORTER_STARTED
    if _PROMETHEUS_EXPORTER_STARTED:
        return
    port = get_settings().telemetry.prometheus_port
    if port <= 0:
        return
    try:
        start_http_server(port)
    except OSError as exc:  # pragma: no cover - system dependent
        LOGGER.warning("Prometheus exporter failed to bind on port %s: %s", port, exc)
        return
    _PROMETHEUS_EXPORTER_STARTED = True
    LOGGER.info("Prometheus exporter listening on port %s", port)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    logging.basicConfig(level=get_settings().telemetry.log_level.upper())
    await _start_prometheus_exporter()
    yield
    if pipeline.default_deps.cache_info().currsize:
        await pipeline.default_deps().aclose()


app = FastAPI(title="Webshot", lifespan=_lifespan)
instrumentator = Instrumentator(should_instrument_requests_inprogress=True)
instrumentator.instrument(app)
try:
    instrumentator.expose(app, include_in_schema=False, should_gzip=True)
except ValueError:  # pragma: no cover - already registered
    LOGGER.debug("Prometheus /metrics endpoint already exposed")


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/mockups")
async def list_mockups() -> dict[str, Any]:
    registry = pipeline.default_deps().registry
    return {
        "version": registry.version,
        "mockups": [
            {
                "id": template.id,
                "name": template.name,
                "class": template.mockup_class.value,
                "device": template.device,
                "dimensions": {"width": template.width, "height": template.height},
                "placement": {
                    "x": template.placement.x,
                    "y": template.placement.y,
                    "width": template.placement.width,
                    "height": template.placement.height,
                },
            }
            for template in registry.values()
        ],
    }


@app.post("/v1/screenshot")
async def create_screenshot(payload: CaptureRequest, request: Request) -> Response:
    """Capture ``payload.url`` and return the artifact (or its storage location)."""

    outcome = await _capture_unless_disconnected(payload, request)
    headers = {"X-Cache": "HIT" if outcome.cache_hit else "MISS"}
    if outcome.warnings:
        headers["X-Webshot-Warnings"] = ",".join(outcome.warning_codes)

    if outcome.upload is not None:
        body = outcome.upload.to_dict()
        body["cache_hit"] = outcome.cache_hit
        body["warnings"] = [entry.to_dict() for entry in outcome.warnings]
        return JSONResponse(body, headers=headers)
    return Response(content=outcome.content, media_type=outcome.content_type, headers=headers)


async def _capture_unless_disconnected(payload: CaptureRequest, request: Request) -> CaptureOutcome:
    capture_task = asyncio.create_task(pipeline.capture(payload))
    watcher = asyncio.create_task(_wait_for_disconnect(request))
    try:
        done, _ = await asyncio.wait({capture_task, watcher}, return_when=asyncio.FIRST_COMPLETED)
        if capture_task not in done:
            capture_task.cancel()
            with suppress(asyncio.CancelledError):
                await capture_task
            LOGGER.info("Client disconnected, capture of %s cancelled", payload.url)
            raise HTTPException(status_code=CLIENT_CLOSED_REQUEST, detail="Client closed request")
        return _unwrap(capture_task)
    finally:
        watcher.cancel()
        if not capture_task.done():
            capture_task.cancel()


def _unwrap(task: asyncio.Task[CaptureOutcome]) -> CaptureOutcome:
    try:
        return task.result()
    except WebshotError as exc:
        code = status_for_error(exc)
        if code >= 500:
            LOGGER.warning("Capture failed (%s): %s", type(exc).__name__, exc)
        raise HTTPException(status_code=code, detail=_error_detail(exc)) from exc


def _error_detail(exc: WebshotError) -> dict[str, Any]:
    detail: dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, UploadError):
        detail["status_code"] = exc.status_code
        detail["body"] = exc.body
    return detail


async def _wait_for_disconnect(request: Request, poll_interval: float = 0.5) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(poll_interval)
