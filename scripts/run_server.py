"""Launcher for the webshot API under uvicorn."""

from __future__ import annotations

from typing import Optional

import typer
import uvicorn
from decouple import config

app = typer.Typer(help="Run the webshot FastAPI app with uvicorn.", add_completion=False)


@app.callback(invoke_without_command=True)
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind host."),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port."),
    reload: Optional[bool] = typer.Option(None, "--reload/--no-reload", help="Enable auto-reload."),
    workers: Optional[int] = typer.Option(None, "--workers", help="Worker processes."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level."),
) -> None:
    """Launch ``webshot.main:app``; unset options fall back to HOST/PORT/... settings."""

    resolved_reload = reload if reload is not None else config("RELOAD", cast=bool, default=False)
    resolved_workers = workers or config("UVICORN_WORKERS", cast=int, default=1)
    if resolved_reload and resolved_workers > 1:
        raise typer.BadParameter("--reload cannot be combined with multiple workers", param_hint="--workers")

    uvicorn.run(
        "webshot.main:app",
        host=host or config("HOST", default="127.0.0.1"),
        port=port or config("PORT", cast=int, default=8000),
        reload=resolved_reload,
        workers=resolved_workers,
        log_level=(log_level or config("LOG_LEVEL", default="info")).lower(),
    )


if __name__ == "__main__":  # pragma: no cover
    app()
