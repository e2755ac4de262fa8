#!/usr/bin/env python3
"""Local capture CLI: run the webshot pipeline without the HTTP server."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from webshot.mockups import cached_registry
from webshot.pipeline import CaptureOutcome, PipelineDeps, capture
from webshot.schemas import CaptureRequest, WebshotError
from webshot.settings import get_settings

console = Console()
cli = typer.Typer(help="Capture URLs into screenshots, PDFs and device mockups.")


def _summary_table(request: CaptureRequest, outcome: CaptureOutcome, out: Path | None) -> Table:
    table = Table("Field", "Value", title="Capture", show_header=False)
    table.add_row("URL", request.url)
    table.add_row("Format", outcome.content_type)
    table.add_row("Bytes", str(len(outcome.content)))
    table.add_row("Cache", "HIT" if outcome.cache_hit else "MISS")
    table.add_row("Duration", f"{outcome.duration_ms} ms")
    if out is not None:
        table.add_row("Written to", str(out))
    if outcome.upload is not None:
        table.add_row("Uploaded", outcome.upload.url)
    for entry in outcome.warnings:
        table.add_row(f"[yellow]{entry.code}[/]", f"{entry.stage}: {escape(entry.message)}")
    return table


async def _run_capture(request: CaptureRequest) -> CaptureOutcome:
    deps = PipelineDeps.from_settings(get_settings())
    try:
        return await capture(request, deps=deps)
    finally:
        await deps.aclose()


@cli.command("capture")
def capture_command(
    url: str = typer.Argument(..., help="Page to capture"),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Destination file"),
    fmt: str = typer.Option("png", "--format", "-f", help="png, jpeg, webp or pdf"),
    device: Optional[str] = typer.Option(None, help="desktop, laptop, tablet or mobile"),
    width: Optional[int] = typer.Option(None, help="Explicit viewport width"),
    height: Optional[int] = typer.Option(None, help="Explicit viewport height"),
    quality: Optional[int] = typer.Option(None, help="jpeg/webp quality (0-100)"),
    mockup: Optional[str] = typer.Option(None, help="Mockup template id"),
    full_page: bool = typer.Option(False, "--full-page", help="Capture the whole document"),
    block_ads: bool = typer.Option(False, "--block-ads", help="Block ad/tracker requests and overlays"),
    stealth: bool = typer.Option(False, "--stealth", help="Mask automation fingerprints"),
    dark_mode: bool = typer.Option(False, "--dark-mode", help="Emulate prefers-color-scheme: dark"),
    delay: int = typer.Option(0, help="Milliseconds to wait before capture"),
    selector: Optional[str] = typer.Option(None, help="Clip to this element"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Capture URL and write the artifact to disk."""

    logging.basicConfig(level=logging.DEBUG if verbose else get_settings().telemetry.log_level.upper())
    try:
        request = CaptureRequest(
            url=url,
            format=fmt,
            device=device,
            width=width,
            height=height,
            quality=quality,
            mockup=mockup,
            full_page=full_page,
            block_ads=block_ads,
            stealth=stealth,
            dark_mode=dark_mode,
            delay=delay,
            selector=selector,
        )
    except ValidationError as exc:
        console.print(f"[red]Invalid request:[/]\n{escape(str(exc))}")
        raise typer.Exit(code=2) from exc

    try:
        outcome = asyncio.run(_run_capture(request))
    except WebshotError as exc:
        console.print(f"[red]{type(exc).__name__}:[/] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc

    target = out or Path(f"capture.{'jpg' if request.format == 'jpeg' else request.format}")
    target.write_bytes(outcome.content)
    console.print(_summary_table(request, outcome, target))


@cli.command("mockups")
def mockups_command() -> None:
    """List the mockup catalog."""

    settings = get_settings()
    registry = cached_registry(str(settings.mockups.catalog_path), str(settings.mockups.asset_root))
    table = Table("ID", "Name", "Class", "Frame", "Placement", title=f"Mockups ({registry.version})")
    for template in registry.values():
        placement = template.placement
        table.add_row(
            template.id,
            template.name,
            template.mockup_class.value,
            f"{template.width}x{template.height}",
            f"{placement.width}x{placement.height} @ {placement.x},{placement.y}",
        )
    console.print(table)


if __name__ == "__main__":  # pragma: no cover
    cli()
