"""Mockup compositing and output transcoding backed by pyvips."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Literal, Tuple

import pyvips

from webshot.mockups import MockupClass, MockupTemplate
from webshot.schemas import WebshotError

LOGGER = logging.getLogger(__name__)

RGB = Tuple[int, int, int]
FitMode = Literal["cover", "contain"]

MOBILE_LETTERBOX: RGB = (240, 240, 240)
LAPTOP_LETTERBOX: RGB = (32, 32, 32)

_PNG_ENCODE_ARGS = {
    "compression": 9,
    "interlace": False,
}
_JPEG_BACKGROUND = [255, 255, 255]


class PostProcessError(WebshotError):
    """Raised when the captured raster cannot be post-processed."""


class CompositeInputError(PostProcessError):
    """The captured bytes are not a decodable raster image."""


class MockupAssetError(PostProcessError):
    """The mockup frame image is missing or unreadable."""


@dataclass(frozen=True, slots=True)
class FitStrategy:
    """How the capture is scaled into the mockup placement rectangle."""

    mode: FitMode
    background: RGB | None = None


def choose_fit_strategy(mockup_class: MockupClass, source_ratio: float, target_ratio: float) -> FitStrategy:
    """Pick cover or letterboxed contain from the frame family and aspect ratios.

    Ratios are width / height.
    """

    if mockup_class is MockupClass.MOBILE:
        # Landscape capture going into a portrait screen.
        if source_ratio > 1.5 and target_ratio < 1:
            return FitStrategy("contain", MOBILE_LETTERBOX)
        return FitStrategy("cover")
    if mockup_class is MockupClass.LAPTOP:
        if abs(source_ratio - target_ratio) < 0.1:
            return FitStrategy("cover")
        return FitStrategy("contain", LAPTOP_LETTERBOX)
    return FitStrategy("cover")


async def composite(raw: bytes, template: MockupTemplate) -> bytes:
    """Fit ``raw`` into the template placement and return a PNG at frame size."""

    return await asyncio.to_thread(_composite_sync, raw, template)


async def transcode(raw: bytes, fmt: str, quality: int | None = None) -> bytes:
    """Re-encode a PNG raster as ``fmt``; png and pdf pass through untouched."""

    if fmt in {"png", "pdf"}:
        return raw
    return await asyncio.to_thread(_transcode_sync, raw, fmt, quality)


def _composite_sync(raw: bytes, template: MockupTemplate) -> bytes:
    try:
        capture = pyvips.Image.new_from_buffer(raw, "")
    except pyvips.Error as exc:
        raise CompositeInputError(f"capture is not a readable image: {exc}") from exc

    try:
        frame = pyvips.Image.new_from_file(str(template.image_path))
    except pyvips.Error as exc:
        raise MockupAssetError(f"mockup asset {template.image_path} unreadable: {exc}") from exc

    placement = template.placement
    strategy = choose_fit_strategy(
        template.mockup_class,
        capture.width / capture.height,
        placement.aspect_ratio,
    )
    LOGGER.debug(
        "Compositing %sx%s capture into %s (%s)",
        capture.width,
        capture.height,
        template.id,
        strategy.mode,
        extra={"placement": (placement.x, placement.y, placement.width, placement.height)},
    )

    fitted = _fit(_as_rgba(capture), placement.width, placement.height, strategy)
    base = _as_rgba(frame)
    if base.width != template.width or base.height != template.height:
        base = base.thumbnail_image(template.width, height=template.height, size="force")
    result = base.composite2(fitted, "over", x=placement.x, y=placement.y)
    return result.write_to_buffer(".png", **_PNG_ENCODE_ARGS)


def _fit(image: pyvips.Image, width: int, height: int, strategy: FitStrategy) -> pyvips.Image:
    if strategy.mode == "cover":
        return image.thumbnail_image(width, height=height, crop="centre")

    scaled = image.thumbnail_image(width, height=height)
    background = list(strategy.background or (0, 0, 0)) + [255]
    return scaled.gravity("centre", width, height, extend="background", background=background)


def _as_rgba(image: pyvips.Image) -> pyvips.Image:
    if image.interpretation != "srgb":
        image = image.colourspace("srgb")
    if not image.hasalpha():
        image = image.bandjoin(255)
    return image.cast("uchar")


def _transcode_sync(raw: bytes, fmt: str, quality: int | None) -> bytes:
    try:
        image = pyvips.Image.new_from_buffer(raw, "")
    except pyvips.Error as exc:
        raise CompositeInputError(f"capture is not a readable image: {exc}") from exc

    q = 90 if quality is None else quality
    if fmt == "jpeg":
        if image.hasalpha():
            image = image.flatten(background=_JPEG_BACKGROUND)
        # libvips accepts Q 1..100 for JPEG.
        return image.write_to_buffer(".jpg", Q=max(1, q))
    if fmt == "webp":
        return image.write_to_buffer(".webp", Q=q)
    raise PostProcessError(f"unsupported transcode target: {fmt}")
