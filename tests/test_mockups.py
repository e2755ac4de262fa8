from __future__ import annotations

from pathlib import Path

import pytest

from webshot.mockups import (
    MockupClass,
    UnknownMockupError,
    cached_registry,
    classify_mockup,
    load_registry,
)
from webshot.schemas import CaptureRequest, ConfigurationError, Viewport
from webshot.settings import PROJECT_ROOT

CATALOG = PROJECT_ROOT / "config" / "mockups.json"


def test_repository_catalog_loads_every_template(tmp_path: Path) -> None:
    registry = load_registry(CATALOG, tmp_path)

    assert set(registry) == {
        "browser-light",
        "browser-dark",
        "browser-minimal",
        "iphone-14",
        "ipad-pro",
        "macbook-pro",
    }
    iphone = registry["iphone-14"]
    assert iphone.mockup_class is MockupClass.MOBILE
    assert (iphone.width, iphone.height) == (1080, 1920)
    assert iphone.placement.aspect_ratio == pytest.approx(900 / 1640)
    assert iphone.image_path == tmp_path / "mockups" / "iphone-14.png"


@pytest.mark.parametrize(
    ("mockup_id", "category", "expected"),
    [
        ("browser-light", None, MockupClass.BROWSER),
        ("iphone-15-pro", None, MockupClass.MOBILE),
        ("generic-mobile", None, MockupClass.MOBILE),
        ("macbook-air", None, MockupClass.LAPTOP),
        ("ipad-mini", None, MockupClass.TABLET),
        ("polaroid", None, MockupClass.OTHER),
        ("polaroid", "tablet", MockupClass.TABLET),
        ("iphone-14", "hologram", MockupClass.MOBILE),
    ],
)
def test_classification(mockup_id: str, category: str | None, expected: MockupClass) -> None:
    assert classify_mockup(mockup_id, category) is expected


@pytest.mark.parametrize(
    ("mockup_class", "device"),
    [
        (MockupClass.BROWSER, "desktop"),
        (MockupClass.MOBILE, "mobile"),
        (MockupClass.LAPTOP, "laptop"),
        (MockupClass.TABLET, "tablet"),
        (MockupClass.OTHER, "desktop"),
    ],
)
def test_class_device_convention(mockup_class: MockupClass, device: str) -> None:
    assert mockup_class.device == device


def test_require_unknown_template(tmp_path: Path) -> None:
    registry = load_registry(CATALOG, tmp_path)

    with pytest.raises(UnknownMockupError) as excinfo:
        registry.require("nokia-3310")

    assert isinstance(excinfo.value, ConfigurationError)
    assert "nokia-3310" in str(excinfo.value)
    assert registry.require("ipad-pro").device == "tablet"


def test_registry_is_read_only(tmp_path: Path) -> None:
    registry = load_registry(CATALOG, tmp_path)

    with pytest.raises(TypeError):
        registry["new"] = registry["ipad-pro"]  # type: ignore[index]
    with pytest.raises(TypeError):
        registry._templates["new"] = registry["ipad-pro"]  # type: ignore[index]


def test_cached_registry_is_shared(tmp_path: Path) -> None:
    first = cached_registry(str(CATALOG), str(tmp_path))

    assert cached_registry(str(CATALOG), str(tmp_path)) is first


def test_mockup_device_drives_default_viewport(tmp_path: Path) -> None:
    template = load_registry(CATALOG, tmp_path).require("macbook-pro")
    request = CaptureRequest(url="https://example.com", mockup="macbook-pro")

    assert request.resolve_viewport(template.device) == Viewport(1366, 768)
