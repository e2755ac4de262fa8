"""Static device-frame catalog used for mockup compositing."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from webshot.schemas import ConfigurationError


class UnknownMockupError(ConfigurationError):
    """Raised when a request names a mockup id missing from the catalog."""

    def __init__(self, mockup_id: str) -> None:
        super().__init__(f"Mockup template '{mockup_id}' not found")
        self.mockup_id = mockup_id


class MockupClass(str, Enum):
    """Frame family; decides fit strategy and the default capture viewport."""

    BROWSER = "browser"
    MOBILE = "mobile"
    LAPTOP = "laptop"
    TABLET = "tablet"
    OTHER = "other"

    @property
    def device(self) -> str:
        return _CLASS_DEVICES[self]


_CLASS_DEVICES = {
    MockupClass.BROWSER: "desktop",
    MockupClass.MOBILE: "mobile",
    MockupClass.LAPTOP: "laptop",
    MockupClass.TABLET: "tablet",
    MockupClass.OTHER: "desktop",
}

# Checked in order; first hit wins.
_ID_HINTS: tuple[tuple[tuple[str, ...], MockupClass], ...] = (
    (("browser",), MockupClass.BROWSER),
    (("iphone", "mobile"), MockupClass.MOBILE),
    (("macbook", "laptop"), MockupClass.LAPTOP),
    (("ipad", "tablet"), MockupClass.TABLET),
)


def classify_mockup(mockup_id: str, category: str | None = None) -> MockupClass:
    """Resolve the frame family from the catalog category, else from the id."""

    if category:
        try:
            return MockupClass(category.lower())
        except ValueError:
            pass
    lowered = mockup_id.lower()
    for hints, mockup_class in _ID_HINTS:
        if any(hint in lowered for hint in hints):
            return mockup_class
    return MockupClass.OTHER


@dataclass(frozen=True, slots=True)
class Placement:
    """Rectangle on the frame image that receives the capture."""

    x: int
    y: int
    width: int
    height: int

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height


@dataclass(frozen=True, slots=True)
class MockupTemplate:
    id: str
    name: str
    mockup_class: MockupClass
    image_path: Path
    width: int
    height: int
    placement: Placement
    background_color: str = "#ffffff"

    @property
    def device(self) -> str:
        return self.mockup_class.device


class MockupRegistry(Mapping[str, MockupTemplate]):
    """Read-only id -> template map built once per process."""

    def __init__(self, templates: Mapping[str, MockupTemplate], *, version: str = "unknown") -> None:
        self._templates = MappingProxyType(dict(templates))
        self.version = version

    def __getitem__(self, mockup_id: str) -> MockupTemplate:
        return self._templates[mockup_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._templates)

    def __len__(self) -> int:
        return len(self._templates)

    def require(self, mockup_id: str) -> MockupTemplate:
        try:
            return self._templates[mockup_id]
        except KeyError:
            raise UnknownMockupError(mockup_id) from None


def load_registry(catalog_path: Path, asset_root: Path) -> MockupRegistry:
    """Parse the JSON catalog; image paths resolve against ``asset_root``."""

    data = json.loads(Path(catalog_path).read_text("utf-8"))
    templates: dict[str, MockupTemplate] = {}
    for entry in data.get("templates", []):
        template = _parse_template(entry, Path(asset_root))
        templates[template.id] = template
    return MockupRegistry(templates, version=data.get("version", "unknown"))


@lru_cache(maxsize=4)
def cached_registry(catalog_path: str, asset_root: str) -> MockupRegistry:
    """Memoized catalog loader suitable for per-process reuse."""

    return load_registry(Path(catalog_path), Path(asset_root))


def _parse_template(entry: Mapping[str, Any], asset_root: Path) -> MockupTemplate:
    placement = entry["placement"]
    dimensions = entry["dimensions"]
    return MockupTemplate(
        id=entry["id"],
        name=entry.get("name", entry["id"]),
        mockup_class=classify_mockup(entry["id"], entry.get("category")),
        image_path=asset_root / entry["image_path"],
        width=int(dimensions["width"]),
        height=int(dimensions["height"]),
        placement=Placement(
            x=int(placement["x"]),
            y=int(placement["y"]),
            width=int(placement["width"]),
            height=int(placement["height"]),
        ),
        background_color=entry.get("background_color", "#ffffff"),
    )
