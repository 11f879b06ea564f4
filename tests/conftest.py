"""
Shared fixtures: an in-memory map surface behind the BrowserDriver facade.

Zooming bumps a render generation, so handles found before a zoom raise
StaleReferenceError when clicked, as on the real page.
"""

from dataclasses import dataclass, field
from pathlib import Path
import sys
from typing import Any, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from institution_registry.drivers import BrowserDriver  # noqa: E402
from institution_registry.errors import StaleReferenceError  # noqa: E402
from institution_registry.settings import ExtractionSettings, MapSelectors  # noqa: E402


@dataclass
class FakeMarker:
    title: str
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    extra_rows: list = field(default_factory=list)
    # Popup only renders once the map is zoomed in this many levels; None = never
    popup_min_zoom: Optional[int] = 0

    def rows(self) -> list[tuple[str, Optional[str]]]:
        rows = list(self.extra_rows)
        if self.latitude is not None:
            rows.append(("Latitude", self.latitude))
        if self.longitude is not None:
            rows.append(("Longitude", self.longitude))
        return rows


@dataclass(frozen=True)
class FakeElement:
    kind: str
    payload: Any = None
    generation: int = 0


class FakeMapDriver(BrowserDriver):
    def __init__(self, markers: list[FakeMarker], selectors: Optional[MapSelectors] = None,
                 spinner_polls: int = 0):
        self.markers = markers
        self.sel = selectors or MapSelectors()
        self.zoom = 0
        self.generation = 0
        self.open_popup: Optional[FakeMarker] = None
        self.spinner_polls = spinner_polls
        self.navigated: list[str] = []
        self.clicks: list[str] = []
        self.zoom_history: list[int] = [0]
        self.overlaps = 0
        self.closed = False

    async def navigate(self, url, timeout=60.0):
        self.navigated.append(url)

    async def find(self, selector, root=None):
        if root is None:
            if selector == self.sel.marker:
                return [FakeElement("marker", i, self.generation) for i in range(len(self.markers))]
            if selector == self.sel.popup:
                return [FakeElement("popup", self.open_popup)] if self.open_popup else []
            if selector == self.sel.popup_close:
                return [FakeElement("close")] if self.open_popup else []
            if selector == self.sel.zoom_in:
                return [FakeElement("zoom_in")]
            if selector == self.sel.zoom_out:
                return [FakeElement("zoom_out")]
            if selector == self.sel.spinner:
                if self.spinner_polls > 0:
                    self.spinner_polls -= 1
                    return [FakeElement("spinner")]
                return []
            return []
        if root.kind == "popup":
            if selector == self.sel.popup_title:
                return [FakeElement("text", root.payload.title)]
            if selector == self.sel.popup_row:
                return [FakeElement("row", row) for row in root.payload.rows()]
        if root.kind == "row":
            label, value = root.payload
            if selector == self.sel.popup_label:
                return [FakeElement("text", label)]
            if selector == self.sel.popup_value:
                return [FakeElement("text", value)] if value is not None else []
        return []

    async def click(self, handle):
        if handle.kind == "marker":
            if handle.generation != self.generation:
                raise StaleReferenceError("stale marker handle")
            marker = self.markers[handle.payload]
            self.clicks.append(marker.title)
            if self.open_popup is not None:
                self.overlaps += 1
            if marker.popup_min_zoom is not None and self.zoom >= marker.popup_min_zoom:
                self.open_popup = marker
        elif handle.kind == "close":
            self.open_popup = None
        elif handle.kind in ("zoom_in", "zoom_out"):
            self.zoom += 1 if handle.kind == "zoom_in" else -1
            self.generation += 1
            self.zoom_history.append(self.zoom)

    async def get_text(self, handle):
        return handle.payload

    async def run_script(self, source, *args):
        return self.zoom

    async def screenshot(self):
        return b"\x89PNG fake"

    async def close(self):
        self.closed = True


@pytest.fixture
def settings() -> ExtractionSettings:
    return ExtractionSettings(
        map_url="https://maps.example.org/institutions",
        popup_timeout=0.05,
        spinner_timeout=0.05,
        layer_timeout=0.05,
        poll_interval=0.005,
        settle_delay=0,
        zoom_level_script="return map.getZoom();",
    )


@pytest.fixture
def make_driver():
    def _make(markers, **kwargs) -> FakeMapDriver:
        return FakeMapDriver(markers, **kwargs)
    return _make
