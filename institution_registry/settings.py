"""
Runtime configuration.

Module-level constants hold the defaults; the dataclasses below bundle them
so the CLI (or a test) can override any value for one run.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError

# Constants
MAP_URL_ENV = "REGISTRY_MAP_URL"
WEBDRIVER_URL_ENV = "REGISTRY_WEBDRIVER_URL"
DEFAULT_WEBDRIVER_URL = "http://localhost:4444"
DEFAULT_VIEWPORT = {"width": 1920, "height": 1080}

# SVG point layer rendered by the map widget, and its popup overlay
MARKER_SELECTOR = "g[data-geometry-type='point'] > *"
POPUP_SELECTOR = ".esriPopup .esriPopupWrapper"
POPUP_TITLE_SELECTOR = ".header"
POPUP_ROW_SELECTOR = "table.attrTable tr"
POPUP_LABEL_SELECTOR = "td.attrName"
POPUP_VALUE_SELECTOR = "td.attrValue"
POPUP_CLOSE_SELECTOR = ".esriPopup .titleButton.close"
SPINNER_SELECTOR = "img.esriMapLoading, .esri-loading-indicator"
ZOOM_IN_SELECTOR = ".esriSimpleSliderIncrementButton"
ZOOM_OUT_SELECTOR = ".esriSimpleSliderDecrementButton"

PAGE_LOAD_TIMEOUT = 60.0      # seconds
LAYER_TIMEOUT = 30.0
POPUP_TIMEOUT = 5.0
SPINNER_TIMEOUT = 10.0
POLL_INTERVAL = 0.25
SETTLE_DELAY = 1.0            # after a zoom step, for tiles and layer redraw
MAX_RECOVERY_CYCLES = 1
DEDUP_PRECISION = 6

MATCH_TOLERANCE = 0.25
MARKER_TITLE_PREFIX = "Canadian Residential Schools: "
UNKNOWN_INSTITUTION = "Unknown"

DATA_DIR = Path(__file__).resolve().parent.parent / "data"
DEFAULT_OVERRIDES_PATH = DATA_DIR / "manual_overrides.csv"
DEFAULT_OUTPUT_DIR = Path("output")


@dataclass
class MapSelectors:
    """CSS selectors for the one data layer of interest"""
    marker: str = MARKER_SELECTOR
    popup: str = POPUP_SELECTOR
    popup_title: str = POPUP_TITLE_SELECTOR
    popup_row: str = POPUP_ROW_SELECTOR
    popup_label: str = POPUP_LABEL_SELECTOR
    popup_value: str = POPUP_VALUE_SELECTOR
    popup_close: str = POPUP_CLOSE_SELECTOR
    spinner: str = SPINNER_SELECTOR
    zoom_in: str = ZOOM_IN_SELECTOR
    zoom_out: str = ZOOM_OUT_SELECTOR


@dataclass
class ExtractionSettings:
    map_url: str = ""
    selectors: MapSelectors = field(default_factory=MapSelectors)
    page_load_timeout: float = PAGE_LOAD_TIMEOUT
    layer_timeout: float = LAYER_TIMEOUT
    popup_timeout: float = POPUP_TIMEOUT
    spinner_timeout: float = SPINNER_TIMEOUT
    poll_interval: float = POLL_INTERVAL
    settle_delay: float = SETTLE_DELAY
    max_recovery_cycles: int = MAX_RECOVERY_CYCLES
    dedup_precision: int = DEDUP_PRECISION
    # JS function body returning the current zoom level, if the page exposes one
    zoom_level_script: Optional[str] = None
    screenshot_dir: Optional[Path] = None
    limit: Optional[int] = None

    def __post_init__(self):
        if not self.map_url:
            self.map_url = os.environ.get(MAP_URL_ENV, "")
        if self.max_recovery_cycles < 0:
            raise ConfigurationError("max_recovery_cycles must be >= 0")
        if self.popup_timeout <= 0 or self.spinner_timeout <= 0:
            raise ConfigurationError("timeouts must be positive")


@dataclass
class ReconciliationSettings:
    tolerance: float = MATCH_TOLERANCE
    marker_prefix: str = MARKER_TITLE_PREFIX
    unknown_institution: str = UNKNOWN_INSTITUTION

    def __post_init__(self):
        if not 0.0 <= self.tolerance <= 1.0:
            raise ConfigurationError(f"tolerance must lie in [0, 1], got {self.tolerance}")
