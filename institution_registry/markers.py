"""
Marker enumeration, popup reading and viewport control for the map surface.

Marker handles are only valid for the rendering state they were found in.
Nothing here caches them: `MarkerCatalogue.resolve` re-enumerates on every
call, and callers re-resolve after any pan or zoom.
"""

import logging
import re
from typing import Any, Optional

from .drivers import BrowserDriver
from .errors import DriverError, StaleReferenceError, WaitTimeout
from .models import (
    CoordinateField,
    ExtractionOutcome,
    FieldMissing,
    MarkerRecord,
    PopupNotFound,
    StaleElement,
    Success,
)
from .settings import ExtractionSettings

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"[-+]?\d+(?:[.,]\d+)?°?")


def parse_coordinate(text: Optional[str]) -> Optional[float]:
    """Parse a popup value cell into a float; None unless it is a single decimal number."""
    if text is None:
        return None
    # Whole cell must be one decimal number; degrees-minutes notation is rejected
    match = _NUMBER_RE.fullmatch(text.strip().replace("−", "-"))
    if not match:
        return None
    try:
        return float(match.group(0).rstrip("°").replace(",", "."))
    except ValueError:
        return None


def classify_label(label: str) -> Optional[CoordinateField]:
    lowered = label.strip().lower()
    if "latitude" in lowered:
        return CoordinateField.LATITUDE
    if "longitude" in lowered:
        return CoordinateField.LONGITUDE
    return None


class MarkerCatalogue:
    """Lists the marker elements of the target data layer"""

    def __init__(self, driver: BrowserDriver, selector: str):
        self.driver = driver
        self.selector = selector

    async def enumerate(self) -> list[Any]:
        handles = await self.driver.find(self.selector)
        logger.debug(f"Enumerated {len(handles)} markers")
        return handles

    async def resolve(self, ordinal: int) -> Any:
        """Fresh handle for the marker at `ordinal` in the current rendering."""
        handles = await self.enumerate()
        if ordinal >= len(handles):
            raise StaleReferenceError(
                f"Marker #{ordinal} not present after re-enumeration ({len(handles)} markers)"
            )
        return handles[ordinal]


class PopupFieldExtractor:
    """Clicks a marker and reads title/latitude/longitude from its popup"""

    def __init__(self, driver: BrowserDriver, settings: ExtractionSettings):
        self.driver = driver
        self.settings = settings
        self.selectors = settings.selectors

    async def click(self, handle: Any) -> None:
        await self.driver.click(handle)

    async def _find_popup(self) -> list[Any]:
        return await self.driver.find(self.selectors.popup)

    async def popup_open(self) -> bool:
        try:
            return bool(await self._find_popup())
        except DriverError:
            return False

    async def read_popup(self) -> ExtractionOutcome:
        try:
            popups = await self.driver.wait(
                self._find_popup,
                timeout=self.settings.popup_timeout,
                interval=self.settings.poll_interval,
            )
        except WaitTimeout:
            return PopupNotFound()
        except StaleReferenceError:
            return StaleElement()
        except DriverError as e:
            logger.debug(f"Popup lookup failed: {e}")
            return PopupNotFound()

        popup = popups[0]
        try:
            return await self._read_fields(popup)
        except StaleReferenceError as e:
            logger.debug(f"Popup went stale while reading: {e}")
            return StaleElement()
        except DriverError as e:
            logger.debug(f"Popup read failed: {e}")
            return PopupNotFound()

    async def _read_fields(self, popup: Any) -> ExtractionOutcome:
        headers = await self.driver.find(self.selectors.popup_title, root=popup)
        title = await self.driver.get_text(headers[0]) if headers else ""

        values: dict[CoordinateField, Optional[float]] = {}
        for row in await self.driver.find(self.selectors.popup_row, root=popup):
            labels = await self.driver.find(self.selectors.popup_label, root=row)
            if not labels:
                continue
            which = classify_label(await self.driver.get_text(labels[0]))
            if which is None:
                continue
            cells = await self.driver.find(self.selectors.popup_value, root=row)
            text = await self.driver.get_text(cells[0]) if cells else None
            values[which] = parse_coordinate(text)

        record = MarkerRecord(
            title=title,
            latitude=values.get(CoordinateField.LATITUDE),
            longitude=values.get(CoordinateField.LONGITUDE),
        )
        if record.latitude is None:
            return FieldMissing(CoordinateField.LATITUDE, record)
        if record.longitude is None:
            return FieldMissing(CoordinateField.LONGITUDE, record)
        return Success(record)

    async def extract(self, handle: Any) -> ExtractionOutcome:
        """Click + read. Browser errors come back as outcome variants."""
        try:
            await self.click(handle)
        except StaleReferenceError:
            return StaleElement()
        except DriverError as e:
            logger.debug(f"Marker click failed: {e}")
            return PopupNotFound()
        return await self.read_popup()

    async def close_popup(self) -> bool:
        """Best-effort dismissal of any open popup. Never raises."""
        try:
            buttons = await self.driver.find(self.selectors.popup_close)
            if not buttons:
                return False
            await self.driver.click(buttons[0])
            return True
        except DriverError as e:
            logger.warning(f"Failed to close popup: {e}")
            return False


class MapViewport:
    """Zoom control that remembers how far it moved from the starting level"""

    def __init__(self, driver: BrowserDriver, settings: ExtractionSettings):
        self.driver = driver
        self.settings = settings
        self.delta = 0

    async def _press(self, selector: str) -> None:
        buttons = await self.driver.find(selector)
        if not buttons:
            raise DriverError(f"Zoom control not found: {selector}")
        await self.driver.click(buttons[0])
        await self.driver.sleep(self.settings.settle_delay)

    async def zoom_in(self) -> None:
        await self._press(self.settings.selectors.zoom_in)
        self.delta += 1

    async def zoom_out(self) -> None:
        await self._press(self.settings.selectors.zoom_out)
        self.delta -= 1

    async def restore(self) -> bool:
        """Undo every zoom step taken so far. Failures are logged, not raised."""
        try:
            while self.delta > 0:
                await self.zoom_out()
            while self.delta < 0:
                await self.zoom_in()
            return True
        except DriverError as e:
            logger.warning(f"Failed to restore zoom level (offset {self.delta:+d}): {e}")
            return False

    async def zoom_level(self) -> Optional[float]:
        if not self.settings.zoom_level_script:
            return None
        try:
            level = await self.driver.run_script(self.settings.zoom_level_script)
        except DriverError as e:
            logger.debug(f"Zoom level script failed: {e}")
            return None
        return float(level) if level is not None else None
