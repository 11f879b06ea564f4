"""
Marker extraction session.

One `ExtractionSession` owns one browser driver and walks every marker of the
data layer in order. Markers are processed strictly one at a time: the page
has a single popup slot, so concurrent clicks would race on it.
"""

import logging
from pathlib import Path
from typing import Optional

from .accumulator import RecordAccumulator
from .drivers import BrowserDriver
from .errors import ConfigurationError, DriverError, WaitTimeout
from .markers import MapViewport, MarkerCatalogue, PopupFieldExtractor
from .recovery import RecoveryController, RecoveryResult, RecoveryState
from .settings import ExtractionSettings

logger = logging.getLogger(__name__)


class ExtractionSession:
    """Explicit per-run state: driver, controller and accumulated tables"""

    def __init__(self, driver: BrowserDriver, settings: ExtractionSettings,
                 accumulator: Optional[RecordAccumulator] = None):
        self.driver = driver
        self.settings = settings
        self.catalogue = MarkerCatalogue(driver, settings.selectors.marker)
        self.extractor = PopupFieldExtractor(driver, settings)
        self.viewport = MapViewport(driver, settings)
        self.controller = RecoveryController(
            self.catalogue, self.extractor, self.viewport, settings
        )
        self.accumulator = accumulator or RecordAccumulator(settings.dedup_precision)

    async def open_map(self) -> int:
        """Load the map page and wait for the marker layer; returns the marker count."""
        if not self.settings.map_url:
            raise ConfigurationError("No map URL configured")
        logger.info(f"Opening map {self.settings.map_url}")
        await self.driver.navigate(self.settings.map_url, timeout=self.settings.page_load_timeout)
        try:
            handles = await self.driver.wait(
                self.catalogue.enumerate,
                timeout=self.settings.layer_timeout,
                interval=self.settings.poll_interval,
            )
        except WaitTimeout:
            logger.error("Marker layer did not render any markers")
            return 0
        return len(handles)

    async def process_marker(self, ordinal: int) -> RecoveryResult:
        result = await self.controller.run(ordinal)
        self.accumulator.add(result)
        if result.final_state is RecoveryState.FAILED and self.settings.screenshot_dir:
            await self._capture_failure(ordinal)
        return result

    async def _capture_failure(self, ordinal: int) -> Optional[Path]:
        screenshots_dir = Path(self.settings.screenshot_dir)
        screenshot_path = screenshots_dir / f"marker_{ordinal:04d}.png"
        try:
            screenshots_dir.mkdir(parents=True, exist_ok=True)
            screenshot_path.write_bytes(await self.driver.screenshot())
        except (DriverError, OSError) as e:
            logger.warning(f"Screenshot for marker #{ordinal} failed: {e}")
            return None
        logger.info(f"Screenshot saved: {screenshot_path}")
        return screenshot_path

    async def run(self, navigate: bool = True) -> RecordAccumulator:
        """
        Process every marker of the layer.

        Partial progress lives in `self.accumulator`, which stays readable if
        the run is cancelled midway.
        """
        if navigate:
            count = await self.open_map()
        else:
            count = len(await self.catalogue.enumerate())
        if self.settings.limit is not None:
            count = min(count, self.settings.limit)

        logger.info(f"Processing {count} markers...")
        for ordinal in range(count):
            result = await self.process_marker(ordinal)
            if result.succeeded:
                logger.debug(f"Marker #{ordinal}: {result.outcome.record.title}")
            if (ordinal + 1) % 25 == 0:
                logger.info(f"  {ordinal + 1}/{count} markers processed")

        summary = self.accumulator.summary()
        logger.info(
            f"Extraction finished: {summary['extracted']} records, "
            f"{summary['recovered']} recovered, {sum(summary['failures'].values())} failures"
        )
        return self.accumulator
