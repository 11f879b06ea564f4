"""
Adaptive recovery controller.

Wraps the popup extractor in an explicit finite state machine:

    IDLE -> CLICKED -> AWAITING_POPUP -> EXTRACTED | POPUP_MISSING
    POPUP_MISSING -> ZOOMED_RETRY | FAILED
    ZOOMED_RETRY -> EXTRACTED | POPUP_MISSING | FAILED
    EXTRACTED | FAILED -> POPUP_CLOSED

Popups race with tile loading and the layer spinner, so a missing popup gets
a bounded number of zoom-in retries (one by default) before the marker is
recorded as a permanent failure. The zoom level is always restored and the
popup always closed before the controller returns.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .errors import (
    DataIntegrityWarning,
    DriverError,
    PermanentExtractionFailure,
    RegistryError,
    StaleReferenceError,
    WaitTimeout,
)
from .markers import MapViewport, MarkerCatalogue, PopupFieldExtractor
from .models import ExtractionOutcome, FieldMissing, PopupNotFound, StaleElement, Success
from .settings import ExtractionSettings

logger = logging.getLogger(__name__)


class RecoveryState(str, Enum):
    IDLE = "idle"
    CLICKED = "clicked"
    AWAITING_POPUP = "awaiting_popup"
    EXTRACTED = "extracted"
    POPUP_MISSING = "popup_missing"
    ZOOMED_RETRY = "zoomed_retry"
    FAILED = "failed"
    POPUP_CLOSED = "popup_closed"


TRANSITIONS: dict[RecoveryState, list[RecoveryState]] = {
    RecoveryState.IDLE: [RecoveryState.CLICKED, RecoveryState.POPUP_MISSING],
    RecoveryState.CLICKED: [RecoveryState.AWAITING_POPUP],
    RecoveryState.AWAITING_POPUP: [
        RecoveryState.EXTRACTED, RecoveryState.POPUP_MISSING, RecoveryState.FAILED,
    ],
    RecoveryState.POPUP_MISSING: [RecoveryState.ZOOMED_RETRY, RecoveryState.FAILED],
    RecoveryState.ZOOMED_RETRY: [
        RecoveryState.EXTRACTED, RecoveryState.POPUP_MISSING, RecoveryState.FAILED,
    ],
    RecoveryState.EXTRACTED: [RecoveryState.POPUP_CLOSED],
    RecoveryState.FAILED: [RecoveryState.POPUP_CLOSED],
    RecoveryState.POPUP_CLOSED: [],
}


class InvalidTransition(RegistryError):
    pass


@dataclass
class RecoveryResult:
    """Terminal outcome of driving one marker through the state machine"""
    ordinal: int
    outcome: ExtractionOutcome
    final_state: RecoveryState
    recovery_cycles: int = 0
    reason: Optional[str] = None
    detail: str = ""
    visited_states: list[RecoveryState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return isinstance(self.outcome, Success)

    @property
    def recovered(self) -> bool:
        return self.succeeded and self.recovery_cycles > 0


@dataclass
class _Attempt:
    ordinal: int
    state: RecoveryState = RecoveryState.IDLE
    outcome: ExtractionOutcome = field(default_factory=PopupNotFound)
    cycles: int = 0
    reason: Optional[str] = None
    detail: str = ""
    terminal: Optional[RecoveryState] = None
    visited: list[RecoveryState] = field(default_factory=list)


class RecoveryController:
    """Drives one marker at a time from IDLE to POPUP_CLOSED"""

    def __init__(
        self,
        catalogue: MarkerCatalogue,
        extractor: PopupFieldExtractor,
        viewport: MapViewport,
        settings: ExtractionSettings,
    ):
        self.catalogue = catalogue
        self.extractor = extractor
        self.viewport = viewport
        self.settings = settings
        self._handlers = {
            RecoveryState.IDLE: self._on_idle,
            RecoveryState.CLICKED: self._on_clicked,
            RecoveryState.AWAITING_POPUP: self._on_awaiting_popup,
            RecoveryState.POPUP_MISSING: self._on_popup_missing,
            RecoveryState.ZOOMED_RETRY: self._on_zoomed_retry,
            RecoveryState.EXTRACTED: self._on_terminal,
            RecoveryState.FAILED: self._on_terminal,
        }

    def _transition(self, attempt: _Attempt, target: RecoveryState) -> None:
        if target not in TRANSITIONS[attempt.state]:
            raise InvalidTransition(f"{attempt.state.value} -> {target.value}")
        logger.debug(f"Marker #{attempt.ordinal}: {attempt.state.value} -> {target.value}")
        attempt.state = target
        attempt.visited.append(target)

    async def run(self, ordinal: int) -> RecoveryResult:
        attempt = _Attempt(ordinal=ordinal, visited=[RecoveryState.IDLE])
        while attempt.state is not RecoveryState.POPUP_CLOSED:
            target = await self._handlers[attempt.state](attempt)
            self._transition(attempt, target)

        return RecoveryResult(
            ordinal=ordinal,
            outcome=attempt.outcome,
            final_state=attempt.terminal,
            recovery_cycles=attempt.cycles,
            reason=attempt.reason,
            detail=attempt.detail,
            visited_states=attempt.visited,
        )

    async def _click_marker(self, attempt: _Attempt) -> bool:
        """Resolve the marker afresh and click it. False when that fails."""
        try:
            handle = await self.catalogue.resolve(attempt.ordinal)
            await self.extractor.click(handle)
            return True
        except StaleReferenceError as e:
            attempt.outcome = StaleElement()
            attempt.detail = str(e)
        except DriverError as e:
            attempt.outcome = PopupNotFound()
            attempt.detail = str(e)
        logger.debug(f"Marker #{attempt.ordinal}: click failed ({attempt.detail})")
        return False

    async def _wait_for_spinner(self) -> None:
        selector = self.settings.selectors.spinner

        async def spinner_gone():
            return not await self.extractor.driver.find(selector)

        try:
            await self.extractor.driver.wait(
                spinner_gone,
                timeout=self.settings.spinner_timeout,
                interval=self.settings.poll_interval,
            )
        except WaitTimeout:
            logger.debug("Loading spinner still visible, clicking anyway")
        except DriverError as e:
            logger.debug(f"Spinner check failed, clicking anyway: {e}")

    def _after_read(self, attempt: _Attempt, outcome: ExtractionOutcome) -> RecoveryState:
        attempt.outcome = outcome
        if isinstance(outcome, Success):
            return RecoveryState.EXTRACTED
        if isinstance(outcome, FieldMissing):
            attempt.reason = DataIntegrityWarning.__name__
            attempt.detail = f"{outcome.which.value} missing or not numeric"
            return RecoveryState.FAILED
        return RecoveryState.POPUP_MISSING

    async def _on_idle(self, attempt: _Attempt) -> RecoveryState:
        if await self.extractor.popup_open():
            logger.debug("Popup left open by previous marker, closing it")
            await self.extractor.close_popup()
        await self._wait_for_spinner()
        if await self._click_marker(attempt):
            return RecoveryState.CLICKED
        return RecoveryState.POPUP_MISSING

    async def _on_clicked(self, attempt: _Attempt) -> RecoveryState:
        return RecoveryState.AWAITING_POPUP

    async def _on_awaiting_popup(self, attempt: _Attempt) -> RecoveryState:
        return self._after_read(attempt, await self.extractor.read_popup())

    async def _on_popup_missing(self, attempt: _Attempt) -> RecoveryState:
        if attempt.cycles >= self.settings.max_recovery_cycles:
            attempt.reason = PermanentExtractionFailure.__name__
            attempt.detail = attempt.detail or type(attempt.outcome).__name__
            return RecoveryState.FAILED
        try:
            await self.viewport.zoom_in()
        except DriverError as e:
            logger.warning(f"Marker #{attempt.ordinal}: zoom in failed: {e}")
            attempt.reason = PermanentExtractionFailure.__name__
            attempt.detail = f"zoom failed: {e}"
            return RecoveryState.FAILED
        attempt.cycles += 1
        logger.info(f"Marker #{attempt.ordinal}: popup missing, zoomed retry {attempt.cycles}")
        return RecoveryState.ZOOMED_RETRY

    async def _on_zoomed_retry(self, attempt: _Attempt) -> RecoveryState:
        await self._wait_for_spinner()
        if not await self._click_marker(attempt):
            return RecoveryState.POPUP_MISSING
        return self._after_read(attempt, await self.extractor.read_popup())

    async def _on_terminal(self, attempt: _Attempt) -> RecoveryState:
        attempt.terminal = attempt.state
        if self.viewport.delta:
            await self.viewport.restore()
        await self.extractor.close_popup()
        if attempt.state is RecoveryState.FAILED:
            logger.warning(
                f"Marker #{attempt.ordinal} failed: {attempt.reason} ({attempt.detail})"
            )
        return RecoveryState.POPUP_CLOSED
