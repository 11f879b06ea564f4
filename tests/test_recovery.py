"""
Tests for the adaptive recovery state machine.
"""

import random

import pytest

from conftest import FakeMarker
from institution_registry.markers import MapViewport, MarkerCatalogue, PopupFieldExtractor
from institution_registry.models import FieldMissing, PopupNotFound, Success
from institution_registry.recovery import (
    TRANSITIONS,
    InvalidTransition,
    RecoveryController,
    RecoveryState,
    _Attempt,
)
from institution_registry.settings import ExtractionSettings


def build_controller(driver, settings):
    return RecoveryController(
        MarkerCatalogue(driver, settings.selectors.marker),
        PopupFieldExtractor(driver, settings),
        MapViewport(driver, settings),
        settings,
    )


class TestTransitionTable:

    def test_terminal_state_has_no_exits(self):
        assert TRANSITIONS[RecoveryState.POPUP_CLOSED] == []

    def test_every_terminal_goes_through_popup_closed(self):
        assert TRANSITIONS[RecoveryState.EXTRACTED] == [RecoveryState.POPUP_CLOSED]
        assert TRANSITIONS[RecoveryState.FAILED] == [RecoveryState.POPUP_CLOSED]

    def test_invalid_transition_rejected(self, make_driver, settings):
        controller = build_controller(make_driver([]), settings)
        attempt = _Attempt(ordinal=0)

        with pytest.raises(InvalidTransition):
            controller._transition(attempt, RecoveryState.EXTRACTED)


class TestRecoveryController:

    @pytest.mark.asyncio
    async def test_direct_success_needs_no_zoom(self, make_driver, settings):
        driver = make_driver([FakeMarker("Amos", "48.57", "-78.12")])

        result = await build_controller(driver, settings).run(0)

        assert isinstance(result.outcome, Success)
        assert result.final_state is RecoveryState.EXTRACTED
        assert result.recovery_cycles == 0
        assert driver.zoom_history == [0]
        assert driver.open_popup is None
        assert result.visited_states == [
            RecoveryState.IDLE,
            RecoveryState.CLICKED,
            RecoveryState.AWAITING_POPUP,
            RecoveryState.EXTRACTED,
            RecoveryState.POPUP_CLOSED,
        ]

    @pytest.mark.asyncio
    async def test_always_missing_popup_gets_exactly_one_zoom_retry(self, make_driver, settings):
        driver = make_driver([FakeMarker("Ghost", "1", "2", popup_min_zoom=None)])

        result = await build_controller(driver, settings).run(0)

        assert result.final_state is RecoveryState.FAILED
        assert result.reason == "PermanentExtractionFailure"
        assert result.recovery_cycles == 1
        assert driver.clicks == ["Ghost", "Ghost"]
        assert driver.zoom_history == [0, 1, 0]
        assert driver.zoom == 0
        assert result.visited_states.count(RecoveryState.ZOOMED_RETRY) == 1
        assert result.visited_states[-1] is RecoveryState.POPUP_CLOSED

    @pytest.mark.asyncio
    async def test_popup_appearing_after_zoom_is_recovered(self, make_driver, settings):
        driver = make_driver([FakeMarker("Regina", "50.45", "-104.61", popup_min_zoom=1)])

        result = await build_controller(driver, settings).run(0)

        assert result.succeeded
        assert result.recovered
        assert result.outcome.record.longitude == -104.61
        assert driver.zoom == 0
        assert driver.open_popup is None

    @pytest.mark.asyncio
    async def test_field_missing_is_not_retried(self, make_driver, settings):
        driver = make_driver([FakeMarker("Regina", "50.45", None)])

        result = await build_controller(driver, settings).run(0)

        assert isinstance(result.outcome, FieldMissing)
        assert result.final_state is RecoveryState.FAILED
        assert result.reason == "DataIntegrityWarning"
        assert result.recovery_cycles == 0
        assert driver.zoom_history == [0]
        assert driver.open_popup is None

    @pytest.mark.asyncio
    async def test_zero_recovery_cycles_fails_immediately(self, make_driver):
        settings = ExtractionSettings(
            map_url="x", popup_timeout=0.02, spinner_timeout=0.02,
            poll_interval=0.005, settle_delay=0, max_recovery_cycles=0,
        )
        driver = make_driver([FakeMarker("Ghost", "1", "2", popup_min_zoom=None)])

        result = await build_controller(driver, settings).run(0)

        assert result.final_state is RecoveryState.FAILED
        assert result.recovery_cycles == 0
        assert driver.zoom_history == [0]

    @pytest.mark.asyncio
    async def test_leftover_popup_is_closed_before_next_click(self, make_driver, settings):
        driver = make_driver([FakeMarker("A", "1", "2"), FakeMarker("B", "3", "4")])
        controller = build_controller(driver, settings)
        driver.open_popup = driver.markers[0]

        result = await controller.run(1)

        assert result.succeeded
        assert driver.overlaps == 0

    @pytest.mark.asyncio
    async def test_waits_for_spinner_to_clear(self, make_driver, settings):
        driver = make_driver([FakeMarker("A", "1", "2")], spinner_polls=2)

        result = await build_controller(driver, settings).run(0)

        assert result.succeeded
        assert driver.spinner_polls == 0

    @pytest.mark.asyncio
    async def test_vanished_marker_fails_without_raising(self, make_driver, settings):
        driver = make_driver([FakeMarker("A", "1", "2")])

        result = await build_controller(driver, settings).run(5)

        assert result.final_state is RecoveryState.FAILED
        assert result.reason == "PermanentExtractionFailure"
        assert driver.zoom == 0

    @pytest.mark.asyncio
    async def test_successes_always_carry_both_coordinates(self, make_driver, settings):
        rng = random.Random(7)
        values = ["12.5", "-80.1", "", "n/a", None]
        markers = [
            FakeMarker(
                f"Marker {i}",
                rng.choice(values),
                rng.choice(values),
                popup_min_zoom=rng.choice([0, 1, 2, None]),
            )
            for i in range(40)
        ]
        driver = make_driver(markers)
        controller = build_controller(driver, settings)

        for ordinal in range(len(markers)):
            result = await controller.run(ordinal)
            if isinstance(result.outcome, Success):
                assert result.outcome.record.latitude is not None
                assert result.outcome.record.longitude is not None
            else:
                assert result.final_state is RecoveryState.FAILED
            assert result.recovery_cycles <= settings.max_recovery_cycles
            assert driver.zoom == 0
            assert driver.open_popup is None
        assert driver.overlaps == 0

    @pytest.mark.asyncio
    async def test_outcome_for_stubbed_extractor(self, make_driver, settings):
        driver = make_driver([FakeMarker("A", "1", "2")])
        controller = build_controller(driver, settings)

        async def never():
            return PopupNotFound()

        controller.extractor.read_popup = never

        result = await controller.run(0)

        assert result.outcome == PopupNotFound()
        assert result.recovery_cycles == 1
        assert driver.zoom == 0
