from __future__ import annotations

from fakes import FakeNotifier
from pagewatcher.indicator import IndicatorState, StateIndicator
from pagewatcher.status import StatusStore


def test_default_state_is_off() -> None:
    indicator = StateIndicator(FakeNotifier())

    assert indicator.state("tab-1") is IndicatorState.OFF


def test_full_lifecycle_transitions() -> None:
    notifier = FakeNotifier()
    status = StatusStore()
    indicator = StateIndicator(notifier, status)

    assert indicator.activate("tab-1") is True
    assert indicator.hit("tab-1") is True
    assert status.snapshot().indicator == "HIT"
    assert indicator.reassert("tab-1") is True
    assert indicator.deactivate("tab-1") is True

    assert notifier.states() == [
        IndicatorState.ON,
        IndicatorState.HIT,
        IndicatorState.ON,
        IndicatorState.OFF,
    ]
    assert status.snapshot().indicator == "OFF"


def test_off_is_left_only_through_activate() -> None:
    notifier = FakeNotifier()
    indicator = StateIndicator(notifier)

    assert indicator.hit("tab-1") is False
    assert indicator.reassert("tab-1") is False
    assert indicator.repaint("tab-1") is False
    assert indicator.state("tab-1") is IndicatorState.OFF
    assert notifier.indicators == []


def test_repaint_keeps_hit() -> None:
    notifier = FakeNotifier()
    indicator = StateIndicator(notifier)
    indicator.activate("tab-1")
    indicator.hit("tab-1")

    assert indicator.repaint("tab-1") is True

    assert indicator.state("tab-1") is IndicatorState.HIT
    assert notifier.indicators[-1] == ("tab-1", IndicatorState.HIT)


def test_states_are_tracked_per_target() -> None:
    indicator = StateIndicator(FakeNotifier())
    indicator.activate("tab-1")

    assert indicator.state("tab-2") is IndicatorState.OFF
    assert indicator.hit("tab-2") is False


def test_notifier_failure_does_not_block_transition() -> None:
    class FailingNotifier(FakeNotifier):
        def set_indicator(self, target_id, state) -> None:
            raise RuntimeError("tray gone")

    indicator = StateIndicator(FailingNotifier())

    assert indicator.activate("tab-1") is True
    assert indicator.state("tab-1") is IndicatorState.ON
