from __future__ import annotations

from dataclasses import dataclass, field
from threading import Event, Thread
from typing import Iterator

import pytest

from fakes import OTHER_URL, FakeLifecycle, FakeNotifier, ManualTimers, make_store
from pagewatcher.gate import NotificationGate
from pagewatcher.indicator import IndicatorState, StateIndicator
from pagewatcher.models import CycleContext
from pagewatcher.scheduler import ALARM_NAME, CycleExecutor, WatchScheduler
from pagewatcher.settings_store import (
    KEY_ACTIVE_TARGET_ID,
    KEY_INTERVAL_SECONDS,
    KEY_KEEP_AWAKE,
    KEY_NOTIFICATION_LEDGER,
    KEY_RUN_COUNT,
    SettingsStore,
)
from pagewatcher.timers import RecurringTimers


@dataclass
class Rig:
    store: SettingsStore
    timers: ManualTimers
    lifecycle: FakeLifecycle
    notifier: FakeNotifier
    indicator: StateIndicator
    gate: NotificationGate
    scheduler: WatchScheduler
    cycles: list[tuple[str, CycleContext]] = field(default_factory=list)
    keep_awake: list[bool] = field(default_factory=list)

    def wait(self) -> None:
        assert self.scheduler.executor.wait_idle(5.0)


def _build(store: SettingsStore | None = None, timers=None) -> Rig:
    store = store or make_store()
    timers = timers if timers is not None else ManualTimers()
    lifecycle = FakeLifecycle()
    lifecycle.add("tab-1")
    notifier = FakeNotifier()
    indicator = StateIndicator(notifier)
    gate = NotificationGate(store)
    cycles: list[tuple[str, CycleContext]] = []
    keep_awake: list[bool] = []
    scheduler = WatchScheduler(
        store=store,
        timers=timers,
        lifecycle=lifecycle,
        indicator=indicator,
        gate=gate,
        cycle_runner=lambda target_id, ctx: cycles.append((target_id, ctx)),
        keep_awake=keep_awake.append,
    )
    return Rig(store, timers, lifecycle, notifier, indicator, gate, scheduler, cycles, keep_awake)


@pytest.fixture
def rig() -> Iterator[Rig]:
    built = _build()
    yield built
    built.scheduler.shutdown()


def test_start_out_of_scope_does_nothing(rig: Rig) -> None:
    rig.lifecycle.add("tab-2", location=OTHER_URL)

    assert rig.scheduler.start("tab-2") is False

    assert rig.timers.names() == []
    assert rig.indicator.state("tab-2") is IndicatorState.OFF
    assert rig.notifier.indicators == []
    assert rig.store.get([KEY_ACTIVE_TARGET_ID])[KEY_ACTIVE_TARGET_ID] is None
    assert rig.keep_awake == []


def test_start_unknown_target_does_nothing(rig: Rig) -> None:
    assert rig.scheduler.start("tab-404") is False
    assert rig.timers.names() == []


def test_start_schedules_at_platform_floor(rig: Rig) -> None:
    rig.store.set({KEY_INTERVAL_SECONDS: 5})

    assert rig.scheduler.start("tab-1") is True

    assert rig.timers.period(ALARM_NAME) == 60
    assert rig.indicator.state("tab-1") is IndicatorState.ON
    assert rig.store.get([KEY_ACTIVE_TARGET_ID, KEY_RUN_COUNT]) == {
        KEY_ACTIVE_TARGET_ID: "tab-1",
        KEY_RUN_COUNT: 0,
    }
    assert rig.keep_awake == [True]
    assert rig.scheduler.is_active("tab-1") is True


def test_stop_clears_everything(rig: Rig) -> None:
    rig.scheduler.start("tab-1")
    rig.gate.mark_notified("tab-1", 0)

    assert rig.scheduler.stop() is True

    assert rig.timers.names() == []
    assert rig.indicator.state("tab-1") is IndicatorState.OFF
    assert rig.store.get([KEY_ACTIVE_TARGET_ID])[KEY_ACTIVE_TARGET_ID] is None
    assert rig.store.get([KEY_NOTIFICATION_LEDGER])[KEY_NOTIFICATION_LEDGER] == {}
    assert rig.keep_awake == [True, False]
    assert rig.scheduler.stop() is False


def test_ticks_advance_run_index(rig: Rig) -> None:
    rig.scheduler.start("tab-1")

    rig.timers.fire(ALARM_NAME)
    rig.wait()
    rig.timers.fire(ALARM_NAME)
    rig.wait()

    assert [ctx.run_index for _target, ctx in rig.cycles] == [0, 1]
    assert all(ctx.refresh for _target, ctx in rig.cycles)
    assert rig.store.get([KEY_RUN_COUNT])[KEY_RUN_COUNT] == 2


def test_tick_queued_before_stop_does_not_run(rig: Rig) -> None:
    rig.scheduler.start("tab-1")
    started = Event()
    release = Event()

    def blocker() -> None:
        started.set()
        release.wait(5.0)

    rig.scheduler.executor.submit(blocker)
    assert started.wait(5.0)
    rig.timers.fire(ALARM_NAME)
    rig.scheduler.stop()
    release.set()
    rig.wait()

    assert rig.cycles == []
    assert rig.store.get([KEY_RUN_COUNT])[KEY_RUN_COUNT] == 0


def test_interval_change_reschedules_once(rig: Rig) -> None:
    rig.scheduler.start("tab-1")

    rig.store.set({KEY_INTERVAL_SECONDS: 120})
    rig.store.set({KEY_INTERVAL_SECONDS: 120})

    assert rig.timers.names() == [ALARM_NAME]
    assert rig.timers.period(ALARM_NAME) == 120
    assert rig.timers.created == [(ALARM_NAME, 60.0), (ALARM_NAME, 120.0)]

    rig.store.set({KEY_INTERVAL_SECONDS: 10})
    assert rig.timers.period(ALARM_NAME) == 60


def test_interval_change_without_watch_schedules_nothing(rig: Rig) -> None:
    rig.store.set({KEY_INTERVAL_SECONDS: 300})

    assert rig.timers.names() == []


def test_interval_change_with_real_timers_keeps_single_schedule() -> None:
    timers = RecurringTimers()
    built = _build(timers=timers)
    try:
        built.scheduler.start("tab-1")
        built.store.set({KEY_INTERVAL_SECONDS: 180})

        assert timers.names() == [ALARM_NAME]
        assert timers.period(ALARM_NAME) == 180
    finally:
        built.scheduler.shutdown()
        timers.cancel_all()


def test_start_replaces_existing_watch(rig: Rig) -> None:
    rig.lifecycle.add("tab-2")
    rig.scheduler.start("tab-1")
    rig.timers.fire(ALARM_NAME)
    rig.wait()

    assert rig.scheduler.start("tab-2") is True

    assert rig.indicator.state("tab-1") is IndicatorState.OFF
    assert rig.indicator.state("tab-2") is IndicatorState.ON
    assert rig.timers.names() == [ALARM_NAME]
    assert rig.store.get([KEY_ACTIVE_TARGET_ID, KEY_RUN_COUNT]) == {
        KEY_ACTIVE_TARGET_ID: "tab-2",
        KEY_RUN_COUNT: 0,
    }
    assert rig.scheduler.is_active("tab-1") is False


def test_closing_watched_target_stops_watch(rig: Rig) -> None:
    rig.scheduler.start("tab-1")

    rig.lifecycle.remove("tab-1")

    assert rig.scheduler.active_target is None
    assert rig.timers.names() == []
    assert rig.indicator.state("tab-1") is IndicatorState.OFF


def test_closing_other_target_is_ignored(rig: Rig) -> None:
    rig.lifecycle.add("tab-2")
    rig.scheduler.start("tab-1")

    rig.lifecycle.remove("tab-2")

    assert rig.scheduler.is_active("tab-1") is True


def test_navigation_and_focus_repaint_without_clearing_hit(rig: Rig) -> None:
    rig.scheduler.start("tab-1")
    rig.indicator.hit("tab-1")
    before = len(rig.notifier.indicators)

    rig.lifecycle.navigate("tab-1", "complete")
    rig.lifecycle.navigate("tab-1", "unknown")
    rig.lifecycle.focus("tab-1")

    assert rig.indicator.state("tab-1") is IndicatorState.HIT
    assert rig.notifier.indicators[before:] == [
        ("tab-1", IndicatorState.HIT),
        ("tab-1", IndicatorState.HIT),
    ]


def test_events_for_unwatched_target_paint_nothing(rig: Rig) -> None:
    rig.lifecycle.navigate("tab-1", "complete")
    rig.lifecycle.focus("tab-1")

    assert rig.notifier.indicators == []


def test_resume_reattaches_persisted_watch() -> None:
    built = _build(store=make_store(activeTargetId="tab-1", runCount=4))
    try:
        assert built.scheduler.resume() is True
        assert built.timers.names() == [ALARM_NAME]
        assert built.indicator.state("tab-1") is IndicatorState.ON

        built.timers.fire(ALARM_NAME)
        built.wait()
        assert built.cycles[0][1].run_index == 4
    finally:
        built.scheduler.shutdown()


def test_resume_drops_missing_target() -> None:
    built = _build(store=make_store(activeTargetId="tab-gone", runCount=4))
    try:
        assert built.scheduler.resume() is False
        assert built.timers.names() == []
        assert built.store.get([KEY_ACTIVE_TARGET_ID, KEY_RUN_COUNT]) == {
            KEY_ACTIVE_TARGET_ID: None,
            KEY_RUN_COUNT: 0,
        }
    finally:
        built.scheduler.shutdown()


def test_shutdown_keeps_persisted_target(rig: Rig) -> None:
    rig.scheduler.start("tab-1")

    rig.scheduler.shutdown()

    assert rig.timers.names() == []
    assert rig.store.get([KEY_ACTIVE_TARGET_ID])[KEY_ACTIVE_TARGET_ID] == "tab-1"
    assert rig.keep_awake == [True, False]


def test_request_cycle_requires_active_watch(rig: Rig) -> None:
    assert rig.scheduler.request_cycle() is False

    rig.scheduler.start("tab-1")
    assert rig.scheduler.request_cycle() is True
    rig.wait()

    assert len(rig.cycles) == 1
    assert rig.cycles[0][1].refresh is False


def test_keep_awake_follows_setting(rig: Rig) -> None:
    rig.scheduler.start("tab-1")

    rig.store.set({KEY_KEEP_AWAKE: False})
    rig.store.set({KEY_KEEP_AWAKE: True})
    rig.scheduler.stop()

    assert rig.keep_awake == [True, False, True, False]


def test_keep_awake_disabled_is_never_applied() -> None:
    built = _build(store=make_store(keepAwake=False))
    try:
        built.scheduler.start("tab-1")
        built.scheduler.stop()
        assert built.keep_awake == []
    finally:
        built.scheduler.shutdown()


def test_executor_coalesces_pending_jobs() -> None:
    executor = CycleExecutor(name="test-executor")
    executor.start()
    started = Event()
    release = Event()
    ran: list[str] = []

    def blocker() -> None:
        started.set()
        release.wait(5.0)
        ran.append("blocker")

    try:
        assert executor.submit(blocker) is True
        assert started.wait(5.0)
        assert executor.submit(lambda: ran.append("first")) is True
        assert executor.submit(lambda: ran.append("second")) is False
        release.set()
        assert executor.wait_idle(5.0)
    finally:
        executor.stop()

    assert ran == ["blocker", "first"]


def test_executor_survives_failing_job() -> None:
    executor = CycleExecutor(name="test-executor")
    executor.start()
    ran: list[int] = []
    try:
        executor.submit(lambda: 1 / 0)
        assert executor.wait_idle(5.0)
        executor.submit(lambda: ran.append(1))
        assert executor.wait_idle(5.0)
    finally:
        executor.stop()

    assert ran == [1]


def test_out_of_order_interval_notifications_keep_latest_period() -> None:
    store = make_store()
    entered = Event()
    release = Event()

    def slow_listener(_keys: set[str], values: dict) -> None:
        if values.get(KEY_INTERVAL_SECONDS) == 120:
            entered.set()
            release.wait(5.0)

    # Registered before the scheduler, so it delays the scheduler's copy of the 120 notice.
    store.on_change(slow_listener)
    rig = _build(store)
    try:
        assert rig.scheduler.start("tab-1") is True
        first = Thread(target=lambda: store.set({KEY_INTERVAL_SECONDS: 120}))
        first.start()
        assert entered.wait(5.0)

        store.set({KEY_INTERVAL_SECONDS: 300})
        release.set()
        first.join(5.0)

        assert store.get([KEY_INTERVAL_SECONDS])[KEY_INTERVAL_SECONDS] == 300
        assert rig.timers.period(ALARM_NAME) == 300
    finally:
        release.set()
        rig.scheduler.shutdown()
