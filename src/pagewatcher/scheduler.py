from __future__ import annotations

import logging
from queue import Empty, Queue
from threading import Event, Lock, RLock, Thread
from typing import Any, Callable

from .config import PLATFORM_MINIMUM_SECONDS, parse_interval, watch_config_from_settings
from .cycle import check_scope
from .errors import ScopeViolation
from .gate import NotificationGate
from .indicator import StateIndicator
from .interfaces import Persistence, TargetLifecycle, Timers
from .models import CycleContext, WatchTarget
from .power import set_keep_awake
from .settings_store import (
    KEY_ACTIVE_TARGET_ID,
    KEY_INTERVAL_SECONDS,
    KEY_KEEP_AWAKE,
    KEY_RUN_COUNT,
)
from .status import StatusStore

LOGGER = logging.getLogger(__name__)

ALARM_NAME = "page-watcher"
READY_STATES = {"loading", "complete"}

CycleFn = Callable[[str, CycleContext], Any]
_STOP = object()


class CycleExecutor:
    """Single worker thread that runs queued jobs one at a time.

    At most one job waits behind the running one; further submissions while a
    job is pending are dropped, so a burst of ticks collapses into one cycle.
    """

    def __init__(self, *, name: str = "cycle-executor") -> None:
        self._name = name
        self._queue: Queue[object] = Queue()
        self._lock = Lock()
        self._pending = False
        self._idle = Event()
        self._idle.set()
        self._thread: Thread | None = None

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = Thread(target=self._loop, name=self._name, daemon=True)
            self._thread.start()

    def submit(self, job: Callable[[], None]) -> bool:
        with self._lock:
            if self._pending:
                LOGGER.debug("Cycle request coalesced", extra={"category": "scheduler"})
                return False
            self._pending = True
            self._idle.clear()
        self._queue.put(job)
        return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self._idle.wait(timeout)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)

    def _loop(self) -> None:
        while True:
            try:
                job = self._queue.get(timeout=1.0)
            except Empty:
                continue
            if job is _STOP:
                self._idle.set()
                return
            with self._lock:
                self._pending = False
            try:
                job()  # type: ignore[operator]
            except Exception as exc:
                LOGGER.exception("Cycle job failed: %s", exc, extra={"category": "error"})
            finally:
                with self._lock:
                    if not self._pending:
                        self._idle.set()


class WatchScheduler:
    """Owns the single active watch and the recurring tick that drives it."""

    def __init__(
        self,
        *,
        store: Persistence,
        timers: Timers,
        lifecycle: TargetLifecycle,
        indicator: StateIndicator,
        gate: NotificationGate,
        cycle_runner: CycleFn | None = None,
        executor: CycleExecutor | None = None,
        status: StatusStore | None = None,
        keep_awake: Callable[[bool], Any] = set_keep_awake,
        platform_minimum_seconds: int = PLATFORM_MINIMUM_SECONDS,
    ) -> None:
        self._store = store
        self._timers = timers
        self._lifecycle = lifecycle
        self._indicator = indicator
        self._gate = gate
        self._cycle_runner = cycle_runner
        self._executor = executor or CycleExecutor()
        self._status = status
        self._keep_awake = keep_awake
        self._minimum_seconds = platform_minimum_seconds
        self._lock = RLock()
        self._active: WatchTarget | None = None
        self._keep_awake_applied = False
        self._executor.start()
        store.on_change(self.on_config_changed)
        lifecycle.on_removed(self.on_target_removed)
        lifecycle.on_location_changed(self.on_location_changed)
        lifecycle.on_focused(self.on_focused)

    def set_cycle_runner(self, cycle_runner: CycleFn) -> None:
        self._cycle_runner = cycle_runner

    @property
    def executor(self) -> CycleExecutor:
        return self._executor

    @property
    def active_target(self) -> WatchTarget | None:
        with self._lock:
            return self._active

    def is_active(self, target_id: str, session_id: str | None = None) -> bool:
        # Lock-free read: called from inside SettingsStore.update mutators.
        active = self._active
        if active is None or active.target_id != str(target_id):
            return False
        return session_id is None or session_id == active.session_id

    def start(self, target_id: str) -> bool:
        """Begin watching ``target_id``, replacing any watch already running.

        Returns False, with nothing scheduled and the indicator untouched, when
        the target is missing or outside the configured base scope.
        """
        config = watch_config_from_settings(
            self._store.get(), minimum_seconds=self._minimum_seconds
        )
        try:
            check_scope(self._lifecycle, target_id, config.base_scope)
        except ScopeViolation as exc:
            LOGGER.info("Watch not started: %s", exc, extra={"category": "scope"})
            return False
        with self._lock:
            if self._active is not None:
                LOGGER.info(
                    "Replacing active watch on %s",
                    self._active.target_id,
                    extra={"category": "scheduler"},
                )
                self._stop_locked()
            self._gate.forget(str(target_id))
            self._store.set({KEY_ACTIVE_TARGET_ID: str(target_id), KEY_RUN_COUNT: 0})
            self._begin_locked(str(target_id), config.base_scope)
        return True

    def stop(self) -> bool:
        with self._lock:
            return self._stop_locked()

    def resume(self) -> bool:
        """Re-attach the watch persisted by a previous run, or forget it."""
        stored = self._store.get([KEY_ACTIVE_TARGET_ID]).get(KEY_ACTIVE_TARGET_ID)
        if not stored:
            return False
        target_id = str(stored)
        config = watch_config_from_settings(
            self._store.get(), minimum_seconds=self._minimum_seconds
        )
        try:
            check_scope(self._lifecycle, target_id, config.base_scope)
        except ScopeViolation as exc:
            LOGGER.info("Persisted watch dropped: %s", exc, extra={"category": "scheduler"})
            self._store.set({KEY_ACTIVE_TARGET_ID: None, KEY_RUN_COUNT: 0})
            self._gate.forget(target_id)
            return False
        with self._lock:
            if self._active is not None:
                return self._active.target_id == target_id
            self._begin_locked(target_id, config.base_scope)
        LOGGER.info("Watch resumed on %s", target_id, extra={"category": "scheduler"})
        return True

    def request_cycle(self, *, refresh: bool = False) -> bool:
        """Queue an immediate cycle for the active watch."""
        if self.active_target is None:
            return False
        return self._executor.submit(lambda: self._run_tick(refresh=refresh))

    def shutdown(self) -> None:
        """Stop ticking and release resources; the persisted watch survives for resume."""
        with self._lock:
            self._timers.cancel(ALARM_NAME)
            self._active = None
            self._release_keep_awake()
        self._executor.stop()
        if self._status is not None:
            self._status.set_running(False)

    def on_config_changed(self, changed_keys: set[str], changed_values: dict[str, Any]) -> None:
        """React to a settings change using the stored values, not the notified ones.

        Notifications are delivered outside the store lock and may arrive out
        of order; ``changed_keys`` only says what to look at.
        """
        if not changed_keys & {KEY_INTERVAL_SECONDS, KEY_KEEP_AWAKE}:
            return
        with self._lock:
            if self._active is None:
                return
            current = self._store.get([KEY_INTERVAL_SECONDS, KEY_KEEP_AWAKE])
            if KEY_INTERVAL_SECONDS in changed_keys:
                period = parse_interval(current.get(KEY_INTERVAL_SECONDS), self._minimum_seconds)
                if self._timers.period(ALARM_NAME) != period:
                    self._timers.create_recurring(ALARM_NAME, period, self._on_tick)
                    LOGGER.info(
                        "Watch rescheduled every %ss",
                        period,
                        extra={"category": "scheduler"},
                    )
            if KEY_KEEP_AWAKE in changed_keys:
                if current.get(KEY_KEEP_AWAKE):
                    self._apply_keep_awake()
                else:
                    self._release_keep_awake()

    def on_target_removed(self, target_id: str) -> None:
        if self.is_active(target_id):
            LOGGER.info(
                "Watched target %s closed; stopping",
                target_id,
                extra={"category": "scheduler"},
            )
            self.stop()

    def on_location_changed(self, target_id: str, status: str) -> None:
        if status in READY_STATES and self.is_active(target_id):
            self._indicator.repaint(target_id)

    def on_focused(self, target_id: str) -> None:
        if self.is_active(target_id):
            self._indicator.repaint(target_id)

    def _begin_locked(self, target_id: str, base_scope: str) -> None:
        config = watch_config_from_settings(
            self._store.get(), minimum_seconds=self._minimum_seconds
        )
        target = WatchTarget(target_id=target_id, base_scope=base_scope)
        self._active = target
        period = config.effective_interval(self._minimum_seconds)
        self._timers.create_recurring(ALARM_NAME, period, self._on_tick)
        self._indicator.activate(target_id)
        if config.keep_awake:
            self._apply_keep_awake()
        if self._status is not None:
            self._status.set_running(True)
            self._status.set_active_target(target_id)
        LOGGER.info(
            "Watch started on %s every %ss (session %s)",
            target_id,
            period,
            target.session_id,
            extra={"category": "scheduler"},
        )

    def _stop_locked(self) -> bool:
        self._timers.cancel(ALARM_NAME)
        target = self._active
        if target is None:
            return False
        self._active = None
        self._indicator.deactivate(target.target_id)
        self._store.set({KEY_ACTIVE_TARGET_ID: None, KEY_RUN_COUNT: 0})
        self._gate.forget(target.target_id)
        self._release_keep_awake()
        if self._status is not None:
            self._status.set_running(False)
            self._status.set_active_target("")
        LOGGER.info("Watch stopped on %s", target.target_id, extra={"category": "scheduler"})
        return True

    def _on_tick(self) -> None:
        self._executor.submit(lambda: self._run_tick(refresh=True))

    def _run_tick(self, *, refresh: bool) -> None:
        target = self.active_target
        runner = self._cycle_runner
        if target is None or runner is None:
            return
        run_index = int(self._store.get([KEY_RUN_COUNT]).get(KEY_RUN_COUNT) or 0)
        ctx = CycleContext(run_index=run_index, refresh=refresh, session_id=target.session_id)
        try:
            runner(target.target_id, ctx)
        finally:
            self._advance_run_count(target)

    def _advance_run_count(self, target: WatchTarget) -> None:
        def mutate(current: dict[str, Any]) -> dict[str, Any] | None:
            if not self.is_active(target.target_id, target.session_id):
                return None
            return {KEY_RUN_COUNT: int(current.get(KEY_RUN_COUNT) or 0) + 1}

        self._store.update(mutate)

    def _apply_keep_awake(self) -> None:
        if self._keep_awake_applied:
            return
        try:
            self._keep_awake(True)
            self._keep_awake_applied = True
        except Exception as exc:
            LOGGER.warning("Keep-awake failed: %s", exc, extra={"category": "power"})

    def _release_keep_awake(self) -> None:
        if not self._keep_awake_applied:
            return
        try:
            self._keep_awake(False)
        except Exception as exc:
            LOGGER.warning("Keep-awake release failed: %s", exc, extra={"category": "power"})
        finally:
            self._keep_awake_applied = False
