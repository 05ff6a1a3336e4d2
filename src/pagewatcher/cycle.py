from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .config import PLATFORM_MINIMUM_SECONDS, WatchConfig, watch_config_from_settings
from .errors import MatchInvocationFailure, ReloadTimeout, ScopeViolation
from .gate import NotificationGate
from .indicator import StateIndicator
from .interfaces import LiveDocument, Notifier, Persistence, TargetLifecycle
from .logging_setup import cycle_context
from .matcher import DEFAULT_OBSERVE_TIMEOUT_MS, DEFAULT_PROBE_WAIT_MS, ContentMatcher
from .models import CycleContext, MatchResult, TargetInfo
from .status import StatusStore

LOGGER = logging.getLogger(__name__)

ALERT_TITLE = "Page Watcher"
DEFAULT_RELOAD_TIMEOUT_SECONDS = 20.0

MatcherFactory = Callable[[LiveDocument], ContentMatcher]
ActiveCheck = Callable[[str, "str | None"], bool]


def _now_iso() -> str:
    return datetime.now(timezone.utc).astimezone().replace(microsecond=0).isoformat()


def check_scope(lifecycle: TargetLifecycle, target_id: str, base_scope: str) -> TargetInfo:
    """Return the target's info, raising ScopeViolation when it is gone or out of scope."""
    try:
        info = lifecycle.get(target_id)
    except Exception as exc:
        raise ScopeViolation(f"target {target_id} unavailable: {exc}") from exc
    if info is None:
        raise ScopeViolation(f"target {target_id} not found")
    if not info.in_scope(base_scope):
        raise ScopeViolation(f"target {target_id} is outside {base_scope!r}")
    return info


@dataclass(frozen=True)
class CycleTimeouts:
    probe_ms: int = DEFAULT_PROBE_WAIT_MS
    observe_ms: int = DEFAULT_OBSERVE_TIMEOUT_MS
    reload_seconds: float = DEFAULT_RELOAD_TIMEOUT_SECONDS


class CycleRunner:
    """Runs one watch cycle: refresh, match, gate, notify, restore the indicator."""

    def __init__(
        self,
        *,
        store: Persistence,
        lifecycle: TargetLifecycle,
        gate: NotificationGate,
        indicator: StateIndicator,
        notifier: Notifier,
        is_active: ActiveCheck,
        status: StatusStore | None = None,
        timeouts: CycleTimeouts | None = None,
        platform_minimum_seconds: int = PLATFORM_MINIMUM_SECONDS,
        matcher_factory: MatcherFactory = ContentMatcher,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._gate = gate
        self._indicator = indicator
        self._notifier = notifier
        self._is_active = is_active
        self._status = status
        self._timeouts = timeouts or CycleTimeouts()
        self._minimum_seconds = platform_minimum_seconds
        self._matcher_factory = matcher_factory

    def run_cycle(self, target_id: str, ctx: CycleContext) -> MatchResult | None:
        with cycle_context(f"{target_id}:{ctx.run_index}"):
            return self._run_cycle(target_id, ctx)

    def _run_cycle(self, target_id: str, ctx: CycleContext) -> MatchResult | None:
        started_at = _now_iso()
        cycle_started = time.perf_counter()
        config = watch_config_from_settings(
            self._store.get(), minimum_seconds=self._minimum_seconds
        )
        try:
            check_scope(self._lifecycle, target_id, config.base_scope)
        except ScopeViolation as exc:
            LOGGER.info("Cycle skipped: %s", exc, extra={"category": "scope"})
            return None

        if ctx.refresh:
            self._refresh(target_id, ctx)

        showed_hit = False
        result: MatchResult | None = None
        try:
            result = self._match(target_id, config)
            if result.matched:
                showed_hit = self._handle_match(target_id, ctx, config, result)
            else:
                LOGGER.info(
                    "No match (%s)",
                    result.reason or "keywords absent",
                    extra={"category": "scan"},
                )
        except MatchInvocationFailure as exc:
            self._record_error(f"match failed: {exc}")
            LOGGER.warning("Match invocation failed: %s", exc, extra={"category": "scan"})
        except Exception as exc:
            self._record_error(f"cycle error: {exc}")
            LOGGER.exception("Cycle error: %s", exc, extra={"category": "error"})

        # A HIT raised in this cycle stays visible until the next refresh.
        if not showed_hit and self._is_active(target_id, ctx.session_id):
            self._indicator.reassert(target_id)

        if self._status is not None:
            self._status.record_cycle(
                started_at=started_at,
                run_index=ctx.run_index,
                result=self._describe(result),
            )
        LOGGER.info(
            "Cycle %s duration %.2fms",
            ctx.run_index,
            (time.perf_counter() - cycle_started) * 1000,
            extra={"category": "perf"},
        )
        return result

    def _refresh(self, target_id: str, ctx: CycleContext) -> None:
        if self._is_active(target_id, ctx.session_id):
            self._indicator.reassert(target_id)
        try:
            self._lifecycle.reload(target_id)
        except Exception as exc:
            LOGGER.warning("Reload failed: %s", exc, extra={"category": "scan"})
        try:
            if not self._lifecycle.wait_until_complete(target_id, self._timeouts.reload_seconds):
                raise ReloadTimeout(
                    f"reload did not complete within {self._timeouts.reload_seconds}s"
                )
        except ReloadTimeout as exc:
            LOGGER.warning(
                "%s; matching against current content",
                exc,
                extra={"category": "scan"},
            )
        except Exception as exc:
            LOGGER.warning("Reload wait failed: %s", exc, extra={"category": "scan"})

    def _match(self, target_id: str, config: WatchConfig) -> MatchResult:
        if not config.keywords:
            LOGGER.warning("No keywords configured", extra={"category": "scan"})
            return MatchResult.miss("no-keywords")
        try:
            document = self._lifecycle.document(target_id)
        except Exception as exc:
            raise MatchInvocationFailure(f"document unavailable: {exc}") from exc
        matcher = self._matcher_factory(document)
        result = matcher.probe(
            config.container_locator, config.keywords, self._timeouts.probe_ms
        )
        if result.matched:
            return result
        LOGGER.info(
            "Probe missed; observing for up to %sms",
            self._timeouts.observe_ms,
            extra={"category": "scan"},
        )
        return matcher.observe_until_match(
            config.container_locator, config.keywords, self._timeouts.observe_ms
        )

    def _handle_match(
        self,
        target_id: str,
        ctx: CycleContext,
        config: WatchConfig,
        result: MatchResult,
    ) -> bool:
        keyword = result.matched_keyword or ""
        if self._status is not None:
            self._status.set_last_match(keyword, _now_iso())

        def alive() -> bool:
            return self._is_active(target_id, ctx.session_id)

        if not alive():
            LOGGER.info("Match ignored; watch no longer active", extra={"category": "notify"})
            return False
        if not self._gate.claim(target_id, ctx.run_index, still_active=alive):
            return False
        LOGGER.info("HIT %r on run %s", keyword, ctx.run_index, extra={"category": "notify"})
        return self._dispatch(target_id, config, keyword, alive)

    def _dispatch(
        self,
        target_id: str,
        config: WatchConfig,
        keyword: str,
        alive: Callable[[], bool],
    ) -> bool:
        # Each side effect re-checks; stop may land between any two of them.
        if config.desktop_notify and alive():
            try:
                self._notifier.show_alert(ALERT_TITLE, keyword or "Match found")
            except Exception as exc:
                LOGGER.warning("Desktop alert failed: %s", exc, extra={"category": "notify"})
        if config.sound_enabled and alive():
            try:
                self._notifier.play_sound()
            except Exception as exc:
                LOGGER.warning("Alert sound failed: %s", exc, extra={"category": "notify"})
        if not alive():
            LOGGER.info("Watch stopped during alert dispatch", extra={"category": "notify"})
            return False
        self._indicator.hit(target_id)
        if self._status is not None:
            self._status.set_last_alert(_now_iso())
        return True

    def _record_error(self, message: str) -> None:
        if self._status is None:
            return
        self._status.set_last_error(message)
        self._status.increment_error_count()

    @staticmethod
    def _describe(result: MatchResult | None) -> str:
        if result is None:
            return "error"
        if result.matched:
            return f"match: {result.matched_keyword}"
        return f"no match ({result.reason})" if result.reason else "no match"
