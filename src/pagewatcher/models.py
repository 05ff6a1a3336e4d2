from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

REASON_CONTAINER_NOT_FOUND = "container-not-found"
REASON_TIMEOUT = "timeout"


def _new_session_id() -> str:
    return uuid4().hex


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WatchTarget:
    target_id: str
    base_scope: str
    session_id: str = field(default_factory=_new_session_id)
    started_at: datetime = field(default_factory=_utc_now)


@dataclass(frozen=True)
class TargetInfo:
    location: str
    status: str = "complete"

    def in_scope(self, base_scope: str) -> bool:
        return bool(self.location) and bool(base_scope) and self.location.startswith(base_scope)


@dataclass(frozen=True)
class CycleContext:
    run_index: int
    refresh: bool = True
    session_id: str | None = None


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    matched_keyword: str | None = None
    reason: str | None = None

    def __post_init__(self) -> None:
        if self.matched and not self.matched_keyword:
            raise ValueError("matched results require a keyword")
        if not self.matched and self.matched_keyword is not None:
            raise ValueError("non-matching results cannot carry a keyword")

    @classmethod
    def hit(cls, keyword: str) -> "MatchResult":
        return cls(matched=True, matched_keyword=keyword)

    @classmethod
    def miss(cls, reason: str | None = None) -> "MatchResult":
        return cls(matched=False, reason=reason)

    @classmethod
    def container_not_found(cls) -> "MatchResult":
        return cls(matched=False, reason=REASON_CONTAINER_NOT_FOUND)
