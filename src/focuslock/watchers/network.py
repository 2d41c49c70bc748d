"""Sliding-window aggregation of background network destinations."""

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from focuslock.api.services.rules import extract_domain
from focuslock.watchers.logger import get_logger

logger = get_logger("network")

TRACKING_WINDOW_SEC = 30.0

TRACKED_RESOURCE_TYPES = frozenset(
    {"main_frame", "sub_frame", "xmlhttprequest", "script", "image", "media"}
)

IGNORED_URL_PREFIXES: tuple[str, ...] = (
    "chrome-extension://",
    "moz-extension://",
    "chrome://",
    "about:",
    "data:",
    "blob:",
)


@dataclass(frozen=True)
class DomainActivity:
    domain: str
    count: int
    last_seen: float


@dataclass(frozen=True)
class ActivitySnapshot:
    """ActivityWindow.snapshot() の不変コピー."""

    domains: tuple[str, ...]
    total_count: int
    details: tuple[DomainActivity, ...]


class ActivityWindow:
    """直近 ``window_sec`` 秒に通信したドメインを集計する.

    書き込みは fusion 側の単一ライターを前提とする。読み出しは常に
    古いエントリを削除してから不変のスナップショットを返す。
    """

    def __init__(
        self,
        window_sec: float = TRACKING_WINDOW_SEC,
        *,
        own_origins: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window_sec = window_sec
        self.own_origins = tuple(own_origins)
        self._clock = clock
        self._activity: dict[str, DomainActivity] = {}
        self._last_cleanup = clock()

    def _is_noise(self, url: str, hostname: str) -> bool:
        if url.startswith(IGNORED_URL_PREFIXES):
            return True
        if hostname.startswith("chrome"):
            return True
        return any(origin in url for origin in self.own_origins)

    def record(self, url: str, resource_type: str | None = None) -> bool:
        """リクエストを記録する. 記録したら True."""
        if resource_type is not None and resource_type not in TRACKED_RESOURCE_TYPES:
            return False
        hostname = extract_domain(url)
        if hostname is None or self._is_noise(url, hostname):
            return False

        now = self._clock()
        current = self._activity.get(hostname)
        count = current.count + 1 if current else 1
        self._activity[hostname] = DomainActivity(hostname, count, now)

        if now - self._last_cleanup > self.window_sec:
            self._cleanup(now)
        return True

    def _cleanup(self, now: float) -> None:
        cutoff = now - self.window_sec
        stale = [d for d, a in self._activity.items() if a.last_seen < cutoff]
        for domain in stale:
            del self._activity[domain]
        if stale:
            logger.debug("evicted %d stale domains", len(stale))
        self._last_cleanup = now

    def snapshot(self) -> ActivitySnapshot:
        self._cleanup(self._clock())
        details = tuple(self._activity.values())
        return ActivitySnapshot(
            domains=tuple(a.domain for a in details),
            total_count=sum(a.count for a in details),
            details=details,
        )

    def reset(self) -> None:
        self._activity.clear()
        self._last_cleanup = self._clock()
