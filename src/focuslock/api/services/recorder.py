"""Recorder: snapshots → analytics entries / alert history, plus the summary."""

import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime
from typing import Any

from focuslock.api.services.alerts import off_task_reason
from focuslock.api.services.rules import extract_domain
from focuslock.api.services.store import (
    ALERT_HISTORY,
    ALERT_HISTORY_CAP,
    ANALYTICS,
    ANALYTICS_CAP,
    LAST_SNAPSHOT,
    KeyValueStore,
)
from focuslock.model.models import AlertRecord, AnalyticsEntry, Snapshot
from focuslock.watchers.logger import get_logger

logger = get_logger("recorder")

SECONDS_PER_DAY = 24 * 60 * 60
TOP_DOMAINS = 10


def _hour(ts: float) -> int:
    return datetime.fromtimestamp(ts).hour


def _date(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d")


class Recorder:
    """各スナップショットで「直前のページに居た期間」を1件記録する."""

    def __init__(
        self, store: KeyValueStore, clock: Callable[[], float] = time.time
    ) -> None:
        self.store = store
        self._clock = clock
        self._page_url: str | None = None
        self._page_title = ""
        self._page_start: float | None = None

    def on_snapshot(self, snapshot: Snapshot) -> AnalyticsEntry | None:
        now = self._clock()
        ctx = snapshot.context
        self.store.set(LAST_SNAPSHOT, snapshot.to_dict())

        entry = None
        if self._page_url is not None and self._page_start is not None:
            detected = (
                ctx.visual_verification.verified_content()
                if ctx.visual_verification
                else None
            )
            entry = AnalyticsEntry(
                timestamp=self._page_start,
                url=self._page_url,
                domain=extract_domain(self._page_url) or "unknown",
                title=self._page_title,
                state=snapshot.state,
                confidence=snapshot.confidence,
                duration_ms=int((now - self._page_start) * 1000),
                category=detected.split(",")[0].strip() if detected else None,
                detected_content=detected or None,
                session_task=ctx.session_task,
            )
            self.store.append_bounded(ANALYTICS, asdict(entry), ANALYTICS_CAP)
            logger.info(
                "recorded %s for %dms on %s", entry.state, entry.duration_ms, entry.domain
            )

            if snapshot.state == "off_task":
                record = AlertRecord(now, self._page_url, off_task_reason(snapshot))
                self.store.append_bounded(ALERT_HISTORY, asdict(record), ALERT_HISTORY_CAP)

        self._page_url = ctx.active_url
        self._page_title = ctx.active_title
        self._page_start = now
        return entry

    def clear(self) -> None:
        self.store.remove(ANALYTICS, ALERT_HISTORY)
        logger.info("analytics cleared")

    def summarize(self, days_back: int = 7) -> dict[str, Any]:
        """直近 ``days_back`` 日分の集計.

        Args:
            days_back: 集計対象の日数

        Returns:
            dict: 合計時間・上位の off-task ドメイン・時間帯別・日別などの集計

        """
        cutoff = self._clock() - days_back * SECONDS_PER_DAY
        all_alerts = self.store.get(ALERT_HISTORY) or []
        entries = [e for e in self.store.get(ANALYTICS) or [] if e["timestamp"] >= cutoff]
        alerts = [a for a in all_alerts if a["timestamp"] >= cutoff]

        total = sum(e["duration_ms"] for e in entries)
        on_task = sum(e["duration_ms"] for e in entries if e["state"] == "on_task")
        off_task = sum(e["duration_ms"] for e in entries if e["state"] == "off_task")

        domains: dict[str, dict[str, int]] = defaultdict(lambda: {"visits": 0, "time": 0})
        for e in entries:
            if e["state"] == "off_task":
                domains[e["domain"]]["visits"] += 1
                domains[e["domain"]]["time"] += e["duration_ms"]
        top_domains = sorted(
            (
                {
                    "domain": domain,
                    "visits": d["visits"],
                    "total_time_ms": d["time"],
                    "average_time_ms": d["time"] / d["visits"],
                }
                for domain, d in domains.items()
            ),
            key=lambda d: d["total_time_ms"],
            reverse=True,
        )[:TOP_DOMAINS]

        hourly = [{"hour": h, "on_task_ms": 0, "off_task_ms": 0} for h in range(24)]
        daily: dict[str, dict[str, int]] = defaultdict(
            lambda: {"on_task_ms": 0, "off_task_ms": 0, "alerts": 0}
        )
        categories: dict[str, dict[str, int]] = defaultdict(lambda: {"time": 0, "visits": 0})
        for e in entries:
            key = "on_task_ms" if e["state"] == "on_task" else "off_task_ms"
            hourly[_hour(e["timestamp"])][key] += e["duration_ms"]
            daily[_date(e["timestamp"])][key] += e["duration_ms"]
            category = e.get("category") or e["domain"]
            categories[category]["time"] += e["duration_ms"]
            categories[category]["visits"] += 1
        for a in alerts:
            daily[_date(a["timestamp"])]["alerts"] += 1

        daily_stats = [{"date": date, **d} for date, d in sorted(daily.items())]

        active_hours = [h for h in hourly if h["on_task_ms"] or h["off_task_ms"]]
        most_productive = max(hourly, key=lambda h: h["on_task_ms"])["hour"]
        least_productive = (
            min(active_hours, key=lambda h: h["on_task_ms"])["hour"] if active_hours else 0
        )

        return {
            "total_time_ms": total,
            "on_task_ms": on_task,
            "off_task_ms": off_task,
            "on_task_percentage": on_task / total * 100 if total > 0 else 0.0,
            "top_off_task_domains": top_domains,
            "hourly_activity": hourly,
            "daily_stats": daily_stats,
            "category_breakdown": sorted(
                ({"category": c, **d} for c, d in categories.items()),
                key=lambda c: c["time"],
                reverse=True,
            ),
            "total_alerts": len(all_alerts),
            "alerts_in_period": len(alerts),
            "average_alerts_per_day": len(alerts) / len(daily_stats) if daily_stats else 0.0,
            "most_productive_hour": most_productive,
            "least_productive_hour": least_productive,
        }
