import random
from unittest.mock import Mock

import pytest

from focuslock.api.services.classifier import Ok, TransportError
from focuslock.api.services.host import RemoteHost
from focuslock.api.services.scheduler import ScheduledTask
from focuslock.model.models import DomainClassification, VisualVerification
from focuslock.watchers.idle import IdleMonitor


class FakeClock:
    """テスト用の時計. ``advance`` で時間を進める."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimers:
    """イベントループを使わずにタイマーを記録し、手動で発火させる."""

    def __init__(self) -> None:
        self.later: list[tuple[float, object, ScheduledTask]] = []
        self.every: list[tuple[float, object, ScheduledTask]] = []

    def call_later(self, delay, callback):
        task = ScheduledTask(Mock())
        self.later.append((delay, callback, task))
        return task

    def call_every(self, interval, callback):
        task = ScheduledTask(Mock())
        self.every.append((interval, callback, task))
        return task

    def fire_pending(self) -> int:
        """キャンセルされていない call_later を全て実行する."""
        pending = [(cb, t) for _, cb, t in self.later if not t.cancelled]
        self.later.clear()
        for callback, task in pending:
            task.cancel()
            callback()
        return len(pending)

    def tick_every(self) -> int:
        active = [cb for _, cb, t in self.every if not t.cancelled]
        for callback in active:
            callback()
        return len(active)


class FakeGateway:
    """ClassificationGateway の代わり. 呼び出し回数を記録する."""

    def __init__(
        self,
        classifications: list[DomainClassification] | None = None,
        verification: VisualVerification | None = None,
    ) -> None:
        self.classify_result = Ok(classifications or [])
        self.verification = verification or VisualVerification(
            is_off_task=False,
            confidence=0.85,
            reasoning="coding",
            detected_content="Code editor",
            recommendation="ok",
        )
        self.classify_calls: list[tuple[list[str], str]] = []
        self.verify_calls: list[tuple[str, str, str, str | None]] = []

    def classify_domains(self, domains, active_url):
        self.classify_calls.append((list(domains), active_url))
        return self.classify_result

    def verify_or_fallback(self, screenshot, active_url, reason, declared_task=None):
        self.verify_calls.append((screenshot, active_url, reason, declared_task))
        return self.verification

    def is_available(self) -> bool:
        return not isinstance(self.classify_result, TransportError)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_timers():
    return FakeTimers()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def host(clock):
    """スクリーンショットは固定文字列を返すホスト"""
    return RemoteHost(
        screen_capture=lambda: "c2NyZWVu",
        idle=IdleMonitor(lambda: 0),
        clock=clock,
    )


def classification(domain: str, category: str, *, off_task: bool = True):
    return DomainClassification(
        domain=domain,
        is_off_task=off_task,
        category=category,
        confidence=0.9,
        reasoning="test",
    )
