"""Inbound messages consumed by the fusion and alert dispatch loops."""

__all__ = [
    "AcknowledgeClick",
    "AttentionReceived",
    "DebugAlarm",
    "DismissAlarms",
    "EvaluateRequest",
    "SnapshotReady",
    "SubmitAnswer",
    "TimerFired",
]

from collections.abc import Callable
from dataclasses import dataclass

from focuslock.model.models import AttentionSnapshot, Snapshot


@dataclass(frozen=True)
class EvaluateRequest:
    """fusion cycle の実行要求 (poll / navigation / activation / manual)."""

    reason: str = "poll"


@dataclass(frozen=True)
class SnapshotReady:
    snapshot: Snapshot


@dataclass(frozen=True)
class AttentionReceived:
    snapshot: AttentionSnapshot


@dataclass(frozen=True)
class AcknowledgeClick:
    pass


@dataclass(frozen=True)
class SubmitAnswer:
    answer: str


@dataclass(frozen=True)
class DismissAlarms:
    pass


@dataclass(frozen=True)
class DebugAlarm:
    pass


@dataclass(frozen=True)
class TimerFired:
    """タイマーのコールバックを actor のループ内で実行するためのメッセージ."""

    callback: Callable[[], None]
