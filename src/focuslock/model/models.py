"""Data models shared by the fusion engine, alert state machine and recorder."""

__all__ = [
    "ALERT_COMPLETED",
    "ALERT_TRIGGERED",
    "CLOSE_OFF_TASK_TAB",
    "RISK_STATES",
    "Alarm",
    "AlarmState",
    "AlertRecord",
    "AnalyticsEntry",
    "AttentionSnapshot",
    "AttentionState",
    "CalibrationBaseline",
    "Challenge",
    "ControlMessage",
    "DomainClassification",
    "ScreenState",
    "SessionContext",
    "Snapshot",
    "SnapshotContext",
    "ViewInfo",
    "VisualVerification",
]

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Literal

ScreenState = Literal["on_task", "off_task"]
AttentionState = Literal["awake", "noddingOff", "sleeping"]
Recommendation = Literal["focus", "warning", "ok"]
AlarmLevel = Literal["warning", "critical"]

RISK_STATES: tuple[str, ...] = ("noddingOff", "sleeping")

# Alert control messages (host 向け)
ALERT_TRIGGERED = "ALERT_TRIGGERED"
ALERT_COMPLETED = "ALERT_COMPLETED"
CLOSE_OFF_TASK_TAB = "CLOSE_OFF_TASK_TAB"


@dataclass(frozen=True)
class DomainClassification:
    """ネットワーク層の分類結果（バックグラウンドドメイン1件分）."""

    domain: str
    is_off_task: bool
    category: str
    confidence: float
    reasoning: str


@dataclass(frozen=True)
class VisualVerification:
    """ビジョン層の判定結果.

    ``verified`` はこのサイクルで実際に計算された結果かどうかを示す。
    フォールバックや前回からの持ち越しは ``False``。
    """

    is_off_task: bool
    confidence: float
    reasoning: str
    detected_content: str
    recommendation: Recommendation = "ok"
    verified: bool = True

    def carried_forward(self) -> "VisualVerification":
        """前回サイクルの結果を未検証として持ち越す."""
        return replace(self, verified=False)

    def verified_content(self) -> str | None:
        """このサイクルで検証された内容だけを返す. 持ち越し分は None."""
        if self.verified and self.detected_content:
            return self.detected_content
        return None


@dataclass(frozen=True)
class SessionContext:
    """ユーザーが宣言した作業内容."""

    work_task: str
    declared: bool = True
    timestamp: float = 0.0


@dataclass(frozen=True)
class CalibrationBaseline:
    """Per-session neutral pose baseline."""

    pitch: float
    ear: float
    tilt: float
    face_width: float


@dataclass(frozen=True)
class AttentionSnapshot:
    """Evidence Aggregator が一定間隔で出力する覚醒状態."""

    timestamp: float
    state: AttentionState
    confidence: float
    metrics: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class SnapshotContext:
    """Snapshot に付随する判定根拠."""

    active_url: str
    active_title: str
    category: str
    idle_ms: int
    session_task: str | None = None
    background_domains: tuple[str, ...] = ()
    request_count: int = 0
    suspicious_patterns: tuple[str, ...] = ()
    off_task_domains: tuple[str, ...] = ()
    visual_verification: VisualVerification | None = None
    attention_state: AttentionSnapshot | None = None
    view_id: int | None = None


@dataclass(frozen=True)
class Snapshot:
    """1回の fusion cycle の出力. 発行後は変更されない."""

    timestamp: float
    state: ScreenState
    confidence: float
    context: SnapshotContext

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Alarm:
    id: str
    message: str
    level: AlarmLevel


@dataclass(frozen=True)
class Challenge:
    """解除用の問題. 回答は前後の空白と大文字小文字を無視して比較する."""

    type: str
    prompt: str
    expected_answer: str

    def check(self, answer: str) -> bool:
        return answer.strip().casefold() == self.expected_answer.strip().casefold()


@dataclass(frozen=True)
class AlarmState:
    """Alert State Machine だけが所有するアラーム状態."""

    active_alarms: tuple[Alarm, ...] = ()
    require_ack: bool = False
    challenge: Challenge | None = None

    def __post_init__(self) -> None:
        if not self.require_ack and self.active_alarms:
            msg = "active alarms must require acknowledgement"
            raise ValueError(msg)


@dataclass(frozen=True)
class AnalyticsEntry:
    """Recorder が追記する閲覧履歴1件."""

    timestamp: float
    url: str
    domain: str
    title: str
    state: ScreenState
    confidence: float
    duration_ms: int
    category: str | None = None
    detected_content: str | None = None
    session_task: str | None = None


@dataclass(frozen=True)
class AlertRecord:
    timestamp: float
    url: str
    reason: str


@dataclass(frozen=True)
class ViewInfo:
    """ホスト側のビュー（ブラウザタブ）情報."""

    view_id: int
    url: str
    title: str = ""
    last_active: float = 0.0


@dataclass(frozen=True)
class ControlMessage:
    """Host に送る制御メッセージ."""

    type: str
    view_id: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)
