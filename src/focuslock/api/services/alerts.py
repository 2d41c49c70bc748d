"""Alert state machine: IDLE → LOCKED(challenge) → IDLE.

off-task のロックと眠気アラームの両方をここで扱う。AlarmState はこのクラスだけが持つ。
同時に発生した場合は眠気が優先され、眠気のロック中は off-task の判定を保留する。
"""

import random
import time
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from focuslock.api.services.puzzles import create_drowsiness_challenge, generate_puzzle
from focuslock.api.services.rules import ALERT_CATEGORIES
from focuslock.api.services.scheduler import ScheduledTask
from focuslock.model.models import (
    ALERT_COMPLETED,
    ALERT_TRIGGERED,
    CLOSE_OFF_TASK_TAB,
    RISK_STATES,
    Alarm,
    AlarmState,
    AttentionSnapshot,
    Challenge,
    ControlMessage,
    Snapshot,
)
from focuslock.ui.notifications import (
    NotificationService,
    notify_drowsiness,
    notify_lock,
    notify_unlock,
)
from focuslock.watchers.logger import get_logger

logger = get_logger("alerts")

WRONG_ANSWER_MESSAGE = "WRONG! Try again and WAKE UP!"
NOT_AWAKE_MESSAGE = "Open your eyes and face the camera before answering."
DEFAULT_OFF_TASK_REASON = "Off-task behavior detected"
ALARM_LIBRARY_SIZE = 40
NODDING_BATCH_SIZE = 4
SLEEPING_BATCH_SIZE = 5

BASE_NODDING_MESSAGES = (
    "Time to stretch your neck",
    "Give your eyes a quick reset",
    "Take a deep breath and refocus",
    "Roll your shoulders back",
    "Straighten posture and re-engage",
    "Blink hard three times",
    "Sip some water now",
    "Shift your gaze to the horizon",
    "Stand up for a brief walk",
    "Adjust your seat position",
)

BASE_SLEEPING_MESSAGES = (
    "Wake up immediately",
    "Stand up and move now",
    "Splash water on your face",
    "Take a 10-minute break",
    "Call a friend for a reset",
    "Do a quick physical check-in",
    "Walk around the room",
    "Step outside for fresh air",
    "Play energizing music",
    "Review your task list aloud",
)


class AlertPhase(str, Enum):
    IDLE = "idle"
    LOCKED = "locked"


class AlertKind(str, Enum):
    OFF_TASK = "off_task"
    DROWSINESS = "drowsiness"


class ChallengeStage(str, Enum):
    CLICKS = "clicks"
    PUZZLE = "puzzle"


class ControlSink(Protocol):
    def send(self, message: ControlMessage) -> None: ...


CallLater = Callable[[float, Callable[[], None]], ScheduledTask]


class AlarmLibrary:
    """nodding / sleeping それぞれ40件のアラームを順番に払い出す."""

    def __init__(self, size: int = ALARM_LIBRARY_SIZE) -> None:
        self._alarms: dict[str, tuple[Alarm, ...]] = {
            "noddingOff": tuple(
                Alarm(
                    id=f"nodding-{i + 1}",
                    message=(
                        f"Nodding Alarm {i + 1:02d}: "
                        f"{BASE_NODDING_MESSAGES[i % len(BASE_NODDING_MESSAGES)]} "
                        f"({i + 1})"
                    ),
                    level="warning",
                )
                for i in range(size)
            ),
            "sleeping": tuple(
                Alarm(
                    id=f"sleeping-{i + 1}",
                    message=(
                        f"Sleep Alarm {i + 1:02d}: "
                        f"{BASE_SLEEPING_MESSAGES[i % len(BASE_SLEEPING_MESSAGES)]} "
                        f"({i + 1})"
                    ),
                    level="critical",
                )
                for i in range(size)
            ),
        }
        self._cursor = {"noddingOff": 0, "sleeping": 0}

    def alarms(self, state: str) -> tuple[Alarm, ...]:
        return self._alarms[state]

    def next_batch(self, state: str, size: int) -> tuple[Alarm, ...]:
        alarms = self._alarms[state]
        start = self._cursor[state]
        batch = tuple(alarms[(start + i) % len(alarms)] for i in range(size))
        self._cursor[state] = (start + size) % len(alarms)
        return batch


def off_task_reason(snapshot: Snapshot) -> str:
    verification = snapshot.context.visual_verification
    if verification is not None and verification.verified_content():
        return verification.verified_content()
    if snapshot.context.suspicious_patterns:
        return ", ".join(snapshot.context.suspicious_patterns)
    return DEFAULT_OFF_TASK_REASON


class AlertStateMachine:
    """ロックと二段階チャレンジ (クリック → 問題) を管理する.

    状態はこのクラスのインスタンスだけが変更する。タイマーのコールバックも
    呼び出し側の dispatch loop 上で実行されることを前提とする。
    """

    def __init__(
        self,
        host: ControlSink,
        *,
        call_later: CallLater,
        call_every: CallLater,
        aggressiveness_threshold: float = 0.4,
        required_clicks: int = 10,
        debounce_sec: float = 1.0,
        reminder_interval_sec: float = 15.0,
        notifier: NotificationService | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.host = host
        self.aggressiveness_threshold = aggressiveness_threshold
        self.required_clicks = required_clicks
        self.debounce_sec = debounce_sec
        self.reminder_interval_sec = reminder_interval_sec
        self.notifier = notifier
        self._call_later = call_later
        self._call_every = call_every
        self._rng = rng or random.Random()
        self._clock = clock
        self.library = AlarmLibrary()

        self.phase = AlertPhase.IDLE
        self.kind: AlertKind | None = None
        self.stage: ChallengeStage | None = None
        self.clicks = 0
        self.error: str | None = None
        self.message: str | None = None
        self.locked_view_id: int | None = None
        self.locked_at: float | None = None

        self._alarms: tuple[Alarm, ...] = ()
        self._require_ack = False
        self._challenge: Challenge | None = None
        self._last_batch: tuple[Alarm, ...] = ()
        self._last_alarm_state = "awake"
        self._latest_attention = "awake"

        self._pending_alert: ScheduledTask | None = None
        self._timers: list[ScheduledTask] = []

    # ------------------------------------------------------------------
    # Queries

    @property
    def alarm_state(self) -> AlarmState:
        return AlarmState(self._alarms, self._require_ack, self._challenge)

    @property
    def challenge(self) -> Challenge | None:
        return self._challenge

    @property
    def locked(self) -> bool:
        return self.phase is AlertPhase.LOCKED

    def status(self) -> dict[str, Any]:
        """UI 向けの状態. 正解は含めない."""
        challenge = self._challenge
        return {
            "phase": self.phase.value,
            "kind": self.kind.value if self.kind else None,
            "stage": self.stage.value if self.stage else None,
            "clicks": self.clicks,
            "required_clicks": self.required_clicks,
            "message": self.message,
            "error": self.error,
            "prompt": (
                challenge.prompt
                if challenge and self.stage is ChallengeStage.PUZZLE
                else None
            ),
            "challenge_type": challenge.type if challenge else None,
            "alarms": [
                {"id": a.id, "message": a.message, "level": a.level}
                for a in self._alarms
            ],
            "require_ack": self._require_ack,
            "attention_state": self._latest_attention,
        }

    def should_alert(self, snapshot: Snapshot) -> bool:
        """off_task かつ確信度が閾値以上で、カテゴリか検証済みの推奨が該当する."""
        if snapshot.state != "off_task":
            return False
        if snapshot.confidence < self.aggressiveness_threshold:
            return False
        if snapshot.context.category in ALERT_CATEGORIES:
            return True
        verification = snapshot.context.visual_verification
        return (
            verification is not None
            and verification.verified
            and verification.recommendation in ("focus", "warning")
        )

    # ------------------------------------------------------------------
    # Off-task path

    def on_snapshot(self, snapshot: Snapshot) -> bool:
        """スナップショットを受け取り、条件を満たせば遅延付きでロックを予約する.

        予約中に新しいスナップショットが条件を満たした場合は、最新の内容で
        予約し直す。
        """
        if self.locked or not self.should_alert(snapshot):
            return False
        if self._pending_alert is not None:
            self._pending_alert.cancel()

        def fire() -> None:
            self._pending_alert = None
            self.trigger(
                AlertKind.OFF_TASK,
                view_id=snapshot.context.view_id,
                message=off_task_reason(snapshot),
            )

        self._pending_alert = self._call_later(self.debounce_sec, fire)
        logger.info(
            "off-task alert scheduled: %s (%.2f)",
            snapshot.context.active_url,
            snapshot.confidence,
        )
        return True

    def trigger(
        self,
        kind: AlertKind,
        *,
        view_id: int | None = None,
        message: str = DEFAULT_OFF_TASK_REASON,
        challenge: Challenge | None = None,
        alarms: tuple[Alarm, ...] | None = None,
    ) -> bool:
        """IDLE → LOCKED. ロック中の重複要求は何もしない."""
        if self.locked:
            return False

        self.phase = AlertPhase.LOCKED
        self.kind = kind
        self.message = message
        self.locked_view_id = view_id
        self.locked_at = self._clock()
        self._set_challenge(challenge or generate_puzzle(self._rng))
        self._alarms = alarms or (Alarm("off-task", message, "critical"),)
        self._require_ack = True

        self.host.send(
            ControlMessage(
                ALERT_TRIGGERED,
                view_id,
                {"kind": kind.value, "message": message},
            )
        )
        self._timers.append(
            self._call_every(self.reminder_interval_sec, self._remind)
        )
        if self.notifier is not None:
            if kind is AlertKind.DROWSINESS:
                notify_drowsiness(self.notifier, message)
            else:
                notify_lock(self.notifier, message)
        logger.info("locked (%s): %s", kind.value, message)
        return True

    def _set_challenge(self, challenge: Challenge) -> None:
        self._challenge = challenge
        self.stage = (
            ChallengeStage.CLICKS if self.required_clicks > 0 else ChallengeStage.PUZZLE
        )
        self.clicks = 0
        self.error = None

    def _remind(self) -> None:
        if self.locked and self.notifier is not None:
            notify_lock(self.notifier, self.message or DEFAULT_OFF_TASK_REASON)

    def acknowledge(self) -> int:
        """確認クリックを1回数える. 規定回数に達したら問題を表示する."""
        if not self.locked or self.stage is not ChallengeStage.CLICKS:
            return self.clicks
        self.clicks += 1
        if self.clicks >= self.required_clicks:
            self.stage = ChallengeStage.PUZZLE
        return self.clicks

    def submit_answer(self, answer: str) -> bool:
        """問題の回答. 正解ならロック解除して True. 問題が無ければ何もしない."""
        if not self.locked or self.stage is not ChallengeStage.PUZZLE:
            return False
        if self._challenge is None:
            return False
        if self.kind is AlertKind.DROWSINESS and self._latest_attention != "awake":
            self.error = NOT_AWAKE_MESSAGE
            return False
        if not self._challenge.check(answer):
            self.error = WRONG_ANSWER_MESSAGE
            return False
        self._unlock()
        return True

    def _unlock(self) -> None:
        kind = self.kind
        view_id = self.locked_view_id
        self.cancel_timers()

        self.phase = AlertPhase.IDLE
        self.kind = None
        self.stage = None
        self.clicks = 0
        self.error = None
        self.message = None
        self.locked_view_id = None
        self.locked_at = None
        self._alarms = ()
        self._require_ack = False
        self._challenge = None
        self._last_alarm_state = "awake"

        if kind is AlertKind.OFF_TASK:
            self.host.send(ControlMessage(CLOSE_OFF_TASK_TAB, view_id))
        else:
            self.host.send(ControlMessage(ALERT_COMPLETED, view_id))
        if self.notifier is not None:
            notify_unlock(self.notifier)
        logger.info("unlocked (%s)", kind.value if kind else "unknown")

    def cancel_timers(self) -> None:
        if self._pending_alert is not None:
            self._pending_alert.cancel()
            self._pending_alert = None
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()

    # ------------------------------------------------------------------
    # Drowsiness path

    def observe_attention(self, snapshot: AttentionSnapshot) -> None:
        """覚醒状態のスナップショットからアラームの発行 / 再発行を決める."""
        state = snapshot.state
        self._latest_attention = state

        if state not in RISK_STATES:
            if not self._require_ack:
                self._alarms = ()
                self._challenge = None
                self._last_alarm_state = "awake"
            return

        entering = not self._require_ack or self._last_alarm_state != state
        if entering:
            self._raise_drowsiness(state)
        elif not self._alarms:
            # 外部から消されたが未解決: 同じバッチを出し直す (チャレンジはそのまま)
            self._alarms = self._last_batch
            logger.info("re-issued %s alarm batch", state)

    def trigger_debug_alarm(self) -> None:
        self._raise_drowsiness("sleeping")

    def _raise_drowsiness(self, state: str) -> None:
        sleeping = state == "sleeping"
        batch = self.library.next_batch(
            state, SLEEPING_BATCH_SIZE if sleeping else NODDING_BATCH_SIZE
        )
        previous = self._last_alarm_state
        if sleeping:
            challenge = create_drowsiness_challenge(self._rng, ("math", "trivia"))
        elif (
            self.kind is AlertKind.DROWSINESS
            and previous == "sleeping"
            and self._challenge is not None
        ):
            # sleeping から戻った場合は難しい方のチャレンジを残す
            challenge = self._challenge
        else:
            challenge = create_drowsiness_challenge(self._rng)

        self._last_alarm_state = state
        self._last_batch = batch
        message = batch[0].message

        if self._pending_alert is not None:
            self._pending_alert.cancel()
            self._pending_alert = None

        if not self.locked:
            self.trigger(
                AlertKind.DROWSINESS, message=message, challenge=challenge, alarms=batch
            )
            return

        # ロック中: 眠気を優先してチャレンジを差し替える
        converted = self.kind is AlertKind.OFF_TASK
        self.kind = AlertKind.DROWSINESS
        self.message = message
        self._alarms = batch
        self._require_ack = True
        if challenge is not self._challenge:
            self._set_challenge(challenge)
        if converted:
            self.host.send(
                ControlMessage(
                    ALERT_TRIGGERED,
                    self.locked_view_id,
                    {"kind": AlertKind.DROWSINESS.value, "message": message},
                )
            )
        if self.notifier is not None:
            notify_drowsiness(self.notifier, message)
        logger.info("drowsiness alarm (%s) while locked", state)

    def dismiss_alarms(self) -> None:
        """アラーム一覧だけを消す. ロックとチャレンジは残る."""
        self._alarms = ()
