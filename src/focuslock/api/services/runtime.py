"""Runtime wiring: actors, timers, store and the disable/enable protocol."""

import asyncio
import random
import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any
from urllib.parse import urlparse

from focuslock.api.services.alerts import AlertStateMachine
from focuslock.api.services.classifier import (
    ClassificationGateway,
    create_classification_gateway,
)
from focuslock.api.services.fusion import FusionEngine
from focuslock.api.services.host import RemoteHost
from focuslock.api.services.puzzles import DisableChallenge
from focuslock.api.services.recorder import Recorder
from focuslock.api.services.scheduler import Actor, ScheduledTask, Timers
from focuslock.api.services.store import (
    ATTENTION_SETTINGS,
    EXTENSION_DISABLED,
    SESSION_CONTEXT,
    KeyValueStore,
)
from focuslock.config import AttentionSettings, Settings, load_settings
from focuslock.model.messages import (
    AcknowledgeClick,
    AttentionReceived,
    DebugAlarm,
    DismissAlarms,
    EvaluateRequest,
    SnapshotReady,
    SubmitAnswer,
)
from focuslock.model.models import AttentionSnapshot, SessionContext, Snapshot
from focuslock.ui.notifications import (
    NotificationConfig,
    NotificationService,
    notify_disabled,
)
from focuslock.watchers.logger import get_logger
from focuslock.watchers.network import ActivityWindow
from focuslock.watchers.screen_capture import ScreenCapture

logger = get_logger("runtime")

LOG_BUFFER_SIZE = 100


@dataclass
class Runtime:
    """プロセス内の全コンポーネント. 状態の書き換えは各 actor のループ内で行う."""

    settings: Settings
    store: KeyValueStore
    activity: ActivityWindow
    host: RemoteHost
    engine: FusionEngine
    alerts: AlertStateMachine
    recorder: Recorder
    disable_challenge: DisableChallenge
    notifier: NotificationService
    timers: Timers
    fusion_actor: Actor
    alert_actor: Actor
    gateway: ClassificationGateway | None = None
    clock: Callable[[], float] = time.time
    logs: deque[str] = field(default_factory=lambda: deque(maxlen=LOG_BUFFER_SIZE))
    current_snapshot: Snapshot | None = None
    latest_attention: AttentionSnapshot | None = None
    cycles: int = 0
    _poll: ScheduledTask | None = field(default=None, init=False)
    _evaluation_queued: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        self.fusion_actor.register(EvaluateRequest, self._on_evaluate)
        self.alert_actor.register(SnapshotReady, self._on_snapshot)
        self.alert_actor.register(AttentionReceived, self._on_attention)
        self.alert_actor.register(AcknowledgeClick, lambda _: self.alerts.acknowledge())
        self.alert_actor.register(
            SubmitAnswer, lambda m: self.alerts.submit_answer(m.answer)
        )
        self.alert_actor.register(DismissAlarms, lambda _: self.alerts.dismiss_alarms())
        self.alert_actor.register(DebugAlarm, lambda _: self.alerts.trigger_debug_alarm())

    # ------------------------------------------------------------------
    # lifecycle

    async def start(self) -> None:
        self.fusion_actor.start()
        self.alert_actor.start()
        if not self.disabled:
            self._start_poll()
        logger.info("runtime started (disabled=%s)", self.disabled)

    async def stop(self) -> None:
        self._stop_poll()
        self.alerts.cancel_timers()
        self.timers.cancel_all()
        await self.fusion_actor.stop()
        await self.alert_actor.stop()
        logger.info("runtime stopped")

    def _start_poll(self) -> None:
        if self._poll is None or self._poll.cancelled:
            self._poll = self.timers.call_every(
                self.settings.fusion.poll_interval_sec,
                lambda: self.request_evaluation("poll"),
            )

    def _stop_poll(self) -> None:
        if self._poll is not None:
            self._poll.cancel()
            self._poll = None

    # ------------------------------------------------------------------
    # fusion

    def request_evaluation(self, reason: str = "poll") -> bool:
        """評価サイクルを要求する. 既にキューにある場合はまとめる."""
        if self.disabled or self._evaluation_queued:
            return False
        self._evaluation_queued = True
        self.fusion_actor.post(EvaluateRequest(reason))
        return True

    async def _on_evaluate(self, message: EvaluateRequest) -> Snapshot | None:
        self._evaluation_queued = False
        if self.disabled:
            return None
        snapshot = await self.engine.run_cycle(
            self.host.active_view(),
            self.host.idle_ms(),
            self.session_context(),
            self.latest_attention,
        )
        if snapshot is None:
            return None
        self.cycles += 1
        self.current_snapshot = snapshot
        # ストア書き込みはイベントループ外で行う
        await asyncio.to_thread(self.recorder.on_snapshot, snapshot)
        self.alert_actor.post(SnapshotReady(snapshot))
        logger.info("cycle %d done (%s)", self.cycles, message.reason)
        return snapshot

    # ------------------------------------------------------------------
    # alerts

    def _on_snapshot(self, message: SnapshotReady) -> bool:
        return self.alerts.on_snapshot(message.snapshot)

    def _on_attention(self, message: AttentionReceived) -> None:
        self.alerts.observe_attention(message.snapshot)

    def receive_attention(self, snapshot: AttentionSnapshot) -> None:
        self.latest_attention = snapshot
        self.alert_actor.post(AttentionReceived(snapshot))

    # ------------------------------------------------------------------
    # session / settings

    def session_context(self) -> SessionContext | None:
        stored = self.store.get(SESSION_CONTEXT)
        if not stored:
            return None
        return SessionContext(
            work_task=stored["work_task"],
            declared=stored.get("declared", True),
            timestamp=stored.get("timestamp", 0.0),
        )

    def set_session(self, work_task: str) -> SessionContext | None:
        """作業内容を宣言する. 空文字はクリア."""
        task = work_task.strip()
        if not task:
            self.store.remove(SESSION_CONTEXT)
            logger.info("session cleared")
            return None
        session = SessionContext(task, True, self.clock())
        self.store.set(SESSION_CONTEXT, asdict(session))
        logger.info("session declared: %s", task)
        return session

    def attention_settings(self) -> AttentionSettings:
        return AttentionSettings.from_dict(self.store.get(ATTENTION_SETTINGS))

    def update_attention_settings(self, stored: dict[str, Any]) -> AttentionSettings:
        settings = AttentionSettings.from_dict(stored)
        self.store.set(ATTENTION_SETTINGS, settings.to_dict())
        # 明示的な設定変更のときだけスロットリング状態をリセットする
        self.engine.context.reset()
        logger.info("attention settings updated")
        return settings

    # ------------------------------------------------------------------
    # disable / enable

    @property
    def disabled(self) -> bool:
        return bool(self.store.get(EXTENSION_DISABLED, False))

    def disable(self) -> None:
        self.store.set(EXTENSION_DISABLED, True)
        self.engine.context.generation += 1
        self._stop_poll()
        self._evaluation_queued = False
        notify_disabled(self.notifier)
        logger.info("monitoring disabled")

    def enable(self) -> None:
        self.store.set(EXTENSION_DISABLED, False)
        self.disable_challenge.cancel()
        self._start_poll()
        logger.info("monitoring enabled")

    def status(self) -> dict[str, Any]:
        view = self.host.active_view()
        session = self.session_context()
        return {
            "disabled": self.disabled,
            "cycles": self.cycles,
            "alert": self.alerts.status(),
            "active_view": asdict(view) if view else None,
            "idle_ms": self.host.idle_ms(),
            "vision_check_counter": self.engine.context.vision_check_counter,
            "cached_classifications": len(self.engine.context.cached_classifications),
            "gateway_configured": self.gateway is not None,
            "session": asdict(session) if session else None,
        }


def _own_origins(api_url: str) -> tuple[str, ...]:
    parsed = urlparse(api_url)
    if not parsed.netloc:
        return ()
    origins = {parsed.netloc}
    if parsed.hostname == "localhost":
        origins.add(parsed.netloc.replace("localhost", "127.0.0.1"))
    return tuple(sorted(origins))


def build_runtime(
    settings: Settings | None = None,
    *,
    gateway: ClassificationGateway | None = None,
    host: RemoteHost | None = None,
    store: KeyValueStore | None = None,
    notifier: NotificationService | None = None,
    clock: Callable[[], float] = time.time,
    rng: random.Random | None = None,
) -> Runtime:
    """設定から Runtime を組み立てる. テストでは各依存を差し替える."""
    settings = settings or load_settings()
    if gateway is None and settings.llm_url and settings.llm_model:
        gateway = create_classification_gateway(settings)
    if gateway is None:
        logger.warning("LLM_URL / LLM_MODEL not set: classification disabled")

    rng = rng or random.Random()
    store = store or KeyValueStore(settings.store_path)
    host = host or RemoteHost(screen_capture=ScreenCapture().capture_as_base64)
    notifier = notifier or NotificationService(NotificationConfig())
    activity = ActivityWindow(own_origins=_own_origins(settings.api_url), clock=clock)
    timers = Timers()
    fusion_actor = Actor("fusion")
    alert_actor = Actor("alerts")

    engine = FusionEngine(
        gateway,
        activity,
        capture_screenshot=host.capture_screenshot,
        settings=settings.fusion,
        clock=clock,
    )
    alerts = AlertStateMachine(
        host,
        call_later=lambda d, cb: timers.call_later(d, alert_actor.timer_callback(cb)),
        call_every=lambda d, cb: timers.call_every(d, alert_actor.timer_callback(cb)),
        aggressiveness_threshold=settings.aggressiveness_threshold,
        required_clicks=settings.required_clicks,
        notifier=notifier,
        rng=rng,
        clock=clock,
    )
    return Runtime(
        settings=settings,
        store=store,
        activity=activity,
        host=host,
        engine=engine,
        alerts=alerts,
        recorder=Recorder(store, clock),
        disable_challenge=DisableChallenge(settings.disable_puzzle_count, rng),
        notifier=notifier,
        timers=timers,
        fusion_actor=fusion_actor,
        alert_actor=alert_actor,
        gateway=gateway,
        clock=clock,
    )
