"""Fusion Engine: domain tier + vision tier → 1つの (state, confidence).

1サイクルの流れ:
1. Category Rules と idle から基本判定
2. Activity Window のバックグラウンドドメインを (スロットリング付きで) 分類
3. 自動フラグ判定
4. ビジョン層は自動フラグなら毎回、それ以外は N サイクルに1回
5. 重み付きスコア (vision 0.6 / domain 0.4, 閾値 0.5)
"""

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from focuslock.api.services.classifier import (
    ROUTINE_CHECK_REASON,
    ClassificationGateway,
    Ok,
)
from focuslock.api.services.rules import (
    classify,
    decide_default,
    extract_domain,
    is_auto_flagged,
    is_internal_url,
    is_on_task_view,
)
from focuslock.config import FusionSettings
from focuslock.model.models import (
    AttentionSnapshot,
    DomainClassification,
    ScreenState,
    SessionContext,
    Snapshot,
    SnapshotContext,
    ViewInfo,
    VisualVerification,
)
from focuslock.watchers.logger import get_logger
from focuslock.watchers.network import ActivityWindow

logger = get_logger("fusion")


@dataclass
class FusionContext:
    """サイクル間で持ち越す状態. Fusion Engine だけが書き換える."""

    vision_check_counter: int = 0
    last_network_classify_time: float | None = None
    cached_classifications: list[DomainClassification] = field(default_factory=list)
    last_verification: VisualVerification | None = None
    generation: int = 0

    def reset(self) -> None:
        """設定変更時のリセット. generation は進めて実行中の結果を捨てさせる."""
        self.vision_check_counter = 0
        self.last_network_classify_time = None
        self.cached_classifications = []
        self.last_verification = None
        self.generation += 1


@dataclass(frozen=True)
class NetworkAnalysis:
    classifications: tuple[DomainClassification, ...] = ()
    patterns: tuple[str, ...] = ()
    off_task_domains: tuple[str, ...] = ()


def detect_suspicious_patterns(
    classifications: Sequence[DomainClassification], active_url: str
) -> list[str]:
    """off-task と分類されたバックグラウンドドメインから怪しいパターンを抽出する."""
    off_task = [c for c in classifications if c.is_off_task]
    if not off_task:
        return []

    patterns: list[str] = []
    if len(off_task) >= 3:  # noqa: PLR2004
        patterns.append(f"{len(off_task)} off-task domains active in background")

    social = [
        c.domain
        for c in off_task
        if c.category == "social" or "twitter" in c.domain or "facebook" in c.domain
    ]
    if social and is_on_task_view(active_url):
        site = extract_domain(active_url) or active_url
        patterns.append(f"Social media ({', '.join(social)}) detected while on {site}")

    video = [
        c.domain
        for c in off_task
        if c.category == "video" or "youtube" in c.domain or "twitch" in c.domain
    ]
    if video:
        patterns.append(f"Video streaming detected: {', '.join(video)}")

    shopping = [c.domain for c in off_task if c.category == "shopping"]
    if shopping:
        patterns.append(f"Shopping activity detected: {', '.join(shopping)}")

    return patterns


def analyze(
    classifications: Sequence[DomainClassification], active_url: str
) -> NetworkAnalysis:
    return NetworkAnalysis(
        classifications=tuple(classifications),
        patterns=tuple(detect_suspicious_patterns(classifications, active_url)),
        off_task_domains=tuple(c.domain for c in classifications if c.is_off_task),
    )


def domain_confidence(
    auto_flagged: bool,
    analysis: NetworkAnalysis,
    settings: FusionSettings | None = None,
) -> float:
    settings = settings or FusionSettings()
    if auto_flagged or analysis.off_task_domains:
        return 1.0
    if analysis.patterns:
        return settings.suspicious_domain_confidence
    return 0.0


def weighted_score(
    vision_confidence: float,
    domain_conf: float,
    settings: FusionSettings | None = None,
) -> float:
    settings = settings or FusionSettings()
    return (
        vision_confidence * settings.vision_weight
        + domain_conf * settings.domain_weight
    )


def suspicious_reason(analysis: NetworkAnalysis) -> str:
    """ビジョン層に渡す確認理由."""
    if analysis.patterns:
        return "; ".join(analysis.patterns)
    if analysis.off_task_domains:
        return f"Off-task domains detected: {', '.join(analysis.off_task_domains)}"
    return ROUTINE_CHECK_REASON


class FusionEngine:
    """1回の評価サイクルを実行して Snapshot を返す.

    ゲートウェイとスクリーンショットはブロッキング I/O なので
    ``asyncio.to_thread`` で実行する。await の後で generation が変わっていたら
    結果は破棄する。
    """

    def __init__(
        self,
        gateway: ClassificationGateway | None,
        activity: ActivityWindow,
        *,
        capture_screenshot: Callable[[], str | None],
        settings: FusionSettings | None = None,
        context: FusionContext | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.gateway = gateway
        self.activity = activity
        self.capture_screenshot = capture_screenshot
        self.settings = settings or FusionSettings()
        self.context = context or FusionContext()
        self._clock = clock

    async def _network_analysis(self, active_url: str) -> NetworkAnalysis:
        activity = self.activity.snapshot()
        if len(activity.domains) < self.settings.min_background_domains:
            return NetworkAnalysis()

        ctx = self.context
        now = self._clock()
        throttled = (
            ctx.last_network_classify_time is not None
            and now - ctx.last_network_classify_time
            < self.settings.network_classify_interval_sec
        )
        if throttled or self.gateway is None:
            return analyze(ctx.cached_classifications, active_url)

        active_domain = extract_domain(active_url)
        to_classify = [d for d in activity.domains if d != active_domain]
        if not to_classify:
            return NetworkAnalysis()

        generation = ctx.generation
        result = await asyncio.to_thread(
            self.gateway.classify_domains, to_classify, active_url
        )
        if ctx.generation != generation:
            return analyze(ctx.cached_classifications, active_url)

        ctx.last_network_classify_time = now
        if isinstance(result, Ok):
            ctx.cached_classifications = list(result.value)
            logger.info("classified %d background domains", len(result.value))
        else:
            logger.warning("domain classification failed, using cache: %s", result.detail)
        return analyze(ctx.cached_classifications, active_url)

    async def _verify(
        self, url: str, reason: str, session: SessionContext | None
    ) -> VisualVerification | None:
        if self.gateway is None:
            return None
        screenshot = await asyncio.to_thread(self.capture_screenshot)
        if not screenshot:
            logger.info("no screenshot, vision skipped")
            return None
        declared = session.work_task if session and session.declared else None
        return await asyncio.to_thread(
            self.gateway.verify_or_fallback, screenshot, url, reason, declared
        )

    async def run_cycle(
        self,
        view: ViewInfo | None,
        idle_ms: int,
        session: SessionContext | None = None,
        attention: AttentionSnapshot | None = None,
    ) -> Snapshot | None:
        """評価を1回実行する. 内部ページや破棄されたサイクルでは None."""
        if view is None or not view.url or is_internal_url(view.url):
            return None

        ctx = self.context
        settings = self.settings
        generation = ctx.generation
        url = view.url

        category = classify(url)
        base_state, base_confidence = decide_default(category, idle_ms)
        activity = self.activity.snapshot()

        analysis = await self._network_analysis(url)
        if ctx.generation != generation:
            logger.info("cycle discarded after network tier (generation changed)")
            return None

        auto_flagged = is_auto_flagged(url)
        ctx.vision_check_counter += 1
        should_run_vision = (
            auto_flagged or ctx.vision_check_counter % settings.vision_check_interval == 0
        )

        verification: VisualVerification | None = None
        if should_run_vision:
            verification = await self._verify(url, suspicious_reason(analysis), session)
            if ctx.generation != generation:
                logger.info("cycle discarded after vision tier (generation changed)")
                return None

        if verification is not None:
            ctx.last_verification = verification
            state, confidence = self._score_with_vision(auto_flagged, analysis, verification)
        else:
            state, confidence = self._score_domain_only(auto_flagged, analysis)
            if ctx.last_verification is not None:
                verification = ctx.last_verification.carried_forward()

        fresh_attention = None
        if (
            attention is not None
            and self._clock() - attention.timestamp < settings.attention_fresh_sec
        ):
            fresh_attention = attention

        snapshot = Snapshot(
            timestamp=self._clock(),
            state=state,
            confidence=confidence,
            context=SnapshotContext(
                active_url=url,
                active_title=view.title,
                category=category,
                idle_ms=idle_ms,
                session_task=session.work_task if session else None,
                background_domains=activity.domains,
                request_count=activity.total_count,
                suspicious_patterns=analysis.patterns,
                off_task_domains=analysis.off_task_domains,
                visual_verification=verification,
                attention_state=fresh_attention,
                view_id=view.view_id,
            ),
        )
        logger.info(
            "snapshot %s (%.2f) base=%s (%.2f) url=%s auto=%s vision=%s",
            state,
            confidence,
            base_state,
            base_confidence,
            url,
            auto_flagged,
            should_run_vision,
        )
        return snapshot

    def _score_with_vision(
        self,
        auto_flagged: bool,
        analysis: NetworkAnalysis,
        verification: VisualVerification,
    ) -> tuple[ScreenState, float]:
        settings = self.settings
        if auto_flagged:
            return "off_task", settings.auto_flag_confidence

        vision_conf = verification.confidence if verification.is_off_task else 0.0
        weighted = weighted_score(
            vision_conf, domain_confidence(auto_flagged, analysis, settings), settings
        )
        if weighted >= settings.off_task_threshold:
            return "off_task", weighted
        return "on_task", 1.0 - weighted

    def _score_domain_only(
        self, auto_flagged: bool, analysis: NetworkAnalysis
    ) -> tuple[ScreenState, float]:
        settings = self.settings
        if auto_flagged:
            return "off_task", settings.auto_flag_confidence
        if analysis.off_task_domains:
            return "off_task", settings.known_off_task_confidence
        if analysis.patterns:
            return "on_task", settings.suspicious_only_confidence
        return "on_task", 1.0
