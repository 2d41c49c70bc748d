"""Drowsiness estimation from per-frame face metrics.

フレームごとの EAR / ピッチ / MAR / 視線 / 顔幅 から
{sleeping, noddingOff, awake} の証拠スコアを加算し、正規化して状態を決める。
"""

import statistics
from collections import deque
from dataclasses import dataclass, field

import numpy as np

from focuslock.config import AttentionSettings, AttentionThresholds
from focuslock.model.models import AttentionSnapshot, AttentionState, CalibrationBaseline
from focuslock.watchers.logger import get_logger

logger = get_logger("attention")

FPS = 30
CALIBRATION_DURATION_SEC = 4.0
MIN_CALIBRATION_FRAMES = 90
MIN_CLOSED_FRAMES = 15
EMIT_INTERVAL_SEC = 0.3
EAR_BASELINE_FACTOR = 0.75
HEAD_TILT_THRESHOLD = 30.0
HEAD_PITCH_THRESHOLD = 10.0
HEAD_PITCH_BACK_THRESHOLD = 12.0
NOD_PEAK_MARGIN = 4.0
BACK_TILT_SLEEP_SEC = 4.0
LOOK_AWAY_SEC = 5.0

STATE_ORDER: tuple[AttentionState, ...] = ("awake", "noddingOff", "sleeping")


@dataclass(frozen=True)
class FaceMetrics:
    """1フレーム分の顔の計測値.

    pitch / tilt は度。pitch は前傾が正。gaze は -1 (左) 〜 1 (右)。
    face_width は画像幅に対する比。
    """

    ear: float
    pitch: float
    tilt: float
    mar: float
    gaze: float
    face_width: float


@dataclass(frozen=True)
class NodReading:
    avg_pitch: float = 0.0
    forward_peak: float = 0.0
    backward_peak: float = 0.0
    forward: bool = False
    backward: bool = False


class HeadNodDetector:
    """ベースライン補正済みピッチの直近1秒から前傾 / 後傾を検出する."""

    def __init__(
        self,
        forward_threshold: float = HEAD_PITCH_THRESHOLD,
        back_threshold: float = HEAD_PITCH_BACK_THRESHOLD,
        window: int = FPS,
    ) -> None:
        self.forward_threshold = forward_threshold
        self.back_threshold = back_threshold
        self._samples: deque[float] = deque(maxlen=window)

    def update(self, pitch: float) -> NodReading:
        self._samples.append(pitch)
        values = np.asarray(self._samples, dtype=np.float64)
        avg = float(values.mean())
        return NodReading(
            avg_pitch=avg,
            forward_peak=max(0.0, float(values.max())),
            backward_peak=max(0.0, float(-values.min())),
            forward=avg > self.forward_threshold,
            backward=avg < -self.back_threshold,
        )

    def reset(self) -> None:
        self._samples.clear()


@dataclass(frozen=True)
class YawnReading:
    yawning: bool = False
    recent_yawns: int = 0


class YawnDetector:
    """MAR が一定時間閾値を超えたらあくびとみなし、直近60秒の回数を数える."""

    def __init__(
        self,
        mar_threshold: float = 0.6,
        min_frames: int = 15,
        rate_window_sec: float = 60.0,
    ) -> None:
        self.mar_threshold = mar_threshold
        self.min_frames = min_frames
        self.rate_window_sec = rate_window_sec
        self._open_frames = 0
        self._yawn_times: deque[float] = deque()

    def update(self, mar: float, now: float) -> YawnReading:
        if mar > self.mar_threshold:
            self._open_frames += 1
            if self._open_frames == self.min_frames:
                self._yawn_times.append(now)
        else:
            self._open_frames = 0
        while self._yawn_times and now - self._yawn_times[0] > self.rate_window_sec:
            self._yawn_times.popleft()
        return YawnReading(
            yawning=self._open_frames >= self.min_frames,
            recent_yawns=len(self._yawn_times),
        )

    def reset(self) -> None:
        self._open_frames = 0
        self._yawn_times.clear()


def is_drowsy_yawn_rate(recent_yawns: int) -> bool:
    return recent_yawns >= 3


class GazeTracker:
    """視線が外れている継続時間(秒)を返す."""

    def __init__(self, away_threshold: float = 0.35) -> None:
        self.away_threshold = away_threshold
        self._away_since: float | None = None

    def update(self, gaze: float, now: float) -> float:
        if abs(gaze) <= self.away_threshold:
            self._away_since = None
            return 0.0
        if self._away_since is None:
            self._away_since = now
        return now - self._away_since

    def reset(self) -> None:
        self._away_since = None


class FaceDistanceTracker:
    """顔幅がベースラインから大きく外れた状態が続いているか."""

    def __init__(
        self,
        near_ratio: float = 1.35,
        far_ratio: float = 0.7,
        min_duration_sec: float = 3.0,
    ) -> None:
        self.near_ratio = near_ratio
        self.far_ratio = far_ratio
        self.min_duration_sec = min_duration_sec
        self._abnormal_since: float | None = None

    def update(self, face_width: float, baseline_width: float, now: float) -> bool:
        if baseline_width <= 0:
            return False
        ratio = face_width / baseline_width
        if self.far_ratio <= ratio <= self.near_ratio:
            self._abnormal_since = None
            return False
        if self._abnormal_since is None:
            self._abnormal_since = now
        return now - self._abnormal_since >= self.min_duration_sec

    def reset(self) -> None:
        self._abnormal_since = None


@dataclass(frozen=True)
class EvidenceSignals:
    """証拠スコア計算への入力. 既定値は「兆候なし」."""

    eyes_closed_sec: float = 0.0
    forward_nod: bool = False
    forward_peak: float = 0.0
    backward_tilt: bool = False
    backward_peak: float = 0.0
    head_tilted: bool = False
    yawning: bool = False
    recent_yawns: int = 0
    look_away_sec: float = 0.0
    abnormal_distance: bool = False


@dataclass(frozen=True)
class EvidenceResult:
    state: AttentionState
    confidence: float
    probabilities: dict[str, float]


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def score_evidence(
    signals: EvidenceSignals,
    thresholds: AttentionThresholds | None = None,
) -> EvidenceResult:
    """3状態の証拠を加算し、正規化した分布と margin ベースの確信度を返す."""
    thresholds = thresholds or AttentionThresholds()
    closed = signals.eyes_closed_sec
    sleeping = 0.0
    nodding = 0.0
    awake = 0.3

    if closed >= thresholds.sleep_seconds:
        over = closed - thresholds.sleep_seconds
        sleeping += 0.6 + min(over / 5.0, 0.4)
    elif closed >= thresholds.nod_seconds:
        nodding += 0.5
    elif closed >= 1.5:
        nodding += 0.2

    if signals.forward_nod:
        nodding += 0.3
    if signals.forward_peak > HEAD_PITCH_THRESHOLD + NOD_PEAK_MARGIN:
        nodding += 0.25
    if signals.backward_tilt:
        nodding += 0.2
        if closed >= BACK_TILT_SLEEP_SEC:
            sleeping += 0.2
    if signals.yawning:
        nodding += 0.15
    if is_drowsy_yawn_rate(signals.recent_yawns):
        nodding += 0.1
    if signals.look_away_sec > LOOK_AWAY_SEC:
        nodding += 0.15
    if signals.abnormal_distance:
        nodding += 0.1

    # 姿勢による awake の加点は目が開いている間だけ
    if closed < thresholds.nod_seconds:
        if signals.look_away_sec <= LOOK_AWAY_SEC:
            awake += 0.05
        if not signals.head_tilted:
            awake += 0.1
        if not signals.forward_nod and not signals.backward_tilt:
            awake += 0.2
        if (
            signals.forward_peak <= HEAD_PITCH_THRESHOLD
            and signals.backward_peak <= HEAD_PITCH_BACK_THRESHOLD
        ):
            awake += 0.05
        if not signals.yawning and signals.recent_yawns < 2:
            awake += 0.05
    if closed < 1.0:
        awake += 0.3
    elif closed < thresholds.nod_seconds:
        awake += 0.1

    scores = {
        "awake": _clamp(awake, 0.05, 1.0),
        "noddingOff": _clamp(nodding, 0.0, 1.0),
        "sleeping": _clamp(sleeping, 0.0, 1.0),
    }
    total = sum(scores.values())
    probabilities = {k: v / total for k, v in scores.items()}
    # 同点のときは awake を優先
    ranked = sorted(STATE_ORDER, key=lambda s: -probabilities[s])
    best, second = probabilities[ranked[0]], probabilities[ranked[1]]
    confidence = _clamp(best + 0.5 * (best - second), 0.05, 0.99)
    return EvidenceResult(ranked[0], confidence, probabilities)


@dataclass(frozen=True)
class AttentionReading:
    """1フレームの推定結果."""

    state: AttentionState
    confidence: float
    calibrating: bool = False
    metrics: dict[str, float] = field(default_factory=dict)

    def to_snapshot(self, timestamp: float) -> AttentionSnapshot:
        return AttentionSnapshot(
            timestamp=timestamp,
            state=self.state,
            confidence=self.confidence,
            metrics=dict(self.metrics),
        )


class EvidenceAggregator:
    """カメラのフレーム単位で覚醒状態を推定する.

    最初の約4秒でベースラインを取り、以降は補正済みの計測値から証拠を積む。
    顔が閾値以上見えなくなった後に戻ってきた場合は再キャリブレーションする。
    """

    def __init__(
        self,
        settings: AttentionSettings | None = None,
        fps: int = FPS,
        emit_interval_sec: float = EMIT_INTERVAL_SEC,
    ) -> None:
        self.settings = settings or AttentionSettings()
        self.fps = fps
        self.emit_interval_sec = emit_interval_sec
        self.baseline: CalibrationBaseline | None = None

        self._nod = HeadNodDetector(window=fps)
        self._yawn = YawnDetector()
        self._gaze = GazeTracker()
        self._distance = FaceDistanceTracker()

        self._calibration_start: float | None = None
        self._samples: dict[str, list[float]] = {
            "pitch": [],
            "ear": [],
            "tilt": [],
            "face_width": [],
        }
        self._closed_frames = 0
        self._missing_frames = 0
        self._last_emit: float | None = None

    @property
    def calibrating(self) -> bool:
        return self.baseline is None

    def update_settings(self, settings: AttentionSettings) -> None:
        self.settings = settings

    def reset(self) -> None:
        """セッション終了. ベースラインも破棄する."""
        self.baseline = None
        self._reset_calibration()
        self._reset_trackers()
        self._missing_frames = 0
        self._last_emit = None

    def _reset_calibration(self) -> None:
        self._calibration_start = None
        for samples in self._samples.values():
            samples.clear()

    def _reset_trackers(self) -> None:
        self._nod.reset()
        self._yawn.reset()
        self._gaze.reset()
        self._distance.reset()
        self._closed_frames = 0

    def _calibrate(self, metrics: FaceMetrics, now: float) -> AttentionReading:
        if self._calibration_start is None:
            self._calibration_start = now
        self._samples["pitch"].append(metrics.pitch)
        self._samples["ear"].append(metrics.ear)
        self._samples["tilt"].append(metrics.tilt)
        self._samples["face_width"].append(metrics.face_width)

        elapsed = now - self._calibration_start
        count = len(self._samples["ear"])
        if elapsed >= CALIBRATION_DURATION_SEC and count >= MIN_CALIBRATION_FRAMES:
            self.baseline = CalibrationBaseline(
                pitch=statistics.median(self._samples["pitch"]),
                ear=statistics.fmean(self._samples["ear"]),
                tilt=statistics.fmean(self._samples["tilt"]),
                face_width=statistics.fmean(self._samples["face_width"]),
            )
            self._reset_calibration()
            self._reset_trackers()
            logger.info("calibration complete: %s (%d samples)", self.baseline, count)
        return AttentionReading("awake", 0.5, calibrating=True)

    def _missing_face(self) -> AttentionReading:
        self._missing_frames += 1
        self._closed_frames = 0
        if self.baseline is None:
            # キャリブレーション中に顔を見失ったらやり直す
            self._reset_calibration()
            return AttentionReading("awake", 0.2, calibrating=True)

        thresholds = self.settings.thresholds
        missing_sec = self._missing_frames / self.fps
        metrics = {"missing_sec": missing_sec}
        if missing_sec >= thresholds.sleep_seconds:
            return AttentionReading("sleeping", 0.98, metrics=metrics)
        if missing_sec >= thresholds.nod_seconds:
            return AttentionReading("noddingOff", 0.94, metrics=metrics)
        return AttentionReading("awake", 0.25, metrics=metrics)

    def process_frame(self, metrics: FaceMetrics | None, now: float) -> AttentionReading:
        """1フレームを処理する. 顔が検出されなければ metrics は None."""
        if not self.settings.enabled:
            return AttentionReading("awake", 0.5)
        if metrics is None:
            return self._missing_face()

        thresholds = self.settings.thresholds
        if (
            self.baseline is not None
            and self._missing_frames / self.fps >= thresholds.sleep_seconds
        ):
            logger.info("face returned after long absence, recalibrating")
            self.baseline = None
            self._reset_trackers()
        self._missing_frames = 0

        if self.baseline is None:
            return self._calibrate(metrics, now)

        return self._evaluate(metrics, self.baseline, now)

    def _evaluate(
        self, metrics: FaceMetrics, baseline: CalibrationBaseline, now: float
    ) -> AttentionReading:
        detectors = self.settings.detectors
        thresholds = self.settings.thresholds

        ear_threshold = max(
            baseline.ear * EAR_BASELINE_FACTOR,
            thresholds.ear_threshold * EAR_BASELINE_FACTOR,
        )
        closed_sec = 0.0
        if detectors.eye_closure:
            if metrics.ear < ear_threshold:
                self._closed_frames += 1
            else:
                self._closed_frames = 0
            if self._closed_frames >= MIN_CLOSED_FRAMES:
                closed_sec = (self._closed_frames - MIN_CLOSED_FRAMES) / self.fps

        pitch = metrics.pitch - baseline.pitch
        tilt = metrics.tilt - baseline.tilt
        nod = self._nod.update(pitch) if detectors.head_pose else NodReading()
        head_tilted = detectors.head_pose and abs(tilt) > HEAD_TILT_THRESHOLD
        yawn = (
            self._yawn.update(metrics.mar, now) if detectors.yawning else YawnReading()
        )
        look_away = (
            self._gaze.update(metrics.gaze, now) if detectors.gaze_direction else 0.0
        )
        abnormal_distance = detectors.face_distance and self._distance.update(
            metrics.face_width, baseline.face_width, now
        )

        result = score_evidence(
            EvidenceSignals(
                eyes_closed_sec=closed_sec,
                forward_nod=nod.forward,
                forward_peak=nod.forward_peak,
                backward_tilt=nod.backward,
                backward_peak=nod.backward_peak,
                head_tilted=head_tilted,
                yawning=yawn.yawning,
                recent_yawns=yawn.recent_yawns,
                look_away_sec=look_away,
                abnormal_distance=abnormal_distance,
            ),
            thresholds,
        )
        return AttentionReading(
            result.state,
            result.confidence,
            metrics={
                "ear": metrics.ear,
                "ear_threshold": ear_threshold,
                "eyes_closed_sec": closed_sec,
                "pitch": pitch,
                "tilt": tilt,
                "mar": metrics.mar,
                "gaze": metrics.gaze,
                "look_away_sec": look_away,
                "yawns": float(yawn.recent_yawns),
                **{f"p_{k}": v for k, v in result.probabilities.items()},
            },
        )

    def maybe_emit(self, reading: AttentionReading, now: float) -> AttentionSnapshot | None:
        """前回の出力から一定時間経っていればスナップショットを返す."""
        if self._last_emit is not None and now - self._last_emit < self.emit_interval_sec:
            return None
        self._last_emit = now
        return reading.to_snapshot(now)
