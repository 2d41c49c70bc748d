"""MediaPipe Face Mesh → FaceMetrics.

幾何計算は正規化座標 (x, y) の numpy 配列だけを受け取るので、
カメラなしでもテストできる。
"""

import math
from typing import Any

import numpy as np

from focuslock.api.services.attention import FaceMetrics
from focuslock.watchers.logger import get_logger

# OpenCV関連のインポート
try:
    import cv2

    CV2_AVAILABLE = True
except ImportError:
    CV2_AVAILABLE = False
    cv2 = None

# MediaPipe関連のインポート
try:
    import mediapipe as mp

    MEDIAPIPE_AVAILABLE = True
except ImportError:
    MEDIAPIPE_AVAILABLE = False
    mp = None

logger = get_logger("face_landmarks")

LEFT_EYE = (33, 160, 158, 133, 153, 144)
RIGHT_EYE = (362, 385, 387, 263, 373, 380)
MOUTH_VERTICAL = (13, 14)
MOUTH_HORIZONTAL = (61, 291)
NOSE_TIP = 1
CHIN = 152
LEFT_FACE = 234
RIGHT_FACE = 454
LEFT_IRIS = 468
RIGHT_IRIS = 473
REFINED_LANDMARK_COUNT = 478

# 鼻の位置比からおおよその角度 (度) への換算係数
PITCH_SCALE_DEG = 90.0


def _dist(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.linalg.norm(a - b))


def eye_aspect_ratio(points: np.ndarray, indices: tuple[int, ...]) -> float:
    """EAR = (|p2-p6| + |p3-p5|) / (2 * |p1-p4|)."""
    p = points[list(indices), :2]
    horizontal = _dist(p[0], p[3])
    if horizontal == 0:
        return 0.0
    return (_dist(p[1], p[5]) + _dist(p[2], p[4])) / (2.0 * horizontal)


def mouth_aspect_ratio(points: np.ndarray) -> float:
    width = _dist(points[MOUTH_HORIZONTAL[0], :2], points[MOUTH_HORIZONTAL[1], :2])
    if width == 0:
        return 0.0
    return _dist(points[MOUTH_VERTICAL[0], :2], points[MOUTH_VERTICAL[1], :2]) / width


def head_tilt(points: np.ndarray) -> float:
    """目尻を結ぶ線の傾き (度). 右に傾けると正."""
    left, right = points[LEFT_EYE[0], :2], points[RIGHT_EYE[3], :2]
    return math.degrees(math.atan2(right[1] - left[1], right[0] - left[0]))


def head_pitch(points: np.ndarray) -> float:
    """前傾が正になる pitch の近似値 (度).

    目の中心から鼻先までの距離と、目の中心から顎までの距離の比を使う。
    """
    eye_center = (points[LEFT_EYE[0], :2] + points[RIGHT_EYE[3], :2]) / 2.0
    face_height = points[CHIN, 1] - eye_center[1]
    if face_height <= 0:
        return 0.0
    ratio = (points[NOSE_TIP, 1] - eye_center[1]) / face_height
    return float((ratio - 0.5) * PITCH_SCALE_DEG)


def gaze_offset(points: np.ndarray) -> float:
    """虹彩の水平位置. -1 (左) 〜 1 (右). 虹彩ランドマークが無ければ 0."""
    if len(points) < REFINED_LANDMARK_COUNT:
        return 0.0
    offsets = []
    for iris, (outer, inner) in (
        (LEFT_IRIS, (LEFT_EYE[0], LEFT_EYE[3])),
        (RIGHT_IRIS, (RIGHT_EYE[0], RIGHT_EYE[3])),
    ):
        span = points[inner, 0] - points[outer, 0]
        if span == 0:
            continue
        position = (points[iris, 0] - points[outer, 0]) / span
        offsets.append((position - 0.5) * 2.0)
    if not offsets:
        return 0.0
    return float(np.clip(np.mean(offsets), -1.0, 1.0))


def face_width(points: np.ndarray) -> float:
    return abs(float(points[RIGHT_FACE, 0] - points[LEFT_FACE, 0]))


def compute_metrics(points: np.ndarray) -> FaceMetrics:
    """正規化ランドマーク (N x 2 以上) から1フレーム分の計測値を作る."""
    return FaceMetrics(
        ear=(eye_aspect_ratio(points, LEFT_EYE) + eye_aspect_ratio(points, RIGHT_EYE))
        / 2.0,
        pitch=head_pitch(points),
        tilt=head_tilt(points),
        mar=mouth_aspect_ratio(points),
        gaze=gaze_offset(points),
        face_width=face_width(points),
    )


class FaceMeshExtractor:
    """カメラのフレーム (BGR) から FaceMetrics を取り出す."""

    def __init__(self, max_faces: int = 1) -> None:
        if not (CV2_AVAILABLE and MEDIAPIPE_AVAILABLE):
            msg = "opencv-python and mediapipe are required (pip install focuslock[camera])"
            raise RuntimeError(msg)
        self._mesh = mp.solutions.face_mesh.FaceMesh(
            max_num_faces=max_faces,
            refine_landmarks=True,
            min_detection_confidence=0.5,
            min_tracking_confidence=0.5,
        )

    def extract(self, frame: Any) -> FaceMetrics | None:
        """顔が見つからなければ None."""
        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        results = self._mesh.process(rgb)
        if not results.multi_face_landmarks:
            return None
        landmarks = results.multi_face_landmarks[0].landmark
        points = np.array([(lm.x, lm.y) for lm in landmarks], dtype=np.float64)
        return compute_metrics(points)

    def close(self) -> None:
        self._mesh.close()

    def __enter__(self) -> "FaceMeshExtractor":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
