import time
from dataclasses import asdict
from typing import Any

import requests

from focuslock.api.services.attention import EvidenceAggregator
from focuslock.config import AttentionSettings, load_env_local, load_settings
from focuslock.model.models import AttentionSnapshot
from focuslock.watchers.face_landmarks import FaceMeshExtractor, cv2
from focuslock.watchers.logger import logger, setup_logging

# HTTP status codes
HTTP_OK = 200

SETTINGS_REFRESH_SEC = 30.0
MAX_READ_FAILURES = 20
READ_RETRY_SEC = 0.5


def send_attention(snapshot: AttentionSnapshot, api_url: str) -> bool:
    """覚醒状態のスナップショットをAPIに送信

    Args:
        snapshot: 送信するスナップショット
        api_url: APIのベースURL

    Returns:
        bool: 送信成功時True

    """
    try:
        response = requests.post(f"{api_url}/attention", json=asdict(snapshot), timeout=3)
    except requests.RequestException as e:
        logger.warning("attention post failed: %s", e)
        return False
    status_code = int(getattr(response, "status_code", 0))
    return status_code == HTTP_OK


def fetch_attention_settings(api_url: str) -> AttentionSettings | None:
    """保存済みの検出設定を取得. 取得できなければ None."""
    try:
        response = requests.get(f"{api_url}/settings/attention", timeout=3)
    except requests.RequestException as e:
        logger.warning("settings fetch failed: %s", e)
        return None
    if int(getattr(response, "status_code", 0)) != HTTP_OK:
        return None
    data: dict[str, Any] = response.json()
    return AttentionSettings.from_dict(data)


def check_api_availability(api_url: str) -> bool:
    """APIの可用性をチェック."""
    try:
        response = requests.get(f"{api_url}/status", timeout=3)
    except requests.RequestException:
        return False
    status_code = int(getattr(response, "status_code", 0))
    return status_code == HTTP_OK


def run(api_url: str, camera_index: int = 0, max_frames: int | None = None) -> int:
    """カメラのフレームを処理して一定間隔でスナップショットを送る. 送信数を返す."""
    settings = fetch_attention_settings(api_url) or AttentionSettings()
    aggregator = EvidenceAggregator(settings)
    settings_checked = time.monotonic()
    sent = 0
    frames = 0
    failures = 0

    cap = cv2.VideoCapture(camera_index)
    if not cap.isOpened():
        msg = f"camera {camera_index} could not be opened"
        raise RuntimeError(msg)
    cap.set(cv2.CAP_PROP_FPS, 30)

    try:
        with FaceMeshExtractor() as extractor:
            while max_frames is None or frames < max_frames:
                ok, frame = cap.read()
                if not ok:
                    failures += 1
                    logger.warning(
                        "Failed to read frame from camera (%d/%d)",
                        failures,
                        MAX_READ_FAILURES,
                    )
                    if failures >= MAX_READ_FAILURES:
                        msg = f"camera {camera_index} stopped delivering frames"
                        raise RuntimeError(msg)
                    time.sleep(READ_RETRY_SEC)
                    continue
                failures = 0
                frames += 1
                now = time.time()

                if time.monotonic() - settings_checked > SETTINGS_REFRESH_SEC:
                    settings_checked = time.monotonic()
                    latest = fetch_attention_settings(api_url)
                    if latest is not None and latest != aggregator.settings:
                        aggregator.update_settings(latest)
                        logger.info("attention settings reloaded")

                if not aggregator.settings.enabled:
                    continue

                reading = aggregator.process_frame(extractor.extract(frame), now)
                snapshot = aggregator.maybe_emit(reading, now)
                if snapshot is not None and send_attention(snapshot, api_url):
                    sent += 1
    finally:
        cap.release()
    return sent


def main() -> None:
    """メイン関数."""
    load_env_local()
    settings = load_settings()
    setup_logging(settings.log_dir, "pump.log")
    if not check_api_availability(settings.api_url):
        logger.error("API is not reachable: %s", settings.api_url)
        return
    logger.info("camera pump started -> %s", settings.api_url)
    try:
        run(settings.api_url)
    except RuntimeError:
        logger.exception("camera pump stopped")
    except KeyboardInterrupt:
        logger.info("camera pump interrupted")


if __name__ == "__main__":
    main()
