from unittest.mock import MagicMock, Mock, patch

import pytest
import requests

from focuslock.config import AttentionSettings
from focuslock.model.models import AttentionSnapshot
from focuslock.watchers.pump import (
    MAX_READ_FAILURES,
    READ_RETRY_SEC,
    check_api_availability,
    fetch_attention_settings,
    run,
    send_attention,
)

API_URL = "http://localhost:5577"


class TestCameraPump:
    """カメラ pump の API 通信"""

    def test_send_attention_success(self):
        """送信成功"""
        snapshot = AttentionSnapshot(
            timestamp=1.0, state="noddingOff", confidence=0.8, metrics={"ear": 0.1}
        )
        with patch("requests.post") as mock_post:
            mock_post.return_value = Mock(status_code=200)
            assert send_attention(snapshot, API_URL) is True

        mock_post.assert_called_once_with(
            f"{API_URL}/attention",
            json={
                "timestamp": 1.0,
                "state": "noddingOff",
                "confidence": 0.8,
                "metrics": {"ear": 0.1},
            },
            timeout=3,
        )

    def test_send_attention_rejected(self):
        snapshot = AttentionSnapshot(timestamp=1.0, state="awake", confidence=0.9)
        with patch("requests.post") as mock_post:
            mock_post.return_value = Mock(status_code=422)
            assert send_attention(snapshot, API_URL) is False

    def test_send_attention_connection_error(self):
        """接続エラーでは例外を出さず False"""
        snapshot = AttentionSnapshot(timestamp=1.0, state="awake", confidence=0.9)
        with patch("requests.post", side_effect=requests.ConnectionError()):
            assert send_attention(snapshot, API_URL) is False

    def test_fetch_attention_settings(self):
        response = Mock(status_code=200)
        response.json.return_value = {
            "enabled": True,
            "detectors": {"gaze_direction": False},
            "thresholds": {"nod_seconds": 2.5},
        }
        with patch("requests.get", return_value=response):
            settings = fetch_attention_settings(API_URL)
        assert settings.detectors.gaze_direction is False
        assert settings.thresholds.nod_seconds == 2.5

    def test_fetch_attention_settings_unavailable(self):
        with patch("requests.get", side_effect=requests.Timeout()):
            assert fetch_attention_settings(API_URL) is None
        with patch("requests.get", return_value=Mock(status_code=503)):
            assert fetch_attention_settings(API_URL) is None

    def test_check_api_availability(self):
        with patch("requests.get", return_value=Mock(status_code=200)) as mock_get:
            assert check_api_availability(API_URL) is True
        mock_get.assert_called_once_with(f"{API_URL}/status", timeout=3)
        with patch("requests.get", side_effect=requests.ConnectionError()):
            assert check_api_availability(API_URL) is False


class TestCameraLoop:
    """カメラ読み取りループ"""

    def test_disconnected_camera_stops_after_retries(self):
        """読み取り失敗が続いたら待機しながら再試行し、上限で止まる"""
        cap = Mock()
        cap.isOpened.return_value = True
        cap.read.return_value = (False, None)
        fake_cv2 = Mock()
        fake_cv2.VideoCapture.return_value = cap

        with (
            patch("focuslock.watchers.pump.cv2", fake_cv2),
            patch("focuslock.watchers.pump.FaceMeshExtractor", MagicMock()),
            patch("focuslock.watchers.pump.fetch_attention_settings", return_value=None),
            patch("focuslock.watchers.pump.time.sleep") as mock_sleep,
            pytest.raises(RuntimeError, match="stopped delivering frames"),
        ):
            run(API_URL, max_frames=5)

        assert cap.read.call_count == MAX_READ_FAILURES
        assert mock_sleep.call_count == MAX_READ_FAILURES - 1
        mock_sleep.assert_called_with(READ_RETRY_SEC)
        cap.release.assert_called_once()

    def test_failure_counter_resets_after_good_frame(self):
        cap = Mock()
        cap.isOpened.return_value = True
        frame = object()
        reads = [(False, None)] * (MAX_READ_FAILURES - 1) + [(True, frame)]
        cap.read.side_effect = reads * 2
        fake_cv2 = Mock()
        fake_cv2.VideoCapture.return_value = cap
        disabled = AttentionSettings(enabled=False)

        with (
            patch("focuslock.watchers.pump.cv2", fake_cv2),
            patch("focuslock.watchers.pump.FaceMeshExtractor", MagicMock()),
            patch("focuslock.watchers.pump.fetch_attention_settings", return_value=disabled),
            patch("focuslock.watchers.pump.time.sleep"),
        ):
            assert run(API_URL, max_frames=2) == 0

        assert cap.read.call_count == 2 * MAX_READ_FAILURES
