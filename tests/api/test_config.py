import os
from unittest.mock import patch

import pytest

from focuslock.config import (
    DEFAULT_API_URL,
    AttentionSettings,
    load_env_local,
    load_settings,
)


class TestLoadSettings:
    """環境変数からの設定読み込み"""

    def test_defaults(self):
        settings = load_settings({})
        assert settings.llm_url is None
        assert settings.api_url == DEFAULT_API_URL
        assert settings.aggressiveness_threshold == 0.4
        assert settings.fusion.poll_interval_sec == 30.0
        assert settings.fusion.vision_check_interval == 2

    def test_env_values(self):
        settings = load_settings(
            {
                "LLM_URL": "http://127.0.0.1:1234",
                "LLM_MODEL": "google/gemma-3-4b",
                "LLM_TIMEOUT": "12",
                "FOCUSLOCK_API_URL": "http://localhost:9000/",
                "FOCUSLOCK_POLL_SEC": "10",
                "FOCUSLOCK_AGGRESSIVENESS": "0.7",
            }
        )
        assert settings.llm_vision_model == "google/gemma-3-4b"
        assert settings.llm_timeout == 12.0
        assert settings.api_url == "http://localhost:9000"
        assert settings.fusion.poll_interval_sec == 10.0
        assert settings.aggressiveness_threshold == 0.7

    def test_invalid_number(self):
        with pytest.raises(ValueError, match="LLM_TIMEOUT"):
            load_settings({"LLM_TIMEOUT": "soon"})


class TestEnvLocal:
    def test_missing_file(self, tmp_path):
        assert load_env_local(tmp_path / ".env.local") is False

    def test_does_not_override_existing(self, tmp_path, monkeypatch):
        path = tmp_path / ".env.local"
        path.write_text(
            '# comment\nLLM_URL="http://file"\nLLM_MODEL=from-file\nnot a pair\n',
            encoding="utf-8",
        )
        monkeypatch.setenv("LLM_MODEL", "from-env")
        # 後始末で必ず元に戻るように一度設定してから消す
        monkeypatch.setenv("LLM_URL", "placeholder")
        monkeypatch.delenv("LLM_URL")

        assert load_env_local(path) is True

        assert os.environ["LLM_URL"] == "http://file"
        assert os.environ["LLM_MODEL"] == "from-env"

    def test_delegates_to_dotenv_without_override(self, tmp_path):
        """python-dotenv に上書きなしで読み込ませる"""
        path = tmp_path / ".env.local"
        path.write_text("LLM_URL=http://file\n", encoding="utf-8")
        with patch("focuslock.config.load_dotenv") as mock_load:
            assert load_env_local(path) is True
        mock_load.assert_called_once_with(dotenv_path=path, override=False)


class TestAttentionSettings:
    """保存済み設定とデフォルトのマージ"""

    def test_none_gives_defaults(self):
        assert AttentionSettings.from_dict(None) == AttentionSettings()

    def test_partial_merge(self):
        settings = AttentionSettings.from_dict(
            {
                "enabled": False,
                "detectors": {"yawning": False, "unknown": True},
                "thresholds": {"ear_threshold": 0.18},
            }
        )
        assert settings.enabled is False
        assert settings.detectors.yawning is False
        assert settings.detectors.eye_closure is True
        assert settings.thresholds.ear_threshold == 0.18
        assert settings.thresholds.sleep_seconds == 5.0

    def test_wrong_types_ignored(self):
        settings = AttentionSettings.from_dict(
            {
                "enabled": "yes",
                "detectors": {"head_pose": 1},
                "thresholds": {"nod_seconds": "3", "sleep_seconds": True},
            }
        )
        assert settings.enabled is True
        assert settings.detectors.head_pose is True
        assert settings.thresholds.nod_seconds == 3.5
        assert settings.thresholds.sleep_seconds == 5.0

    def test_round_trip_through_dict(self):
        settings = AttentionSettings.from_dict({"thresholds": {"nod_seconds": 2}})
        assert AttentionSettings.from_dict(settings.to_dict()) == settings
