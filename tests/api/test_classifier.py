import json
from unittest.mock import Mock, patch

import pytest
import requests

from focuslock.api.services.classifier import (
    ClassificationGateway,
    Ok,
    SchemaError,
    TransportError,
    create_classification_gateway,
    strip_code_fence,
)
from focuslock.config import Settings


def completion(content: str, status_code: int = 200) -> Mock:
    """chat/completions 形式のレスポンスを作る"""
    response = Mock()
    response.status_code = status_code
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    return response


DOMAINS_JSON = json.dumps(
    [
        {
            "domain": "youtube.com",
            "isOffTask": True,
            "category": "video",
            "confidence": 0.95,
            "reasoning": "video streaming",
        },
        {
            "domain": "fonts.googleapis.com",
            "isOffTask": False,
            "category": "other",
            "confidence": 0.9,
            "reasoning": "font CDN",
        },
    ]
)

VISION_JSON = json.dumps(
    {
        "isOffTask": True,
        "confidence": 0.92,
        "reasoning": "basketball highlights",
        "detectedContent": "sports, NBA highlights",
        "recommendation": "focus",
    }
)


class TestClassificationGateway:
    """分類ゲートウェイのテスト"""

    @pytest.fixture
    def gateway(self):
        """テスト用のゲートウェイ"""
        return ClassificationGateway(
            base_url="http://localhost:1234/", model_name="google/gemma-3-4b"
        )

    def test_initialization(self, gateway):
        """初期化テスト"""
        assert gateway.base_url == "http://localhost:1234"
        assert gateway.vision_model_name == "google/gemma-3-4b"
        assert gateway.timeout == 20.0
        assert gateway.chat_url == "http://localhost:1234/v1/chat/completions"

    def test_availability_check_success(self, gateway):
        """可用性チェック（成功）"""
        with patch("requests.get") as mock_get:
            mock_get.return_value = Mock(status_code=200)
            assert gateway.is_available() is True
            mock_get.assert_called_once_with(
                "http://localhost:1234/v1/models",
                timeout=5,
                headers={"Content-Type": "application/json"},
            )

    def test_availability_check_connection_error(self, gateway):
        """可用性チェック（接続エラー）"""
        with patch("requests.get", side_effect=requests.ConnectionError()):
            assert gateway.is_available() is False

    def test_bearer_header_when_api_key_set(self):
        gateway = ClassificationGateway("http://llm", "m", api_key="secret")
        with patch("requests.post") as mock_post:
            mock_post.return_value = completion(DOMAINS_JSON)
            gateway.classify_domains(["youtube.com"], "https://github.com")
        headers = mock_post.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer secret"

    def test_classify_domains_success(self, gateway):
        """ドメイン分類（成功）"""
        with patch("requests.post") as mock_post:
            mock_post.return_value = completion(DOMAINS_JSON)
            result = gateway.classify_domains(
                ["youtube.com", "fonts.googleapis.com"], "https://github.com"
            )
        assert isinstance(result, Ok)
        assert [c.domain for c in result.value] == ["youtube.com", "fonts.googleapis.com"]
        assert result.value[0].is_off_task is True
        assert result.value[0].category == "video"
        payload = mock_post.call_args.kwargs["json"]
        assert payload["max_tokens"] == 2048
        assert payload["temperature"] == 0.2

    def test_classify_domains_code_fence(self, gateway):
        """```json で囲まれた応答も受け付ける"""
        with patch("requests.post") as mock_post:
            mock_post.return_value = completion(f"```json\n{DOMAINS_JSON}\n```")
            result = gateway.classify_domains(["youtube.com"], "https://github.com")
        assert isinstance(result, Ok)
        assert len(result.value) == 2

    def test_classify_empty_input_skips_request(self, gateway):
        with patch("requests.post") as mock_post:
            assert gateway.classify_domains([], "https://github.com") == Ok([])
            mock_post.assert_not_called()

    def test_one_bad_item_invalidates_whole_response(self, gateway):
        """1件でも型違いがあれば応答全体を捨てる"""
        items = json.loads(DOMAINS_JSON)
        items[1]["isOffTask"] = "no"
        with patch("requests.post") as mock_post:
            mock_post.return_value = completion(json.dumps(items))
            result = gateway.classify_domains(["a", "b"], "https://github.com")
        assert isinstance(result, SchemaError)

    def test_missing_field_is_schema_error(self, gateway):
        items = json.loads(DOMAINS_JSON)
        del items[0]["reasoning"]
        with patch("requests.post") as mock_post:
            mock_post.return_value = completion(json.dumps(items))
            result = gateway.classify_domains(["a"], "https://github.com")
        assert isinstance(result, SchemaError)

    def test_non_json_is_schema_error(self, gateway):
        with patch("requests.post") as mock_post:
            mock_post.return_value = completion("I think youtube is off-task")
            result = gateway.classify_domains(["a"], "https://github.com")
        assert isinstance(result, SchemaError)

    def test_timeout_is_transport_error(self, gateway):
        with patch("requests.post", side_effect=requests.Timeout()):
            result = gateway.classify_domains(["a"], "https://github.com")
        assert result == TransportError("timeout")

    def test_http_error_is_transport_error(self, gateway):
        with patch("requests.post") as mock_post:
            mock_post.return_value = completion("", status_code=500)
            result = gateway.classify_domains(["a"], "https://github.com")
        assert result == TransportError("HTTP 500")

    def test_verify_visually_success(self, gateway):
        """ビジョン判定（成功）"""
        with patch("requests.post") as mock_post:
            mock_post.return_value = completion(VISION_JSON)
            result = gateway.verify_visually(
                "aW1n", "https://nba.com", "routine", declared_task="Write report"
            )
        assert isinstance(result, Ok)
        verification = result.value
        assert verification.is_off_task is True
        assert verification.recommendation == "focus"
        assert verification.verified is True

        payload = mock_post.call_args.kwargs["json"]
        content = payload["messages"][1]["content"]
        assert content[1]["image_url"]["url"] == "data:image/jpeg;base64,aW1n"
        assert "Write report" in content[0]["text"]
        assert payload["max_tokens"] == 1024

    def test_invalid_recommendation_coerced_to_ok(self, gateway):
        data = json.loads(VISION_JSON)
        data["recommendation"] = "panic"
        with patch("requests.post") as mock_post:
            mock_post.return_value = completion(json.dumps(data))
            result = gateway.verify_visually("aW1n", "https://nba.com", "routine")
        assert isinstance(result, Ok)
        assert result.value.recommendation == "ok"

    def test_confidence_is_clamped(self, gateway):
        data = json.loads(VISION_JSON)
        data["confidence"] = 1.7
        with patch("requests.post") as mock_post:
            mock_post.return_value = completion(json.dumps(data))
            result = gateway.verify_visually("aW1n", "https://nba.com", "routine")
        assert result.value.confidence == 1.0

    def test_verify_fallback_on_transport_error(self, gateway):
        """通信失敗時は中立なフォールバック"""
        with patch("requests.post", side_effect=requests.Timeout()):
            verification = gateway.verify_or_fallback("aW1n", "https://nba.com", "r")
        assert verification.is_off_task is False
        assert verification.confidence == 0.0
        assert verification.recommendation == "ok"
        assert verification.verified is False

    def test_verify_fallback_on_schema_error(self, gateway):
        data = json.loads(VISION_JSON)
        data["confidence"] = "high"
        with patch("requests.post") as mock_post:
            mock_post.return_value = completion(json.dumps(data))
            verification = gateway.verify_or_fallback("aW1n", "https://nba.com", "r")
        assert verification.reasoning == "Parse error"
        assert verification.verified is False


class TestGatewayFactory:
    """ファクトリ関数のテスト"""

    def test_requires_env(self, monkeypatch):
        monkeypatch.delenv("LLM_URL", raising=False)
        monkeypatch.delenv("LLM_MODEL", raising=False)
        with pytest.raises(RuntimeError):
            create_classification_gateway()

    def test_reads_env(self, monkeypatch):
        monkeypatch.setenv("LLM_URL", "http://127.0.0.1:1234")
        monkeypatch.setenv("LLM_MODEL", "text-model")
        monkeypatch.setenv("LLM_VISION_MODEL", "vision-model")
        monkeypatch.setenv("LLM_TIMEOUT", "5")
        gateway = create_classification_gateway()
        assert gateway.model_name == "text-model"
        assert gateway.vision_model_name == "vision-model"
        assert gateway.timeout == 5.0

    def test_from_settings(self):
        settings = Settings(
            llm_url="http://127.0.0.1:1234",
            llm_model="text-model",
            llm_api_key="secret",
            store_path=None,
        )
        gateway = create_classification_gateway(settings)
        assert gateway.model_name == "text-model"
        assert gateway.api_key == "secret"


def test_strip_code_fence():
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'
