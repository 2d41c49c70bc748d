"""Classification gateway via OpenAI-compatible API (LM Studio, etc.).

全ての呼び出しは ``Ok | SchemaError | TransportError`` のいずれかを返す。
fail-open のラッパーはエラーを空リスト / 中立のフォールバックに変換する。
"""

import json
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import requests
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictStr,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from focuslock.config import Settings, load_settings
from focuslock.model.models import DomainClassification, VisualVerification
from focuslock.watchers.logger import get_logger

logger = get_logger("classifier")

HTTP_OK = 200
VALID_RECOMMENDATIONS = ("focus", "warning", "ok")
ROUTINE_CHECK_REASON = (
    "Routine check for off-task content (sports, social media, games, "
    "shopping, videos)"
)

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class SchemaError:
    detail: str


@dataclass(frozen=True)
class TransportError:
    detail: str


GatewayResult = Ok[Any] | SchemaError | TransportError


class DomainClassificationPayload(BaseModel):
    """分類器が返すドメイン判定1件のスキーマ."""

    model_config = ConfigDict(populate_by_name=True)

    domain: StrictStr
    is_off_task: StrictBool = Field(alias="isOffTask")
    category: StrictStr
    confidence: float
    reasoning: StrictStr

    @field_validator("confidence", mode="before")
    @classmethod
    def confidence_must_be_number(cls, v: Any) -> float:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            msg = "confidence must be a number"
            raise ValueError(msg)
        return min(1.0, max(0.0, float(v)))


class VisualVerificationPayload(BaseModel):
    """ビジョン判定のスキーマ."""

    model_config = ConfigDict(populate_by_name=True)

    is_off_task: StrictBool = Field(alias="isOffTask")
    confidence: float
    reasoning: StrictStr
    detected_content: StrictStr = Field(alias="detectedContent")
    recommendation: StrictStr

    @field_validator("confidence", mode="before")
    @classmethod
    def confidence_must_be_number(cls, v: Any) -> float:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            msg = "confidence must be a number"
            raise ValueError(msg)
        return min(1.0, max(0.0, float(v)))

    @field_validator("recommendation")
    @classmethod
    def coerce_recommendation(cls, v: str) -> str:
        """不明な recommendation は最も安全な ``ok`` に置き換える."""
        return v if v in VALID_RECOMMENDATIONS else "ok"


_DOMAIN_LIST = TypeAdapter(list[DomainClassificationPayload])


def fallback_verification(reason: str, detected: str = "") -> VisualVerification:
    """失敗時の中立な判定. アラートを発生させない方向に倒す."""
    return VisualVerification(
        is_off_task=False,
        confidence=0.0,
        reasoning=reason,
        detected_content=detected or reason,
        recommendation="ok",
        verified=False,
    )


def strip_code_fence(content: str) -> str:
    """```json ... ``` で囲まれた応答から中身を取り出す."""
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


class ClassificationGateway:
    """テキスト分類とビジョン判定を行う外部APIクライアント."""

    def __init__(
        self,
        base_url: str,
        model_name: str,
        vision_model_name: str | None = None,
        timeout: float = 20.0,
        api_key: str | None = None,
    ) -> None:
        """初期化

        Args:
        base_url: OpenAI互換APIのベースURL（例: http://127.0.0.1:1234）
        model_name: ドメイン分類に使うモデル名
        vision_model_name: 画像判定に使うモデル名（省略時は model_name）
        timeout: APIタイムアウト(秒)
        api_key: Bearer トークン（任意）

        """
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.vision_model_name = vision_model_name or model_name
        self.timeout = timeout
        self.api_key = api_key
        self.chat_url = f"{self.base_url}/v1/chat/completions"

        self.domain_system_prompt = """
You classify web domains for a productivity monitor.
Return ONLY a JSON array. Each element must have exactly these keys:
- domain: the domain string
- isOffTask: true if the domain is a distraction (entertainment, social media,
  sports, games, shopping, news), false for work, documentation or
  infrastructure (CDNs, fonts, analytics, APIs)
- category: one of "code", "docs", "video", "social", "games", "shopping",
  "sports", "news", "other"
- confidence: number between 0 and 1
- reasoning: brief explanation (max 60 chars)
""".strip()

        self.vision_system_prompt = """
You verify from a screenshot whether the user is on-task.
Return ONLY a JSON object with these exact keys:
- isOffTask: boolean
- confidence: number between 0 and 1
- reasoning: brief explanation (max 100 chars)
- detectedContent: comma separated short description of what is on screen
- recommendation: one of "focus", "warning", "ok"
""".strip()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def is_available(self) -> bool:
        """分類APIが利用可能かチェック."""
        try:
            response = requests.get(
                f"{self.base_url}/v1/models", timeout=5, headers=self._headers()
            )
        except requests.RequestException:
            return False
        else:
            status_code: int = response.status_code
            return status_code == HTTP_OK

    def _post_chat(
        self,
        model: str,
        messages: list[dict[str, Any]],
        max_tokens: int,
        temperature: float,
    ) -> GatewayResult:
        """chat/completions を呼び出し、応答テキストを ``Ok(str)`` で返す."""
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        try:
            response = requests.post(
                self.chat_url,
                json=payload,
                timeout=self.timeout,
                headers=self._headers(),
            )
        except requests.exceptions.Timeout:
            return TransportError("timeout")
        except requests.RequestException as e:
            return TransportError(f"request failed: {e}")

        if response.status_code != HTTP_OK:
            return TransportError(f"HTTP {response.status_code}")

        try:
            response_data = response.json()
            content = response_data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            return SchemaError("malformed completion envelope")
        if not isinstance(content, str):
            return SchemaError("completion content is not text")
        return Ok(strip_code_fence(content))

    # ------------------------------------------------------------------
    # Tier 1: domain classification

    def _build_domain_prompt(self, domains: Sequence[str], active_url: str) -> str:
        domain_lines = "\n".join(f"- {d}" for d in domains)
        return f"""
Active tab: {active_url[:120] if active_url else "N/A"}
Background domains seen in the last 30 seconds:
{domain_lines}

Classify every background domain.
""".strip()

    def classify_domains(self, domains: Sequence[str], active_url: str) -> GatewayResult:
        """バックグラウンドドメインを分類する.

        Returns:
            Ok(list[DomainClassification]) / SchemaError / TransportError

        """
        if not domains:
            return Ok([])

        messages: list[dict[str, Any]] = [
            {"role": "system", "content": self.domain_system_prompt},
            {"role": "user", "content": self._build_domain_prompt(domains, active_url)},
        ]
        result = self._post_chat(
            self.model_name, messages, max_tokens=2048, temperature=0.2
        )
        if not isinstance(result, Ok):
            logger.warning("domain classification failed: %s", result.detail)
            return result

        try:
            items = _DOMAIN_LIST.validate_python(json.loads(result.value))
        except json.JSONDecodeError:
            logger.warning("domain classification returned non-JSON")
            return SchemaError("non-JSON response")
        except ValidationError as e:
            logger.warning("domain classification schema error: %s", e.error_count())
            return SchemaError(f"{e.error_count()} validation errors")

        return Ok(
            [
                DomainClassification(
                    domain=item.domain,
                    is_off_task=item.is_off_task,
                    category=item.category,
                    confidence=item.confidence,
                    reasoning=item.reasoning,
                )
                for item in items
            ]
        )

    # ------------------------------------------------------------------
    # Tier 2: vision verification

    def _build_vision_prompt(
        self, active_url: str, reason: str, declared_task: str | None
    ) -> str:
        if declared_task:
            task_context = f"""
The user declared this task: "{declared_task}".
Judge the screen against that task. Content that serves the task is ON-TASK
even if it would normally be a distraction (e.g. shopping sites while the
task is furniture shopping).
""".strip()
        else:
            task_context = """
No task was declared. Treat coding, documentation, technical reading, email
and work tools as ON-TASK.
""".strip()

        return f"""
{task_context}

Active URL: {active_url[:200] if active_url else "N/A"}
Why this check was requested: {reason}

OFF-TASK examples: sports scores or highlights, social media feeds,
entertainment videos, games, unrelated shopping, celebrity news.
ON-TASK examples: code editors, pull requests, documentation, tutorials
related to the work, spreadsheets, research articles.

Be balanced: do not flag content just because of the site it is on.
""".strip()

    def verify_visually(
        self,
        screenshot: str,
        active_url: str,
        reason: str,
        declared_task: str | None = None,
    ) -> GatewayResult:
        """スクリーンショット（base64 JPEG）で作業内容を確認する.

        Returns:
            Ok(VisualVerification) / SchemaError / TransportError

        """
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": self.vision_system_prompt},
            {
                "role": "user",
                "content": [
                    {
                        "type": "text",
                        "text": self._build_vision_prompt(
                            active_url, reason, declared_task
                        ),
                    },
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:image/jpeg;base64,{screenshot}"},
                    },
                ],
            },
        ]
        result = self._post_chat(
            self.vision_model_name, messages, max_tokens=1024, temperature=0.4
        )
        if not isinstance(result, Ok):
            logger.warning("vision verification failed: %s", result.detail)
            return result

        try:
            data = VisualVerificationPayload.model_validate(json.loads(result.value))
        except json.JSONDecodeError:
            logger.warning("vision verification returned non-JSON")
            return SchemaError("non-JSON response")
        except ValidationError as e:
            logger.warning("vision verification schema error: %s", e.error_count())
            return SchemaError(f"{e.error_count()} validation errors")

        return Ok(
            VisualVerification(
                is_off_task=data.is_off_task,
                confidence=data.confidence,
                reasoning=data.reasoning,
                detected_content=data.detected_content,
                recommendation=data.recommendation,  # type: ignore[arg-type]
                verified=True,
            )
        )

    def verify_or_fallback(
        self,
        screenshot: str,
        active_url: str,
        reason: str,
        declared_task: str | None = None,
    ) -> VisualVerification:
        """失敗時は中立なフォールバックを返す."""
        result = self.verify_visually(screenshot, active_url, reason, declared_task)
        if isinstance(result, Ok):
            return result.value
        if isinstance(result, SchemaError):
            return fallback_verification("Parse error", "Invalid response")
        return fallback_verification("API error", "API unavailable")


# 便利関数
def create_classification_gateway(settings: Settings | None = None) -> ClassificationGateway:
    """ゲートウェイのファクトリ関数.

    環境変数で設定（必須）:
    - LLM_URL: OpenAI互換APIのベースURL（例: http://127.0.0.1:1234）
    - LLM_MODEL: 使用するモデル名（例: google/gemma-3-4b）
    任意: LLM_VISION_MODEL, LLM_API_KEY, LLM_TIMEOUT

    Args:
        settings: 読み込み済みの設定. None なら環境変数から読む

    Returns:
        ClassificationGateway: 設定済みのゲートウェイ

    """
    settings = settings or load_settings()
    if not settings.llm_url or not settings.llm_model:
        msg = "LLM_URL and LLM_MODEL must be set (e.g., in .env.local)."
        raise RuntimeError(msg)
    return ClassificationGateway(
        base_url=settings.llm_url,
        model_name=settings.llm_model,
        vision_model_name=settings.llm_vision_model,
        timeout=settings.llm_timeout,
        api_key=settings.llm_api_key,
    )
