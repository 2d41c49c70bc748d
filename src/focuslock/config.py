"""Runtime configuration.

環境変数（必要なら ``.env.local``）から読み込む:
- LLM_URL / LLM_MODEL / LLM_VISION_MODEL / LLM_API_KEY / LLM_TIMEOUT
- FOCUSLOCK_STORE_PATH / FOCUSLOCK_LOG_DIR / FOCUSLOCK_API_URL
- FOCUSLOCK_POLL_SEC / FOCUSLOCK_AGGRESSIVENESS
"""

import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

DEFAULT_API_URL = "http://localhost:5577"


def load_env_local(path: Path | str = ".env.local") -> bool:
    """.env.local を読み込み環境変数へ反映する. ファイルが無ければ False."""
    env_path = Path(path)
    if not env_path.exists():
        return False
    # 既に設定済みの環境変数を優先する
    load_dotenv(dotenv_path=env_path, override=False)
    return True


@dataclass(frozen=True)
class FusionSettings:
    """Fusion Engine の閾値とスロットリング設定."""

    poll_interval_sec: float = 30.0
    vision_check_interval: int = 2
    network_classify_interval_sec: float = 60.0
    min_background_domains: int = 3
    vision_weight: float = 0.6
    domain_weight: float = 0.4
    off_task_threshold: float = 0.5
    auto_flag_confidence: float = 0.95
    known_off_task_confidence: float = 0.9
    suspicious_only_confidence: float = 0.76
    suspicious_domain_confidence: float = 0.6
    attention_fresh_sec: float = 10.0


@dataclass(frozen=True)
class DetectorToggles:
    eye_closure: bool = True
    head_pose: bool = True
    yawning: bool = True
    gaze_direction: bool = True
    face_distance: bool = True


@dataclass(frozen=True)
class AttentionThresholds:
    ear_threshold: float = 0.20
    nod_seconds: float = 3.5
    sleep_seconds: float = 5.0


@dataclass(frozen=True)
class AttentionSettings:
    """Persisted detector toggles and thresholds (``attentionSettings`` key)."""

    enabled: bool = True
    detectors: DetectorToggles = field(default_factory=DetectorToggles)
    thresholds: AttentionThresholds = field(default_factory=AttentionThresholds)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, stored: Mapping[str, Any] | None) -> "AttentionSettings":
        """保存済みの設定をデフォルト値にマージする. 不明なキーと型違いは無視."""
        stored = stored or {}
        enabled = stored.get("enabled", True)
        return cls(
            enabled=enabled if isinstance(enabled, bool) else True,
            detectors=_merge_section(DetectorToggles, stored.get("detectors")),
            thresholds=_merge_section(AttentionThresholds, stored.get("thresholds")),
        )


def _merge_section(section_cls: Any, stored: Any) -> Any:
    defaults = section_cls()
    if not isinstance(stored, Mapping):
        return defaults
    values: dict[str, Any] = {}
    for f in fields(section_cls):
        default_value = getattr(defaults, f.name)
        value = stored.get(f.name, default_value)
        if isinstance(default_value, bool):
            values[f.name] = value if isinstance(value, bool) else default_value
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            values[f.name] = float(value)
        else:
            values[f.name] = default_value
    return section_cls(**values)


@dataclass(frozen=True)
class Settings:
    """プロセス全体の設定."""

    llm_url: str | None = None
    llm_model: str | None = None
    llm_vision_model: str | None = None
    llm_api_key: str | None = None
    llm_timeout: float = 20.0
    store_path: str | None = "./data/state.json"
    log_dir: str = "./log"
    api_url: str = DEFAULT_API_URL
    aggressiveness_threshold: float = 0.4
    required_clicks: int = 10
    disable_puzzle_count: int = 10
    fusion: FusionSettings = field(default_factory=FusionSettings)


def _float_env(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        msg = f"{key} must be a number, got {raw!r}"
        raise ValueError(msg) from None


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """環境変数から Settings を構築する."""
    env = os.environ if env is None else env
    model = env.get("LLM_MODEL") or None
    return Settings(
        llm_url=env.get("LLM_URL") or None,
        llm_model=model,
        llm_vision_model=env.get("LLM_VISION_MODEL") or model,
        llm_api_key=env.get("LLM_API_KEY") or None,
        llm_timeout=_float_env(env, "LLM_TIMEOUT", 20.0),
        store_path=env.get("FOCUSLOCK_STORE_PATH", "./data/state.json"),
        log_dir=env.get("FOCUSLOCK_LOG_DIR", "./log"),
        api_url=env.get("FOCUSLOCK_API_URL", DEFAULT_API_URL).rstrip("/"),
        aggressiveness_threshold=_float_env(env, "FOCUSLOCK_AGGRESSIVENESS", 0.4),
        fusion=FusionSettings(
            poll_interval_sec=_float_env(env, "FOCUSLOCK_POLL_SEC", 30.0),
        ),
    )
