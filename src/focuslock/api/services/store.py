"""Key-value persistence backed by a single JSON file."""

import json
import threading
from pathlib import Path
from typing import Any

from focuslock.watchers.logger import get_logger

logger = get_logger("store")

LAST_SNAPSHOT = "lastSnapshot"
SESSION_CONTEXT = "sessionContext"
ANALYTICS = "analytics"
ALERT_HISTORY = "alertHistory"
EXTENSION_DISABLED = "extensionDisabled"
ATTENTION_SETTINGS = "attentionSettings"

ANALYTICS_CAP = 10_000
ALERT_HISTORY_CAP = 1_000


class KeyValueStore:
    """JSON ファイルに保存するキーバリューストア.

    ``path`` が None のときはメモリ上だけで保持する (テスト用)。
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._data: dict[str, Any] = self._load()

    def _load(self) -> dict[str, Any]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.exception("failed to load store: %s", self.path)
            return {}
        if not isinstance(data, dict):
            logger.warning("store file is not an object, ignoring: %s", self.path)
            return {}
        return data

    def _flush(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self.path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._flush()

    def remove(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)
            self._flush()

    def append_bounded(self, key: str, item: Any, cap: int) -> int:
        """リストに追記し、古いものから捨てて ``cap`` 件に保つ. 件数を返す."""
        with self._lock:
            items = list(self._data.get(key) or [])
            items.append(item)
            if len(items) > cap:
                del items[: len(items) - cap]
            self._data[key] = items
            self._flush()
            return len(items)
