import platform
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from focuslock.watchers.logger import get_logger

if sys.platform == "win32":
    from win10toast import ToastNotifier  # type: ignore[import-untyped, unused-ignore]

logger = get_logger("notifications")

APP_TITLE = "FocusLock"
MAX_HISTORY = 200


class NotificationLevel(Enum):
    """Notification severity levels used by the service."""

    INFO = "info"
    WARNING = "warning"
    URGENT = "urgent"


@dataclass
class NotificationConfig:
    """Configuration for :class:`NotificationService`.

    ``enabled`` を False にすると履歴だけ残してトーストは出さない。
    """

    enabled: bool = True
    duration_sec: int = 5


class NotificationService:
    """Desktop notification service with history tracking."""

    def __init__(self, config: NotificationConfig | None = None) -> None:
        self.platform = platform.system()
        self.config = config or NotificationConfig()
        self._history: list[dict[str, Any]] = []

    def notify(
        self,
        title: str,
        message: str,
        level: NotificationLevel = NotificationLevel.INFO,
    ) -> bool:
        """Display a notification and record it.

        On Windows a toast is shown through win10toast. On other platforms
        the notification is only recorded and ``False`` is returned.
        """
        delivered = False
        if self.config.enabled and self.platform == "Windows":
            try:
                notifier = ToastNotifier()
                notifier.show_toast(  # pyright: ignore[reportUnknownMemberType]
                    title,
                    message,
                    duration=self.config.duration_sec,
                    threaded=True,
                )
                delivered = True
            except (OSError, RuntimeError):
                logger.exception("toast failed: %s", title)

        self._history.append(
            {
                "title": title,
                "message": message,
                "level": level.value,
                "timestamp": time.time(),
                "delivered": delivered,
            },
        )
        if len(self._history) > MAX_HISTORY:
            del self._history[: len(self._history) - MAX_HISTORY]
        return delivered

    def get_capabilities(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "supports_toast": self.platform == "Windows",
        }

    def get_notification_history(self) -> list[dict[str, Any]]:
        """Return a copy of the notification history."""
        return list(self._history)


def notify_lock(service: NotificationService, reason: str) -> bool:
    """便利関数: off-task ロック / ロック中のリマインダー."""
    return service.notify(
        f"{APP_TITLE} - Back to work!",
        f"画面がロックされました\n理由: {reason}",
        NotificationLevel.URGENT,
    )


def notify_drowsiness(service: NotificationService, message: str) -> bool:
    """便利関数: 眠気アラーム."""
    return service.notify(
        f"{APP_TITLE} - Wake up!",
        message,
        NotificationLevel.URGENT,
    )


def notify_unlock(service: NotificationService) -> bool:
    """便利関数: ロック解除."""
    return service.notify(
        APP_TITLE,
        "ロックが解除されました. 作業に戻りましょう",
        NotificationLevel.INFO,
    )


def notify_disabled(service: NotificationService) -> bool:
    return service.notify(APP_TITLE, "監視を停止しました", NotificationLevel.WARNING)
