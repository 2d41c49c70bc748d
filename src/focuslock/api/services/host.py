"""Host platform adapter fed by the browser companion.

ビュー (タブ) の一覧・アクティブなビュー・アイドル時間・スクリーンショットを提供し、
Alert State Machine からの制御メッセージを companion 向けのコマンドに変換して溜める。
"""

import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict
from typing import Any

from focuslock.api.services.rules import is_internal_url, is_on_task_view
from focuslock.model.models import (
    ALERT_COMPLETED,
    ALERT_TRIGGERED,
    CLOSE_OFF_TASK_TAB,
    ControlMessage,
    ViewInfo,
)
from focuslock.watchers.idle import IdleMonitor
from focuslock.watchers.logger import get_logger

logger = get_logger("host")

ACTIVATE_VIEW = "ACTIVATE_VIEW"
CLOSE_VIEW = "CLOSE_VIEW"
OPEN_VIEW = "OPEN_VIEW"
BLANK_URL = "about:blank"
MAX_OUTBOX = 500


class RemoteHost:
    """companion が報告したビュー状態を保持し、コマンドを outbox に積む."""

    def __init__(
        self,
        screen_capture: Callable[[], str | None] | None = None,
        idle: IdleMonitor | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._screen_capture = screen_capture
        self.idle = idle or IdleMonitor()
        self._clock = clock
        self.views: dict[int, ViewInfo] = {}
        self.active_view_id: int | None = None
        self.locked_view_id: int | None = None
        self.locked = False
        self.outbox: deque[ControlMessage] = deque(maxlen=MAX_OUTBOX)

    # ------------------------------------------------------------------
    # companion からの入力

    def update_view(
        self, view_id: int, url: str, title: str = "", *, active: bool = False
    ) -> ViewInfo:
        previous = self.views.get(view_id)
        last_active = previous.last_active if previous else 0.0
        if active:
            last_active = self._clock()
        view = ViewInfo(view_id, url, title, last_active)
        self.views[view_id] = view
        if active:
            self.activate(view_id)
        return view

    def remove_view(self, view_id: int) -> None:
        self.views.pop(view_id, None)
        if self.active_view_id == view_id:
            self.active_view_id = None

    def activate(self, view_id: int) -> bool:
        """ビューの切り替え. ロック中はロックされたビューに戻す."""
        if self.locked and self.locked_view_id is not None:
            if view_id != self.locked_view_id:
                self.outbox.append(ControlMessage(ACTIVATE_VIEW, self.locked_view_id))
                logger.info("view switch reverted: %s -> %s", view_id, self.locked_view_id)
                return False
        self.active_view_id = view_id
        view = self.views.get(view_id)
        if view is not None:
            self.views[view_id] = ViewInfo(view.view_id, view.url, view.title, self._clock())
        return True

    def report_idle(self, idle_ms: int) -> None:
        self.idle.report(idle_ms)

    # ------------------------------------------------------------------
    # Fusion Engine 向け

    def active_view(self) -> ViewInfo | None:
        if self.active_view_id is None:
            return None
        return self.views.get(self.active_view_id)

    def idle_ms(self) -> int:
        return self.idle.idle_ms()

    def capture_screenshot(self) -> str | None:
        if self._screen_capture is None:
            return None
        return self._screen_capture()

    # ------------------------------------------------------------------
    # Alert State Machine 向け

    def send(self, message: ControlMessage) -> None:
        if message.type == ALERT_TRIGGERED:
            self.locked = True
            self.locked_view_id = (
                message.view_id if message.view_id is not None else self.active_view_id
            )
            self.outbox.append(
                ControlMessage(ALERT_TRIGGERED, self.locked_view_id, message.payload)
            )
        elif message.type == ALERT_COMPLETED:
            self._release()
            self.outbox.append(message)
        elif message.type == CLOSE_OFF_TASK_TAB:
            view_id = message.view_id if message.view_id is not None else self.locked_view_id
            self._release()
            self.outbox.append(message)
            self._close_and_switch(view_id)
        else:
            self.outbox.append(message)

    def _release(self) -> None:
        self.locked = False
        self.locked_view_id = None

    def _close_and_switch(self, view_id: int | None) -> None:
        if view_id is not None:
            self.outbox.append(ControlMessage(CLOSE_VIEW, view_id))
            self.remove_view(view_id)

        target = self.most_recent_on_task_view()
        if target is not None:
            self.outbox.append(ControlMessage(ACTIVATE_VIEW, target.view_id))
            self.activate(target.view_id)
        else:
            self.outbox.append(ControlMessage(OPEN_VIEW, None, {"url": BLANK_URL}))

    def most_recent_on_task_view(self) -> ViewInfo | None:
        candidates = [
            v
            for v in self.views.values()
            if not is_internal_url(v.url) and is_on_task_view(v.url)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda v: v.last_active)

    def drain(self) -> list[dict[str, Any]]:
        """溜まった制御メッセージを取り出す."""
        messages = [asdict(m) for m in self.outbox]
        self.outbox.clear()
        return messages
