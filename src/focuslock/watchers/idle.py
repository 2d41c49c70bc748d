"""Idle detection helpers (Windows uses LASTINPUTINFO; others fallback to 0)."""

from __future__ import annotations

import sys
from collections.abc import Callable
from typing import Any, ClassVar

if sys.platform == "win32":
    # Windows 専用の ctypes 構成要素だけこのブロックで import する
    from ctypes import Structure, byref, sizeof, windll, wintypes

    class LASTINPUTINFO(Structure):
        """Windows LASTINPUTINFO structure."""

        _fields_: ClassVar[Any] = [
            ("cbSize", wintypes.UINT),
            ("dwTime", wintypes.DWORD),
        ]

    def get_idle_ms() -> int:
        """最後の入力からの経過時間をミリ秒で取得（Windows）。"""
        lii = LASTINPUTINFO()
        lii.cbSize = sizeof(LASTINPUTINFO)
        try:
            ok = windll.user32.GetLastInputInfo(byref(lii))
        except OSError:
            return 0
        if not ok:
            return 0
        return max(0, int(windll.kernel32.GetTickCount()) - int(lii.dwTime))

else:
    # 非Windows はホスト (ブラウザ拡張) から報告された値を使う
    def get_idle_ms() -> int:
        """非Windowsでは 0 を返すフォールバック実装。"""
        return 0


class IdleMonitor:
    """OS のアイドル時間とホストから報告されたアイドル時間の大きい方を返す."""

    def __init__(self, source: Callable[[], int] = get_idle_ms) -> None:
        self._source = source
        self.reported_ms = 0

    def report(self, idle_ms: int) -> None:
        self.reported_ms = max(0, int(idle_ms))

    def idle_ms(self) -> int:
        try:
            system_ms = self._source()
        except OSError:
            system_ms = 0
        return max(system_ms, self.reported_ms)
