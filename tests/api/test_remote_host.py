from focuslock.api.services.host import (
    ACTIVATE_VIEW,
    BLANK_URL,
    CLOSE_VIEW,
    OPEN_VIEW,
    RemoteHost,
)
from focuslock.model.models import (
    ALERT_COMPLETED,
    ALERT_TRIGGERED,
    CLOSE_OFF_TASK_TAB,
    ControlMessage,
)
from focuslock.watchers.idle import IdleMonitor


class TestRemoteHost:
    """companion が報告するビュー状態の管理"""

    def test_active_view(self, host):
        assert host.active_view() is None
        host.update_view(1, "https://github.com", "GitHub", active=True)
        view = host.active_view()
        assert view.url == "https://github.com"
        assert view.title == "GitHub"

    def test_update_without_activation_keeps_active(self, host):
        host.update_view(1, "https://github.com", active=True)
        host.update_view(2, "https://nba.com")
        assert host.active_view().view_id == 1

    def test_remove_active_view(self, host):
        host.update_view(1, "https://github.com", active=True)
        host.remove_view(1)
        assert host.active_view() is None

    def test_screenshot_and_idle(self, host):
        assert host.capture_screenshot() == "c2NyZWVu"
        host.report_idle(65_000)
        assert host.idle_ms() == 65_000

    def test_no_screen_capture(self, clock):
        host = RemoteHost(idle=IdleMonitor(lambda: 0), clock=clock)
        assert host.capture_screenshot() is None


class TestRemoteHostLocking:
    """ロック中のビュー切り替えとロック解除後の処理"""

    def test_trigger_locks_active_view(self, host):
        host.update_view(5, "https://nba.com", active=True)
        host.send(ControlMessage(ALERT_TRIGGERED, None, {"kind": "drowsiness"}))
        assert host.locked
        assert host.locked_view_id == 5
        assert host.drain() == [
            {"type": ALERT_TRIGGERED, "view_id": 5, "payload": {"kind": "drowsiness"}}
        ]

    def test_switch_reverted_while_locked(self, host):
        host.update_view(1, "https://github.com", active=True)
        host.update_view(5, "https://nba.com", active=True)
        host.send(ControlMessage(ALERT_TRIGGERED, 5))
        host.drain()

        assert not host.activate(1)
        assert host.active_view_id == 5
        assert host.drain() == [{"type": ACTIVATE_VIEW, "view_id": 5, "payload": {}}]

    def test_completed_releases_without_closing(self, host):
        host.update_view(5, "https://nba.com", active=True)
        host.send(ControlMessage(ALERT_TRIGGERED, 5))
        host.send(ControlMessage(ALERT_COMPLETED, 5))
        assert not host.locked
        assert 5 in host.views
        assert host.activate(5)

    def test_close_switches_to_most_recent_work_view(self, host, clock):
        host.update_view(1, "https://github.com/a", active=True)
        clock.advance(5)
        host.update_view(2, "https://docs.python.org/3/", active=True)
        clock.advance(5)
        host.update_view(3, "https://example.org", active=True)
        clock.advance(5)
        host.update_view(5, "https://nba.com", active=True)
        host.send(ControlMessage(ALERT_TRIGGERED, 5))
        host.drain()

        host.send(ControlMessage(CLOSE_OFF_TASK_TAB, 5))

        sent = [(m["type"], m["view_id"]) for m in host.drain()]
        assert sent == [(CLOSE_OFF_TASK_TAB, 5), (CLOSE_VIEW, 5), (ACTIVATE_VIEW, 2)]
        assert 5 not in host.views
        assert host.active_view_id == 2

    def test_close_opens_blank_without_work_view(self, host):
        host.update_view(5, "https://nba.com", active=True)
        host.send(ControlMessage(ALERT_TRIGGERED, 5))
        host.drain()
        host.send(ControlMessage(CLOSE_OFF_TASK_TAB, 5))
        assert host.drain()[-1] == {
            "type": OPEN_VIEW,
            "view_id": None,
            "payload": {"url": BLANK_URL},
        }


class TestIdleMonitor:
    """アイドル時間"""

    def test_max_of_system_and_reported(self):
        monitor = IdleMonitor(lambda: 1_000)
        assert monitor.idle_ms() == 1_000
        monitor.report(5_000)
        assert monitor.idle_ms() == 5_000

    def test_negative_report_clamped(self):
        monitor = IdleMonitor(lambda: 0)
        monitor.report(-10)
        assert monitor.idle_ms() == 0

    def test_source_error_counts_as_zero(self):
        def broken() -> int:
            msg = "no display"
            raise OSError(msg)

        monitor = IdleMonitor(broken)
        monitor.report(200)
        assert monitor.idle_ms() == 200
