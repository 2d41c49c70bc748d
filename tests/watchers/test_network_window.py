from focuslock.watchers.network import ActivityWindow


class TestActivityWindow:
    """スライディングウィンドウ集計のテスト"""

    def test_record_then_snapshot(self, clock):
        """記録直後のスナップショットに1件として現れる"""
        window = ActivityWindow(clock=clock)
        assert window.record("https://cdn.example.com/app.js") is True

        snapshot = window.snapshot()
        assert snapshot.domains == ("cdn.example.com",)
        assert snapshot.total_count == 1
        assert snapshot.details[0].count == 1

    def test_expiry_after_window(self, clock):
        """ウィンドウ経過後はドメインが消える"""
        window = ActivityWindow(clock=clock)
        window.record("https://cdn.example.com/app.js")
        clock.advance(31)
        snapshot = window.snapshot()
        assert snapshot.domains == ()
        assert snapshot.total_count == 0

    def test_counts_accumulate_per_domain(self, clock):
        window = ActivityWindow(clock=clock)
        window.record("https://www.espn.com/a")
        window.record("https://espn.com/b")
        window.record("https://doubleclick.net/c")
        snapshot = window.snapshot()
        assert set(snapshot.domains) == {"espn.com", "doubleclick.net"}
        assert snapshot.total_count == 3

    def test_only_recent_domains_survive(self, clock):
        window = ActivityWindow(clock=clock)
        window.record("https://old.example.com")
        clock.advance(20)
        window.record("https://new.example.com")
        clock.advance(15)
        assert window.snapshot().domains == ("new.example.com",)

    def test_noise_is_filtered(self, clock):
        """拡張機能・chrome ホスト・自分自身の API は数えない"""
        window = ActivityWindow(own_origins=("localhost:5577",), clock=clock)
        assert window.record("chrome-extension://abc/bg.js") is False
        assert window.record("https://chromewebstore.google.com/x") is False
        assert window.record("http://localhost:5577/events/network") is False
        assert window.record("data:image/png;base64,AAAA") is False
        assert window.snapshot().domains == ()

    def test_resource_type_filter(self, clock):
        window = ActivityWindow(clock=clock)
        assert window.record("https://fonts.gstatic.com/a.woff", "font") is False
        assert window.record("https://api.example.com/data", "xmlhttprequest") is True
        assert window.snapshot().domains == ("api.example.com",)

    def test_snapshot_is_immutable_copy(self, clock):
        window = ActivityWindow(clock=clock)
        window.record("https://a.example.com")
        first = window.snapshot()
        window.record("https://b.example.com")
        assert first.domains == ("a.example.com",)

    def test_reset(self, clock):
        window = ActivityWindow(clock=clock)
        window.record("https://a.example.com")
        window.reset()
        assert window.snapshot().total_count == 0
