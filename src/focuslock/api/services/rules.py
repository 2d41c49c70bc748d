"""Category rules: URL → category, default task state, auto-flag list."""

from urllib.parse import urlsplit

from focuslock.model.models import ScreenState

IDLE_THRESHOLD_MS = 60_000

DOMAIN_MAP: dict[str, tuple[str, ...]] = {
    "code": (
        "github.com",
        "stackoverflow.com",
        "gitlab.com",
        "replit.com",
        "codepen.io",
        "codesandbox.io",
    ),
    "docs": (
        "developer.mozilla.org",
        "docs.microsoft.com",
        "docs.python.org",
        "docs.rs",
        "doc.rust-lang.org",
        "reactjs.org",
        "nodejs.org",
    ),
    "video": ("youtube.com", "twitch.tv", "netflix.com", "hulu.com", "vimeo.com"),
    "social": (
        "twitter.com",
        "x.com",
        "facebook.com",
        "instagram.com",
        "reddit.com",
        "linkedin.com",
        "discord.com",
        "slack.com",
    ),
    "games": ("chess.com", "lichess.org", "miniclip.com", "pogo.com"),
    "shopping": ("amazon.com", "ebay.com", "etsy.com", "shopify.com"),
    "sports": (
        "espn.com",
        "nba.com",
        "nfl.com",
        "mlb.com",
        "nhl.com",
        "sports.yahoo.com",
        "bleacherreport.com",
        "cbssports.com",
        "si.com",
        "foxsports.com",
    ),
    "news": (
        "cnn.com",
        "bbc.com",
        "nytimes.com",
        "washingtonpost.com",
        "theguardian.com",
        "reuters.com",
    ),
}

OFF_TASK_CATEGORIES = frozenset(
    {"video", "social", "games", "shopping", "sports", "news"}
)

# ロック対象になるカテゴリ (news は含めない)
ALERT_CATEGORIES = frozenset({"social", "sports", "games", "shopping", "video"})

# ビジョンの結果に関係なく常に off_task とみなすドメイン
AUTO_FLAGGED_DOMAINS: tuple[str, ...] = (
    "youtube.com",
    "reddit.com",
    "twitter.com",
    "x.com",
    "facebook.com",
    "instagram.com",
    "tiktok.com",
    "twitch.tv",
    "netflix.com",
    "hulu.com",
    "espn.com",
    "nba.com",
    "nfl.com",
    "mlb.com",
    "nhl.com",
    "bleacherreport.com",
    "cnn.com",
    "nytimes.com",
    "buzzfeed.com",
    "9gag.com",
)

# 問題を解いた後に切り替える先の候補 (部分一致)
ON_TASK_VIEW_MARKERS: tuple[str, ...] = (
    "github.com",
    "stackoverflow.com",
    "gitlab.com",
    "docs.",
    "developer.mozilla.org",
    "localhost",
    "127.0.0.1",
    ".edu",
)

INTERNAL_URL_PREFIXES: tuple[str, ...] = (
    "chrome://",
    "chrome-extension://",
    "moz-extension://",
    "edge://",
    "about:",
)


def extract_domain(url: str) -> str | None:
    """URLからホスト名を取り出す. ``www.`` は除去. 解析できなければ None."""
    if not url:
        return None
    try:
        hostname = urlsplit(url).hostname
    except ValueError:
        return None
    if not hostname:
        return None
    if hostname.startswith("www."):
        hostname = hostname[4:]
    return hostname


def matches_domain(hostname: str, domain: str) -> bool:
    """完全一致またはサブドメイン一致."""
    return hostname == domain or hostname.endswith("." + domain)


def categorize_domain(hostname: str) -> str:
    for category, domains in DOMAIN_MAP.items():
        if any(matches_domain(hostname, d) for d in domains):
            return category
    return "other"


def classify(url: str) -> str:
    """URLをカテゴリに分類する. 不正なURLは ``other``."""
    hostname = extract_domain(url)
    if hostname is None:
        return "other"
    return categorize_domain(hostname)


def decide_default(category: str, idle_ms: int) -> tuple[ScreenState, float]:
    """カテゴリとアイドル時間から既定の状態を決める."""
    if idle_ms >= IDLE_THRESHOLD_MS:
        return "off_task", 0.9
    if category in OFF_TASK_CATEGORIES:
        return "off_task", 0.8
    return "on_task", 0.7


def is_auto_flagged(url: str) -> bool:
    hostname = extract_domain(url)
    if hostname is None:
        return False
    return any(matches_domain(hostname, d) for d in AUTO_FLAGGED_DOMAINS)


def is_internal_url(url: str) -> bool:
    """ブラウザ内部ページや拡張機能ページは評価しない."""
    return not url or url.startswith(INTERNAL_URL_PREFIXES)


def is_on_task_view(url: str) -> bool:
    return any(marker in url for marker in ON_TASK_VIEW_MARKERS)
