from __future__ import annotations

from urllib.parse import quote

from .prompts import ReferenceDates

X_SEARCH_URL = "https://x.com/search"
POPULAR_MIN_FAVES = 100


def _x_search(query: str, *, live: bool) -> str:
    url = f"{X_SEARCH_URL}?q={quote(query, safe='')}&src=typed_query"
    return f"{url}&f=live" if live else url


def build_search_links(topic: str, dates: ReferenceDates) -> str:
    """Markdown block of X search links computed from the clock, not the model."""
    latest = _x_search(topic, live=True)
    since_yesterday = _x_search(f"{topic} since:{dates.yesterday}", live=True)
    since_last_week = _x_search(f"{topic} since:{dates.one_week_ago}", live=False)
    popular = _x_search(f"{topic} min_faves:{POPULAR_MIN_FAVES}", live=False)
    return (
        "## 【自動生成】推奨検索リンク (Verified Dates)\n"
        f"AIが生成したキーワードではなく、システムが現在日時({dates.today})に基づいて生成した確実な検索リンクです。\n"
        "\n"
        f"- [🔍 最新の話題 (Live)]({latest})\n"
        f"- [📅 昨日からの話題 (Since {dates.yesterday})]({since_yesterday})\n"
        f"- [📅 先週からの話題 (Since {dates.one_week_ago})]({since_last_week})\n"
        f"- [🔥 人気の投稿 (Min Faves: {POPULAR_MIN_FAVES})]({popular})\n"
    )
