"""
RSS Feed Configuration for Ingestion Engine

Publications configure their feeds in the feeds table. These defaults are
used when a publication has none configured. Each feed declares which
sections it supplies; a feed used for both gives its items section "both".
"""

from typing import Dict, Any, List, Optional

RSS_FEEDS = [
    # Tech News
    {"name": "The Verge", "url": "https://www.theverge.com/rss/index.xml", "use_for_primary": True, "use_for_secondary": False},
    {"name": "TechCrunch", "url": "https://techcrunch.com/feed/", "use_for_primary": True, "use_for_secondary": False},
    {"name": "Ars Technica", "url": "https://feeds.arstechnica.com/arstechnica/index", "use_for_primary": True, "use_for_secondary": True},

    # Finance
    {"name": "Yahoo Finance", "url": "https://news.yahoo.com/rss/finance", "use_for_primary": False, "use_for_secondary": True},
    {"name": "CNBC Finance", "url": "https://www.cnbc.com/id/10000664/device/rss/rss.html", "use_for_primary": False, "use_for_secondary": True},

    # Google News Aggregators
    {"name": "Google News AI", "url": "https://news.google.com/rss/search?q=AI+OR+%22artificial+intelligence%22+when:12h&hl=en-US&gl=US&ceid=US:en", "use_for_primary": True, "use_for_secondary": False},
]

# For debugging - can limit to specific feeds
DEBUG_FEEDS = [
    {"name": "Yahoo Finance", "url": "https://news.yahoo.com/rss/finance", "use_for_primary": True, "use_for_secondary": True},
]


def get_feeds(debug: bool = False) -> List[Dict[str, Any]]:
    """Get the appropriate default feed list based on debug mode."""
    return DEBUG_FEEDS if debug else RSS_FEEDS


def feed_section(feed: Dict[str, Any]) -> Optional[str]:
    """Section affinity of items from this feed, or None if it supplies neither section."""
    primary = bool(feed.get('use_for_primary'))
    secondary = bool(feed.get('use_for_secondary'))
    if primary and secondary:
        return 'both'
    if primary:
        return 'primary'
    if secondary:
        return 'secondary'
    return None


def get_feeds_for_section(feeds: List[Dict[str, Any]], section: str) -> List[Dict[str, Any]]:
    """Feeds that supply the given section ("primary" or "secondary")."""
    key = f"use_for_{section}"
    return [f for f in feeds if f.get(key)]
