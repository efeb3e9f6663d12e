"""
Feed Ingestion Job

Fetches a publication's feeds and adds new items to the content pool.

ARCHITECTURE:
  Feeds (per section affinity) -> parse -> validate -> item ids -> pool upsert

Fetching is pure: feeds are pulled concurrently with aiohttp and parsed
with feedparser, and one failing feed never aborts the others. Only the
final upsert writes to the database. No retries within a cycle; the next
scheduled run picks up whatever was missed.
"""

import asyncio
import calendar
import logging
from datetime import datetime, timezone, timedelta
from email.utils import parsedate_to_datetime
from typing import List, Dict, Any, Optional

import aiohttp
import feedparser
from feedparser.datetimes import _parse_date as parse_feed_date

from ..config.rss_feeds import get_feeds, feed_section, get_feeds_for_section
from ..config.settings import get_publication_settings
from ..utils.db import get_db
from ..utils.html_stripper import strip_html
from ..utils.item_id import generate_item_id
from ..utils.pool import upsert_items

logger = logging.getLogger(__name__)

USER_AGENT = "Newsdesk-NewsBot/1.0"
FETCH_TIMEOUT_SECONDS = 30


def parse_rss_date(date_str: str) -> Optional[datetime]:
    """
    Parse an RSS date string into a timezone-aware datetime.

    Handles multiple formats:
    - RFC 2822 (standard RSS): "Mon, 26 Dec 2025 10:30:00 GMT"
    - ISO 8601: "2025-12-26T10:30:00Z"
    - Various other formats feedparser might return

    Returns:
        Timezone-aware datetime, or None if parsing fails
    """
    if not date_str:
        return None

    try:
        # Try RFC 2822 format first (standard RSS)
        dt = parsedate_to_datetime(date_str)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (TypeError, ValueError, IndexError):
        pass

    try:
        if 'T' in date_str:
            if date_str.endswith('Z'):
                date_str = date_str[:-1] + '+00:00'
            dt = datetime.fromisoformat(date_str)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt
    except ValueError:
        pass

    try:
        # Let feedparser try to parse it
        parsed = parse_feed_date(date_str)
        if parsed:
            return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        pass

    return None


def _extract_image_url(entry) -> Optional[str]:
    """Image URL from media content, media thumbnail or an image enclosure."""
    if getattr(entry, 'media_content', None):
        url = entry.media_content[0].get('url')
        if url:
            return url
    if getattr(entry, 'media_thumbnail', None):
        url = entry.media_thumbnail[0].get('url')
        if url:
            return url
    for enc in getattr(entry, 'enclosures', None) or []:
        if enc.get('type', '').startswith('image/'):
            return enc.get('href') or enc.get('url')
    return None


def _extract_full_text(entry) -> Optional[str]:
    """Plain text of content:encoded, if the feed carries it."""
    contents = getattr(entry, 'content', None) or []
    for content in contents:
        value = content.get('value') if hasattr(content, 'get') else None
        if value:
            text = strip_html(value)
            if text:
                return text
    return None


def parse_entries(content: str, feed: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Parse feed XML into raw item dicts. No validation or filtering here.

    Returns:
        [{title, link, published, published_at, body, full_text, image_url,
          feed_id, feed_name, section}]
    """
    parsed = feedparser.parse(content)
    section = feed.get('section') or feed_section(feed)

    items = []
    for entry in parsed.entries:
        published = entry.get('published') or entry.get('updated') or ''
        items.append({
            "title": (entry.get("title") or "").strip(),
            "link": (entry.get("link") or "").strip(),
            "published": published,
            "published_at": parse_rss_date(published),
            "body": entry.get("summary") or entry.get("description") or "",
            "full_text": _extract_full_text(entry),
            "image_url": _extract_image_url(entry),
            "feed_id": feed.get('id'),
            "feed_name": feed.get('name'),
            "section": section,
        })
    return items


class FeedFetchError(Exception):
    """A single feed could not be fetched or parsed."""


async def fetch_feed(
    session: aiohttp.ClientSession,
    feed: Dict[str, Any]
) -> List[Dict[str, Any]]:
    """
    Fetch and parse a single RSS/Atom feed.

    Raises:
        FeedFetchError: non-200 response, timeout, transport or parse error.
            fetch_all_feeds counts these per feed and carries on.
    """
    try:
        async with session.get(
            feed["url"],
            timeout=aiohttp.ClientTimeout(total=FETCH_TIMEOUT_SECONDS),
            headers={"User-Agent": USER_AGENT}
        ) as response:
            if response.status != 200:
                raise FeedFetchError(f"HTTP {response.status}")

            content = await response.text()

        items = parse_entries(content, feed)

    except FeedFetchError:
        raise
    except asyncio.TimeoutError as e:
        raise FeedFetchError(f"Timeout after {FETCH_TIMEOUT_SECONDS}s") from e
    except Exception as e:
        raise FeedFetchError(str(e) or type(e).__name__) from e

    logger.info(f"[Ingest] Fetched {len(items)} items from {feed.get('name')}")
    return items


async def _gather_feeds(feeds: List[Dict[str, Any]]) -> Dict[str, Any]:
    async with aiohttp.ClientSession() as session:
        tasks = [fetch_feed(session, feed) for feed in feeds]
        results = await asyncio.gather(*tasks, return_exceptions=True)

    all_items: List[Dict[str, Any]] = []
    failed = 0
    for feed, result in zip(feeds, results):
        if isinstance(result, BaseException):
            logger.warning(f"[Ingest] Error fetching {feed.get('name')}: {result}")
            failed += 1
        else:
            all_items.extend(result)
    return {"items": all_items, "feeds_failed": failed}


def fetch_all_feeds(feeds: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Fetch all feeds concurrently.

    Returns:
        {items, feeds_failed}
    """
    logger.info(f"[Ingest] Fetching {len(feeds)} feeds in parallel...")
    if not feeds:
        return {"items": [], "feeds_failed": 0}
    return asyncio.run(_gather_feeds(feeds))


def _merge_sections(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if a == b or b is None:
        return a
    if a is None:
        return b
    return 'both'


def load_feeds(publication_id: Optional[str], db=None, debug: bool = False) -> List[Dict[str, Any]]:
    """Active feeds for the publication, or the built-in defaults when none are configured."""
    feeds: List[Dict[str, Any]] = []
    if publication_id:
        feeds = (db or get_db()).get_active_feeds(publication_id)
    if not feeds:
        feeds = [dict(f) for f in get_feeds(debug=debug)]
    for feed in feeds:
        feed['section'] = feed_section(feed)
    return [f for f in feeds if f['section']]


def ingest_feeds(publication_id: Optional[str] = None, debug: bool = False, db=None) -> Dict[str, Any]:
    """
    Main ingestion job function.

    Fetches the publication's feeds, drops invalid and stale entries,
    and adds new items to the pool.

    Returns:
        Results dict with counts and timing
    """
    db = db or get_db()
    started_at = datetime.now(timezone.utc)
    logger.info(f"[Ingest] Starting ingestion for publication {publication_id} (debug={debug})")

    results: Dict[str, Any] = {
        "started_at": started_at.isoformat(),
        "feeds_count": 0,
        "feeds_failed": 0,
        "items_found": 0,
        "items_ingested": 0,
        "items_skipped_duplicate": 0,
        "items_skipped_invalid": 0,
        "items_skipped_old": 0,
        "errors": []
    }

    try:
        settings = get_publication_settings(publication_id, db=db)
        feeds = load_feeds(publication_id, db=db, debug=debug)
        results["feeds_count"] = len(feeds)

        fetched = {"items": [], "feeds_failed": 0}
        primary_feeds = get_feeds_for_section(feeds, 'primary')
        secondary_only = [f for f in get_feeds_for_section(feeds, 'secondary') if not f.get('use_for_primary')]
        for section_feeds in (primary_feeds, secondary_only):
            batch = fetch_all_feeds(section_feeds)
            fetched["items"].extend(batch["items"])
            fetched["feeds_failed"] += batch["feeds_failed"]

        raw_items = fetched["items"]
        results["feeds_failed"] = fetched["feeds_failed"]
        results["items_found"] = len(raw_items)
        logger.info(f"[Ingest] Found {len(raw_items)} total items")

        now = datetime.now(timezone.utc)
        lookback = {
            'primary': timedelta(hours=settings['primary_lookback_hours']),
            'secondary': timedelta(hours=settings['secondary_lookback_hours']),
        }
        lookback['both'] = max(lookback['primary'], lookback['secondary'])

        candidates: Dict[str, Dict[str, Any]] = {}
        for raw in raw_items:
            if not raw["link"] or not raw["title"]:
                results["items_skipped_invalid"] += 1
                continue

            published_at = raw.get("published_at")
            if published_at and published_at < now - lookback[raw["section"]]:
                results["items_skipped_old"] += 1
                continue

            item_id = generate_item_id(raw["link"], raw["title"])
            if not item_id:
                results["items_skipped_invalid"] += 1
                continue

            if item_id in candidates:
                # Same story from another feed: widen the section affinity
                existing = candidates[item_id]
                existing["section"] = _merge_sections(existing["section"], raw["section"])
                results["items_skipped_duplicate"] += 1
                continue

            candidates[item_id] = {
                "id": item_id,
                "feed_id": raw.get("feed_id"),
                "section": raw["section"],
                "title": raw["title"],
                "link": raw["link"],
                "body": raw.get("body") or "",
                "full_text": raw.get("full_text"),
                "image_url": raw.get("image_url"),
                "published_at": published_at,
            }

        created = upsert_items(candidates.values(), db=db)
        results["items_ingested"] = created
        results["items_skipped_duplicate"] += len(candidates) - created

        logger.info(
            f"[Ingest] Ingestion complete: {results['feeds_count']} feeds "
            f"({results['feeds_failed']} failed), {results['items_found']} found, "
            f"{results['items_ingested']} ingested, {results['items_skipped_old']} too old, "
            f"{results['items_skipped_duplicate']} duplicates, {results['items_skipped_invalid']} invalid"
        )

    except Exception as e:
        error_msg = f"Ingestion job failed: {str(e)}"
        logger.exception(f"[Ingest] {error_msg}")
        results["errors"].append(error_msg)

    results["completed_at"] = datetime.now(timezone.utc).isoformat()
    return results
