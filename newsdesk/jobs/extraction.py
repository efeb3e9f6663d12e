"""
Full-Text Extraction

Many feeds only carry a teaser. Before scoring, phase 1 scrapes the source
page of each bound item that has no full text yet and stores the main
content as markdown in full_text, so scoring, deduplication and generation
see the whole story.

Extraction is optional:
- Without FIRECRAWL_API_KEY the step is skipped
- Known blocked sites are never requested
- Any per-item failure leaves the item with its feed text

Each item is attempted once. The outcome is kept in extraction_status
(success, failed, blocked, empty) and items with a status are not retried.
"""

import os
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

from firecrawl import Firecrawl

from ..config.settings import get_env_int
from ..utils.db import get_db
from ..utils.workflow import PhaseBudget, PhaseTimeout

logger = logging.getLogger(__name__)

EXTRACTION_SUCCESS = 'success'
EXTRACTION_FAILED = 'failed'
EXTRACTION_BLOCKED = 'blocked'
EXTRACTION_EMPTY = 'empty'

# Sites the scraping service refuses
BLOCKED_DOMAINS = ('nytimes.com', 'nyt.com')

MAX_FULL_TEXT_CHARS = 20000


def is_blocked(url: Optional[str]) -> bool:
    host = (urlparse(url or '').hostname or '').lower()
    if not host:
        return True
    return any(host == domain or host.endswith('.' + domain) for domain in BLOCKED_DOMAINS)


def get_scraper() -> Optional[Firecrawl]:
    api_key = os.environ.get('FIRECRAWL_API_KEY')
    if not api_key:
        return None
    return Firecrawl(api_key=api_key)


def extract_item(scraper, item: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    """
    Scrape one item's source page.

    Returns:
        (extraction_status, full_text or None)
    """
    url = item.get('link')
    if is_blocked(url):
        logger.info(f"[Extract] Skipping blocked site: {(url or '')[:60]}")
        return EXTRACTION_BLOCKED, None

    try:
        document = scraper.scrape(url, formats=['markdown'], only_main_content=True)
    except Exception as e:
        logger.warning(f"[Extract] Scrape failed for {url[:60]}: {e}")
        return EXTRACTION_FAILED, None

    markdown = (getattr(document, 'markdown', None) or '').strip()
    if not markdown:
        logger.info(f"[Extract] No content extracted from {url[:60]}")
        return EXTRACTION_EMPTY, None

    return EXTRACTION_SUCCESS, markdown[:MAX_FULL_TEXT_CHARS]


def extract_full_text_for_issue(
    issue_id: str,
    scraper=None,
    budget: Optional[PhaseBudget] = None,
    max_workers: Optional[int] = None,
    db=None,
) -> Dict[str, Any]:
    """
    Fill full_text for the issue's bound items that lack it.

    Returns:
        {candidates, extracted, failed, blocked, empty, skipped, errors}
    """
    db = db or get_db()
    results: Dict[str, Any] = {
        "candidates": 0,
        "extracted": 0,
        "failed": 0,
        "blocked": 0,
        "empty": 0,
        "skipped": False,
        "errors": [],
    }

    items = [
        i for i in db.get_issue_items(issue_id)
        if not i.get('full_text') and not i.get('extraction_status')
    ]
    results["candidates"] = len(items)
    if not items:
        return results

    scraper = scraper or get_scraper()
    if scraper is None:
        logger.info("[Extract] FIRECRAWL_API_KEY not set, skipping extraction")
        results["skipped"] = True
        return results

    max_workers = max_workers or get_env_int('EXTRACTION_MAX_WORKERS', 4)
    counters = {
        EXTRACTION_SUCCESS: "extracted",
        EXTRACTION_FAILED: "failed",
        EXTRACTION_BLOCKED: "blocked",
        EXTRACTION_EMPTY: "empty",
    }

    def _extract(item):
        if budget is not None:
            budget.check('extraction')
        return extract_item(scraper, item)

    timed_out: Optional[PhaseTimeout] = None
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {executor.submit(_extract, item): item for item in items}
        for future in as_completed(futures):
            item = futures[future]
            try:
                status, full_text = future.result()
            except PhaseTimeout as e:
                timed_out = e
                continue

            try:
                db.set_item_extraction(item['id'], status, full_text)
                results[counters[status]] += 1
            except Exception as e:
                error_msg = f"Error saving extraction for {item['id']}: {e}"
                logger.error(f"[Extract] {error_msg}")
                results["errors"].append(error_msg)

    logger.info(
        f"[Extract] Issue {issue_id}: {results['extracted']} extracted, {results['failed']} failed, "
        f"{results['blocked']} blocked, {results['empty']} empty"
    )
    if timed_out is not None:
        raise timed_out
    return results
