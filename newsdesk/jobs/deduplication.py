"""
Deduplication Engine

Groups topically redundant items bound to an issue. Stages run in order and
each stage only sees items no earlier stage has placed in a group:

    Stage 0: Historical match  - same content as an item sent in a recent issue
    Stage 1: Content hash      - MD5 of normalized full text / body / title
    Stage 2: Title similarity  - Jaccard word-set similarity >= threshold
    Stage 3: Clustering oracle - semantic topic groups over the remainder

Deduplication fails open: malformed oracle output or an oracle error means
stage 3 contributes no groups, never that items are dropped.
"""

import re
import hashlib
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from ..config.settings import get_publication_settings
from ..utils.db import get_db
from ..utils.html_stripper import item_text
from ..utils.oracle import get_oracle

logger = logging.getLogger(__name__)

HISTORICAL_MATCH = 'historical_match'
CONTENT_HASH = 'content_hash'
TITLE_SIMILARITY = 'title_similarity'
AI_SEMANTIC = 'ai_semantic'

DEFAULT_DEDUP_CONFIG = {
    'strictness_threshold': 0.80,
    'historical_lookback_days': 3,
}

SUMMARY_CHARS = 1500


def content_hash(item: Dict[str, Any]) -> str:
    """MD5 of lowercase, whitespace-normalized full_text > body > title."""
    content = (item.get('full_text') or item.get('body') or '').strip().lower()
    normalized = re.sub(r'\s+', ' ', content)
    if not normalized:
        normalized = (item.get('title') or '').lower()
    return hashlib.md5(normalized.encode('utf-8')).hexdigest()


def normalize_title(title: Optional[str]) -> str:
    title = (title or '').lower()
    title = re.sub(r'[^\w\s]', '', title)
    return re.sub(r'\s+', ' ', title).strip()


def jaccard_similarity(title1: str, title2: str) -> float:
    """Word-set Jaccard similarity of two normalized titles."""
    words1 = set(w for w in title1.split(' ') if w)
    words2 = set(w for w in title2.split(' ') if w)

    if not words1 and not words2:
        return 1.0
    if not words1 or not words2:
        return 0.0

    return len(words1 & words2) / len(words1 | words2)


def is_suppressed(item_id: str, groups: List[Dict[str, Any]]) -> bool:
    """True iff the item is in some group's suppressed set."""
    return any(item_id in g.get('suppressed_item_ids', []) for g in groups)


def _group(topic_signature, primary_item_id, suppressed_item_ids, method, explanation):
    return {
        'topic_signature': topic_signature,
        'primary_item_id': primary_item_id,
        'suppressed_item_ids': list(suppressed_item_ids),
        'detection_method': method,
        'explanation': explanation,
    }


def detect_historical_duplicates(items, historical_hashes: Dict[str, str], lookback_days: int):
    groups = []
    for item in items:
        previous_title = historical_hashes.get(content_hash(item))
        if previous_title is None:
            continue
        groups.append(_group(
            f'Historical match: Previously published "{previous_title[:60]}..."',
            None,
            [item['id']],
            HISTORICAL_MATCH,
            f"Item was already included in an issue sent within the last {lookback_days} days",
        ))
    return groups


def detect_exact_duplicates(items):
    by_hash: Dict[str, List[Dict[str, Any]]] = {}
    for item in items:
        by_hash.setdefault(content_hash(item), []).append(item)

    groups = []
    for digest, matches in by_hash.items():
        if len(matches) < 2:
            continue
        primary, duplicates = matches[0], matches[1:]
        groups.append(_group(
            f"Exact content match (hash: {digest[:8]})",
            primary['id'],
            [d['id'] for d in duplicates],
            CONTENT_HASH,
            "Word-for-word identical content",
        ))
    return groups


def detect_title_duplicates(items, threshold: float):
    titles = [normalize_title(i.get('title')) for i in items]
    processed = set()
    groups = []

    for i, item in enumerate(items):
        if i in processed:
            continue
        duplicates = []
        for j in range(i + 1, len(items)):
            if j in processed:
                continue
            if jaccard_similarity(titles[i], titles[j]) >= threshold:
                duplicates.append(j)
                processed.add(j)

        if duplicates:
            processed.add(i)
            groups.append(_group(
                f'Title match: "{item.get("title", "")}"',
                item['id'],
                [items[j]['id'] for j in duplicates],
                TITLE_SIMILARITY,
                f"Titles are >={round(threshold * 100)}% similar",
            ))
    return groups


def _is_index(value: Any, size: int) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value < size


def detect_semantic_duplicates(items, oracle) -> List[Dict[str, Any]]:
    """
    Ask the clustering oracle for topic groups over the remaining items.

    The oracle's choice of primary is kept as-is. Any out-of-range or
    non-integer index voids the whole stage; structurally malformed groups
    are dropped individually.
    """
    summaries = [item_text(i, max_chars=SUMMARY_CHARS) for i in items]
    try:
        result = oracle.cluster(summaries)
    except Exception as e:
        logger.error(f"[Dedup] Stage 3 oracle error: {e}")
        return []

    raw_groups = result.get('groups') if isinstance(result, dict) else None
    if not isinstance(raw_groups, list) or not raw_groups:
        logger.info("[Dedup] Stage 3: no groups in oracle response")
        return []

    size = len(items)
    parsed = []
    for n, group in enumerate(raw_groups):
        if not isinstance(group, dict) or not isinstance(group.get('duplicate_indices'), list) \
                or 'primary_index' not in group:
            logger.warning(f"[Dedup] Stage 3: dropping malformed group {n}: {group!r}")
            continue
        indices = [group['primary_index']] + group['duplicate_indices']
        if not all(_is_index(idx, size) for idx in indices):
            logger.warning(f"[Dedup] Stage 3: invalid index in group {n}, ignoring oracle output")
            return []
        parsed.append(group)

    claimed = set()
    groups = []
    for group in parsed:
        primary = group['primary_index']
        if primary in claimed:
            logger.warning(f"[Dedup] Stage 3: primary {primary} already grouped, dropping group")
            continue
        duplicates = []
        for idx in group['duplicate_indices']:
            if idx == primary or idx in claimed or idx in duplicates:
                continue
            duplicates.append(idx)
        if not duplicates:
            continue

        claimed.add(primary)
        claimed.update(duplicates)
        groups.append(_group(
            str(group.get('topic_signature') or 'unknown'),
            items[primary]['id'],
            [items[idx]['id'] for idx in duplicates],
            AI_SEMANTIC,
            str(group.get('explanation') or ''),
        ))
    return groups


def deduplicate(
    items: List[Dict[str, Any]],
    oracle=None,
    config: Optional[Dict[str, Any]] = None,
    historical_hashes: Optional[Dict[str, str]] = None,
) -> List[Dict[str, Any]]:
    """
    Run all stages over items.

    Args:
        items: item rows (id, title, body, full_text)
        config: {strictness_threshold, historical_lookback_days}
        historical_hashes: {content_hash: title} of recently sent items.
            Stage 0 runs only when this is supplied.

    Returns:
        [{topic_signature, primary_item_id, suppressed_item_ids, detection_method, explanation}]
    """
    config = {**DEFAULT_DEDUP_CONFIG, **(config or {})}
    if not items:
        return []

    logger.info(f"[Dedup] Starting deduplication for {len(items)} items")
    grouped = set()
    all_groups: List[Dict[str, Any]] = []

    def remaining():
        return [i for i in items if i['id'] not in grouped]

    def accept(groups, stage):
        for g in groups:
            all_groups.append(g)
            if g['primary_item_id']:
                grouped.add(g['primary_item_id'])
            grouped.update(g['suppressed_item_ids'])
        logger.info(f"[Dedup] {stage}: {len(groups)} groups")

    if historical_hashes:
        accept(detect_historical_duplicates(items, historical_hashes, config['historical_lookback_days']),
               "Stage 0 (historical)")

    pending = remaining()
    if len(pending) >= 2:
        accept(detect_exact_duplicates(pending), "Stage 1 (content hash)")

    pending = remaining()
    if len(pending) >= 2:
        accept(detect_title_duplicates(pending, config['strictness_threshold']), "Stage 2 (title)")

    pending = remaining()
    if len(pending) >= 2:
        accept(detect_semantic_duplicates(pending, oracle or get_oracle()), "Stage 3 (semantic)")

    suppressed = sum(len(g['suppressed_item_ids']) for g in all_groups)
    logger.info(f"[Dedup] Total: {len(all_groups)} groups, {suppressed} items suppressed")
    return all_groups


def _historical_hashes(db, issue: Dict[str, Any], lookback_days: int) -> Dict[str, str]:
    issue_date = issue.get('issue_date') or date.today()
    since = issue_date - timedelta(days=lookback_days)
    try:
        rows = db.get_recently_sent_items(issue.get('publication_id'), since, issue['id'])
    except Exception as e:
        logger.error(f"[Dedup] Could not load recently sent items, skipping historical check: {e}")
        return {}
    return {content_hash(row): row.get('title') or '' for row in rows}


def deduplicate_issue(issue_id: str, oracle=None, db=None) -> Dict[str, Any]:
    """
    Deduplicate the items bound to an issue and persist the groups.

    Skips when the issue already has groups, so a re-run is a no-op.

    Returns:
        {groups, duplicates, skipped, by_method, errors}
    """
    db = db or get_db()
    results: Dict[str, Any] = {
        "groups": 0,
        "duplicates": 0,
        "skipped": False,
        "by_method": {},
        "errors": [],
    }

    existing = db.get_duplicate_groups(issue_id)
    if existing:
        logger.info(f"[Dedup] Issue {issue_id} already has {len(existing)} groups, skipping")
        results["skipped"] = True
        results["groups"] = len(existing)
        results["duplicates"] = sum(len(g.get('suppressed_item_ids') or []) for g in existing)
        return results

    issue = db.get_issue(issue_id)
    if issue is None:
        raise LookupError(f"Issue not found: {issue_id}")

    settings = get_publication_settings(issue.get('publication_id'), db=db)
    config = {
        'strictness_threshold': settings['dedup_strictness_threshold'],
        'historical_lookback_days': settings['dedup_historical_lookback_days'],
    }

    items = db.get_issue_items(issue_id)
    hashes = _historical_hashes(db, issue, config['historical_lookback_days'])
    groups = deduplicate(items, oracle=oracle, config=config, historical_hashes=hashes)

    for group in groups:
        try:
            db.insert_duplicate_group(issue_id, group)
            results["groups"] += 1
            results["duplicates"] += len(group['suppressed_item_ids'])
            method = group['detection_method']
            results["by_method"][method] = results["by_method"].get(method, 0) + len(group['suppressed_item_ids'])
        except Exception as e:
            error_msg = f"Error saving duplicate group '{group['topic_signature'][:60]}': {e}"
            logger.error(f"[Dedup] {error_msg}")
            results["errors"].append(error_msg)

    return results
