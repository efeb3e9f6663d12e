"""
Content Pool Store

Items live in the pool while issue_id is NULL. Binding to an issue and
returning to the pool are single-item updates: a conflict on one item is
logged and skipped, and never blocks the rest of the batch.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List

from .db import get_db

logger = logging.getLogger(__name__)


def upsert_items(items: Iterable[Dict[str, Any]], db=None) -> int:
    """Insert items whose id is not yet in the pool. Returns the count of new rows."""
    db = db or get_db()
    created = 0
    for item in items:
        try:
            if db.upsert_item(item):
                created += 1
        except Exception as e:
            logger.error(f"[Pool] Error storing item {item.get('id')}: {e}")
    return created


def bind_items_to_issue(issue_id: str, item_ids: Iterable[str], db=None) -> List[str]:
    """
    Bind pool items to an issue one at a time.

    Items already bound to another issue (or archived) are skipped.

    Returns:
        The item ids actually bound by this call
    """
    db = db or get_db()
    bound = []
    for item_id in item_ids:
        try:
            if db.bind_item(item_id, issue_id):
                bound.append(item_id)
            else:
                logger.info(f"[Pool] Item {item_id} no longer in pool, skipping")
        except Exception as e:
            logger.error(f"[Pool] Error binding {item_id} to issue {issue_id}: {e}")
    return bound


def reclaim_unbound_items(issue_id: str, db=None) -> Dict[str, Any]:
    """
    Return items bound to the issue but not used by any active article.

    Running it again with no changes in between reclaims nothing.

    Returns:
        {bound, consumed, reclaimed, errors}
    """
    db = db or get_db()
    results: Dict[str, Any] = {
        "bound": 0,
        "consumed": 0,
        "reclaimed": 0,
        "errors": [],
    }

    bound_items = db.get_issue_items(issue_id)
    consumed = {a['item_id'] for a in db.get_articles(issue_id, active_only=True)}
    results["bound"] = len(bound_items)
    results["consumed"] = len(consumed)

    for item in bound_items:
        if item['id'] in consumed:
            continue
        try:
            if db.unbind_item(item['id'], issue_id):
                results["reclaimed"] += 1
        except Exception as e:
            error_msg = f"Error reclaiming {item['id']}: {e}"
            logger.error(f"[Pool] {error_msg}")
            results["errors"].append(error_msg)

    logger.info(
        f"[Pool] Issue {issue_id}: {results['bound']} bound, "
        f"{results['consumed']} consumed, {results['reclaimed']} reclaimed"
    )
    return results


def release_issue_items(issue_id: str, db=None) -> Dict[str, Any]:
    """Return every item bound to the issue to the pool."""
    db = db or get_db()
    results: Dict[str, Any] = {"released": 0, "errors": []}

    for item in db.get_issue_items(issue_id):
        try:
            if db.unbind_item(item['id'], issue_id):
                results["released"] += 1
        except Exception as e:
            error_msg = f"Error releasing {item['id']}: {e}"
            logger.error(f"[Pool] {error_msg}")
            results["errors"].append(error_msg)

    logger.info(f"[Pool] Released {results['released']} items from issue {issue_id}")
    return results


def archive_stale_items(max_age_hours: int, db=None) -> int:
    """Archive unbound pool items older than max_age_hours. Archived items are never bound again."""
    db = db or get_db()
    cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
    archived = 0
    for item_id in db.get_stale_pool_item_ids(cutoff):
        try:
            if db.archive_item(item_id):
                archived += 1
        except Exception as e:
            logger.error(f"[Pool] Error archiving {item_id}: {e}")
    if archived:
        logger.info(f"[Pool] Archived {archived} items older than {max_age_hours}h")
    return archived
