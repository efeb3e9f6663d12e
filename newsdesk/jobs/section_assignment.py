"""
Section Assigner

Binds candidate items from the pool to an issue, then picks the top-rated
items for each section:

    1. bind_candidates   - most recent pool items whose affinity covers the section
    2. assign_top_items  - rated, not suppressed, not used by the other section,
                           ordered by total score
    3. assign_sections   - primary first, then secondary without primary's picks

Bound items that end up without an article are returned to the pool by
reclamation after article generation.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from ..config.settings import SECTIONS
from ..utils.db import get_db
from ..utils.pool import bind_items_to_issue
from .deduplication import is_suppressed

logger = logging.getLogger(__name__)

OTHER_SECTION = {'primary': 'secondary', 'secondary': 'primary'}


def bind_candidates(issue_id: str, section: str, pool_size: int, lookback_hours: int, db=None) -> List[str]:
    """Bind up to pool_size of the most recent eligible pool items. Returns the ids bound."""
    db = db or get_db()
    since = datetime.now(timezone.utc) - timedelta(hours=lookback_hours)
    candidates = db.get_pool_items(section, since, pool_size)
    bound = bind_items_to_issue(issue_id, [c['id'] for c in candidates], db=db)
    logger.info(f"[Assign] Issue {issue_id} {section}: bound {len(bound)} of {len(candidates)} candidates")
    return bound


def _sort_key(item: Dict[str, Any]):
    published_at: Optional[datetime] = item.get('published_at')
    ts = published_at.timestamp() if published_at else float('-inf')
    return (-item['total_score'], -ts, item['id'])


def assign_top_items(issue_id: str, section: str, limit: int,
                     exclude_ids: Iterable[str] = (), db=None) -> List[Dict[str, Any]]:
    """
    Top-scoring eligible items for a section, at most limit of them.

    Ties on score go to the later published item, then the lower item id.
    Each returned item carries its total_score.
    """
    db = db or get_db()
    if limit <= 0:
        return []

    excluded = set(exclude_ids)
    other = OTHER_SECTION[section]
    excluded.update(a['item_id'] for a in db.get_articles(issue_id, section=other, active_only=True))

    groups = db.get_duplicate_groups(issue_id)
    items = db.get_issue_items(issue_id, section)
    ratings = db.get_ratings([i['id'] for i in items])

    eligible = []
    for item in items:
        rating = ratings.get(item['id'])
        if rating is None or item['id'] in excluded or is_suppressed(item['id'], groups):
            continue
        eligible.append({**item, 'total_score': float(rating['total_score'])})

    eligible.sort(key=_sort_key)
    selected = eligible[:limit]
    logger.info(
        f"[Assign] Issue {issue_id} {section}: {len(eligible)} eligible, "
        f"selected {len(selected)} (limit {limit})"
    )
    return selected


def assign_sections(issue_id: str, limits: Dict[str, int], db=None) -> Dict[str, List[Dict[str, Any]]]:
    """
    Assign items to primary then secondary. No item is assigned to both.

    Returns:
        {section: [items]}
    """
    db = db or get_db()
    assigned: Dict[str, List[Dict[str, Any]]] = {}
    taken: set = set()
    for section in SECTIONS:
        picks = assign_top_items(issue_id, section, limits.get(section, 0), exclude_ids=taken, db=db)
        assigned[section] = picks
        taken.update(p['id'] for p in picks)
    return assigned
