"""
Scoring Engine

Rates each bound item against its section's weighted criteria with one
oracle call per item. The total is always recomputed here:

    total_score = sum(score * weight) / sum(weight)

Scoring fails closed: a missing criterion, wrong count, non-numeric or
out-of-range score, or an oracle error leaves the item unrated.
"""

import math
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional

from ..config.settings import get_env_int
from ..utils.db import get_db
from ..utils.html_stripper import item_text
from ..utils.oracle import get_oracle
from ..utils.prompts import get_section_criteria
from ..utils.workflow import PhaseBudget, PhaseTimeout

logger = logging.getLogger(__name__)

MIN_SCORE = 0
MAX_SCORE = 10


def compute_total_score(criteria_scores: List[Dict[str, Any]]) -> float:
    """Weighted mean of criterion scores. Zero total weight gives 0.0."""
    total_weight = sum(float(c['weight']) for c in criteria_scores)
    if total_weight == 0:
        return 0.0
    weighted = sum(float(c['score']) * float(c['weight']) for c in criteria_scores)
    return weighted / total_weight


def is_valid_score(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if math.isnan(value) or math.isinf(value):
        return False
    return MIN_SCORE <= value <= MAX_SCORE


def score_item(item: Dict[str, Any], criteria: List[Dict[str, Any]], oracle=None) -> Optional[Dict[str, Any]]:
    """
    Rate one item. Returns {item_id, criteria, total_score} or None when unrated.
    """
    oracle = oracle or get_oracle()
    item_id = item.get('id')

    try:
        response = oracle.score(item_text(item), criteria)
    except Exception as e:
        logger.warning(f"[Score] Oracle error for {item_id}: {e}")
        return None

    scores = response.get('scores') if isinstance(response, dict) else None
    if not isinstance(scores, list) or len(scores) != len(criteria):
        logger.warning(
            f"[Score] {item_id}: expected {len(criteria)} scores, got "
            f"{len(scores) if isinstance(scores, list) else 'none'}"
        )
        return None

    criteria_scores = []
    for criterion, entry in zip(criteria, scores):
        if not isinstance(entry, dict) or not is_valid_score(entry.get('score')):
            logger.warning(f"[Score] {item_id}: invalid score for {criterion['name']}: {entry!r}")
            return None
        criteria_scores.append({
            'name': criterion['name'],
            'score': entry['score'],
            'weight': float(criterion['weight']),
            'reason': str(entry.get('reason') or ''),
        })

    return {
        'item_id': item_id,
        'criteria': criteria_scores,
        'total_score': compute_total_score(criteria_scores),
    }


def score_items(
    items: List[Dict[str, Any]],
    criteria: List[Dict[str, Any]],
    oracle=None,
    max_workers: Optional[int] = None,
    budget: Optional[PhaseBudget] = None,
    on_rating: Optional[Callable[[Dict[str, Any]], None]] = None,
) -> Dict[str, Any]:
    """
    Score a batch concurrently. Per-item failures never abort the batch.

    on_rating is called from the calling thread for each successful rating,
    as results arrive. When the budget runs out, items not yet started are
    skipped and PhaseTimeout is raised after in-flight items finish.

    Returns:
        {scored, failed, ratings, failed_item_ids}
    """
    oracle = oracle or get_oracle()
    max_workers = max_workers or get_env_int('SCORING_MAX_WORKERS', 4)

    results: Dict[str, Any] = {
        "scored": 0,
        "failed": 0,
        "ratings": [],
        "failed_item_ids": [],
    }
    if not items:
        return results

    def _score(item):
        if budget is not None:
            budget.check('scoring')
        return score_item(item, criteria, oracle)

    timed_out: Optional[PhaseTimeout] = None
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {executor.submit(_score, item): item for item in items}
        for future in as_completed(futures):
            item = futures[future]
            try:
                rating = future.result()
            except PhaseTimeout as e:
                timed_out = e
                continue
            except Exception as e:
                logger.error(f"[Score] Unexpected error scoring {item.get('id')}: {e}")
                rating = None

            if rating is None:
                results["failed"] += 1
                results["failed_item_ids"].append(item.get('id'))
                continue

            results["scored"] += 1
            results["ratings"].append(rating)
            if on_rating is not None:
                on_rating(rating)

    if timed_out is not None:
        raise timed_out
    return results


def score_items_for_issue(
    issue_id: str,
    section: str,
    publication_id: Optional[str] = None,
    oracle=None,
    budget: Optional[PhaseBudget] = None,
    max_workers: Optional[int] = None,
    db=None,
) -> Dict[str, Any]:
    """
    Score the issue's bound, not-yet-rated items for a section and persist ratings.

    Ratings are per item, so an item with affinity "both" is rated once with
    whichever section's criteria reach it first.

    Returns:
        {section, candidates, already_rated, scored, failed, failed_item_ids, errors}
    """
    db = db or get_db()
    criteria = get_section_criteria(publication_id, section, db=db)

    items = db.get_issue_items(issue_id, section)
    existing = db.get_ratings([i['id'] for i in items])
    to_score = [i for i in items if i['id'] not in existing]

    results: Dict[str, Any] = {
        "section": section,
        "candidates": len(items),
        "already_rated": len(items) - len(to_score),
        "scored": 0,
        "failed": 0,
        "failed_item_ids": [],
        "errors": [],
    }
    logger.info(
        f"[Score] Issue {issue_id} {section}: {len(to_score)} to score, "
        f"{results['already_rated']} already rated, {len(criteria)} criteria"
    )

    def _persist(rating):
        try:
            db.upsert_rating(rating['item_id'], rating['criteria'], rating['total_score'])
        except Exception as e:
            error_msg = f"Error saving rating for {rating['item_id']}: {e}"
            logger.error(f"[Score] {error_msg}")
            results["errors"].append(error_msg)

    batch = score_items(to_score, criteria, oracle=oracle, max_workers=max_workers,
                        budget=budget, on_rating=_persist)
    results["scored"] = batch["scored"]
    results["failed"] = batch["failed"]
    results["failed_item_ids"] = batch["failed_item_ids"]

    logger.info(f"[Score] Issue {issue_id} {section}: {batch['scored']} scored, {batch['failed']} unrated")
    return results
