"""
Article Generator

Writes one article per assigned item through the generation oracle,
fact-checks it against the source story, and stores it with its 1-based
rank in the section. Re-running skips items that already have an active
article in the issue.

The fact check never blocks an article: a failed check stores no score and
the reason in fact_check_details for the reviewer.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Optional

from ..config.settings import get_env_int, get_publication_settings
from ..utils.db import get_db
from ..utils.html_stripper import item_text
from ..utils.oracle import get_oracle
from ..utils.prompts import PRIMARY_ARTICLE, SECONDARY_ARTICLE
from ..utils.workflow import PhaseBudget, PhaseTimeout
from .scoring import is_valid_score

logger = logging.getLogger(__name__)

SECTION_PROMPT_KEYS = {
    'primary': PRIMARY_ARTICLE,
    'secondary': SECONDARY_ARTICLE,
}

REFUSAL_MARKERS = (
    "i'm sorry",
    "i am sorry",
    "i cannot",
    "i can't",
    "i am unable",
    "i'm unable",
    "as an ai",
)


def is_refusal(text: str) -> bool:
    lowered = (text or '').strip().lower()
    return any(lowered.startswith(marker) for marker in REFUSAL_MARKERS)


def generate_article(item: Dict[str, Any], section: str, oracle=None,
                     instructions: str = '') -> Optional[Dict[str, Any]]:
    """
    Generate {headline, body, word_count} for one item, or None on any failure.
    """
    oracle = oracle or get_oracle()
    try:
        result = oracle.generate(item_text(item), instructions, prompt_key=SECTION_PROMPT_KEYS[section])
    except Exception as e:
        logger.warning(f"[Generate] Oracle error for {item.get('id')}: {e}")
        return None

    if not isinstance(result, dict):
        logger.warning(f"[Generate] Unexpected response for {item.get('id')}: {result!r}")
        return None

    headline = str(result.get('headline') or '').strip()
    body = str(result.get('body') or '').strip()
    if not headline or not body:
        logger.warning(f"[Generate] Empty headline or body for {item.get('id')}")
        return None
    if is_refusal(headline) or is_refusal(body):
        logger.warning(f"[Generate] Refusal for {item.get('id')}: {body[:80]}")
        return None

    return {
        'headline': headline,
        'body': body,
        'word_count': len(body.split()),
    }


def fact_check_article(body: str, item: Dict[str, Any], oracle=None) -> Dict[str, Any]:
    """
    Score how faithfully an article reflects its source item.

    Returns:
        {fact_check_score, fact_check_details}. The score is None when the
        oracle fails or answers with anything but a 0-10 score and details.
    """
    oracle = oracle or get_oracle()
    try:
        result = oracle.fact_check(body, item_text(item))
    except Exception as e:
        logger.warning(f"[Fact-Check] Oracle error for {item.get('id')}: {e}")
        return {'fact_check_score': None, 'fact_check_details': f"Fact-check failed: {e}"}

    score = result.get('score') if isinstance(result, dict) else None
    details = result.get('details') if isinstance(result, dict) else None
    if not is_valid_score(score) or not isinstance(details, str):
        logger.warning(f"[Fact-Check] Invalid response for {item.get('id')}: {result!r}")
        return {'fact_check_score': None, 'fact_check_details': "Fact-check failed: invalid response"}

    return {'fact_check_score': float(score), 'fact_check_details': details.strip()}


def generate_articles_for_section(
    issue_id: str,
    section: str,
    items: List[Dict[str, Any]],
    oracle=None,
    instructions: Optional[str] = None,
    budget: Optional[PhaseBudget] = None,
    max_workers: Optional[int] = None,
    db=None,
) -> Dict[str, Any]:
    """
    Generate and store articles for a section's assigned items, in rank order.

    Returns:
        {section, assigned, generated, skipped_existing, failed, failed_item_ids,
         fact_check_failed, errors}
    """
    db = db or get_db()
    oracle = oracle or get_oracle()
    max_workers = max_workers or get_env_int('SCORING_MAX_WORKERS', 4)

    if instructions is None:
        issue = db.get_issue(issue_id) or {}
        settings = get_publication_settings(issue.get('publication_id'), db=db)
        instructions = settings[f'{section}_article_instructions']

    results: Dict[str, Any] = {
        "section": section,
        "assigned": len(items),
        "generated": 0,
        "skipped_existing": 0,
        "failed": 0,
        "failed_item_ids": [],
        "fact_check_failed": 0,
        "errors": [],
    }

    existing = {a['item_id'] for a in db.get_articles(issue_id, active_only=True)}
    work = []
    for rank, item in enumerate(items, 1):
        if item['id'] in existing:
            results["skipped_existing"] += 1
            continue
        work.append((rank, item))

    def _generate(item):
        if budget is not None:
            budget.check('article generation')
        article = generate_article(item, section, oracle, instructions)
        if article is not None:
            article.update(fact_check_article(article['body'], item, oracle))
        return article

    timed_out: Optional[PhaseTimeout] = None
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {executor.submit(_generate, item): (rank, item) for rank, item in work}
        for future in as_completed(futures):
            rank, item = futures[future]
            try:
                article = future.result()
            except PhaseTimeout as e:
                timed_out = e
                continue
            except Exception as e:
                logger.error(f"[Generate] Unexpected error for {item['id']}: {e}")
                article = None

            if article is None:
                results["failed"] += 1
                results["failed_item_ids"].append(item['id'])
                continue

            try:
                inserted = db.insert_article({
                    'issue_id': issue_id,
                    'item_id': item['id'],
                    'section': section,
                    'rank': rank,
                    **article,
                })
            except Exception as e:
                error_msg = f"Error saving article for {item['id']}: {e}"
                logger.error(f"[Generate] {error_msg}")
                results["errors"].append(error_msg)
                results["failed"] += 1
                results["failed_item_ids"].append(item['id'])
                continue

            if inserted:
                results["generated"] += 1
                if article['fact_check_score'] is None:
                    results["fact_check_failed"] += 1
            else:
                results["skipped_existing"] += 1

    logger.info(
        f"[Generate] Issue {issue_id} {section}: {results['generated']} generated, "
        f"{results['skipped_existing']} already present, {results['failed']} failed"
    )
    if timed_out is not None:
        raise timed_out
    return results


def deactivate_issue_articles(issue_id: str, db=None) -> int:
    """Soft-deactivate every active article of the issue."""
    db = db or get_db()
    count = db.deactivate_articles(issue_id)
    logger.info(f"[Generate] Deactivated {count} articles for issue {issue_id}")
    return count


def generate_subject_line(issue_id: str, oracle=None, db=None) -> Optional[str]:
    """
    Build the subject line from the active primary headlines.

    Oracle failure is logged and leaves the subject line unset.
    """
    db = db or get_db()
    articles = db.get_articles(issue_id, section='primary', active_only=True)
    headlines = [a['headline'] for a in sorted(articles, key=lambda a: a.get('rank') or 0)]
    if not headlines:
        logger.info(f"[Generate] No primary headlines for issue {issue_id}, skipping subject line")
        return None

    try:
        subject = (oracle or get_oracle()).subject_line(headlines)
    except Exception as e:
        logger.error(f"[Generate] Subject line failed for issue {issue_id}: {e}")
        return None

    subject = (subject or '').strip()
    if not subject or is_refusal(subject):
        logger.warning(f"[Generate] Unusable subject line for issue {issue_id}: {subject!r}")
        return None

    db.set_subject_line(issue_id, subject)
    logger.info(f"[Generate] Subject line for issue {issue_id}: {subject}")
    return subject
