"""
Prompt and Criteria Loading for Newsdesk Workers
Loads system prompts and per-section scoring criteria from PostgreSQL

Usage:
    from ..utils.prompts import get_prompt, get_section_criteria

    # Get any prompt by key
    prompt = get_prompt('item_scoring')

    # Get the weighted criteria for a section
    criteria = get_section_criteria(publication_id, 'primary')
"""

import logging
from typing import Optional, Dict, Any, List
from .db import get_db
from ..config.settings import DEFAULT_CRITERIA

logger = logging.getLogger(__name__)

# Cache for prompts (refreshed per job for freshness)
_prompt_cache: Dict[str, Dict[str, Any]] = {}


def get_prompt(prompt_key: str, use_cache: bool = True) -> Optional[str]:
    """
    Get prompt content by key from database

    Args:
        prompt_key: The prompt key (e.g., 'item_scoring', 'topic_clustering')
        use_cache: Whether to use cached value (default True)

    Returns:
        The prompt content string, or None if not found
    """
    if use_cache and prompt_key in _prompt_cache:
        return _prompt_cache[prompt_key].get('content')

    try:
        db = get_db()
        prompt_data = db.get_prompt_by_key(prompt_key)

        if prompt_data:
            _prompt_cache[prompt_key] = prompt_data
            return prompt_data.get('content')
        else:
            logger.warning(f"Prompt not found: {prompt_key}")
            return None

    except Exception as e:
        logger.error(f"Error loading prompt {prompt_key}: {e}")
        return None


def get_prompt_with_metadata(prompt_key: str) -> Optional[Dict[str, Any]]:
    """
    Get prompt with full metadata (model, temperature, etc.)

    Returns:
        {prompt_key, content, model, temperature, name, current_version}
    """
    if prompt_key in _prompt_cache:
        return _prompt_cache[prompt_key]
    try:
        db = get_db()
        return db.get_prompt_by_key(prompt_key)
    except Exception as e:
        logger.error(f"Error loading prompt metadata {prompt_key}: {e}")
        return None


def get_section_criteria(publication_id: Optional[str], section: str, db=None) -> List[Dict[str, Any]]:
    """
    Load the ordered, weighted scoring criteria for a section.

    Criteria rows come from article_criteria. When a publication has none
    configured for the section, the built-in defaults are used.

    Returns:
        [{name, prompt, weight}] in criteria_number order
    """
    rows: List[Dict[str, Any]] = []
    if publication_id:
        try:
            rows = (db or get_db()).get_criteria(publication_id, section)
        except Exception as e:
            logger.error(f"Error loading {section} criteria for {publication_id}: {e}")
            rows = []

    if not rows:
        logger.info(f"[Prompts] No {section} criteria configured, using defaults")
        return [dict(c) for c in DEFAULT_CRITERIA[section]]

    return [
        {
            'name': row['name'],
            'prompt': row.get('prompt') or '',
            'weight': float(row.get('weight') if row.get('weight') is not None else 1.0),
        }
        for row in rows
    ]


def refresh_cache():
    """Clear prompt cache to force fresh load from database"""
    global _prompt_cache
    _prompt_cache = {}
    logger.info("Prompt cache cleared")


def preload_all_prompts():
    """
    Preload all prompts into cache
    Call this at worker startup for better performance
    """
    try:
        db = get_db()
        all_prompts = db.get_all_prompts()

        for prompt in all_prompts:
            key = prompt.get('prompt_key')
            if key:
                _prompt_cache[key] = prompt

        logger.info(f"Preloaded {len(_prompt_cache)} prompts into cache")

    except Exception as e:
        logger.error(f"Error preloading prompts: {e}")


# =========================================================================
# PROMPT KEY CONSTANTS
# =========================================================================

ITEM_SCORING = "item_scoring"
TOPIC_CLUSTERING = "topic_clustering"
PRIMARY_ARTICLE = "primary_article"
SECONDARY_ARTICLE = "secondary_article"
SUBJECT_LINE = "subject_line"
FACT_CHECK = "fact_check"
