"""
Publication Settings for Newsdesk Workers

Per-publication tuning lives in the publication_settings table as key/value
text rows. Missing or unparseable keys fall back to DEFAULT_SETTINGS.
"""

import os
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict[str, Any] = {
    'max_top_articles': 3,
    'max_secondary_articles': 3,
    'candidate_pool_size': 12,
    'primary_lookback_hours': 72,
    'secondary_lookback_hours': 36,
    'archive_after_hours': 168,
    'dedup_historical_lookback_days': 3,
    'dedup_strictness_threshold': 0.80,
    'primary_article_instructions': (
        "Write a concise news article of 150-250 words in a professional, neutral tone. "
        "Lead with the most important fact."
    ),
    'secondary_article_instructions': (
        "Write a short brief of 60-100 words. Keep it light and skimmable."
    ),
}

# Built-in scoring criteria, used when article_criteria has no active rows
DEFAULT_CRITERIA = {
    'primary': [
        {'name': 'Relevance', 'prompt': 'How relevant is this to our readers?', 'weight': 1.5},
        {'name': 'Importance', 'prompt': 'How significant is the news itself?', 'weight': 1.0},
        {'name': 'Novelty', 'prompt': 'How new or surprising is the information?', 'weight': 1.0},
    ],
    'secondary': [
        {'name': 'Interest', 'prompt': 'How interesting is this for a quick read?', 'weight': 1.0},
        {'name': 'Timeliness', 'prompt': 'How timely is this story?', 'weight': 1.0},
    ],
}

SECTIONS = ('primary', 'secondary')

SECTION_LIMIT_KEYS = {
    'primary': 'max_top_articles',
    'secondary': 'max_secondary_articles',
}


def _coerce(key: str, raw: Any) -> Any:
    default = DEFAULT_SETTINGS[key]
    if raw is None or raw == '':
        return default
    try:
        if isinstance(default, bool):
            return str(raw).lower() in ('1', 'true', 'yes')
        if isinstance(default, int):
            return int(float(raw))
        if isinstance(default, float):
            return float(raw)
    except (TypeError, ValueError):
        logger.warning(f"[Settings] Invalid value for {key}: {raw!r}, using default {default!r}")
        return default
    return str(raw)


def get_publication_settings(publication_id: Optional[str], db=None) -> Dict[str, Any]:
    """
    Load a publication's settings merged over the defaults.

    Returns a dict with every DEFAULT_SETTINGS key present and typed.
    """
    rows: Dict[str, Any] = {}
    if publication_id:
        if db is None:
            from ..utils.db import get_db
            db = get_db()
        rows = db.get_publication_settings(publication_id) or {}

    return {key: _coerce(key, rows.get(key)) for key in DEFAULT_SETTINGS}


def get_env_int(name: str, default: int) -> int:
    """Integer environment variable with a default."""
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"[Settings] {name}={value!r} is not an integer, using {default}")
        return default
