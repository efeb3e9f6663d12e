"""
HTML Stripper for Feed Content

Feed descriptions and content:encoded blocks arrive as HTML. Scoring,
deduplication and generation all work on plain text.
"""

import re
import html
import logging
from typing import Optional

logger = logging.getLogger(__name__)

_BLOCK_TAGS = re.compile(r'<\s*(br|/p|/div|/li|/h[1-6]|/blockquote)\s*/?\s*>', re.IGNORECASE)
_DROP_BLOCKS = re.compile(r'<\s*(script|style|noscript)[^>]*>.*?<\s*/\s*\1\s*>', re.IGNORECASE | re.DOTALL)
_TAGS = re.compile(r'<[^>]+>')
_SPACES = re.compile(r'[ \t\r\f\v\xa0]+')
_NEWLINES = re.compile(r'\n\s*\n+')


def strip_html(text: Optional[str]) -> str:
    """
    Convert an HTML fragment to plain text.

    Scripts and styles are dropped, block-level closers become line breaks,
    entities are unescaped and whitespace is collapsed.
    """
    if not text:
        return ""

    text = _DROP_BLOCKS.sub(' ', text)
    text = _BLOCK_TAGS.sub('\n', text)
    text = _TAGS.sub(' ', text)
    text = html.unescape(text)
    text = _SPACES.sub(' ', text)
    text = _NEWLINES.sub('\n\n', text)
    lines = [line.strip() for line in text.split('\n')]
    return '\n'.join(lines).strip()


def item_text(item: dict, max_chars: int = 8000) -> str:
    """Plain text used to describe an item to the oracles: title, then the best body."""
    title = (item.get('title') or '').strip()
    body = item.get('full_text') or strip_html(item.get('body') or '')
    text = f"{title}\n\n{body}".strip() if body else title
    return text[:max_chars]
