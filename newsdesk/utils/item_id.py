"""
Pool Item Identity

An item's id is derived from its canonical link, so one story ingested twice,
or carried by two feeds with different share parameters, lands on one row.

Canonical link:
- host lowercased, "www." and default ports dropped
- scheme ignored (http and https copies of a story are the same story)
- path case kept, trailing slash dropped
- utm_* and known click-tracking parameters removed, the rest sorted
- fragment dropped

Items without a usable link fall back to their whitespace-collapsed title.
"""

import hashlib
import re
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit

ID_PREFIX = 'i_'
ID_HASH_CHARS = 20

# Click and share tracking parameters that never identify a story
TRACKING_PARAMS = frozenset({
    'ref', 'ref_src', 'source', 'fbclid', 'gclid', 'dclid', 'msclkid',
    'mc_cid', 'mc_eid', 'igshid', 'cmpid', 'smid', 'sr_share',
})

DEFAULT_PORTS = {'http': 80, 'https': 443}


def is_tracking_param(name: str) -> bool:
    name = name.lower()
    return name.startswith('utm_') or name in TRACKING_PARAMS


def canonical_link(url: Optional[str]) -> Optional[str]:
    """
    Reduce a link to the parts that identify the story.

    Returns:
        "host/path?query" or None when the link has no host
    """
    url = (url or '').strip()
    if not url:
        return None
    if '://' not in url:
        url = f"http://{url.lstrip('/')}"

    try:
        parts = urlsplit(url)
        host = (parts.hostname or '').rstrip('.')
        port = parts.port
    except ValueError:
        return None
    if not host:
        return None

    if host.startswith('www.'):
        host = host[4:]
    if port and port != DEFAULT_PORTS.get(parts.scheme.lower()):
        host = f"{host}:{port}"

    query = sorted(
        (name, value) for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if not is_tracking_param(name)
    )
    link = host + parts.path.rstrip('/')
    if query:
        link += '?' + urlencode(query)
    return link


def canonical_title(title: Optional[str]) -> Optional[str]:
    title = re.sub(r'\s+', ' ', title or '').strip().lower()
    return title or None


def generate_item_id(url: Optional[str] = None, title: Optional[str] = None) -> Optional[str]:
    """
    Stable item id from the canonical link, else the canonical title.

    Returns:
        "i_" followed by a hex digest, or None when neither identifies the item
    """
    link = canonical_link(url)
    if link:
        key = f"link:{link}"
    else:
        title = canonical_title(title)
        if not title:
            return None
        key = f"title:{title}"

    digest = hashlib.sha1(key.encode('utf-8')).hexdigest()
    return f"{ID_PREFIX}{digest[:ID_HASH_CHARS]}"
