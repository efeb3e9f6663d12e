"""Newsdesk Worker Utilities"""

from .db import DatabaseClient, get_db
from .oracle import get_oracle
from .prompts import get_prompt, get_section_criteria, preload_all_prompts

__all__ = [
    'DatabaseClient',
    'get_db',
    'get_oracle',
    'get_prompt',
    'get_section_criteria',
    'preload_all_prompts',
]
