"""
Model Oracle Selection and Shared Prompt Building

Every pipeline step talks to an oracle with five capabilities:
    score(item_text, criteria)      -> {"scores": [{"score", "reason"}, ...]}
    cluster(summaries)              -> {"groups": [{topic_signature, primary_index,
                                                    duplicate_indices, explanation}]}
    generate(item_text, instructions) -> {"headline", "body"}
    fact_check(article, source)     -> {"score": 0-10, "details"}
    subject_line(headlines)         -> str

ClaudeClient and GeminiClient both implement it; ORACLE_PROVIDER picks one.
Prompts are loaded from the database where configured, with fallbacks here.
"""

import os
import re
import json
import logging
from typing import Any, Dict, List, Optional

from .prompts import (
    get_prompt,
    ITEM_SCORING,
    TOPIC_CLUSTERING,
    FACT_CHECK,
    SUBJECT_LINE,
)

logger = logging.getLogger(__name__)

_oracle = None


def get_oracle():
    """Get or create the configured oracle client singleton"""
    global _oracle
    if _oracle is None:
        provider = os.environ.get('ORACLE_PROVIDER', 'claude').lower()
        if provider == 'gemini':
            from .gemini import GeminiClient
            _oracle = GeminiClient()
        elif provider == 'claude':
            from .claude import ClaudeClient
            _oracle = ClaudeClient()
        else:
            raise ValueError(f"Unknown ORACLE_PROVIDER: {provider}")
        logger.info(f"[Oracle] Using {provider} provider")
    return _oracle


def parse_json_response(text: str) -> Any:
    """
    Parse a model response as JSON, tolerating markdown code fences.

    Raises json.JSONDecodeError (a ValueError) when nothing parseable is found.
    """
    text = (text or '').strip()

    # Handle potential markdown code blocks
    if text.startswith('```'):
        text = text.split('```')[1]
        if text.startswith('json'):
            text = text[4:]
        text = text.strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        json_match = re.search(r'\{.*\}', text, re.DOTALL)
        if json_match:
            return json.loads(json_match.group())
        raise


def _format_template(prompt_key: str, **values) -> Optional[str]:
    template = get_prompt(prompt_key)
    if not template:
        return None
    try:
        return template.format(**values)
    except (KeyError, IndexError) as e:
        logger.warning(f"Missing variable in {prompt_key} prompt: {e}, using fallback")
        return None


def build_scoring_prompt(item_text: str, criteria: List[Dict[str, Any]]) -> str:
    criteria_text = "\n".join(
        f"{i}. {c['name']}: {c.get('prompt', '')}" for i, c in enumerate(criteria, 1)
    )
    prompt = _format_template(ITEM_SCORING, item=item_text[:6000], criteria=criteria_text,
                              criteria_count=len(criteria))
    if prompt:
        return prompt

    return f"""You are an editor rating a candidate story for a newsletter.

STORY:
{item_text[:6000]}

Rate the story on each criterion below from 0 (worst) to 10 (best).

CRITERIA:
{criteria_text}

Return JSON only, with exactly {len(criteria)} entries in the same order as the criteria:
{{
  "scores": [
    {{"score": 7, "reason": "One short sentence"}}
  ]
}}"""


def build_clustering_prompt(summaries: List[str]) -> str:
    items_text = "\n".join(f"[{i}] {s}" for i, s in enumerate(summaries))
    prompt = _format_template(TOPIC_CLUSTERING, items=items_text, item_count=len(summaries))
    if prompt:
        return prompt

    return f"""You are deduplicating candidate stories for a newsletter.
Group stories that cover the SAME underlying news event or topic, even if worded differently.
Only report groups with at least two stories. Pick the most complete story as primary.

STORIES:
{items_text}

Return JSON only:
{{
  "groups": [
    {{
      "topic_signature": "Short description of the shared topic",
      "primary_index": 0,
      "duplicate_indices": [3, 5],
      "explanation": "Why these stories are the same topic"
    }}
  ]
}}

If there are no duplicates, return: {{"groups": []}}"""


def build_generation_prompt(item_text: str, instructions: str,
                            prompt_key: Optional[str] = None) -> str:
    if prompt_key:
        prompt = _format_template(prompt_key, item=item_text[:8000], instructions=instructions)
        if prompt:
            return prompt

    return f"""You are writing an article for a newsletter based on the source story below.

WRITING INSTRUCTIONS:
{instructions}

SOURCE STORY:
{item_text[:8000]}

Return JSON only:
{{
  "headline": "Headline in Title Case, max 80 characters",
  "body": "The article text"
}}"""


def build_fact_check_prompt(article_text: str, source_text: str) -> str:
    prompt = _format_template(FACT_CHECK, article=article_text[:6000], source=source_text[:8000])
    if prompt:
        return prompt

    return f"""You are fact-checking a newsletter article against the source story it was written from.

ARTICLE:
{article_text[:6000]}

SOURCE STORY:
{source_text[:8000]}

Score from 0 to 10 how faithfully the article reflects the source: 10 means every
claim is supported, 0 means the article contradicts or invents facts.

Return JSON only:
{{
  "score": 8,
  "details": "Which claims are unsupported or wrong, or 'All claims supported'"
}}"""


def build_subject_line_prompt(headlines: List[str]) -> str:
    headlines_text = "\n".join(f"{i}. {h}" for i, h in enumerate(headlines, 1))
    prompt = _format_template(SUBJECT_LINE, headlines=headlines_text)
    if prompt:
        return prompt

    return f"""Generate a compelling email subject line for this newsletter issue.

TODAY'S HEADLINES:
{headlines_text}

REQUIREMENTS:
- Maximum 60 characters
- Reference 1-2 key stories
- Avoid clickbait, be substantive

Return ONLY the subject line, no quotes or explanation."""
