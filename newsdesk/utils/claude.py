"""
Claude API Client for Newsdesk Workers
Used for: Scoring, Topic Clustering, Article Generation, Fact Checks, Subject Lines

Prompts are loaded from PostgreSQL database via utils.prompts
"""

import os
import logging
from typing import Dict, Any, List, Optional
from anthropic import Anthropic

from .prompts import get_prompt_with_metadata, ITEM_SCORING, TOPIC_CLUSTERING, FACT_CHECK, SUBJECT_LINE
from .oracle import (
    parse_json_response,
    build_scoring_prompt,
    build_clustering_prompt,
    build_generation_prompt,
    build_fact_check_prompt,
    build_subject_line_prompt,
)

logger = logging.getLogger(__name__)


class ClaudeClient:
    """Claude API wrapper for Newsdesk"""

    def __init__(self):
        self.api_key = os.environ.get('ANTHROPIC_API_KEY')
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required")

        self.client = Anthropic(api_key=self.api_key)

        # Default model (can be overridden by prompt metadata)
        self.default_model = os.environ.get('CLAUDE_MODEL', "claude-sonnet-4-5-20250929")

    def _complete(self, prompt: str, prompt_key: str, max_tokens: int, default_temperature: float) -> str:
        # Get model/temperature from database if available
        prompt_meta = get_prompt_with_metadata(prompt_key)
        model = (prompt_meta.get('model') if prompt_meta else None) or self.default_model
        temperature = prompt_meta.get('temperature') if prompt_meta else None
        if temperature is None:
            temperature = default_temperature

        response = self.client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=float(temperature),
            messages=[{"role": "user", "content": prompt}]
        )
        return response.content[0].text.strip()

    # =========================================================================
    # SCORING
    # =========================================================================

    def score(self, item_text: str, criteria: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Rate one item against the full ordered criteria set

        Returns:
            {"scores": [{"score": 0-10, "reason": "..."}]} in criteria order
        """
        prompt = build_scoring_prompt(item_text, criteria)
        text = self._complete(prompt, ITEM_SCORING, max_tokens=1000, default_temperature=0.2)
        return parse_json_response(text)

    # =========================================================================
    # TOPIC CLUSTERING
    # =========================================================================

    def cluster(self, summaries: List[str]) -> Dict[str, Any]:
        """
        Group indexed summaries that cover the same topic

        Returns:
            {"groups": [{topic_signature, primary_index, duplicate_indices, explanation}]}
        """
        prompt = build_clustering_prompt(summaries)
        text = self._complete(prompt, TOPIC_CLUSTERING, max_tokens=4000, default_temperature=0.1)
        return parse_json_response(text)

    # =========================================================================
    # ARTICLE GENERATION
    # =========================================================================

    def generate(self, item_text: str, instructions: str, prompt_key: Optional[str] = None) -> Dict[str, Any]:
        """
        Write an article from a source item

        Returns:
            {"headline": "...", "body": "..."}
        """
        prompt = build_generation_prompt(item_text, instructions, prompt_key)
        text = self._complete(prompt, prompt_key or 'article_generation', max_tokens=2000,
                              default_temperature=0.5)
        return parse_json_response(text)

    # =========================================================================
    # FACT CHECK
    # =========================================================================

    def fact_check(self, article_text: str, source_text: str) -> Dict[str, Any]:
        """
        Check a generated article against its source story

        Returns:
            {"score": 0-10, "details": "..."}
        """
        prompt = build_fact_check_prompt(article_text, source_text)
        text = self._complete(prompt, FACT_CHECK, max_tokens=800, default_temperature=0.0)
        return parse_json_response(text)

    def subject_line(self, headlines: List[str]) -> str:
        """Generate email subject line from the issue's lead headlines"""
        prompt = build_subject_line_prompt(headlines)
        text = self._complete(prompt, SUBJECT_LINE, max_tokens=100, default_temperature=0.7)
        return text.strip('"\'')
