"""
Gemini API Client for Newsdesk Workers
Alternative oracle provider (ORACLE_PROVIDER=gemini)

Same capability set as ClaudeClient. JSON responses are requested with
response_mime_type so fences are rare, but they are still stripped.
"""

import os
import logging
from typing import Dict, Any, List, Optional
import google.generativeai as genai

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


class GeminiClient:
    """Gemini API wrapper for Newsdesk"""

    def __init__(self):
        self.api_key = os.environ.get('GEMINI_API_KEY')
        if not self.api_key:
            raise ValueError("GEMINI_API_KEY environment variable is required")

        genai.configure(api_key=self.api_key)

        self.model = genai.GenerativeModel(os.environ.get('GEMINI_MODEL', 'gemini-2.0-flash'))

    def _generate(self, prompt: str, prompt_key: str, max_output_tokens: int,
                  default_temperature: float, json_output: bool = True) -> str:
        prompt_meta = get_prompt_with_metadata(prompt_key)
        temperature = prompt_meta.get('temperature') if prompt_meta else None
        if temperature is None:
            temperature = default_temperature

        config_kwargs = {
            'temperature': float(temperature),
            'max_output_tokens': max_output_tokens,
        }
        if json_output:
            config_kwargs['response_mime_type'] = "application/json"

        response = self.model.generate_content(
            prompt,
            generation_config=genai.GenerationConfig(**config_kwargs)
        )
        return response.text.strip()

    def score(self, item_text: str, criteria: List[Dict[str, Any]]) -> Dict[str, Any]:
        prompt = build_scoring_prompt(item_text, criteria)
        text = self._generate(prompt, ITEM_SCORING, max_output_tokens=1024, default_temperature=0.2)
        return parse_json_response(text)

    def cluster(self, summaries: List[str]) -> Dict[str, Any]:
        prompt = build_clustering_prompt(summaries)
        text = self._generate(prompt, TOPIC_CLUSTERING, max_output_tokens=4096, default_temperature=0.1)
        result = parse_json_response(text)
        logger.info(f"[Gemini cluster] Found {len(result.get('groups', []) or []) if isinstance(result, dict) else 0} groups")
        return result

    def generate(self, item_text: str, instructions: str, prompt_key: Optional[str] = None) -> Dict[str, Any]:
        prompt = build_generation_prompt(item_text, instructions, prompt_key)
        text = self._generate(prompt, prompt_key or 'article_generation', max_output_tokens=2048,
                              default_temperature=0.5)
        return parse_json_response(text)

    def fact_check(self, article_text: str, source_text: str) -> Dict[str, Any]:
        prompt = build_fact_check_prompt(article_text, source_text)
        text = self._generate(prompt, FACT_CHECK, max_output_tokens=1024, default_temperature=0.0)
        return parse_json_response(text)

    def subject_line(self, headlines: List[str]) -> str:
        prompt = build_subject_line_prompt(headlines)
        text = self._generate(prompt, SUBJECT_LINE, max_output_tokens=100, default_temperature=0.7,
                              json_output=False)
        return text.strip('"\'')
