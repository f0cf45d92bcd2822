"""
Content Generator - LLM-backed SEO helpers for the blog editor

Each paid feature maps to one prompt. The generator only produces content;
billing happens around it in FeatureExecutionService. Any exception raised
here makes the caller refund the credits it took.
"""

import json
import logging
import os
from typing import Any, Dict, Optional

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"


class ContentGenerationError(Exception):
    """The model call failed or returned something unusable."""
    pass


def _seo_title_prompt(payload: Dict[str, Any]) -> str:
    topic = payload.get("input") or payload.get("topic")
    if not topic:
        raise ValueError("input is required")

    trending = payload.get("trending_topic")
    context = f'\nBroader trending topic: "{trending}". Bridge both in the titles.' if trending else ""

    return f"""Generate SEO-optimized blog metadata for this topic: "{topic}"{context}

Choose the best 2-4 word primary keyword; it must appear in every title and in the slug.
Titles must be 50-60 characters.

Return ONLY a JSON object:
{{"primary_keyword": "...", "titles": ["...", "...", "...", "...", "..."], "slug": "...", "keywords": ["...", "..."]}}"""


def _meta_description_prompt(payload: Dict[str, Any]) -> str:
    title = payload.get("title")
    if not title:
        raise ValueError("title is required")

    return f"""Generate exactly 5 SEO-optimized meta descriptions for this article title:

"{title}"

Each description must be 140-160 characters, include the main keyword from the title,
include a call-to-action and take a unique angle.

Return ONLY a JSON object: {{"meta_descriptions": ["...", "...", "...", "...", "..."]}}"""


def _blog_content_prompt(payload: Dict[str, Any]) -> str:
    title = payload.get("title")
    keywords = payload.get("keywords")
    if not title or not isinstance(keywords, list) or not keywords:
        raise ValueError("title and keywords array are required")

    primary, secondary = keywords[0], keywords[1:5]
    sections = payload.get("recommended_sections") or []
    section_lines = "\n".join(f"{i + 1}. {s}" for i, s in enumerate(sections))
    section_block = f"\nInclude ALL of these sections as H2 headings:\n{section_lines}\n" if sections else ""

    return f"""Generate blog content for: "{title}"

PRIMARY KEYWORD: "{primary}"
SECONDARY KEYWORDS: {", ".join(secondary)}
{section_block}
TARGET: {payload.get("target_word_count", 1500)} words

1. Excerpt: 140-160 characters containing "{primary}"
2. Content: Markdown with H1, H2 and H3 sections
3. The first paragraph must contain "{primary}"

Return ONLY a JSON object: {{"excerpt": "...", "content": "# {title}\\n\\n..."}}"""


def _content_gap_prompt(payload: Dict[str, Any]) -> str:
    keyword = payload.get("primary_keyword")
    if not keyword:
        raise ValueError("primary_keyword is required")

    return f"""You review a draft blog post targeting the keyword "{keyword}".
List the subtopics that top-ranking articles for this keyword usually cover
and that the draft below is missing.

DRAFT:
{(payload.get("content") or "")[:8000]}

Return ONLY a JSON object: {{"missing_topics": ["..."], "recommendations": "..."}}"""


def _serp_prompt(payload: Dict[str, Any]) -> str:
    keyword = payload.get("keyword") or payload.get("primary_keyword")
    if not keyword:
        raise ValueError("keyword is required")

    return f"""Describe the typical top-ranking article for the search query "{keyword}":
common H2 headings, approximate word count and dominant content angle.

Return ONLY a JSON object: {{"common_headings": ["..."], "avg_word_count": 1500, "content_angle": "..."}}"""


PROMPT_BUILDERS = {
    "seo_title": _seo_title_prompt,
    "meta_description": _meta_description_prompt,
    "blog_content": _blog_content_prompt,
    "content_gap_analysis": _content_gap_prompt,
    "serp_analysis": _serp_prompt,
}


def build_prompt(feature: str, payload: Dict[str, Any]) -> str:
    """
    Prompt for a feature.

    Raises:
        KeyError: feature has no generator
        ValueError: payload is missing a required field
    """
    return PROMPT_BUILDERS[feature](payload)


class ContentGenerator:
    """Thin async wrapper over the OpenAI chat completions API."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self._client = client
        self.model = model or os.environ.get("CONTENT_MODEL", DEFAULT_MODEL)

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            api_key = os.environ.get("OPENAI_API_KEY")
            if not api_key:
                raise ContentGenerationError("OPENAI_API_KEY is not configured")
            self._client = AsyncOpenAI(api_key=api_key)
        return self._client

    async def generate(self, feature: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        prompt = build_prompt(feature, payload)

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": "You are an SEO content engine. Reply with JSON only."},
                    {"role": "user", "content": prompt}
                ],
                response_format={"type": "json_object"},
                temperature=0.7
            )
        except ContentGenerationError:
            raise
        except Exception as e:
            logger.error(f"Content model call failed for {feature}: {e}")
            raise ContentGenerationError(str(e)) from e

        raw = response.choices[0].message.content or ""
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Unparseable {feature} response: {raw[:200]}")
            raise ContentGenerationError(f"Model returned invalid JSON: {e}") from e
