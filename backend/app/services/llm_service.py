from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import google.generativeai as genai
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from backend.app.repositories.link_repository import Category, StoredLink, dedupe_tags

LOGGER = logging.getLogger("link_saver.llm")

MAX_TAGS = 5
_JSON_FENCE_RE = re.compile(r"```json\n?|\n?```")
_TAG_SEPARATOR_RE = re.compile(r"[^a-z0-9+#]+")
_CATEGORY_KEYWORDS: tuple[tuple[Category, frozenset[str]], ...] = (
    (
        "Tutorial",
        frozenset(
            {"tutorial", "tutorials", "guide", "guides", "how to", "howto", "course",
             "walkthrough", "learning", "tips", "cookbook"}
        ),
    ),
    (
        "Design",
        frozenset(
            {"design", "ui", "ux", "typography", "figma", "css", "color", "branding",
             "illustration", "interaction design"}
        ),
    ),
    (
        "News",
        frozenset(
            {"news", "announcement", "release", "politics", "economy", "business",
             "startup", "funding", "policy", "breaking"}
        ),
    ),
    (
        "Tech",
        frozenset(
            {"tech", "technology", "ai", "llm", "machine learning", "programming", "software",
             "python", "javascript", "typescript", "rust", "go", "database", "cloud",
             "devops", "security", "web", "api", "open source", "developer", "engineering"}
        ),
    ),
)


class LlmResponseError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


@dataclass(frozen=True)
class LinkSummary:
    summary: str
    tags: tuple[str, ...]


class _SummaryPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    summary: str = Field(min_length=1)
    tags: list[str] = Field(default_factory=list)

    @field_validator("summary", mode="before")
    @classmethod
    def _strip_summary(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            return value
        return [item for item in value if isinstance(item, str)]


def strip_json_fences(text: str) -> str:
    return _JSON_FENCE_RE.sub("", text).strip()


def parse_summary_response(text: str) -> LinkSummary:
    cleaned = strip_json_fences(text)
    try:
        payload = _SummaryPayload.model_validate_json(cleaned)
    except ValidationError as exc:
        raise LlmResponseError(f"Summary response is not a valid JSON object: {exc}") from exc
    return LinkSummary(summary=payload.summary, tags=dedupe_tags(payload.tags)[:MAX_TAGS])


def infer_category(tags: Sequence[str]) -> Category:
    normalized_tags = [
        f" {' '.join(_TAG_SEPARATOR_RE.split(tag.lower().lstrip('#'))).strip()} " for tag in tags
    ]
    for category, keywords in _CATEGORY_KEYWORDS:
        for normalized in normalized_tags:
            if any(f" {keyword} " in normalized for keyword in keywords):
                return category
    return "Other"


class GeminiLinkAnalyzer:
    def __init__(
        self,
        *,
        api_key: str | None,
        model_name: str = "gemini-1.5-flash",
        summary_language: str = "English",
        content_max_chars: int = 50_000,
        request_timeout_seconds: float = 60.0,
    ) -> None:
        self._api_key = api_key
        self._model_name = model_name
        self._summary_language = summary_language
        self._content_max_chars = max(1, int(content_max_chars))
        self._request_timeout_seconds = max(1.0, float(request_timeout_seconds))
        self._model: Any | None = None

    def generate_summary(
        self,
        *,
        url: str,
        title: str,
        markdown: str,
        recent: Sequence[StoredLink] = (),
    ) -> LinkSummary:
        prompt = _summary_prompt(
            url=url,
            title=title,
            content=markdown[: self._content_max_chars],
            recent=recent,
            language=self._summary_language,
        )
        response_text = self._generate(prompt, json_output=True)
        summary = parse_summary_response(response_text)
        LOGGER.info("summary generated url=%s tags=%s", url, len(summary.tags))
        return summary

    def generate_insight(
        self,
        *,
        title: str,
        url: str,
        summary: str,
        related: Sequence[StoredLink] = (),
    ) -> str:
        prompt = _insight_prompt(
            title=title,
            url=url,
            summary=summary,
            related=related,
            language=self._summary_language,
        )
        insight = self._generate(prompt, json_output=False).strip()
        if not insight:
            raise LlmResponseError("Insight response was empty.")
        return insight

    def infer_category(self, tags: Sequence[str]) -> Category:
        return infer_category(tags)

    def _generate(self, prompt: str, *, json_output: bool) -> str:
        generation_config: dict[str, Any] = {"temperature": 0.4}
        if json_output:
            generation_config["response_mime_type"] = "application/json"
        try:
            response = self._get_model().generate_content(
                prompt,
                generation_config=generation_config,
                request_options={"timeout": self._request_timeout_seconds},
            )
            text = response.text
        except LlmResponseError:
            raise
        except Exception as exc:
            raise LlmResponseError(f"Gemini request failed: {exc}", retryable=True) from exc
        if not isinstance(text, str):
            raise LlmResponseError("Gemini returned no text.")
        return text

    def _get_model(self) -> Any:
        if self._api_key is None:
            raise LlmResponseError("Gemini API key is not configured.")
        if self._model is None:
            genai.configure(api_key=self._api_key)
            self._model = genai.GenerativeModel(model_name=self._model_name)
        return self._model


def _format_links(links: Sequence[StoredLink], *, summary_chars: int) -> str:
    if not links:
        return "(none)"
    lines: list[str] = []
    for link in links:
        summary = " ".join(link.summary.split())[:summary_chars]
        lines.append(f"- [{link.category}] {link.title} ({link.url}): {summary}")
    return "\n".join(lines)


def _summary_prompt(
    *,
    url: str,
    title: str,
    content: str,
    recent: Sequence[StoredLink],
    language: str,
) -> str:
    return f"""You are an expert content curator. Analyze the Markdown content saved from {url}.
Title: {title}

Recent context (the last articles saved to this collection). If the new content supports,
contradicts, updates or complements any of them, mention it in the summary.
{_format_links(recent, summary_chars=300)}

Respond with a single JSON object:
{{
  "summary": "A short paragraph followed by 3 bullet points of key takeaways, written in {language}.",
  "tags": ["3 to 5 topical tags without the # sign"]
}}

Content:
{content}
"""


def _insight_prompt(
    *,
    title: str,
    url: str,
    summary: str,
    related: Sequence[StoredLink],
    language: str,
) -> str:
    return f"""You help a reader connect a newly saved article with their knowledge base.

New article: {title} ({url})
Summary:
{summary}

Previously saved related articles:
{_format_links(related, summary_chars=200)}

In {language}, write 2-4 sentences of plain text (no Markdown, no JSON) with one non-obvious
insight: why this article matters, and how it relates to the earlier ones if any are listed.
"""
