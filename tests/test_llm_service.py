from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest

from backend.app.repositories.link_repository import StoredLink
from backend.app.services.llm_service import (
    GeminiLinkAnalyzer,
    LlmResponseError,
    infer_category,
    parse_summary_response,
    strip_json_fences,
)


def _stored(title: str, summary: str) -> StoredLink:
    return StoredLink(
        link_id=f"link_{title.lower()}",
        title=title,
        url=f"https://example.com/{title.lower()}",
        summary=summary,
        insight="",
        category="Tech",
        created_at=datetime(2024, 5, 1, tzinfo=UTC),
        tags=("python",),
    )


def test_strip_json_fences() -> None:
    assert strip_json_fences('```json\n{"summary": "s"}\n```') == '{"summary": "s"}'
    assert strip_json_fences('  {"summary": "s"}  ') == '{"summary": "s"}'


def test_parse_summary_response_dedupes_and_caps_tags() -> None:
    summary = parse_summary_response(
        '```json\n{"summary": "  A paragraph.\\n- one\\n- two ", '
        '"tags": ["AI", "#ai", "LLM", 3, "Agents", "Tools", "Evals", "Extra"]}\n```'
    )
    assert summary.summary == "A paragraph.\n- one\n- two"
    assert summary.tags == ("AI", "LLM", "Agents", "Tools", "Evals")


def test_parse_summary_response_allows_missing_tags() -> None:
    assert parse_summary_response('{"summary": "Only text"}').tags == ()


@pytest.mark.parametrize(
    "raw",
    [
        "not json at all",
        '{"tags": ["a"]}',
        '{"summary": ""}',
        '["summary", "tags"]',
    ],
)
def test_parse_summary_response_rejects_malformed_output(raw: str) -> None:
    with pytest.raises(LlmResponseError):
        parse_summary_response(raw)


@pytest.mark.parametrize(
    ("tags", "expected"),
    [
        (["Python", "How-To"], "Tutorial"),
        (["UX", "Research"], "Design"),
        (["Startup", "Funding"], "News"),
        (["Open Source", "Databases"], "Tech"),
        (["#rust"], "Tech"),
        (["gardening", "cooking"], "Other"),
        (["guidelines"], "Other"),
        ([], "Other"),
    ],
)
def test_infer_category(tags: list[str], expected: str) -> None:
    assert infer_category(tags) == expected


def test_generate_summary_builds_prompt_with_recent_context(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    analyzer = GeminiLinkAnalyzer(
        api_key="test-key",
        summary_language="German",
        content_max_chars=20,
    )
    captured: list[tuple[str, bool]] = []

    def _fake_generate(prompt: str, *, json_output: bool) -> str:
        captured.append((prompt, json_output))
        return '{"summary": "Zusammenfassung", "tags": ["python"]}'

    monkeypatch.setattr(analyzer, "_generate", _fake_generate)

    summary = analyzer.generate_summary(
        url="https://example.com/a",
        title="A",
        markdown="0123456789" * 5,
        recent=[_stored("Earlier", "Earlier summary text")],
    )

    assert summary.summary == "Zusammenfassung"
    prompt, json_output = captured[0]
    assert json_output is True
    assert "written in German" in prompt
    assert "Earlier (https://example.com/earlier): Earlier summary text" in prompt
    assert prompt.rstrip().endswith("01234567890123456789")


def test_generate_insight_rejects_blank_output(monkeypatch: pytest.MonkeyPatch) -> None:
    analyzer = GeminiLinkAnalyzer(api_key="test-key")
    monkeypatch.setattr(analyzer, "_generate", lambda prompt, *, json_output: "   \n")

    with pytest.raises(LlmResponseError, match="empty"):
        analyzer.generate_insight(title="A", url="https://example.com/a", summary="S")


def test_generate_insight_lists_related_links(monkeypatch: pytest.MonkeyPatch) -> None:
    analyzer = GeminiLinkAnalyzer(api_key="test-key")
    prompts: list[str] = []

    def _fake_generate(prompt: str, *, json_output: bool) -> str:
        prompts.append(prompt)
        return " It builds on packaging work. "

    monkeypatch.setattr(analyzer, "_generate", _fake_generate)

    insight = analyzer.generate_insight(
        title="A",
        url="https://example.com/a",
        summary="S",
        related=[_stored("Packaging", "Wheels and sdists")],
    )

    assert insight == "It builds on packaging work."
    assert "- [Tech] Packaging (https://example.com/packaging): Wheels and sdists" in prompts[0]


def test_missing_api_key_fails_before_calling_gemini() -> None:
    analyzer = GeminiLinkAnalyzer(api_key=None)
    with pytest.raises(LlmResponseError, match="not configured"):
        analyzer.generate_insight(title="A", url="https://example.com/a", summary="S")


def test_sdk_errors_are_wrapped(monkeypatch: pytest.MonkeyPatch) -> None:
    class _ExplodingModel:
        def generate_content(self, prompt: str, **kwargs: Any) -> Any:
            raise RuntimeError("429 quota exceeded")

    analyzer = GeminiLinkAnalyzer(api_key="test-key")
    monkeypatch.setattr(analyzer, "_get_model", lambda: _ExplodingModel())

    with pytest.raises(LlmResponseError) as exc_info:
        analyzer.generate_insight(title="A", url="https://example.com/a", summary="S")
    assert exc_info.value.retryable is True
    assert "429 quota exceeded" in str(exc_info.value)
