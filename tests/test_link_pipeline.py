from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from backend.app.repositories.database import Database
from backend.app.repositories.link_repository import (
    Category,
    LinkStoreError,
    NewLink,
    SqliteLinkRepository,
    StoredLink,
)
from backend.app.services.content_fetcher import ContentFetchError, FetchedContent
from backend.app.services.link_pipeline_service import LinkPipelineService
from backend.app.services.llm_service import LinkSummary, LlmResponseError, infer_category
from backend.app.services.rich_nodes import RichNode
from backend.app.services.telegram_service import SaveReport, TelegramApiError
from backend.app.services.telegraph_service import TelegraphApiError
from backend.app.telemetry import TelemetryClient

ARTICLE_URL = "https://example.com/post"
ARTICLE_MARKDOWN = "# Great Post\n\nSome **useful** words.\n\n- [x] done"


class _FakeFetcher:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[str] = []

    def fetch(self, url: str) -> FetchedContent:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return FetchedContent(url=url, title="Great Post", markdown=ARTICLE_MARKDOWN)


class _FakeAnalyzer:
    def __init__(
        self,
        *,
        tags: tuple[str, ...] = ("python", "testing"),
        summary_error: Exception | None = None,
        insight_error: Exception | None = None,
    ) -> None:
        self.tags = tags
        self.summary_error = summary_error
        self.insight_error = insight_error
        self.recent_seen: list[StoredLink] = []
        self.related_seen: list[StoredLink] = []

    def generate_summary(
        self,
        *,
        url: str,
        title: str,
        markdown: str,
        recent: Sequence[StoredLink] = (),
    ) -> LinkSummary:
        self.recent_seen = list(recent)
        if self.summary_error is not None:
            raise self.summary_error
        return LinkSummary(summary=f"Summary of {title}", tags=self.tags)

    def generate_insight(
        self,
        *,
        title: str,
        url: str,
        summary: str,
        related: Sequence[StoredLink] = (),
    ) -> str:
        self.related_seen = list(related)
        if self.insight_error is not None:
            raise self.insight_error
        return "Worth reading."

    def infer_category(self, tags: Sequence[str]) -> Category:
        return infer_category(tags)


class _FakePublisher:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.published: list[tuple[str, list[RichNode], str]] = []

    def publish(
        self,
        *,
        title: str,
        nodes: Sequence[RichNode],
        source_url: str,
        author_url: str | None = None,
    ) -> str:
        if self.error is not None:
            raise self.error
        self.published.append((title, list(nodes), source_url))
        return "https://telegra.ph/Great-Post-01-01"


class _FakeNotifier:
    def __init__(
        self,
        *,
        success_error: Exception | None = None,
        processing_error: Exception | None = None,
    ) -> None:
        self.success_error = success_error
        self.processing_error = processing_error
        self.processing: list[tuple[int | str, str]] = []
        self.successes: list[tuple[int | None, SaveReport]] = []
        self.failures: list[tuple[int | None, str]] = []

    def send_processing(self, chat_id: int | str, url: str) -> int | None:
        if self.processing_error is not None:
            raise self.processing_error
        self.processing.append((chat_id, url))
        return 77

    def send_success(self, chat_id: int | str, message_id: int | None, report: SaveReport) -> None:
        if self.success_error is not None:
            raise self.success_error
        self.successes.append((message_id, report))

    def send_failure(
        self,
        chat_id: int | str,
        message_id: int | None,
        error: BaseException | str,
    ) -> None:
        self.failures.append((message_id, str(error)))


class _FailingCreateStore(SqliteLinkRepository):
    def create_link(self, link: NewLink) -> str:
        raise LinkStoreError("notion unavailable", status_code=503, retryable=True)


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def _seed(store: SqliteLinkRepository, *, title: str, tags: tuple[str, ...]) -> str:
    return store.create_link(
        NewLink(
            title=title,
            url=f"https://example.com/{title.lower().replace(' ', '-')}",
            summary=f"About {title}",
            insight="Earlier insight.",
            category="Tech",
            tags=tags,
        )
    )


def _pipeline(
    store: SqliteLinkRepository,
    *,
    fetcher: _FakeFetcher | None = None,
    analyzer: _FakeAnalyzer | None = None,
    notifier: _FakeNotifier | None = None,
    publisher: _FakePublisher | None = None,
    telemetry: TelemetryClient | None = None,
) -> LinkPipelineService:
    return LinkPipelineService(
        fetcher=fetcher or _FakeFetcher(),
        analyzer=analyzer or _FakeAnalyzer(),
        store=store,
        notifier=notifier or _FakeNotifier(),
        publisher=publisher,
        telemetry=telemetry,
        library_url="https://links.example.com",
    )


def test_message_without_url_is_ignored(link_store: SqliteLinkRepository) -> None:
    fetcher = _FakeFetcher()
    notifier = _FakeNotifier()
    pipeline = _pipeline(link_store, fetcher=fetcher, notifier=notifier)

    outcome = pipeline.process_message(42, "hello there, no links today")

    assert outcome.status == "ignored"
    assert outcome.stage == "received"
    assert fetcher.calls == []
    assert notifier.processing == []
    assert notifier.failures == []
    assert link_store.list_links() == []


def test_successful_save_archives_and_replies(link_store: SqliteLinkRepository) -> None:
    notifier = _FakeNotifier()
    publisher = _FakePublisher()
    sink = _CaptureSink()
    pipeline = _pipeline(
        link_store,
        notifier=notifier,
        publisher=publisher,
        telemetry=TelemetryClient(enabled=True, sink=sink),
    )

    outcome = pipeline.process_message(42, f"check this out {ARTICLE_URL}.")

    assert outcome.status == "saved"
    assert outcome.stage == "notified"
    assert outcome.url == ARTICLE_URL
    assert outcome.archive_url == "https://telegra.ph/Great-Post-01-01"
    assert notifier.processing == [(42, ARTICLE_URL)]
    assert notifier.failures == []

    message_id, report = notifier.successes[0]
    assert message_id == 77
    assert report.title == "Great Post"
    assert report.category == "Tech"
    assert report.tags == ("python", "testing")
    assert report.insight == "Worth reading."
    assert report.archive_url == "https://telegra.ph/Great-Post-01-01"
    assert report.library_url == "https://links.example.com"

    title, nodes, source_url = publisher.published[0]
    assert title == "Great Post"
    assert source_url == ARTICLE_URL
    assert nodes

    assert outcome.link_id is not None
    stored = link_store.get_link(outcome.link_id)
    assert stored is not None
    assert stored.archive_url == "https://telegra.ph/Great-Post-01-01"
    assert stored.tags == ("python", "testing")

    event_name, attributes = sink.events[-1]
    assert event_name == "link.pipeline.saved"
    assert attributes["archived"] is True
    assert attributes["tags"] == 2


def test_request_url_overrides_library_link(link_store: SqliteLinkRepository) -> None:
    notifier = _FakeNotifier()
    pipeline = _pipeline(link_store, notifier=notifier)

    outcome = pipeline.process_message(1, ARTICLE_URL, app_url="https://public.example.org")

    assert outcome.status == "saved"
    assert outcome.stage == "notified"
    assert notifier.successes[0][1].library_url == "https://public.example.org"
    assert notifier.successes[0][1].archive_url is None


def test_recent_and_related_links_reach_the_analyzer(link_store: SqliteLinkRepository) -> None:
    related_id = _seed(link_store, title="Python Packaging", tags=("Python",))
    _seed(link_store, title="Gardening", tags=("plants",))
    analyzer = _FakeAnalyzer(tags=("python",))
    pipeline = _pipeline(link_store, analyzer=analyzer)

    outcome = pipeline.process_message(1, ARTICLE_URL)

    assert outcome.status == "saved"
    assert {link.title for link in analyzer.recent_seen} == {"Python Packaging", "Gardening"}
    assert [link.link_id for link in analyzer.related_seen] == [related_id]


@pytest.mark.parametrize(
    ("fetcher", "analyzer", "expected_stage"),
    [
        (_FakeFetcher(error=ContentFetchError("Jina Reader request failed: HTTP 451")), None, "received"),
        (None, _FakeAnalyzer(summary_error=LlmResponseError("bad json")), "extracted"),
        (None, _FakeAnalyzer(insight_error=LlmResponseError("empty insight")), "enriched"),
    ],
)
def test_stage_failure_sends_one_notice_and_stores_nothing(
    link_store: SqliteLinkRepository,
    fetcher: _FakeFetcher | None,
    analyzer: _FakeAnalyzer | None,
    expected_stage: str,
) -> None:
    notifier = _FakeNotifier()
    pipeline = _pipeline(link_store, fetcher=fetcher, analyzer=analyzer, notifier=notifier)

    outcome = pipeline.process_message(5, ARTICLE_URL)

    assert outcome.status == "failed"
    assert outcome.stage == expected_stage
    assert outcome.error
    assert len(notifier.failures) == 1
    assert notifier.failures[0][0] == 77
    assert notifier.successes == []
    assert link_store.list_links() == []


def test_store_failure_is_reported(tmp_path: Path) -> None:
    db = Database(tmp_path / "failing.db")
    db.initialize()
    notifier = _FakeNotifier()
    publisher = _FakePublisher()
    pipeline = _pipeline(_FailingCreateStore(db), notifier=notifier, publisher=publisher)

    outcome = pipeline.process_message(5, ARTICLE_URL)

    assert outcome.status == "failed"
    assert outcome.stage == "insight_generated"
    assert notifier.failures == [(77, "notion unavailable")]
    assert publisher.published == []


def test_archive_failure_still_saves(link_store: SqliteLinkRepository) -> None:
    notifier = _FakeNotifier()
    pipeline = _pipeline(
        link_store,
        notifier=notifier,
        publisher=_FakePublisher(error=TelegraphApiError("Telegra.ph createPage failed: FLOOD_WAIT")),
    )

    outcome = pipeline.process_message(5, ARTICLE_URL)

    assert outcome.status == "saved"
    assert outcome.archive_url is None
    assert notifier.failures == []
    report = notifier.successes[0][1]
    assert report.archive_url is None
    assert outcome.link_id is not None
    stored = link_store.get_link(outcome.link_id)
    assert stored is not None
    assert stored.archive_url is None


def test_notification_errors_do_not_fail_the_save(link_store: SqliteLinkRepository) -> None:
    notifier = _FakeNotifier(
        processing_error=TelegramApiError("chat not found"),
        success_error=TelegramApiError("message is too long"),
    )
    pipeline = _pipeline(link_store, notifier=notifier, publisher=_FakePublisher())

    outcome = pipeline.process_message(5, ARTICLE_URL)

    assert outcome.status == "saved"
    assert outcome.stage == "published"
    assert len(link_store.list_links()) == 1
