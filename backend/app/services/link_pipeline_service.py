from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal, Protocol

from backend.app.repositories.link_repository import Category, LinkStore, NewLink, StoredLink
from backend.app.services.content_fetcher import FetchedContent
from backend.app.services.llm_service import LinkSummary
from backend.app.services.rich_nodes import RichNode, markdown_to_nodes
from backend.app.services.telegram_service import SaveReport, TelegramApiError, extract_first_url
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("link_saver.pipeline")

PipelineStage = Literal[
    "received",
    "extracted",
    "summarized",
    "enriched",
    "insight_generated",
    "stored",
    "published",
    "notified",
]
PipelineStatus = Literal["ignored", "saved", "failed"]


class ContentFetcher(Protocol):
    def fetch(self, url: str) -> FetchedContent:
        ...


class LinkAnalyzer(Protocol):
    def generate_summary(
        self,
        *,
        url: str,
        title: str,
        markdown: str,
        recent: Sequence[StoredLink] = (),
    ) -> LinkSummary:
        ...

    def generate_insight(
        self,
        *,
        title: str,
        url: str,
        summary: str,
        related: Sequence[StoredLink] = (),
    ) -> str:
        ...

    def infer_category(self, tags: Sequence[str]) -> Category:
        ...


class ArchivePublisher(Protocol):
    def publish(
        self,
        *,
        title: str,
        nodes: Sequence[RichNode],
        source_url: str,
        author_url: str | None = None,
    ) -> str:
        ...


class ChatNotifier(Protocol):
    def send_processing(self, chat_id: int | str, url: str) -> int | None:
        ...

    def send_success(self, chat_id: int | str, message_id: int | None, report: SaveReport) -> None:
        ...

    def send_failure(
        self,
        chat_id: int | str,
        message_id: int | None,
        error: BaseException | str,
    ) -> None:
        ...


@dataclass(frozen=True)
class LinkPipelineOutcome:
    status: PipelineStatus
    stage: PipelineStage
    url: str | None = None
    link_id: str | None = None
    archive_url: str | None = None
    error: str | None = None


class LinkPipelineService:
    """
    Sequences one save: fetch, summarize, find related links, write an insight,
    store, archive, reply.

    Every failure up to and including the store write aborts the run with a
    single failure reply. Archiving is best effort; without it the reply links
    to the source page. Nothing is retried.
    """

    def __init__(
        self,
        *,
        fetcher: ContentFetcher,
        analyzer: LinkAnalyzer,
        store: LinkStore,
        notifier: ChatNotifier,
        publisher: ArchivePublisher | None = None,
        telemetry: TelemetryClient | None = None,
        recent_context_limit: int = 10,
        related_links_limit: int = 5,
        library_url: str | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._analyzer = analyzer
        self._store = store
        self._notifier = notifier
        self._publisher = publisher
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._recent_context_limit = max(0, recent_context_limit)
        self._related_links_limit = max(0, related_links_limit)
        self._library_url = library_url

    def process_message(
        self,
        chat_id: int | str,
        text: str | None,
        app_url: str | None = None,
    ) -> LinkPipelineOutcome:
        url = extract_first_url(text)
        if url is None:
            self._telemetry.emit("link.pipeline.ignored", chat_id=str(chat_id))
            return LinkPipelineOutcome(status="ignored", stage="received")

        message_id = self._send_processing(chat_id, url)
        stage: PipelineStage = "received"
        try:
            content = self._fetcher.fetch(url)
            stage = "extracted"

            recent = (
                self._store.list_recent(self._recent_context_limit)
                if self._recent_context_limit
                else []
            )
            summary = self._analyzer.generate_summary(
                url=url,
                title=content.title,
                markdown=content.markdown,
                recent=recent,
            )
            stage = "summarized"

            related = (
                self._store.search_by_tags(summary.tags, self._related_links_limit)
                if self._related_links_limit and summary.tags
                else []
            )
            stage = "enriched"

            insight = self._analyzer.generate_insight(
                title=content.title,
                url=url,
                summary=summary.summary,
                related=related,
            )
            stage = "insight_generated"

            category = self._analyzer.infer_category(summary.tags)
            link_id = self._store.create_link(
                NewLink(
                    title=content.title,
                    url=url,
                    summary=summary.summary,
                    insight=insight,
                    category=category,
                    tags=summary.tags,
                )
            )
            stage = "stored"
        except Exception as exc:
            LOGGER.exception("link pipeline failed url=%s stage=%s", url, stage)
            self._send_failure(chat_id, message_id, exc)
            self._telemetry.emit_error("link.pipeline.failed", exc, url=url, stage=stage)
            return LinkPipelineOutcome(status="failed", stage=stage, url=url, error=str(exc))

        archive_url = self._archive(link_id=link_id, content=content)
        if archive_url is not None:
            stage = "published"

        report = SaveReport(
            title=content.title,
            url=url,
            category=category,
            summary=summary.summary,
            insight=insight,
            tags=summary.tags,
            archive_url=archive_url,
            library_url=app_url or self._library_url,
        )
        try:
            self._notifier.send_success(chat_id, message_id, report)
            stage = "notified"
        except TelegramApiError:
            LOGGER.warning(
                "success notification failed url=%s link_id=%s", url, link_id, exc_info=True
            )

        self._telemetry.emit(
            "link.pipeline.saved",
            url=url,
            link_id=link_id,
            stage=stage,
            archived=archive_url is not None,
            tags=summary.tags,
        )
        return LinkPipelineOutcome(
            status="saved",
            stage=stage,
            url=url,
            link_id=link_id,
            archive_url=archive_url,
        )

    def _archive(self, *, link_id: str, content: FetchedContent) -> str | None:
        if self._publisher is None:
            return None
        try:
            nodes = markdown_to_nodes(content.markdown)
            archive_url = self._publisher.publish(
                title=content.title,
                nodes=nodes,
                source_url=content.url,
            )
            self._store.update_archive_url(link_id, archive_url)
        except Exception:
            LOGGER.warning(
                "archive failed; continuing without archive url link_id=%s url=%s",
                link_id,
                content.url,
                exc_info=True,
            )
            return None
        return archive_url

    def _send_processing(self, chat_id: int | str, url: str) -> int | None:
        try:
            return self._notifier.send_processing(chat_id, url)
        except TelegramApiError:
            LOGGER.warning("processing notification failed url=%s", url, exc_info=True)
            return None

    def _send_failure(self, chat_id: int | str, message_id: int | None, exc: Exception) -> None:
        try:
            self._notifier.send_failure(chat_id, message_id, exc)
        except TelegramApiError:
            LOGGER.warning("failure notification failed chat_id=%s", chat_id, exc_info=True)
