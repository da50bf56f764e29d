from __future__ import annotations

from functools import lru_cache

from backend.app.config import AppSettings, load_settings
from backend.app.repositories.database import Database
from backend.app.repositories.link_repository import LinkStore, SqliteLinkRepository
from backend.app.repositories.notion_link_repository import NotionLinkRepository
from backend.app.services.content_fetcher import JinaReaderClient
from backend.app.services.link_pipeline_service import LinkPipelineService
from backend.app.services.llm_service import GeminiLinkAnalyzer
from backend.app.services.telegram_service import TelegramBotClient, TelegramNotifier
from backend.app.services.telegraph_service import TelegraphService
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_link_store() -> LinkStore:
    settings = get_settings()
    if settings.store_backend == "sqlite":
        database = Database(settings.db_path)
        database.initialize()
        return SqliteLinkRepository(database)
    return NotionLinkRepository(
        api_key=settings.notion_api_key,
        database_id=settings.notion_database_id,
        base_url=settings.notion_base_url,
        notion_version=settings.notion_version,
        http_timeout_seconds=settings.http_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_telegraph_service() -> TelegraphService:
    settings = get_settings()
    return TelegraphService(
        access_token=settings.telegraph_access_token,
        base_url=settings.telegraph_base_url,
        short_name=settings.telegraph_short_name,
        author_name=settings.telegraph_author_name,
        timezone=settings.default_timezone,
        http_timeout_seconds=settings.http_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_telegram_client() -> TelegramBotClient:
    settings = get_settings()
    return TelegramBotClient(
        bot_token=settings.telegram_bot_token,
        base_url=settings.telegram_base_url,
        http_timeout_seconds=settings.http_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_link_pipeline_service() -> LinkPipelineService:
    settings = get_settings()
    return LinkPipelineService(
        fetcher=JinaReaderClient(
            base_url=settings.jina_base_url,
            api_key=settings.jina_api_key,
            http_timeout_seconds=settings.http_timeout_seconds,
        ),
        analyzer=GeminiLinkAnalyzer(
            api_key=settings.gemini_api_key,
            model_name=settings.gemini_model,
            summary_language=settings.summary_language,
            content_max_chars=settings.summary_content_max_chars,
        ),
        store=get_link_store(),
        notifier=TelegramNotifier(get_telegram_client()),
        publisher=get_telegraph_service() if settings.telegraph_enabled else None,
        telemetry=get_telemetry(),
        recent_context_limit=settings.recent_context_limit,
        related_links_limit=settings.related_links_limit,
        library_url=settings.public_base_url,
    )


def reset_cached_dependencies() -> None:
    get_link_pipeline_service.cache_clear()
    get_telegram_client.cache_clear()
    get_telegraph_service.cache_clear()
    get_link_store.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
