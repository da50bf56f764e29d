from __future__ import annotations

import hmac
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.config import AppSettings
from backend.app.dependencies import (
    get_link_pipeline_service,
    get_link_store,
    get_settings,
    get_telegraph_service,
)
from backend.app.models.link_contracts import (
    GraphResponse,
    LinkDetailResponse,
    LinkSummaryResponse,
    TelegramUpdate,
    WebhookAck,
    WebhookStatus,
    build_graph,
)
from backend.app.repositories.link_repository import MAX_LIST_LIMIT, LinkStore
from backend.app.services.link_pipeline_service import LinkPipelineService
from backend.app.services.rich_nodes import nodes_to_json
from backend.app.services.telegraph_service import (
    TelegraphApiError,
    TelegraphService,
    telegraph_path_from_url,
)

LOGGER = logging.getLogger("link_saver.api")

router = APIRouter()


def verify_telegram_secret(
    settings: Annotated[AppSettings, Depends(get_settings)],
    secret_token: Annotated[
        str | None,
        Header(alias="X-Telegram-Bot-Api-Secret-Token"),
    ] = None,
) -> None:
    expected = settings.telegram_webhook_secret
    if expected is None:
        return
    if secret_token is None or not hmac.compare_digest(secret_token, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post(
    "/webhook/telegram",
    response_model=WebhookAck,
    tags=["webhook"],
    operation_id="telegram_webhook",
    dependencies=[Depends(verify_telegram_secret)],
)
def telegram_webhook(
    update: TelegramUpdate,
    request: Request,
    settings: Annotated[AppSettings, Depends(get_settings)],
    pipeline: Annotated[LinkPipelineService, Depends(get_link_pipeline_service)],
) -> WebhookAck:
    message = update.effective_message
    if message is None or message.body is None:
        return WebhookAck()

    context_tokens = bind_contextvars(
        telegram_update_id=update.update_id,
        telegram_chat_id=str(message.chat.id),
    )
    try:
        pipeline.process_message(
            message.chat.id,
            message.body,
            app_url=settings.public_base_url or str(request.base_url).rstrip("/"),
        )
    finally:
        reset_contextvars(**context_tokens)
    return WebhookAck()


@router.get(
    "/webhook/telegram",
    response_model=WebhookStatus,
    tags=["webhook"],
    operation_id="telegram_webhook_status",
)
def telegram_webhook_status() -> WebhookStatus:
    return WebhookStatus()


@router.get(
    "/links",
    response_model=list[LinkSummaryResponse],
    tags=["links"],
    operation_id="list_links",
)
def list_links(
    store: Annotated[LinkStore, Depends(get_link_store)],
    tag: Annotated[str | None, Query(max_length=100)] = None,
    limit: Annotated[int, Query(ge=1, le=MAX_LIST_LIMIT)] = 100,
) -> list[LinkSummaryResponse]:
    links = store.list_links(tag=tag, limit=limit)
    return [LinkSummaryResponse.from_link(link) for link in links]


@router.get(
    "/links/{link_id}",
    response_model=LinkDetailResponse,
    tags=["links"],
    operation_id="get_link",
)
def get_link(
    link_id: str,
    store: Annotated[LinkStore, Depends(get_link_store)],
    telegraph: Annotated[TelegraphService, Depends(get_telegraph_service)],
) -> LinkDetailResponse:
    link = store.get_link(link_id)
    if link is None:
        raise HTTPException(status_code=404, detail="Link not found")

    archive_content: list[Any] | None = None
    archive_path = telegraph_path_from_url(link.archive_url)
    if archive_path is not None:
        try:
            archive_content = nodes_to_json(telegraph.get_page(archive_path).nodes)
        except TelegraphApiError:
            LOGGER.warning(
                "archive fetch failed link_id=%s path=%s",
                link_id,
                archive_path,
                exc_info=True,
            )
    return LinkDetailResponse.from_stored(link, archive_content=archive_content)


@router.get(
    "/graph",
    response_model=GraphResponse,
    tags=["links"],
    operation_id="link_graph",
)
def link_graph(
    store: Annotated[LinkStore, Depends(get_link_store)],
) -> GraphResponse:
    return build_graph(store.list_links(limit=MAX_LIST_LIMIT))
