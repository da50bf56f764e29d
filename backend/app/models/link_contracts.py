from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from backend.app.repositories.link_repository import Category, StoredLink

GraphGroup = Literal["article", "tag"]
TAG_NODE_COLOR = "#ff00ff"


def _normalize_optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized


class TelegramChat(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | str


class TelegramMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message_id: int | None = None
    chat: TelegramChat
    text: str | None = None
    caption: str | None = None

    @field_validator("text", "caption", mode="before")
    @classmethod
    def _normalize_optional_fields(cls, value: object) -> str | None:
        return _normalize_optional_text(value)

    @property
    def body(self) -> str | None:
        return self.text or self.caption


class TelegramUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    update_id: int | None = None
    message: TelegramMessage | None = None
    channel_post: TelegramMessage | None = None

    @property
    def effective_message(self) -> TelegramMessage | None:
        return self.message or self.channel_post


class WebhookAck(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool = True


class WebhookStatus(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Literal["alive"] = "alive"


class LinkSummaryResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    title: str
    url: str
    archive_url: str | None = None
    category: Category
    tags: list[str] = Field(default_factory=list)
    summary: str
    created_at: datetime

    @classmethod
    def from_link(cls, link: StoredLink) -> LinkSummaryResponse:
        return cls(
            id=link.link_id,
            title=link.title,
            url=link.url,
            archive_url=link.archive_url,
            category=link.category,
            tags=list(link.tags),
            summary=link.summary,
            created_at=link.created_at,
        )


class LinkDetailResponse(LinkSummaryResponse):
    insight: str
    archive_content: list[Any] | None = Field(
        default=None,
        description="Telegra.ph node tree of the archived copy, when it could be fetched.",
    )

    @classmethod
    def from_stored(
        cls,
        link: StoredLink,
        *,
        archive_content: list[Any] | None,
    ) -> LinkDetailResponse:
        return cls(
            id=link.link_id,
            title=link.title,
            url=link.url,
            archive_url=link.archive_url,
            category=link.category,
            tags=list(link.tags),
            summary=link.summary,
            insight=link.insight,
            created_at=link.created_at,
            archive_content=archive_content,
        )


class GraphNode(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    group: GraphGroup
    val: int
    url: str | None = None
    color: str | None = None


class GraphLink(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source: str
    target: str


class GraphResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    nodes: list[GraphNode] = Field(default_factory=list)
    links: list[GraphLink] = Field(default_factory=list)


def build_graph(links: list[StoredLink]) -> GraphResponse:
    nodes: list[GraphNode] = []
    edges: list[GraphLink] = []
    seen: set[str] = set()
    for link in links:
        if link.link_id not in seen:
            seen.add(link.link_id)
            nodes.append(
                GraphNode(id=link.link_id, name=link.title, group="article", val=20, url=link.url)
            )
        for tag in link.tags:
            tag_id = f"tag-{tag}"
            if tag_id not in seen:
                seen.add(tag_id)
                nodes.append(
                    GraphNode(id=tag_id, name=tag, group="tag", val=10, color=TAG_NODE_COLOR)
                )
            edges.append(GraphLink(source=link.link_id, target=tag_id))
    return GraphResponse(nodes=nodes, links=edges)
