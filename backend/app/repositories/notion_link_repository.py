from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any, cast
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from backend.app.repositories.common import parse_iso_datetime, utc_now_iso
from backend.app.repositories.link_repository import (
    CATEGORIES,
    LinkStoreError,
    NewLink,
    StoredLink,
    clamp_limit,
    coerce_category,
    dedupe_tags,
)

LOGGER = logging.getLogger("link_saver.notion")

RICH_TEXT_CHUNK_CHARS = 2000
NOTION_PAGE_SIZE_MAX = 100
DEFAULT_DATABASE_TITLE = "Link Saver Bookmarks"
_CATEGORY_COLORS: dict[str, str] = {
    "Tech": "blue",
    "News": "green",
    "Design": "pink",
    "Tutorial": "orange",
    "Other": "gray",
}
_CREATED_DESC_SORT: list[dict[str, str]] = [
    {"timestamp": "created_time", "direction": "descending"}
]


def database_properties_schema() -> dict[str, object]:
    return {
        "Name": {"title": {}},
        "URL": {"url": {}},
        "Archive": {"url": {}},
        "Tags": {"multi_select": {}},
        "Category": {
            "select": {
                "options": [
                    {"name": category, "color": _CATEGORY_COLORS[category]}
                    for category in CATEGORIES
                ]
            }
        },
        "Summary": {"rich_text": {}},
        "Insight": {"rich_text": {}},
    }


class NotionLinkRepository:
    """
    Link store backed by a Notion database.

    One page per saved link. Long summaries and insights are split into
    2000-character rich text chunks, which is the Notion per-object limit.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        database_id: str | None,
        base_url: str = "https://api.notion.com/v1",
        notion_version: str = "2022-06-28",
        http_timeout_seconds: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._database_id = database_id
        self._base_url = base_url.rstrip("/")
        self._notion_version = notion_version
        self._http_timeout_seconds = max(1.0, float(http_timeout_seconds))

    def create_link(self, link: NewLink) -> str:
        properties: dict[str, object] = {
            "Name": {"title": _rich_text(link.title)},
            "URL": {"url": link.url},
            "Tags": {"multi_select": [{"name": _select_name(tag)} for tag in dedupe_tags(link.tags)]},
            "Category": {"select": {"name": link.category}},
            "Summary": {"rich_text": _rich_text(link.summary)},
            "Insight": {"rich_text": _rich_text(link.insight)},
        }
        if link.archive_url:
            properties["Archive"] = {"url": link.archive_url}

        response = self._request_json(
            method="POST",
            path="/pages",
            payload={"parent": {"database_id": self._require_database_id()}, "properties": properties},
        )
        page_id = response.get("id")
        if not isinstance(page_id, str) or not page_id:
            raise LinkStoreError("Notion did not return a page id for the new link.")
        LOGGER.info("notion link created page_id=%s", page_id)
        return page_id

    def update_archive_url(self, link_id: str, archive_url: str) -> None:
        self._request_json(
            method="PATCH",
            path=f"/pages/{link_id}",
            payload={"properties": {"Archive": {"url": archive_url}}},
        )

    def list_recent(self, limit: int) -> list[StoredLink]:
        return self._query(filter_payload=None, limit=limit)

    def search_by_tags(self, tags: Sequence[str], limit: int) -> list[StoredLink]:
        cleaned = dedupe_tags(tags)
        if not cleaned:
            return []
        conditions = [
            {"property": "Tags", "multi_select": {"contains": _select_name(tag)}}
            for tag in cleaned
        ]
        filter_payload: dict[str, object] = (
            conditions[0] if len(conditions) == 1 else {"or": conditions}
        )
        return self._query(filter_payload=filter_payload, limit=limit)

    def list_links(self, *, tag: str | None = None, limit: int = 100) -> list[StoredLink]:
        if tag is not None and tag.strip().lstrip("#").strip():
            return self.search_by_tags([tag], limit)
        return self._query(filter_payload=None, limit=limit)

    def get_link(self, link_id: str) -> StoredLink | None:
        try:
            page = self._request_json(method="GET", path=f"/pages/{link_id}", payload=None)
        except LinkStoreError as exc:
            # Malformed ids come back as 400 validation errors.
            if exc.status_code in {400, 404}:
                return None
            raise
        if page.get("archived") is True or page.get("in_trash") is True:
            return None
        return _page_to_link(page)

    def create_database(self, parent_page_id: str, title: str = DEFAULT_DATABASE_TITLE) -> str:
        response = self._request_json(
            method="POST",
            path="/databases",
            payload={
                "parent": {"type": "page_id", "page_id": parent_page_id},
                "title": [{"type": "text", "text": {"content": title}}],
                "properties": database_properties_schema(),
            },
        )
        database_id = response.get("id")
        if not isinstance(database_id, str) or not database_id:
            raise LinkStoreError("Notion did not return a database id.")
        return database_id

    def ensure_schema(self) -> None:
        """Add any missing link properties to the configured database."""
        schema = database_properties_schema()
        schema.pop("Name")
        self._request_json(
            method="PATCH",
            path=f"/databases/{self._require_database_id()}",
            payload={"properties": schema},
        )

    def _query(self, *, filter_payload: dict[str, object] | None, limit: int) -> list[StoredLink]:
        remaining = clamp_limit(limit)
        links: list[StoredLink] = []
        start_cursor: str | None = None
        database_id = self._require_database_id()
        while remaining > 0:
            payload: dict[str, object] = {
                "sorts": _CREATED_DESC_SORT,
                "page_size": min(remaining, NOTION_PAGE_SIZE_MAX),
            }
            if filter_payload is not None:
                payload["filter"] = filter_payload
            if start_cursor is not None:
                payload["start_cursor"] = start_cursor

            response = self._request_json(
                method="POST",
                path=f"/databases/{database_id}/query",
                payload=payload,
            )
            results = response.get("results")
            pages = cast(list[object], results) if isinstance(results, list) else []
            for page in pages:
                if isinstance(page, dict):
                    links.append(_page_to_link(cast(dict[str, Any], page)))
            remaining = clamp_limit(limit) - len(links)

            next_cursor = response.get("next_cursor")
            if response.get("has_more") is not True or not isinstance(next_cursor, str):
                break
            start_cursor = next_cursor
        return links[: clamp_limit(limit)]

    def _require_database_id(self) -> str:
        if self._database_id is None:
            raise LinkStoreError("Notion database id is not configured.")
        return self._database_id

    def _request_json(
        self,
        *,
        method: str,
        path: str,
        payload: dict[str, object] | None,
    ) -> dict[str, object]:
        if self._api_key is None:
            raise LinkStoreError("Notion integration is not configured.")
        body: bytes | None = None
        headers: dict[str, str] = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self._api_key}",
            "Notion-Version": self._notion_version,
        }
        if payload is not None:
            body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
            headers["Content-Type"] = "application/json"

        request = Request(
            url=f"{self._base_url}{path}",
            data=body,
            headers=headers,
            method=method,
        )
        try:
            with urlopen(request, timeout=self._http_timeout_seconds) as response:
                raw_body = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            response_body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
            parsed = _decode_json_object(response_body)
            message = parsed.get("message")
            detail = message if isinstance(message, str) and message else response_body or str(exc)
            raise LinkStoreError(
                f"Notion API request failed: {detail}",
                status_code=exc.code,
                retryable=(exc.code >= 500 or exc.code in {408, 409, 429}),
            ) from exc
        except (URLError, TimeoutError) as exc:
            reason = exc.reason if isinstance(exc, URLError) else exc
            raise LinkStoreError(
                f"Notion request failed: {reason}",
                status_code=None,
                retryable=True,
            ) from exc

        return _decode_json_object(raw_body)


def _rich_text(value: str) -> list[dict[str, object]]:
    chunks = [
        value[start : start + RICH_TEXT_CHUNK_CHARS]
        for start in range(0, len(value), RICH_TEXT_CHUNK_CHARS)
    ]
    return [{"type": "text", "text": {"content": chunk}} for chunk in chunks]


def _select_name(tag: str) -> str:
    # Notion rejects commas in select option names.
    return tag.replace(",", " ").strip()[:100]


def _page_to_link(page: dict[str, Any]) -> StoredLink:
    properties = page.get("properties")
    props = cast(dict[str, Any], properties) if isinstance(properties, dict) else {}
    created_raw = page.get("created_time")
    created_at = parse_iso_datetime(created_raw if isinstance(created_raw, str) else utc_now_iso())
    return StoredLink(
        link_id=str(page.get("id") or ""),
        title=_plain_text(_nested(props, "Name", "title")) or "Untitled",
        url=_url_value(props, "URL") or "",
        archive_url=_url_value(props, "Archive"),
        summary=_plain_text(_nested(props, "Summary", "rich_text")),
        insight=_plain_text(_nested(props, "Insight", "rich_text")),
        category=coerce_category(_nested(props, "Category", "select", "name")),
        tags=_multi_select_names(_nested(props, "Tags", "multi_select")),
        created_at=created_at,
    )


def _nested(value: object, *keys: str) -> object:
    current = value
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = cast(dict[str, object], current).get(key)
    return current


def _plain_text(value: object) -> str:
    if not isinstance(value, list):
        return ""
    parts: list[str] = []
    for item in cast(list[object], value):
        text = _nested(item, "plain_text")
        if not isinstance(text, str):
            text = _nested(item, "text", "content")
        if isinstance(text, str):
            parts.append(text)
    return "".join(parts).strip()


def _url_value(props: dict[str, Any], name: str) -> str | None:
    value = _nested(props, name, "url")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _multi_select_names(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    names: list[str] = []
    for item in cast(list[object], value):
        name = _nested(item, "name")
        if isinstance(name, str) and name.strip():
            names.append(name.strip())
    return tuple(names)


def _decode_json_object(raw_body: str) -> dict[str, object]:
    if not raw_body.strip():
        return {}
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, dict):
        parsed_dict = cast(dict[object, object], parsed)
        return {key: value for key, value in parsed_dict.items() if isinstance(key, str)}
    return {}
