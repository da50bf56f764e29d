from __future__ import annotations

from typing import Any

import pytest

from backend.app.repositories.link_repository import (
    LinkStoreError,
    NewLink,
    SqliteLinkRepository,
    clamp_limit,
    coerce_category,
    dedupe_tags,
)
from backend.app.repositories.notion_link_repository import (
    NotionLinkRepository,
    database_properties_schema,
)


def _new_link(title: str, *, tags: tuple[str, ...] = (), category: str = "Tech") -> NewLink:
    return NewLink(
        title=title,
        url=f"https://example.com/{title.lower()}",
        summary=f"{title} summary",
        insight=f"{title} insight",
        category=category,  # type: ignore[arg-type]
        tags=tags,
    )


def test_sqlite_create_and_get_link(link_store: SqliteLinkRepository) -> None:
    link_id = link_store.create_link(_new_link("Alpha", tags=("Python", "#python", " APIs ")))

    stored = link_store.get_link(link_id)

    assert stored is not None
    assert link_id.startswith("link_")
    assert stored.title == "Alpha"
    assert stored.tags == ("Python", "APIs")
    assert stored.archive_url is None
    assert stored.created_at.tzinfo is not None
    assert link_store.get_link("link_missing") is None


def test_sqlite_lists_newest_first_and_filters_by_tag(link_store: SqliteLinkRepository) -> None:
    first = link_store.create_link(_new_link("First", tags=("python",)))
    second = link_store.create_link(_new_link("Second", tags=("rust",)))
    third = link_store.create_link(_new_link("Third", tags=("Python", "rust")))

    assert [link.link_id for link in link_store.list_links()] == [third, second, first]
    assert [link.link_id for link in link_store.list_recent(2)] == [third, second]
    assert [link.link_id for link in link_store.list_links(tag="#PYTHON")] == [third, first]
    assert [link.link_id for link in link_store.list_links(tag="  ")] == [third, second, first]
    assert [link.link_id for link in link_store.search_by_tags(["rust", "python"], 10)] == [
        third,
        second,
        first,
    ]
    assert link_store.search_by_tags(["", "#"], 10) == []


def test_sqlite_update_archive_url(link_store: SqliteLinkRepository) -> None:
    link_id = link_store.create_link(_new_link("Archived"))

    link_store.update_archive_url(link_id, "https://telegra.ph/Archived-01-01")

    stored = link_store.get_link(link_id)
    assert stored is not None
    assert stored.archive_url == "https://telegra.ph/Archived-01-01"
    with pytest.raises(LinkStoreError) as exc_info:
        link_store.update_archive_url("link_missing", "https://telegra.ph/x")
    assert exc_info.value.status_code == 404


def test_link_helpers() -> None:
    assert coerce_category(" design ") == "Design"
    assert coerce_category("Science") == "Other"
    assert coerce_category(None) == "Other"
    assert dedupe_tags(["A", "a", "#b", "", "  "]) == ("A", "b")
    assert clamp_limit(0) == 1
    assert clamp_limit(5000) == 200


class _NotionRecorder:
    def __init__(self, responses: list[dict[str, object] | LinkStoreError]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, str, dict[str, object] | None]] = []

    def __call__(
        self,
        *,
        method: str,
        path: str,
        payload: dict[str, object] | None,
    ) -> dict[str, object]:
        self.calls.append((method, path, payload))
        response = self.responses.pop(0)
        if isinstance(response, LinkStoreError):
            raise response
        return response


def _notion(
    monkeypatch: pytest.MonkeyPatch,
    responses: list[dict[str, object] | LinkStoreError],
) -> tuple[NotionLinkRepository, _NotionRecorder]:
    repository = NotionLinkRepository(api_key="secret_test", database_id="db123")
    recorder = _NotionRecorder(responses)
    monkeypatch.setattr(repository, "_request_json", recorder)
    return repository, recorder


def _notion_page(page_id: str, *, title: str, tags: list[str]) -> dict[str, Any]:
    return {
        "object": "page",
        "id": page_id,
        "created_time": "2024-03-01T10:00:00.000Z",
        "archived": False,
        "properties": {
            "Name": {"title": [{"plain_text": title}]},
            "URL": {"url": f"https://example.com/{page_id}"},
            "Archive": {"url": None},
            "Tags": {"multi_select": [{"name": tag} for tag in tags]},
            "Category": {"select": {"name": "News"}},
            "Summary": {"rich_text": [{"plain_text": "Part one. "}, {"plain_text": "Part two."}]},
            "Insight": {"rich_text": []},
        },
    }


def test_notion_create_link_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    repository, recorder = _notion(monkeypatch, [{"id": "page-1"}])
    link = NewLink(
        title="Long",
        url="https://example.com/long",
        summary="s" * 4500,
        insight="Short insight.",
        category="Tutorial",
        tags=("a,b", "A,B", "Guides"),
        archive_url="https://telegra.ph/Long-01-01",
    )

    assert repository.create_link(link) == "page-1"

    method, path, payload = recorder.calls[0]
    assert (method, path) == ("POST", "/pages")
    assert payload is not None
    assert payload["parent"] == {"database_id": "db123"}
    properties: dict[str, Any] = payload["properties"]  # type: ignore[assignment]
    assert [chunk["text"]["content"] for chunk in properties["Summary"]["rich_text"]] == [
        "s" * 2000,
        "s" * 2000,
        "s" * 500,
    ]
    assert properties["Tags"] == {"multi_select": [{"name": "a b"}, {"name": "Guides"}]}
    assert properties["Category"] == {"select": {"name": "Tutorial"}}
    assert properties["Archive"] == {"url": "https://telegra.ph/Long-01-01"}


def test_notion_create_link_requires_page_id(monkeypatch: pytest.MonkeyPatch) -> None:
    repository, _ = _notion(monkeypatch, [{"object": "error"}])
    with pytest.raises(LinkStoreError, match="page id"):
        repository.create_link(_new_link("Broken"))


def test_notion_search_by_tags_uses_or_filter_and_paginates(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    repository, recorder = _notion(
        monkeypatch,
        [
            {
                "results": [_notion_page("p1", title="One", tags=["ai"])],
                "has_more": True,
                "next_cursor": "cursor-2",
            },
            {
                "results": [_notion_page("p2", title="Two", tags=["ml", "ai"])],
                "has_more": False,
                "next_cursor": None,
            },
        ],
    )

    links = repository.search_by_tags(["ai", "#ml"], 5)

    assert [link.link_id for link in links] == ["p1", "p2"]
    assert links[1].tags == ("ml", "ai")
    assert links[0].summary == "Part one. Part two."
    assert links[0].category == "News"
    assert links[0].archive_url is None
    first_payload = recorder.calls[0][2]
    assert first_payload is not None
    assert recorder.calls[0][1] == "/databases/db123/query"
    assert first_payload["filter"] == {
        "or": [
            {"property": "Tags", "multi_select": {"contains": "ai"}},
            {"property": "Tags", "multi_select": {"contains": "ml"}},
        ]
    }
    assert first_payload["page_size"] == 5
    second_payload = recorder.calls[1][2]
    assert second_payload is not None
    assert second_payload["start_cursor"] == "cursor-2"
    assert second_payload["page_size"] == 4


def test_notion_list_links_single_tag_filter(monkeypatch: pytest.MonkeyPatch) -> None:
    repository, recorder = _notion(monkeypatch, [{"results": [], "has_more": False}])

    assert repository.list_links(tag="python", limit=10) == []

    payload = recorder.calls[0][2]
    assert payload is not None
    assert payload["filter"] == {"property": "Tags", "multi_select": {"contains": "python"}}
    assert payload["sorts"] == [{"timestamp": "created_time", "direction": "descending"}]


def test_notion_get_link_handles_missing_and_archived(monkeypatch: pytest.MonkeyPatch) -> None:
    archived = _notion_page("p3", title="Gone", tags=[])
    archived["archived"] = True
    repository, _ = _notion(
        monkeypatch,
        [
            LinkStoreError("Could not find page", status_code=404),
            LinkStoreError("path failed validation", status_code=400),
            archived,
            _notion_page("p4", title="Here", tags=["x"]),
            LinkStoreError("rate limited", status_code=429, retryable=True),
        ],
    )

    assert repository.get_link("missing") is None
    assert repository.get_link("not-a-uuid") is None
    assert repository.get_link("p3") is None
    found = repository.get_link("p4")
    assert found is not None
    assert found.title == "Here"
    with pytest.raises(LinkStoreError):
        repository.get_link("p5")


def test_notion_update_archive_and_schema(monkeypatch: pytest.MonkeyPatch) -> None:
    repository, recorder = _notion(monkeypatch, [{}, {}, {"id": "db-new"}])

    repository.update_archive_url("p1", "https://telegra.ph/p1")
    repository.ensure_schema()
    assert repository.create_database("parent-page") == "db-new"

    assert recorder.calls[0] == (
        "PATCH",
        "/pages/p1",
        {"properties": {"Archive": {"url": "https://telegra.ph/p1"}}},
    )
    schema_payload = recorder.calls[1][2]
    assert schema_payload is not None
    schema_properties: dict[str, Any] = schema_payload["properties"]  # type: ignore[assignment]
    assert "Name" not in schema_properties
    assert recorder.calls[1][1] == "/databases/db123"
    create_payload = recorder.calls[2][2]
    assert create_payload is not None
    assert create_payload["parent"] == {"type": "page_id", "page_id": "parent-page"}
    assert create_payload["properties"] == database_properties_schema()


def test_notion_requires_configuration() -> None:
    repository = NotionLinkRepository(api_key=None, database_id="db123")
    with pytest.raises(LinkStoreError, match="not configured"):
        repository.list_recent(5)

    no_database = NotionLinkRepository(api_key="secret_test", database_id=None)
    with pytest.raises(LinkStoreError, match="database id"):
        no_database.list_recent(5)
