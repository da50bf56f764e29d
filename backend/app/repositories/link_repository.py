from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from sqlite3 import Connection, Row
from typing import Literal, Protocol
from uuid import uuid4

from backend.app.repositories.common import normalize_tag, parse_iso_datetime, utc_now_iso
from backend.app.repositories.database import Database

Category = Literal["Tech", "News", "Design", "Tutorial", "Other"]
CATEGORIES: tuple[Category, ...] = ("Tech", "News", "Design", "Tutorial", "Other")
MAX_LIST_LIMIT = 200


class LinkStoreError(RuntimeError):
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
class NewLink:
    title: str
    url: str
    summary: str
    insight: str
    category: Category
    tags: tuple[str, ...] = ()
    archive_url: str | None = None


@dataclass(frozen=True)
class StoredLink:
    link_id: str
    title: str
    url: str
    summary: str
    insight: str
    category: Category
    created_at: datetime
    tags: tuple[str, ...] = field(default_factory=tuple)
    archive_url: str | None = None


class LinkStore(Protocol):
    """Persistence for saved links; every method raises `LinkStoreError` on failure."""

    def create_link(self, link: NewLink) -> str:
        ...

    def update_archive_url(self, link_id: str, archive_url: str) -> None:
        ...

    def list_recent(self, limit: int) -> list[StoredLink]:
        ...

    def search_by_tags(self, tags: Sequence[str], limit: int) -> list[StoredLink]:
        ...

    def list_links(self, *, tag: str | None = None, limit: int = 100) -> list[StoredLink]:
        ...

    def get_link(self, link_id: str) -> StoredLink | None:
        ...


def coerce_category(value: object) -> Category:
    if isinstance(value, str):
        for category in CATEGORIES:
            if category.lower() == value.strip().lower():
                return category
    return "Other"


def dedupe_tags(tags: Sequence[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    output: list[str] = []
    for raw_tag in tags:
        cleaned = raw_tag.strip().lstrip("#").strip()
        key = normalize_tag(cleaned)
        if not key or key in seen:
            continue
        seen.add(key)
        output.append(cleaned)
    return tuple(output)


def clamp_limit(limit: int) -> int:
    return max(1, min(int(limit), MAX_LIST_LIMIT))


class SqliteLinkRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def create_link(self, link: NewLink) -> str:
        now_iso = utc_now_iso()
        link_id = f"link_{uuid4().hex}"
        tags = dedupe_tags(link.tags)
        try:
            with self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO links (
                        id,
                        title,
                        url,
                        archive_url,
                        summary,
                        insight,
                        category,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        link_id,
                        link.title,
                        link.url,
                        link.archive_url,
                        link.summary,
                        link.insight,
                        link.category,
                        now_iso,
                        now_iso,
                    ),
                )
                conn.executemany(
                    """
                    INSERT INTO link_tags (link_id, position, tag, normalized_tag)
                    VALUES (?, ?, ?, ?)
                    """,
                    [
                        (link_id, position, tag, normalize_tag(tag))
                        for position, tag in enumerate(tags)
                    ],
                )
        except sqlite3.Error as exc:
            raise LinkStoreError(f"Failed to store link: {exc}") from exc
        return link_id

    def update_archive_url(self, link_id: str, archive_url: str) -> None:
        try:
            with self._db.connection() as conn:
                cursor = conn.execute(
                    """
                    UPDATE links
                    SET archive_url = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (archive_url, utc_now_iso(), link_id),
                )
        except sqlite3.Error as exc:
            raise LinkStoreError(f"Failed to update archive url: {exc}") from exc
        if cursor.rowcount == 0:
            raise LinkStoreError(f"Link not found: {link_id}", status_code=404)

    def list_recent(self, limit: int) -> list[StoredLink]:
        return self.list_links(limit=limit)

    def search_by_tags(self, tags: Sequence[str], limit: int) -> list[StoredLink]:
        normalized = sorted({normalize_tag(tag) for tag in tags if normalize_tag(tag)})
        if not normalized:
            return []
        placeholders = ", ".join("?" for _ in normalized)
        return self._select(
            f"""
            SELECT *
            FROM links
            WHERE id IN (
                SELECT link_id FROM link_tags WHERE normalized_tag IN ({placeholders})
            )
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (*normalized, clamp_limit(limit)),
        )

    def list_links(self, *, tag: str | None = None, limit: int = 100) -> list[StoredLink]:
        normalized_tag = normalize_tag(tag) if tag is not None else ""
        if normalized_tag:
            return self.search_by_tags([normalized_tag], limit)
        return self._select(
            """
            SELECT *
            FROM links
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (clamp_limit(limit),),
        )

    def get_link(self, link_id: str) -> StoredLink | None:
        rows = self._select(
            """
            SELECT *
            FROM links
            WHERE id = ?
            LIMIT 1
            """,
            (link_id,),
        )
        return rows[0] if rows else None

    def _select(self, sql: str, params: tuple[object, ...]) -> list[StoredLink]:
        try:
            with self._db.connection() as conn:
                rows = conn.execute(sql, params).fetchall()
                return [_row_to_link(conn, row) for row in rows]
        except sqlite3.Error as exc:
            raise LinkStoreError(f"Failed to read links: {exc}") from exc


def _row_to_link(conn: Connection, row: Row) -> StoredLink:
    tag_rows = conn.execute(
        """
        SELECT tag
        FROM link_tags
        WHERE link_id = ?
        ORDER BY position ASC
        """,
        (row["id"],),
    ).fetchall()
    return StoredLink(
        link_id=str(row["id"]),
        title=str(row["title"]),
        url=str(row["url"]),
        archive_url=row["archive_url"] if isinstance(row["archive_url"], str) else None,
        summary=str(row["summary"]),
        insight=str(row["insight"]),
        category=coerce_category(row["category"]),
        tags=tuple(str(tag_row["tag"]) for tag_row in tag_rows),
        created_at=parse_iso_datetime(str(row["created_at"])),
    )
