from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import cast
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlparse
from urllib.request import Request, urlopen
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.app.services.rich_nodes import (
    RichElement,
    RichNode,
    drop_duplicate_title_heading,
    nodes_from_json,
    serialize_nodes,
)

LOGGER = logging.getLogger("link_saver.telegraph")

MAX_TITLE_CHARS = 256
MAX_CONTENT_BYTES = 64 * 1024
TELEGRAPH_HOSTS: frozenset[str] = frozenset({"telegra.ph", "graph.org"})
_ELLIPSIS_PARAGRAPH = RichElement("p", children=("…",))


class TelegraphApiError(RuntimeError):
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
class TelegraphPage:
    path: str
    url: str
    title: str
    nodes: tuple[RichNode, ...]


def telegraph_path_from_url(url: str | None) -> str | None:
    if not url:
        return None
    parsed = urlparse(url)
    if (parsed.hostname or "").lower() not in TELEGRAPH_HOSTS:
        return None
    path = parsed.path.strip("/")
    return path or None


def fit_content(nodes: Sequence[RichNode], *, max_bytes: int = MAX_CONTENT_BYTES) -> list[RichNode]:
    """Drop trailing nodes until the serialized document fits, marking the cut."""
    fitted = list(nodes)
    if _content_size(fitted) <= max_bytes:
        return fitted
    while fitted and _content_size([*fitted, _ELLIPSIS_PARAGRAPH]) > max_bytes:
        fitted.pop()
    return [*fitted, _ELLIPSIS_PARAGRAPH]


class TelegraphService:
    def __init__(
        self,
        *,
        access_token: str | None,
        base_url: str = "https://api.telegra.ph",
        short_name: str = "LinkSaver",
        author_name: str = "AI Link Saver",
        timezone: str = "Asia/Shanghai",
        http_timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._short_name = short_name
        self._author_name = author_name
        self._timezone = _load_timezone(timezone)
        self._http_timeout_seconds = max(1.0, float(http_timeout_seconds))
        self._clock = clock if clock is not None else (lambda: datetime.now(UTC))
        self._token_lock = threading.Lock()

    def publish(
        self,
        *,
        title: str,
        nodes: Sequence[RichNode],
        source_url: str,
        author_url: str | None = None,
    ) -> str:
        page_title = (title.strip() or source_url)[:MAX_TITLE_CHARS]
        content = fit_content(drop_duplicate_title_heading(page_title, nodes))
        if not content:
            content = [RichElement("p", children=(source_url,))]

        local_date = self._clock().astimezone(self._timezone).date().isoformat()
        result = self._call(
            "createPage",
            {
                "access_token": self._get_access_token(),
                "title": page_title,
                "author_name": f"{self._short_name} • {local_date}",
                "author_url": author_url or source_url,
                "content": serialize_nodes(content),
                "return_content": False,
            },
        )
        url = result.get("url")
        if not isinstance(url, str) or not url:
            raise TelegraphApiError("Telegra.ph did not return a page url.")
        LOGGER.info("telegraph page published url=%s nodes=%s", url, len(content))
        return url

    def get_page(self, path: str) -> TelegraphPage:
        normalized = path.strip("/")
        if not normalized:
            raise TelegraphApiError("Telegra.ph page path is empty.", status_code=400)
        result = self._call(
            f"getPage/{quote(normalized, safe='')}",
            {"return_content": True},
        )
        return TelegraphPage(
            path=str(result.get("path") or normalized),
            url=str(result.get("url") or f"https://telegra.ph/{normalized}"),
            title=str(result.get("title") or ""),
            nodes=tuple(nodes_from_json(result.get("content"))),
        )

    def create_account(self) -> str:
        result = self._call(
            "createAccount",
            {"short_name": self._short_name, "author_name": self._author_name},
        )
        token = result.get("access_token")
        if not isinstance(token, str) or not token:
            raise TelegraphApiError("Telegra.ph did not return an access token.")
        return token

    def _get_access_token(self) -> str:
        with self._token_lock:
            if self._access_token is None:
                LOGGER.warning("telegraph access token not configured; creating an account")
                self._access_token = self.create_account()
            return self._access_token

    def _call(self, method: str, payload: dict[str, object]) -> dict[str, object]:
        request = Request(
            url=f"{self._base_url}/{method}",
            data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._http_timeout_seconds) as response:
                raw_body = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            raise TelegraphApiError(
                f"Telegra.ph request failed: HTTP {exc.code} {exc.reason}",
                status_code=exc.code,
                retryable=(exc.code >= 500 or exc.code in {408, 429}),
            ) from exc
        except (URLError, TimeoutError) as exc:
            reason = exc.reason if isinstance(exc, URLError) else exc
            raise TelegraphApiError(f"Telegra.ph request failed: {reason}", retryable=True) from exc

        parsed = _decode_json_object(raw_body)
        if parsed.get("ok") is not True:
            error = parsed.get("error")
            message = error if isinstance(error, str) and error else "unexpected response"
            raise TelegraphApiError(f"Telegra.ph {method} failed: {message}")
        result = parsed.get("result")
        if not isinstance(result, dict):
            raise TelegraphApiError(f"Telegra.ph {method} returned no result.")
        return cast(dict[str, object], result)


def _content_size(nodes: Sequence[RichNode]) -> int:
    return len(serialize_nodes(nodes).encode("utf-8"))


def _load_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        LOGGER.warning("unknown timezone %s; falling back to UTC", name)
        return ZoneInfo("UTC")


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
