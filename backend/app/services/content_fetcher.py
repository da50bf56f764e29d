from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import cast
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

LOGGER = logging.getLogger("link_saver.fetcher")

_FIRST_LINE_TITLE_RE = re.compile(r"^#?\s*(.+)")
_MAX_TITLE_CHARS = 300


class ContentFetchError(RuntimeError):
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
class FetchedContent:
    url: str
    title: str
    markdown: str


class JinaReaderClient:
    def __init__(
        self,
        *,
        base_url: str = "https://r.jina.ai",
        api_key: str | None = None,
        http_timeout_seconds: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._http_timeout_seconds = max(1.0, float(http_timeout_seconds))

    def fetch(self, url: str) -> FetchedContent:
        raw_body = self._fetch_raw(url)
        data = _reader_data(raw_body)
        if data is None:
            markdown = raw_body
            reported_title = None
        else:
            content = data.get("content")
            markdown = content if isinstance(content, str) else ""
            title_value = data.get("title")
            reported_title = title_value if isinstance(title_value, str) else None

        if not markdown.strip():
            raise ContentFetchError(f"No readable content returned for {url}")

        title = _normalize_title(reported_title) or _title_from_markdown(markdown) or url
        LOGGER.info(
            "content fetched url=%s title_source=%s chars=%s",
            url,
            "reader" if reported_title else "markdown",
            len(markdown),
        )
        return FetchedContent(url=url, title=title, markdown=markdown)

    def _fetch_raw(self, url: str) -> str:
        headers = {"Accept": "application/json"}
        if self._api_key is not None:
            headers["Authorization"] = f"Bearer {self._api_key}"
        request = Request(url=f"{self._base_url}/{url}", headers=headers, method="GET")
        try:
            with urlopen(request, timeout=self._http_timeout_seconds) as response:
                return response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            raise ContentFetchError(
                f"Jina Reader request failed: HTTP {exc.code} {exc.reason}",
                status_code=exc.code,
                retryable=(exc.code >= 500 or exc.code in {408, 429}),
            ) from exc
        except (URLError, TimeoutError) as exc:
            reason = exc.reason if isinstance(exc, URLError) else exc
            raise ContentFetchError(
                f"Jina Reader request failed: {reason}",
                retryable=True,
            ) from exc


def _reader_data(raw_body: str) -> dict[str, object] | None:
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    data = cast(dict[str, object], parsed).get("data")
    if not isinstance(data, dict):
        return None
    data_dict = cast(dict[str, object], data)
    if not isinstance(data_dict.get("content"), str):
        return None
    return data_dict


def _title_from_markdown(markdown: str) -> str | None:
    lines = markdown.strip().splitlines()
    if not lines:
        return None
    match = _FIRST_LINE_TITLE_RE.match(lines[0].strip())
    if match is None:
        return None
    return _normalize_title(match.group(1))


def _normalize_title(value: str | None) -> str | None:
    if value is None:
        return None
    compact = " ".join(value.split()).lstrip("#").strip()
    if not compact:
        return None
    return compact[:_MAX_TITLE_CHARS]
