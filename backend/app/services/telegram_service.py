from __future__ import annotations

import html
import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import cast
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

LOGGER = logging.getLogger("link_saver.telegram")

MAX_MESSAGE_CHARS = 4096
_SECTION_MAX_CHARS = 1500
_URL_RE = re.compile(r"(https?://[^\s]+)")
_TRAILING_PUNCTUATION = ".,;:!?"
_HASHTAG_UNSAFE_RE = re.compile(r"[\s\-]+")


class TelegramApiError(RuntimeError):
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
class SaveReport:
    title: str
    url: str
    category: str
    summary: str
    insight: str
    tags: tuple[str, ...] = field(default_factory=tuple)
    archive_url: str | None = None
    library_url: str | None = None


def extract_first_url(text: str | None) -> str | None:
    if not text:
        return None
    match = _URL_RE.search(text)
    if match is None:
        return None
    url = match.group(1).rstrip(_TRAILING_PUNCTUATION)
    return url or None


def escape_html(value: str) -> str:
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def format_hashtag(tag: str) -> str:
    cleaned = _HASHTAG_UNSAFE_RE.sub("_", tag.strip().lstrip("#").strip())
    return f"#{escape_html(cleaned)}" if cleaned else ""


def tags_as_hashtags(tags: Sequence[str]) -> str:
    return " ".join(tag for tag in (format_hashtag(raw) for raw in tags) if tag)


def render_success_message(report: SaveReport) -> str:
    hashtags = tags_as_hashtags(report.tags)
    read_url = report.archive_url or report.url
    read_label = "📖 Archive" if report.archive_url else "🔗 Source"
    links = [f'<a href="{html.escape(read_url, quote=True)}">{read_label}</a>']
    if report.archive_url:
        links.append(f'<a href="{html.escape(report.url, quote=True)}">🔗 Source</a>')
    if report.library_url:
        links.append(f'<a href="{html.escape(report.library_url, quote=True)}">🌌 Library</a>')

    lines = [
        "✅ <b>Saved!</b>",
        "",
        f"<b>{escape_html(report.title)}</b>",
        f"<i>{escape_html(report.category)}</i>  {hashtags}".rstrip(),
        "",
        "📝 <b>Summary:</b>",
        escape_html(_clip(report.summary)),
        "",
        "💡 <b>Insight:</b>",
        escape_html(_clip(report.insight)),
        "",
        "  |  ".join(links),
    ]
    return "\n".join(lines)


def render_failure_message(error: BaseException | str) -> str:
    message = str(error).strip() or type(error).__name__
    return f"❌ Error: {message}"[:MAX_MESSAGE_CHARS]


class TelegramBotClient:
    def __init__(
        self,
        *,
        bot_token: str | None,
        base_url: str = "https://api.telegram.org",
        http_timeout_seconds: float = 30.0,
    ) -> None:
        self._bot_token = bot_token
        self._base_url = base_url.rstrip("/")
        self._http_timeout_seconds = max(1.0, float(http_timeout_seconds))

    def send_message(
        self,
        *,
        chat_id: int | str,
        text: str,
        parse_mode: str | None = None,
        link_preview_options: dict[str, object] | None = None,
    ) -> int | None:
        payload: dict[str, object] = {"chat_id": chat_id, "text": text}
        if parse_mode is not None:
            payload["parse_mode"] = parse_mode
        if link_preview_options is not None:
            payload["link_preview_options"] = link_preview_options
        result = self._call("sendMessage", payload)
        message_id = result.get("message_id") if isinstance(result, dict) else None
        return message_id if isinstance(message_id, int) else None

    def edit_message_text(
        self,
        *,
        chat_id: int | str,
        message_id: int,
        text: str,
        parse_mode: str | None = None,
        link_preview_options: dict[str, object] | None = None,
    ) -> None:
        payload: dict[str, object] = {"chat_id": chat_id, "message_id": message_id, "text": text}
        if parse_mode is not None:
            payload["parse_mode"] = parse_mode
        if link_preview_options is not None:
            payload["link_preview_options"] = link_preview_options
        self._call("editMessageText", payload)

    def set_webhook(self, *, url: str, secret_token: str | None = None) -> bool:
        payload: dict[str, object] = {"url": url, "allowed_updates": ["message", "channel_post"]}
        if secret_token is not None:
            payload["secret_token"] = secret_token
        return self._call("setWebhook", payload) is True

    def _call(self, method: str, payload: dict[str, object]) -> object:
        if self._bot_token is None:
            raise TelegramApiError("Telegram bot token is not configured.")
        request = Request(
            url=f"{self._base_url}/bot{self._bot_token}/{method}",
            data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._http_timeout_seconds) as response:
                raw_body = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            response_body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
            description = _decode_json_object(response_body).get("description")
            detail = description if isinstance(description, str) and description else str(exc.reason)
            raise TelegramApiError(
                f"Telegram {method} failed: {detail}",
                status_code=exc.code,
                retryable=(exc.code >= 500 or exc.code == 429),
            ) from exc
        except (URLError, TimeoutError) as exc:
            reason = exc.reason if isinstance(exc, URLError) else exc
            raise TelegramApiError(f"Telegram {method} failed: {reason}", retryable=True) from exc

        parsed = _decode_json_object(raw_body)
        if parsed.get("ok") is not True:
            raise TelegramApiError(f"Telegram {method} returned an unexpected response.")
        return parsed.get("result")


class TelegramNotifier:
    """Chat replies for one save: a progress note, then a success or failure edit."""

    def __init__(self, client: TelegramBotClient) -> None:
        self._client = client

    def send_processing(self, chat_id: int | str, url: str) -> int | None:
        return self._client.send_message(
            chat_id=chat_id,
            text=f"⏳ Processing: {url}",
            link_preview_options={"is_disabled": True},
        )

    def send_success(self, chat_id: int | str, message_id: int | None, report: SaveReport) -> None:
        if report.archive_url:
            preview: dict[str, object] = {"url": report.archive_url, "prefer_large_media": True}
        else:
            preview = {"is_disabled": True}
        self._deliver(
            chat_id,
            message_id,
            text=render_success_message(report),
            parse_mode="HTML",
            link_preview_options=preview,
        )

    def send_failure(
        self,
        chat_id: int | str,
        message_id: int | None,
        error: BaseException | str,
    ) -> None:
        self._deliver(
            chat_id,
            message_id,
            text=render_failure_message(error),
            parse_mode=None,
            link_preview_options={"is_disabled": True},
        )

    def _deliver(
        self,
        chat_id: int | str,
        message_id: int | None,
        *,
        text: str,
        parse_mode: str | None,
        link_preview_options: dict[str, object],
    ) -> None:
        if message_id is not None:
            try:
                self._client.edit_message_text(
                    chat_id=chat_id,
                    message_id=message_id,
                    text=text,
                    parse_mode=parse_mode,
                    link_preview_options=link_preview_options,
                )
                return
            except TelegramApiError:
                LOGGER.warning(
                    "telegram edit failed; sending a new message chat_id=%s message_id=%s",
                    chat_id,
                    message_id,
                    exc_info=True,
                )
        self._client.send_message(
            chat_id=chat_id,
            text=text,
            parse_mode=parse_mode,
            link_preview_options=link_preview_options,
        )


def _clip(value: str, limit: int = _SECTION_MAX_CHARS) -> str:
    stripped = value.strip()
    if len(stripped) <= limit:
        return stripped
    return f"{stripped[: limit - 1].rstrip()}…"


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
