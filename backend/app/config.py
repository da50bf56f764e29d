from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "LINK_SAVER_"
DEFAULT_DATA_DIR = Path(".link-saver")
STORE_BACKENDS: tuple[str, ...] = ("notion", "sqlite")
TELEMETRY_SINKS: tuple[str, ...] = ("none", "log")

# Paths that live under `data_dir` unless set explicitly.
_DATA_DIR_CHILDREN: dict[str, Path] = {
    "db_path": Path("links.db"),
    "log_dir": Path("logs"),
}
_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off"})


def _env_name(field_name: str | None) -> str:
    return f"{ENV_PREFIX}{(field_name or '').upper()}"


def _under_data_dir(field_name: str) -> str:
    return f"Defaults to `${{{ENV_PREFIX}DATA_DIR}}/{_DATA_DIR_CHILDREN[field_name]}`."


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    word = str(value).strip().lower() if isinstance(value, str | int) else ""
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    return default


def _blank_to_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class AppSettings(BaseSettings):
    """Runtime configuration, read from `LINK_SAVER_*` variables and `.env`."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths and mode.
    data_dir: Path = Field(
        default=DEFAULT_DATA_DIR,
        description="Root runtime directory for the local store and logs.",
    )
    db_path: Path = Field(
        default=DEFAULT_DATA_DIR / _DATA_DIR_CHILDREN["db_path"],
        description=f"SQLite database path. {_under_data_dir('db_path')}",
    )
    default_timezone: str = Field(
        default="Asia/Shanghai",
        description="Timezone used for the date shown in archived page bylines.",
    )
    public_base_url: str | None = Field(
        default=None,
        description="Public base URL of this service, linked from Telegram replies as the library.",
    )
    store_backend: Literal["notion", "sqlite"] = Field(
        default="notion",
        description="Link store backend. `notion` is the hosted store; `sqlite` is local.",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout applied to every outbound HTTP request.",
    )

    # Notion.
    notion_api_key: str | None = Field(
        default=None,
        description="Notion integration token.",
    )
    notion_database_id: str | None = Field(
        default=None,
        description="Notion database that holds saved links.",
    )
    notion_version: str = Field(
        default="2022-06-28",
        description="Value sent in the `Notion-Version` header.",
    )
    notion_base_url: str = Field(
        default="https://api.notion.com/v1",
        description="Notion REST API base URL.",
    )

    # Content fetching.
    jina_base_url: str = Field(
        default="https://r.jina.ai",
        description="Jina Reader base URL; the page URL is appended to it.",
    )
    jina_api_key: str | None = Field(
        default=None,
        description="Optional Jina Reader API key for higher rate limits.",
    )

    # Gemini.
    gemini_api_key: str | None = Field(
        default=None,
        description="Google Gemini API key.",
    )
    gemini_model: str = Field(
        default="gemini-1.5-flash",
        description="Gemini model used for summaries and insights.",
    )
    summary_language: str = Field(
        default="English",
        description="Language the summary and insight are written in.",
    )
    summary_content_max_chars: int = Field(
        default=50_000,
        ge=1_000,
        description="Maximum Markdown characters sent to the summarizer.",
    )
    related_links_limit: int = Field(
        default=5,
        ge=0,
        le=50,
        description="Maximum related links passed to the insight prompt.",
    )
    recent_context_limit: int = Field(
        default=10,
        ge=0,
        le=100,
        description="Recently saved links passed to the summary prompt as context.",
    )

    # Telegram.
    telegram_bot_token: str | None = Field(
        default=None,
        description="Telegram bot token.",
    )
    telegram_webhook_secret: str | None = Field(
        default=None,
        description=(
            "Shared secret expected in `X-Telegram-Bot-Api-Secret-Token`. "
            "Webhook calls are not verified when unset."
        ),
    )
    telegram_base_url: str = Field(
        default="https://api.telegram.org",
        description="Telegram Bot API base URL.",
    )

    # Telegra.ph.
    telegraph_enabled: bool = Field(
        default=True,
        description="Republish saved pages to Telegra.ph.",
    )
    telegraph_access_token: str | None = Field(
        default=None,
        description="Telegra.ph access token. An account is created per process when unset.",
    )
    telegraph_base_url: str = Field(
        default="https://api.telegra.ph",
        description="Telegra.ph API base URL.",
    )
    telegraph_short_name: str = Field(
        default="LinkSaver",
        description="Short name used when creating a Telegra.ph account.",
    )
    telegraph_author_name: str = Field(
        default="AI Link Saver",
        description="Author name used for archived pages and new accounts.",
    )

    # Logging.
    log_dir: Path = Field(
        default=DEFAULT_DATA_DIR / _DATA_DIR_CHILDREN["log_dir"],
        description=f"Directory for backend log files. {_under_data_dir('log_dir')}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("store_backend", "telemetry_sink", mode="before")
    @classmethod
    def _choose_one(cls, value: Any, info: ValidationInfo) -> str:
        choices = STORE_BACKENDS if info.field_name == "store_backend" else TELEMETRY_SINKS
        normalized = value.strip().lower() if isinstance(value, str) else None
        if normalized not in choices:
            raise ValueError(f"{_env_name(info.field_name)} must be set to: {', '.join(choices)}.")
        return normalized

    @field_validator(
        "notion_base_url",
        "jina_base_url",
        "telegram_base_url",
        "telegraph_base_url",
        mode="before",
    )
    @classmethod
    def _strip_base_url(cls, value: Any, info: ValidationInfo) -> str:
        url = _blank_to_none(value)
        if url is None:
            raise ValueError(f"{_env_name(info.field_name)} must be a non-empty URL.")
        return url.rstrip("/")

    @field_validator("public_base_url", mode="before")
    @classmethod
    def _strip_public_base_url(cls, value: Any) -> str | None:
        url = _blank_to_none(value)
        return url.rstrip("/") if url else None

    @field_validator("data_dir", "db_path", "log_dir", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Any:
        if value is None:
            return None
        return Path(value).expanduser()

    @field_validator("telemetry_enabled", "telegraph_enabled", mode="before")
    @classmethod
    def _parse_flag(cls, value: Any, info: ValidationInfo) -> bool:
        default = cls.model_fields[info.field_name or ""].default
        return _coerce_bool(value, bool(default))

    @field_validator(
        "notion_api_key",
        "notion_database_id",
        "jina_api_key",
        "gemini_api_key",
        "telegram_bot_token",
        "telegram_webhook_secret",
        "telegraph_access_token",
        mode="before",
    )
    @classmethod
    def _optional_secret(cls, value: Any) -> str | None:
        return _blank_to_none(value)

    def missing_secrets(self) -> list[str]:
        """Explain each secret the configured backends need but do not have."""
        missing: list[str] = []
        if self.telegram_bot_token is None:
            missing.append(f"{ENV_PREFIX}TELEGRAM_BOT_TOKEN is required to reply in chats.")
        if self.gemini_api_key is None:
            missing.append(f"{ENV_PREFIX}GEMINI_API_KEY is required for summaries and insights.")
        if self.store_backend == "notion":
            if self.notion_api_key is None:
                missing.append(f"{ENV_PREFIX}NOTION_API_KEY is required for the notion store.")
            if self.notion_database_id is None:
                missing.append(
                    f"{ENV_PREFIX}NOTION_DATABASE_ID is required for the notion store "
                    "(run `linkctl notion init PARENT_PAGE_ID` to create one)."
                )
        return missing


def load_settings(*, validate_secrets: bool = True) -> AppSettings:
    """Read `LINK_SAVER_*` settings and anchor relative paths to `data_dir`.

    Raises ``ValueError`` listing every missing secret unless
    ``validate_secrets`` is false, which the admin CLI uses.
    """
    settings = AppSettings()
    data_dir = settings.data_dir.resolve()
    paths: dict[str, Path] = {"data_dir": data_dir}
    for field_name, child in _DATA_DIR_CHILDREN.items():
        if field_name in settings.model_fields_set:
            paths[field_name] = getattr(settings, field_name).resolve()
        else:
            paths[field_name] = data_dir / child
    settings = settings.model_copy(update=paths)

    if validate_secrets:
        missing = settings.missing_secrets()
        if missing:
            bullets = "\n".join(f"- {reason}" for reason in missing)
            raise ValueError(f"Invalid runtime configuration:\n{bullets}")
    return settings
