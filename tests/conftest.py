from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.app.dependencies import reset_cached_dependencies
from backend.app.main import create_app
from backend.app.repositories.database import Database
from backend.app.repositories.link_repository import SqliteLinkRepository

_UNSET_ENV_VARS: tuple[str, ...] = (
    "LINK_SAVER_TELEGRAM_WEBHOOK_SECRET",
    "LINK_SAVER_PUBLIC_BASE_URL",
    "LINK_SAVER_NOTION_API_KEY",
    "LINK_SAVER_NOTION_DATABASE_ID",
    "LINK_SAVER_TELEGRAPH_ACCESS_TOKEN",
    "LINK_SAVER_DB_PATH",
    "LINK_SAVER_LOG_DIR",
)


@pytest.fixture(autouse=True)
def _runtime_env_defaults(  # pyright: ignore[reportUnusedFunction]
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[None]:
    for name in _UNSET_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LINK_SAVER_DATA_DIR", str(tmp_path / "runtime-data"))
    monkeypatch.setenv("LINK_SAVER_STORE_BACKEND", "sqlite")
    monkeypatch.setenv("LINK_SAVER_TELEGRAM_BOT_TOKEN", "test-bot-token")
    monkeypatch.setenv("LINK_SAVER_GEMINI_API_KEY", "test-gemini-key")
    monkeypatch.setenv("LINK_SAVER_TELEGRAPH_ENABLED", "0")
    monkeypatch.setenv("LINK_SAVER_TELEMETRY_SINK", "none")
    reset_cached_dependencies()
    yield
    reset_cached_dependencies()


@pytest.fixture
def link_store(tmp_path: Path) -> SqliteLinkRepository:
    db = Database(tmp_path / "links.db")
    db.initialize()
    return SqliteLinkRepository(db)


@pytest.fixture
def client() -> Iterator[TestClient]:
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client
