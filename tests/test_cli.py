from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from backend.app.services.telegram_service import TelegramBotClient
from linkctl.cli import main


def test_convert_reads_markdown_from_stdin() -> None:
    runner = CliRunner()

    result = runner.invoke(main, ["convert", "-"], input="# Hello\n\nWorld **wide**.\n")

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == [
        {"tag": "h3", "children": ["Hello"]},
        {"tag": "p", "children": ["World ", {"tag": "b", "children": ["wide"]}, "."]},
    ]


def test_convert_drops_heading_matching_title(tmp_path: Path) -> None:
    source = tmp_path / "post.md"
    source.write_text("# Hello\n\nBody\n", encoding="utf-8")
    runner = CliRunner()

    result = runner.invoke(main, ["convert", str(source), "--title", "Hello", "--pretty"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == [{"tag": "p", "children": ["Body"]}]
    assert "\n  " in result.output


def test_set_webhook_requires_bot_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("LINK_SAVER_TELEGRAM_BOT_TOKEN")
    runner = CliRunner()

    result = runner.invoke(
        main,
        ["telegram", "set-webhook", "https://bot.example.com/webhook/telegram"],
    )

    assert result.exit_code == 1
    assert "LINK_SAVER_TELEGRAM_BOT_TOKEN is not set" in result.output


def test_set_webhook_passes_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LINK_SAVER_TELEGRAM_WEBHOOK_SECRET", "hook-secret")
    captured: list[tuple[str, str | None]] = []

    def _fake_set_webhook(
        self: TelegramBotClient,
        *,
        url: str,
        secret_token: str | None = None,
    ) -> bool:
        captured.append((url, secret_token))
        return True

    monkeypatch.setattr(TelegramBotClient, "set_webhook", _fake_set_webhook)
    runner = CliRunner()

    result = runner.invoke(
        main,
        ["telegram", "set-webhook", "https://bot.example.com/webhook/telegram"],
    )

    assert result.exit_code == 0, result.output
    assert captured == [("https://bot.example.com/webhook/telegram", "hook-secret")]
