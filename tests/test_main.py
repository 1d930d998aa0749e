from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from loki import main


def test_resolve_base_dir_prefers_env(monkeypatch, tmp_path):
    monkeypatch.setenv("LOKI_HOME", str(tmp_path))
    assert main.resolve_base_dir() == tmp_path.resolve()


def test_resolve_base_dir_defaults_to_project_root(monkeypatch):
    monkeypatch.delenv("LOKI_HOME", raising=False)
    assert main.resolve_base_dir() == Path(main.__file__).resolve().parents[2]


def test_load_environment_requires_token(monkeypatch, tmp_path):
    monkeypatch.setattr(main, "BASE_DIR", tmp_path)
    monkeypatch.delenv("DISCORD_BOT_TOKEN", raising=False)

    with pytest.raises(SystemExit):
        main.load_environment()


def test_load_environment_reads_dotenv(monkeypatch, tmp_path):
    monkeypatch.setattr(main, "BASE_DIR", tmp_path)
    monkeypatch.delenv("DISCORD_BOT_TOKEN", raising=False)
    (tmp_path / ".env").write_text("DISCORD_BOT_TOKEN=abc123\n", encoding="utf-8")

    try:
        assert main.load_environment() == "abc123"
    finally:
        monkeypatch.delenv("DISCORD_BOT_TOKEN", raising=False)


def test_build_intents_enable_members_and_content():
    intents = main.build_intents()
    assert intents.members is True
    assert intents.message_content is True
    assert intents.reactions is True


def test_load_cogs_registers_every_cog():
    bot = MagicMock()
    runtime = MagicMock()

    main.load_cogs(bot, runtime)

    assert bot.add_cog.call_count == 9


@pytest.mark.asyncio
async def test_shutdown_runtime_closes_bot():
    bot = MagicMock()
    bot.is_closed.return_value = False
    bot.close = AsyncMock()
    runtime = MagicMock()
    runtime.shutdown = AsyncMock(side_effect=RuntimeError("store already closed"))

    await main.shutdown_runtime(bot, runtime)

    runtime.shutdown.assert_awaited_once()
    bot.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_async_main_fails_when_store_cannot_open(monkeypatch):
    from loki.datatypes.errors import PersistenceFailure

    bot = MagicMock()
    runtime = MagicMock()
    runtime.open = AsyncMock(side_effect=PersistenceFailure("read-only filesystem"))
    monkeypatch.setattr(main, "load_environment", lambda: "token")
    monkeypatch.setattr(main, "create_bot", lambda: (bot, runtime))

    assert await main.async_main() == 1
    bot.start.assert_not_called()


def test_main_returns_exit_code(monkeypatch):
    async def fake_async_main():
        return 3

    monkeypatch.setattr(main, "async_main", fake_async_main)
    monkeypatch.setattr("sys.excepthook", main.handle_exception)

    assert main.main() == 3
