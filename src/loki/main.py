"""
Loki Discord Bot
================

Entry point: loads the environment, opens the state store, registers the
cogs and runs the bot until it is interrupted.
"""

import os
import sys
from pathlib import Path


def resolve_base_dir() -> Path:
    """Determine the base directory of the project.

    Resolution order:
    1. LOKI_HOME environment variable, if set.
    2. If running in a frozen/compiled context, use the executable's directory.
    3. Otherwise, assume running from source and use the grandparent of this file's directory.
    """
    if env_home := os.getenv("LOKI_HOME"):
        return Path(env_home).resolve()

    if getattr(sys, "frozen", False) or getattr(sys, "compiled", False):
        return Path(sys.argv[0]).resolve().parent

    return Path(__file__).resolve().parents[2]


BASE_DIR = resolve_base_dir()

import asyncio
import discord
from dotenv import load_dotenv

from loki.bot.runtime import LokiRuntime
from loki.datatypes.errors import LokiError
from loki.util.logger import get_logger, handle_exception


logger = get_logger("main")


def load_environment() -> str:
    """Load environment variables and return the Discord bot token.

    Raises
    ------
    SystemExit
        If the required ``DISCORD_BOT_TOKEN`` variable is missing.
    """
    load_dotenv(dotenv_path=BASE_DIR / ".env")
    token = os.getenv("DISCORD_BOT_TOKEN")
    if not token:
        logger.critical("'DISCORD_BOT_TOKEN' environment variable not set. Bot cannot start.")
        sys.exit(1)
    return token


def build_intents() -> discord.Intents:
    """Intents for guild messages (contest entries), reactions and member updates."""
    intents = discord.Intents.default()
    intents.message_content = True
    intents.guilds = True
    intents.messages = True
    intents.reactions = True
    intents.members = True
    return intents


def load_cogs(bot: discord.Bot, runtime: LokiRuntime) -> None:
    """Register all cogs with the bot."""
    from loki.cog.commands import (
        contest_cmds,
        events_cmds,
        general_cmds,
        lottery_cmds,
        response_cmds,
        scoreboard_cmds,
        timeout_cmds,
    )
    from loki.cog.listener import events_listener, message_listener

    events_listener.setup(bot, runtime)
    message_listener.setup(bot, runtime)
    contest_cmds.setup(bot, runtime)
    lottery_cmds.setup(bot, runtime)
    response_cmds.setup(bot, runtime)
    events_cmds.setup(bot, runtime)
    timeout_cmds.setup(bot, runtime)
    scoreboard_cmds.setup(bot, runtime)
    general_cmds.setup(bot, runtime)

    logger.info("All cogs loaded successfully.")


def create_bot() -> tuple[discord.Bot, LokiRuntime]:
    """Instantiate the Discord bot, its runtime, and register all cogs."""
    bot = discord.Bot(intents=build_intents())
    runtime = LokiRuntime.from_config(bot)
    load_cogs(bot, runtime)
    return bot, runtime


async def shutdown_runtime(bot: discord.Bot, runtime: LokiRuntime) -> None:
    """Stop the scheduler, close the store and the Discord connection."""
    try:
        await runtime.shutdown()
    except Exception as exc:
        logger.exception("Error during runtime shutdown: %s", exc)

    if not bot.is_closed():
        await bot.close()
    logger.info("Shutdown complete.")


async def async_main() -> int:
    """Bootstrap the store and the bot, returning an exit code."""
    token = load_environment()

    try:
        bot, runtime = create_bot()
    except Exception as exc:
        logger.critical("Failed to initialize Discord bot: %s", exc)
        return 1

    try:
        logger.info("Opening state store…")
        await runtime.open()
    except LokiError as exc:
        logger.critical("Failed to open state store: %s", exc)
        return 1

    exit_code = 0
    logger.info("Attempting to connect to Discord…")
    try:
        await bot.start(token)
    except asyncio.CancelledError:
        logger.info("Discord bot start cancelled; shutting down")
    except discord.LoginFailure as exc:
        logger.critical("Discord rejected the token: %s", exc)
        exit_code = 1
    except Exception as exc:
        logger.critical("Discord bot runtime error: %s", exc)
        exit_code = 1
    finally:
        await shutdown_runtime(bot, runtime)

    return exit_code


def main() -> int:
    """Entrypoint that runs the async runtime and returns the process code."""
    sys.excepthook = handle_exception
    logger.info("Starting Loki…")
    try:
        return asyncio.run(async_main())
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user.")
        return 0
    except SystemExit as exit_exc:
        code = exit_exc.code
        if isinstance(code, int):
            return code
        return 1
    except Exception as exc:
        logger.critical("An unexpected error occurred while running the bot: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
