from __future__ import annotations

import asyncio
import logging
import os

import discord
from discord.ext import commands

from shared import health as healthmod
from shared.config import get_command_prefix, get_discord_token, get_env_name
from shared.logging import setup_logging
from modules.common.runtime import Runtime

setup_logging(static_fields={"env": get_env_name()}, level=os.getenv("LOG_LEVEL", "INFO"))
log = logging.getLogger("dtm.app")

INTENTS = discord.Intents.default()
INTENTS.message_content = True

bot = commands.Bot(
    command_prefix=commands.when_mentioned_or(get_command_prefix()),
    intents=INTENTS,
)

runtime = Runtime(bot)


@bot.event
async def on_ready():
    healthmod.set_component("discord", True)
    log.info(
        'Bot ready as %s | env=%s | prefixes=["%s", "@mention"]',
        bot.user,
        get_env_name(),
        get_command_prefix(),
    )


@bot.event
async def on_resumed():
    healthmod.set_component("discord", True)


@bot.event
async def on_disconnect():
    healthmod.set_component("discord", False)


@bot.event
async def on_command_error(ctx: commands.Context, error: Exception):
    if ctx.cog is not None and ctx.cog.has_error_handler():
        return
    if isinstance(error, commands.CommandNotFound):
        return
    log.warning(
        "cmd error: cmd=%s user=%s err=%r",
        getattr(ctx.command, "name", None),
        getattr(ctx.author, "id", None),
        error,
    )


async def main() -> None:
    token = get_discord_token()
    if not token:
        raise RuntimeError("DISCORD_TOKEN not set")
    try:
        await runtime.start(token)
    finally:
        await runtime.close()


if __name__ == "__main__":
    asyncio.run(main())
