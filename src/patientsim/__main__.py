# patientsim bot entry point
import asyncio
import logging
import os
import time

import discord
from discord.ext import commands
from dotenv import load_dotenv

load_dotenv()

token = os.getenv("DISCORD_TOKEN")
logger = logging.getLogger("patientsim")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

intents = discord.Intents.default()
intents.message_content = True

bot = commands.Bot(command_prefix="!", intents=intents, case_insensitive=True)


@bot.event
async def on_ready():
    logger.info("Bot is ready. Logged in as %s (ID: %s)", bot.user, bot.user.id)
    logger.info("Loaded cogs: %s", list(bot.cogs.keys()))


async def main():
    async with bot:
        # Avoid double-loading across crash/retry loops
        if "patientsim.cogs.session_chat" not in bot.extensions:
            await bot.load_extension("patientsim.cogs.session_chat")
        logger.info("starting bot")
        await bot.start(token)


if __name__ == "__main__":
    if not token:
        raise SystemExit("DISCORD_TOKEN is not set")
    # Retry on transient connect errors (e.g., gateway timeouts)
    while True:
        try:
            asyncio.run(main())
            break  # Normal exit
        except KeyboardInterrupt:
            break
        except Exception as e:  # noqa: BLE001
            logger.exception("Bot crashed during startup/connect; retrying in 5s: %s", e)
            time.sleep(5)
