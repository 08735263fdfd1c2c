# Copyright (C) 2026 grodz
#
# This file is part of Aquabot.
#
# Aquabot is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Aquabot
========================================================

Discord music bot host. Loads configuration, sets up logging and owns the
embedded document store through the Database cog.
"""

import asyncio
import os
import sys
from pathlib import Path

import discord
from discord.ext import commands
from dotenv import load_dotenv
from loguru import logger

from utils.config import ConfigManager
from utils.log import setup_logging

# Extensions loaded in setup_hook, in order
EXTENSIONS = ("cogs.database",)

_BOT_ROOT = Path(__file__).resolve().parent


class Aquabot(commands.Bot):
    """Bot with config and store attached.

    Attributes:
        config_manager: Loaded settings (settings.yaml + env overrides)
        store: Document store, set by the Database cog while it is loaded
    """

    def __init__(self, config_path: Path) -> None:
        intents = discord.Intents.default()
        intents.voice_states = True
        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            help_command=None,
        )
        self.config_manager = ConfigManager(config_path)
        self.store = None

    async def setup_hook(self) -> None:
        """Load config, apply its log level, then load extensions."""
        await self.config_manager.load()
        setup_logging(self.config_manager.get("logging", {}).get("level", "verbose"))

        for extension in EXTENSIONS:
            await self.load_extension(extension)
            logger.debug(f"loaded {extension}")

    async def on_ready(self) -> None:
        logger.log("NOTICE", f"connected as {self.user}")

    async def close(self) -> None:
        """Shut down. Unloading extensions closes the store and flushes pending writes."""
        logger.info("shutting down")
        await super().close()


async def main() -> None:
    load_dotenv()
    setup_logging(os.getenv("LOG_LEVEL", "verbose"))

    token = os.getenv("DISCORD_TOKEN")
    if not token:
        logger.critical("DISCORD_TOKEN not found in environment - bot cannot start!")
        sys.exit(1)

    config_path = Path(os.getenv("CONFIG_PATH") or str(_BOT_ROOT / "config"))
    bot = Aquabot(config_path)

    logger.info("starting bot...")
    async with bot:
        await bot.start(token.strip())


if __name__ == '__main__':
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("bot stopped by user (Ctrl+C)")
