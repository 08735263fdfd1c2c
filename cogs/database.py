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

"""Document store lifecycle and per-guild settings."""

from typing import Any

import discord
from discord.ext import commands
from loguru import logger

from storage import ChangeEvent, Collection, Store


# Collection holding one document per guild, keyed by str(guild_id)
GUILD_SETTINGS = "guild_settings"

# Settings fields with their default values:
# - volume: Playback volume percentage applied when joining voice
# - autoplay: Queue related tracks when the queue runs out
# - always_on: 24/7 mode, stay in voice when the queue ends
# - text_channel_id: Channel used for now-playing messages
DEFAULT_GUILD_SETTINGS = {
    "volume": 50,
    "autoplay": False,
    "always_on": False,
    "text_channel_id": None,
}


class Database(commands.Cog):
    """Owns the document store for the lifetime of the bot.

    The store is opened in cog_load and closed in cog_unload. Bot.close()
    unloads extensions, so shutdown always flushes pending writes and stops
    file watches.

    Other cogs reach the store through bot.store, or use the guild settings
    helpers here:
        db = bot.get_cog("Database")
        db.get_guild_settings(guild.id)["volume"]
        db.set_guild_settings(guild.id, volume=80)
    """

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot
        self.store: Store | None = None
        self._unsubscribe = None

    async def cog_load(self) -> None:
        options = self.bot.config_manager.database_options()
        self.store = Store(**options)
        self.bot.store = self.store
        self._unsubscribe = self.store.subscribe(self._log_change)

        settings = self.store.collection(GUILD_SETTINGS)
        names = self.store.collection_names()
        logger.info(f"database ready at {self.store.path} ({len(names)} collection(s), {len(settings)} guild(s))")

    async def cog_unload(self) -> None:
        if self.store is None:
            return
        store, self.store = self.store, None
        if getattr(self.bot, "store", None) is store:
            self.bot.store = None
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        await store.close()
        logger.info("database closed")

    def _log_change(self, event: ChangeEvent) -> None:
        if event.kind == "reload":
            logger.info(
                f"{event.collection} reloaded from disk "
                f"({event.data['old_size']} -> {event.data['new_size']} documents)"
            )
        else:
            logger.debug(f"{event.collection}: {event.kind} ({event.data.get('count', len(event.data.get('docs', [])))})")

    @property
    def settings(self) -> Collection:
        if self.store is None:
            raise RuntimeError("database is not loaded")
        return self.store.collection(GUILD_SETTINGS)

    def get_guild_settings(self, guild_id: int) -> dict:
        """Stored settings for a guild merged over DEFAULT_GUILD_SETTINGS."""
        doc = self.settings.find_by_id(str(guild_id)) or {}
        stored = {k: v for k, v in doc.items() if k in DEFAULT_GUILD_SETTINGS}
        return {**DEFAULT_GUILD_SETTINGS, **stored}

    def set_guild_settings(self, guild_id: int, **values: Any) -> dict:
        """Update settings for a guild, creating its document if needed.

        Raises:
            ValueError: If a key is unknown or volume is outside 0-100

        Returns:
            The merged settings after the update
        """
        unknown = set(values) - set(DEFAULT_GUILD_SETTINGS)
        if unknown:
            raise ValueError(f"unknown guild setting(s): {', '.join(sorted(unknown))}")
        if "volume" in values:
            volume = values["volume"]
            if isinstance(volume, bool) or not isinstance(volume, int) or not 0 <= volume <= 100:
                raise ValueError(f"volume must be an integer from 0 to 100, got {volume!r}")

        doc_id = str(guild_id)
        if doc_id in self.settings:
            self.settings.update({"_id": doc_id}, values)
        else:
            self.settings.insert({"_id": doc_id, "guild_id": guild_id, **values})
        return self.get_guild_settings(guild_id)

    def reset_guild_settings(self, guild_id: int) -> bool:
        """Delete a guild's settings. Returns True if anything was stored."""
        return self.settings.delete({"_id": str(guild_id)}) > 0

    @commands.Cog.listener()
    async def on_guild_remove(self, guild: discord.Guild) -> None:
        """Bot removed from guild - drop its settings."""
        if self.store is None:
            return
        if self.reset_guild_settings(guild.id):
            logger.info(f"cleared settings for removed guild {guild.name}")


async def setup(bot: commands.Bot) -> None:
    """Load the Database cog."""
    await bot.add_cog(Database(bot))
