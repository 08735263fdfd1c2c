"""
Unit tests for the Database cog and bot startup wiring.
"""
from types import SimpleNamespace

import pytest
import pytest_asyncio

from bot import Aquabot
from cogs.database import DEFAULT_GUILD_SETTINGS, GUILD_SETTINGS, Database
from helpers import read_docs


def make_bot(db_dir):
    """Minimal stand-in for the bot: only what the cog touches."""
    options = {"path": db_dir, "watch_files": False, "watch_interval": 0.05, "flush_delay": 0.01}
    config_manager = SimpleNamespace(database_options=lambda: options)
    return SimpleNamespace(config_manager=config_manager, store=None)


@pytest_asyncio.fixture
async def cog(db_dir):
    cog = Database(make_bot(db_dir))
    await cog.cog_load()
    yield cog
    await cog.cog_unload()


@pytest.mark.unit
class TestLifecycle:
    """Tests for opening and closing the store with the cog."""

    @pytest.mark.asyncio
    async def test_load_opens_store(self, db_dir):
        cog = Database(make_bot(db_dir))

        await cog.cog_load()

        assert cog.bot.store is cog.store
        assert (db_dir / f"{GUILD_SETTINGS}.json").exists()
        await cog.cog_unload()

    @pytest.mark.asyncio
    async def test_unload_flushes_and_detaches(self, db_dir):
        cog = Database(make_bot(db_dir))
        await cog.cog_load()
        store = cog.store
        cog.set_guild_settings(1234, volume=80)

        await cog.cog_unload()

        assert cog.bot.store is None
        assert store.collection_names() == [GUILD_SETTINGS]
        assert read_docs(db_dir / f"{GUILD_SETTINGS}.json") == [
            {"_id": "1234", "guild_id": 1234, "volume": 80}
        ]
        with pytest.raises(RuntimeError):
            cog.settings

    @pytest.mark.asyncio
    async def test_unload_twice_is_harmless(self, db_dir):
        cog = Database(make_bot(db_dir))
        await cog.cog_load()
        await cog.cog_unload()
        await cog.cog_unload()


@pytest.mark.unit
class TestGuildSettings:
    """Tests for the guild settings helpers."""

    @pytest.mark.asyncio
    async def test_defaults_for_unknown_guild(self, cog):
        assert cog.get_guild_settings(42) == DEFAULT_GUILD_SETTINGS
        assert cog.settings.count() == 0

    @pytest.mark.asyncio
    async def test_set_creates_then_updates(self, cog):
        first = cog.set_guild_settings(42, volume=70)
        second = cog.set_guild_settings(42, autoplay=True)

        assert first["volume"] == 70
        assert second == {**DEFAULT_GUILD_SETTINGS, "volume": 70, "autoplay": True}
        assert cog.settings.count() == 1
        assert cog.settings.find({"guild_id": 42})[0]["_id"] == "42"

    @pytest.mark.asyncio
    async def test_stored_extra_fields_are_not_returned(self, cog):
        cog.set_guild_settings(42, volume=10)
        settings = cog.get_guild_settings(42)
        assert "_id" not in settings
        assert "guild_id" not in settings

    @pytest.mark.asyncio
    @pytest.mark.parametrize("values", [
        {"volume": 101},
        {"volume": -1},
        {"volume": "loud"},
        {"volume": True},
        {"bass_boost": 3},
    ])
    async def test_invalid_values_rejected(self, cog, values):
        with pytest.raises(ValueError):
            cog.set_guild_settings(42, **values)
        assert cog.settings.count() == 0

    @pytest.mark.asyncio
    async def test_reset(self, cog):
        cog.set_guild_settings(42, volume=30)

        assert cog.reset_guild_settings(42) is True
        assert cog.reset_guild_settings(42) is False
        assert cog.get_guild_settings(42)["volume"] == 50

    @pytest.mark.asyncio
    async def test_guild_remove_clears_settings(self, cog):
        cog.set_guild_settings(42, always_on=True)
        cog.set_guild_settings(7, volume=20)

        await cog.on_guild_remove(SimpleNamespace(id=42, name="gone"))

        assert cog.get_guild_settings(42) == DEFAULT_GUILD_SETTINGS
        assert cog.get_guild_settings(7)["volume"] == 20


@pytest.mark.unit
class TestBotStartup:
    """Tests for Aquabot.setup_hook() without connecting to Discord."""

    @pytest.mark.usefixtures("restore_logging")
    @pytest.mark.asyncio
    async def test_setup_hook_opens_store_from_config(self, tmp_path, monkeypatch):
        for key in ("DB_WATCH_FILES", "DB_WATCH_INTERVAL", "DB_FLUSH_DELAY_MS"):
            monkeypatch.delenv(key, raising=False)
        monkeypatch.setenv("DB_PATH", str(tmp_path / "db"))
        monkeypatch.setenv("LOG_LEVEL", "debug")
        bot = Aquabot(tmp_path / "config")

        try:
            await bot.setup_hook()

            assert bot.store is not None
            assert bot.store.path == tmp_path / "db"
            assert (tmp_path / "config" / "settings.yaml").exists()
            assert bot.get_cog("Database") is not None
        finally:
            await bot.unload_extension("cogs.database")

        assert bot.store is None
